"""Configuration management - load/save configuration.xml"""

import xml.etree.ElementTree as ET
from dataclasses import fields
from pathlib import Path
from typing import Optional
from xml.dom import minidom

from .paths import AppPaths
from .schema import MAX_NESTING_DEPTH, AppConfiguration, CodecSettings, GitSettings, Settings
from .security import decrypt_secret, encrypt_secret
from ..logging_config import get_logger

logger = get_logger("config_manager")

# XML element name for each GitSettings field
GIT_ELEMENTS = {
    "author_name": "AuthorName",
    "author_email": "AuthorEmail",
    "default_branch": "DefaultBranch",
    "default_remote": "DefaultRemote",
    "retry_attempts": "RetryAttempts",
    "retry_backoff": "RetryBackoff",
    "retry_max_wait": "RetryMaxWait",
    "remote_username": "RemoteUsername",
    "remote_token": "RemoteToken",
}
SECRET_FIELDS = {"remote_token"}


def to_pretty_xml(root: ET.Element) -> str:
    """Indented XML without the blank lines minidom leaves behind."""
    xml_str = minidom.parseString(ET.tostring(root, encoding="unicode")).toprettyxml(indent="  ")
    return "\n".join(line for line in xml_str.split("\n") if line.strip())


class ConfigurationManager:
    """Loads and saves the application configuration.

    A missing or unreadable configuration.xml counts as a first run, after
    which defaults are written back.
    """

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or AppPaths.CONFIG_FILE
        self.config: Optional[AppConfiguration] = None

    def is_first_run(self) -> bool:
        if not self.config_path.exists():
            return True

        try:
            self.load()
            return False
        except (ET.ParseError, ValueError) as e:
            logger.warning("Could not load config, treating as first run: %s", e)
            return True

    def load_or_create(self) -> AppConfiguration:
        """Load the configuration, writing defaults on first run."""
        if self.is_first_run():
            self.create_default()
            self.save()
        return self.config

    def load(self) -> AppConfiguration:
        """Load configuration.xml.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ET.ParseError: If the XML is malformed
            ValueError: If a numeric setting cannot be parsed
        """
        logger.debug("Loading configuration from %s", self.config_path)
        root = ET.parse(self.config_path).getroot()

        settings = Settings()
        settings_elem = root.find("Settings")
        if settings_elem is not None:
            data_dir = self._get_text(settings_elem, "DataDirectory").strip()
            settings.data_dir = AppPaths.expand_path(data_dir) if data_dir else None
            settings.debug_logging = self._get_text(settings_elem, "DebugLogging", "false").lower() == "true"

            codec_elem = settings_elem.find("Codec")
            if codec_elem is not None:
                defaults = CodecSettings()
                max_depth = int(self._get_text(codec_elem, "MaxDepth", str(defaults.max_depth)))
                if not 1 <= max_depth <= MAX_NESTING_DEPTH:
                    logger.warning("MaxDepth %d out of range, clamping to 1..%d", max_depth, MAX_NESTING_DEPTH)
                    max_depth = max(1, min(max_depth, MAX_NESTING_DEPTH))
                settings.codec = CodecSettings(
                    max_depth=max_depth,
                    max_size=int(self._get_text(codec_elem, "MaxDecodedSize", str(defaults.max_size))),
                )

            git_elem = settings_elem.find("Git")
            if git_elem is not None:
                settings.git = self._load_git(git_elem)

        self.config = AppConfiguration(settings=settings)
        logger.debug("Configuration loaded, data directory %s", self.config.data_dir)
        return self.config

    @classmethod
    def _load_git(cls, git_elem: ET.Element) -> GitSettings:
        values = {}
        for field in fields(GitSettings):
            text = cls._get_text(git_elem, GIT_ELEMENTS[field.name]).strip()
            if not text:
                continue
            if field.name in SECRET_FIELDS:
                values[field.name] = decrypt_secret(text)
            elif field.type in (int, "int"):
                values[field.name] = int(text)
            elif field.type in (float, "float"):
                values[field.name] = float(text)
            else:
                values[field.name] = text
        return GitSettings(**values)

    def save(self) -> None:
        """Write configuration.xml, creating its directory if needed."""
        if self.config is None:
            raise ValueError("No configuration to save")

        logger.debug("Saving configuration to %s", self.config_path)
        AppPaths.ensure_config_dir(self.config_path.parent)

        settings = self.config.settings
        root = ET.Element("GitMC", version="1.0")

        settings_elem = ET.SubElement(root, "Settings")
        ET.SubElement(settings_elem, "DataDirectory").text = str(settings.data_dir) if settings.data_dir else ""
        ET.SubElement(settings_elem, "DebugLogging").text = str(settings.debug_logging).lower()

        codec_elem = ET.SubElement(settings_elem, "Codec")
        ET.SubElement(codec_elem, "MaxDepth").text = str(settings.codec.max_depth)
        ET.SubElement(codec_elem, "MaxDecodedSize").text = str(settings.codec.max_size)

        git_elem = ET.SubElement(settings_elem, "Git")
        for name, tag in GIT_ELEMENTS.items():
            value = getattr(settings.git, name)
            if name in SECRET_FIELDS:
                value = encrypt_secret(value)
            elif isinstance(value, float):
                value = repr(value)
            ET.SubElement(git_elem, tag).text = str(value)

        self.config_path.write_text(to_pretty_xml(root), encoding="utf-8")

    def create_default(self, data_dir: Optional[Path] = None) -> AppConfiguration:
        """Create a default configuration.

        Args:
            data_dir: Where the registry and working trees live; defaults to
                the directory holding configuration.xml
        """
        self.config = AppConfiguration(
            settings=Settings(data_dir=data_dir or self.config_path.parent),
        )
        return self.config

    @staticmethod
    def _get_text(parent: ET.Element, tag: str, default: str = "") -> str:
        elem = parent.find(tag)
        return elem.text if elem is not None and elem.text else default
