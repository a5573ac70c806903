"""Default paths for configuration, registry and working trees"""

import os
from pathlib import Path


def _default_home() -> Path:
    override = os.environ.get("GITMC_HOME")
    if override:
        return Path(os.path.expanduser(os.path.expandvars(override)))
    return Path.home() / ".gitmc"


class AppPaths:
    """Default locations used by the application.

    All paths live under a single data directory, ~/.gitmc by default.
    Set the GITMC_HOME environment variable to move it.
    """

    CONFIG_DIR = _default_home()
    CONFIG_FILE = CONFIG_DIR / "configuration.xml"
    LOG_FILE = CONFIG_DIR / "gitmc.log"

    @classmethod
    def expand_path(cls, path_str: str) -> Path:
        """Expand environment variables and ~ in a path string.

        Args:
            path_str: Path string potentially containing environment variables

        Returns:
            Path object with expanded variables
        """
        return Path(os.path.expanduser(os.path.expandvars(path_str)))

    @classmethod
    def ensure_config_dir(cls, config_dir: Path | None = None) -> Path:
        """Ensure the configuration directory exists.

        Returns:
            Path to the configuration directory
        """
        path = config_dir or cls.CONFIG_DIR
        path.mkdir(parents=True, exist_ok=True)
        return path
