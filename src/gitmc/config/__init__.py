"""Configuration management module.

Submodules:
    manager: ConfigurationManager for loading/saving XML configuration
    schema: Data classes defining configuration structure (Settings, GitSettings, etc.)
    paths: AppPaths with default locations for config, registry and working trees
    security: Token encryption/decryption using Fernet symmetric encryption
    path_validator: Path validation utilities to prevent dangerous file operations

The configuration is stored as XML in ~/.gitmc/configuration.xml.
"""

from .manager import ConfigurationManager
from .schema import AppConfiguration, CodecSettings, GitSettings, Settings
from .paths import AppPaths

__all__ = [
    "ConfigurationManager",
    "AppConfiguration",
    "CodecSettings",
    "GitSettings",
    "Settings",
    "AppPaths",
]
