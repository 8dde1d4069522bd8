"""Configuration management for SecretOps CLI."""

from .manager import ConfigManager
from .schemas import MAIN_CONFIG_SCHEMA
from .validator import ConfigValidationError, ConfigValidator

__all__ = ["ConfigManager", "ConfigValidationError", "ConfigValidator", "MAIN_CONFIG_SCHEMA"]
