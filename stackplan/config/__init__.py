"""
Configuration Management.

This module provides centralized configuration using Pydantic Settings:

- settings: Main Settings class with environment variable loading
- loader: Load deployment units from JSON/YAML documents

Configuration sources (in order of precedence):
1. Environment variables
2. .env file
3. Default values

Example:
    from stackplan.config import get_settings, load_unit

    settings = get_settings()
    unit = load_unit("units/network.yaml")

    # Settings are validated at startup
    # Invalid configuration will raise ValidationError
"""

from stackplan.config.settings import Settings, get_settings
from stackplan.config.loader import (
    ConfigNotFoundError,
    ConfigValidationError,
    dump_unit,
    load_unit,
    load_units,
    parse_unit,
)

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    # Loader
    "ConfigNotFoundError",
    "ConfigValidationError",
    "dump_unit",
    "load_unit",
    "load_units",
    "parse_unit",
]
