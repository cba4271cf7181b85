"""Core module.

Shared components used across the API and the worker:
- Configuration management
- Settings accessor
"""

from portability.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    PortabilitySettings,
    S3Settings,
    ServiceSettings,
    Settings,
    SMTPSettings,
)
from portability.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "PortabilitySettings",
    "S3Settings",
    "SMTPSettings",
    "ServiceSettings",
    "Settings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
