"""Singleton settings accessor.

Settings are loaded from the environment on first use and cached for the
lifetime of the process; components receive the same immutable instance.

Usage:
    from portability.core.settings import get_settings

    settings = get_settings()
    if settings.portability.skip_approval:
        ...

To reload settings (e.g., in tests), use clear_settings_cache().
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from portability.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached application settings.

    Returns:
        Validated Settings instance.

    Raises:
        SystemExit: If settings cannot be loaded or fail validation.
    """
    try:
        logger.info("Loading application settings from environment")
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)
        return settings

    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        logger.critical(
            "Configuration validation failed:\n%s",
            "\n".join(error_messages),
        )
        raise SystemExit(1) from e

    except ConfigValidationError as e:
        logger.critical(
            "Configuration validation failed: %s (field: %s)",
            e.message,
            e.field or "unknown",
        )
        raise SystemExit(1) from e


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Use in tests to reset settings between test cases.
    """
    get_settings.cache_clear()
    logger.debug("Settings cache cleared")


def get_settings_safe() -> Settings | None:
    """Get settings without raising, returning None if they cannot be loaded."""
    try:
        return get_settings()
    except SystemExit:
        return None
