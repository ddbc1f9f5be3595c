"""jobhost core module.

Shared components used across the store, dispatcher and worker:
- Configuration management
- Cached settings accessor
"""

from jobhost.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    RetrySettings,
    Settings,
    StoreBackend,
    WorkerSettings,
)
from jobhost.core.settings import (
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "RetrySettings",
    "Settings",
    "StoreBackend",
    "WorkerSettings",
    "clear_settings_cache",
    "get_settings",
]
