"""DocVault Engine: Errors, configuration and structured logging."""

from docvault.engine.config import DocVaultConfig, get_config, load_config  # noqa: F401
from docvault.engine.errors import (  # noqa: F401
    ConfigError,
    DocVaultError,
    NotFoundError,
    PartialCascadeError,
    PermissionDenied,
    StorageError,
    ValidationError,
)

__all__ = [
    "DocVaultConfig",
    "get_config",
    "load_config",
    "DocVaultError",
    "ValidationError",
    "NotFoundError",
    "PermissionDenied",
    "StorageError",
    "PartialCascadeError",
    "ConfigError",
]
