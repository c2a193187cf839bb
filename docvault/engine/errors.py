"""
DocVault Error Hierarchy: Structured exceptions for the repository engine.

Every error carries the node or version it concerns (``entity_id``) and the
acting user (``actor_id``) when known, so failures can be logged and shown to
callers without re-parsing the message.

Hierarchy:
    DocVaultError
    ├── ValidationError      - Malformed input (empty name, wrong kind, ...)
    ├── NotFoundError        - Node or version id does not exist
    ├── PermissionDenied     - Mutation or read not allowed for this actor
    ├── StorageError         - Blob store put/get/delete failed
    ├── PartialCascadeError  - Some but not all rows of a cascade were written
    └── ConfigError          - Invalid docvault.yaml
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class DocVaultError(Exception):
    """
    Base error for all repository engine failures.
    All context is serializable to JSON.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.entity_id: Optional[str] = context.get("entity_id")
        self.entity_type: Optional[str] = context.get("entity_type")
        self.actor_id: Optional[str] = context.get("actor_id")
        self.operation: Optional[str] = context.get("operation")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "actor_id": self.actor_id,
            "operation": self.operation,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("entity_id", "entity_type", "actor_id", "operation")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.entity_id:
            parts.append(f"entity_id={self.entity_id}")
        if self.actor_id:
            parts.append(f"actor_id={self.actor_id}")
        return " | ".join(parts)


class ValidationError(DocVaultError):
    """
    Input validation failed (empty name, wrong kind for the operation,
    inconsistent visibility payload). Includes field-level details.
    """

    def __init__(self, message: str, **context: Any):
        self.validation_errors: Optional[list] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d


class NotFoundError(DocVaultError):
    """Node or version id does not exist."""
    pass


class PermissionDenied(DocVaultError):
    """
    The actor may not perform this operation on the node.
    Includes the permission that was required ("owner", "write", "view").
    """

    def __init__(self, message: str, **context: Any):
        self.required_permission: Optional[str] = context.get("required_permission")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["required_permission"] = self.required_permission
        return d


class StorageError(DocVaultError):
    """Blob store call failed."""

    def __init__(self, message: str, **context: Any):
        self.paths: List[str] = list(context.get("paths") or [])
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["paths"] = self.paths
        return d


class PartialCascadeError(DocVaultError):
    """
    A multi-row cascade (soft delete / restore) wrote some batches but not
    all of them. ``updated_ids`` were written, ``failed_ids`` were not.
    """

    def __init__(self, message: str, **context: Any):
        self.updated_ids: List[str] = list(context.get("updated_ids") or [])
        self.failed_ids: List[str] = list(context.get("failed_ids") or [])
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["updated_ids"] = self.updated_ids
        d["failed_ids"] = self.failed_ids
        return d


class ConfigError(DocVaultError):
    """Configuration error - invalid docvault.yaml."""
    pass
