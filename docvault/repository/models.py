"""
DocVault Repository Models: Pydantic read/write models and closed enumerations.

Node: a file or folder as returned to callers (detached from the session).
Version: an archived snapshot of a file's prior content.
NodeCreate / NodePatch: validated write payloads for the Node Store.

Visibility, kind, category and notification category are closed enumerations;
every boundary converts strings into them, so unknown values fail validation
instead of silently producing an unreachable node.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class NodeKind(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class Visibility(str, Enum):
    EVERYONE = "everyone"
    SPECIFIC = "specific"
    PRIVATE = "private"


class Category(str, Enum):
    GENERAL_BOARD_DOCUMENTS = "General Board Documents"
    MEETING_MINUTES = "Meeting Minutes"
    FINANCIAL_REPORTS = "Financial Reports"
    CURRICULUM_REVIEW = "Curriculum Review"
    RESEARCH_PROPOSALS = "Research Proposals"
    OTHERS = "Others"


class BrowseGroup(str, Enum):
    """Groups offered by the category browser."""
    DOCUMENTS = "Documents"
    IMAGES = "Images"
    VIDEOS = "Videos"
    AUDIO = "Audio"
    RESEARCH = "Research"
    OTHERS = "Others"


class NotificationCategory(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    FILE = "file"
    COMMENT = "comment"


GROUP_EXTENSIONS: Dict[BrowseGroup, tuple] = {
    BrowseGroup.IMAGES: (".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp"),
    BrowseGroup.VIDEOS: (".mp4", ".mov", ".avi", ".webm"),
    BrowseGroup.AUDIO: (".mp3", ".wav", ".m4a"),
    BrowseGroup.DOCUMENTS: (".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".txt"),
}

# Categories that count as "Documents" in the browser even without a document extension
DOCUMENT_CATEGORIES = frozenset({
    Category.GENERAL_BOARD_DOCUMENTS,
    Category.MEETING_MINUTES,
    Category.FINANCIAL_REPORTS,
    Category.CURRICULUM_REVIEW,
})


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

class Node(BaseModel):
    """A file or folder record, detached from the store."""

    id: str = Field(description="Opaque immutable identifier")
    name: str = Field(description="Display name")
    kind: NodeKind
    parent_id: Optional[str] = Field(default=None, description="None = repository root")
    owner_id: str = Field(description="Creating user")
    visibility: Visibility = Visibility.PRIVATE
    shared_with: FrozenSet[str] = Field(default_factory=frozenset)
    category: Category = Category.OTHERS
    content_locator: Optional[str] = None
    mime_type: Optional[str] = None
    size: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    trash_root_id: Optional[str] = None
    is_pinned: bool = False

    @property
    def is_folder(self) -> bool:
        return self.kind is NodeKind.FOLDER


class Version(BaseModel):
    """Immutable archived snapshot of a file's prior content."""

    id: str
    file_id: str
    version_number: int = Field(ge=1)
    name: str
    content_locator: Optional[str] = None
    mime_type: Optional[str] = None
    size: int = 0
    uploaded_by: str
    created_at: Optional[datetime] = None
    change_summary: Optional[str] = None


class AuditEntry(BaseModel):
    id: int
    actor_id: str
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class Notification(BaseModel):
    id: int
    user_id: str
    title: str
    message: str
    category: NotificationCategory = NotificationCategory.INFO
    is_read: bool = False
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Write payloads
# ---------------------------------------------------------------------------

def _clean_name(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not v:
        raise ValueError("name must not be empty")
    if "/" in v or "\\" in v or "\x00" in v:
        raise ValueError("name must not contain path separators")
    return v


class NodeCreate(BaseModel):
    """Payload for NodeStore.create()."""

    name: str = Field(max_length=255)
    kind: NodeKind
    owner_id: str = Field(min_length=1)
    parent_id: Optional[str] = None
    visibility: Visibility = Visibility.PRIVATE
    shared_with: FrozenSet[str] = Field(default_factory=frozenset)
    category: Category = Category.OTHERS
    content_locator: Optional[str] = None
    mime_type: Optional[str] = None
    size: int = Field(default=0, ge=0)

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Any) -> Any:
        return _clean_name(v) if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_invariants(self) -> "NodeCreate":
        if self.kind is NodeKind.FOLDER and self.content_locator is not None:
            raise ValueError("folders never carry a content_locator")
        if self.kind is NodeKind.FOLDER and self.size:
            raise ValueError("folders have no size")
        if self.visibility is Visibility.SPECIFIC and not self.shared_with:
            raise ValueError("visibility 'specific' requires at least one user in shared_with")
        if self.visibility is not Visibility.SPECIFIC and self.shared_with:
            raise ValueError("shared_with must be empty unless visibility is 'specific'")
        return self


class NodePatch(BaseModel):
    """
    Partial update for NodeStore.update(). Unset fields are left alone.

    Switching visibility away from 'specific' clears shared_with.
    """

    name: Optional[str] = Field(default=None, max_length=255)
    visibility: Optional[Visibility] = None
    shared_with: Optional[FrozenSet[str]] = None
    category: Optional[Category] = None
    content_locator: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)
    is_pinned: Optional[bool] = None

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Any) -> Any:
        return _clean_name(v) if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_visibility(self) -> "NodePatch":
        if self.visibility is Visibility.SPECIFIC and not self.shared_with:
            raise ValueError("visibility 'specific' requires at least one user in shared_with")
        if self.shared_with is not None and self.visibility is None:
            raise ValueError("shared_with can only be changed together with visibility")
        return self

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)
