"""
DocVault Views: refetching listings kept fresh by the change feed.

A view wraps one read operation of the Repository Service and caches its
last result in ``items``. The ViewRegistry subscribes to the change feed
once and refreshes every open view whose tables saw a change. Refreshing
is a full refetch, so duplicate or reordered events are harmless.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Tuple, Union

from docvault.engine.errors import DocVaultError
from docvault.repository.fanout import ChangeEvent, ChangeFeed, ChangeKind, Subscription
from docvault.repository.models import BrowseGroup

if TYPE_CHECKING:
    from docvault.repository.service import RepositoryService

logger = logging.getLogger("docvault.repository.views")


class View:
    """Base view: a loader plus its last result."""

    tables: Tuple[str, ...] = ("nodes",)

    def __init__(self, loader: Callable[[], List[Any]], name: str = "view"):
        self._loader = loader
        self.name = name
        self.items: List[Any] = []
        self.refresh_count = 0
        self.error: Optional[DocVaultError] = None

    def refresh(self) -> List[Any]:
        """
        Refetch. A permission or not-found failure (the folder was trashed or
        unshared) empties the view and keeps the error for the caller.
        """
        try:
            self.items = self._loader()
            self.error = None
        except DocVaultError as e:
            logger.info(f"View {self.name} could not refresh: {e}")
            self.items = []
            self.error = e
        self.refresh_count += 1
        return self.items

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name} items={len(self.items)}>"


class CurrentFolderView(View):
    def __init__(self, service: "RepositoryService", viewer_id: Optional[str], parent_id: Optional[str] = None):
        super().__init__(
            lambda: service.list_children(parent_id, viewer_id),
            name=f"folder:{parent_id or 'root'}",
        )
        self.parent_id = parent_id


class RecentView(View):
    def __init__(self, service: "RepositoryService", viewer_id: Optional[str], limit: Optional[int] = None):
        super().__init__(lambda: service.list_recent(viewer_id, limit), name="recent")


class TrashView(View):
    def __init__(self, service: "RepositoryService", owner_id: str):
        super().__init__(lambda: service.list_trash(owner_id), name="trash")


class SharedWithMeView(View):
    def __init__(self, service: "RepositoryService", viewer_id: str, parent_id: Optional[str] = None):
        super().__init__(
            lambda: service.list_shared_with_me(viewer_id, parent_id),
            name=f"shared:{parent_id or 'root'}",
        )


class CategoryView(View):
    def __init__(self, service: "RepositoryService", viewer_id: Optional[str], group: Union[BrowseGroup, str]):
        group = BrowseGroup(group)
        super().__init__(lambda: service.list_by_category(viewer_id, group), name=f"category:{group.value}")


class VersionHistoryView(View):
    tables = ("node_versions",)

    def __init__(self, service: "RepositoryService", viewer_id: Optional[str], file_id: str):
        super().__init__(lambda: service.list_versions(file_id, viewer_id), name=f"versions:{file_id}")


class ViewRegistry:
    """Keeps the set of open views and refreshes them on change events."""

    def __init__(self, feed: ChangeFeed):
        self._feed = feed
        self._views: List[View] = []
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = [
            feed.subscribe("nodes", ChangeKind.ALL, self._on_change, coalesce=True),
            feed.subscribe("node_versions", ChangeKind.ALL, self._on_change, coalesce=True),
        ]

    def open(self, view: View) -> View:
        """Register a view and load it immediately."""
        view.refresh()
        with self._lock:
            self._views.append(view)
        return view

    def close(self, view: View) -> None:
        with self._lock:
            if view in self._views:
                self._views.remove(view)

    @property
    def views(self) -> List[View]:
        with self._lock:
            return list(self._views)

    def refresh_all(self, table: Optional[str] = None) -> int:
        refreshed = 0
        for view in self.views:
            if table is None or table in view.tables:
                view.refresh()
                refreshed += 1
        return refreshed

    def _on_change(self, change: ChangeEvent) -> None:
        count = self.refresh_all(change.table)
        logger.debug(f"{change.kind.name} on {change.table}/{change.row_id}: refreshed {count} view(s)")

    def shutdown(self) -> None:
        for sub in self._subscriptions:
            self._feed.unsubscribe(sub)
        self._subscriptions.clear()
        with self._lock:
            self._views.clear()
