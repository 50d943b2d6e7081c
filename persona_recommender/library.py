"""Per-user library cache: normalized items with last-known-good fallback."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Mapping

from persona_recommender.errors import PersistenceUnavailableError
from persona_recommender.models import ContextualItem
from persona_recommender.normalizer import normalize_items
from persona_recommender.settings import TuningSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LibrarySnapshot:
    """Normalized library of one user as of the last successful load."""

    items: tuple[ContextualItem, ...]
    skipped: int = 0


_EMPTY = LibrarySnapshot(items=())

DEFAULT_MAX_USERS = 10_000


class LibraryCache:
    """Loads and caches each user's normalized library.

    :meth:`refresh` reads the raw records from the repository and replaces
    the cached snapshot.  If the repository is unavailable the existing
    snapshot is kept and returned, so scoring can continue on the last
    known good data.

    Snapshots are kept for at most *max_users* users; the least recently
    used one is evicted first.  All public methods are thread-safe.

    Args:
        repository: Any object with a ``get_library(user_id)`` method.
        tuning: Supplies the auto-tagging aggressiveness used when
            normalizing records.
        max_users: Number of user snapshots retained.
    """

    def __init__(
        self,
        repository: Any,
        tuning: TuningSettings | None = None,
        max_users: int = DEFAULT_MAX_USERS,
    ) -> None:
        if max_users < 1:
            raise ValueError("max_users must be at least 1")
        self._repository = repository
        self._tuning = tuning or TuningSettings()
        self._max_users = max_users
        self._lock = threading.RLock()
        self._snapshots: OrderedDict[str, LibrarySnapshot] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshots)

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def refresh(self, user_id: str) -> LibrarySnapshot:
        """Reload *user_id*'s library from the repository.

        Returns:
            The fresh snapshot.

        Raises:
            PersistenceUnavailableError: If the repository could not be
                reached.  The previously cached snapshot is left intact.
        """
        try:
            records = self._repository.get_library(user_id)
        except PersistenceUnavailableError:
            logger.warning(
                "Library refresh failed for user %r; keeping %d cached item(s).",
                user_id,
                len(self.cached(user_id).items),
            )
            raise
        snapshot = self.load(user_id, records)
        logger.debug(
            "Library refreshed for user %r: %d item(s), %d skipped.",
            user_id,
            len(snapshot.items),
            snapshot.skipped,
        )
        return snapshot

    def load(self, user_id: str, records: list[Mapping[str, Any]]) -> LibrarySnapshot:
        """Normalize *records* and cache them as *user_id*'s snapshot."""
        items, skipped = normalize_items(records, self._tuning)
        snapshot = LibrarySnapshot(items=tuple(items), skipped=skipped)
        with self._lock:
            self._snapshots[user_id] = snapshot
            self._snapshots.move_to_end(user_id)
            while len(self._snapshots) > self._max_users:
                self._snapshots.popitem(last=False)
        return snapshot

    def get_items(self, user_id: str) -> tuple[ContextualItem, ...]:
        """Return the user's items, refreshing when reachable.

        Falls back to the cached snapshot (possibly empty) when the
        repository is unavailable.
        """
        try:
            return self.refresh(user_id).items
        except PersistenceUnavailableError:
            return self.cached(user_id).items

    def cached(self, user_id: str) -> LibrarySnapshot:
        """Return the cached snapshot without touching the repository."""
        with self._lock:
            snapshot = self._snapshots.get(user_id)
            if snapshot is None:
                return _EMPTY
            self._snapshots.move_to_end(user_id)
            return snapshot

    def get_item(self, user_id: str, item_id: str) -> ContextualItem | None:
        """Look up one cached item by id, or ``None`` if unknown."""
        for item in self.cached(user_id).items:
            if item.item_id == item_id:
                return item
        return None

    def evict(self, user_id: str) -> None:
        with self._lock:
            self._snapshots.pop(user_id, None)
