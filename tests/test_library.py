"""Tests for persona_recommender.library.LibraryCache."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from persona_recommender.errors import PersistenceUnavailableError
from persona_recommender.library import LibraryCache
from persona_recommender.settings import TuningSettings


def _make_cache(records) -> tuple[LibraryCache, MagicMock]:
    repo = MagicMock()
    repo.get_library.return_value = records
    return LibraryCache(repo), repo


class TestRefresh:
    def test_normalizes_and_caches(self, library_records) -> None:
        cache, _ = _make_cache(library_records)
        snapshot = cache.refresh("u1")
        assert len(snapshot.items) == 4
        assert snapshot.skipped == 1
        assert cache.cached("u1") == snapshot

    def test_failure_keeps_last_known_good(self, library_records) -> None:
        cache, repo = _make_cache(library_records)
        cache.refresh("u1")
        repo.get_library.side_effect = PersistenceUnavailableError("down")
        with pytest.raises(PersistenceUnavailableError):
            cache.refresh("u1")
        assert len(cache.cached("u1").items) == 4

    def test_get_items_falls_back_to_cache(self, library_records) -> None:
        cache, repo = _make_cache(library_records)
        cache.refresh("u1")
        repo.get_library.side_effect = PersistenceUnavailableError("down")
        assert [i.item_id for i in cache.get_items("u1")][:1] == ["g_stardew"]

    def test_unknown_user_with_store_down_is_empty(self) -> None:
        cache, repo = _make_cache([])
        repo.get_library.side_effect = PersistenceUnavailableError("down")
        assert cache.get_items("nobody") == ()

    def test_uses_tuning_aggressiveness(self) -> None:
        repo = MagicMock()
        repo.get_library.return_value = [{"id": "g1", "title": "Doom", "moods": ["energetic"]}]
        cache = LibraryCache(repo, TuningSettings(auto_tagging_aggressiveness=0.0))
        (item,) = cache.refresh("u1").items
        assert [t.value for t in item.recommended_times] == ["evening"]


class TestLookup:
    def test_get_item(self, library_records) -> None:
        cache, _ = _make_cache(library_records)
        cache.refresh("u1")
        assert cache.get_item("u1", "g_doom").title == "DOOM Eternal"
        assert cache.get_item("u1", "missing") is None

    def test_evict(self, library_records) -> None:
        cache, _ = _make_cache(library_records)
        cache.refresh("u1")
        cache.evict("u1")
        assert cache.cached("u1").items == ()


class TestBounds:
    def test_least_recently_used_user_is_evicted(self, library_records) -> None:
        repo = MagicMock()
        repo.get_library.return_value = library_records
        cache = LibraryCache(repo, max_users=2)
        cache.refresh("u1")
        cache.refresh("u2")
        cache.cached("u1")
        cache.refresh("u3")
        assert len(cache) == 2
        assert cache.cached("u2").items == ()
        assert len(cache.cached("u1").items) == 4

    def test_miss_does_not_occupy_a_slot(self) -> None:
        cache, _ = _make_cache([])
        cache.cached("nobody")
        assert len(cache) == 0

    def test_rejects_non_positive_bound(self) -> None:
        with pytest.raises(ValueError):
            LibraryCache(MagicMock(), max_users=0)
