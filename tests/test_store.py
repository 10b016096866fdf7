"""
SQLite secret store - CRUD, conditional updates and the change feed.
"""

import threading

import pytest

from src.core.errors import ConflictError, NotFoundError, StoreError
from src.core.schema import EVENT_ADDED, EVENT_DELETED, EVENT_MODIFIED, GENERATE_ANNOTATION, REGENERATE_ANNOTATION
from src.core.store import SQLiteSecretStore


@pytest.fixture
def store(tmp_path):
    return SQLiteSecretStore(str(tmp_path / "data" / "secrets.db"), poll_interval_sec=0.01)


class TestSecretCrud:
    """Test create/get/delete."""

    def test_health_check(self, store):
        assert store.health_check() == True

    def test_create_and_get(self, store):
        created = store.create_secret(
            "default", "db",
            annotations={GENERATE_ANNOTATION: "password"},
            data={"user": b"admin"},
            manifest={"type": "Opaque"},
        )
        fetched = store.get_secret("default", "db")

        assert fetched == created
        assert fetched.data == {"user": b"admin"}
        assert fetched.manifest == {"type": "Opaque"}
        assert fetched.resource_version

    def test_get_missing(self, store):
        assert store.get_secret("default", "nope") is None

    def test_create_duplicate(self, store):
        store.create_secret("default", "db")
        with pytest.raises(StoreError, match="already exists"):
            store.create_secret("default", "db")

    def test_same_name_different_namespace(self, store):
        store.create_secret("a", "db")
        store.create_secret("b", "db")
        assert store.get_secret("a", "db") is not None
        assert store.get_secret("b", "db") is not None

    def test_delete(self, store):
        store.create_secret("default", "db")
        assert store.delete_secret("default", "db") == True
        assert store.get_secret("default", "db") is None
        assert store.delete_secret("default", "db") == False

    def test_binary_data_round_trip(self, store):
        store.create_secret("default", "bin", data={"blob": bytes(range(256))})
        assert store.get_secret("default", "bin").data["blob"] == bytes(range(256))


class TestConditionalUpdate:
    """Test optimistic concurrency on update."""

    def test_update_bumps_version(self, store):
        record = store.create_secret("default", "db")
        record.annotations["x"] = "y"
        updated = store.update_secret(record)

        assert int(updated.resource_version) > int(record.resource_version)
        assert store.get_secret("default", "db").annotations == {"x": "y"}

    def test_stale_version_conflict(self, store):
        record = store.create_secret("default", "db")
        store.update_secret(record)

        record.annotations["x"] = "y"
        with pytest.raises(ConflictError) as exc_info:
            store.update_secret(record)

        assert exc_info.value.expected_version == record.resource_version
        assert store.get_secret("default", "db").annotations == {}

    def test_update_missing(self, store):
        record = store.create_secret("default", "db")
        store.delete_secret("default", "db")

        with pytest.raises(NotFoundError):
            store.update_secret(record)

    def test_request_regeneration(self, store):
        store.create_secret("default", "db", annotations={GENERATE_ANNOTATION: "password"})
        updated = store.request_regeneration("default", "db")
        assert REGENERATE_ANNOTATION in updated.annotations

    def test_request_regeneration_missing(self, store):
        with pytest.raises(NotFoundError):
            store.request_regeneration("default", "db")


class TestListWatch:
    """Test listing and the change feed."""

    def test_list_scoped(self, store):
        store.create_secret("a", "one")
        store.create_secret("b", "two")

        records, version = store.list_secrets("a")
        assert [r.name for r in records] == ["one"]

        all_records, all_version = store.list_secrets("")
        assert sorted(r.name for r in all_records) == ["one", "two"]
        assert version == all_version == store.current_version()

    def test_watch_after_version(self, store):
        store.create_secret("default", "before")
        _, version = store.list_secrets("default")

        record = store.create_secret("default", "db")
        store.update_secret(record)
        store.delete_secret("default", "db")

        events = list(store.watch_secrets("default", version, timeout_sec=1))

        assert [e.type for e in events] == [EVENT_ADDED, EVENT_MODIFIED, EVENT_DELETED]
        assert all(e.record.name == "db" for e in events)
        assert [int(e.version) for e in events] == sorted(int(e.version) for e in events)

    def test_watch_filters_namespace(self, store):
        _, version = store.list_secrets("")
        store.create_secret("other", "x")
        store.create_secret("default", "y")

        events = list(store.watch_secrets("default", version, timeout_sec=1))
        assert [e.record.name for e in events] == ["y"]

    def test_watch_event_version_matches_record(self, store):
        _, version = store.list_secrets("")
        created = store.create_secret("default", "db")

        event = next(iter(store.watch_secrets("default", version, timeout_sec=1)))
        assert event.record.resource_version == created.resource_version == event.version

    def test_watch_stops_on_event(self, store):
        stop = threading.Event()
        stop.set()
        assert list(store.watch_secrets("default", "0", timeout_sec=30, stop_event=stop)) == []
