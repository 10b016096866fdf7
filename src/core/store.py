"""
Secret stores - conditional writes plus a list/watch change feed.

SQLiteSecretStore is the local backend: every write appends to secret_events, and the event
sequence number doubles as the resource version used for optimistic concurrency.
"""

import base64
import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Generator, Iterator, List, Optional, Tuple

from .config import ensure_db_directory
from .errors import ConflictError, NotFoundError, StoreError
from .schema import (
    EVENT_ADDED,
    EVENT_DELETED,
    EVENT_MODIFIED,
    REGENERATE_ANNOTATION,
    ChangeEvent,
    SecretRecord,
)
from util.logging import logger


class SecretStore(ABC):
    """Interface the dispatcher and reconciler consume."""

    @abstractmethod
    def list_secrets(self, namespace: str = "") -> Tuple[List[SecretRecord], str]:
        """Return all records in scope and the store version the listing reflects."""

    @abstractmethod
    def watch_secrets(self, namespace: str = "", since: str = "", timeout_sec: int = 60,
                      stop_event: Optional[threading.Event] = None) -> Iterator[ChangeEvent]:
        """Yield change events after `since` until the timeout elapses or stop_event is set."""

    @abstractmethod
    def update_secret(self, record: SecretRecord) -> SecretRecord:
        """
        Conditionally replace a record.

        Succeeds only if the stored resource version equals record.resource_version.

        Raises:
            ConflictError: stored version differs
            NotFoundError: record no longer exists
            StoreError: any other store failure
        """


def _encode_record(record: SecretRecord) -> Dict:
    return {
        "namespace": record.namespace,
        "name": record.name,
        "annotations": record.annotations,
        "data": {k: base64.b64encode(v).decode("ascii") for k, v in record.data.items()},
        "resource_version": record.resource_version,
        "manifest": record.manifest,
    }


def _decode_record(payload: Dict) -> SecretRecord:
    return SecretRecord(
        namespace=payload["namespace"],
        name=payload["name"],
        annotations=payload.get("annotations") or {},
        data={k: base64.b64decode(v) for k, v in (payload.get("data") or {}).items()},
        resource_version=str(payload.get("resource_version", "")),
        manifest=payload.get("manifest") or {},
    )


class SQLiteSecretStore(SecretStore):
    """SQLite-backed secret store with an append-only change feed."""

    def __init__(self, db_path: str, poll_interval_sec: float = 0.2):
        self.db_path = db_path
        self.poll_interval_sec = poll_interval_sec
        ensure_db_directory(db_path)
        self.init_db()

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a SQLite database connection."""
        conn = sqlite3.connect(self.db_path, timeout=10)
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self):
        """Initialize the database with required tables."""
        with self.get_db() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS secrets (
                    namespace TEXT NOT NULL,
                    name TEXT NOT NULL,
                    annotations TEXT NOT NULL,
                    data TEXT NOT NULL,
                    manifest TEXT,
                    resource_version INTEGER NOT NULL,
                    PRIMARY KEY (namespace, name)
                )
            ''')

            # Change feed; seq is the global resource version
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS secret_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    namespace TEXT NOT NULL,
                    name TEXT NOT NULL,
                    snapshot TEXT,
                    ts TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_secret_events_ns_seq ON secret_events(namespace, seq)')

            conn.commit()

    def _append_event(self, cursor: sqlite3.Cursor, event_type: str, namespace: str, name: str) -> int:
        cursor.execute(
            "INSERT INTO secret_events (event_type, namespace, name) VALUES (?, ?, ?)",
            (event_type, namespace, name)
        )
        return cursor.lastrowid

    def _finish_event(self, cursor: sqlite3.Cursor, seq: int, record: SecretRecord):
        cursor.execute(
            "UPDATE secret_events SET snapshot = ? WHERE seq = ?",
            (json.dumps(_encode_record(record)), seq)
        )

    @staticmethod
    def _row_to_record(row) -> SecretRecord:
        namespace, name, annotations, data, manifest, resource_version = row
        return SecretRecord(
            namespace=namespace,
            name=name,
            annotations=json.loads(annotations),
            data={k: base64.b64decode(v) for k, v in json.loads(data).items()},
            resource_version=str(resource_version),
            manifest=json.loads(manifest) if manifest else {},
        )

    def get_secret(self, namespace: str, name: str) -> Optional[SecretRecord]:
        """Get a record by identity."""
        try:
            with self.get_db() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT namespace, name, annotations, data, manifest, resource_version "
                    "FROM secrets WHERE namespace = ? AND name = ?",
                    (namespace, name)
                )
                row = cursor.fetchone()
                return self._row_to_record(row) if row else None
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read secret: {e}", namespace, name) from e

    def create_secret(self, namespace: str, name: str, annotations: Dict[str, str] = None,
                      data: Dict[str, bytes] = None, manifest: Dict = None) -> SecretRecord:
        """Create a new record. Raises StoreError if it already exists."""
        record = SecretRecord(
            namespace=namespace,
            name=name,
            annotations=dict(annotations or {}),
            data=dict(data or {}),
            manifest=dict(manifest or {}),
        )

        try:
            with self.get_db() as conn:
                cursor = conn.cursor()
                seq = self._append_event(cursor, EVENT_ADDED, namespace, name)
                record.resource_version = str(seq)
                try:
                    cursor.execute(
                        "INSERT INTO secrets (namespace, name, annotations, data, manifest, resource_version) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (namespace, name, json.dumps(record.annotations),
                         json.dumps(_encode_record(record)["data"]), json.dumps(record.manifest), seq)
                    )
                except sqlite3.IntegrityError:
                    conn.rollback()
                    raise StoreError(f"Secret {record.identity} already exists", namespace, name, status_code=409)
                self._finish_event(cursor, seq, record)
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to create secret: {e}", namespace, name) from e

        logger.log_store_operation("create", record.identity, details={"resource_version": record.resource_version})
        return record

    def update_secret(self, record: SecretRecord) -> SecretRecord:
        """Conditionally replace a record against its resource version."""
        updated = record.copy()

        try:
            with self.get_db() as conn:
                cursor = conn.cursor()
                seq = self._append_event(cursor, EVENT_MODIFIED, record.namespace, record.name)
                cursor.execute(
                    "UPDATE secrets SET annotations = ?, data = ?, manifest = ?, resource_version = ? "
                    "WHERE namespace = ? AND name = ? AND resource_version = ?",
                    (json.dumps(record.annotations), json.dumps(_encode_record(record)["data"]),
                     json.dumps(record.manifest), seq, record.namespace, record.name,
                     record.resource_version)
                )

                if cursor.rowcount == 0:
                    conn.rollback()
                    cursor.execute(
                        "SELECT resource_version FROM secrets WHERE namespace = ? AND name = ?",
                        (record.namespace, record.name)
                    )
                    if cursor.fetchone() is None:
                        raise NotFoundError(f"Secret {record.identity} not found", record.namespace, record.name)
                    raise ConflictError(
                        f"Secret {record.identity} was modified since version {record.resource_version}",
                        record.namespace, record.name, expected_version=record.resource_version
                    )

                updated.resource_version = str(seq)
                self._finish_event(cursor, seq, updated)
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to update secret: {e}", record.namespace, record.name) from e

        logger.log_store_operation("update", record.identity, details={"resource_version": updated.resource_version})
        return updated

    def delete_secret(self, namespace: str, name: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        existing = self.get_secret(namespace, name)
        if existing is None:
            return False

        try:
            with self.get_db() as conn:
                cursor = conn.cursor()
                seq = self._append_event(cursor, EVENT_DELETED, namespace, name)
                cursor.execute("DELETE FROM secrets WHERE namespace = ? AND name = ?", (namespace, name))
                if cursor.rowcount == 0:
                    conn.rollback()
                    return False
                existing.resource_version = str(seq)
                self._finish_event(cursor, seq, existing)
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete secret: {e}", namespace, name) from e

        logger.log_store_operation("delete", existing.identity)
        return True

    def request_regeneration(self, namespace: str, name: str) -> SecretRecord:
        """Set the regenerate annotation on a record, as an external actor would."""
        record = self.get_secret(namespace, name)
        if record is None:
            raise NotFoundError(f"Secret {namespace}/{name} not found", namespace, name)

        record.annotations[REGENERATE_ANNOTATION] = datetime.now(timezone.utc).isoformat()
        return self.update_secret(record)

    def current_version(self) -> str:
        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COALESCE(MAX(seq), 0) FROM secret_events")
            return str(cursor.fetchone()[0])

    def list_secrets(self, namespace: str = "") -> Tuple[List[SecretRecord], str]:
        """List all records in scope; empty namespace lists every namespace."""
        try:
            with self.get_db() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COALESCE(MAX(seq), 0) FROM secret_events")
                version = str(cursor.fetchone()[0])
                cursor.execute(
                    "SELECT namespace, name, annotations, data, manifest, resource_version FROM secrets "
                    "WHERE (? = '' OR namespace = ?) ORDER BY namespace, name",
                    (namespace, namespace)
                )
                records = [self._row_to_record(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list secrets: {e}") from e

        return records, version

    def watch_secrets(self, namespace: str = "", since: str = "", timeout_sec: int = 60,
                      stop_event: Optional[threading.Event] = None) -> Iterator[ChangeEvent]:
        """Poll the change feed for events after `since` until timeout or stop."""
        last_seq = int(since) if since else int(self.current_version())
        deadline = time.monotonic() + timeout_sec

        while time.monotonic() < deadline:
            if stop_event is not None and stop_event.is_set():
                return

            try:
                with self.get_db() as conn:
                    cursor = conn.cursor()
                    cursor.execute(
                        "SELECT seq, event_type, snapshot FROM secret_events "
                        "WHERE seq > ? AND snapshot IS NOT NULL AND (? = '' OR namespace = ?) ORDER BY seq",
                        (last_seq, namespace, namespace)
                    )
                    rows = cursor.fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to read change feed: {e}") from e

            for seq, event_type, snapshot in rows:
                last_seq = seq
                yield ChangeEvent(type=event_type, record=_decode_record(json.loads(snapshot)), version=str(seq))

            if not rows:
                if stop_event is not None:
                    stop_event.wait(self.poll_interval_sec)
                else:
                    time.sleep(self.poll_interval_sec)

    def health_check(self) -> bool:
        """Check database health."""
        try:
            with self.get_db() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
                table_names = [table[0] for table in cursor.fetchall()]
                return all(table in table_names for table in ['secrets', 'secret_events'])
        except sqlite3.Error:
            return False
