"""
Change dispatcher - feeds secret snapshots from the store's list/watch feed to the reconciler.

One snapshot is reconciled to completion before the next is taken. A full resync (list)
runs at startup, after the resync interval, and whenever the watch version expires.
"""

import threading
import time
from typing import Dict, Optional

from .errors import StoreError, WatchExpiredError
from .reconcile import SecretReconciler
from .schema import (
    ACTION_FAILED,
    ACTION_NOOP,
    ACTION_REGENERATED,
    EVENT_ADDED,
    EVENT_DELETED,
    EVENT_MODIFIED,
    ChangeEvent,
    ReconcileResult,
)
from util.logging import logger


class ChangeDispatcher:
    """Sequential list/watch loop around a SecretReconciler."""

    def __init__(self, store, reconciler: SecretReconciler, namespace: str = "",
                 resync_interval_sec: int = 1800, watch_timeout_sec: int = 60, error_backoff_sec: int = 5):
        if resync_interval_sec < 1:
            raise ValueError(f"Resync interval must be >= 1 second: {resync_interval_sec}")
        if watch_timeout_sec < 1:
            raise ValueError(f"Watch timeout must be >= 1 second: {watch_timeout_sec}")

        self.store = store
        self.reconciler = reconciler
        self.namespace = namespace
        self.resync_interval_sec = resync_interval_sec
        self.watch_timeout_sec = watch_timeout_sec
        self.error_backoff_sec = error_backoff_sec

        self.running = False
        self.shutdown_event = threading.Event()
        self.version = ""
        self.last_resync: Optional[float] = None
        self.started_at: Optional[float] = None
        self.stats: Dict[str, int] = {
            "events": 0,
            "deletes_ignored": 0,
            "resyncs": 0,
            "store_errors": 0,
            "loop_errors": 0,
            ACTION_NOOP: 0,
            ACTION_REGENERATED: 0,
            ACTION_FAILED: 0,
        }

    def _reconcile(self, record):
        try:
            result = self.reconciler.reconcile(record)
        except Exception as e:
            # Error isolation - one bad record must not end the loop
            error = {"error_type": type(e).__name__, "message": str(e)}
            logger.log_reconcile_failure(record.identity, "reconcile", error)
            result = ReconcileResult(action=ACTION_FAILED, record=record, reason="unexpected error", error=error)

        self.stats[result.action] += 1
        return result

    def handle_event(self, event: ChangeEvent):
        """Reconcile a created/updated snapshot. Deletions are ignored."""
        self.stats["events"] += 1
        if event.version:
            self.version = event.version

        if event.type == EVENT_DELETED:
            self.stats["deletes_ignored"] += 1
            return None

        if event.type not in (EVENT_ADDED, EVENT_MODIFIED):
            logger.debug(f"Ignoring watch event of type {event.type}")
            return None

        return self._reconcile(event.record)

    def resync_due(self) -> bool:
        """Check if a full resync should run before the next watch window."""
        if self.last_resync is None:
            return True
        return time.monotonic() - self.last_resync >= self.resync_interval_sec

    def resync(self):
        """List every secret in scope and reconcile each one."""
        start_time = time.monotonic()
        records, version = self.store.list_secrets(self.namespace)

        before = dict(self.stats)
        for record in records:
            if self.shutdown_event.is_set():
                break
            self._reconcile(record)

        self.version = version
        self.last_resync = time.monotonic()
        self.stats["resyncs"] += 1

        logger.log_dispatch_cycle("resync", start_time, self.last_resync, details={
            "namespace": self.namespace or "*",
            "secrets": len(records),
            "regenerated": self.stats[ACTION_REGENERATED] - before[ACTION_REGENERATED],
            "failed": self.stats[ACTION_FAILED] - before[ACTION_FAILED],
            "version": version,
        })

    def run_once(self):
        """Resync if due, then consume one watch window."""
        if self.resync_due():
            self.resync()

        start_time = time.monotonic()
        handled = 0
        events = self.store.watch_secrets(self.namespace, self.version, self.watch_timeout_sec, self.shutdown_event)
        for event in events:
            self.handle_event(event)
            handled += 1
            if self.shutdown_event.is_set() or self.resync_due():
                break

        logger.log_dispatch_cycle("watch", start_time, time.monotonic(), details={
            "events": handled,
            "version": self.version,
        })

    def start(self):
        """
        Run the dispatch loop until stop() is called.

        Store errors and any other failed cycle are logged and retried after a
        backoff; an expired watch version forces a fresh list.
        """
        if self.running:
            raise RuntimeError("Dispatcher already running")

        self.running = True
        self.shutdown_event.clear()
        self.started_at = time.monotonic()
        logger.info(f"Starting secret dispatcher (namespace: {self.namespace or 'all'})")

        try:
            while not self.shutdown_event.is_set():
                try:
                    self.run_once()
                except WatchExpiredError as e:
                    logger.log_store_operation("watch", status="expired", details=e.to_dict())
                    self.version = ""
                    self.last_resync = None
                except StoreError as e:
                    self.stats["store_errors"] += 1
                    logger.log_store_operation("watch", status="failed", details=e.to_dict())
                    self.shutdown_event.wait(self.error_backoff_sec)
                except Exception as e:
                    # Error isolation - log error but keep the loop alive
                    self.stats["loop_errors"] += 1
                    logger.error(f"Dispatch cycle failed: {type(e).__name__}: {e}")
                    self.shutdown_event.wait(self.error_backoff_sec)
        except KeyboardInterrupt:
            logger.info("Secret dispatcher interrupted by user")
        finally:
            self.running = False
            logger.info("Secret dispatcher stopped")

    def stop(self):
        """Stop accepting snapshots; the reconcile in flight is allowed to finish."""
        if not self.running:
            logger.info("Secret dispatcher not running")
        self.shutdown_event.set()

    def get_status(self) -> Dict:
        """Return current dispatcher status for monitoring."""
        now = time.monotonic()
        return {
            "status": "running" if self.running else "stopped",
            "namespace": self.namespace or "*",
            "version": self.version,
            "last_resync_age_sec": round(now - self.last_resync, 1) if self.last_resync else None,
            "uptime_sec": round(now - self.started_at, 1) if self.started_at else 0,
            "stats": dict(self.stats),
        }
