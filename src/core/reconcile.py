"""
Secret reconciliation - decides whether a managed secret needs a generated value and writes it back.

The generated-at annotation is what lets the reconciler recognise its own write when the store
re-delivers it; the regenerate annotation re-opens generation exactly once and is cleared by the
same write that stores the new value.
"""

from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from .config import GeneratorConfig
from .errors import StoreError, TokenGenerationError
from .schema import (
    ACTION_FAILED,
    ACTION_NOOP,
    ACTION_REGENERATED,
    GENERATE_ANNOTATION,
    GENERATED_AT_ANNOTATION,
    REGENERATE_ANNOTATION,
    ReconcileResult,
    SecretRecord,
)
from .tokens import generate_token
from util.logging import logger


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SecretReconciler:
    """
    Reconciles one secret snapshot at a time.

    Holds no state between calls; everything needed for a decision lives in the
    record's annotations. Store and entropy failures are logged and reported as a
    failed result, never raised, so one bad record cannot stall the others.
    """

    def __init__(self, config: GeneratorConfig, store, clock: Optional[Callable[[], datetime]] = None,
                 token_source: Callable[[int, str], str] = generate_token):
        self.config = config
        self.store = store
        self.clock = clock or _utc_now
        self.token_source = token_source

    def needs_generation(self, record: SecretRecord) -> Tuple[bool, str]:
        """Return (needs_generation, reason) based purely on the record's annotations."""
        annotations = record.annotations or {}

        if GENERATE_ANNOTATION not in annotations:
            return False, "unmanaged"

        if not annotations[GENERATE_ANNOTATION]:
            return False, "empty generate target"

        if REGENERATE_ANNOTATION in annotations:
            return True, "regeneration requested"

        if GENERATED_AT_ANNOTATION not in annotations:
            return True, "not yet generated"

        return False, "settled"

    def plan(self, record: SecretRecord, token: str, now: datetime) -> SecretRecord:
        """
        Build the updated snapshot for a record that needs generation.

        Works on a copy: the resource version and every unrelated field are carried over,
        only the target data key and the two control annotations change.
        """
        updated = record.copy()
        target = updated.annotations[GENERATE_ANNOTATION]

        updated.annotations.pop(REGENERATE_ANNOTATION, None)
        updated.annotations[GENERATED_AT_ANNOTATION] = now.isoformat()
        updated.data[target] = token.encode("utf-8")

        return updated

    def reconcile(self, record: SecretRecord) -> ReconcileResult:
        """Run the full decision for one snapshot: decide, generate, write back."""
        needed, reason = self.needs_generation(record)

        if not needed:
            if reason == "empty generate target":
                logger.warning(f"Secret {record.identity} has an empty {GENERATE_ANNOTATION} value; "
                               "ignoring it as unmanaged, no data key will be generated")
            elif reason == "settled":
                logger.debug(f"Secret {record.identity} does not need updating")
            return ReconcileResult(action=ACTION_NOOP, record=record, reason=reason)

        logger.log_reconcile_decision(record.identity, "generate", reason)
        target = record.annotations[GENERATE_ANNOTATION]

        try:
            token = self.token_source(self.config.secret_length, self.config.alphabet)
        except TokenGenerationError as e:
            e.namespace, e.name = record.namespace, record.name
            logger.log_reconcile_failure(record.identity, "generate", e.to_dict())
            return ReconcileResult(action=ACTION_FAILED, record=record, reason=reason, error=e.to_dict())

        updated = self.plan(record, token, self.clock())

        try:
            persisted = self.store.update_secret(updated)
        except StoreError as e:
            logger.log_reconcile_failure(record.identity, "update", e.to_dict())
            return ReconcileResult(action=ACTION_FAILED, record=record, reason=reason, error=e.to_dict())

        logger.log_secret_generated(record.identity, target, self.config.secret_length,
                                    persisted.resource_version)
        return ReconcileResult(action=ACTION_REGENERATED, record=persisted, reason=reason)
