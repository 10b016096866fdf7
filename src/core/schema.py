"""
Record types and wire validation for managed secrets.
Control annotations are the only signaling channel between external actors and the generator.
"""

import base64
import binascii
import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

# Control annotations (wire contract, exact literals)
GENERATE_ANNOTATION = "secret-generator.v1.mittwald.de/autogenerate"
GENERATED_AT_ANNOTATION = "secret-generator.v1.mittwald.de/autogenerate-generated-at"
REGENERATE_ANNOTATION = "secret-generator.v1.mittwald.de/regenerate"

# Change event types delivered by a store watch
EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"

# Reconcile outcomes
ACTION_NOOP = "noop"
ACTION_REGENERATED = "regenerated"
ACTION_FAILED = "failed"


@dataclass
class SecretRecord:
    namespace: str
    name: str
    annotations: Dict[str, str] = field(default_factory=dict)
    data: Dict[str, bytes] = field(default_factory=dict)
    resource_version: str = ""
    manifest: Dict[str, Any] = field(default_factory=dict)  # full wire body, unrelated fields preserved

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"

    def copy(self) -> "SecretRecord":
        """Deep copy so the received snapshot is never mutated."""
        return copy.deepcopy(self)


@dataclass
class ChangeEvent:
    type: str  # ADDED, MODIFIED, DELETED
    record: SecretRecord
    version: str = ""


@dataclass
class ReconcileResult:
    action: str  # noop, regenerated, failed
    record: SecretRecord
    reason: str
    error: Optional[Dict[str, Any]] = None

    @property
    def changed(self) -> bool:
        return self.action == ACTION_REGENERATED


class ObjectMetadata(BaseModel):
    """Subset of Kubernetes ObjectMeta the generator relies on."""
    model_config = ConfigDict(extra="allow")

    name: str
    namespace: str = "default"
    resourceVersion: str = ""
    annotations: Optional[Dict[str, str]] = None

    @field_validator('name')
    @classmethod
    def name_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('name cannot be empty')
        return v


class SecretManifest(BaseModel):
    """Secret body as returned by the Kubernetes API (data values are base64)."""
    model_config = ConfigDict(extra="allow")

    metadata: ObjectMetadata
    data: Optional[Dict[str, str]] = None

    @field_validator('data')
    @classmethod
    def data_must_be_base64(cls, v):
        if v is None:
            return v
        for key, value in v.items():
            try:
                base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError):
                raise ValueError(f'data value for {key!r} is not valid base64')
        return v


def record_from_manifest(manifest: Dict[str, Any]) -> SecretRecord:
    """Convert a Kubernetes Secret body into a SecretRecord, keeping the body for later writes."""
    parsed = SecretManifest.model_validate(manifest)
    meta = parsed.metadata

    return SecretRecord(
        namespace=meta.namespace,
        name=meta.name,
        annotations=dict(meta.annotations or {}),
        data={k: base64.b64decode(v) for k, v in (parsed.data or {}).items()},
        resource_version=meta.resourceVersion,
        manifest=copy.deepcopy(manifest),
    )


def record_to_manifest(record: SecretRecord) -> Dict[str, Any]:
    """Build a Kubernetes Secret body from a record, starting from the body it was read from."""
    manifest = copy.deepcopy(record.manifest) if record.manifest else {}
    manifest.setdefault("apiVersion", "v1")
    manifest.setdefault("kind", "Secret")

    metadata = manifest.setdefault("metadata", {})
    metadata["name"] = record.name
    metadata["namespace"] = record.namespace
    metadata["annotations"] = dict(record.annotations)
    if record.resource_version:
        metadata["resourceVersion"] = record.resource_version

    manifest["data"] = {k: base64.b64encode(v).decode("ascii") for k, v in record.data.items()}
    # stringData would overwrite data on the server side
    manifest.pop("stringData", None)

    return manifest
