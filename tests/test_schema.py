"""
Secret manifest validation and record conversion.
"""

import base64

import pytest
from pydantic import ValidationError

from src.core.schema import (
    GENERATE_ANNOTATION,
    SecretRecord,
    record_from_manifest,
    record_to_manifest,
)


def b64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


@pytest.fixture
def manifest():
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": {
            "name": "db",
            "namespace": "prod",
            "resourceVersion": "1234",
            "labels": {"app": "db"},
            "annotations": {GENERATE_ANNOTATION: "password"},
        },
        "data": {"user": b64(b"admin")},
    }


class TestRecordFromManifest:
    """Test parsing API bodies."""

    def test_fields(self, manifest):
        record = record_from_manifest(manifest)

        assert record.identity == "prod/db"
        assert record.resource_version == "1234"
        assert record.annotations == {GENERATE_ANNOTATION: "password"}
        assert record.data == {"user": b"admin"}
        assert record.manifest == manifest

    def test_manifest_copied(self, manifest):
        record = record_from_manifest(manifest)
        manifest["metadata"]["labels"]["app"] = "changed"
        assert record.manifest["metadata"]["labels"]["app"] == "db"

    def test_missing_annotations_and_data(self):
        record = record_from_manifest({"metadata": {"name": "bare", "namespace": "default"}})
        assert record.annotations == {}
        assert record.data == {}

    def test_invalid_base64_rejected(self, manifest):
        manifest["data"]["user"] = "not base64!!"
        with pytest.raises(ValidationError, match="not valid base64"):
            record_from_manifest(manifest)

    def test_missing_name_rejected(self):
        with pytest.raises(ValidationError):
            record_from_manifest({"metadata": {"namespace": "default"}})


class TestRecordToManifest:
    """Test building API bodies for update."""

    def test_preserves_unrelated_fields(self, manifest):
        record = record_from_manifest(manifest)
        record.data["password"] = b"generated"

        body = record_to_manifest(record)

        assert body["type"] == "Opaque"
        assert body["metadata"]["labels"] == {"app": "db"}
        assert body["metadata"]["resourceVersion"] == "1234"
        assert body["data"] == {"user": b64(b"admin"), "password": b64(b"generated")}

    def test_string_data_dropped(self, manifest):
        manifest["stringData"] = {"user": "other"}
        body = record_to_manifest(record_from_manifest(manifest))
        assert "stringData" not in body

    def test_minimal_record(self):
        body = record_to_manifest(SecretRecord(namespace="default", name="new"))

        assert body["apiVersion"] == "v1"
        assert body["kind"] == "Secret"
        assert body["metadata"] == {"name": "new", "namespace": "default", "annotations": {}}
        assert body["data"] == {}

    def test_copy_is_deep(self, manifest):
        record = record_from_manifest(manifest)
        clone = record.copy()
        clone.annotations["x"] = "y"
        clone.data["k"] = b"v"

        assert "x" not in record.annotations
        assert "k" not in record.data
