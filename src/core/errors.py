"""
Error types for the secret generator.

All errors carry structured data so they can be logged without leaking secret values.
"""

from typing import Any, Dict, Optional


class GeneratorError(Exception):
    """Base error for secret generator failures."""

    def __init__(self, message: str, namespace: Optional[str] = None, name: Optional[str] = None):
        self.message = message
        self.namespace = namespace
        self.name = name
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "namespace": self.namespace,
            "name": self.name,
        }


class TokenGenerationError(GeneratorError):
    """The secure random source failed while generating a token."""
    pass


class StoreError(GeneratorError):
    """
    Error talking to the record store.

    Transient by nature: the record is re-delivered on the next change or resync.
    """

    def __init__(
        self,
        message: str,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, namespace, name)
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["status_code"] = self.status_code
        return d


class ConflictError(StoreError):
    """Conditional update rejected because the resource version is stale."""

    def __init__(
        self,
        message: str,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
        expected_version: Optional[str] = None,
    ):
        super().__init__(message, namespace, name, status_code=409)
        self.expected_version = expected_version

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["expected_version"] = self.expected_version
        return d


class NotFoundError(StoreError):
    """The record no longer exists in the store."""

    def __init__(self, message: str, namespace: Optional[str] = None, name: Optional[str] = None):
        super().__init__(message, namespace, name, status_code=404)


class WatchExpiredError(StoreError):
    """The watch resume version is too old; a fresh list is required."""

    def __init__(self, message: str, version: Optional[str] = None):
        super().__init__(message, status_code=410)
        self.version = version


class ConfigError(GeneratorError):
    """Invalid bootstrap configuration. Fatal at startup."""

    def __init__(self, message: str, issues: Optional[list] = None):
        super().__init__(message)
        self.issues = issues or []

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["issues"] = self.issues
        return d
