"""
Secret generator configuration.
Environment driven defaults; the CLI overrides them and hands an explicit GeneratorConfig to the engine.
"""

import os
import string
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List

from .errors import ConfigError

# Default alphabet: lower, upper, digits (62 symbols)
DEFAULT_ALPHABET = string.ascii_lowercase + string.ascii_uppercase + string.digits
DEFAULT_SECRET_LENGTH = 40

# Token generation
SECRET_LENGTH = int(os.getenv("SECRET_LENGTH", str(DEFAULT_SECRET_LENGTH)))
SECRET_ALPHABET = os.getenv("SECRET_ALPHABET", DEFAULT_ALPHABET)

# Watch scope
WATCH_NAMESPACE = os.getenv("WATCH_NAMESPACE", "default")
ALL_NAMESPACES = os.getenv("ALL_NAMESPACES", "false").lower() == "true"

# Store configuration
STORE_BACKEND = os.getenv("STORE_BACKEND", "kubernetes")  # kubernetes|sqlite
KUBECONFIG = os.getenv("KUBECONFIG", "")  # empty = in-cluster service account
DB_PATH = os.getenv("DB_PATH", "./data/secrets.db")

# Dispatcher timing
RESYNC_INTERVAL_SEC = int(os.getenv("RESYNC_INTERVAL_SEC", "1800"))
WATCH_TIMEOUT_SEC = int(os.getenv("WATCH_TIMEOUT_SEC", "60"))
ERROR_BACKOFF_SEC = int(os.getenv("ERROR_BACKOFF_SEC", "5"))

VALID_BACKENDS = ["kubernetes", "sqlite"]


@dataclass(frozen=True)
class GeneratorConfig:
    """Explicit configuration passed to the reconciler and dispatcher at construction."""
    secret_length: int = DEFAULT_SECRET_LENGTH
    alphabet: str = DEFAULT_ALPHABET
    namespace: str = "default"
    store_backend: str = "kubernetes"
    kubeconfig: str = ""
    db_path: str = "./data/secrets.db"
    resync_interval_sec: int = 1800
    watch_timeout_sec: int = 60
    error_backoff_sec: int = 5

    def validate(self) -> List[str]:
        """Return a list of configuration issues (empty when valid)."""
        issues = []

        if self.secret_length < 1:
            issues.append(f"secret length must be a positive integer: {self.secret_length}")

        if len(self.alphabet) < 2:
            issues.append("alphabet must contain at least 2 characters")
        elif len(set(self.alphabet)) != len(self.alphabet):
            issues.append("alphabet characters must be unique")

        if self.store_backend not in VALID_BACKENDS:
            issues.append(f"Invalid store backend: {self.store_backend}")

        if self.store_backend == "sqlite" and not self.db_path:
            issues.append("sqlite backend requires a database path")

        if self.resync_interval_sec < 1:
            issues.append("resync interval must be >= 1 second")

        if self.watch_timeout_sec < 1:
            issues.append("watch timeout must be >= 1 second")

        if self.error_backoff_sec < 0:
            issues.append("error backoff must be >= 0 seconds")

        return issues


def get_watch_namespace():
    """Namespace scope to watch; empty string means all namespaces."""
    return "" if ALL_NAMESPACES else WATCH_NAMESPACE


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def load_generator_config(**overrides) -> GeneratorConfig:
    """
    Build a GeneratorConfig from environment defaults plus explicit overrides.

    Overrides with a value of None are ignored so argparse defaults can be passed straight through.

    Raises:
        ConfigError: if the resulting configuration is invalid
    """
    config = GeneratorConfig(
        secret_length=SECRET_LENGTH,
        alphabet=SECRET_ALPHABET,
        namespace=get_watch_namespace(),
        store_backend=STORE_BACKEND,
        kubeconfig=KUBECONFIG,
        db_path=DB_PATH,
        resync_interval_sec=RESYNC_INTERVAL_SEC,
        watch_timeout_sec=WATCH_TIMEOUT_SEC,
        error_backoff_sec=ERROR_BACKOFF_SEC,
    )

    changes = {k: v for k, v in overrides.items() if v is not None}
    if changes:
        config = replace(config, **changes)

    issues = config.validate()
    if issues:
        raise ConfigError(f"Generator configuration invalid: {issues}", issues=issues)

    return config
