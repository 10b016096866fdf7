#!/usr/bin/env python3
"""
Secret generator agent - watches secrets and fills in generated values for annotated ones.
"""

import argparse
import signal
import sys
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import DEFAULT_SECRET_LENGTH, debug_enabled, load_generator_config
from src.core.dispatcher import ChangeDispatcher
from src.core.errors import ConfigError, StoreError
from src.core.reconcile import SecretReconciler
from util.logging import logger


def build_parser():
    parser = argparse.ArgumentParser(description="Generate random values for annotated secrets")
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to kubeconfig (default: in-cluster service account)"
    )
    parser.add_argument(
        "--namespace",
        default=None,
        help="Namespace to watch (default: default)"
    )
    parser.add_argument(
        "--all-namespaces",
        action="store_true",
        help="Watch all namespaces"
    )
    parser.add_argument(
        "--secret-length",
        type=int,
        default=None,
        help=f"Length of generated secrets (default: {DEFAULT_SECRET_LENGTH})"
    )
    parser.add_argument(
        "--store",
        choices=["kubernetes", "sqlite"],
        default=None,
        help="Secret store backend (default: kubernetes)"
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="SQLite database path for the sqlite store"
    )
    parser.add_argument(
        "--resync-interval",
        type=int,
        default=None,
        help="Seconds between full resyncs (default: 1800)"
    )
    return parser


def config_from_args(args):
    """Merge CLI flags over environment configuration."""
    namespace = args.namespace
    if args.all_namespaces:
        namespace = ""

    return load_generator_config(
        kubeconfig=args.kubeconfig,
        namespace=namespace,
        secret_length=args.secret_length,
        store_backend=args.store,
        db_path=args.db_path,
        resync_interval_sec=args.resync_interval,
    )


def build_store(config):
    """Create the configured store. Raises ConfigError on bad credentials."""
    if config.store_backend == "sqlite":
        from src.core.store import SQLiteSecretStore
        return SQLiteSecretStore(config.db_path)

    from src.core.kube import KubernetesSecretStore, load_credentials
    return KubernetesSecretStore(load_credentials(config.kubeconfig))


def main(argv=None):
    """Main entry point for the generator agent."""
    args = build_parser().parse_args(argv)
    logger.set_debug(debug_enabled())

    try:
        config = config_from_args(args)
        store = build_store(config)
    except ConfigError as e:
        print(f"❌ Configuration error: {e.message}")
        sys.exit(1)
    except StoreError as e:
        print(f"❌ Cannot open secret store: {e.message}")
        sys.exit(1)

    if not store.health_check():
        print(f"❌ Secret store ({config.store_backend}) is not reachable")
        sys.exit(1)

    reconciler = SecretReconciler(config, store)
    dispatcher = ChangeDispatcher(
        store,
        reconciler,
        namespace=config.namespace,
        resync_interval_sec=config.resync_interval_sec,
        watch_timeout_sec=config.watch_timeout_sec,
        error_backoff_sec=config.error_backoff_sec,
    )

    def _shutdown(signum, frame):
        print("\n👋 Shutting down gracefully...")
        dispatcher.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    print(f"🔐 Watching secrets in {config.namespace or 'all namespaces'} "
          f"(store: {config.store_backend}, length: {config.secret_length})")

    dispatcher.start()


if __name__ == "__main__":
    main()
