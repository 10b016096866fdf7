#!/usr/bin/env python3
"""
Secret utilities - create, inspect and request regeneration of secrets in the local SQLite store.
"""

import argparse
import sys
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import DB_PATH
from src.core.errors import StoreError
from src.core.schema import GENERATE_ANNOTATION
from src.core.store import SQLiteSecretStore


def create_command(store, args):
    annotations = {}
    if args.generate:
        annotations[GENERATE_ANNOTATION] = args.generate

    data = {}
    for item in args.data or []:
        key, sep, value = item.partition("=")
        if not sep:
            print(f"❌ Invalid --data value {item!r}, expected KEY=VALUE")
            sys.exit(1)
        data[key] = value.encode("utf-8")

    record = store.create_secret(args.namespace, args.name, annotations=annotations, data=data)
    print(f"✅ Created secret {record.identity} (version {record.resource_version})")


def regenerate_command(store, args):
    record = store.request_regeneration(args.namespace, args.name)
    print(f"🔄 Regeneration requested for {record.identity} (version {record.resource_version})")


def show_command(store, args):
    record = store.get_secret(args.namespace, args.name)
    if record is None:
        print(f"❌ Secret {args.namespace}/{args.name} not found")
        sys.exit(1)

    print(f"Secret: {record.identity}")
    print(f"Version: {record.resource_version}")
    print("Annotations:")
    for key, value in sorted(record.annotations.items()):
        print(f"  {key}: {value}")
    print("Data:")
    for key, value in sorted(record.data.items()):
        shown = value.decode("utf-8", errors="replace") if args.reveal else "*" * min(len(value), 8)
        print(f"  {key}: {shown} ({len(value)} bytes)")


def build_parser():
    parser = argparse.ArgumentParser(description="Manage secrets in the local secret store")
    parser.add_argument("--db-path", default=DB_PATH, help=f"SQLite database path (default: {DB_PATH})")
    parser.add_argument("--namespace", default="default", help="Secret namespace (default: default)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Create a secret")
    create.add_argument("name")
    create.add_argument("--generate", metavar="KEY", help="Data key the generator should fill")
    create.add_argument("--data", action="append", metavar="KEY=VALUE", help="Initial data entry")
    create.set_defaults(func=create_command)

    regenerate = subparsers.add_parser("regenerate", help="Request a new generated value")
    regenerate.add_argument("name")
    regenerate.set_defaults(func=regenerate_command)

    show = subparsers.add_parser("show", help="Show a secret (values masked)")
    show.add_argument("name")
    show.add_argument("--reveal", action="store_true", help="Print data values in clear text")
    show.set_defaults(func=show_command)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    store = SQLiteSecretStore(args.db_path)

    try:
        args.func(store, args)
    except StoreError as e:
        print(f"❌ {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
