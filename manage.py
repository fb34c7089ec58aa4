from __future__ import annotations

import argparse
from pathlib import Path

from alembic import command
from alembic.config import Config


def get_alembic_config() -> Config:
    here = Path(__file__).resolve().parent
    return Config(str(here / "alembic.ini"))


def cmd_migrate(revision: str) -> None:
    command.upgrade(get_alembic_config(), revision)


def cmd_rollback(revision: str) -> None:
    command.downgrade(get_alembic_config(), revision)


def cmd_current() -> None:
    command.current(get_alembic_config(), verbose=True)


def cmd_worker() -> None:
    from promo_worker.main import main as worker_main

    worker_main()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Promo engine management commands"
    )
    subparsers = parser.add_subparsers(dest="command")

    migrate_parser = subparsers.add_parser(
        "migrate", help="Apply promo engine migrations"
    )
    migrate_parser.add_argument(
        "revision",
        nargs="?",
        default="head",
        help="Target revision (default: head)",
    )

    rollback_parser = subparsers.add_parser(
        "rollback", help="Downgrade to a specific revision"
    )
    rollback_parser.add_argument("revision", help="Revision id or -1, -2, ...")

    subparsers.add_parser("current", help="Show the applied revision")

    revision_parser = subparsers.add_parser(
        "revision", help="Create new alembic revision"
    )
    revision_parser.add_argument(
        "-m",
        "--message",
        required=True,
        help="Revision message",
    )
    revision_parser.add_argument(
        "--autogenerate",
        action="store_true",
        help="Populate revision with schema diff from models",
    )

    subparsers.add_parser(
        "worker", help="Run the cache invalidation worker"
    )

    args = parser.parse_args()

    if args.command == "migrate":
        cmd_migrate(args.revision)
    elif args.command is None:
        cmd_migrate("head")
    elif args.command == "rollback":
        cmd_rollback(args.revision)
    elif args.command == "current":
        cmd_current()
    elif args.command == "revision":
        command.revision(
            get_alembic_config(),
            message=args.message,
            autogenerate=args.autogenerate,
        )
    elif args.command == "worker":
        cmd_worker()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
