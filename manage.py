from __future__ import annotations

import argparse
import json
from pathlib import Path

from alembic import command
from alembic.config import Config


def get_alembic_config() -> Config:
    here = Path(__file__).resolve().parent
    return Config(str(here / "alembic.ini"))


def cmd_upgrade(revision: str = "head") -> None:
    command.upgrade(get_alembic_config(), revision)


def cmd_downgrade(revision: str) -> None:
    command.downgrade(get_alembic_config(), revision)


def cmd_current() -> None:
    command.current(get_alembic_config(), verbose=True)


def _run_billing_job(name: str, batch_size: int | None) -> dict:
    # imported here so migrations run without a configured gateway
    from app.core.billing.services import build_billing_service
    from app.database.session import SessionLocal

    service = build_billing_service()
    db = SessionLocal()
    try:
        if name == "recover-payments":
            return service.sweep(db, batch_size=batch_size).as_dict()
        return service.apply_scheduled_downgrades(db, batch_size=batch_size)
    finally:
        db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="UNextDoor maintenance: migrations and one-off billing jobs"
    )
    subparsers = parser.add_subparsers(dest="command")

    upgrade_parser = subparsers.add_parser("upgrade", help="Apply migrations")
    upgrade_parser.add_argument("revision", nargs="?", default="head")

    downgrade_parser = subparsers.add_parser(
        "downgrade", help="Downgrade to a specific revision"
    )
    downgrade_parser.add_argument("revision", help="Revision id or -1, -2, ...")

    subparsers.add_parser("current", help="Show the applied revision")

    revision_parser = subparsers.add_parser(
        "revision", help="Create new alembic revision"
    )
    revision_parser.add_argument("-m", "--message", required=True)
    revision_parser.add_argument(
        "--autogenerate",
        action="store_true",
        help="Populate revision with schema diff from models",
    )

    for job, help_text in (
        ("recover-payments", "Reconcile pending payments with the gateway now"),
        ("apply-downgrades", "Apply scheduled downgrades that are due"),
    ):
        job_parser = subparsers.add_parser(job, help=help_text)
        job_parser.add_argument("--batch-size", type=int, default=None)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "upgrade" or args.command is None:
        cmd_upgrade(getattr(args, "revision", "head"))
    elif args.command == "downgrade":
        cmd_downgrade(args.revision)
    elif args.command == "current":
        cmd_current()
    elif args.command == "revision":
        command.revision(
            get_alembic_config(),
            message=args.message,
            autogenerate=args.autogenerate,
        )
    elif args.command in ("recover-payments", "apply-downgrades"):
        result = _run_billing_job(args.command, args.batch_size)
        print(json.dumps(result, indent=2, default=str))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
