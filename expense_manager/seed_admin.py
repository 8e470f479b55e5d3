"""Designate the single administrator account.

Every existing admin is demoted to ``user`` first, then the given account is
created or updated with the admin role and the supplied password.
"""

from __future__ import annotations

import argparse
import getpass
import os
import sys

from expense_manager.config import Settings, configure_logging
from expense_manager.errors import ApiError
from expense_manager.service import LedgerService, build_store


def seed_admin(service: LedgerService, email: str, password: str, name: str) -> dict:
    service.store.init_schema()
    return service.designate_admin(email, password, name)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create or promote the single admin account")
    parser.add_argument("--email", required=True, help="Admin email address")
    parser.add_argument("--name", default="Administrator", help="Display name (default: Administrator)")
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (default: $ADMIN_PASSWORD, otherwise prompted)",
    )
    args = parser.parse_args(argv)

    password = args.password or getpass.getpass("Admin password: ")
    settings = Settings.from_env()
    configure_logging(settings)
    service = LedgerService(build_store(settings), settings)
    try:
        admin = seed_admin(service, args.email, password, args.name)
    except ApiError as exc:
        print(f"Failed to configure admin: {exc.message}", file=sys.stderr)
        return 1

    print(f"Admin configured: {admin['email']} (id {admin['id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
