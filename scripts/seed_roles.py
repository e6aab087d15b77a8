#!/usr/bin/env python
from __future__ import annotations

import argparse
import os
import sys

# add project root (one level up from /scripts) to import path
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from server.src.modules.wiki_config import validate_wiki_environment
from server.src.modules.wiki_repo import WikiMongoRepo, ensure_wiki_collections_and_indexes


def seed(admin_username: str | None = None, dry_run: bool = False) -> None:
    report = validate_wiki_environment()
    for warning in report.warnings:
        print(f"warning: {warning}")
    if report.errors:
        for error in report.errors:
            print(f"error: {error}")
        raise SystemExit(1)

    if dry_run:
        print("Dry-run mode, no write performed.")
        return

    ensure_wiki_collections_and_indexes()
    repo = WikiMongoRepo()
    repo.ensure_default_roles()
    print("Roles: " + ", ".join(role["name"] for role in repo.list_roles()))

    if admin_username:
        existing = repo.get_user_by_username(admin_username)
        if existing:
            roles = set(existing.get("roles") or []) | {"ADMIN"}
            repo.update_user(existing["id"], roles=roles, enabled=True, locked=False)
            print(f"Promoted {admin_username} to ADMIN")
        else:
            repo.create_user(username=admin_username, roles=["ADMIN"])
            print(f"Created admin user {admin_username}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create wiki indexes, the predefined roles and optionally an admin user.")
    parser.add_argument("--admin", default=None, help="Username to create or promote to ADMIN")
    parser.add_argument("--dry-run", action="store_true", help="Only validate the environment, do not write to Mongo")
    args = parser.parse_args()
    seed(args.admin, dry_run=bool(args.dry_run))


if __name__ == "__main__":
    main()
