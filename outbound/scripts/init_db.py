#!/usr/bin/env python3
"""
Create the outbound tables and, optionally, an admin user.

Usage:
    python -m outbound.scripts.init_db
    python -m outbound.scripts.init_db --admin-username ops --admin-password '...'

The script is idempotent and safe to run multiple times: existing tables are
left alone and an existing user is not modified.
"""
import argparse
import sys

from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError, ProgrammingError


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Create outbound tables and an optional admin user.")
    parser.add_argument("--admin-username", help="Create an ADMIN user with this username")
    parser.add_argument("--admin-password", help="Password for --admin-username")
    args = parser.parse_args(argv)
    if bool(args.admin_username) != bool(args.admin_password):
        parser.error("--admin-username and --admin-password must be given together")
    return args


def init_db(admin_username=None, admin_password=None) -> dict:
    """Create missing tables and the optional admin. Must run inside an app context."""
    from outbound.auth.utils import hash_password
    from outbound.models import User, db

    before = set(inspect(db.engine).get_table_names())
    db.create_all()
    created = sorted(set(inspect(db.engine).get_table_names()) - before)

    admin_created = False
    if admin_username and User.query.filter_by(username=admin_username).first() is None:
        db.session.add(User(username=admin_username, password_hash=hash_password(admin_password), role="ADMIN"))
        db.session.commit()
        admin_created = True

    return {"tables_created": created, "admin_created": admin_created}


def main(argv=None) -> int:
    args = parse_args(argv)

    from outbound import create_app

    app = create_app({"SCHEDULER_ENABLED": False})
    with app.app_context():
        try:
            report = init_db(args.admin_username, args.admin_password)
        except (OperationalError, ProgrammingError) as exc:
            print(f"✗ Database error: {exc}", file=sys.stderr)
            return 1

    if report["tables_created"]:
        print(f"✓ Created tables: {', '.join(report['tables_created'])}")
    else:
        print("✓ All tables already exist.")
    if args.admin_username:
        state = "created" if report["admin_created"] else "already exists"
        print(f"✓ Admin user '{args.admin_username}' {state}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
