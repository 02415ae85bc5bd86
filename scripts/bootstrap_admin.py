#!/usr/bin/env python3
"""Bootstrap an admin user for one app.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py --app todo-app

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com \
        --password SecurePassword123! --app sera-food-business-app --role superadmin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the app registration
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys

from appauth.storage.models import AuthMethod, Role


def bootstrap_admin(
    email: str, password: str, app_identifier: str, role: str, dry_run: bool = False
) -> dict:
    """Create an admin registration, or add the admin role to an existing one.

    Returns:
        dict with user_id, email, app_identifier and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so the env defaults set in main() are seen by Settings
    from appauth.config import Settings
    from appauth.service.runtime import Runtime

    runtime = Runtime(Settings.from_env()).connect()
    credentials = runtime.auth.credentials
    if not credentials.registry.is_valid_app(app_identifier):
        raise ValueError(
            f"unknown app {app_identifier!r}; known apps: {', '.join(credentials.registry.app_identifiers())}"
        )

    existing = credentials.find_by_email(email)
    result = {"user_id": existing.id if existing else None, "email": email, "app_identifier": app_identifier}

    if existing:
        registration = existing.registration_for(app_identifier)
        if registration is not None and role in registration.roles:
            print(f"User {email} already has {role} on {app_identifier} (id: {existing.id})")
            return {**result, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant {role} on {app_identifier} to {email}")
            return {**result, "status": "dry_run"}
        credentials.grant_roles(
            existing, app_identifier, [role], AuthMethod.EMAIL_PASSWORD.value, password
        )
        credentials.save(existing)
        print(f"Granted {role} on {app_identifier} to {email} (id: {existing.id})")
        return {**result, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} user {email} on {app_identifier}")
        return {**result, "status": "dry_run"}

    registration = credentials.new_registration(
        app_identifier, [role], AuthMethod.EMAIL_PASSWORD.value, password
    )
    user = credentials.create(email, registration)
    print(f"Created {role} user: {email} (id: {user.id})")
    return {**result, "user_id": user.id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for an app",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--app", required=True, help="App identifier, e.g. todo-app")
    parser.add_argument(
        "--role",
        default=Role.ADMIN.value,
        choices=[Role.ADMIN.value, Role.SUPERADMIN.value],
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.password, args.app, args.role, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
