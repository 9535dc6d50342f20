#!/usr/bin/env python3
"""
OrgWarden operator commands.

Usage:
  python manage.py seed
  python manage.py create-principal --identifier jdoe --role Treasurer
  python manage.py deactivate-principal --identifier jdoe
  python manage.py purge-tokens
  python manage.py purge-tokens --older-than-days 30

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the OrgWarden database (default: orgwarden.db next to this file).
  SECRET_KEY    Required unless DEBUG=true. Must match the running API, or
                existing refresh tokens will no longer verify.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from audit.recorder import AuditRecorder
from auth.credentials import hash_password
from auth.models import ClientInfo, Principal
from auth.resolver import PermissionResolver
from auth.store import PrincipalStore
from auth.token_store import TokenStore

_CLI_CLIENT = ClientInfo(ip_address="cli", user_agent="manage.py")


def _seed(store: PrincipalStore) -> None:
    store.sync_registry()
    created = store.seed_default_roles()
    print(f"Permission registry synced. {created} default role(s) created.")


def _create_principal(
    store: PrincipalStore, audit: AuditRecorder, identifier: str, role_name: str, secret: Optional[str]
) -> int:
    store.sync_registry()
    store.seed_default_roles()
    role = store.get_role_by_name(role_name)
    if role is None:
        names = ", ".join(r.name for r in store.list_roles())
        print(f"  [!] Unknown role '{role_name}'. Available: {names}")
        return 1

    if secret is None:
        secret = getpass.getpass("Secret: ")
        if secret != getpass.getpass("Repeat secret: "):
            print("  [!] Secrets do not match.")
            return 1
    if len(secret) < 8 or len(secret) > 255:
        print("  [!] Secret must be between 8 and 255 characters.")
        return 1

    try:
        principal_id = store.create_principal(Principal(display_identifier=identifier, secret_hash=hash_password(secret)))
    except IntegrityError:
        print(f"  [!] A principal named '{identifier}' already exists.")
        return 1

    PermissionResolver(store, audit).assign_role(principal_id, role.id, client=_CLI_CLIENT)
    audit.record(
        actor_id=None,
        action="principal_created",
        entity_type="principal",
        entity_id=principal_id,
        changes={"display_identifier": identifier, "role": role.name},
        ip_address=_CLI_CLIENT.ip_address,
        user_agent=_CLI_CLIENT.user_agent,
    )
    print(f"Principal {principal_id} ('{identifier}') created with role {role.name}.")
    return 0


def _deactivate_principal(store: PrincipalStore, tokens: TokenStore, audit: AuditRecorder, identifier: str) -> int:
    principal = store.get_by_identifier(identifier)
    if principal is None:
        print(f"  [!] No principal named '{identifier}'.")
        return 1
    store.set_active(principal.id, False)
    revoked = tokens.revoke_principal(principal.id)
    audit.record(
        actor_id=None,
        action="principal_deactivated",
        entity_type="principal",
        entity_id=principal.id,
        changes={"is_active": {"old": principal.is_active, "new": False}},
        metadata={"refresh_tokens_revoked": revoked},
        ip_address=_CLI_CLIENT.ip_address,
        user_agent=_CLI_CLIENT.user_agent,
    )
    print(f"Principal {principal.id} deactivated. {revoked} refresh token(s) revoked.")
    return 0


def main(argv: Optional[list[str]] = None, db_url: Optional[str] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="manage.py",
        description="OrgWarden operator commands.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed", help="Sync the permission registry and create missing default roles.")

    create = sub.add_parser("create-principal", help="Create a principal and assign its role.")
    create.add_argument("--identifier", required=True, help="Login identifier (unique).")
    create.add_argument("--role", default="Member", help="Role name (default: Member).")
    # Hidden: scripted provisioning and tests. Interactive use should rely on the prompt.
    create.add_argument("--secret", default=None, help=argparse.SUPPRESS)

    deactivate = sub.add_parser("deactivate-principal", help="Deactivate a principal and revoke its refresh tokens.")
    deactivate.add_argument("--identifier", required=True)

    purge = sub.add_parser("purge-tokens", help="Delete long-expired refresh-token records.")
    purge.add_argument("--older-than-days", type=int, default=7)

    args = parser.parse_args(argv)

    store = PrincipalStore(db_url)
    tokens = TokenStore(db_url)
    audit = AuditRecorder(db_url)
    try:
        if args.command == "seed":
            _seed(store)
            return 0
        if args.command == "create-principal":
            return _create_principal(store, audit, args.identifier, args.role, args.secret)
        if args.command == "deactivate-principal":
            return _deactivate_principal(store, tokens, audit, args.identifier)
        if args.command == "purge-tokens":
            removed = tokens.purge_expired(older_than_days=args.older_than_days)
            print(f"{removed} expired refresh token(s) purged.")
            return 0
        return 2
    finally:
        store.close()
        tokens.close()
        audit.close()


if __name__ == "__main__":
    sys.exit(main())
