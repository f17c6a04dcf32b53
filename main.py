#!/usr/bin/env python3
"""
gpt-user-auth -- administrative command line.

Usage:
  python main.py client-create --name "My GPT" --redirect-uri https://chat.openai.com/aip/g-123/oauth/callback
  python main.py client-list

The client secret is printed once at creation and cannot be shown again.

Environment variables:
  DB_URL   SQLAlchemy database URL (default: sqlite:///gptauth.db)
"""

import argparse
from typing import Optional

from core.config import get_settings
from core.db import Database
from oauth2.store import OAuth2Store


def _client_create(db: Database, name: str, redirect_uri: str) -> int:
    store = OAuth2Store()
    with db.transaction() as conn:
        client = store.register_client(conn, name=name, redirect_uri=redirect_uri)
    print("New OAuth2 client registered. Store the secret now, it is not shown again.")
    print(f"ID:        {client.id}")
    print(f"CLIENT_ID: {client.client_id}")
    print(f"SECRET:    {client.client_secret}")
    return 0


def _client_list(db: Database) -> int:
    store = OAuth2Store()
    with db.transaction() as conn:
        clients = store.list_clients(conn)
    if not clients:
        print("No OAuth2 clients registered.")
        return 0
    for c in clients:
        print(f"{c.id:>4}  {c.client_id}  {c.status.value:<8}  {c.name}  {c.redirect_uri}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gpt-user-auth",
        description="Administer OAuth2 clients for gpt-user-auth.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py client-create --name "My GPT" --redirect-uri https://example.com/callback
  DB_URL=sqlite:///prod.db python main.py client-list
        """,
    )
    parser.add_argument(
        "--db-url",
        metavar="URL",
        default=None,
        help="Database URL (default: DB_URL from the environment or .env)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("client-create", help="Register a new OAuth2 client and print its credentials")
    create.add_argument("--name", required=True, help="Display name shown on the consent page")
    create.add_argument("--redirect-uri", required=True, metavar="URI", help="Registered redirect URI")

    commands.add_parser("client-list", help="List registered OAuth2 clients (secrets are not shown)")

    args = parser.parse_args(argv)

    db = Database(args.db_url or get_settings().db_url)
    try:
        if args.command == "client-create":
            return _client_create(db, args.name, args.redirect_uri)
        return _client_list(db)
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
