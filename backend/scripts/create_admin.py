#!/usr/bin/env python3
import argparse
import getpass
import sys
from pathlib import Path

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from pawmarket.auth import hash_password  # noqa: E402
from pawmarket.config import load_settings  # noqa: E402
from pawmarket.services.record_store import RecordStore  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Create a PawMarket admin account.")
    parser.add_argument("--email", required=True, help="Login email for the admin.")
    parser.add_argument("--name", default="Administrator", help="Display name.")
    parser.add_argument("--password", default="", help="Password (prompted when omitted).")
    parser.add_argument("--db", default="", help="Marketplace database path (defaults to MARKETPLACE_DB_PATH).")
    args = parser.parse_args()

    password = args.password or getpass.getpass("Admin password: ")
    if len(password) < 8:
        print("Password must be at least 8 characters.")
        return 2

    store = RecordStore(args.db or load_settings().marketplace_db_path)
    email = args.email.strip().lower()
    with store.transaction() as conn:
        if store.find_credentials(conn, email):
            print(f"An account with email {email} already exists.")
            return 1
        user = store.insert_user(
            conn,
            name=args.name.strip(),
            email=email,
            password_hash=hash_password(password),
            role="admin",
        )
    print(f"Created admin {user.id} ({user.email}) in {store.db_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
