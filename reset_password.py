"""
Reset one staff password inside a school's users record.

Usage:
  RESET_SCHOOL_ID=reg-abc123 RESET_USERNAME=admin@school.rw RESET_PASSWORD=... python reset_password.py

RESET_SCHOOL_ID defaults to DEFAULT_SCHOOL_ID (or 'default'). Also useful after
restoring an older backup whose users carry plaintext passwords.
"""

import os

from dotenv import load_dotenv
from werkzeug.security import generate_password_hash

from record_store import USERS_KEY, PostgresRecordStore


def reset_user_password(store, username, raw_password):
    """Replace the stored hash for ``username`` (case-insensitive). Returns True when found."""
    users = store.get_list(USERS_KEY)
    wanted = username.strip().lower()
    updated = False
    for user in users:
        if (user.get('username') or '').lower() == wanted:
            user['password'] = generate_password_hash(raw_password)
            updated = True
    if updated:
        store.set(USERS_KEY, users)
    return updated


def main():
    load_dotenv()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    school_id = (os.getenv("RESET_SCHOOL_ID") or os.getenv("DEFAULT_SCHOOL_ID") or "default").strip()
    username = (os.getenv("RESET_USERNAME") or "").strip()
    raw_password = os.getenv("RESET_PASSWORD") or ""

    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    if not username:
        raise RuntimeError("RESET_USERNAME is required.")
    if not raw_password:
        raise RuntimeError("RESET_PASSWORD is required.")

    if reset_user_password(PostgresRecordStore(school_id), username, raw_password):
        print(f"Password reset successfully for {username} in school {school_id}.")
    else:
        print(f"No user found for {username} in school {school_id}.")


if __name__ == "__main__":
    main()
