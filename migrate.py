"""
Apply record-store schema migrations without starting the web server.

Usage:
  python migrate.py

Runs Alembic's upgrade to head against DATABASE_URL using the scripts in
migrations/. Set RUN_STARTUP_DDL=0 on the web app once this is part of deploys.
"""

import os
import sys

from alembic import command
from alembic.config import Config
from dotenv import load_dotenv


def build_config(script_location='migrations'):
    cfg = Config()
    cfg.set_main_option('script_location', script_location)
    return cfg


def main():
    load_dotenv()
    if not (os.environ.get('DATABASE_URL') or '').strip():
        print("✗ DATABASE_URL is required.", file=sys.stderr)
        sys.exit(2)

    here = os.path.dirname(os.path.abspath(__file__))
    try:
        print("Applying database migrations...")
        command.upgrade(build_config(os.path.join(here, 'migrations')), 'head')
        print("✓ Migrations completed successfully.")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
