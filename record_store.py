"""
Key-value record store for school data.

Every collection (users, classes, students, marks, config, ...) is kept as a
single JSON blob under its own key, scoped to one school tenant. Two backends
share the same get/set/delete contract:

- MemoryRecordStore: process-local, used for tests and local development.
- PostgresRecordStore: one row per (tenant_id, key) in the ``records`` table.
"""

import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime

USERS_KEY = 'nursery_app_users'
CLASSES_KEY = 'nursery_app_classes'
STUDENTS_KEY = 'nursery_app_students'
MARKS_KEY = 'nursery_app_marks'
CONFIG_KEY = 'nursery_app_config'
REGISTRATION_KEY = 'nursery_app_registration'
ALL_REGISTRATIONS_KEY = 'nursery_app_all_registrations'
DECISIONS_KEY = 'nursery_app_promotion_decisions'

# Tenant that holds cross-school data such as the registration queue.
PLATFORM_TENANT = '__platform__'


class RecordStore:
    """Whole-blob get/set/delete over JSON values."""

    def get(self, key):
        raise NotImplementedError

    def set(self, key, value):
        raise NotImplementedError

    def delete(self, key):
        raise NotImplementedError

    def get_list(self, key):
        """Read a JSON array, treating a missing key as empty."""
        value = self.get(key)
        return value if isinstance(value, list) else []

    def get_dict(self, key):
        value = self.get(key)
        return value if isinstance(value, dict) else {}


class MemoryRecordStore(RecordStore):
    """In-process store. Values are kept serialized so callers never share objects."""

    def __init__(self, tenant_id='default', backing=None):
        self.tenant_id = tenant_id
        self._data = backing if backing is not None else {}

    def get(self, key):
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key, value):
        self._data[key] = json.dumps(value)

    def delete(self, key):
        self._data.pop(key, None)

    def keys(self):
        return sorted(self._data.keys())


# Shared backing dicts so every MemoryRecordStore for a tenant sees the same data.
_MEMORY_TENANTS = {}


def memory_store_for(tenant_id):
    """Return a MemoryRecordStore bound to the shared data of one tenant."""
    backing = _MEMORY_TENANTS.setdefault(tenant_id, {})
    return MemoryRecordStore(tenant_id, backing=backing)


def reset_memory_stores():
    _MEMORY_TENANTS.clear()


# ==================== POSTGRESQL BACKEND ====================

def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)


def get_database_url():
    return os.environ.get('DATABASE_URL', '').strip()


def get_db():
    """Create a PostgreSQL DB connection."""
    try:
        import psycopg2
        from psycopg2.extras import DictCursor
    except ImportError as exc:
        raise RuntimeError("PostgreSQL backend requires psycopg2-binary") from exc
    return psycopg2.connect(get_database_url(), cursor_factory=DictCursor, connect_timeout=10)


@contextmanager
def db_connection(commit=False):
    """Context manager for PostgreSQL connections with optional commit."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()


def init_db():
    """Create the records table if it does not exist yet."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, '''CREATE TABLE IF NOT EXISTS records (
                            tenant_id TEXT NOT NULL,
                            key TEXT NOT NULL,
                            value TEXT NOT NULL,
                            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                            PRIMARY KEY (tenant_id, key)
                        )''')
        db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_records_tenant ON records(tenant_id)')
    logging.info("Record store table is ready.")


class PostgresRecordStore(RecordStore):
    """Store JSON blobs as rows of the records table, one tenant per instance."""

    def __init__(self, tenant_id):
        self.tenant_id = tenant_id

    def get(self, key):
        with db_connection() as conn:
            c = conn.cursor()
            db_execute(
                c,
                'SELECT value FROM records WHERE tenant_id = ? AND key = ?',
                (self.tenant_id, key),
            )
            row = c.fetchone()
        if not row:
            return None
        try:
            return json.loads(row[0])
        except (TypeError, ValueError):
            logging.warning("Corrupt JSON in records for tenant=%s key=%s", self.tenant_id, key)
            return None

    def set(self, key, value):
        with db_connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(
                c,
                '''INSERT INTO records (tenant_id, key, value, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(tenant_id, key) DO UPDATE SET
                     value = excluded.value,
                     updated_at = excluded.updated_at''',
                (self.tenant_id, key, json.dumps(value), datetime.now()),
            )

    def delete(self, key):
        with db_connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(
                c,
                'DELETE FROM records WHERE tenant_id = ? AND key = ?',
                (self.tenant_id, key),
            )
