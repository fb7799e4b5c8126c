"""Key-value store capability used by the claim protocol.

A store offers leases with a TTL, a create-if-absent transaction bound to a
lease, and point reads. Implementations translate their client library's
errors into StoreError so callers never see driver exceptions.
"""
import functools
import logging
import threading
import time
from uuid import uuid4

from psycopg.errors import QueryCanceled
from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from idclaim.config import ClaimConfig, build_connection_string
from idclaim.schema import ensure_database_ready, get_table_names

logger = logging.getLogger(__name__)

__all__ = ['StoreError', 'LeaseNotFound', 'ReadTimeout', 'KeyValueStore',
           'SqlStore', 'MemoryStore', 'create_store']


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Raised when a store call fails at the transport or server level.
    """


class LeaseNotFound(StoreError):
    """Raised when a lease is unknown to the store or already expired.
    """


class ReadTimeout(StoreError):
    """Raised when a read cannot complete within its deadline.
    """


def translate_errors(*error_types: type[Exception], operation_name: str = None):
    """Decorator to re-raise client library errors as StoreError.

    Args:
        *error_types: Library exception types to translate
        operation_name: Name for messages (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            try:
                return func(*args, **kwargs)
            except error_types as e:
                raise StoreError(f'{name} failed: {e}') from e
        return wrapper
    return decorator


# ============================================================
# CAPABILITY INTERFACE
# ============================================================

class KeyValueStore:
    """Operations the claim protocol needs from a linearizable store.
    """

    def grant(self, ttl: int) -> int:
        """Grant a lease of `ttl` seconds and return its id.
        """
        raise NotImplementedError

    def keepalive_once(self, lease_id: int) -> int:
        """Reset the lease TTL countdown and return the TTL in seconds.

        Raises
            LeaseNotFound: If the lease expired or was revoked
        """
        raise NotImplementedError

    def revoke(self, lease_id: int) -> None:
        """Revoke the lease, deleting every key bound to it.
        """
        raise NotImplementedError

    def put_if_absent(self, key: str, value: str, lease_id: int) -> bool:
        """Atomically put `key` bound to the lease if its version is 0.

        Returns
            True if the put was applied, False if the key already exists
        """
        raise NotImplementedError

    def get(self, key: str, timeout: float = None) -> str | None:
        """Return the value stored at `key`, or None if it does not exist.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release client resources.
        """


# ============================================================
# SQL STORE
# ============================================================

class SqlStore(KeyValueStore):
    """Store backed by a SQL database through SQLAlchemy.

    Leases are rows with an absolute expiry in epoch seconds. Keys bound to
    an expired lease are purged before each write and filtered out of every
    read, so they vanish at expiry as far as callers can observe. Expiry is
    judged by the clients' clocks.

    Works with PostgreSQL (psycopg) and SQLite.
    """

    def __init__(self, engine: Engine, appname: str = 'idclaim_', clock: callable = time.time):
        """Initialize SQL store and create missing tables.

        Args:
            engine: SQLAlchemy engine
            appname: Application name prefix for tables
            clock: Wall clock returning epoch seconds
        """
        self.engine = engine
        self.tables = get_table_names(appname)
        self._clock = clock
        ensure_database_ready(engine, appname)

    @classmethod
    def from_config(cls, config: ClaimConfig) -> 'SqlStore':
        """Create a PostgreSQL-backed store from connection parameters.
        """
        connection_string = build_connection_string(
            config.host, config.port, config.dbname, config.user, config.password)
        engine = create_engine(connection_string, pool_pre_ping=True, pool_size=10, max_overflow=5)
        return cls(engine, config.appname)

    def _purge_expired(self, conn, now: float) -> None:
        Lease = self.tables['Lease']
        Kv = self.tables['Kv']
        conn.execute(text(f"""
        DELETE FROM {Kv}
        WHERE lease_id IN (SELECT lease_id FROM {Lease} WHERE expires_at <= :now)
        """), {'now': now})
        result = conn.execute(text(f'DELETE FROM {Lease} WHERE expires_at <= :now'), {'now': now})
        if result.rowcount:
            logger.debug(f'Purged {result.rowcount} expired leases')

    @translate_errors(SQLAlchemyError, operation_name='lease grant')
    def grant(self, ttl: int) -> int:
        lease_id = uuid4().int >> 66
        now = self._clock()
        with self.engine.begin() as conn:
            self._purge_expired(conn, now)
            conn.execute(text(f"""
            INSERT INTO {self.tables["Lease"]} (lease_id, ttl_sec, expires_at)
            VALUES (:lease_id, :ttl, :expires_at)
            """), {'lease_id': lease_id, 'ttl': ttl, 'expires_at': now + ttl})
        return lease_id

    @translate_errors(SQLAlchemyError, operation_name='lease keepalive')
    def keepalive_once(self, lease_id: int) -> int:
        Lease = self.tables['Lease']
        now = self._clock()
        with self.engine.begin() as conn:
            row = conn.execute(text(f"""
            UPDATE {Lease} SET expires_at = :now + ttl_sec
            WHERE lease_id = :lease_id AND expires_at > :now
            RETURNING ttl_sec
            """), {'lease_id': lease_id, 'now': now}).first()
        if row is None:
            raise LeaseNotFound(f'Lease {lease_id} not found')
        return row[0]

    @translate_errors(SQLAlchemyError, operation_name='lease revoke')
    def revoke(self, lease_id: int) -> None:
        now = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(text(f"""
            DELETE FROM {self.tables["Lease"]}
            WHERE lease_id = :lease_id AND expires_at > :now
            """), {'lease_id': lease_id, 'now': now})
            conn.execute(text(f'DELETE FROM {self.tables["Kv"]} WHERE lease_id = :lease_id'),
                         {'lease_id': lease_id})
        if result.rowcount == 0:
            raise LeaseNotFound(f'Lease {lease_id} not found')

    @translate_errors(SQLAlchemyError, operation_name='put-lease txn')
    def put_if_absent(self, key: str, value: str, lease_id: int) -> bool:
        Lease = self.tables['Lease']
        now = self._clock()
        with self.engine.begin() as conn:
            self._purge_expired(conn, now)
            result = conn.execute(text(f"""
            INSERT INTO {self.tables["Kv"]} (name, value, version, lease_id, created_on)
            SELECT :name, :value, 1, lease_id, :now
            FROM {Lease}
            WHERE lease_id = :lease_id AND expires_at > :now
            ON CONFLICT (name) DO NOTHING
            """), {'name': key, 'value': value, 'lease_id': lease_id, 'now': now})
            if result.rowcount > 0:
                return True
            lease = conn.execute(text(f"""
            SELECT 1 FROM {Lease} WHERE lease_id = :lease_id AND expires_at > :now
            """), {'lease_id': lease_id, 'now': now}).first()
        if lease is None:
            raise LeaseNotFound(f'Requested lease {lease_id} not found')
        return False

    @translate_errors(SQLAlchemyError, operation_name='get')
    def get(self, key: str, timeout: float = None) -> str | None:
        try:
            with self.engine.begin() as conn:
                if timeout is not None and self.engine.dialect.name == 'postgresql':
                    conn.execute(text(f'SET LOCAL statement_timeout = {max(int(timeout * 1000), 1)}'))
                return self._read_value(conn, key)
        except DBAPIError as e:
            if isinstance(e.orig, QueryCanceled):
                raise ReadTimeout(f'get of {key} exceeded {timeout}s: {e.orig}') from e
            raise

    def _read_value(self, conn, key: str) -> str | None:
        row = conn.execute(text(f"""
            SELECT k.value
            FROM {self.tables["Kv"]} k
            LEFT JOIN {self.tables["Lease"]} l ON k.lease_id = l.lease_id
            WHERE k.name = :name AND (k.lease_id IS NULL OR l.expires_at > :now)
            """), {'name': key, 'now': self._clock()}).first()
        return row[0] if row else None

    def close(self) -> None:
        self.engine.dispose()


def create_store(config: ClaimConfig = None) -> SqlStore:
    """Create the default SQL store for a config.
    """
    return SqlStore.from_config(config or ClaimConfig())


# ============================================================
# IN-MEMORY STORE
# ============================================================

class MemoryStore(KeyValueStore):
    """Linearizable in-process store with lease expiry.

    Every operation runs under one lock and first drops leases whose
    deadline has passed on `clock`, together with their keys.
    """

    def __init__(self, clock: callable = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._leases = {}
        self._data = {}
        self._next_lease_id = 1

    def _expire(self) -> None:
        now = self._clock()
        expired = [lease_id for lease_id, lease in self._leases.items() if lease['expires_at'] <= now]
        for lease_id in expired:
            self._drop_lease(lease_id)

    def _drop_lease(self, lease_id: int) -> None:
        del self._leases[lease_id]
        for key in [k for k, entry in self._data.items() if entry['lease_id'] == lease_id]:
            del self._data[key]

    def grant(self, ttl: int) -> int:
        with self._lock:
            self._expire()
            lease_id = self._next_lease_id
            self._next_lease_id += 1
            self._leases[lease_id] = {'ttl': ttl, 'expires_at': self._clock() + ttl}
            return lease_id

    def keepalive_once(self, lease_id: int) -> int:
        with self._lock:
            self._expire()
            lease = self._leases.get(lease_id)
            if lease is None:
                raise LeaseNotFound(f'Lease {lease_id} not found')
            lease['expires_at'] = self._clock() + lease['ttl']
            return lease['ttl']

    def revoke(self, lease_id: int) -> None:
        with self._lock:
            self._expire()
            if lease_id not in self._leases:
                raise LeaseNotFound(f'Lease {lease_id} not found')
            self._drop_lease(lease_id)

    def put_if_absent(self, key: str, value: str, lease_id: int) -> bool:
        with self._lock:
            self._expire()
            if lease_id not in self._leases:
                raise LeaseNotFound(f'Requested lease {lease_id} not found')
            if key in self._data:
                return False
            self._data[key] = {'value': value, 'version': 1, 'lease_id': lease_id}
            return True

    def get(self, key: str, timeout: float = None) -> str | None:
        with self._lock:
            self._expire()
            entry = self._data.get(key)
            return entry['value'] if entry else None

    def keys(self) -> list[str]:
        """Currently live keys, for inspection.
        """
        with self._lock:
            self._expire()
            return sorted(self._data)
