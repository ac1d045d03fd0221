"""Lock service client: sessions, CAS-style lock acquisition and key watches.

The lock service is a strongly consistent KV store with sessions. A key
acquired with a session stays bound to it until the session is released,
destroyed, or invalidated because one of its health checks went critical.
Invalidation clears the session reference (the value is kept) and starts a
lock-delay window during which nobody can acquire the key.

SqlLockService keeps that state in PostgreSQL and relies on row locks and
INSERT ... ON CONFLICT for atomic acquisition.
"""
import functools
import json
import logging
import queue
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from rcelect.config import ElectionConfig, build_connection_string
from rcelect.schema import ensure_database_ready, get_table_names

logger = logging.getLogger(__name__)

__all__ = ['KeyRecord', 'CheckRecord', 'SessionRecord', 'LockService',
           'LockServiceError', 'SessionCreateError', 'PrefixWatch', 'SqlLockService']

CHECK_STATUSES = ('passing', 'warning', 'critical')


# ============================================================
# RECORDS AND ERRORS
# ============================================================

@dataclass(frozen=True)
class KeyRecord:
    """Snapshot of a KV entry.
    """
    key: str
    value: str | None
    session: str | None
    modify_index: int


@dataclass(frozen=True)
class CheckRecord:
    """Health check registered for a node, optionally bound to a service.
    """
    node: str
    check_id: str
    service: str | None
    status: str


@dataclass(frozen=True)
class SessionRecord:
    id: str
    name: str
    node: str
    checks: tuple[str, ...]
    lock_delay: float


class LockServiceError(Exception):
    """Raised for any lock service failure. Always treated as retryable.
    """


class SessionCreateError(LockServiceError):
    """Raised when the lock service refuses or fails to create a session.
    """


# ============================================================
# PREFIX WATCH
# ============================================================

class PrefixWatch:
    """Notification stream over a key prefix.

    A polling thread compares the (key, modify_index) pairs under the prefix
    and queues the changed records whenever they differ from the previous
    poll. The first poll always produces a notification so consumers see the
    initial state. Deleted keys produce a notification with the surviving
    changed records (possibly an empty list).
    """

    def __init__(self, service: 'LockService', prefix: str, interval: float = 1.0, exact: bool = False):
        """Initialize watch.

        Args:
            service: Lock service to poll
            prefix: Key prefix to observe
            interval: Poll interval in seconds
            exact: Observe only the key equal to prefix
        """
        self.service = service
        self.prefix = prefix
        self.interval = interval
        self.exact = exact
        self.thread = None
        self._seen = None
        self._notifications = queue.Queue()
        self._stop_event = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> 'PrefixWatch':
        """Start the polling thread.
        """
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f'watch-{self.prefix}'
        )
        self.thread.start()
        logger.debug(f'Watch on {self.prefix!r} started')
        return self

    def stop(self) -> None:
        """Stop polling and wake any consumer blocked in get().
        """
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        self._notifications.put(None)
        logger.debug(f'Watch on {self.prefix!r} stopped')

    def _run(self) -> None:
        """Main polling loop.
        """
        while not self._stop_event.is_set():
            try:
                self.poll()
            except LockServiceError as e:
                logger.warning(f'Watch on {self.prefix!r} poll failed: {e}')
            except Exception as e:
                logger.error(f'Watch on {self.prefix!r} error: {e}', exc_info=True)

            if self._stop_event.wait(timeout=self.interval):
                break

    def poll(self) -> list[KeyRecord] | None:
        """Poll the prefix once and queue a notification if anything changed.

        Returns
            Changed records, or None when nothing changed
        """
        records = self.service.list_prefix(self.prefix)
        if self.exact:
            records = [r for r in records if r.key == self.prefix]
        current = {r.key: r.modify_index for r in records}
        if self._seen is not None and current == self._seen:
            return None

        if self._seen is None:
            changed = list(records)
        else:
            changed = [r for r in records if self._seen.get(r.key) != r.modify_index]
        changed.sort(key=lambda r: r.modify_index)
        self._seen = current
        self._notifications.put(changed)
        return changed

    def get(self, timeout: float = None) -> list[KeyRecord] | None:
        """Wait for the next notification.

        Args:
            timeout: Seconds to wait (None waits until a notification or stop)

        Returns
            Changed records, or None on timeout or after stop
        """
        if self._stop_event.is_set() and self._notifications.empty():
            return None
        try:
            return self._notifications.get(timeout=timeout)
        except queue.Empty:
            return None

    def __iter__(self):
        while not self._stop_event.is_set():
            batch = self.get(timeout=self.interval)
            if batch is not None:
                yield batch


# ============================================================
# INTERFACE
# ============================================================

class LockService(ABC):
    """Operations consumed from the external lock/session service.

    Every operation may raise LockServiceError.
    """

    @abstractmethod
    def get(self, key: str) -> KeyRecord | None:
        ...

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        """Write a value without touching the key's session binding.
        """

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def list_prefix(self, prefix: str) -> list[KeyRecord]:
        ...

    @abstractmethod
    def create_session(self, name: str, node: str, checks: list[str], lock_delay: float) -> str:
        """Create a session bound to health checks of a node.

        Raises
            SessionCreateError: If a check is unknown or critical
        """

    @abstractmethod
    def destroy_session(self, session_id: str) -> bool:
        """Destroy a session, releasing its keys and starting their lock-delay.

        Returns
            True if the session existed
        """

    @abstractmethod
    def session_info(self, session_id: str) -> SessionRecord | None:
        ...

    @abstractmethod
    def acquire(self, key: str, value: str, session_id: str) -> bool:
        """Bind key to session if no other session holds it and no lock-delay is pending.

        Raises
            LockServiceError: If the session does not exist
        """

    @abstractmethod
    def release(self, key: str, session_id: str) -> bool:
        """Voluntarily unbind key from session (no lock-delay).
        """

    @abstractmethod
    def node_checks(self, node: str) -> list[CheckRecord]:
        ...

    def watch_prefix(self, prefix: str, interval: float = 1.0) -> PrefixWatch:
        """Start a notification stream on a key prefix.
        """
        return PrefixWatch(self, prefix, interval).start()

    def watch_key(self, key: str, interval: float = 1.0) -> PrefixWatch:
        """Start a notification stream on a single key.

        Deleting the key produces an empty notification.
        """
        return PrefixWatch(self, key, interval, exact=True).start()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

def wrap_errors(func: callable):
    """Decorator converting database errors into LockServiceError.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SQLAlchemyError as e:
            raise LockServiceError(f'{func.__name__} failed: {e}') from e
    return wrapper


class SqlLockService(LockService):
    """Lock service state kept in PostgreSQL tables.
    """

    def __init__(self, engine: Engine, appname: str = 'rc_', ensure_schema: bool = True):
        """Initialize service.

        Args:
            engine: SQLAlchemy engine
            appname: Table name prefix
            ensure_schema: Create missing tables on startup

        Raises
            LockServiceError: If the schema cannot be verified
        """
        self.engine = engine
        self.appname = appname
        self.tables = get_table_names(appname)
        if ensure_schema:
            self._ensure_schema()

    @wrap_errors
    def _ensure_schema(self) -> None:
        ensure_database_ready(self.engine, self.appname)

    @classmethod
    @wrap_errors
    def from_config(cls, config: ElectionConfig) -> 'SqlLockService':
        """Connect to PostgreSQL and verify the lock service tables.

        Raises
            LockServiceError: If the database is unreachable or the URL is invalid
        """
        connection_string = build_connection_string(
            config.host, config.port, config.dbname, config.user, config.password)
        engine = create_engine(connection_string, pool_pre_ping=True, pool_size=10, max_overflow=5)
        try:
            return cls(engine, config.appname)
        except LockServiceError:
            engine.dispose()
            raise

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        self.engine.dispose()

    @property
    def _next_index(self) -> str:
        return f"nextval('{self.tables['KVIndex']}')"

    @wrap_errors
    def get(self, key: str) -> KeyRecord | None:
        sql = f'SELECT key, value, session, modify_index FROM {self.tables["KV"]} WHERE key = :key'
        with self.engine.connect() as conn:
            row = conn.execute(text(sql), {'key': key}).first()
        return KeyRecord(*row) if row else None

    @wrap_errors
    def put(self, key: str, value: str) -> None:
        sql = f"""
        INSERT INTO {self.tables["KV"]} (key, value, modify_index)
        VALUES (:key, :value, {self._next_index})
        ON CONFLICT (key) DO UPDATE
        SET value = EXCLUDED.value, modify_index = EXCLUDED.modify_index
        """
        with self.engine.begin() as conn:
            conn.execute(text(sql), {'key': key, 'value': value})

    @wrap_errors
    def delete(self, key: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(text(f'DELETE FROM {self.tables["KV"]} WHERE key = :key'), {'key': key})
        return result.rowcount > 0

    @wrap_errors
    def list_prefix(self, prefix: str) -> list[KeyRecord]:
        sql = f"""
        SELECT key, value, session, modify_index
        FROM {self.tables["KV"]}
        WHERE left(key, :length) = :prefix
        ORDER BY key
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), {'length': len(prefix), 'prefix': prefix})
            return [KeyRecord(*row) for row in result]

    @wrap_errors
    def create_session(self, name: str, node: str, checks: list[str], lock_delay: float) -> str:
        checks = list(dict.fromkeys(checks))
        session_id = str(uuid.uuid4())
        with self.engine.begin() as conn:
            result = conn.execute(text(f"""
            SELECT check_id, status FROM {self.tables["Check"]}
            WHERE node = :node AND check_id = ANY(:checks)
            FOR SHARE
            """), {'node': node, 'checks': checks})
            statuses = {row[0]: row[1] for row in result}

            missing = [c for c in checks if c not in statuses]
            if missing:
                raise SessionCreateError(f'Missing check(s) {missing} for node {node}')
            critical = [c for c in checks if statuses[c] == 'critical']
            if critical:
                raise SessionCreateError(f'Check(s) {critical} for node {node} are critical')

            conn.execute(text(f"""
            INSERT INTO {self.tables["Session"]} (id, name, node, checks, lock_delay_sec, created_at)
            VALUES (:id, :name, :node, CAST(:checks AS jsonb), :lock_delay, NOW())
            """), {
                'id': session_id,
                'name': name,
                'node': node,
                'checks': json.dumps(checks),
                'lock_delay': lock_delay
            })
        logger.debug(f'Session {session_id} created for {node} with checks {checks}')
        return session_id

    def _invalidate(self, conn, session_id: str) -> bool:
        """Release every key held by the session and delete it.
        """
        row = conn.execute(text(f"""
        SELECT lock_delay_sec FROM {self.tables["Session"]} WHERE id = :id FOR UPDATE
        """), {'id': session_id}).first()
        if row is None:
            return False

        conn.execute(text(f"""
        UPDATE {self.tables["KV"]}
        SET session = NULL,
            modify_index = {self._next_index},
            lock_delay_until = NOW() + make_interval(secs => :lock_delay)
        WHERE session = :id
        """), {'id': session_id, 'lock_delay': row[0]})
        conn.execute(text(f'DELETE FROM {self.tables["Session"]} WHERE id = :id'), {'id': session_id})
        return True

    @wrap_errors
    def destroy_session(self, session_id: str) -> bool:
        with self.engine.begin() as conn:
            existed = self._invalidate(conn, session_id)
        if existed:
            logger.debug(f'Session {session_id} destroyed')
        return existed

    @wrap_errors
    def session_info(self, session_id: str) -> SessionRecord | None:
        sql = f"""
        SELECT id, name, node, checks, lock_delay_sec
        FROM {self.tables["Session"]}
        WHERE id = :id
        """
        with self.engine.connect() as conn:
            row = conn.execute(text(sql), {'id': session_id}).first()
        if row is None:
            return None
        return SessionRecord(row[0], row[1], row[2], tuple(row[3]), row[4])

    @wrap_errors
    def acquire(self, key: str, value: str, session_id: str) -> bool:
        KV = self.tables['KV']
        with self.engine.begin() as conn:
            exists = conn.execute(text(f"""
            SELECT 1 FROM {self.tables["Session"]} WHERE id = :id FOR SHARE
            """), {'id': session_id}).first()
            if exists is None:
                raise LockServiceError(f'Invalid session {session_id}')

            result = conn.execute(text(f"""
            INSERT INTO {KV} (key, value, session, modify_index)
            VALUES (:key, :value, :session, {self._next_index})
            ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                session = EXCLUDED.session,
                modify_index = EXCLUDED.modify_index,
                lock_delay_until = NULL
            WHERE {KV}.session = EXCLUDED.session
               OR ({KV}.session IS NULL
                   AND ({KV}.lock_delay_until IS NULL OR {KV}.lock_delay_until <= NOW()))
            """), {'key': key, 'value': value, 'session': session_id})
        return result.rowcount > 0

    @wrap_errors
    def release(self, key: str, session_id: str) -> bool:
        sql = f"""
        UPDATE {self.tables["KV"]}
        SET session = NULL, modify_index = {self._next_index}
        WHERE key = :key AND session = :session
        """
        with self.engine.begin() as conn:
            result = conn.execute(text(sql), {'key': key, 'session': session_id})
        return result.rowcount > 0

    @wrap_errors
    def node_checks(self, node: str) -> list[CheckRecord]:
        sql = f"""
        SELECT node, check_id, service, status
        FROM {self.tables["Check"]}
        WHERE node = :node
        ORDER BY check_id
        """
        with self.engine.connect() as conn:
            return [CheckRecord(*row) for row in conn.execute(text(sql), {'node': node})]

    def _invalidate_bound_sessions(self, conn, node: str, check_id: str) -> list[str]:
        """Invalidate sessions of node bound to check_id.
        """
        result = conn.execute(text(f"""
        SELECT id FROM {self.tables["Session"]}
        WHERE node = :node AND checks @> CAST(:check AS jsonb)
        """), {'node': node, 'check': json.dumps([check_id])})
        invalidated = [row[0] for row in result]
        for session_id in invalidated:
            self._invalidate(conn, session_id)
        if invalidated:
            logger.warning(f'Check {check_id} on {node} critical, invalidated sessions {invalidated}')
        return invalidated

    @wrap_errors
    def register_check(self, node: str, check_id: str, service: str = None, status: str = 'passing') -> list[str]:
        """Register or replace a health check.

        Returns
            Ids of sessions invalidated because the check is critical
        """
        if status not in CHECK_STATUSES:
            raise ValueError(f'Unknown check status {status!r}')
        sql = f"""
        INSERT INTO {self.tables["Check"]} (node, check_id, service, status, updated_at)
        VALUES (:node, :check_id, :service, :status, NOW())
        ON CONFLICT (node, check_id) DO UPDATE
        SET service = EXCLUDED.service, status = EXCLUDED.status, updated_at = EXCLUDED.updated_at
        """
        with self.engine.begin() as conn:
            conn.execute(text(sql), {'node': node, 'check_id': check_id, 'service': service, 'status': status})
            if status == 'critical':
                return self._invalidate_bound_sessions(conn, node, check_id)
        return []

    @wrap_errors
    def set_check_status(self, node: str, check_id: str, status: str) -> list[str]:
        """Update check status; critical invalidates bound sessions.

        Returns
            Ids of invalidated sessions
        """
        if status not in CHECK_STATUSES:
            raise ValueError(f'Unknown check status {status!r}')
        sql = f"""
        UPDATE {self.tables["Check"]}
        SET status = :status, updated_at = NOW()
        WHERE node = :node AND check_id = :check_id
        """
        with self.engine.begin() as conn:
            result = conn.execute(text(sql), {'node': node, 'check_id': check_id, 'status': status})
            if result.rowcount == 0:
                raise LockServiceError(f'Unknown check {check_id} on {node}')
            if status == 'critical':
                return self._invalidate_bound_sessions(conn, node, check_id)
        return []
