"""Shared test fixtures, utilities, and helpers.

USE THIS FILE FOR:
- The simulated lock service used by coordinator tests
- Config builders with fast timings
- Wait helpers used by multiple test files
"""
import collections
import logging
import subprocess
import sys
import threading
import time
import uuid

import pytest

from rcelect.client import ElectionCoordinator
from rcelect.config import ElectionConfig
from rcelect.service import CHECK_STATUSES, CheckRecord, KeyRecord, LockService
from rcelect.service import LockServiceError, SessionCreateError, SessionRecord

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIG BUILDERS
# ============================================================================

def test_config(**overrides) -> ElectionConfig:
    """Create ElectionConfig with test-optimized values.

    Usage:
        config = test_config()
        config = test_config(lock_delay_sec=0, max_contest_attempts=3)
    """
    defaults = {
        'lock_delay_sec': 5,
        'contest_jitter_max_sec': 0.01,
        'watch_interval_sec': 0.05,
        'task_join_timeout_sec': 2,
        'retry_attempts': 2,
        'retry_base_delay_sec': 0.01,
    }
    defaults.update(overrides)
    return ElectionConfig(**defaults)


test_config.__test__ = False


# ============================================================================
# SIMULATED LOCK SERVICE
# ============================================================================

class FakeClock:
    """Manually advanced clock for lock-delay windows.
    """

    def __init__(self, start: float = 1000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class MemoryLockService(LockService):
    """In-process lock service with atomic acquire semantics.

    Mirrors SqlLockService: destroyed or invalidated sessions release their
    keys and start lock-delay, voluntary release does not. Operations named
    in `fail` raise LockServiceError.
    """

    def __init__(self, clock: callable = time.monotonic):
        self.clock = clock
        self.fail = set()
        self.calls = collections.Counter()
        self.destroy_calls = collections.Counter()
        self.sessions_created = collections.Counter()
        self._kv = {}
        self._sessions = {}
        self._checks = {}
        self._index = 0
        self._lock = threading.RLock()

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if operation in self.fail:
            raise LockServiceError(f'{operation} unavailable')

    def _next_index(self) -> int:
        self._index += 1
        return self._index

    def _record(self, key: str) -> KeyRecord:
        entry = self._kv[key]
        return KeyRecord(key, entry['value'], entry['session'], entry['modify_index'])

    def get(self, key):
        with self._lock:
            self._enter('get')
            return self._record(key) if key in self._kv else None

    def put(self, key, value):
        with self._lock:
            self._enter('put')
            entry = self._kv.setdefault(key, {'session': None, 'lock_delay_until': None})
            entry['value'] = value
            entry['modify_index'] = self._next_index()

    def delete(self, key):
        with self._lock:
            self._enter('delete')
            return self._kv.pop(key, None) is not None

    def list_prefix(self, prefix):
        with self._lock:
            self._enter('list_prefix')
            return [self._record(k) for k in sorted(self._kv) if k.startswith(prefix)]

    def create_session(self, name, node, checks, lock_delay):
        with self._lock:
            self._enter('create_session')
            checks = list(dict.fromkeys(checks))
            missing = [c for c in checks if (node, c) not in self._checks]
            if missing:
                raise SessionCreateError(f'Missing check(s) {missing} for node {node}')
            critical = [c for c in checks if self._checks[(node, c)].status == 'critical']
            if critical:
                raise SessionCreateError(f'Check(s) {critical} for node {node} are critical')
            session_id = str(uuid.uuid4())
            self._sessions[session_id] = SessionRecord(session_id, name, node, tuple(checks), lock_delay)
            self.sessions_created[node] += 1
            return session_id

    def _invalidate(self, session_id):
        record = self._sessions.pop(session_id, None)
        if record is None:
            return False
        for entry in self._kv.values():
            if entry['session'] == session_id:
                entry['session'] = None
                entry['modify_index'] = self._next_index()
                entry['lock_delay_until'] = self.clock() + record.lock_delay
        return True

    def destroy_session(self, session_id):
        with self._lock:
            self.destroy_calls[session_id] += 1
            self._enter('destroy_session')
            return self._invalidate(session_id)

    def session_info(self, session_id):
        with self._lock:
            self._enter('session_info')
            return self._sessions.get(session_id)

    def acquire(self, key, value, session_id):
        with self._lock:
            self._enter('acquire')
            if session_id not in self._sessions:
                raise LockServiceError(f'Invalid session {session_id}')
            entry = self._kv.get(key)
            if entry is not None and entry['session'] != session_id:
                if entry['session'] is not None:
                    return False
                if entry['lock_delay_until'] is not None and entry['lock_delay_until'] > self.clock():
                    return False
            self._kv[key] = {
                'value': value,
                'session': session_id,
                'modify_index': self._next_index(),
                'lock_delay_until': None,
            }
            return True

    def release(self, key, session_id):
        with self._lock:
            self._enter('release')
            entry = self._kv.get(key)
            if entry is None or entry['session'] != session_id:
                return False
            entry['session'] = None
            entry['modify_index'] = self._next_index()
            return True

    def node_checks(self, node):
        with self._lock:
            self._enter('node_checks')
            return [c for (n, _), c in sorted(self._checks.items()) if n == node]

    def _invalidate_bound_sessions(self, node, check_id):
        bound = [s.id for s in self._sessions.values() if s.node == node and check_id in s.checks]
        for session_id in bound:
            self._invalidate(session_id)
        return bound

    def register_check(self, node, check_id, service=None, status='passing'):
        if status not in CHECK_STATUSES:
            raise ValueError(f'Unknown check status {status!r}')
        with self._lock:
            self._enter('register_check')
            self._checks[(node, check_id)] = CheckRecord(node, check_id, service, status)
            if status == 'critical':
                return self._invalidate_bound_sessions(node, check_id)
            return []

    def set_check_status(self, node, check_id, status):
        if status not in CHECK_STATUSES:
            raise ValueError(f'Unknown check status {status!r}')
        with self._lock:
            self._enter('set_check_status')
            check = self._checks.get((node, check_id))
            if check is None:
                raise LockServiceError(f'Unknown check {check_id} on {node}')
            self._checks[(node, check_id)] = CheckRecord(node, check_id, check.service, status)
            if status == 'critical':
                return self._invalidate_bound_sessions(node, check_id)
            return []


# ============================================================================
# FACTORIES
# ============================================================================

def register_node(service, node_name: str, *services: str) -> None:
    """Register the node liveness check plus one check per dependent service.
    """
    service.register_check(node_name, 'serfHealth')
    for name in services:
        service.register_check(node_name, f'service:{name}', service=name)


def create_coordinator(service, node_name: str, config: ElectionConfig = None, **kwargs) -> ElectionCoordinator:
    """Create coordinator for a node with its checks registered.
    """
    register_node(service, node_name)
    return ElectionCoordinator(node_name, service, config or test_config(), **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    return MemoryLockService(clock=clock)


# ============================================================================
# WAIT HELPERS
# ============================================================================

def wait_for(predicate: callable, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll predicate until true or timeout.

    Returns
        True if predicate became true
    """
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def run_in_thread(func: callable, *args) -> tuple[threading.Thread, list]:
    """Run func in a thread, collecting its return value.

    Returns
        (thread, results) where results receives the return value
    """
    results = []
    thread = threading.Thread(target=lambda: results.append(func(*args)), daemon=True)
    thread.start()
    return thread, results


def exited_pid() -> int:
    """Pid of a local process that has already exited.
    """
    proc = subprocess.Popen([sys.executable, '-c', 'pass'])
    proc.wait()
    return proc.pid
