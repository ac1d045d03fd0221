"""Session-based leader election with reactive re-invocation.

Every node runs ElectionCoordinator.invoke() once per change of the election
key. An invocation observes the key, cleans up stale local work, and either
stands down, contests the lock with a fresh session, or confirms it already
leads. A won session is handed to a LeadershipTask which owns it until the
task ends, at which point the session is destroyed.
"""
import datetime
import functools
import json
import logging
import os
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from rcelect.config import ElectionConfig
from rcelect.service import KeyRecord, LockService, LockServiceError
from rcelect.service import SessionCreateError

logger = logging.getLogger(__name__)

__all__ = ['ElectionAgent', 'ElectionCoordinator', 'ElectionOutcome', 'ElectionState',
           'Leader', 'NoLeader', 'read_leader', 'publish_event']

CONTEST_ROLE = 'contest'
LEADER_ROLE = 'leader'


# ============================================================
# UTILITY FUNCTIONS
# ============================================================

def retry_with_backoff(max_attempts: int = 3, base_delay: float = 0.5, operation_name: str = None):
    """Decorator to retry function with exponential backoff on lock service errors.

    Args:
        max_attempts: Maximum retry attempts
        base_delay: Base delay in seconds (doubles each retry)
        operation_name: Name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except LockServiceError as e:
                    if attempt == max_attempts:
                        logger.error(f'{name} failed after {max_attempts} attempts: {e}')
                        raise
                    delay = base_delay * (2 ** (attempt - 1))
                    logger.warning(f'{name} attempt {attempt}/{max_attempts} failed: {e}, retrying in {delay:.1f}s')
                    time.sleep(delay)
        return wrapper
    return decorator


def publish_event(service: LockService, payload: dict, prefix: str = 'eq/') -> str:
    """Publish a JSON payload under the event queue prefix.

    Args:
        service: Lock service
        payload: Event payload
        prefix: Event queue key prefix

    Returns
        Key the event was written to
    """
    key = f'{prefix}{time.time_ns()}-{uuid.uuid4().hex[:8]}'
    service.put(key, json.dumps(payload))
    logger.debug(f'Published event {key}')
    return key


def session_owner_alive(session_name: str) -> bool:
    """Whether the local process recorded in a session name may still be running.

    Session names end in ':<pid>' of the creating process. Names without a
    pid, or pids we cannot signal, count as alive.

    Args:
        session_name: Name of a session created on this node

    Returns
        False only when the owning process is known to have exited
    """
    _, sep, pid = session_name.rpartition(':')
    if not sep or not pid.isdigit():
        return True
    if int(pid) == os.getpid():
        return True
    try:
        os.kill(int(pid), 0)
    except ProcessLookupError:
        return False
    except OSError:
        return True
    return True


def log_events(records: list[KeyRecord]) -> None:
    """Default leader handler: log each event key.
    """
    for record in records:
        logger.info(f'Event {record.key}: {record.value}')


# ============================================================
# ELECTION KEY VALUE
# ============================================================

@dataclass(frozen=True)
class NoLeader:
    """Election key absent or not bound to a session.
    """


@dataclass(frozen=True)
class Leader:
    """Election key bound to a live session.
    """
    node: str
    session: str


LeaderValue = NoLeader | Leader


def read_leader(record: KeyRecord | None) -> LeaderValue:
    """Interpret the election key.

    Holder presence is decided by the session reference alone. A released key
    keeps its last value (which may be a legacy '_' marker), so the value is
    only used to identify the holder.

    Args:
        record: Election key record or None when absent

    Returns
        Leader when a session holds the key, otherwise NoLeader
    """
    if record is None or not record.session:
        return NoLeader()
    return Leader(node=record.value or '', session=record.session)


# ============================================================
# PURE STATE MACHINE
# ============================================================

class ElectionState(Enum):
    """States of one coordinator invocation.
    """
    IDLE = 'idle'
    OBSERVING = 'observing'
    CONTESTING = 'contesting'
    LEADING = 'leading'
    RELEASED = 'released'


class ElectionOutcome(Enum):
    """How an invocation ended.
    """
    LEADING = 'leading'
    ALREADY_LEADING = 'already_leading'
    FOLLOWING = 'following'
    LOST = 'lost'
    RECLAIMED = 'reclaimed'
    ABANDONED = 'abandoned'


class ElectionStateMachine:
    """State machine for one election invocation.

    Validates transitions and fires enter/exit callbacks.
    """

    def __init__(self):
        self.state = ElectionState.IDLE
        self.history = [ElectionState.IDLE]
        self._on_enter_callbacks = {}
        self._on_exit_callbacks = {}
        self._valid_transitions = {}
        self._setup_transition_graph()

    def _setup_transition_graph(self) -> None:
        """Define valid state transitions.
        """
        self._add_transition(ElectionState.IDLE, ElectionState.OBSERVING)
        self._add_transition(ElectionState.IDLE, ElectionState.RELEASED)
        self._add_transition(ElectionState.OBSERVING, ElectionState.CONTESTING)
        self._add_transition(ElectionState.OBSERVING, ElectionState.LEADING)
        self._add_transition(ElectionState.OBSERVING, ElectionState.RELEASED)
        self._add_transition(ElectionState.CONTESTING, ElectionState.LEADING)
        self._add_transition(ElectionState.CONTESTING, ElectionState.RELEASED)
        self._add_transition(ElectionState.LEADING, ElectionState.RELEASED)

    def _add_transition(self, from_state: ElectionState, to_state: ElectionState) -> None:
        self._valid_transitions.setdefault(from_state, set()).add(to_state)

    def on_enter(self, state: ElectionState, callback: callable) -> None:
        """Register callback when entering state.
        """
        self._on_enter_callbacks[state] = callback

    def on_exit(self, state: ElectionState, callback: callable) -> None:
        """Register callback when exiting state.
        """
        self._on_exit_callbacks[state] = callback

    def transition_to(self, new_state: ElectionState) -> bool:
        """Attempt transition with validation.

        Args:
            new_state: Target state

        Returns
            True if transition succeeded, False if invalid
        """
        if self.state == new_state:
            return True

        if new_state not in self._valid_transitions.get(self.state, set()):
            logger.error(f'Invalid transition: {self.state.value} -> {new_state.value}')
            return False

        logger.debug(f'State transition: {self.state.value} -> {new_state.value}')

        if self.state in self._on_exit_callbacks:
            self._on_exit_callbacks[self.state]()

        self.state = new_state
        self.history.append(new_state)

        if new_state in self._on_enter_callbacks:
            self._on_enter_callbacks[new_state]()

        return True

    def is_released(self) -> bool:
        return self.state == ElectionState.RELEASED

    def is_leading(self) -> bool:
        return self.state == ElectionState.LEADING


@dataclass
class ElectionAttempt:
    """Ephemeral state of one coordinator invocation.
    """
    node_name: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    machine: ElectionStateMachine = field(default_factory=ElectionStateMachine)
    leader: LeaderValue = field(default_factory=NoLeader)
    session_id: str = None
    retries: int = 0
    outcome: ElectionOutcome = None

    @property
    def state(self) -> ElectionState:
        return self.machine.state


# ============================================================
# SESSIONS
# ============================================================

class Session:
    """Handle on a lock service session.

    destroy() is idempotent and reaches the lock service at most once, so a
    session can be handed to several cleanup paths safely.
    """

    def __init__(self, service: LockService, session_id: str, name: str, checks: list[str],
                 lock_delay: float, retry_attempts: int = 3, retry_delay: float = 0.5):
        self.service = service
        self.id = session_id
        self.name = name
        self.checks = list(checks)
        self.lock_delay = lock_delay
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._destroyed = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f'Session(id={self.id},name={self.name})'

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> bool:
        """Destroy the session once.

        Returns
            True if this call performed the destroy, False if already done
        """
        with self._lock:
            if self._destroyed:
                return False
            self._destroyed = True

        destroy = retry_with_backoff(
            max_attempts=self._retry_attempts,
            base_delay=self._retry_delay,
            operation_name=f'destroy session {self.id}')(self.service.destroy_session)
        try:
            destroy(self.id)
            logger.info(f'Session {self.id} destroyed')
        except LockServiceError as e:
            logger.error(f'Session {self.id} could not be destroyed, health checks will invalidate it: {e}')
        return True

    def __enter__(self):
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        self.destroy()


class SessionManager:
    """Creates sessions bound to this node's liveness and dependent-service checks.
    """

    def __init__(self, node_name: str, service: LockService, config: ElectionConfig):
        self.node_name = node_name
        self.service = service
        self.config = config

    @property
    def session_name(self) -> str:
        return f'{self.config.election_key}-{self.node_name}:{os.getpid()}'

    def discover_checks(self) -> list[str]:
        """Node liveness check plus every service-bound check registered for this node.
        """
        lookup = retry_with_backoff(
            max_attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay_sec,
            operation_name='node_checks')(self.service.node_checks)
        checks = [self.config.node_check]
        for check in lookup(self.node_name):
            if check.service and check.check_id not in checks:
                checks.append(check.check_id)
        return checks

    def create(self) -> Session:
        """Create a session for an election attempt.

        Raises
            SessionCreateError: If checks cannot be discovered or the service refuses the session
        """
        try:
            checks = self.discover_checks()
            session_id = self.service.create_session(
                self.session_name, self.node_name, checks, self.config.lock_delay_sec)
        except SessionCreateError:
            raise
        except LockServiceError as e:
            raise SessionCreateError(f'Session creation failed for {self.node_name}: {e}') from e

        logger.info(f'Created session {session_id} for {self.node_name} bound to {checks}')
        return Session(self.service, session_id, self.session_name, checks,
                       self.config.lock_delay_sec, self.config.retry_attempts,
                       self.config.retry_base_delay_sec)


# ============================================================
# TASK REGISTRY AND CLEANUP
# ============================================================

class ContestHandle:
    """Handle on a running contest loop.
    """
    role = CONTEST_ROLE

    def __init__(self, attempt_id: str):
        self.attempt_id = attempt_id
        self.session_id = None
        self.cancel_event = threading.Event()
        self._finished = threading.Event()

    def __repr__(self) -> str:
        return f'ContestHandle(attempt={self.attempt_id},session={self.session_id})'

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def stop(self) -> None:
        self.cancel_event.set()

    def finish(self) -> None:
        self._finished.set()

    def join(self, timeout: float = None) -> bool:
        return self._finished.wait(timeout)

    def is_alive(self) -> bool:
        return not self._finished.is_set()


class TaskRegistry:
    """Locally spawned task handles grouped by role.
    """

    def __init__(self):
        self._handles = {CONTEST_ROLE: [], LEADER_ROLE: []}
        self._lock = threading.Lock()

    def register(self, handle) -> None:
        with self._lock:
            self._handles[handle.role].append(handle)

    def unregister(self, handle) -> None:
        with self._lock:
            handles = self._handles[handle.role]
            if handle in handles:
                handles.remove(handle)

    def handles(self, role: str) -> list:
        with self._lock:
            return list(self._handles[role])

    def owner_of(self, session_id: str):
        """Live handle (leadership task or in-flight contest) owning session_id.
        """
        with self._lock:
            for role in (LEADER_ROLE, CONTEST_ROLE):
                for handle in self._handles[role]:
                    if handle.session_id == session_id and handle.is_alive():
                        return handle
        return None


class CleanupManager:
    """Stops stale contest loops and leadership tasks registered on this node.
    """

    def __init__(self, registry: TaskRegistry, join_timeout: float = 10):
        self.registry = registry
        self.join_timeout = join_timeout

    def cleanup(self, keep_session: str = None) -> int:
        """Stop every registered contest and every leadership task not owning keep_session.

        Safe to call when nothing is registered. Never raises.

        Args:
            keep_session: Session of a still-valid leadership task to leave running

        Returns
            Number of handles stopped
        """
        # leaders are listed before contests are joined so a task spawned by
        # a contest that wins while being cancelled is not stopped here
        leaders = self.registry.handles(LEADER_ROLE)
        contests = self.registry.handles(CONTEST_ROLE)

        stopped = 0
        for handle in contests:
            stopped += self._stop(handle)
        for task in leaders:
            if keep_session is not None and task.session_id == keep_session and task.is_alive():
                continue
            stopped += self._stop(task)

        if stopped:
            logger.info(f'Cleanup stopped {stopped} stale task(s)')
        return stopped

    def _stop(self, handle) -> int:
        try:
            handle.stop()
            if not handle.join(self.join_timeout):
                logger.warning(f'{handle} did not stop within {self.join_timeout}s')
        except Exception as e:
            logger.debug(f'Cleanup of {handle} failed: {e}')
        self.registry.unregister(handle)
        return 1


# ============================================================
# LEADERSHIP TASK
# ============================================================

class LeadershipTask:
    """Leader workload owning a won session.

    Watches the event queue prefix and hands each batch of changed records to
    the handler. Ends when stopped, when the handler returns False or raises,
    or when the election key is no longer bound to its session. The session is
    destroyed on every exit path.
    """
    role = LEADER_ROLE

    def __init__(self, node_name: str, session: Session, service: LockService, config: ElectionConfig,
                 handler: callable = None, on_exit: callable = None):
        self.node_name = node_name
        self.session = session
        self.service = service
        self.config = config
        self.handler = handler or log_events
        self.exit_reason = None
        self.events_dispatched = 0
        self.started_at = None
        self.thread = None
        self._on_exit = on_exit
        self._watch = None
        self._stop_event = threading.Event()
        self._finished = threading.Event()

    def __repr__(self) -> str:
        return f'LeadershipTask(node={self.node_name},session={self.session.id})'

    @property
    def session_id(self) -> str:
        return self.session.id

    def start(self) -> None:
        self.started_at = datetime.datetime.now(datetime.timezone.utc)
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f'leader-{self.node_name}'
        )
        self.thread.start()

    def stop(self) -> None:
        """Request the task to end; the session is destroyed as it exits.
        """
        self._stop_event.set()
        if self._watch is not None:
            self._watch.stop()

    def join(self, timeout: float = None) -> bool:
        return self._finished.wait(timeout)

    def is_alive(self) -> bool:
        return not self._finished.is_set()

    def _run(self) -> None:
        logger.info(f'{self.node_name} leading with session {self.session.id}')
        try:
            self._watch = self.service.watch_prefix(self.config.event_prefix, self.config.watch_interval_sec)
            if self._stop_event.is_set():
                self._watch.stop()
            self.exit_reason = self._dispatch()
        except Exception as e:
            self.exit_reason = 'crashed'
            logger.error(f'Leadership task for session {self.session.id} crashed: {e}', exc_info=True)
        finally:
            if self._watch is not None:
                self._watch.stop()
            self.session.destroy()
            self._finished.set()
            logger.info(f'Leadership of {self.node_name} ended ({self.exit_reason})')
            if self._on_exit is not None:
                self._on_exit(self)

    def _dispatch(self) -> str:
        while not self._stop_event.is_set():
            batch = self._watch.get(timeout=self.config.watch_interval_sec)
            if self._stop_event.is_set():
                break
            if batch:
                self.events_dispatched += len(batch)
                if self.handler(batch) is False:
                    return 'completed'
            if not self._holds_lock():
                logger.warning(f'{self.node_name} no longer holds {self.config.election_key!r}')
                return 'lost'
        return 'stopped'

    def _holds_lock(self) -> bool:
        try:
            record = self.service.get(self.config.election_key)
        except LockServiceError as e:
            logger.debug(f'Lock check failed, assuming still held: {e}')
            return True
        return record is not None and record.session == self.session.id


class LeadershipTaskRunner:
    """Spawns leadership tasks and keeps them in the task registry while they run.
    """

    def __init__(self, node_name: str, service: LockService, registry: TaskRegistry,
                 config: ElectionConfig, handler: callable = None):
        self.node_name = node_name
        self.service = service
        self.registry = registry
        self.config = config
        self.handler = handler

    def spawn(self, session: Session) -> LeadershipTask:
        """Start a leadership task for a won session without waiting for it.
        """
        task = LeadershipTask(self.node_name, session, self.service, self.config,
                              handler=self.handler, on_exit=self.registry.unregister)
        self.registry.register(task)
        task.start()
        return task


# ============================================================
# COORDINATOR
# ============================================================

class ElectionCoordinator:
    """Decides, per invocation, whether to stand down, clean up, or contest.

    Invocations are re-entrant and may overlap on the same node: the
    cleanup-and-register step runs under a lock and cancels any earlier
    contest loop, so at most one contest loop runs per node.
    """

    def __init__(self, node_name: str, service: LockService, config: ElectionConfig = None,
                 handler: callable = None, reclaim_orphans: bool = True):
        """Initialize coordinator.

        Args:
            node_name: Identity written to the election key
            service: Lock service client
            config: Election configuration
            handler: Callback(records) for the leader workload
            reclaim_orphans: Destroy sessions of this node whose owning process has exited
        """
        self.node_name = node_name
        self.service = service
        self.config = config or ElectionConfig()
        self.reclaim_orphans = reclaim_orphans
        self.registry = TaskRegistry()
        self.sessions = SessionManager(node_name, service, self.config)
        self.cleanup = CleanupManager(self.registry, self.config.task_join_timeout_sec)
        self.runner = LeadershipTaskRunner(node_name, service, self.registry, self.config, handler)
        self.last_attempt = None
        self._lock = threading.Lock()

    @property
    def leadership_task(self) -> LeadershipTask | None:
        tasks = [t for t in self.registry.handles(LEADER_ROLE) if t.is_alive()]
        return tasks[0] if tasks else None

    def is_leader(self) -> bool:
        return self.leadership_task is not None

    def invoke(self) -> ElectionAttempt:
        """Run one election invocation. Never raises.

        Returns
            The attempt, ending in RELEASED with its outcome set
        """
        attempt = ElectionAttempt(self.node_name)
        self.last_attempt = attempt
        try:
            attempt.outcome = self._run(attempt)
        except LockServiceError as e:
            logger.warning(f'Election attempt {attempt.id} abandoned: {e}')
            attempt.outcome = ElectionOutcome.ABANDONED
        except Exception as e:
            logger.error(f'Election attempt {attempt.id} failed: {e}', exc_info=True)
            attempt.outcome = ElectionOutcome.ABANDONED
        finally:
            attempt.machine.transition_to(ElectionState.RELEASED)
        logger.info(f'Election attempt {attempt.id} on {self.node_name}: {attempt.outcome.value}')
        return attempt

    def _run(self, attempt: ElectionAttempt) -> ElectionOutcome:
        attempt.machine.transition_to(ElectionState.OBSERVING)
        attempt.leader = read_leader(self.service.get(self.config.election_key))

        if isinstance(attempt.leader, Leader):
            return self._observe_holder(attempt)

        attempt.machine.transition_to(ElectionState.CONTESTING)
        with self._lock:
            self.cleanup.cleanup()
            handle = ContestHandle(attempt.id)
            self.registry.register(handle)

        try:
            return self._contest(attempt, handle)
        finally:
            self.registry.unregister(handle)
            handle.finish()

    def _observe_holder(self, attempt: ElectionAttempt) -> ElectionOutcome:
        leader = attempt.leader
        with self._lock:
            if leader.node == self.node_name and self.registry.owner_of(leader.session) is not None:
                attempt.session_id = leader.session
                attempt.machine.transition_to(ElectionState.LEADING)
                logger.debug(f'{self.node_name} already leads with session {leader.session}')
                return ElectionOutcome.ALREADY_LEADING

            self.cleanup.cleanup(keep_session=leader.session)

        if leader.node == self.node_name:
            return self._observe_own_session(attempt)

        logger.debug(f'{leader.node} holds the election, {self.node_name} standing down')
        return ElectionOutcome.FOLLOWING

    def _observe_own_session(self, attempt: ElectionAttempt) -> ElectionOutcome:
        """Handle a holder session of this node that no local handle owns.

        A live session whose owner may still run (another process on this
        node, or another coordinator in this one) means this node already
        leads. Only a session whose owning process has exited is destroyed.
        """
        leader = attempt.leader
        info = self.service.session_info(leader.session)
        if info is None or info.node != self.node_name:
            return ElectionOutcome.FOLLOWING

        if not self.reclaim_orphans or session_owner_alive(info.name):
            attempt.session_id = leader.session
            attempt.machine.transition_to(ElectionState.LEADING)
            logger.debug(f'{self.node_name} already leads with session {leader.session} ({info.name})')
            return ElectionOutcome.ALREADY_LEADING

        logger.warning(f'Orphaned session {leader.session} of {self.node_name} holds the election, destroying it')
        self.service.destroy_session(leader.session)
        return ElectionOutcome.RECLAIMED

    def _contest(self, attempt: ElectionAttempt, handle: ContestHandle) -> ElectionOutcome:
        try:
            session = self.sessions.create()
        except SessionCreateError as e:
            logger.warning(f'{self.node_name} cannot contest: {e}')
            return ElectionOutcome.ABANDONED

        attempt.session_id = handle.session_id = session.id
        key = self.config.election_key
        max_attempts = self.config.max_contest_attempts

        while True:
            if handle.cancelled:
                logger.info(f'Contest {attempt.id} superseded by a newer invocation')
                session.destroy()
                return ElectionOutcome.ABANDONED

            try:
                attempt.leader = read_leader(self.service.get(key))
                if isinstance(attempt.leader, Leader):
                    if attempt.leader.session == session.id:
                        return self._lead(attempt, session)
                    logger.info(f'{attempt.leader.node} won the election, {self.node_name} abandoning contest')
                    session.destroy()
                    return ElectionOutcome.LOST

                if self.service.acquire(key, self.node_name, session.id):
                    return self._lead(attempt, session)
            except LockServiceError as e:
                logger.warning(f'Contest {attempt.id} error: {e}')
                if not self._session_alive(session):
                    session.destroy()
                    return ElectionOutcome.ABANDONED

            attempt.retries += 1
            if max_attempts is not None and attempt.retries >= max_attempts:
                logger.warning(f'Contest {attempt.id} gave up after {attempt.retries} attempts')
                session.destroy()
                return ElectionOutcome.ABANDONED

            delay = random.uniform(0, self.config.contest_jitter_max_sec)
            logger.debug(f'Contest {attempt.id} retry {attempt.retries} in {delay:.2f}s')
            handle.cancel_event.wait(delay)

    def _session_alive(self, session: Session) -> bool:
        try:
            return self.service.session_info(session.id) is not None
        except LockServiceError:
            return True

    def _lead(self, attempt: ElectionAttempt, session: Session) -> ElectionOutcome:
        attempt.machine.transition_to(ElectionState.LEADING)
        try:
            self.runner.spawn(session)
        except Exception as e:
            logger.error(f'Failed to start leadership task: {e}', exc_info=True)
            session.destroy()
            return ElectionOutcome.ABANDONED
        logger.info(f'{self.node_name} won the election with session {session.id}')
        return ElectionOutcome.LEADING

    def shutdown(self) -> int:
        """Cancel contests and stop leadership tasks, destroying their sessions.
        """
        with self._lock:
            return self.cleanup.cleanup()

    def status(self) -> dict:
        """Get current election state for debugging.
        """
        task = self.leadership_task
        attempt = self.last_attempt
        return {
            'node_name': self.node_name,
            'is_leader': task is not None,
            'session': task.session_id if task else None,
            'leading_since': task.started_at if task else None,
            'events_dispatched': task.events_dispatched if task else 0,
            'contests': len(self.registry.handles(CONTEST_ROLE)),
            'last_attempt': {
                'id': attempt.id,
                'outcome': attempt.outcome.value if attempt.outcome else None,
                'retries': attempt.retries,
            } if attempt else None,
        }


# ============================================================
# AGENT
# ============================================================

class ElectionAgent:
    """Hosts election for one node: re-invokes the coordinator on every election key change.

    Usage:
        with ElectionAgent('node1', service, config, handler=on_events) as agent:
            agent.wait()
    """

    def __init__(self, node_name: str, service: LockService, config: ElectionConfig = None,
                 handler: callable = None, reclaim_orphans: bool = True):
        self.node_name = node_name
        self.service = service
        self.config = config or ElectionConfig()
        self.coordinator = ElectionCoordinator(node_name, service, self.config, handler, reclaim_orphans)
        self.invocations = 0
        self._watch = None
        self._dispatcher = None
        self._workers = []
        self._shutdown_event = threading.Event()

    def __enter__(self):
        logger.info(f'Starting election agent for {self.node_name}')
        self._watch = self.service.watch_key(self.config.election_key, self.config.watch_interval_sec)
        self._dispatcher = threading.Thread(
            target=self._dispatch,
            daemon=True,
            name=f'election-{self.node_name}'
        )
        self._dispatcher.start()
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        logger.info(f'Stopping election agent for {self.node_name}')
        if exc_ty:
            logger.error(exc_val)

        self._shutdown_event.set()
        if self._watch is not None:
            self._watch.stop()
        if self._dispatcher is not None:
            self._dispatcher.join(timeout=self.config.task_join_timeout_sec)

        self.coordinator.shutdown()
        for worker in self._workers:
            worker.join(timeout=self.config.task_join_timeout_sec)
            if worker.is_alive():
                logger.warning(f'{worker.name} did not stop within timeout')
        # a worker may have won between the first shutdown and its join
        self.coordinator.shutdown()

    def _dispatch(self) -> None:
        """Invoke the coordinator once per election key notification.
        """
        while not self._shutdown_event.is_set():
            batch = self._watch.get(timeout=self.config.watch_interval_sec)
            if batch is None or self._shutdown_event.is_set():
                continue
            self.invoke()

    def invoke(self) -> threading.Thread:
        """Start a coordinator invocation on a worker thread.
        """
        self._workers = [w for w in self._workers if w.is_alive()]
        self.invocations += 1
        worker = threading.Thread(
            target=self.coordinator.invoke,
            daemon=True,
            name=f'invoke-{self.node_name}-{self.invocations}'
        )
        self._workers.append(worker)
        worker.start()
        return worker

    def wait(self, timeout: float = None) -> bool:
        """Block until shutdown is requested.

        Returns
            True if shutdown was requested, False on timeout
        """
        return self._shutdown_event.wait(timeout)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def is_leader(self) -> bool:
        return self.coordinator.is_leader()

    def status(self) -> dict:
        status = self.coordinator.status()
        status['invocations'] = self.invocations
        return status
