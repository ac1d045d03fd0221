import os
from dataclasses import dataclass


@dataclass
class ElectionConfig:
    """Configuration for session-based leader election.

    All timing parameters are in seconds.
    Connection parameters for the SQL-backed lock service.
    """
    election_key: str = 'leader'
    event_prefix: str = 'eq/'
    node_check: str = 'serfHealth'
    lock_delay_sec: float = 15
    contest_jitter_max_sec: float = 9
    max_contest_attempts: int = None
    watch_interval_sec: float = 1
    task_join_timeout_sec: float = 10
    retry_attempts: int = 3
    retry_base_delay_sec: float = 0.5

    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'rcelect'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'rc_'


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


def load_config(**overrides) -> ElectionConfig:
    """Build config from RCELECT_* environment variables.

    Args:
        **overrides: Values taking precedence over the environment

    Returns
        ElectionConfig
    """
    max_attempts = os.getenv('RCELECT_MAX_CONTEST_ATTEMPTS')
    values = {
        'election_key': os.getenv('RCELECT_ELECTION_KEY', 'leader'),
        'event_prefix': os.getenv('RCELECT_EVENT_PREFIX', 'eq/'),
        'node_check': os.getenv('RCELECT_NODE_CHECK', 'serfHealth'),
        'lock_delay_sec': float(os.getenv('RCELECT_LOCK_DELAY', '15')),
        'contest_jitter_max_sec': float(os.getenv('RCELECT_CONTEST_JITTER', '9')),
        'max_contest_attempts': int(max_attempts) if max_attempts else None,
        'watch_interval_sec': float(os.getenv('RCELECT_WATCH_INTERVAL', '1')),
        'task_join_timeout_sec': float(os.getenv('RCELECT_TASK_JOIN_TIMEOUT', '10')),
        'retry_attempts': int(os.getenv('RCELECT_RETRY_ATTEMPTS', '3')),
        'retry_base_delay_sec': float(os.getenv('RCELECT_RETRY_DELAY', '0.5')),
        'host': os.getenv('RCELECT_SQL_HOST', 'localhost'),
        'port': int(os.getenv('RCELECT_SQL_PORT', '5432')),
        'dbname': os.getenv('RCELECT_SQL_DATABASE', 'rcelect'),
        'user': os.getenv('RCELECT_SQL_USERNAME', 'postgres'),
        'password': os.getenv('RCELECT_SQL_PASSWORD', 'postgres'),
        'appname': os.getenv('RCELECT_SQL_APPNAME', 'rc_'),
    }
    values.update(overrides)
    return ElectionConfig(**values)
