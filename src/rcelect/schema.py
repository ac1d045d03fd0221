import logging

from sqlalchemy import Engine, text

logger = logging.getLogger(__name__)

TABLE_KEYS = ['Session', 'KV', 'Check']


def get_table_names(appname: str = 'rc_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table and sequence names
    """
    return {
        'Session': f'{appname}session',
        'KV': f'{appname}kv',
        'Check': f'{appname}check',
        'KVIndex': f'{appname}kv_index',
    }


def verify_tables_exist(engine: Engine, appname: str = 'rc_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    status = {}

    with engine.connect() as conn:
        for table_key in TABLE_KEYS:
            result = conn.execute(text("""
                SELECT EXISTS (
                    SELECT FROM information_schema.tables
                    WHERE table_schema = 'public'
                    AND table_name = :table_name
                )
            """), {'table_name': tables[table_key]})
            status[table_key] = result.scalar()

    return status


def _create_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create lock service tables (Session, KV, Check) and the modify index sequence.
    """
    Session = tables['Session']
    KV = tables['KV']
    Check = tables['Check']
    KVIndex = tables['KVIndex']

    with engine.connect() as conn:
        conn.execute(text(f'CREATE SEQUENCE IF NOT EXISTS {KVIndex}'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Check} (
    node varchar not null,
    check_id varchar not null,
    service varchar,
    status varchar not null default 'passing',
    updated_at timestamp with time zone not null,
    primary key (node, check_id),
    check (status in ('passing', 'warning', 'critical'))
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Session} (
    id varchar not null,
    name varchar not null,
    node varchar not null,
    checks jsonb not null,
    lock_delay_sec double precision not null,
    created_at timestamp with time zone not null,
    primary key (id)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Session}_node ON {Session}(node)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {KV} (
    key varchar not null,
    value varchar,
    session varchar,
    modify_index bigint not null,
    lock_delay_until timestamp with time zone,
    primary key (key)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{KV}_session ON {KV}(session) WHERE session IS NOT NULL'))

        conn.commit()

    logger.debug(f'Lock service tables verified: {Session}, {KV}, {Check}')


def ensure_database_ready(engine: Engine, appname: str = 'rc_') -> None:
    """Ensure database has all required tables with correct structure.

    Safe to call repeatedly - uses CREATE ... IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    logger.debug('Verifying database structure')

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_tables(engine, tables)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
