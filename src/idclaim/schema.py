import logging

from sqlalchemy import Engine, inspect, text

logger = logging.getLogger(__name__)

TABLE_KEYS = ['Lease', 'Kv']


def get_table_names(appname: str = 'idclaim_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Lease': f'{appname}lease',
        'Kv': f'{appname}kv'
    }


def verify_tables_exist(engine: Engine, appname: str = 'idclaim_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    inspector = inspect(engine)
    return {table_key: inspector.has_table(tables[table_key]) for table_key in TABLE_KEYS}


def _create_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create lease and key-value tables.

    Expiry is stored as epoch seconds so the same statements run on
    PostgreSQL and SQLite.
    """
    Lease = tables['Lease']
    Kv = tables['Kv']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Lease} (
    lease_id bigint not null,
    ttl_sec integer not null,
    expires_at double precision not null,
    primary key (lease_id)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Lease}_expires ON {Lease}(expires_at)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Kv} (
    name varchar not null,
    value varchar not null,
    version integer not null default 1,
    lease_id bigint,
    created_on double precision not null,
    primary key (name)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Kv}_lease ON {Kv}(lease_id)'))

        conn.commit()

    logger.debug(f'Tables verified: {Lease}, {Kv}')


def ensure_database_ready(engine: Engine, appname: str = 'idclaim_') -> None:
    """Ensure database has all required tables with correct structure.

    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

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
