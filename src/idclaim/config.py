import os
from dataclasses import dataclass
from types import SimpleNamespace

settings = SimpleNamespace(
    sql=SimpleNamespace(
        appname=os.getenv('IDCLAIM_SQL_APPNAME', 'idclaim_'),
        host=os.getenv('IDCLAIM_SQL_HOST', 'localhost'),
        dbname=os.getenv('IDCLAIM_SQL_DATABASE', 'idclaim'),
        user=os.getenv('IDCLAIM_SQL_USERNAME', 'postgres'),
        passwd=os.getenv('IDCLAIM_SQL_PASSWORD', 'postgres'),
        port=int(os.getenv('IDCLAIM_SQL_PORT', '5432'))
    ),
    lease=SimpleNamespace(
        ttl_sec=int(os.getenv('IDCLAIM_LEASE_TTL', '60')),
        keepalive_interval_sec=float(os.getenv('IDCLAIM_KEEPALIVE_INTERVAL', '0')) or None,
        read_timeout_sec=float(os.getenv('IDCLAIM_READ_TIMEOUT', '5'))
    )
)


@dataclass
class ClaimConfig:
    """Configuration for lease and claim handling.

    All timing parameters are in seconds. A keepalive interval of None
    renews at a third of the lease TTL.
    Connection parameters are only used by SQL-backed stores.
    """
    lease_ttl_sec: int = 60
    read_timeout_sec: float = 5
    keepalive_interval_sec: float = None

    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'idclaim'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'idclaim_'

    def keepalive_interval_for(self, ttl: int) -> float:
        """Renewal period for a lease granted with `ttl` seconds.
        """
        if self.keepalive_interval_sec:
            return self.keepalive_interval_sec
        return max(ttl / 3.0, 0.5)

    @classmethod
    def from_settings(cls, namespace: SimpleNamespace = None) -> 'ClaimConfig':
        """Build a config from the environment-driven `settings` namespace.
        """
        namespace = namespace or settings
        return cls(
            lease_ttl_sec=namespace.lease.ttl_sec,
            read_timeout_sec=namespace.lease.read_timeout_sec,
            keepalive_interval_sec=namespace.lease.keepalive_interval_sec,
            host=namespace.sql.host,
            port=namespace.sql.port,
            dbname=namespace.sql.dbname,
            user=namespace.sql.user,
            password=namespace.sql.passwd,
            appname=namespace.sql.appname
        )


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )
