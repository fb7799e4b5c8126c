"""etcd v3 store using the etcd3 client.

Per-call read timeouts are not supported by the client; the timeout given
to the constructor bounds every request instead.
"""
import logging

import etcd3
import grpc
from etcd3 import exceptions as etcd_exceptions

from idclaim.store import KeyValueStore, LeaseNotFound, translate_errors

logger = logging.getLogger(__name__)

ETCD_ERRORS = (etcd_exceptions.Etcd3Exception, grpc.RpcError)


class EtcdStore(KeyValueStore):
    """Store backed by an etcd cluster.
    """

    def __init__(self, host: str = 'localhost', port: int = 2379, timeout: float = None, client=None):
        """Initialize etcd store.

        Args:
            host: etcd host
            port: etcd client port
            timeout: Request timeout in seconds for every call
            client: Existing etcd3 client to use instead of connecting
        """
        self.client = client or etcd3.client(host=host, port=port, timeout=timeout)

    @translate_errors(*ETCD_ERRORS, operation_name='lease grant')
    def grant(self, ttl: int) -> int:
        lease = self.client.lease(ttl)
        return lease.id

    @translate_errors(*ETCD_ERRORS, operation_name='lease keepalive')
    def keepalive_once(self, lease_id: int) -> int:
        for response in self.client.refresh_lease(lease_id):
            # etcd answers a keepalive for an unknown lease with TTL 0
            if response.TTL <= 0:
                raise LeaseNotFound(f'Lease {lease_id} not found')
            return response.TTL
        raise LeaseNotFound(f'No keepalive response for lease {lease_id}')

    @translate_errors(*ETCD_ERRORS, operation_name='lease revoke')
    def revoke(self, lease_id: int) -> None:
        self.client.revoke_lease(lease_id)

    @translate_errors(*ETCD_ERRORS, operation_name='put-lease txn')
    def put_if_absent(self, key: str, value: str, lease_id: int) -> bool:
        succeeded, _ = self.client.transaction(
            compare=[self.client.transactions.version(key) == 0],
            success=[self.client.transactions.put(key, value, lease=lease_id)],
            failure=[]
        )
        return succeeded

    @translate_errors(*ETCD_ERRORS, operation_name='get')
    def get(self, key: str, timeout: float = None) -> str | None:
        value, _ = self.client.get(key)
        if value is None:
            return None
        return value.decode('utf-8')

    def close(self) -> None:
        self.client.close()
