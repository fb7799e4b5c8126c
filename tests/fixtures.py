"""Shared test fixtures, utilities, and helpers.

USE THIS FILE FOR:
- Config builders
- Fault-injecting store wrappers
- Wait helpers used by multiple test files
- Concurrent claim drivers
"""
import logging
import queue
import threading
import time

from idclaim.client import ClaimError, IdentifierClaimer, KeepAlive, LeaseManager
from idclaim.config import ClaimConfig
from idclaim.store import KeyValueStore, StoreError

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIG BUILDERS
# ============================================================================

def get_claim_config(**overrides) -> ClaimConfig:
    """Create ClaimConfig with test-optimized values.

    Usage:
        config = get_claim_config()
        config = get_claim_config(lease_ttl_sec=10, keepalive_interval_sec=0.05)
    """
    defaults = {
        'lease_ttl_sec': 10,
        'read_timeout_sec': 2,
        'keepalive_interval_sec': 0.05,
    }
    defaults.update(overrides)
    return ClaimConfig(**defaults)


# ============================================================================
# STORES
# ============================================================================

class FakeClock:
    """Manually advanced clock for lease expiry.
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


class FlakyStore(KeyValueStore):
    """Wraps a store and fails selected calls with StoreError.

    Args:
        store: Store to delegate to
        fail_put: Keys whose put_if_absent fails
        fail_get: Keys whose get fails
        fail_grant: Fail every grant
        fail_keepalive: Number of keepalive calls to fail before delegating
        fail_revoke: Fail every revoke
    """

    def __init__(self, store: KeyValueStore, fail_put=(), fail_get=(), fail_grant=False,
                 fail_keepalive=0, fail_revoke=False):
        self.store = store
        self.fail_put = set(fail_put)
        self.fail_get = set(fail_get)
        self.fail_grant = fail_grant
        self.fail_keepalive = fail_keepalive
        self.fail_revoke = fail_revoke
        self.calls = []

    def grant(self, ttl: int) -> int:
        self.calls.append(('grant', ttl))
        if self.fail_grant:
            raise StoreError('lease grant failed: connection refused')
        return self.store.grant(ttl)

    def keepalive_once(self, lease_id: int) -> int:
        self.calls.append(('keepalive', lease_id))
        if self.fail_keepalive:
            self.fail_keepalive -= 1
            raise StoreError('lease keepalive failed: connection reset')
        return self.store.keepalive_once(lease_id)

    def revoke(self, lease_id: int) -> None:
        self.calls.append(('revoke', lease_id))
        if self.fail_revoke:
            raise StoreError('lease revoke failed: connection reset')
        self.store.revoke(lease_id)

    def put_if_absent(self, key: str, value: str, lease_id: int) -> bool:
        self.calls.append(('put', key))
        if key in self.fail_put:
            raise StoreError(f'put-lease txn failed: deadline exceeded for {key}')
        return self.store.put_if_absent(key, value, lease_id)

    def get(self, key: str, timeout: float = None) -> str | None:
        self.calls.append(('get', key))
        if key in self.fail_get:
            raise StoreError(f'get failed: unavailable for {key}')
        return self.store.get(key, timeout)


class StaleReadStore(FlakyStore):
    """Store whose reads return a fixed value regardless of what was written.
    """

    def __init__(self, store: KeyValueStore, stale_value: str | None):
        super().__init__(store)
        self.stale_value = stale_value

    def get(self, key: str, timeout: float = None) -> str | None:
        self.calls.append(('get', key))
        return self.stale_value


class SlowStore(FlakyStore):
    """Store whose reads each take `delay` seconds.
    """

    def __init__(self, store: KeyValueStore, delay: float):
        super().__init__(store)
        self.delay = delay

    def get(self, key: str, timeout: float = None) -> str | None:
        time.sleep(self.delay)
        return super().get(key, timeout)


# ============================================================================
# WAIT HELPERS
# ============================================================================

def wait_for_condition(
    condition: callable,
    timeout_sec: float = 5.0,
    check_interval: float = 0.02
) -> bool:
    """Wait for arbitrary condition function to return True.

    Returns
        True if condition met, False if timeout
    """
    start = time.time()
    while time.time() - start < timeout_sec:
        if condition():
            return True
        time.sleep(check_interval)
    return False


def wait_for(condition: callable, timeout_sec: float = 5.0) -> bool:
    """Shorter alias for wait_for_condition().
    """
    return wait_for_condition(condition, timeout_sec)


def wait_for_renewals(keepalive: KeepAlive, count: int = 2, timeout_sec: float = 5.0) -> None:
    """Wait for `count` renewals that started after this call.

    Acks already queued are discarded first.
    """
    mark = time.time()
    seen = 0
    deadline = time.time() + timeout_sec
    while seen < count:
        remaining = deadline - time.time()
        if remaining <= 0:
            raise AssertionError(f'Keepalive produced {seen}/{count} renewals in {timeout_sec}s')
        try:
            ack = keepalive.next_ack(timeout=remaining)
        except queue.Empty:
            continue
        if ack is None:
            raise AssertionError('Keepalive ended while waiting for renewals')
        if ack.timestamp >= mark:
            seen += 1


# ============================================================================
# CONCURRENT CLAIMS
# ============================================================================

def claim_concurrently(store: KeyValueStore, labels: list[str], candidates: list[str],
                       config: ClaimConfig = None) -> dict:
    """Race one claim per label against `store`, all released together.

    Returns
        Mapping of label to claimed identifier, or to the ClaimError raised
    """
    config = config or get_claim_config()
    leases = LeaseManager(store, config)
    claimer = IdentifierClaimer(store, config)
    barrier = threading.Barrier(len(labels))
    results = {}
    results_lock = threading.Lock()

    def worker(label: str) -> None:
        lease = leases.acquire_lease()
        barrier.wait()
        try:
            outcome = claimer.claim(lease, label, candidates)
        except ClaimError as e:
            outcome = e
        with results_lock:
            results[label] = outcome

    threads = [threading.Thread(target=worker, args=(label,), name=f'claim-{label}') for label in labels]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results
