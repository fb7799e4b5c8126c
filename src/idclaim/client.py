"""Identifier claiming and lease-backed membership on a key-value store.

Processes race to bind one identifier from a candidate list to their label
under a lease. The store's create-if-absent transaction decides the race;
nothing here holds locks or shared state.
"""
import logging
import queue
import socket
import threading
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from idclaim.config import ClaimConfig
from idclaim.store import KeyValueStore, LeaseNotFound, ReadTimeout, StoreError

logger = logging.getLogger(__name__)

__all__ = ['IdClaimError', 'LeaseFailure', 'ClaimError', 'TxnError', 'PutSucceededFailure',
           'GetIdFailure', 'VerificationError', 'Member', 'LeaseHandle', 'KeepAliveAck',
           'ClaimResult', 'KeepAlive', 'LeaseManager', 'IdentifierClaimer',
           'MembershipReader', 'Registration']


# ============================================================
# EXCEPTIONS
# ============================================================

class IdClaimError(Exception):
    """Base class for lease and claim errors.
    """


class LeaseFailure(IdClaimError):
    """Raised when a lease cannot be granted, kept alive or revoked.
    """


class ClaimError(IdClaimError):
    """Base class for identifier claim errors.
    """


class TxnError(ClaimError):
    """Raised when the put-lease transaction call itself fails.

    Distinct from losing the race, which is PutSucceededFailure.
    """


class PutSucceededFailure(ClaimError):
    """Raised when the key is already registered.
    """


class GetIdFailure(ClaimError):
    """Raised when no identifier from the candidate list could be claimed.

    `causes` maps each distinct attempted candidate, in first-attempt order,
    to the TxnError or PutSucceededFailure of its latest attempt. A candidate
    listed more than once is attempted each time and counted in `attempts`.
    """

    def __init__(self, message: str, causes: dict = None, attempts: int = None):
        super().__init__(message)
        self.causes = dict(causes or {})
        self.attempts = len(self.causes) if attempts is None else attempts


class VerificationError(ClaimError):
    """Raised when a committed claim does not read back as written.
    """

    def __init__(self, key: str, expected: str, actual: str | None):
        super().__init__(f'k-v values do not match txn request for {key}: '
                         f'expected {expected!r}, got {actual!r}')
        self.key = key
        self.expected = expected
        self.actual = actual


# ============================================================
# VALUES
# ============================================================

@dataclass(frozen=True)
class Member:
    """Claimed identifier and the label of its owner.
    """
    key: str
    value: str


@dataclass(frozen=True)
class LeaseHandle:
    id: int
    ttl: int


@dataclass(frozen=True)
class KeepAliveAck:
    lease_id: int
    ttl: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class ClaimResult:
    """Outcome of a claim attempt: an identifier or the failure.
    """
    identifier: str = None
    error: ClaimError = None

    @property
    def ok(self) -> bool:
        return self.identifier is not None


# ============================================================
# LEASES
# ============================================================

class KeepAlive:
    """Background renewal of one lease.

    Runs in a daemon thread until `cancel_event` is set or stop() is called.
    Each successful renewal is published as a KeepAliveAck; iterating the
    keepalive yields them until it ends. At most `ack_buffer` acks are kept;
    when nobody reads the stream the oldest are dropped.
    """

    _closed = object()
    ack_buffer = 16

    def __init__(self, store: KeyValueStore, lease: LeaseHandle, interval: float,
                 cancel_event: threading.Event):
        """Initialize keepalive.

        Args:
            store: Store holding the lease
            lease: Lease to renew
            interval: Renewal period in seconds
            cancel_event: Cancellation scope for the renewal thread
        """
        self.store = store
        self.lease = lease
        self.interval = interval
        self.cancel_event = cancel_event
        self.name = f'keepalive-{lease.id}'
        self.thread = None
        self.last_ack = None
        self._stop_requested = threading.Event()
        self._lost = threading.Event()
        self._acks = queue.Queue(maxsize=self.ack_buffer)

    @property
    def lost(self) -> bool:
        """True once the store reported the lease gone.
        """
        return self._lost.is_set()

    @property
    def active(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def renew(self) -> KeepAliveAck:
        """Perform one renewal round-trip and publish its ack.

        Raises
            StoreError: If the renewal call fails
        """
        ttl = self.store.keepalive_once(self.lease.id)
        ack = KeepAliveAck(self.lease.id, ttl)
        self.last_ack = ack
        self._publish(ack)
        logger.debug(f'Lease {self.lease.id} renewed, ttl {ttl}s')
        return ack

    def start(self) -> None:
        """Start the renewal thread.
        """
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=self.name
        )
        self.thread.start()
        logger.info(f'{self.name} started')

    def stop(self, timeout: float = None) -> None:
        """Request the renewal thread to stop and wait for it.
        """
        self._stop_requested.set()
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout)

    def next_ack(self, timeout: float = None) -> KeepAliveAck | None:
        """Return the next renewal ack, or None once the keepalive has ended.

        Raises
            queue.Empty: If no ack arrives within `timeout`
        """
        ack = self._acks.get(timeout=timeout)
        if ack is self._closed:
            self._publish(ack)
            return None
        return ack

    def __iter__(self) -> Iterator[KeepAliveAck]:
        while True:
            ack = self.next_ack()
            if ack is None:
                return
            yield ack

    def _publish(self, item) -> None:
        """Add to the stream, dropping the oldest entries while it is full.
        """
        while True:
            try:
                self._acks.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._acks.get_nowait()
                except queue.Empty:
                    pass

    def _should_stop(self) -> bool:
        return self.cancel_event.is_set() or self._stop_requested.is_set()

    def _sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`, returning True if asked to stop.
        """
        deadline = time.monotonic() + seconds
        while not self._should_stop():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._stop_requested.wait(min(remaining, 0.1))
        return True

    def _run(self) -> None:
        try:
            while not self._sleep(self.interval):
                try:
                    self.renew()
                except LeaseNotFound as e:
                    logger.error(f'Lease {self.lease.id} lost: {e}')
                    self._lost.set()
                    break
                except StoreError as e:
                    logger.warning(f'{self.name} renewal failed: {e}')
        finally:
            self._publish(self._closed)
            logger.info(f'{self.name} stopped')


class LeaseManager:
    """Grants, keeps alive and revokes leases.
    """

    def __init__(self, store: KeyValueStore, config: ClaimConfig = None):
        self.store = store
        self.config = config or ClaimConfig()

    def acquire_lease(self, ttl: int = None) -> LeaseHandle:
        """Grant a lease.

        Args:
            ttl: Lease TTL in seconds (defaults to config lease_ttl_sec)

        Raises
            LeaseFailure: If `ttl` is not positive or the grant call fails
        """
        if ttl is None:
            ttl = self.config.lease_ttl_sec
        if ttl <= 0:
            raise LeaseFailure(f'Lease ttl must be positive, got {ttl}')
        try:
            lease_id = self.store.grant(ttl)
        except StoreError as e:
            raise LeaseFailure(f'Error granting lease with ttl {ttl}s: {e}') from e
        logger.info(f'Lease {lease_id} granted with ttl {ttl}s')
        return LeaseHandle(lease_id, ttl)

    def start_keepalive(self, lease: LeaseHandle, cancel_event: threading.Event) -> KeepAlive:
        """Start renewing `lease` until `cancel_event` is set.

        The first renewal runs before returning, so a returned keepalive has
        already reached the store once.

        Raises
            LeaseFailure: If the first renewal fails
        """
        keepalive = KeepAlive(self.store, lease, self.config.keepalive_interval_for(lease.ttl), cancel_event)
        try:
            keepalive.renew()
        except StoreError as e:
            raise LeaseFailure(f'Error creating lease keep alive for lease {lease.id}: {e}') from e
        keepalive.start()
        return keepalive

    def revoke_lease(self, lease: LeaseHandle) -> None:
        """Revoke `lease`; the store removes every key bound to it.

        Raises
            LeaseFailure: If the revoke call fails
        """
        try:
            self.store.revoke(lease.id)
        except StoreError as e:
            raise LeaseFailure(f'Error revoking lease {lease.id}: {e}') from e
        logger.info(f'Lease {lease.id} revoked')

    def create_keepalive_lease(self, cancel_event: threading.Event,
                               ttl: int = None) -> tuple[LeaseHandle, KeepAlive]:
        """Grant a lease and start its keepalive.

        If the keepalive cannot be started the lease is revoked before the
        error propagates.

        Raises
            LeaseFailure: If granting or keepalive setup fails
        """
        lease = self.acquire_lease(ttl)
        try:
            keepalive = self.start_keepalive(lease, cancel_event)
        except LeaseFailure:
            try:
                self.store.revoke(lease.id)
            except StoreError as e:
                logger.debug(f'Failed to revoke lease {lease.id} after keepalive failure: {e}')
            raise
        return lease, keepalive


# ============================================================
# CLAIMS
# ============================================================

class IdentifierClaimer:
    """Binds one identifier from a candidate list to a label under a lease.
    """

    def __init__(self, store: KeyValueStore, config: ClaimConfig = None):
        self.store = store
        self.config = config or ClaimConfig()

    def register(self, lease: LeaseHandle, key: str, label: str) -> None:
        """Put `key` = `label` bound to `lease` if the key does not exist.

        Raises
            TxnError: If the transaction call fails
            PutSucceededFailure: If the key is already registered
        """
        try:
            succeeded = self.store.put_if_absent(key, label, lease.id)
        except StoreError as e:
            raise TxnError(f'Error running put-lease txn for {key}: {e}') from e
        if not succeeded:
            raise PutSucceededFailure(f'Key {key} already registered')
        logger.debug(f'Registered {key}={label} under lease {lease.id}')

    def claim(self, lease: LeaseHandle, label: str, candidates: Iterable[str]) -> str:
        """Claim the first free identifier in `candidates`.

        Candidates whose transaction fails or is lost are skipped, each is
        tried once. A claim that does not read back as written stops the
        attempt immediately.

        Args:
            lease: Lease the claimed key is bound to
            label: Owner label stored as the key's value
            candidates: Identifiers in priority order

        Returns
            The claimed identifier

        Raises
            GetIdFailure: If every candidate was unusable
            VerificationError: If the committed claim does not read back
        """
        causes = {}
        attempts = 0
        for candidate in candidates:
            attempts += 1
            try:
                self.register(lease, candidate, label)
            except TxnError as e:
                logger.warning(f'Skipping {candidate}: {e}')
                causes[candidate] = e
                continue
            except PutSucceededFailure as e:
                logger.debug(f'Skipping {candidate}: {e}')
                causes[candidate] = e
                continue

            actual = self._read_back(candidate)
            if actual != label:
                error = VerificationError(candidate, label, actual)
                logger.error(str(error))
                raise error

            logger.info(f'Claimed {candidate} for {label} under lease {lease.id}')
            return candidate

        raise GetIdFailure(f'Failed to get identifier after {attempts} attempts '
                           f'on {len(causes)} candidates', causes, attempts)

    def try_claim(self, lease: LeaseHandle, label: str, candidates: Iterable[str]) -> ClaimResult:
        """Like claim(), but report pool exhaustion in the result.

        VerificationError still propagates.
        """
        try:
            return ClaimResult(identifier=self.claim(lease, label, candidates))
        except GetIdFailure as e:
            return ClaimResult(error=e)

    def _read_back(self, key: str) -> str | None:
        try:
            return self.store.get(key, timeout=self.config.read_timeout_sec)
        except StoreError as e:
            logger.warning(f'Verification read of {key} failed: {e}')
            return None


# ============================================================
# MEMBERSHIP
# ============================================================

class MembershipReader:
    """Point-in-time listing of claimed identifiers.
    """

    def __init__(self, store: KeyValueStore, config: ClaimConfig = None):
        self.store = store
        self.config = config or ClaimConfig()

    def list_members(self, identifiers: Iterable[str]) -> list[Member]:
        """Return members for the identifiers that are currently claimed.

        All reads share one deadline of `read_timeout_sec`. Unclaimed
        identifiers are skipped; any read error aborts the whole listing.

        Raises
            StoreError: If a read fails or the deadline passes
        """
        deadline = time.monotonic() + self.config.read_timeout_sec
        members = []
        for identifier in identifiers:
            value = self._get(identifier, deadline)
            if value is not None:
                members.append(Member(identifier, value))
        return members

    def get_member(self, identifier: str) -> Member | None:
        """Return the member for one identifier, or None if unclaimed.
        """
        value = self._get(identifier, time.monotonic() + self.config.read_timeout_sec)
        if value is None:
            return None
        return Member(identifier, value)

    def _get(self, key: str, deadline: float) -> str | None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ReadTimeout(f'Read deadline exceeded before reading {key}')
        return self.store.get(key, timeout=remaining)


# ============================================================
# REGISTRATION
# ============================================================

class Registration:
    """Holds one claimed identifier for the lifetime of a context.

    Usage:
        with Registration(store, 'host-a', ['shard-0', 'shard-1']) as reg:
            run_shard(reg.identifier)
    """

    def __init__(self, store: KeyValueStore, label: str = None, candidates: Iterable[str] = (),
                 config: ClaimConfig = None):
        """Initialize registration.

        Args:
            store: Store to claim in
            label: Owner label (defaults to the hostname)
            candidates: Identifiers in priority order
            config: Lease and read settings
        """
        self.config = config or ClaimConfig()
        self.label = label or socket.gethostname()
        self.candidates = list(candidates)
        self.leases = LeaseManager(store, self.config)
        self.claimer = IdentifierClaimer(store, self.config)
        self.reader = MembershipReader(store, self.config)
        self.lease = None
        self.keepalive = None
        self.identifier = None
        self._cancel_event = threading.Event()

    def __enter__(self):
        self.lease, self.keepalive = self.leases.create_keepalive_lease(self._cancel_event)
        try:
            self.identifier = self.claimer.claim(self.lease, self.label, self.candidates)
        except ClaimError:
            self._release()
            raise
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        logger.info(f'Releasing {self.identifier} held by {self.label}')
        self._release()

    @property
    def alive(self) -> bool:
        """True while the keepalive is running and the lease is held.
        """
        return self.keepalive is not None and self.keepalive.active and not self.keepalive.lost

    def members(self, identifiers: Iterable[str] = None) -> list[Member]:
        """List members among `identifiers` (defaults to the candidates).
        """
        return self.reader.list_members(self.candidates if identifiers is None else identifiers)

    def _release(self) -> None:
        self._cancel_event.set()
        if self.keepalive is not None:
            self.keepalive.stop(timeout=self.config.read_timeout_sec)
        if self.lease is None:
            return
        try:
            self.leases.revoke_lease(self.lease)
        except LeaseFailure as e:
            logger.warning(f'{e}; lease expires after {self.lease.ttl}s')
