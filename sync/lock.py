import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from common.config import LockConfig
from common.models import (
    LockExtension, LockRelease, LockResult, LockStatus, ServiceErrorKind, ServiceResult
)
from errors import LockNotAcquiredError
from store import KeyValueStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _ActiveLock:
    holder: str
    expires_at: int
    auto_extend: Optional[asyncio.Task] = None


class LockService:
    """
    Mutual exclusion over named resources, backed by SET NX PX.

    The stored value is the holder id; the lease is the key's TTL, so a
    crashed holder can never block other callers past its lease.
    """

    def __init__(self, store: KeyValueStore, config: Optional[LockConfig] = None, namespace: str = "lock"):
        self.store = store
        self.config = config or LockConfig()
        self.namespace = namespace
        # Locks taken through this instance. Introspection only.
        self._active: Dict[str, _ActiveLock] = {}

    def _key(self, lock_id: str) -> str:
        return f"{self.namespace}:{lock_id}"

    @staticmethod
    def new_holder() -> str:
        return f"holder-{uuid.uuid4()}"

    def _validate(self, lock_id: str, lease_ms: int, retry_attempts: int, retry_delay_ms: int) -> Optional[str]:
        cfg = self.config
        if not lock_id:
            return "Lock id must not be empty"
        if not cfg.min_lease_ms <= lease_ms <= cfg.max_lease_ms:
            return f"Lease duration must be between {cfg.min_lease_ms} and {cfg.max_lease_ms} ms"
        if not 0 <= retry_attempts <= cfg.max_retry_attempts:
            return f"Retry attempts must be between 0 and {cfg.max_retry_attempts}"
        if not 0 <= retry_delay_ms <= cfg.max_retry_delay_ms:
            return f"Retry delay must be between 0 and {cfg.max_retry_delay_ms} ms"
        return None

    async def acquire_lock(
        self,
        lock_id: str,
        holder: Optional[str] = None,
        lease_duration_ms: Optional[int] = None,
        retry_attempts: int = 0,
        retry_delay_ms: int = 0,
    ) -> ServiceResult[LockResult]:
        """
        Tries to take the lock, backing off exponentially between retries.
        Contention is reported as ``acquired=False``, not as a failure.
        """
        lease = self.config.default_lease_ms if lease_duration_ms is None else lease_duration_ms
        invalid = self._validate(lock_id, lease, retry_attempts, retry_delay_ms)
        if invalid:
            return ServiceResult.fail(invalid, ServiceErrorKind.INVALID)

        holder = holder or self.new_holder()
        key = self._key(lock_id)

        try:
            for attempt in range(retry_attempts + 1):
                if await self.store.set_if_absent(key, holder, lease):
                    now = await self.store.time_ms()
                    self._prune(now)
                    expires_at = now + lease
                    self._active[lock_id] = _ActiveLock(holder=holder, expires_at=expires_at)
                    logger.info(
                        f"Lock {lock_id} acquired by {holder}",
                        extra={"lock_id": lock_id, "holder": holder, "data": {"lease_ms": lease, "attempt": attempt + 1}},
                    )
                    return ServiceResult.ok(LockResult(
                        acquired=True,
                        lock_id=lock_id,
                        holder=holder,
                        expires_at=expires_at,
                        attempts=attempt + 1,
                    ))

                if attempt < retry_attempts:
                    delay_ms = retry_delay_ms * (2 ** attempt)
                    logger.debug(f"Lock {lock_id} busy, retry {attempt + 1}/{retry_attempts} in {delay_ms}ms")
                    await asyncio.sleep(delay_ms / 1000)
        except Exception as e:
            logger.error(f"Lock acquisition error for {lock_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        logger.warning(f"Failed to acquire lock {lock_id} after {retry_attempts + 1} attempts")
        return ServiceResult.ok(LockResult(acquired=False, lock_id=lock_id, attempts=retry_attempts + 1))

    async def release_lock(self, lock_id: str, holder: Optional[str] = None) -> ServiceResult[LockRelease]:
        active = self._active.get(lock_id)
        expected = holder or (active.holder if active else None)
        if not expected:
            return ServiceResult.fail(
                f"No holder given for lock {lock_id} and none tracked locally",
                ServiceErrorKind.INVALID,
            )

        try:
            released = await self.store.delete_if_equals(self._key(lock_id), expected)
        except Exception as e:
            logger.error(f"Lock release error for {lock_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        if active and active.holder == expected:
            self._forget(lock_id)

        if released:
            logger.info(f"Lock {lock_id} released by {expected}")
            return ServiceResult.ok(LockRelease(released=True))

        logger.warning(f"Lock {lock_id} not released: not held by {expected}")
        return ServiceResult.ok(LockRelease(released=False, reason="Lock is missing, expired or held by another holder"))

    async def extend_lock(
        self,
        lock_id: str,
        holder: str,
        additional_time_ms: Optional[int] = None,
    ) -> ServiceResult[LockExtension]:
        """Adds time to the current lease. Only the current holder may extend."""
        additional = self.config.default_lease_ms if additional_time_ms is None else additional_time_ms
        if additional <= 0:
            return ServiceResult.fail("Additional time must be positive", ServiceErrorKind.INVALID)

        try:
            new_ttl = await self.store.extend_if_equals(self._key(lock_id), holder, additional)
            if new_ttl is None:
                logger.warning(f"Lock {lock_id} not extended: not held by {holder}")
                return ServiceResult.ok(LockExtension(extended=False, reason="Lock is not held by this holder"))
            new_expires_at = await self.store.time_ms() + new_ttl
        except Exception as e:
            logger.error(f"Lock extension error for {lock_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        active = self._active.get(lock_id)
        if active and active.holder == holder:
            active.expires_at = new_expires_at

        logger.debug(f"Lock {lock_id} extended by {additional}ms")
        return ServiceResult.ok(LockExtension(extended=True, new_expires_at=new_expires_at))

    async def get_lock_status(self, lock_id: str) -> ServiceResult[LockStatus]:
        key = self._key(lock_id)
        try:
            holder = await self.store.get(key)
            if holder is None:
                return ServiceResult.ok(LockStatus(exists=False))
            remaining = await self.store.ttl_ms(key)
            now = await self.store.time_ms()
        except Exception as e:
            logger.error(f"Lock status check error for {lock_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        if remaining is None:
            return ServiceResult.ok(LockStatus(exists=True, holder=holder))
        return ServiceResult.ok(LockStatus(
            exists=True,
            holder=holder,
            expires_at=now + remaining,
            time_remaining_ms=remaining,
        ))

    async def with_lock(
        self,
        lock_id: str,
        fn: Callable[[], Awaitable[T]],
        lease_duration_ms: Optional[int] = None,
        retry_attempts: int = 0,
        retry_delay_ms: int = 0,
        holder: Optional[str] = None,
    ) -> ServiceResult[T]:
        """
        Runs ``fn`` while holding the lock and releases it on every exit path.
        ``fn`` is not called at all when the lock cannot be taken.
        """
        acquired = await self.acquire_lock(
            lock_id,
            holder=holder,
            lease_duration_ms=lease_duration_ms,
            retry_attempts=retry_attempts,
            retry_delay_ms=retry_delay_ms,
        )
        if not acquired.success:
            return ServiceResult.fail(acquired.error, acquired.kind)
        if not acquired.data.acquired:
            return ServiceResult.fail(f"Could not acquire lock {lock_id}", ServiceErrorKind.NOT_ACQUIRED)

        lock_holder = acquired.data.holder
        try:
            result = await fn()
        except Exception as e:
            logger.error(f"Function execution failed in with_lock for {lock_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e), ServiceErrorKind.EXECUTION)
        finally:
            release = await self.release_lock(lock_id, lock_holder)
            if not release.success or not release.data.released:
                logger.warning(f"Lock {lock_id} was not released cleanly after with_lock")

        return ServiceResult.ok(result)

    def lock(
        self,
        lock_id: str,
        lease_duration_ms: Optional[int] = None,
        retry_attempts: int = 0,
        retry_delay_ms: int = 0,
        holder: Optional[str] = None,
    ) -> "LockHandle":
        return LockHandle(self, lock_id, holder or self.new_holder(), lease_duration_ms, retry_attempts, retry_delay_ms)

    async def enable_auto_extend(
        self,
        lock_id: str,
        holder: str,
        extension_ms: Optional[int] = None,
    ) -> ServiceResult[None]:
        """
        Keeps re-extending a lock held through this instance until it is
        released or an extension fails.
        """
        active = self._active.get(lock_id)
        if not active or active.holder != holder:
            return ServiceResult.fail(f"Lock {lock_id} not held by {holder} here", ServiceErrorKind.NOT_HOLDER)

        if active.auto_extend:
            active.auto_extend.cancel()
        active.auto_extend = asyncio.create_task(
            self._auto_extend_loop(
                lock_id, holder, self.config.default_lease_ms if extension_ms is None else extension_ms
            )
        )
        return ServiceResult.ok(None)

    async def _auto_extend_loop(self, lock_id: str, holder: str, extension_ms: int):
        while True:
            active = self._active.get(lock_id)
            if not active or active.holder != holder:
                return
            try:
                now = await self.store.time_ms()
            except Exception as e:
                logger.error(f"Auto-extension of {lock_id} stopped: {e}")
                return
            wait_ms = max(active.expires_at - now, 0) * self.config.extend_threshold
            await asyncio.sleep(wait_ms / 1000)

            result = await self.extend_lock(lock_id, holder, extension_ms)
            if not result.success or not result.data.extended:
                logger.warning(f"Auto-extension of {lock_id} failed, lock considered lost")
                self._active.pop(lock_id, None)
                return
            logger.debug(f"Auto-extended lock {lock_id}")

    def _forget(self, lock_id: str):
        active = self._active.pop(lock_id, None)
        if active and active.auto_extend and active.auto_extend is not asyncio.current_task():
            active.auto_extend.cancel()

    def get_active_locks(self) -> Dict[str, LockStatus]:
        return {
            lock_id: LockStatus(exists=True, holder=lock.holder, expires_at=lock.expires_at)
            for lock_id, lock in self._active.items()
        }

    def _prune(self, now: int) -> int:
        expired = [lock_id for lock_id, lock in self._active.items() if lock.expires_at <= now]
        for lock_id in expired:
            self._forget(lock_id)
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired locks from local tracking")
        return len(expired)

    async def cleanup_expired_locks(self) -> int:
        """
        Drops local tracking for leases that have run out. Every successful
        acquisition does the same, so tracking stays bounded by live leases.
        """
        return self._prune(await self.store.time_ms())


class LockHandle:
    """
    Scoped lock usable as ``async with service.lock("id"):``.
    """
    def __init__(
        self,
        service: LockService,
        lock_id: str,
        holder: str,
        lease_duration_ms: Optional[int] = None,
        retry_attempts: int = 0,
        retry_delay_ms: int = 0,
    ):
        self.service = service
        self.lock_id = lock_id
        self.holder = holder
        self.lease_duration_ms = lease_duration_ms
        self.retry_attempts = retry_attempts
        self.retry_delay_ms = retry_delay_ms
        self.expires_at: Optional[int] = None
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> bool:
        if self._held:
            return True
        result = await self.service.acquire_lock(
            self.lock_id,
            holder=self.holder,
            lease_duration_ms=self.lease_duration_ms,
            retry_attempts=self.retry_attempts,
            retry_delay_ms=self.retry_delay_ms,
        )
        if result.success and result.data.acquired:
            self._held = True
            self.expires_at = result.data.expires_at
        return self._held

    async def extend(self, additional_time_ms: Optional[int] = None) -> bool:
        if not self._held:
            return False
        result = await self.service.extend_lock(self.lock_id, self.holder, additional_time_ms)
        if result.success and result.data.extended:
            self.expires_at = result.data.new_expires_at
            return True
        return False

    async def start_auto_extend(self, extension_ms: Optional[int] = None) -> bool:
        if not self._held:
            return False
        result = await self.service.enable_auto_extend(self.lock_id, self.holder, extension_ms)
        return result.success

    async def release(self) -> bool:
        if not self._held:
            return False
        try:
            result = await self.service.release_lock(self.lock_id, self.holder)
            return result.success and result.data.released
        finally:
            self._held = False

    async def __aenter__(self):
        if await self.acquire():
            return self
        raise LockNotAcquiredError(self.lock_id)

    async def __aexit__(self, exc_type, exc, tb):
        await self.release()
