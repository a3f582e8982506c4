import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from .adapters import ObjectAdapter
from .errors import AdtError, classify, is_already_unlocked
from .lock_registry import LockRegistry
from .session import SessionContext
from .types import ErrorKind, LockLease, ObjectDescriptor

logger = logging.getLogger(__name__)

# How long a cancelled caller still waits for an unlock already in flight
RELEASE_GRACE_SECONDS = 30.0


class LockManager:
    """Acquires and releases the edit lock of one object.

    ``hold`` is the scoped form used by the workflow: the lock is released when
    the block ends, and if the block raises, the release is still attempted and
    the block's exception is what propagates.
    """

    def __init__(
        self,
        adapter: ObjectAdapter,
        lock_registry: Optional[LockRegistry] = None,
        release_grace_seconds: float = RELEASE_GRACE_SECONDS,
    ):
        self.adapter = adapter
        self.lock_registry = lock_registry
        self.release_grace_seconds = release_grace_seconds
        self._lease: Optional[LockLease] = None

    @property
    def lease(self) -> Optional[LockLease]:
        return self._lease

    async def acquire(
        self, descriptor: ObjectDescriptor, session_ctx: SessionContext
    ) -> LockLease:
        """Lock an object

        Raises:
            AdtError: LockConflict, NotFound, ConnectionFailed and other lock failures
            RuntimeError: If this manager already holds a lock
        """
        if self._lease is not None:
            raise RuntimeError(
                f"Lock for {self._lease.descriptor.label} is still held"
            )

        try:
            result = await self.adapter.lock(descriptor, session_ctx.current)
        except AdtError as e:
            session_ctx.advance(e.session_state)
            logger.error(f"Failed to lock {descriptor.label}: {e.message}")
            raise
        session_ctx.advance(result.session)

        lease = LockLease(
            descriptor=descriptor,
            handle=result.data,
            session_id=session_ctx.current.session_id,
        )
        self._lease = lease
        if self.lock_registry is not None:
            self.lock_registry.register(lease)
        logger.debug(f"Locked {descriptor.label} with handle {lease.short_handle}")
        return lease

    async def release(self, lease: LockLease, session_ctx: SessionContext) -> None:
        """Release a lock. An "already unlocked" answer counts as released.

        Raises:
            AdtError: If the backend refused the unlock
        """
        descriptor = lease.descriptor
        if self._lease is not None and self._lease.handle == lease.handle:
            self._lease = None

        try:
            result = await self.adapter.unlock(descriptor, lease.handle, session_ctx.current)
        except AdtError as e:
            session_ctx.advance(e.session_state)
            if not is_already_unlocked(e) and classify(e) != ErrorKind.NOT_FOUND:
                raise
            logger.info(f"{descriptor.label} was already unlocked: {e.message}")
        else:
            session_ctx.advance(result.session)

        if self.lock_registry is not None:
            self.lock_registry.remove(descriptor)
        logger.debug(f"Unlocked {descriptor.label} ({lease.short_handle})")

    @asynccontextmanager
    async def hold(
        self,
        descriptor: ObjectDescriptor,
        session_ctx: SessionContext,
        diagnostics: Optional[List[str]] = None,
    ):
        """Hold the lock of an object for the duration of the block.

        Exactly one release attempt is made on every exit path. A release that
        fails while the block is already failing is appended to ``diagnostics``.
        Cancellation never aborts the release: it is awaited before the
        cancellation propagates.
        """
        lease = await self.acquire(descriptor, session_ctx)
        try:
            yield lease
        except BaseException as primary:
            await self._compensate(lease, session_ctx, primary, diagnostics)
            raise
        await self._release_to_completion(lease, session_ctx, diagnostics)

    async def _release_to_completion(
        self,
        lease: LockLease,
        session_ctx: SessionContext,
        diagnostics: Optional[List[str]],
    ) -> None:
        """Release in a shielded task and wait for it even when cancelled.

        Raises:
            AdtError: If the backend refused the unlock
            asyncio.CancelledError: After the release finished or the grace
                period ran out
        """
        task = asyncio.ensure_future(self.release(lease, session_ctx))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            label = lease.descriptor.label
            logger.warning(f"Cancelled while unlocking {label}, waiting for the unlock")
            await asyncio.wait({task}, timeout=self.release_grace_seconds)

            note = None
            if not task.done():
                task.add_done_callback(_consume_result)
                note = (
                    f"Unlock of {label} did not finish within "
                    f"{self.release_grace_seconds}s after cancellation"
                )
            elif task.cancelled():
                note = f"Unlock of {label} was cancelled"
            elif task.exception() is not None:
                note = f"Unlock of {label} failed after cancellation: {task.exception()}"

            if note is not None:
                logger.error(note)
                if diagnostics is not None:
                    diagnostics.append(note)
            raise

    async def _compensate(
        self,
        lease: LockLease,
        session_ctx: SessionContext,
        primary: BaseException,
        diagnostics: Optional[List[str]],
    ) -> None:
        logger.info(
            f"Releasing lock {lease.short_handle} on {lease.descriptor.label} "
            f"after failure: {primary!r}"
        )
        try:
            await self._release_to_completion(lease, session_ctx, diagnostics)
        except asyncio.CancelledError:
            # The primary failure stays the outcome; the release was awaited above
            logger.warning(
                f"Cancellation during compensation of {lease.descriptor.label} "
                f"deferred to the original failure: {primary!r}"
            )
        except Exception as e:
            note = f"Unlock of {lease.descriptor.label} failed during compensation: {e}"
            logger.error(note)
            if diagnostics is not None:
                diagnostics.append(note)


def _consume_result(task: "asyncio.Future") -> None:
    """Retrieve the outcome of a release that finished after its caller gave up"""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Late unlock failed: {error}")
