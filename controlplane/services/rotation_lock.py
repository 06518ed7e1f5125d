from __future__ import annotations

import asyncio
import os
import socket
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from time import monotonic, perf_counter
from typing import AsyncIterator, Optional
from uuid import uuid4

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from controlplane.config import Settings
from controlplane.errors import LockStateError, LockTimeoutError
from controlplane.logger import get_logger
from controlplane.metrics import observe_lock_wait
from controlplane.models.rotation_lock import RotationLockLease

_logger = get_logger("services.rotation_lock")

ROTATION_LOCK_NAME = "rotations"


def _default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(eq=False)
class RotationLock:
    """Proof that the caller holds the cluster-wide rotation lock."""

    name: str
    token: str
    holder: str
    backend: str
    expires_at: Optional[datetime] = None
    active: bool = field(default=True)


class RotationLockManager:
    backend = "abstract"

    def __init__(
        self,
        *,
        name: str = ROTATION_LOCK_NAME,
        timeout_seconds: float = 0.0,
        holder: Optional[str] = None,
    ) -> None:
        self.name = name
        self.timeout_seconds = timeout_seconds
        self.holder = holder or _default_holder()
        self._log = _logger.bind(lock=name, backend=self.backend)

    @asynccontextmanager
    async def lock(self) -> AsyncIterator[RotationLock]:
        start = perf_counter()
        try:
            token = await self._acquire()
        except LockTimeoutError:
            observe_lock_wait(backend=self.backend, ok=False, duration_seconds=perf_counter() - start)
            self._log.warning(
                "rotation_lock.timeout",
                "Gave up waiting for rotation lock",
                timeout_seconds=self.timeout_seconds,
            )
            raise
        waited = perf_counter() - start
        observe_lock_wait(backend=self.backend, ok=True, duration_seconds=waited)
        self._log.debug(
            "rotation_lock.acquire",
            "Acquired rotation lock",
            wait_ms=round(waited * 1000, 1),
        )
        try:
            yield token
        finally:
            token.active = False
            await self._release(token)
            self._log.debug("rotation_lock.release", "Released rotation lock")

    def require_valid(self, lock: object) -> RotationLock:
        checked = self._check_issued(lock)
        self._check_held(checked)
        return checked

    async def fence(self, session: AsyncSession, lock: RotationLock) -> None:
        """Confirm, inside the caller's transaction, that ``lock`` still guards writes.

        Must run before the writes it protects are committed.
        """
        self.require_valid(lock)

    def _check_issued(self, lock: object) -> RotationLock:
        if not isinstance(lock, RotationLock):
            raise LockStateError(f"Rotation lock '{self.name}' is required, got {type(lock).__name__}")
        if lock.name != self.name or lock.backend != self.backend:
            raise LockStateError(f"Lock '{lock.name}' was not issued by this rotation lock manager")
        if not lock.active:
            raise LockStateError(f"Rotation lock '{self.name}' has already been released")
        return lock

    def _check_held(self, lock: RotationLock) -> None:
        pass

    async def _acquire(self) -> RotationLock:
        raise NotImplementedError

    async def _release(self, lock: RotationLock) -> None:
        raise NotImplementedError


class LocalRotationLockManager(RotationLockManager):
    """Single-process guard around an asyncio lock."""

    backend = "local"

    def __init__(
        self,
        *,
        name: str = ROTATION_LOCK_NAME,
        timeout_seconds: float = 0.0,
        holder: Optional[str] = None,
    ) -> None:
        super().__init__(name=name, timeout_seconds=timeout_seconds, holder=holder)
        self._mutex = asyncio.Lock()
        self._current: Optional[RotationLock] = None

    async def _acquire(self) -> RotationLock:
        if self.timeout_seconds > 0:
            try:
                await asyncio.wait_for(self._mutex.acquire(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise LockTimeoutError(self.name, self.timeout_seconds) from exc
        else:
            await self._mutex.acquire()
        lock = RotationLock(name=self.name, token=uuid4().hex, holder=self.holder, backend=self.backend)
        self._current = lock
        return lock

    async def _release(self, lock: RotationLock) -> None:
        if self._current is lock:
            self._current = None
        self._mutex.release()

    def _check_held(self, lock: RotationLock) -> None:
        if self._current is not lock:
            raise LockStateError(f"Rotation lock '{self.name}' is not held by this token")


class DatabaseRotationLockManager(RotationLockManager):
    """Cluster-wide lock backed by a lease row in the rotation_locks table.

    A row is inserted on acquire and deleted on release; an expired lease may
    be taken over by the next waiter so a crashed holder cannot wedge the
    cluster forever. Writers call :meth:`fence` in their commit transaction:
    it renews the lease only while the row still carries their token, so a
    holder whose lease was taken over cannot commit.
    """

    backend = "database"

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        lease_seconds: float = 300,
        poll_seconds: float = 0.2,
        name: str = ROTATION_LOCK_NAME,
        timeout_seconds: float = 0.0,
        holder: Optional[str] = None,
    ) -> None:
        super().__init__(name=name, timeout_seconds=timeout_seconds, holder=holder)
        self._sessionmaker = sessionmaker
        self.lease_seconds = lease_seconds
        self.poll_seconds = poll_seconds

    async def _try_acquire(self, token: str) -> Optional[datetime]:
        async with self._sessionmaker() as session:
            now = datetime.now(timezone.utc)
            expires_at = now + timedelta(seconds=self.lease_seconds)
            existing = await session.get(RotationLockLease, self.name)
            if existing is None:
                session.add(
                    RotationLockLease(
                        name=self.name,
                        token=token,
                        holder=self.holder,
                        expires_at=expires_at,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return None
                return expires_at

            if _as_utc(existing.expires_at) > now:
                return None

            stale_token = existing.token
            stale_holder = existing.holder
            result = await session.execute(
                update(RotationLockLease)
                .where(RotationLockLease.name == self.name)
                .where(RotationLockLease.token == stale_token)
                .where(RotationLockLease.expires_at <= now)
                .values(token=token, holder=self.holder, expires_at=expires_at)
            )
            await session.commit()
            if int(result.rowcount or 0) != 1:
                return None
            self._log.warning(
                "rotation_lock.takeover",
                "Took over expired rotation lock lease",
                previous_holder=stale_holder,
                holder=self.holder,
            )
            return expires_at

    async def _acquire(self) -> RotationLock:
        token = uuid4().hex
        deadline = monotonic() + self.timeout_seconds if self.timeout_seconds > 0 else None
        while True:
            expires_at = await self._try_acquire(token)
            if expires_at is not None:
                return RotationLock(
                    name=self.name,
                    token=token,
                    holder=self.holder,
                    backend=self.backend,
                    expires_at=expires_at,
                )
            if deadline is not None and monotonic() >= deadline:
                raise LockTimeoutError(self.name, self.timeout_seconds)
            await asyncio.sleep(self.poll_seconds)

    async def _release(self, lock: RotationLock) -> None:
        async with self._sessionmaker() as session:
            result = await session.execute(
                delete(RotationLockLease)
                .where(RotationLockLease.name == lock.name)
                .where(RotationLockLease.token == lock.token)
            )
            await session.commit()
        if int(result.rowcount or 0) != 1:
            self._log.warning(
                "rotation_lock.release_lost",
                "Rotation lock lease was gone at release; it expired and was taken over",
                holder=lock.holder,
            )

    async def fence(self, session: AsyncSession, lock: RotationLock) -> None:
        self._check_issued(lock)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.lease_seconds)
        result = await session.execute(
            update(RotationLockLease)
            .where(RotationLockLease.name == lock.name)
            .where(RotationLockLease.token == lock.token)
            .values(expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            self._log.warning(
                "rotation_lock.fence_lost",
                "Rotation lock lease is no longer held; refusing to write",
                holder=lock.holder,
            )
            raise LockStateError(f"Rotation lock '{self.name}' lease was taken over by another holder")
        lock.expires_at = expires_at

    def _check_held(self, lock: RotationLock) -> None:
        if lock.expires_at is not None and lock.expires_at <= datetime.now(timezone.utc):
            raise LockStateError(f"Rotation lock '{self.name}' lease expired at {lock.expires_at.isoformat()}")


def build_lock_manager(
    settings: Settings,
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> RotationLockManager:
    if settings.rotation_lock_backend == "local":
        return LocalRotationLockManager(timeout_seconds=settings.rotation_lock_timeout_seconds)
    if sessionmaker is None:
        raise ValueError("database rotation lock backend needs a sessionmaker")
    return DatabaseRotationLockManager(
        sessionmaker,
        lease_seconds=settings.rotation_lock_lease_seconds,
        poll_seconds=settings.rotation_lock_poll_seconds,
        timeout_seconds=settings.rotation_lock_timeout_seconds,
    )
