from __future__ import annotations

import os

os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("ROTATION_LOCK_BACKEND", "local")

from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from controlplane.models import Base
from controlplane.services.rotation_lock import LocalRotationLockManager
from controlplane.services.rotation_pool import RotationPool
from controlplane.services.rotations import RotationAllocator


@pytest.fixture
async def sessionmaker(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{(tmp_path / 'controlplane.db').as_posix()}")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def session(sessionmaker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with sessionmaker() as db_session:
        yield db_session


@pytest.fixture
def make_allocator() -> Callable[..., RotationAllocator]:
    def _create(rotations: Optional[Dict[str, str]] = None) -> RotationAllocator:
        if rotations is None:
            rotations = {"A": "a.example.", "B": "b.example.", "C": "c.example."}
        return RotationAllocator(RotationPool(rotations), LocalRotationLockManager())

    return _create


@pytest.fixture
def allocator(make_allocator: Callable[..., RotationAllocator]) -> RotationAllocator:
    return make_allocator()

