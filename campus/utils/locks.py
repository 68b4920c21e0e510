"""
Per-tenant mutual exclusion.

Cap mutations, registration admission and suspension for the same tenant
serialize on one asyncio.Lock inside this process. Other processes are kept
honest by the Tenant.version column, which turns a lost race into a
ConcurrentModificationError on commit.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_locks: dict[int, asyncio.Lock] = {}


def get_tenant_lock(tenant_id: int) -> asyncio.Lock:
    lock = _locks.get(tenant_id)
    if lock is None:
        lock = asyncio.Lock()
        _locks[tenant_id] = lock
    return lock


@asynccontextmanager
async def tenant_lock(tenant_id: int) -> AsyncIterator[None]:
    lock = get_tenant_lock(tenant_id)
    if lock.locked():
        logger.debug("Waiting for lock on tenant %s", tenant_id)
    async with lock:
        yield


def reset_tenant_locks() -> None:
    """Drop every registered lock (used between test event loops)."""
    _locks.clear()
