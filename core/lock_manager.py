"""
Lock Manager - per-symbol serialization of position operations

Open, monitor and close of the same symbol never interleave; operations on
different symbols run concurrently.
"""
import asyncio
import time
import logging
from typing import Dict, List
from contextlib import asynccontextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class LockInfo:
    """Information about a held lock"""
    resource: str
    operation: str
    holder_id: str
    acquired_at: float


class LockManager:
    """
    One asyncio.Lock per resource, created on first use

    Features:
    - Lock timeout (asyncio.TimeoutError is logged and re-raised)
    - Long-hold warning
    - Statistics
    """

    def __init__(self, default_timeout: float = 30.0, long_hold_threshold: float = 30.0):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_info: Dict[str, LockInfo] = {}
        self._lock_wait_times: List[float] = []
        self.default_timeout = default_timeout
        self._long_hold_threshold = long_hold_threshold

    def _get_lock(self, resource: str) -> asyncio.Lock:
        # No await between lookup and insert, so creation cannot race
        lock = self._locks.get(resource)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[resource] = lock
            logger.debug(f"Created new lock for {resource}")
        return lock

    @asynccontextmanager
    async def acquire_lock(self, resource: str, operation: str, timeout: float = None):
        """
        Acquire lock with timeout and monitoring

        Args:
            resource: Resource to lock (e.g., "BTCUSDT")
            operation: Operation name (for debugging)
            timeout: Maximum wait time in seconds

        Raises:
            asyncio.TimeoutError: If lock cannot be acquired within timeout
        """
        timeout = self.default_timeout if timeout is None else timeout
        holder_id = f"{operation}_{time.time()}_{id(asyncio.current_task())}"
        lock = self._get_lock(resource)
        wait_start = time.time()

        logger.debug(f"🔒 Acquiring lock for {resource} by {operation}")
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            wait_time = time.time() - wait_start
            current_holder = self._lock_info.get(resource)
            if current_holder:
                hold_time = time.time() - current_holder.acquired_at
                logger.error(
                    f"❌ Lock timeout for {resource} after {wait_time:.1f}s. "
                    f"Current holder: {current_holder.operation} "
                    f"(holding for {hold_time:.1f}s)"
                )
            else:
                logger.error(f"❌ Lock timeout for {resource} after {wait_time:.1f}s")
            raise

        wait_time = time.time() - wait_start
        self._lock_wait_times.append(wait_time)
        self._lock_info[resource] = LockInfo(
            resource=resource,
            operation=operation,
            holder_id=holder_id,
            acquired_at=time.time(),
        )
        logger.debug(f"✅ Lock acquired: {resource} by {operation} (waited {wait_time:.3f}s)")

        try:
            yield
        finally:
            info = self._lock_info.pop(resource, None)
            if info is not None:
                hold_time = time.time() - info.acquired_at
                if hold_time > self._long_hold_threshold:
                    logger.warning(f"⚠️ Lock {resource} held by {operation} for {hold_time:.1f}s")
            lock.release()
            logger.debug(f"🔓 Lock released: {resource}")

    def is_locked(self, resource: str) -> bool:
        """Check if resource is currently locked"""
        return resource in self._lock_info

    def get_lock_stats(self) -> Dict:
        """Get lock statistics"""
        now = time.time()
        active_locks = [
            {
                'resource': info.resource,
                'operation': info.operation,
                'hold_time': now - info.acquired_at
            }
            for info in self._lock_info.values()
        ]

        avg_wait_time = (
            sum(self._lock_wait_times) / len(self._lock_wait_times)
            if self._lock_wait_times else 0
        )

        return {
            'total_locks': len(self._locks),
            'active_locks': len(active_locks),
            'active_lock_details': active_locks,
            'avg_wait_time': avg_wait_time,
            'max_wait_time': max(self._lock_wait_times, default=0)
        }
