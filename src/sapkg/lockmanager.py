import threading
from concurrent.futures import Future
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, TypeVar

from filelock import FileLock, Timeout

T = TypeVar("T")


class SapkgLockManager:
    """Process-safe locking for sapkg's persistent stores."""

    def __init__(self, lock_dir: Path, timeout: float = 60.0):
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout

    @contextmanager
    def acquire_lock(self, lock_name: str, timeout: float = None):
        """
        Acquire an exclusive lock for critical operations.

        Args:
            lock_name: Name of the lock (e.g., 'cache', 'mirrors', 'vulnerabilities')
            timeout: Max seconds to wait for lock
        """
        timeout = self.timeout if timeout is None else timeout
        lock = FileLock(str(self.lock_dir / f"{lock_name}.lock"))
        try:
            lock.acquire(timeout=timeout)
        except Timeout:
            raise TimeoutError(f"Failed to acquire '{lock_name}' lock after {timeout}s")
        try:
            yield  # Critical section runs here
        finally:
            lock.release()


class SingleFlight:
    """
    De-duplicates concurrent work per key: the first caller for a key runs the
    function, everyone arriving while it runs waits for (and shares) its result
    or exception. Once the call finishes the key is forgotten.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._inflight: Dict[str, Future] = {}

    def do(self, key: str, fn: Callable[[], T]) -> T:
        with self._lock:
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future

        if not leader:
            return future.result()

        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._inflight.pop(key, None)
