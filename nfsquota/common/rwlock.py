"""RWLock: a readers/writer threading lock.

Any number of threads may hold the lock for reading at the same time,
but a thread holding the lock for writing excludes every other holder,
reader or writer.

The two modes are accessed via `RWLock.read` and `RWLock.write`, which
provide `acquire` and `release` methods and may be used as context
managers:

    lock = RWLock()

    with lock.read:
        ...

    with lock.write:
        ...

Neither mode is re-entrant for writers, and a thread holding the lock in
one mode may not acquire it in the other mode.  Readers may re-acquire
the read lock.
"""

import threading
from collections import defaultdict


class _RWLock:
    """RWLock internals.

    Used to prevent a reference loop between the lock and its accessors.
    """

    __slots__ = ["_changed", "_owners", "count"]

    def __init__(self) -> None:
        # This tracks the state of the lock:
        #  > 0: number of readers holding the lock
        #  = 0: unlocked
        #  = -1: held by a writer
        self.count = 0

        # Thread ID -> number of times held
        self._owners = defaultdict(int)

        # Guards count and _owners; notified whenever the lock is released
        self._changed = threading.Condition(threading.Lock())

    def acquire(self, blocking: bool, timeout: float, write: bool) -> bool:
        """Acquire the lock in the specified mode."""

        me = threading.get_ident()

        with self._changed:
            if self._owners[me] > 0:
                if write or self.count < 0:
                    raise RuntimeError("RWLock already held by this thread.")

            def _ok() -> bool:
                return self.count == 0 if write else self.count >= 0

            if not _ok():
                if not blocking:
                    return False
                if not self._changed.wait_for(
                    _ok, None if timeout < 0 else timeout
                ):
                    return False

            self.count = -1 if write else self.count + 1
            self._owners[me] += 1
            return True

    def release(self, write: bool) -> None:
        """Release the lock held in the given mode.

        Raises RuntimeError if the lock was not held in that mode
        by this thread.
        """

        me = threading.get_ident()

        with self._changed:
            held = self.count < 0 if write else self.count > 0
            if not held or self._owners[me] == 0:
                raise RuntimeError(
                    f"Lock not held for {'writing' if write else 'reading'}."
                )

            self.count = 0 if write else self.count - 1
            self._owners[me] -= 1
            if self._owners[me] == 0:
                del self._owners[me]

            self._changed.notify_all()


class _RWAccessor:
    """Lock accessor for one of the lock modes.

    This accessor can also be used as a context manager.
    """

    __slots__ = ["_internals", "_write"]

    def __init__(self, write: bool, internals: _RWLock) -> None:
        self._write = write
        self._internals = internals

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        """Acquire the lock once.

        Parameters
        ----------
        blocking : bool
            If True, block until the lock can be acquired (or timeout expires).
            If False, return False immediately if the lock cannot be acquired.
        timeout : float
            If non-negative, and `blocking` is True, wait at most
            `timeout` seconds before failing to acquire the lock.

        Returns
        -------
        success : bool
            True if the lock was acquired.  False otherwise.

        Raises
        ------
        RuntimeError:
            The calling thread would deadlock on itself.
        """
        return self._internals.acquire(
            blocking=blocking, timeout=timeout, write=self._write
        )

    def release(self) -> None:
        """Release the lock once."""
        self._internals.release(write=self._write)

    __enter__ = acquire

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
        return False


class RWLock:
    """A readers/writer thread lock."""

    __slots__ = ["_internals", "read", "write"]

    def __init__(self) -> None:
        self._internals = _RWLock()
        self.read = _RWAccessor(write=False, internals=self._internals)
        self.write = _RWAccessor(write=True, internals=self._internals)

    def __repr__(self) -> str:
        count = self._internals.count
        if count == 0:
            state = "unlocked"
        elif count > 0:
            state = f"read-locked count={count}"
        else:
            state = "write-locked"
        return f"<RWLock object state={state} at {hex(id(self))}>"
