"""Exclusive transmit claim: at most one frame is composed at a time."""

from __future__ import annotations

import threading

from .config import FrameConfig


class ExclusiveClaim:
    """Single-writer claim. ``acquire`` never blocks past its timeout."""

    def acquire(self) -> bool:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError

    @property
    def held(self) -> bool:
        raise NotImplementedError


class FlagClaim(ExclusiveClaim):
    """Soft lock for single-threaded or cooperative use. Fails fast when held."""

    def __init__(self) -> None:
        self._held = False
        self._guard = threading.Lock()

    def acquire(self) -> bool:
        with self._guard:
            if self._held:
                return False
            self._held = True
            return True

    def release(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held


class LockClaim(ExclusiveClaim):
    """Mutex-backed claim for multi-threaded use.

    A plain (non-reentrant) lock is used so a multipart sequence may be
    begun on one thread and closed on another.
    """

    def __init__(self, timeout: float = 0.0) -> None:
        self._lock = threading.Lock()
        self._timeout = timeout

    def acquire(self) -> bool:
        if self._timeout > 0:
            return self._lock.acquire(timeout=self._timeout)
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        if self._lock.locked():
            self._lock.release()

    @property
    def held(self) -> bool:
        return self._lock.locked()


def make_claim(config: FrameConfig) -> ExclusiveClaim:
    if config.use_mutex:
        return LockClaim(config.claim_timeout)
    return FlagClaim()
