"""Session-scoped pool of server-issued anti-replay nonces."""

import threading


class NonceSet:
    """Thread-safe pool of single-use nonces.

    Every identifier task signs through the same pool, so ``pop`` and
    ``push`` are serialized by one lock; a nonce handed out by ``pop`` is
    gone from the pool before any other thread can see it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._nonces: list[str] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._nonces)

    def push(self, nonce: str | None) -> bool:
        """Add a nonce harvested from a response header.

        Returns:
            True if a nonce was added.
        """
        if not nonce:
            return False
        with self._lock:
            self._nonces.append(nonce)
        return True

    def pop(self) -> str | None:
        """Remove and return the most recently harvested nonce, or None if empty."""
        with self._lock:
            if not self._nonces:
                return None
            return self._nonces.pop()

    def clear(self) -> None:
        with self._lock:
            self._nonces.clear()
