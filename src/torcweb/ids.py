"""Call id allocation."""

from __future__ import annotations

from typing import Container

from torcweb.config import DEFAULT_MAX_CALL_ID
from torcweb.error import RpcError


class IdAllocator:
    """Hands out JSON-RPC call ids.

    Ids start at 1, increase by one per call and wrap back to 1 once they pass
    ``max_id``. Zero is never used: a message without an id is a notification.
    Ids that are still outstanding are skipped, so a long-lived call cannot be
    shadowed after a wraparound.
    """

    __slots__ = ("_next_id", "_max_id")

    def __init__(self, max_id: int = DEFAULT_MAX_CALL_ID) -> None:
        if max_id < 1:
            raise ValueError("max_id must be positive")
        self._next_id = 1
        self._max_id = max_id

    @property
    def max_id(self) -> int:
        return self._max_id

    def peek(self) -> int:
        """The id the next allocation will try first."""
        return self._next_id

    def allocate(self, in_use: Container[int] = ()) -> int:
        """Return a fresh id that is not in ``in_use``.

        Raises:
            RpcError: Every id up to ``max_id`` is outstanding
        """
        for _ in range(self._max_id):
            call_id = self._next_id
            self._next_id += 1
            if self._next_id > self._max_id:
                self._next_id = 1
            if call_id not in in_use:
                return call_id
        raise RpcError.internal(f"All {self._max_id} call ids are in use")
