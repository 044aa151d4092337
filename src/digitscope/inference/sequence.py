from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import TypeVar

from ..logging import log_event

T = TypeVar("T")


class RequestSequencer:
    """Monotonic request counter for callers that only want the newest result.

    Predictions are not serialized and the engine cannot abort a call, so a
    caller tags each request with `issue()` and drops any result whose tag is
    no longer the latest.
    """

    def __init__(self) -> None:
        self._latest = 0

    @property
    def latest(self) -> int:
        return self._latest

    def issue(self) -> int:
        self._latest += 1
        return self._latest

    def is_current(self, seq: int) -> bool:
        return seq == self._latest

    async def resolve(self, seq: int, pending: Awaitable[T]) -> T | None:
        """Await `pending`; None if a newer request was issued meanwhile.

        A superseded request is dropped whether it succeeded or raised.
        """
        try:
            result = await pending
        except Exception as exc:
            if self.is_current(seq):
                raise
            log_event(
                "stale_result_discarded",
                {"seq": seq, "error": type(exc).__name__},
                level=logging.DEBUG,
            )
            return None
        if not self.is_current(seq):
            log_event("stale_result_discarded", {"seq": seq}, level=logging.DEBUG)
            return None
        return result
