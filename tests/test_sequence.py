from __future__ import annotations

import asyncio

import anyio
import pytest

from digitscope.inference.sequence import RequestSequencer


def test_issue_is_monotonic() -> None:
    seq = RequestSequencer()
    assert seq.latest == 0
    a = seq.issue()
    b = seq.issue()
    assert (a, b) == (1, 2)
    assert seq.is_current(b) and not seq.is_current(a)


def test_slow_older_result_is_discarded() -> None:
    seq = RequestSequencer()

    async def _answer(value: str, delay: float) -> str:
        await asyncio.sleep(delay)
        return value

    async def _run() -> tuple[str | None, str | None]:
        first = seq.issue()
        t1 = asyncio.create_task(seq.resolve(first, _answer("old", 0.05)))
        second = seq.issue()
        t2 = asyncio.create_task(seq.resolve(second, _answer("new", 0.0)))
        return await t1, await t2

    old, new = anyio.run(_run)
    assert old is None
    assert new == "new"


def test_resolve_keeps_current_result() -> None:
    seq = RequestSequencer()

    async def _value() -> int:
        return 7

    async def _run() -> int | None:
        return await seq.resolve(seq.issue(), _value())

    assert anyio.run(_run) == 7


def test_stale_failure_is_discarded_current_failure_raises() -> None:
    seq = RequestSequencer()

    async def _fail(delay: float) -> str:
        await asyncio.sleep(delay)
        raise ValueError("decode failed")

    async def _run() -> str | None:
        first = seq.issue()
        t1 = asyncio.create_task(seq.resolve(first, _fail(0.05)))
        seq.issue()
        return await t1

    assert anyio.run(_run) is None

    async def _current() -> str | None:
        return await seq.resolve(seq.issue(), _fail(0.0))

    with pytest.raises(ValueError):
        anyio.run(_current)
