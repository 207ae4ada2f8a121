"""Wait-any primitive with a cancellation branch."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Dict, List, Mapping, Optional

CANCELLED = "cancelled"


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def select(
    branches: Mapping[str, Optional[Awaitable[Any]]],
    token: Optional[CancelToken] = None,
) -> str:
    """Wait until the first branch finishes and return its label.

    ``None`` branches are skipped. Futures passed in are observed, never
    cancelled, so they can be shared between several selects. Coroutines are
    wrapped in tasks owned by this call and cancelled once a winner is known.
    The token contributes an implicit ``"cancelled"`` branch that wins ties.
    A winning branch that raised re-raises here.
    """
    if token is not None and token.cancelled:
        return CANCELLED

    waiters: Dict[asyncio.Future, str] = {}
    owned: List[asyncio.Future] = []
    for label, awaitable in branches.items():
        if awaitable is None:
            continue
        if asyncio.isfuture(awaitable):
            fut = awaitable
        else:
            fut = asyncio.ensure_future(awaitable)
            owned.append(fut)
        waiters[fut] = label
    if token is not None:
        cancel_task = asyncio.ensure_future(token.wait())
        owned.append(cancel_task)
        waiters[cancel_task] = CANCELLED
    if not waiters:
        raise ValueError("select() needs at least one branch")

    try:
        done, _ = await asyncio.wait(list(waiters), return_when=asyncio.FIRST_COMPLETED)
    finally:
        for fut in owned:
            if not fut.done():
                fut.cancel()

    labels = [waiters[fut] for fut in done]
    if CANCELLED in labels:
        return CANCELLED
    # Declaration order decides between branches finishing in the same turn.
    for fut, label in waiters.items():
        if fut in done:
            if not fut.cancelled() and fut.exception() is not None:
                raise fut.exception()
            return label
    raise AssertionError("asyncio.wait returned without a finished branch")


async def sleep(seconds: float, token: Optional[CancelToken] = None) -> bool:
    """Sleep for ``seconds``; return False when cancelled first."""
    outcome = await select({"elapsed": asyncio.sleep(max(0.0, seconds))}, token)
    return outcome != CANCELLED
