"""Host UI scheduling.

Everything that touches UI-visible state (dialogs, transcript callbacks) is
handed to a UiContext instead of being called from the I/O path directly.
A host with its own single-threaded UI supplies an implementation that
posts work to that thread.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

from claudebridge.logging import get_logger

log = get_logger("host")

T = TypeVar("T")


class UiContext(Protocol):
    """Schedules callables on the host's UI thread."""

    def invoke_later(self, fn: Callable[..., Any], *args: Any) -> None: ...


class ImmediateUiContext:
    """Runs callables inline. For headless use and tests."""

    def invoke_later(self, fn: Callable[..., Any], *args: Any) -> None:
        fn(*args)


class LoopUiContext:
    """Posts callables to an event loop, safe to use from any thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def invoke_later(self, fn: Callable[..., Any], *args: Any) -> None:
        self._loop.call_soon_threadsafe(fn, *args)


async def call_on_ui(ui: UiContext, fn: Callable[..., T], *args: Any) -> T:
    """Run ``fn`` through ``ui`` and await its result or exception."""
    loop = asyncio.get_running_loop()
    future: asyncio.Future[T] = loop.create_future()

    def settle(ok: bool, value: Any) -> None:
        if future.done():
            return
        if ok:
            future.set_result(value)
        else:
            future.set_exception(value)

    def run() -> None:
        try:
            result = fn(*args)
        except Exception as e:
            loop.call_soon_threadsafe(settle, False, e)
        else:
            loop.call_soon_threadsafe(settle, True, result)

    ui.invoke_later(run)
    return await future
