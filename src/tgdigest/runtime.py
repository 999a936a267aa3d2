from __future__ import annotations

import asyncio
import signal
import threading

from loguru import logger


def install_signal_handlers(stop_event: threading.Event, component: str) -> None:
    def _handle(signum: int, frame: object) -> None:  # noqa: ARG001
        logger.info("{} signal received signum={} stopping...", component, signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def install_async_signal_handlers(stop_event: asyncio.Event, component: str) -> None:
    loop = asyncio.get_running_loop()

    def _handle(signum: int) -> None:
        logger.info("{} signal received signum={} stopping...", component, signum)
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _handle, signum)
        except NotImplementedError:
            signal.signal(signum, lambda received, frame: loop.call_soon_threadsafe(_handle, received))


async def sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; returns True when stop was requested."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True
