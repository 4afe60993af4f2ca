"""Worker entry point: ``python -m taskrelay.worker``."""

from __future__ import annotations

import asyncio
import signal

from dotenv import load_dotenv

from ..core.config import get_settings
from ..core.logging import configure_logging, get_logger
from .agent import WorkerAgent

logger = get_logger(name=__name__)


async def serve() -> None:
    settings = get_settings()
    configure_logging(
        settings.observability.log_level,
        component="worker",
        json_output=settings.environment != "local",
    )
    agent = WorkerAgent.from_settings(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, _request_stop, stop_event, signum)

    await agent.start()
    try:
        await stop_event.wait()
    finally:
        await agent.stop()


def _request_stop(stop_event: asyncio.Event, signum: int) -> None:
    logger.info("worker_shutdown_requested", signal=signal.Signals(signum).name)
    stop_event.set()


def main() -> None:
    load_dotenv()
    asyncio.run(serve())


if __name__ == "__main__":
    main()
