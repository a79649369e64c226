"""Run the deadline scheduler as its own process."""

from pathlib import Path
import asyncio
import logging
import signal
import sys


async def main() -> None:
    from app.config import settings
    from app.services import build_scheduler

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await build_scheduler().run_forever(stop)


if __name__ == "__main__":
    # Ensure `backend/` is on sys.path so `app.*` imports work
    backend_dir = Path(__file__).resolve().parents[1]
    if str(backend_dir) not in sys.path:
        sys.path.insert(0, str(backend_dir))

    asyncio.run(main())
