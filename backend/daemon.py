"""
Relay Daemon — runs the FastAPI app under uvicorn as a long-lived process.

Responsibilities:
  - Start FastAPI via uvicorn programmatically
  - Signal handling (SIGTERM -> graceful shutdown, which stops the gateway)
  - Write PID file to ~/.relay/relay.pid
"""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

# Ensure backend directory is on the path
BACKEND_DIR = Path(__file__).parent
sys.path.insert(0, str(BACKEND_DIR))

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("relay.daemon")

PID_DIR = Path.home() / ".relay"
PID_FILE = PID_DIR / "relay.pid"


def write_pid():
    """Write current PID to ~/.relay/relay.pid."""
    PID_DIR.mkdir(parents=True, exist_ok=True)
    PID_FILE.write_text(str(os.getpid()))
    logger.info("PID %d written to %s", os.getpid(), PID_FILE)


def remove_pid():
    PID_FILE.unlink(missing_ok=True)


def run():
    """Main daemon entry point."""
    write_pid()
    shutdown_event = asyncio.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %s, initiating graceful shutdown", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    async def serve():
        """Run uvicorn programmatically with graceful shutdown support."""
        import uvicorn
        from config import WEB_HOST, WEB_PORT

        logger.info("Binding to %s:%d", WEB_HOST, WEB_PORT)
        config = uvicorn.Config(
            "main:app",
            host=WEB_HOST,
            port=WEB_PORT,
            log_level="info",
        )
        server = uvicorn.Server(config)

        server_task = asyncio.create_task(server.serve())
        await shutdown_event.wait()
        logger.info("Shutdown signal received, stopping uvicorn")

        server.should_exit = True
        await server_task

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass
    finally:
        remove_pid()
        logger.info("Relay daemon stopped")


if __name__ == "__main__":
    run()
