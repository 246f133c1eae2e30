"""Main daemon process for daybook."""

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

import psutil
from aiohttp import web
from loguru import logger

from .. import __version__
from .api import create_api_app
from .capture import CaptureOrchestrator
from .config import Config, LoggingConfig
from .error_handling import StorageError
from .indexers import SearchIndex
from .models import CaptureKind
from .notebook import Notebook
from .recovery import RecoveryCoordinator
from .store import NoteStore
from .tools import CaptureTool


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(config: LoggingConfig) -> None:
    """Send logs to stderr and, when configured, to a rotating file."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=config.level)

    if config.file:
        log_file = Path(config.file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation=config.rotation,
            retention=config.retention,
            level="DEBUG"
        )


class DaybookDaemon:
    """Main daemon coordinating all services."""

    def __init__(
        self,
        config: Config,
        tools: Optional[Dict[CaptureKind, CaptureTool]] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.config = config
        self.start_time = datetime.now()

        self.store = NoteStore(config.journal_dir, clock=clock)
        self.index = SearchIndex()
        self.orchestrator = CaptureOrchestrator.from_config(
            config, self.store, tools=tools, on_update=self.index.update_attachment
        )
        self.notebook = Notebook(
            self.store, self.index, self.orchestrator,
            max_note_length=config.api.max_note_length,
            max_upload_bytes=config.api.max_upload_mb * 1024 * 1024
        )
        self.recovery = RecoveryCoordinator(
            self.store, self.index, self.orchestrator,
            retry_failed=config.capture.retry_failed_on_startup
        )

        self.api_app = None
        self.api_runner = None
        self.api_site = None

    async def start(self, serve_api: bool = True) -> None:
        """Start all daemon services. Raises StorageError if the notes root is unusable."""
        logger.info(f"Starting daybook daemon (notes root: {self.config.notes_root})")

        await self.store.open()
        await self.recovery.run()
        await self.orchestrator.start()

        if serve_api:
            await self._start_api()

        logger.info("Daybook daemon started successfully")

    async def stop(self) -> None:
        """Stop accepting notes, let captures wind down, close the journal."""
        logger.info("Stopping daybook daemon...")

        self.notebook.stop_accepting()

        if self.api_site:
            await self.api_site.stop()
            self.api_site = None
        if self.api_runner:
            await self.api_runner.cleanup()
            self.api_runner = None

        await self.orchestrator.stop(self.config.capture.shutdown_grace)
        await self.store.close()

        logger.info("Daybook daemon stopped")

    async def _start_api(self) -> None:
        """Start the HTTP API server."""
        self.api_app = create_api_app(self)
        self.api_runner = web.AppRunner(self.api_app)
        await self.api_runner.setup()

        host, port = self.config.api.host, self.config.api.port
        self.api_site = web.TCPSite(self.api_runner, host, port)
        await self.api_site.start()

        logger.info(f"API server started on http://{host}:{port}")

    def get_status(self) -> dict:
        """Get daemon status and statistics."""
        process = psutil.Process()
        uptime = (datetime.now() - self.start_time).total_seconds()

        return {
            "status": "running" if self.notebook.accepting else "stopping",
            "version": __version__,
            "uptime": f"{uptime:.0f}s",
            "stats": dict(
                self.notebook.stats(),
                memory_mb=round(process.memory_info().rss / 1024 / 1024, 1)
            ),
            "config": {
                "notes_root": str(self.config.notes_root),
                "workers": self.config.capture.workers,
                "max_attempts": self.config.capture.max_attempts,
            }
        }


async def main(config: Config) -> int:
    """Run the daemon until SIGINT/SIGTERM. Returns the process exit code."""
    setup_logging(config.logging)

    daemon = DaybookDaemon(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await daemon.start()
    except StorageError as e:
        logger.error(f"Cannot start: {e}")
        return 1
    except OSError as e:
        logger.error(f"Cannot start API server: {e}")
        await daemon.stop()
        return 1

    try:
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await daemon.stop()
    return 0


def run(config_path: Optional[Path] = None, **overrides) -> int:
    """Load configuration, apply command-line overrides and run the daemon."""
    if config_path is not None or not overrides.get("notes_root"):
        try:
            config = Config.load(config_path)
        except FileNotFoundError as e:
            logger.error(f"Configuration error: {e}")
            return 1
        data = config.model_dump()
    else:
        data = {}

    api_overrides = {k: overrides.pop(k) for k in ("host", "port") if overrides.get(k) is not None}
    data.update({k: v for k, v in overrides.items() if v is not None})
    if api_overrides:
        data["api"] = dict(data.get("api") or {}, **api_overrides)

    return asyncio.run(main(Config(**data)))


if __name__ == "__main__":
    sys.exit(run())
