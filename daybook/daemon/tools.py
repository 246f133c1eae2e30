"""
External capture tools.

A capture tool turns a URL into a local artifact at a destination path.
The daemon ships two subprocess-backed tools: a page archiver (monolith by
default) writing one self-contained HTML document, and a media downloader
(yt-dlp by default). Tests substitute their own CaptureTool implementations.

Timeouts are not the tool's business: the orchestrator cancels a capture
that runs too long, and a cancelled SubprocessTool kills its process.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List

from loguru import logger

from .config import Config
from .error_handling import CaptureError
from .models import CaptureKind


STDERR_TAIL_CHARS = 500


class CaptureTool(ABC):
    """Capability to capture one URL into a file."""

    name: str = "capture-tool"
    kind: CaptureKind
    extension: str

    @abstractmethod
    async def capture(self, url: str, dest: Path) -> Path:
        """
        Capture `url` into `dest`.

        Returns the path of the produced artifact. Raises CaptureError with
        `transient` set when a later attempt may succeed.
        """


class SubprocessTool(CaptureTool):
    """Runs a command template such as `["monolith", "{url}", "-o", "{dest}"]`."""

    def __init__(self, kind: CaptureKind, command: List[str], extension: str):
        self.kind = kind
        self.command = list(command)
        self.extension = extension
        self.name = Path(self.command[0]).name

    def build_command(self, url: str, dest: Path) -> List[str]:
        return [part.format(url=url, dest=str(dest)) for part in self.command]

    async def capture(self, url: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        argv = self.build_command(url, dest)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise CaptureError(f"{self.name} not found", transient=False) from None
        except PermissionError as e:
            raise CaptureError(f"{self.name} is not executable: {e}", transient=False) from None

        logger.debug(f"Started {self.name} (pid {process.pid}) for {url}")
        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip()[-STDERR_TAIL_CHARS:]
            message = f"{self.name} exited with status {process.returncode}"
            raise CaptureError(f"{message}: {tail}" if tail else message)

        if not dest.exists():
            raise CaptureError(f"{self.name} exited successfully but produced no file at {dest}")

        return dest

    async def _kill(self, process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
            logger.debug(f"Killed {self.name} (pid {process.pid})")


def page_archiver(command: List[str]) -> SubprocessTool:
    return SubprocessTool(CaptureKind.PAGE_SNAPSHOT, command, extension=".html")


def media_downloader(command: List[str]) -> SubprocessTool:
    return SubprocessTool(CaptureKind.MEDIA_FILE, command, extension=".mp4")


def build_tools(config: Config) -> Dict[CaptureKind, CaptureTool]:
    """Create the configured capture tools keyed by capture kind."""
    return {
        CaptureKind.PAGE_SNAPSHOT: page_archiver(config.tools.page_archiver),
        CaptureKind.MEDIA_FILE: media_downloader(config.tools.media_downloader),
    }
