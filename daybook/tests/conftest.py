"""Shared fixtures for daybook tests."""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from daybook.daemon.capture import CaptureOrchestrator
from daybook.daemon.config import CaptureConfig, Config
from daybook.daemon.error_handling import CaptureError, RetryPolicy
from daybook.daemon.main import DaybookDaemon
from daybook.daemon.models import CaptureKind
from daybook.daemon.store import NoteStore
from daybook.daemon.tools import CaptureTool


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedTool(CaptureTool):
    """
    Capture tool double that replays a script of outcomes.

    "ok" writes the artifact, "fail" is a transient error, "fatal" a
    terminal one and "hang" never finishes. Once the script is used up
    every call succeeds.
    """

    def __init__(self, kind: CaptureKind, script=None, extension: str = ".html", delay: float = 0.0):
        self.kind = kind
        self.name = f"fake-{kind.value}"
        self.extension = extension
        self.script = list(script or [])
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.cancelled = 0

    async def capture(self, url: str, dest: Path) -> Path:
        self.calls.append(url)
        outcome = self.script.pop(0) if self.script else "ok"
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if outcome == "hang":
                await asyncio.sleep(3600)
            if outcome == "fail":
                raise CaptureError(f"{self.name} exited with status 1")
            if outcome == "fatal":
                raise CaptureError(f"{self.name} not found", transient=False)
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(f"captured {url}")
            return dest
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.active -= 1


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 1, 9, 30, 0))


@pytest.fixture
def notes_root(tmp_path):
    return tmp_path / "notes"


@pytest.fixture
async def store(notes_root, clock):
    store = NoteStore(notes_root / "journal", clock=clock)
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def make_tools():
    """Fresh page and media tool doubles, optionally scripted."""
    def factory(page=None, media=None):
        return {
            CaptureKind.PAGE_SNAPSHOT: ScriptedTool(CaptureKind.PAGE_SNAPSHOT, page),
            CaptureKind.MEDIA_FILE: ScriptedTool(CaptureKind.MEDIA_FILE, media, extension=".mp4"),
        }
    return factory


@pytest.fixture
def tools(make_tools):
    return make_tools()


@pytest.fixture
def make_orchestrator(store, tools, notes_root):
    """Build orchestrators over the test store with instant retries."""
    def factory(**kwargs):
        kwargs.setdefault("tools", tools)
        kwargs.setdefault("workers", 2)
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay=0, jitter=False))
        return CaptureOrchestrator(
            store=store,
            attachments_dir=notes_root / "attachments",
            **kwargs
        )
    return factory


@pytest.fixture
def config(notes_root):
    return Config(
        notes_root=notes_root,
        capture=CaptureConfig(backoff_base=0, page_timeout=5, media_timeout=5, shutdown_grace=0.1)
    )


@pytest.fixture
async def daemon(config, tools, clock):
    """Daemon with scripted tools and no HTTP listener."""
    daemon = DaybookDaemon(config, tools=tools, clock=clock)
    await daemon.start(serve_api=False)
    yield daemon
    await daemon.stop()
