"""
Capture orchestration for references found in notes.

Each URL in a note body becomes an Attachment that a bounded pool of
workers captures with an external tool:

1. detect_references() extracts and classifies URLs
2. enqueue_capture() creates the pending attachment (one per note and URL)
3. a worker runs the tool under a kind-specific timeout, retrying
   transient failures with exponential backoff
4. the outcome is written back through NoteStore.update_attachment()

Jobs interrupted by shutdown write nothing, so their attachments stay
pending and are picked up again by recovery on the next start.
"""

import asyncio
import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set
from urllib.parse import urlparse

from loguru import logger

from .config import DEFAULT_MEDIA_PATTERNS, Config
from .error_handling import CaptureError, NotFound, RetryPolicy
from .models import Attachment, AttachmentStatus, CaptureKind, Note, NoteId
from .store import NoteStore
from .tools import CaptureTool, build_tools


URL_PATTERN = re.compile(r'https?://[^\s<>"\'`]+', re.IGNORECASE)
HOST_PATTERN = re.compile(r'^[\w.-]+$')
TRAILING_PUNCTUATION = '.,;:!?\'"'
CLOSING_BRACKETS = {')': '(', ']': '[', '}': '{'}
MAX_FILENAME_LENGTH = 150

ARTIFACT_DIRS = {
    CaptureKind.PAGE_SNAPSHOT: "webpages",
    CaptureKind.MEDIA_FILE: "media",
}


@dataclass(frozen=True)
class Reference:
    """A capturable URL found in a note body."""
    url: str
    kind: CaptureKind


def _trim_url(url: str) -> str:
    """Strip sentence punctuation and unbalanced closing brackets."""
    while url:
        last = url[-1]
        if last in TRAILING_PUNCTUATION:
            url = url[:-1]
        elif last in CLOSING_BRACKETS and url.count(last) > url.count(CLOSING_BRACKETS[last]):
            url = url[:-1]
        else:
            break
    return url


def is_capturable(url: str) -> bool:
    """Whether a URL is well-formed enough to hand to a capture tool."""
    try:
        parsed = urlparse(url)
        parsed.port  # raises ValueError for an invalid port
    except ValueError:
        return False

    if parsed.scheme.lower() not in ("http", "https"):
        return False
    host = parsed.hostname
    if not host or not HOST_PATTERN.match(host):
        return False
    if host != "localhost" and "." not in host.strip("."):
        return False
    return True


def url_to_safe_filename(url: str) -> str:
    """
    Filesystem-safe name derived from a URL.

    The same URL always maps to the same name. Whenever characters had to
    be replaced or dropped, a short hash of the full URL is appended so
    that distinct URLs never share a name.
    """
    url = url.strip()
    scheme, sep, rest = url.partition("://")
    stripped = rest if sep and scheme.lower() in ("http", "https") else url
    safe = "".join(c if c.isalnum() or c in "-._" else "_" for c in stripped)
    safe = safe.strip(". ")

    lossless = scheme.lower() == "https" and safe == stripped
    if lossless and len(safe) <= MAX_FILENAME_LENGTH:
        return safe

    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
    prefix = safe[:MAX_FILENAME_LENGTH - len(digest) - 1]
    return f"{prefix}-{digest}" if prefix else digest


class CaptureOrchestrator:
    """Runs capture jobs for note attachments on a bounded worker pool."""

    def __init__(
        self,
        store: NoteStore,
        tools: Dict[CaptureKind, CaptureTool],
        attachments_dir: Path,
        workers: int = 2,
        retry_policy: Optional[RetryPolicy] = None,
        timeouts: Optional[Dict[CaptureKind, float]] = None,
        media_patterns: Optional[List[str]] = None,
        require_marker: bool = False,
        marker: str = "+",
        shutdown_grace: float = 10.0,
        on_update: Optional[Callable[[Attachment], None]] = None
    ):
        self.store = store
        self.tools = tools
        self.attachments_dir = Path(attachments_dir)
        self.workers = workers
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeouts = timeouts or {
            CaptureKind.PAGE_SNAPSHOT: 60.0,
            CaptureKind.MEDIA_FILE: 1800.0,
        }
        self.media_patterns = [
            re.compile(p, re.IGNORECASE)
            for p in (DEFAULT_MEDIA_PATTERNS if media_patterns is None else media_patterns)
        ]
        self.require_marker = require_marker
        self.marker = marker
        self.shutdown_grace = shutdown_grace
        self.on_update = on_update

        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[str] = set()
        self._jobs: Set[asyncio.Task] = set()
        self._workers: List[asyncio.Task] = []
        self._running = False
        self._stopping = False

        self.stats = {
            "submitted": 0,
            "done": 0,
            "failed": 0,
            "retried": 0,
            "running": 0,
        }

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: NoteStore,
        tools: Optional[Dict[CaptureKind, CaptureTool]] = None,
        on_update: Optional[Callable[[Attachment], None]] = None
    ) -> "CaptureOrchestrator":
        capture = config.capture
        return cls(
            store=store,
            tools=tools if tools is not None else build_tools(config),
            attachments_dir=config.attachments_dir,
            workers=capture.workers,
            retry_policy=RetryPolicy(
                max_attempts=capture.max_attempts,
                base_delay=capture.backoff_base,
                max_delay=capture.backoff_max
            ),
            timeouts={
                CaptureKind.PAGE_SNAPSHOT: capture.page_timeout,
                CaptureKind.MEDIA_FILE: capture.media_timeout,
            },
            media_patterns=capture.media_patterns,
            require_marker=capture.require_marker,
            marker=capture.marker,
            shutdown_grace=capture.shutdown_grace,
            on_update=on_update
        )

    @property
    def queued(self) -> int:
        return len(self._queued)

    def classify(self, url: str) -> CaptureKind:
        if any(pattern.search(url) for pattern in self.media_patterns):
            return CaptureKind.MEDIA_FILE
        return CaptureKind.PAGE_SNAPSHOT

    def detect_references(self, note: Note) -> List[Reference]:
        """Capturable URLs in a note body, in order of first appearance."""
        body = note.body
        references: Dict[str, Reference] = {}

        for match in URL_PATTERN.finditer(body):
            if self.require_marker:
                start = match.start()
                if body[max(0, start - len(self.marker)):start] != self.marker:
                    continue

            url = _trim_url(match.group(0))
            if not is_capturable(url):
                logger.debug(f"Skipping malformed URL in {note.id}: {url}")
                continue
            if url not in references:
                references[url] = Reference(url=url, kind=self.classify(url))

        return list(references.values())

    def destination_for(self, attachment: Attachment, tool: CaptureTool) -> Path:
        return (
            self.attachments_dir
            / ARTIFACT_DIRS[attachment.kind]
            / f"{url_to_safe_filename(attachment.url)}{tool.extension}"
        )

    async def enqueue_capture(self, note_id: NoteId, url: str, kind: CaptureKind) -> Attachment:
        """Create a pending attachment and queue its job; repeated (note, url) pairs reuse the first."""
        attachment, created = await self.store.add_attachment(note_id, url, kind)
        if created:
            self._notify(attachment)
            await self.submit(attachment)
        return attachment

    async def submit(self, attachment: Attachment) -> bool:
        """Queue a pending attachment. Returns False if it was not queued."""
        if attachment.status != AttachmentStatus.PENDING:
            return False
        if attachment.id in self._queued:
            return False
        if self._stopping:
            logger.debug(f"Not queueing {attachment.id} during shutdown; it stays pending")
            return False

        self._queued.add(attachment.id)
        await self._queue.put(attachment)
        self.stats["submitted"] += 1
        logger.debug(f"Queued capture {attachment.id} ({attachment.kind.value}): {attachment.url}")
        return True

    async def retry(self, attachment_id: str) -> Attachment:
        """Move a failed attachment back to pending and queue it again."""
        attachment = self.store.get_attachment(attachment_id)
        updated = await self.store.update_attachment(
            attachment.note_id, attachment.id, AttachmentStatus.PENDING
        )
        self.stats["retried"] += 1
        self._notify(updated)
        await self.submit(updated)
        logger.info(f"Retrying capture {attachment_id}: {updated.url}")
        return updated

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def start(self) -> None:
        """Start the worker pool."""
        if self._running:
            logger.warning("Capture orchestrator already running")
            return

        self._running = True
        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"capture-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info(f"Capture orchestrator started ({self.workers} workers)")

    async def stop(self, grace: Optional[float] = None) -> None:
        """
        Stop the worker pool.

        Running jobs get `grace` seconds to finish; whatever is still running
        afterwards is cancelled. Cancelled and queued jobs leave their
        attachments pending.
        """
        if not self._running:
            return

        self._stopping = True
        grace = self.shutdown_grace if grace is None else grace

        if self._jobs:
            logger.info(f"Waiting up to {grace:g}s for {len(self._jobs)} capture jobs")
            _, unfinished = await asyncio.wait(set(self._jobs), timeout=grace)
            for job in unfinished:
                job.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)
                logger.warning(f"Cancelled {len(unfinished)} capture jobs; they stay pending")

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._queued.clear()

        self._running = False
        logger.info("Capture orchestrator stopped")

    async def _worker(self, n: int) -> None:
        while True:
            attachment = await self._queue.get()
            try:
                if self._stopping:
                    continue
                job = asyncio.create_task(self._run_job(attachment))
                self._jobs.add(job)
                try:
                    await job
                finally:
                    self._jobs.discard(job)
            except Exception as e:
                logger.exception(f"Capture job {attachment.id} crashed, leaving it pending: {e}")
            finally:
                self._queued.discard(attachment.id)
                self._queue.task_done()

    async def _run_job(self, queued: Attachment) -> None:
        try:
            attachment = self.store.get_attachment(queued.id)
        except NotFound:
            logger.error(f"Consistency error: queued attachment {queued.id} vanished")
            return
        if attachment.status != AttachmentStatus.PENDING:
            return

        tool = self.tools.get(attachment.kind)
        if tool is None:
            await self._settle(attachment, AttachmentStatus.FAILED,
                               error=f"no capture tool configured for {attachment.kind.value}")
            return
        if not is_capturable(attachment.url):
            await self._settle(attachment, AttachmentStatus.FAILED,
                               error=f"malformed URL: {attachment.url}")
            return

        dest = self.destination_for(attachment, tool)
        timeout = self.timeouts[attachment.kind]
        attempts = 0

        def count_attempt(n: int) -> None:
            nonlocal attempts
            attempts = n

        logger.info(f"Capturing {attachment.url} with {tool.name} ({attachment.id})")
        self.stats["running"] += 1
        try:
            path = await self.retry_policy.execute(
                self._attempt, tool, attachment.url, dest, timeout,
                should_retry=lambda e: isinstance(e, CaptureError) and e.transient,
                on_attempt=count_attempt
            )
        except (CaptureError, OSError) as e:
            reason = str(e)
            if attempts > 1:
                reason = f"{reason} (after {attempts} attempts)"
            logger.warning(f"Capture {attachment.id} failed: {reason}")
            await self._settle(attachment, AttachmentStatus.FAILED,
                               error=reason, attempts=attachment.attempts + attempts)
            return
        finally:
            self.stats["running"] -= 1

        logger.info(f"Captured {attachment.url} to {path}")
        await self._settle(attachment, AttachmentStatus.DONE,
                           path=self._relative_path(path), attempts=attachment.attempts + attempts)

    async def _attempt(self, tool: CaptureTool, url: str, dest: Path, timeout: float) -> Path:
        try:
            return await asyncio.wait_for(tool.capture(url, dest), timeout=timeout)
        except asyncio.TimeoutError:
            raise CaptureError(f"{tool.name} timed out after {timeout:g}s") from None

    def _relative_path(self, path: Path) -> str:
        try:
            return Path(path).relative_to(self.attachments_dir).as_posix()
        except ValueError:
            return str(path)

    async def _settle(self, attachment: Attachment, status: AttachmentStatus, **fields) -> None:
        try:
            updated = await self.store.update_attachment(
                attachment.note_id, attachment.id, status, **fields
            )
        except NotFound:
            return
        self.stats[status.value] += 1
        self._notify(updated)

    def _notify(self, attachment: Attachment) -> None:
        if self.on_update is not None:
            self.on_update(attachment)
