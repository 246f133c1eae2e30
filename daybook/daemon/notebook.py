"""Coordination point between the journal, the search index and captures."""

import asyncio
from datetime import date
from pathlib import Path
from typing import Any, AsyncIterable, Dict, List, Optional

import aiofiles
from loguru import logger

from .capture import CaptureOrchestrator
from .error_handling import IndexCorruption, NotFound, ShuttingDown, StorageError, TooLarge
from .indexers import SearchIndex
from .models import Attachment, AttachmentStatus, Note, NoteId
from .store import NoteStore


UPLOADS_DIR = "uploads"


def safe_upload_name(filename: str) -> str:
    """Base name of an uploaded file with anything unsafe replaced."""
    name = Path(filename.replace("\\", "/")).name
    safe = "".join(c if c.isalnum() or c in "-._" else "_" for c in name)
    safe = safe.lstrip(".")
    if not safe:
        raise ValueError("upload needs a file name")
    return safe


class Notebook:
    """
    Single-writer facade over the daemon's core services.

    Appends and index updates happen under one lock, so a note is always
    durable before it is searchable. Attachment state changes reach the
    index through the orchestrator's update callback.
    """

    def __init__(
        self,
        store: NoteStore,
        index: SearchIndex,
        orchestrator: CaptureOrchestrator,
        max_note_length: int = 8000,
        max_upload_bytes: int = 500 * 1024 * 1024
    ):
        self.store = store
        self.index = index
        self.orchestrator = orchestrator
        self.max_note_length = max_note_length
        self.max_upload_bytes = max_upload_bytes

        self._write_lock = asyncio.Lock()
        self._accepting = True

    @property
    def accepting(self) -> bool:
        return self._accepting

    def stop_accepting(self) -> None:
        self._accepting = False
        logger.info("Notebook no longer accepting notes")

    async def add_note(self, body: str) -> Note:
        """Append a note, index it and queue captures for its references."""
        if not self._accepting:
            raise ShuttingDown("daemon is shutting down")
        if not body or not body.strip():
            raise ValueError("note text is required")
        if len(body) > self.max_note_length:
            raise ValueError(f"note text too long (max {self.max_note_length} chars)")

        async with self._write_lock:
            note = await self.store.append(body)
            self.index.index_note(note)

        for reference in self.orchestrator.detect_references(note):
            attachment = await self.orchestrator.enqueue_capture(
                note.id, reference.url, reference.kind
            )
            note = note.with_attachment(attachment)

        logger.info(f"Note created: {note.id} ({len(note.attachments)} attachments)")
        return note

    async def search(self, query: str, limit: Optional[int] = None) -> List[Note]:
        """
        Query the index; an index found inconsistent is rebuilt before answering.

        Once corruption has been seen, every search waits for the fresh
        snapshot instead of reading the corrupt one.
        """
        if self.index.stale:
            await self.rebuild_index()
        try:
            self.index.verify(self.store.note_count)
            return self.index.query(query, limit=limit)
        except IndexCorruption as e:
            logger.error(f"Search index corrupt ({e}); rebuilding")
            self.index.mark_stale()
            await self.rebuild_index()
            return self.index.query(query, limit=limit)

    async def rebuild_index(self) -> int:
        return await self.index.rebuild(self.store)

    async def read_day(self, day: date) -> List[Note]:
        return await self.store.read_day(day)

    async def get_note(self, note_id: NoteId) -> Note:
        return await self.store.get_note(note_id)

    def get_attachment(self, attachment_id: str) -> Attachment:
        return self.store.get_attachment(attachment_id)

    def artifact_path(self, attachment_id: str) -> Path:
        """Local file of a captured attachment."""
        attachment = self.store.get_attachment(attachment_id)
        if attachment.status != AttachmentStatus.DONE:
            raise NotFound(f"attachment {attachment_id} is {attachment.status.value}, no artifact yet")

        path = Path(attachment.path)
        if not path.is_absolute():
            path = self.orchestrator.attachments_dir / path
        if not path.is_file():
            raise NotFound(f"artifact for attachment {attachment_id} is missing: {path}")
        return path

    async def retry_attachment(self, attachment_id: str) -> Attachment:
        return await self.orchestrator.retry(attachment_id)

    @property
    def uploads_dir(self) -> Path:
        return self.orchestrator.attachments_dir / UPLOADS_DIR

    async def save_upload(self, filename: str, chunks: AsyncIterable[bytes]) -> Path:
        """
        Store an uploaded file in the uploads directory.

        An existing file is never overwritten: `name.ext` becomes
        `name-1.ext`, `name-2.ext` and so on. Returns the stored path.
        """
        if not self._accepting:
            raise ShuttingDown("daemon is shutting down")
        name = safe_upload_name(filename)
        stem, suffix = Path(name).stem, Path(name).suffix

        try:
            self.uploads_dir.mkdir(parents=True, exist_ok=True)
            counter = 0
            while True:
                path = self.uploads_dir / (f"{stem}-{counter}{suffix}" if counter else name)
                try:
                    handle = await aiofiles.open(path, 'xb')
                    break
                except FileExistsError:
                    counter += 1
        except OSError as e:
            raise StorageError(f"cannot store upload {name}: {e}") from e

        size = 0
        stored = False
        try:
            async for chunk in chunks:
                size += len(chunk)
                if size > self.max_upload_bytes:
                    raise TooLarge(f"upload exceeds {self.max_upload_bytes} bytes")
                await handle.write(chunk)
            stored = True
        except OSError as e:
            raise StorageError(f"cannot store upload {name}: {e}") from e
        finally:
            await handle.close()
            # Partial uploads are never left behind
            if not stored:
                path.unlink(missing_ok=True)

        logger.info(f"Upload saved as {path} ({size} bytes)")
        return path

    def upload_path(self, name: str) -> Path:
        """Local file of a stored upload."""
        path = self.uploads_dir / name
        if name != Path(name).name or name.startswith(".") or not path.is_file():
            raise NotFound(f"upload {name} does not exist")
        return path

    def stats(self) -> Dict[str, Any]:
        attachments = self.store.attachments()
        by_status = {status.value: 0 for status in AttachmentStatus}
        for attachment in attachments:
            by_status[attachment.status.value] += 1

        return {
            "notes": self.store.note_count,
            "days": len(self.store.days()),
            "indexed": self.index.note_count,
            "attachments": by_status,
            "capture": dict(self.orchestrator.stats, queued=self.orchestrator.queued),
            "index": dict(self.index.stats),
        }
