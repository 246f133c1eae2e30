"""Append-only note journal with one file per calendar day."""

import asyncio
import json
import os
import zlib
from collections import defaultdict
from datetime import date, datetime
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Set, Tuple

import aiofiles
import ulid
from loguru import logger

from .error_handling import NotFound, StorageError
from .models import (
    Attachment,
    AttachmentStatus,
    CaptureKind,
    Note,
    NoteId,
    extract_tags,
)


def encode_record(record: Dict) -> bytes:
    """Encode a journal record as `<crc32> <json>\\n`."""
    data = json.dumps(
        record, ensure_ascii=False, separators=(",", ":"), sort_keys=True
    ).encode("utf-8")
    return f"{zlib.crc32(data):08x} ".encode("ascii") + data + b"\n"


def decode_record(line: bytes) -> Optional[Dict]:
    """Decode one journal line; None when the checksum or JSON is bad."""
    crc_part, sep, data = line.partition(b" ")
    if not sep or len(crc_part) != 8:
        return None
    try:
        expected = int(crc_part, 16)
    except ValueError:
        return None
    if zlib.crc32(data) != expected:
        return None
    try:
        record = json.loads(data)
    except ValueError:
        return None
    if not isinstance(record, dict) or "op" not in record:
        return None
    return record


class NoteStore:
    """
    Durable note journal.

    Write path:
    1. Build the complete record line in memory
    2. Write it in one call, flush + fsync
    3. Advance the confirmed size of the day file

    Readers only ever see the confirmed prefix of a day file, so a record
    is either fully visible or not at all. A failed write truncates the
    file back to its confirmed size before StorageError is raised.
    """

    def __init__(
        self,
        journal_dir: Path,
        clock: Callable[[], datetime] = datetime.now,
        fsync: bool = True,
        read_only: bool = False
    ):
        self.journal_dir = Path(journal_dir)
        self._clock = clock
        self._fsync = fsync
        # Read-only stores never repair torn tails; another process may be writing
        self.read_only = read_only

        self._append_lock = asyncio.Lock()
        self._day_locks: Dict[date, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Open day file handles, each used only under its day lock
        self._wal_files: Dict[date, object] = {}

        # Confirmed byte size per day file
        self._confirmed: Dict[date, int] = {}
        self._last_seq: Dict[date, int] = {}
        self._note_ids: Set[NoteId] = set()
        self._attachments: Dict[str, Attachment] = {}
        self._attachment_keys: Dict[Tuple[NoteId, str], str] = {}

    async def open(self) -> None:
        """Create the journal directory and load state from existing day files."""
        if self.read_only:
            if not self.journal_dir.is_dir():
                raise StorageError(f"no journal at {self.journal_dir}")
        else:
            try:
                self.journal_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"cannot open notes root {self.journal_dir}: {e}") from e

        for path in sorted(self.journal_dir.glob("*.log")):
            try:
                day = date.fromisoformat(path.stem)
            except ValueError:
                logger.warning(f"Ignoring unexpected file in journal: {path.name}")
                continue
            await self._load_day(day, path)

        logger.info(
            f"Note store opened: {len(self._confirmed)} days, "
            f"{len(self._note_ids)} notes, {len(self._attachments)} attachments"
        )

    async def _load_day(self, day: date, path: Path) -> None:
        try:
            async with aiofiles.open(path, 'rb') as f:
                data = await f.read()
        except OSError as e:
            raise StorageError(f"cannot read {path}: {e}") from e

        size = self._recover_tail(path, data)
        for note in self._fold(day, self._decode_lines(path, data[:size])):
            self._note_ids.add(note.id)
            self._last_seq[day] = max(self._last_seq.get(day, 0), note.seq)
            for attachment in note.attachments:
                self._register(attachment)
        self._confirmed[day] = size

    def _recover_tail(self, path: Path, data: bytes) -> int:
        """Truncate a record torn by a crash; returns the valid size."""
        size = data.rfind(b"\n") + 1
        if size:
            last_start = data.rfind(b"\n", 0, size - 1) + 1
            if decode_record(data[last_start:size - 1]) is None:
                size = last_start

        if size != len(data):
            if self.read_only:
                return size
            logger.warning(
                f"Discarding {len(data) - size} bytes of incomplete record at end of {path.name}"
            )
            try:
                os.truncate(path, size)
            except OSError as e:
                raise StorageError(f"cannot repair {path}: {e}") from e
        return size

    def today(self) -> date:
        return self._clock().date()

    def _day_path(self, day: date) -> Path:
        return self.journal_dir / f"{day.isoformat()}.log"

    def _decode_lines(self, path: Path, data: bytes) -> Iterable[Dict]:
        lines = data.split(b"\n")
        # Everything after the final newline is not a complete record
        for lineno, line in enumerate(lines[:-1], start=1):
            if not line:
                continue
            record = decode_record(line)
            if record is None:
                logger.error(f"Skipping corrupt record in {path.name} line {lineno}")
                continue
            yield record

    def _fold(self, day: date, records: Iterable[Dict]) -> List[Note]:
        """Replay note, attach and status records into notes."""
        notes: Dict[int, Note] = {}

        for record in records:
            try:
                op = record["op"]
                if op == "note":
                    seq = int(record["seq"])
                    notes[seq] = Note(
                        id=NoteId(day=day, seq=seq),
                        created_at=datetime.fromisoformat(record["ts"]),
                        body=record["body"],
                        tags=list(record.get("tags") or extract_tags(record["body"]))
                    )
                    continue

                note = notes.get(int(record["note"]))
                if note is None:
                    logger.warning(f"Record {op} for unknown note {day}/{record['note']}")
                    continue

                if op == "attach":
                    attachment = Attachment(
                        id=record["id"],
                        note_id=note.id,
                        url=record["url"],
                        kind=CaptureKind(record["kind"])
                    )
                elif op == "status":
                    current = next(
                        (a for a in note.attachments if a.id == record["id"]), None
                    )
                    if current is None:
                        logger.warning(f"Status record for unknown attachment {record['id']}")
                        continue
                    attachment = Attachment(
                        id=current.id,
                        note_id=current.note_id,
                        url=current.url,
                        kind=current.kind,
                        status=AttachmentStatus(record["status"]),
                        path=record.get("path"),
                        error=record.get("error"),
                        attempts=int(record.get("attempts") or 0)
                    )
                else:
                    logger.warning(f"Unknown journal record type: {op}")
                    continue

                notes[note.seq] = note.with_attachment(attachment)

            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Malformed journal record for {day}: {e}")

        return list(notes.values())

    def _register(self, attachment: Attachment) -> None:
        self._attachments[attachment.id] = attachment
        self._attachment_keys[(attachment.note_id, attachment.url)] = attachment.id

    async def _get_wal_file(self, day: date):
        """Get or open the handle for a day file; caller holds the day lock."""
        handle = self._wal_files.get(day)
        if handle is None:
            handle = await aiofiles.open(self._day_path(day), 'ab')
            self._wal_files[day] = handle
            logger.debug(f"Opened day file: {self._day_path(day)}")
        return handle

    async def _write(self, day: date, record: Dict) -> None:
        """Durably append one record; caller holds the day lock."""
        if self.read_only:
            raise StorageError("note store is open read-only")
        line = encode_record(record)
        offset = self._confirmed.get(day, 0)

        try:
            handle = await self._get_wal_file(day)
        except OSError as e:
            raise StorageError(f"cannot open {self._day_path(day).name}: {e}") from e

        try:
            await handle.write(line)
            await handle.flush()
            if self._fsync:
                os.fsync(handle.fileno())
            size = os.fstat(handle.fileno()).st_size
        except (OSError, ValueError) as e:
            del self._wal_files[day]
            await self._rollback(day, handle, offset)
            raise StorageError(f"failed to write {self._day_path(day).name}: {e}") from e

        self._confirmed[day] = size

        # Only the current day keeps its handle open across writes
        if day != self.today():
            del self._wal_files[day]
            try:
                await handle.close()
            except OSError as e:
                logger.warning(f"Closing {self._day_path(day).name} failed: {e}")

    async def _rollback(self, day: date, handle, offset: int) -> None:
        """Drop buffered bytes and cut the day file back to its confirmed size."""
        try:
            await handle.close()
        except (OSError, ValueError) as e:
            logger.debug(f"Closing failed handle for {day}: {e}")
        try:
            os.truncate(self._day_path(day), offset)
        except OSError as e:
            logger.error(f"Could not roll back {self._day_path(day).name} to {offset} bytes: {e}")

    async def append(self, body: str) -> Note:
        """Append a note to the current day file and return it once durable."""
        async with self._append_lock:
            now = self._clock()
            day = now.date()
            async with self._day_locks[day]:
                seq = self._last_seq.get(day, 0) + 1
                note = Note(
                    id=NoteId(day=day, seq=seq),
                    created_at=now,
                    body=body,
                    tags=extract_tags(body)
                )
                await self._write(day, {
                    "op": "note",
                    "seq": seq,
                    "ts": now.isoformat(),
                    "body": body,
                    "tags": note.tags
                })
                self._last_seq[day] = seq
                self._note_ids.add(note.id)

        logger.debug(f"Appended note {note.id}")
        return note

    async def read_day(self, day: date) -> List[Note]:
        """Read the confirmed notes of one day in append order."""
        limit = self._confirmed.get(day)
        if not limit:
            return []

        path = self._day_path(day)
        try:
            async with aiofiles.open(path, 'rb') as f:
                data = await f.read(limit)
        except FileNotFoundError:
            logger.error(f"Day file disappeared: {path}")
            return []
        except OSError as e:
            raise StorageError(f"cannot read {path.name}: {e}") from e

        return self._fold(day, self._decode_lines(path, data))

    async def iter_notes(self) -> AsyncIterator[Note]:
        """Iterate over every note, oldest day first."""
        for day in self.days():
            for note in await self.read_day(day):
                yield note

    async def get_note(self, note_id: NoteId) -> Note:
        if note_id in self._note_ids:
            for note in await self.read_day(note_id.day):
                if note.id == note_id:
                    return note
        raise NotFound(f"note {note_id} does not exist")

    def days(self) -> List[date]:
        return sorted(day for day, size in self._confirmed.items() if size)

    @property
    def note_count(self) -> int:
        return len(self._note_ids)

    async def add_attachment(
        self,
        note_id: NoteId,
        url: str,
        kind: CaptureKind
    ) -> Tuple[Attachment, bool]:
        """
        Create a pending attachment for `url` on a note.

        Returns the attachment and whether it was created; an existing
        attachment for the same (note, url) pair is returned unchanged.
        """
        if note_id not in self._note_ids:
            raise NotFound(f"note {note_id} does not exist")

        async with self._day_locks[note_id.day]:
            existing = self._attachment_keys.get((note_id, url))
            if existing is not None:
                return self._attachments[existing], False

            attachment = Attachment(
                id=str(ulid.ULID()),
                note_id=note_id,
                url=url,
                kind=CaptureKind(kind)
            )
            await self._write(note_id.day, {
                "op": "attach",
                "note": note_id.seq,
                "id": attachment.id,
                "url": url,
                "kind": attachment.kind.value
            })
            self._register(attachment)

        logger.debug(f"Attachment {attachment.id} ({attachment.kind.value}) created for {note_id}: {url}")
        return attachment, True

    async def update_attachment(
        self,
        note_id: NoteId,
        attachment_id: str,
        status: AttachmentStatus,
        path: Optional[str] = None,
        error: Optional[str] = None,
        attempts: Optional[int] = None
    ) -> Attachment:
        """Durably change an attachment's status; the only mutation path for attachments."""
        async with self._day_locks[note_id.day]:
            current = self._attachments.get(attachment_id)
            if current is None or current.note_id != note_id:
                logger.error(
                    f"Consistency error: update for unknown attachment {attachment_id} on note {note_id}"
                )
                raise NotFound(f"attachment {attachment_id} does not exist on note {note_id}")

            updated = current.transition(status, path=path, error=error, attempts=attempts)
            await self._write(note_id.day, {
                "op": "status",
                "note": note_id.seq,
                "id": attachment_id,
                "status": updated.status.value,
                "path": updated.path,
                "error": updated.error,
                "attempts": updated.attempts
            })
            self._attachments[attachment_id] = updated

        logger.debug(f"Attachment {attachment_id}: {current.status.value} -> {updated.status.value}")
        return updated

    def get_attachment(self, attachment_id: str) -> Attachment:
        attachment = self._attachments.get(attachment_id)
        if attachment is None:
            raise NotFound(f"attachment {attachment_id} does not exist")
        return attachment

    def attachments(self, status: Optional[AttachmentStatus] = None) -> List[Attachment]:
        """All known attachments in the order they were journaled, optionally filtered by status."""
        return [a for a in self._attachments.values() if status is None or a.status == status]

    async def close(self) -> None:
        """Close the note store."""
        for day in list(self._wal_files):
            async with self._day_locks[day]:
                handle = self._wal_files.pop(day, None)
                if handle is not None:
                    await handle.close()
        logger.info("Note store closed")
