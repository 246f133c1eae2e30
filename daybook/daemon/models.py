"""Data models for notes and their captured attachments."""

import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import markdown

from .error_handling import InvalidTransition


TAG_PATTERN = re.compile(r'#(\w[\w-]*)')


class CaptureKind(str, Enum):
    """How a referenced URL gets archived."""
    PAGE_SNAPSHOT = "page-snapshot"
    MEDIA_FILE = "media-file"


class AttachmentStatus(str, Enum):
    """Lifecycle of an attachment capture."""
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


# failed -> pending is the only backward edge (manual or startup retry)
TRANSITIONS = {
    AttachmentStatus.PENDING: {AttachmentStatus.DONE, AttachmentStatus.FAILED},
    AttachmentStatus.FAILED: {AttachmentStatus.PENDING},
    AttachmentStatus.DONE: set(),
}


def extract_tags(text: str) -> List[str]:
    """Extract hashtags from text, lower-cased and sorted."""
    return sorted({tag.lower() for tag in TAG_PATTERN.findall(text)})


# Raw HTML in a body is passed through unescaped
MARKDOWN_EXTENSIONS = ["tables", "fenced_code", "sane_lists"]


def render_html(body: str) -> str:
    """Render a note body from markdown to HTML."""
    return markdown.markdown(body, extensions=MARKDOWN_EXTENSIONS)


@dataclass(frozen=True, order=True)
class NoteId:
    """Identity of a note: calendar day plus sequence within that day."""
    day: date
    seq: int

    def __str__(self) -> str:
        return f"{self.day.isoformat()}/{self.seq}"

    @classmethod
    def parse(cls, value: str) -> "NoteId":
        """Parse the `YYYY-MM-DD/seq` form."""
        day_part, sep, seq_part = value.partition("/")
        if not sep:
            raise ValueError(f"invalid note id: {value!r}")
        try:
            seq = int(seq_part)
            day = date.fromisoformat(day_part)
        except ValueError:
            raise ValueError(f"invalid note id: {value!r}") from None
        if seq < 1:
            raise ValueError(f"invalid note id: {value!r}")
        return cls(day=day, seq=seq)


@dataclass(frozen=True)
class Attachment:
    """
    Capture of one external reference found in a note.

    `path` is only set when done and `error` only when failed; use
    transition() rather than constructing changed copies by hand.
    """
    id: str
    note_id: NoteId
    url: str
    kind: CaptureKind
    status: AttachmentStatus = AttachmentStatus.PENDING
    path: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    def transition(
        self,
        status: AttachmentStatus,
        path: Optional[str] = None,
        error: Optional[str] = None,
        attempts: Optional[int] = None
    ) -> "Attachment":
        """Return a copy moved to `status`, enforcing the lifecycle."""
        status = AttachmentStatus(status)
        if status not in TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"attachment {self.id}: {self.status.value} -> {status.value} not allowed"
            )
        if status == AttachmentStatus.DONE and not path:
            raise InvalidTransition(f"attachment {self.id}: done requires an artifact path")
        if status == AttachmentStatus.FAILED and not error:
            raise InvalidTransition(f"attachment {self.id}: failed requires a reason")

        return replace(
            self,
            status=status,
            path=path if status == AttachmentStatus.DONE else None,
            error=error if status == AttachmentStatus.FAILED else None,
            attempts=self.attempts if attempts is None else attempts
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "note_id": str(self.note_id),
            "url": self.url,
            "kind": self.kind.value,
            "status": self.status.value,
            "path": self.path,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class Note:
    """An immutable, timestamped unit of user-authored text."""
    id: NoteId
    created_at: datetime
    body: str
    tags: List[str] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)

    @property
    def day(self) -> date:
        return self.id.day

    @property
    def seq(self) -> int:
        return self.id.seq

    def with_attachment(self, attachment: Attachment) -> "Note":
        """Return a copy carrying `attachment`, replacing any with the same id."""
        if any(a.id == attachment.id for a in self.attachments):
            attachments = [
                attachment if a.id == attachment.id else a
                for a in self.attachments
            ]
        else:
            attachments = list(self.attachments) + [attachment]
        return replace(self, attachments=attachments)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "day": self.day.isoformat(),
            "seq": self.seq,
            "created_at": self.created_at.isoformat(),
            "body": self.body,
            "html": render_html(self.body),
            "tags": list(self.tags),
            "attachments": [a.to_dict() for a in self.attachments],
        }
