"""Export journal days as markdown files with YAML front matter."""

from datetime import date
from pathlib import Path
from typing import List

import aiofiles
import frontmatter
from loguru import logger

from .models import Note
from .store import NoteStore


def note_to_post(note: Note) -> frontmatter.Post:
    lines = note.body.strip().split('\n')
    title = lines[0][:50] if lines else note.body[:50]

    return frontmatter.Post(
        content=note.body,
        metadata={
            "id": str(note.id),
            "captured": note.created_at.isoformat(),
            "title": title,
            "tags": list(note.tags),
            "attachments": [
                {
                    "url": a.url,
                    "kind": a.kind.value,
                    "status": a.status.value,
                    "path": a.path,
                    "error": a.error,
                }
                for a in note.attachments
            ],
        }
    )


async def export_day(store: NoteStore, day: date, dest: Path) -> List[Path]:
    """Write one markdown file per note of `day` into `dest`."""
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)

    written = []
    for note in await store.read_day(day):
        path = dest / f"{day.isoformat()}-{note.seq:04d}.md"
        async with aiofiles.open(path, 'w', encoding='utf-8') as f:
            await f.write(frontmatter.dumps(note_to_post(note)))
        written.append(path)

    logger.info(f"Exported {len(written)} notes of {day} to {dest}")
    return written
