"""
In-memory token index over the note journal.

The journal is the source of truth; this index is a disposable cache that
can be rebuilt from it at any time. Queries are exact token matches,
combined with AND, newest note first.
"""

import asyncio
import re
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Union

from loguru import logger

from ..error_handling import IndexCorruption
from ..models import TAG_PATTERN, Attachment, Note, NoteId


WORD_PATTERN = re.compile(r'\w+')


def tokenize(text: str) -> Set[str]:
    """Lower-cased words plus `#tag` tokens for tags."""
    lowered = text.lower()
    tokens = set(WORD_PATTERN.findall(lowered))
    tokens.update(f"#{tag}" for tag in TAG_PATTERN.findall(lowered))
    return tokens


def query_tokens(terms: Union[str, Iterable[str]]) -> Set[str]:
    """Normalize query terms with the same rules used for note bodies."""
    if isinstance(terms, str):
        terms = terms.split()

    tokens: Set[str] = set()
    for term in terms:
        term = term.strip().lower()
        if TAG_PATTERN.fullmatch(term):
            tokens.add(term)
        else:
            tokens.update(WORD_PATTERN.findall(term))
    return tokens


class _Snapshot:
    """One generation of index state."""

    def __init__(self):
        self.postings: Dict[str, Set[NoteId]] = defaultdict(set)
        self.notes: Dict[NoteId, Note] = {}

    def add(self, note: Note) -> None:
        previous = self.notes.get(note.id)
        if previous is not None:
            for token in tokenize(previous.body):
                self.postings[token].discard(note.id)
        for token in tokenize(note.body):
            self.postings[token].add(note.id)
        self.notes[note.id] = note

    def update_attachment(self, attachment: Attachment) -> bool:
        note = self.notes.get(attachment.note_id)
        if note is None:
            return False
        self.notes[note.id] = note.with_attachment(attachment)
        return True


class SearchIndex:
    """
    Token index with snapshot swap on rebuild.

    Mutations are applied on the event loop by a single writer; queries
    are synchronous and always run against one complete snapshot.
    """

    def __init__(self):
        self._snapshot = _Snapshot()
        # Writes that arrive while a rebuild is replaying the journal
        self._backlog: Optional[List[Union[Note, Attachment]]] = None
        self._rebuild_lock = asyncio.Lock()
        self._generation = 0
        # Set once corruption is found, cleared when a fresh snapshot is swapped in
        self._stale = False
        self.stats = {
            "rebuilds": 0,
            "queries": 0,
        }

    @property
    def note_count(self) -> int:
        return len(self._snapshot.notes)

    @property
    def rebuilding(self) -> bool:
        return self._backlog is not None

    @property
    def stale(self) -> bool:
        return self._stale

    def mark_stale(self) -> None:
        """Flag the current snapshot as unfit to answer queries until rebuilt."""
        self._stale = True

    def index_note(self, note: Note) -> None:
        """Add a note to the index; indexing the same note twice is a no-op."""
        self._snapshot.add(note)
        if self._backlog is not None:
            self._backlog.append(note)
        logger.debug(f"Indexed note {note.id}")

    def update_attachment(self, attachment: Attachment) -> None:
        """Carry the latest attachment state on the indexed note."""
        if not self._snapshot.update_attachment(attachment) and self._backlog is None:
            logger.warning(f"Attachment {attachment.id} refers to unindexed note {attachment.note_id}")
        if self._backlog is not None:
            self._backlog.append(attachment)

    def get(self, note_id: NoteId) -> Optional[Note]:
        return self._snapshot.notes.get(note_id)

    def query(self, terms: Union[str, Iterable[str]], limit: Optional[int] = None) -> List[Note]:
        """
        Find notes containing every term.

        Args:
            terms: Whitespace-separated string or iterable of terms
            limit: Maximum number of notes to return

        Returns:
            Matching notes, newest first

        Raises:
            IndexCorruption: a posting refers to a note the index does not hold
        """
        tokens = query_tokens(terms)
        if not tokens:
            return []

        self.stats["queries"] += 1
        snapshot = self._snapshot

        matches: Optional[Set[NoteId]] = None
        # Smallest posting list first keeps the intersection cheap
        for token in sorted(tokens, key=lambda t: len(snapshot.postings.get(t, ()))):
            ids = snapshot.postings.get(token)
            if not ids:
                return []
            matches = set(ids) if matches is None else matches & ids
            if not matches:
                return []

        ordered = sorted(matches, reverse=True)
        if limit is not None:
            ordered = ordered[:limit]

        results = []
        for note_id in ordered:
            note = snapshot.notes.get(note_id)
            if note is None:
                raise IndexCorruption(f"posting refers to unknown note {note_id}")
            results.append(note)
        return results

    def verify(self, expected_count: int) -> None:
        """Raise IndexCorruption if the index does not hold `expected_count` notes."""
        if self.note_count != expected_count:
            raise IndexCorruption(
                f"index holds {self.note_count} notes, journal holds {expected_count}"
            )

    async def rebuild(self, store) -> int:
        """
        Replace the index with one replayed from the note store.

        The current snapshot keeps answering queries until the new one is
        complete. Callers that arrive while a rebuild is running wait for
        it and share its result instead of starting another. Returns the
        number of notes indexed.
        """
        generation = self._generation
        async with self._rebuild_lock:
            if self._generation != generation:
                return self.note_count
            count = await self._replay(store)
            self._generation += 1
            return count

    async def _replay(self, store) -> int:
        logger.info("Rebuilding search index...")
        fresh = _Snapshot()
        backlog: List[Union[Note, Attachment]] = []
        self._backlog = backlog
        try:
            async for note in store.iter_notes():
                fresh.add(note)

            for item in backlog:
                if isinstance(item, Note):
                    fresh.add(item)
                else:
                    fresh.update_attachment(item)

            self._snapshot = fresh
            self._stale = False
        finally:
            self._backlog = None

        self.stats["rebuilds"] += 1
        logger.info(f"Search index rebuilt: {len(fresh.notes)} notes, {len(fresh.postings)} tokens")
        return len(fresh.notes)
