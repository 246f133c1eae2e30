"""Startup recovery: rebuild the index and resume unfinished captures."""

from dataclasses import dataclass

from loguru import logger

from .capture import CaptureOrchestrator
from .indexers import SearchIndex
from .models import AttachmentStatus
from .store import NoteStore


@dataclass
class RecoveryReport:
    notes_indexed: int = 0
    attachments_created: int = 0
    attachments_requeued: int = 0
    attachments_retried: int = 0


class RecoveryCoordinator:
    """
    Brings derived state back in line with the journal on process start.

    The journal is replayed into a fresh search index, references whose
    attachment record was never written (crash between the note append and
    attachment creation) get their attachment now, and every attachment
    still pending from the previous run is queued again. Capture tools are
    safe to re-run for the same URL, so nothing is assumed lost.
    """

    def __init__(
        self,
        store: NoteStore,
        index: SearchIndex,
        orchestrator: CaptureOrchestrator,
        retry_failed: bool = False
    ):
        self.store = store
        self.index = index
        self.orchestrator = orchestrator
        self.retry_failed = retry_failed

    async def run(self) -> RecoveryReport:
        report = RecoveryReport()
        report.notes_indexed = await self.index.rebuild(self.store)

        async for note in self.store.iter_notes():
            known = {a.url for a in note.attachments}
            for reference in self.orchestrator.detect_references(note):
                if reference.url in known:
                    continue
                await self.orchestrator.enqueue_capture(note.id, reference.url, reference.kind)
                report.attachments_created += 1

        for attachment in self.store.attachments(AttachmentStatus.PENDING):
            if await self.orchestrator.submit(attachment):
                report.attachments_requeued += 1

        if self.retry_failed:
            for attachment in self.store.attachments(AttachmentStatus.FAILED):
                await self.orchestrator.retry(attachment.id)
                report.attachments_retried += 1

        logger.info(
            f"Recovery complete: {report.notes_indexed} notes indexed, "
            f"{report.attachments_created} attachments created, "
            f"{report.attachments_requeued} requeued, {report.attachments_retried} retried"
        )
        return report
