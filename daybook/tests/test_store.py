"""Tests for the note journal."""

import asyncio
import errno
from datetime import date

import pytest

from daybook.daemon.error_handling import InvalidTransition, NotFound, StorageError
from daybook.daemon.models import AttachmentStatus, CaptureKind, NoteId
from daybook.daemon.store import NoteStore, decode_record


DAY = date(2024, 1, 1)


async def reopen(store: NoteStore, clock) -> NoteStore:
    await store.close()
    reopened = NoteStore(store.journal_dir, clock=clock)
    await reopened.open()
    return reopened


@pytest.mark.asyncio
async def test_append_assigns_sequence(store):
    first = await store.append("Buy milk #errands")
    second = await store.append("Call Bob")

    assert first.id == NoteId(DAY, 1)
    assert second.id == NoteId(DAY, 2)
    assert first.tags == ["errands"]
    assert str(second.id) == "2024-01-01/2"

    notes = await store.read_day(DAY)
    assert [n.body for n in notes] == ["Buy milk #errands", "Call Bob"]


@pytest.mark.asyncio
async def test_notes_survive_restart(store, clock):
    appended = [await store.append(f"note {i}") for i in range(5)]

    reopened = await reopen(store, clock)
    try:
        assert await reopened.read_day(DAY) == appended
        assert reopened.note_count == 5

        # Sequence continues where the previous run stopped
        note = await reopened.append("after restart")
        assert note.seq == 6
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_day_rollover_resets_sequence(store, clock):
    await store.append("monday")
    await store.append("monday again")

    clock.advance(days=1)
    note = await store.append("tuesday")

    assert note.id == NoteId(date(2024, 1, 2), 1)
    assert store.days() == [DAY, date(2024, 1, 2)]
    assert len(await store.read_day(DAY)) == 2
    assert [n.body for n in await store.read_day(date(2024, 1, 2))] == ["tuesday"]
    assert (store.journal_dir / "2024-01-02.log").exists()


@pytest.mark.asyncio
async def test_read_day_without_notes(store):
    assert await store.read_day(date(2023, 12, 31)) == []


@pytest.mark.asyncio
async def test_read_day_is_restartable(store):
    await store.append("one")
    await store.append("two")

    first = await store.read_day(DAY)
    second = await store.read_day(DAY)
    assert first == second


@pytest.mark.asyncio
async def test_concurrent_appends_do_not_interleave(store, clock):
    notes = await asyncio.gather(*(store.append(f"concurrent note {i} " + "x" * 200) for i in range(50)))

    assert sorted(n.seq for n in notes) == list(range(1, 51))

    data = (store.journal_dir / "2024-01-01.log").read_bytes()
    lines = data.split(b"\n")
    assert lines[-1] == b""
    assert all(decode_record(line) is not None for line in lines[:-1])

    reopened = await reopen(store, clock)
    try:
        assert len(await reopened.read_day(DAY)) == 50
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_torn_tail_is_discarded(store, clock):
    await store.append("kept 1")
    await store.append("kept 2")
    await store.close()

    path = store.journal_dir / "2024-01-01.log"
    size = path.stat().st_size
    with open(path, "ab") as f:
        f.write(b'0badf00d {"op":"note","seq":3,"bo')

    reopened = NoteStore(store.journal_dir, clock=clock)
    await reopened.open()
    try:
        assert path.stat().st_size == size
        assert [n.body for n in await reopened.read_day(DAY)] == ["kept 1", "kept 2"]

        note = await reopened.append("kept 3")
        assert note.seq == 3
        assert len(await reopened.read_day(DAY)) == 3
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_corrupt_final_record_is_discarded(store, clock):
    await store.append("good")
    await store.close()

    path = store.journal_dir / "2024-01-01.log"
    with open(path, "ab") as f:
        f.write(b"\x00\x00\x00\x00garbage\n")

    reopened = NoteStore(store.journal_dir, clock=clock)
    await reopened.open()
    try:
        assert [n.body for n in await reopened.read_day(DAY)] == ["good"]
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_failed_write_leaves_no_note(store, monkeypatch):
    await store.append("before")
    path = store.journal_dir / "2024-01-01.log"
    size = path.stat().st_size

    def no_space(fd):
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr("daybook.daemon.store.os.fsync", no_space)
    with pytest.raises(StorageError):
        await store.append("lost")
    monkeypatch.undo()

    assert path.stat().st_size == size
    assert [n.body for n in await store.read_day(DAY)] == ["before"]

    # The failed append did not consume a sequence number
    note = await store.append("after")
    assert note.seq == 2


@pytest.mark.asyncio
async def test_open_fails_on_unusable_root(tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")

    store = NoteStore(blocker / "journal")
    with pytest.raises(StorageError):
        await store.open()


@pytest.mark.asyncio
async def test_read_only_store_does_not_repair_or_write(store, clock):
    await store.append("good")
    await store.close()

    path = store.journal_dir / "2024-01-01.log"
    with open(path, "ab") as f:
        f.write(b"partial")
    size = path.stat().st_size

    readonly = NoteStore(store.journal_dir, clock=clock, read_only=True)
    await readonly.open()
    assert path.stat().st_size == size
    assert [n.body for n in await readonly.read_day(DAY)] == ["good"]
    with pytest.raises(StorageError):
        await readonly.append("nope")
    await readonly.close()


@pytest.mark.asyncio
async def test_get_note(store):
    note = await store.append("find me")

    assert await store.get_note(note.id) == note
    with pytest.raises(NotFound):
        await store.get_note(NoteId(DAY, 99))


@pytest.mark.asyncio
async def test_add_attachment_deduplicates_by_note_and_url(store):
    note = await store.append("see https://example.com")

    first, created = await store.add_attachment(note.id, "https://example.com", CaptureKind.PAGE_SNAPSHOT)
    again, created_again = await store.add_attachment(note.id, "https://example.com", CaptureKind.PAGE_SNAPSHOT)

    assert created and not created_again
    assert again == first
    assert first.status == AttachmentStatus.PENDING
    assert len(store.attachments()) == 1


@pytest.mark.asyncio
async def test_add_attachment_unknown_note(store):
    with pytest.raises(NotFound):
        await store.add_attachment(NoteId(DAY, 1), "https://example.com", CaptureKind.PAGE_SNAPSHOT)


@pytest.mark.asyncio
async def test_attachment_updates_survive_restart(store, clock):
    note = await store.append("two links https://a.example https://b.example")
    a, _ = await store.add_attachment(note.id, "https://a.example", CaptureKind.PAGE_SNAPSHOT)
    b, _ = await store.add_attachment(note.id, "https://b.example", CaptureKind.PAGE_SNAPSHOT)

    await store.update_attachment(note.id, a.id, AttachmentStatus.DONE, path="webpages/a.html", attempts=1)
    await store.update_attachment(note.id, b.id, AttachmentStatus.FAILED, error="boom", attempts=3)

    reopened = await reopen(store, clock)
    try:
        [loaded] = await reopened.read_day(DAY)
        by_url = {att.url: att for att in loaded.attachments}
        assert by_url["https://a.example"].status == AttachmentStatus.DONE
        assert by_url["https://a.example"].path == "webpages/a.html"
        assert by_url["https://b.example"].status == AttachmentStatus.FAILED
        assert by_url["https://b.example"].error == "boom"
        assert by_url["https://b.example"].attempts == 3
        assert reopened.get_attachment(b.id).status == AttachmentStatus.FAILED
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_update_attachment_on_previous_day(store, clock):
    note = await store.append("yesterday https://a.example")
    attachment, _ = await store.add_attachment(note.id, "https://a.example", CaptureKind.PAGE_SNAPSHOT)

    clock.advance(days=1)
    await store.append("today")
    await store.update_attachment(note.id, attachment.id, AttachmentStatus.DONE, path="webpages/a.html")

    [loaded] = await store.read_day(DAY)
    assert loaded.attachments[0].status == AttachmentStatus.DONE


@pytest.mark.asyncio
async def test_update_attachment_errors(store):
    note = await store.append("https://a.example")
    attachment, _ = await store.add_attachment(note.id, "https://a.example", CaptureKind.PAGE_SNAPSHOT)

    with pytest.raises(NotFound):
        await store.update_attachment(note.id, "missing", AttachmentStatus.DONE, path="x")

    await store.update_attachment(note.id, attachment.id, AttachmentStatus.DONE, path="webpages/a.html")
    with pytest.raises(InvalidTransition):
        await store.update_attachment(note.id, attachment.id, AttachmentStatus.PENDING)


@pytest.mark.asyncio
async def test_concurrent_attachment_updates(store):
    notes = [await store.append(f"https://{i}.example") for i in range(10)]
    attachments = [
        (await store.add_attachment(n.id, f"https://{i}.example", CaptureKind.PAGE_SNAPSHOT))[0]
        for i, n in enumerate(notes)
    ]

    await asyncio.gather(*(
        store.update_attachment(a.note_id, a.id, AttachmentStatus.DONE, path=f"webpages/{a.id}.html")
        for a in attachments
    ))

    assert all(a.status == AttachmentStatus.DONE for a in store.attachments())
    loaded = await store.read_day(DAY)
    assert all(n.attachments[0].status == AttachmentStatus.DONE for n in loaded)


@pytest.mark.asyncio
async def test_update_racing_day_rollover(store, clock):
    note = await store.append("https://a.example https://b.example")
    a, _ = await store.add_attachment(note.id, "https://a.example", CaptureKind.PAGE_SNAPSHOT)
    b, _ = await store.add_attachment(note.id, "https://b.example", CaptureKind.PAGE_SNAPSHOT)

    async def roll_over():
        clock.advance(days=1)
        return await store.append("first note of the new day")

    updated, tomorrow = await asyncio.gather(
        store.update_attachment(note.id, a.id, AttachmentStatus.DONE, path="webpages/a.html"),
        roll_over()
    )
    assert updated.status == AttachmentStatus.DONE
    assert tomorrow.id == NoteId(date(2024, 1, 2), 1)

    await store.update_attachment(note.id, b.id, AttachmentStatus.FAILED, error="boom", attempts=3)

    [loaded] = await store.read_day(DAY)
    assert {att.url: att.status for att in loaded.attachments} == {
        "https://a.example": AttachmentStatus.DONE,
        "https://b.example": AttachmentStatus.FAILED,
    }
    assert store.get_attachment(b.id).status == AttachmentStatus.FAILED
    assert (store.journal_dir / "2024-01-01.log").stat().st_size == store._confirmed[DAY]

    reopened = await reopen(store, clock)
    try:
        [loaded] = await reopened.read_day(DAY)
        assert [att.status for att in loaded.attachments] == [AttachmentStatus.DONE, AttachmentStatus.FAILED]
        assert [n.body for n in await reopened.read_day(date(2024, 1, 2))] == ["first note of the new day"]
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_attachments_keep_creation_order(store, clock):
    urls = [f"https://{i}.example" for i in range(25)]
    note = await store.append(" ".join(urls))
    created = [
        (await store.add_attachment(note.id, url, CaptureKind.PAGE_SNAPSHOT))[0]
        for url in urls
    ]

    await store.update_attachment(note.id, created[3].id, AttachmentStatus.FAILED, error="boom")

    assert [a.url for a in store.attachments()] == urls
    assert [a.url for a in store.attachments(AttachmentStatus.PENDING)] == urls[:3] + urls[4:]

    reopened = await reopen(store, clock)
    try:
        assert [a.url for a in reopened.attachments()] == urls
    finally:
        await reopened.close()
