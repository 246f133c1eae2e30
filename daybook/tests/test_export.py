"""Tests for markdown export."""

from datetime import date, datetime

import frontmatter
import pytest
from click.testing import CliRunner

from daybook.cli.day import cli
from daybook.daemon.export import export_day
from daybook.daemon.models import AttachmentStatus, CaptureKind
from daybook.daemon.store import encode_record


@pytest.mark.asyncio
async def test_export_day(store, tmp_path):
    note = await store.append("Trip plans\nBook the train #travel")
    attachment, _ = await store.add_attachment(note.id, "https://example.com/train", CaptureKind.PAGE_SNAPSHOT)
    await store.update_attachment(note.id, attachment.id, AttachmentStatus.DONE, path="webpages/train.html")
    await store.append("second note")

    written = await export_day(store, date(2024, 1, 1), tmp_path / "export")

    assert [p.name for p in written] == ["2024-01-01-0001.md", "2024-01-01-0002.md"]

    post = frontmatter.load(written[0])
    assert post.content == "Trip plans\nBook the train #travel"
    assert post["id"] == "2024-01-01/1"
    assert post["title"] == "Trip plans"
    assert post["tags"] == ["travel"]
    assert post["attachments"] == [{
        "url": "https://example.com/train",
        "kind": "page-snapshot",
        "status": "done",
        "path": "webpages/train.html",
        "error": None,
    }]


@pytest.mark.asyncio
async def test_export_empty_day(store, tmp_path):
    assert await export_day(store, date(2023, 12, 31), tmp_path / "export") == []


def test_cli_export_reads_journal_offline(tmp_path):
    journal = tmp_path / "notes" / "journal"
    journal.mkdir(parents=True)
    (journal / "2024-01-01.log").write_bytes(
        encode_record({
            "op": "note",
            "seq": 1,
            "ts": datetime(2024, 1, 1, 8, 0).isoformat(),
            "body": "written by hand",
            "tags": [],
        })
    )

    dest = tmp_path / "out"
    result = CliRunner().invoke(cli, ["export", "2024-01-01", str(dest), "--root", str(tmp_path / "notes")])

    assert result.exit_code == 0, result.output
    assert "Exported 1 notes" in result.output
    assert frontmatter.load(dest / "2024-01-01-0001.md").content == "written by hand"


def test_cli_export_rejects_bad_day(tmp_path):
    result = CliRunner().invoke(cli, ["export", "someday", str(tmp_path), "--root", str(tmp_path)])
    assert result.exit_code == 2
