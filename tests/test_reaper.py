"""Tests for orphan classification and cleanup."""

import logging
import sys
from unittest.mock import patch

import pytest

from cursor_helper.errors import ConfirmationRequiredError
from cursor_helper.locator import WorkspaceLocator
from cursor_helper.reaper import LIVE, ORPHANED, OrphanReaper

REMOTE_URI = "vscode-remote://ssh-remote+box/srv/app"


@pytest.fixture
def locator(storage_root):
    return WorkspaceLocator(storage_root)


class TestClassify:
    def test_existing_folder_is_live(self, locator, make_project):
        _folder, record_dir = make_project("app")
        item = OrphanReaper(locator).classify(locator.get(record_dir.name))
        assert item.status == LIVE
        assert item.size == 0

    def test_missing_folder_is_orphaned(self, locator, make_record, dev_dir):
        make_record("gone", dev_dir / "deleted")
        item = OrphanReaper(locator).classify(locator.get("gone"))
        assert item.status == ORPHANED
        assert item.is_orphaned
        assert item.size > 0

    def test_record_without_claim_is_live(self, locator, make_record):
        make_record("unclaimed")
        assert OrphanReaper(locator).classify(locator.get("unclaimed")).status == LIVE

    def test_remote_is_live_without_probe(self, locator, make_record):
        make_record("remote", REMOTE_URI)
        assert OrphanReaper(locator).classify(locator.get("remote")).status == LIVE

    def test_remote_probe_decides(self, locator, make_record):
        make_record("remote", REMOTE_URI)
        seen = []

        def probe(path):
            seen.append(path)
            return False

        item = OrphanReaper(locator, remote_probe=probe).classify(locator.get("remote"))
        assert item.status == ORPHANED
        assert seen[0].host == "box"

    def test_failing_probe_counts_as_live(self, locator, make_record):
        make_record("remote", REMOTE_URI)

        def probe(path):
            raise OSError("ssh: connect to host box: timed out")

        reaper = OrphanReaper(locator, remote_probe=probe)
        assert reaper.classify(locator.get("remote")).status == LIVE

    @pytest.mark.skipif(sys.platform == "win32", reason="Windows paths are checkable on Windows")
    def test_windows_claim_on_other_host_is_live(self, locator, make_record):
        make_record("win", "file:///c%3A/Users/me/app")
        assert OrphanReaper(locator).classify(locator.get("win")).status == LIVE

    def test_orphans_largest_first(self, locator, make_record, dev_dir, make_project):
        make_project("alive")
        make_record("small", dev_dir / "gone-a")
        big = make_record("big", dev_dir / "gone-b")
        (big / "blob.bin").write_bytes(b"\0" * 100_000)

        orphans = OrphanReaper(locator).orphans()

        assert [o.record.identity.value for o in orphans] == ["big", "small"]


class TestReap:
    def test_requires_confirmation(self, locator, make_record, dev_dir):
        make_record("gone", dev_dir / "deleted")
        reaper = OrphanReaper(locator)
        with pytest.raises(ConfirmationRequiredError):
            reaper.reap(reaper.orphans())
        assert locator.get("gone") is not None

    def test_deletes_only_orphans(self, locator, make_record, make_project, dev_dir):
        _folder, live_dir = make_project("alive")
        make_record("gone", dev_dir / "deleted")
        reaper = OrphanReaper(locator)

        deleted = reaper.reap(reaper.classify_all(), confirmed=True)

        assert deleted == 1
        assert locator.get("gone") is None
        assert live_dir.is_dir()

    def test_keeps_record_whose_folder_came_back(self, locator, make_record, dev_dir):
        make_record("gone", dev_dir / "deleted")
        reaper = OrphanReaper(locator)
        orphans = reaper.orphans()
        (dev_dir / "deleted").mkdir()

        assert reaper.reap(orphans, confirmed=True) == 0
        assert [r.identity.value for r in reaper.skipped] == ["gone"]
        assert reaper.failed == []
        assert locator.get("gone") is not None

    def test_record_already_gone(self, locator, make_record, dev_dir, storage_root):
        make_record("gone", dev_dir / "deleted")
        reaper = OrphanReaper(locator)
        orphans = reaper.orphans()
        for path in sorted((storage_root / "gone").iterdir()):
            path.unlink()
        (storage_root / "gone").rmdir()

        assert reaper.reap(orphans, confirmed=True) == 0
        assert [r.identity.value for r in reaper.skipped] == ["gone"]
        assert reaper.failed == []

    def test_delete_failure_is_logged_and_reported(self, locator, make_record, dev_dir, caplog):
        make_record("gone-a", dev_dir / "deleted-a")
        make_record("gone-b", dev_dir / "deleted-b")
        reaper = OrphanReaper(locator)
        orphans = reaper.orphans()

        with (
            patch("cursor_helper.reaper.shutil.rmtree", side_effect=OSError("busy")),
            caplog.at_level(logging.ERROR, logger="cursor_helper.reaper"),
        ):
            deleted = reaper.reap(orphans, confirmed=True)

        assert deleted == 0
        assert locator.get("gone-a") is not None
        assert "Failed to delete" in caplog.text
        assert sorted(r.identity.value for r in reaper.failed) == ["gone-a", "gone-b"]
        assert reaper.skipped == []
