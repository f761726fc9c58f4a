import os

from shadow_backup import BackupConfig, MemorySink, RunLog, prune

from tests.fixtures import assert_archive_pruned, snapshot, write_tree


def _archive(tmp_path):
    """
    One bucket holding:
      f              linked only from the bucket's own shadow copy -> a real old version
      live.txt       linked from outside the archive -> not a real deletion
      .DS_Store      stray artifact
      empty/         nothing in it
    """
    live = write_tree(tmp_path / "mirror", {"live.txt": "still here"})
    bucket = write_tree(tmp_path / "__ARCHIVE" / "rsync-backup-20260301100000", {
        "f": "old version",
        ".DS_Store": "junk",
    })
    (bucket / ".__SHADOW").mkdir()
    os.link(bucket / "f", bucket / ".__SHADOW" / "f")
    os.link(live / "live.txt", bucket / "live.txt")
    (bucket / "empty" / "deeper").mkdir(parents=True)
    return tmp_path / "__ARCHIVE", bucket


def _config(tmp_path, **kwargs):
    return BackupConfig(source_root=tmp_path / "home", backup_root=tmp_path, **kwargs)


def test_prune_keeps_only_true_orphans(tmp_path):
    archive, bucket = _archive(tmp_path)

    report = prune(archive, _config(tmp_path), RunLog(MemorySink()))

    assert (bucket / "f").read_text(encoding="utf-8") == "old version"
    assert not (bucket / ".__SHADOW").exists()
    assert not (bucket / "live.txt").exists()
    assert not (bucket / ".DS_Store").exists()
    assert not (bucket / "empty").exists()
    assert (tmp_path / "mirror" / "live.txt").exists()
    assert (report.shadow_dirs, report.junk_files, report.linked_files, report.empty_dirs) == (1, 1, 1, 2)
    assert report.failures == []
    assert_archive_pruned(archive)


def test_shadow_removal_comes_before_link_counting(tmp_path):
    archive, bucket = _archive(tmp_path)
    assert os.stat(bucket / "f").st_nlink == 2

    prune(archive, _config(tmp_path), RunLog(MemorySink()))

    # counted before the shadow went away, f would have been dropped
    assert os.stat(bucket / "f").st_nlink == 1


def test_prune_is_idempotent(tmp_path):
    archive, _ = _archive(tmp_path)
    prune(archive, _config(tmp_path), RunLog(MemorySink()))
    before = snapshot(archive)

    report = prune(archive, _config(tmp_path), RunLog(MemorySink()))

    assert snapshot(archive) == before
    assert (report.shadow_dirs, report.junk_files, report.linked_files, report.empty_dirs) == (0, 0, 0, 0)


def test_fully_pruned_bucket_disappears(tmp_path):
    archive = tmp_path / "__ARCHIVE"
    (archive / "rsync-backup-20260301100000" / "b").mkdir(parents=True)

    prune(archive, _config(tmp_path), RunLog(MemorySink()))

    assert archive.is_dir()
    assert list(archive.iterdir()) == []


def test_group_linked_only_inside_the_archive_keeps_one_copy(tmp_path):
    archive = tmp_path / "__ARCHIVE"
    bucket = write_tree(archive / "rsync-backup-20260301100000", {"one.txt": "shared"})
    os.link(bucket / "one.txt", bucket / "two.txt")

    prune(archive, _config(tmp_path), RunLog(MemorySink()))

    survivors = [p for p in bucket.iterdir()]
    assert len(survivors) == 1
    assert survivors[0].read_text(encoding="utf-8") == "shared"


def test_dry_run_reports_the_same_plan_without_removing(tmp_path):
    archive, _ = _archive(tmp_path)
    before = snapshot(tmp_path)
    sink = MemorySink()

    report = prune(archive, _config(tmp_path, dry_run=True), RunLog(sink))

    assert snapshot(tmp_path) == before
    assert (report.shadow_dirs, report.junk_files, report.linked_files, report.empty_dirs) == (1, 1, 1, 2)
    assert any("live.txt" in m for m in sink.messages("prune"))


def test_missing_archive_is_a_no_op(tmp_path):
    report = prune(tmp_path / "nope", _config(tmp_path), RunLog(MemorySink()))

    assert report.failures == []
    assert not (tmp_path / "nope").exists()


def test_failed_removal_does_not_stop_later_steps(tmp_path, monkeypatch):
    archive, bucket = _archive(tmp_path)
    real_unlink = os.unlink

    def unlink(path, *args, **kwargs):
        if os.fspath(path).endswith(".DS_Store"):
            raise PermissionError(13, "Permission denied", path)
        return real_unlink(path, *args, **kwargs)

    monkeypatch.setattr("shadow_backup.os.unlink", unlink)
    report = prune(archive, _config(tmp_path), RunLog(MemorySink()))

    assert [os.path.basename(f.path) for f in report.failures] == [".DS_Store"]
    assert (report.shadow_dirs, report.junk_files, report.linked_files, report.empty_dirs) == (1, 0, 1, 2)
    assert (bucket / ".DS_Store").exists()
    assert not (bucket / "live.txt").exists()
    assert not (bucket / "empty").exists()
    assert (bucket / "f").read_text(encoding="utf-8") == "old version"
