import os

from shadow_backup import BackupConfig, LocalEngine, MemorySink, RunLog, update_shadow

from tests.fixtures import snapshot, write_tree


def _config(root, **kwargs):
    return BackupConfig(source_root=root, backup_root=root.parent / "backup", **kwargs)


def test_shadow_hard_links_every_visible_file(tmp_path):
    root = write_tree(tmp_path / "src", {
        "a.txt": "alpha",
        "b/c.txt": "charlie",
        ".hidden": "nope",
        "b/.secret": "nope",
        "__ARCHIVE/old.txt": "archived",
    })

    result = update_shadow(root, _config(root), LocalEngine(), RunLog(MemorySink()))

    shadow = root / ".__SHADOW"
    for rel in ("a.txt", "b/c.txt"):
        original = os.stat(root / rel)
        linked = os.stat(shadow / rel)
        assert linked.st_ino == original.st_ino
        assert original.st_nlink == 2
    assert not (shadow / ".hidden").exists()
    assert not (shadow / "b" / ".secret").exists()
    assert not (shadow / "__ARCHIVE").exists()
    assert not (shadow / ".__SHADOW").exists()
    assert result.failures == []
    assert result.stats.transferred == 0
    assert result.stats.linked == 2


def test_shadow_drops_removed_paths_and_empty_directories(tmp_path):
    root = write_tree(tmp_path / "src", {"a.txt": "alpha", "b/c.txt": "charlie"})
    config = _config(root)
    update_shadow(root, config, LocalEngine(), RunLog(MemorySink()))

    (root / "b" / "c.txt").unlink()
    update_shadow(root, config, LocalEngine(), RunLog(MemorySink()))

    shadow = root / ".__SHADOW"
    assert (shadow / "a.txt").exists()
    assert not (shadow / "b").exists()
    assert os.stat(root / "a.txt").st_nlink == 2


def test_shadow_follows_a_replaced_file(tmp_path):
    root = write_tree(tmp_path / "src", {"a.txt": "abc"})
    config = _config(root)
    update_shadow(root, config, LocalEngine(), RunLog(MemorySink()))

    (root / "a.txt").unlink()
    (root / "a.txt").write_text("abcdef", encoding="utf-8")
    update_shadow(root, config, LocalEngine(), RunLog(MemorySink()))

    assert os.stat(root / ".__SHADOW" / "a.txt").st_ino == os.stat(root / "a.txt").st_ino
    assert (root / ".__SHADOW" / "a.txt").read_text(encoding="utf-8") == "abcdef"


def test_unchanged_shadow_is_left_alone(tmp_path):
    root = write_tree(tmp_path / "src", {"a.txt": "alpha", "b/c.txt": "charlie"})
    config = _config(root)
    update_shadow(root, config, LocalEngine(), RunLog(MemorySink()))
    before = snapshot(root)

    result = update_shadow(root, config, LocalEngine(), RunLog(MemorySink()))

    assert result.changes == []
    assert snapshot(root) == before


def test_dry_run_shadow_plans_but_writes_nothing(tmp_path):
    root = write_tree(tmp_path / "src", {"a.txt": "alpha"})
    before = snapshot(root)
    sink = MemorySink()

    result = update_shadow(root, _config(root, dry_run=True), LocalEngine(), RunLog(sink))

    assert snapshot(root) == before
    assert not (root / ".__SHADOW").exists()
    assert [c.path for c in result.changes] == ["a.txt"]
    assert any("a.txt" in m for m in sink.messages())
