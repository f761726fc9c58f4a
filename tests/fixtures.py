import datetime as dt
import os
from pathlib import Path

from shadow_backup import BackupConfig, BackupRun, LocalEngine, MemorySink

T1 = dt.datetime(2026, 3, 1, 10, 0, 0)
T2 = dt.datetime(2026, 3, 1, 11, 0, 0)
T3 = dt.datetime(2026, 3, 1, 12, 0, 0)


def write_tree(root: Path, files: dict) -> Path:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


def make_config(tmp_path: Path, files: dict, **kwargs) -> BackupConfig:
    source = write_tree(tmp_path / "home", files)
    return BackupConfig(source_root=source, backup_root=tmp_path / "backup", **kwargs)


def run_backup(config: BackupConfig, when: dt.datetime, sink=None, engine=None):
    return BackupRun(
        config,
        engine=engine or LocalEngine(),
        sink=MemorySink() if sink is None else sink,
        clock=lambda: when,
    ).run()


def snapshot(root: Path, skip=()) -> dict:
    """rel path -> identity of everything under root (atime ignored)."""
    state = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in skip)
        rel_dir = os.path.relpath(dirpath, root)
        state[rel_dir] = ("dir", sorted(dirnames), sorted(filenames))
        for name in filenames:
            st = os.lstat(os.path.join(dirpath, name))
            state[os.path.join(rel_dir, name)] = (st.st_ino, st.st_size, st.st_mtime_ns, st.st_nlink, st.st_mode)
    return state


def assert_archive_pruned(archive: Path, shadow_name: str = ".__SHADOW") -> None:
    for dirpath, dirnames, filenames in os.walk(archive):
        assert shadow_name not in dirnames
        if Path(dirpath) != archive:
            assert dirnames or filenames, f"empty directory left behind: {dirpath}"
        for name in filenames:
            assert os.lstat(os.path.join(dirpath, name)).st_nlink == 1
