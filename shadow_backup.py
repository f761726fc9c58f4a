# /shadow_backup.py
"""
Shadow Backup
- Keeps one current mirror of a source folder inside a backup folder.
- Everything the mirror would lose (overwritten or deleted files) is moved into
  a per-run bucket: BACKUP/__ARCHIVE/rsync-backup-<YYYYmmddHHMMSS>/...
- Renames and moves are detected through a hard-linked "shadow" tree kept in
  each root (<root>/.__SHADOW), so moved files are linked, not re-sent.
- After every run the archive is pruned: shadow subtrees swept into a bucket,
  stray artifacts (.DS_Store), files still hard-linked elsewhere (not real
  deletions) and empty folders are removed.
- Transfers are delegated to rsync when available; a built-in Python engine
  covers hosts without it.
- One text log per run in BACKUP/__LOGS, tagged --dry-run for dry runs.
- Styled console output:
  - TRANSFER green
  - DELETE / PRUNE orange
  - failures / errors red
  - file paths white
  - folder paths light brown
- Log file is always plain (no color codes).
- A lock file in BACKUP/__LOGS stops two runs against the same backup folder.

Usage
  pip install pathspec colorama
  shadow-backup -s "/src" -b "/backups"
  shadow-backup -s "/src" -b "/backups" --dry-run --engine python
"""

from __future__ import annotations

import argparse
import datetime as dt
import fcntl
import json
import logging
import os
import re
import shutil
import stat
import subprocess
import sys
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from colorama import init as colorama_init
from pathspec import PathSpec

__version__ = "2.0.0"

ARCHIVE_NAME = "__ARCHIVE"
LOGS_NAME = "__LOGS"
SHADOW_NAME = ".__SHADOW"
RUN_PREFIX = "rsync-backup-"
LOCK_NAME = ".shadow-backup.lock"
JUNK_PATTERNS = (".DS_Store",)

RSYNC_ENV = "SHADOW_BACKUP_RSYNC"
# rsync: partial transfer due to error / vanished source files
RSYNC_PARTIAL_CODES = {23, 24}

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_PARTIAL = 23
EXIT_ALREADY_RUNNING = 75

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LOGGER = logging.getLogger("shadow_backup")

PHASE_JOB = "job"
PHASE_BOOTSTRAP = "bootstrap"
PHASE_SYNC = "sync"
PHASE_SHADOW_SOURCE = "shadow-source"
PHASE_SHADOW_MIRROR = "shadow-mirror"
PHASE_PRUNE = "prune"


# -------------------------
# Errors
# -------------------------

class ShadowBackupError(RuntimeError):
    """Base exception for backup run failures."""


class InvalidConfiguration(ShadowBackupError):
    """Raised before any filesystem change when the roots are unusable."""


class AlreadyRunning(ShadowBackupError):
    """Raised when another run holds the lock on the backup folder."""


class SyncEngineError(ShadowBackupError):
    """Raised when a sync engine cannot run at all."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"
    CYAN = "\x1b[36m"


ACTION_COLORS = {
    "TRANSFER": Ansi.GREEN,
    "LINK": Ansi.LIGHT_BROWN,
    "CREATE": Ansi.LIGHT_BROWN,
    "ATTRS": Ansi.LIGHT_BROWN,
    "DELETE": Ansi.ORANGE,
    "PRUNE": Ansi.ORANGE,
    "STEP": Ansi.CYAN,
    "FAIL": Ansi.RED,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except (AttributeError, ValueError):
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def setup_logger(use_color: Optional[bool] = None) -> logging.Logger:
    """Attach the console handler. Run log files are attached per run."""
    logger = LOGGER
    logger.setLevel(logging.INFO)
    logger.propagate = False

    for handler in list(logger.handlers):
        if not isinstance(handler, logging.FileHandler):
            logger.removeHandler(handler)

    colorama_init()
    if use_color is None:
        use_color = _supports_color(sys.stdout)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=use_color, fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(ch)
    return logger


@contextmanager
def attach_log_file(log_path: Path) -> Iterator[Path]:
    log_path.parent.mkdir(parents=True, exist_ok=True)

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    fh.setLevel(logging.INFO)

    if LOGGER.level == logging.NOTSET:
        LOGGER.setLevel(logging.INFO)
    LOGGER.addHandler(fh)
    try:
        LOGGER.info("Logging to: %s", log_path)
        yield log_path
    finally:
        LOGGER.removeHandler(fh)
        fh.close()


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[str] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = path
        extra["is_dir"] = bool(is_dir)
    logger.log(level, "%s | %s", action, message, extra=extra)


# -------------------------
# Run log
# -------------------------

@dataclass(frozen=True)
class LogEvent:
    phase: str
    timestamp: dt.datetime
    message: str
    level: int = logging.INFO
    action: Optional[str] = None
    path: Optional[str] = None
    is_dir: bool = False


class LoggingSink:
    """Renders run log events through the shadow_backup logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or LOGGER

    def emit(self, event: LogEvent) -> None:
        if event.action:
            log_action(self.logger, event.action, event.message, path=event.path, is_dir=event.is_dir, level=event.level)
        else:
            self.logger.log(event.level, "%s", event.message)


class MemorySink:
    def __init__(self) -> None:
        self.events: list[LogEvent] = []

    def emit(self, event: LogEvent) -> None:
        self.events.append(event)

    def messages(self, phase: Optional[str] = None) -> list[str]:
        return [e.message for e in self.events if phase is None or e.phase == phase]


class RunLog:
    """Ordered record of one run: phase banners, timestamps, engine output."""

    def __init__(self, sink=None, clock: Callable[[], dt.datetime] = dt.datetime.now):
        self.sink = sink if sink is not None else LoggingSink()
        self.clock = clock
        self.events: list[LogEvent] = []

    def record(
        self,
        phase: str,
        message: str,
        *,
        level: int = logging.INFO,
        action: Optional[str] = None,
        path: Optional[str] = None,
        is_dir: bool = False,
    ) -> LogEvent:
        event = LogEvent(
            phase=phase,
            timestamp=self.clock(),
            message=message,
            level=level,
            action=action,
            path=path,
            is_dir=is_dir,
        )
        self.events.append(event)
        self.sink.emit(event)
        return event

    def banner(self, phase: str, title: str, major: bool = True) -> None:
        rule = "################" if major else "================"
        self.record(phase, f"{rule} {title} {rule}", action="STEP")
        self.record(phase, f"{rule} {_stamp(self.clock())} {rule}", action="STEP")


def _stamp(when: dt.datetime) -> str:
    return when.astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")


# -------------------------
# Config / layout
# -------------------------

@dataclass(frozen=True)
class BackupConfig:
    source_root: Optional[Path]
    backup_root: Optional[Path]
    dry_run: bool = False
    engine: str = "auto"
    rsync: Optional[str] = None
    archive_name: str = ARCHIVE_NAME
    logs_name: str = LOGS_NAME
    shadow_name: str = SHADOW_NAME
    run_prefix: str = RUN_PREFIX
    junk_patterns: tuple[str, ...] = JUNK_PATTERNS


def normalize_root(raw) -> Optional[Path]:
    """Blank means unspecified; trailing separators are dropped."""
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    stripped = text.rstrip("/" + os.sep)
    return Path(stripped or os.sep).expanduser()


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


@dataclass(frozen=True)
class Layout:
    source: Path
    backup: Path
    mirror: Path
    archive: Path
    logs: Path
    shadow_name: str = SHADOW_NAME
    run_prefix: str = RUN_PREFIX

    @classmethod
    def from_config(cls, config: BackupConfig) -> "Layout":
        if config.source_root is None or not str(config.source_root).strip():
            raise InvalidConfiguration("Source directory not specified.")
        if config.backup_root is None or not str(config.backup_root).strip():
            raise InvalidConfiguration("Target directory not specified.")

        source = config.source_root.expanduser().resolve()
        backup = config.backup_root.expanduser().resolve()

        if not source.is_dir():
            raise InvalidConfiguration(f"Source folder does not exist or is not a folder: {source}")
        if not source.name:
            raise InvalidConfiguration(f"Source folder has no name to mirror under: {source}")
        if source == backup:
            raise InvalidConfiguration("Source and backup folders must be different.")
        if _is_subpath(backup, source):
            raise InvalidConfiguration("Backup folder must NOT be inside the source folder (would cause loops).")
        if _is_subpath(source, backup):
            raise InvalidConfiguration("Source folder must NOT be inside the backup folder.")
        if source.name in (config.archive_name, config.logs_name):
            raise InvalidConfiguration(f"Source folder name collides with the backup layout: {source.name}")

        return cls(
            source=source,
            backup=backup,
            mirror=backup / source.name,
            archive=backup / config.archive_name,
            logs=backup / config.logs_name,
            shadow_name=config.shadow_name,
            run_prefix=config.run_prefix,
        )

    def materialize(self, dry_run: bool = False) -> None:
        # a dry run writes nothing but its own log
        targets = [self.logs] if dry_run else [self.mirror, self.archive, self.logs]
        for target in targets:
            target.mkdir(parents=True, exist_ok=True)

    def shadow_of(self, root: Path) -> Path:
        return root / self.shadow_name

    @property
    def lock_path(self) -> Path:
        return self.logs / LOCK_NAME

    def run_bucket(self, when: dt.datetime) -> Path:
        return self.archive / f"{self.run_prefix}{when.strftime('%Y%m%d%H%M%S')}"

    def new_run_bucket(self, when: dt.datetime) -> Path:
        """run_bucket(), with a -N suffix when a same-second bucket exists."""
        base = self.run_bucket(when)
        candidate = base
        n = 1
        while candidate.exists():
            candidate = base.with_name(f"{base.name}-{n}")
            n += 1
        return candidate

    def log_path(self, when: dt.datetime, dry_run: bool = False) -> Path:
        suffix = "--dry-run" if dry_run else ""
        return self.logs / f"log-rtm-{when.strftime('%Y-%m-%d-%H%M%S')}{suffix}.log"


# -------------------------
# Sync requests / results
# -------------------------

@lru_cache(maxsize=None)
def _pattern_spec(pattern: str) -> PathSpec:
    return PathSpec.from_lines("gitwildmatch", [pattern])


@dataclass(frozen=True)
class FilterRule:
    """One rsync-style filter rule; the first matching rule decides."""

    action: str
    pattern: str

    @classmethod
    def include(cls, pattern: str) -> "FilterRule":
        return cls("+", pattern)

    @classmethod
    def exclude(cls, pattern: str) -> "FilterRule":
        return cls("-", pattern)

    def as_rsync_arg(self) -> str:
        flag = "--include" if self.action == "+" else "--exclude"
        return f"{flag}={self.pattern}"

    def matches(self, rel: str, is_dir: bool) -> bool:
        pattern = self.pattern
        if pattern.endswith("/"):
            if not is_dir:
                return False
            pattern = pattern.rstrip("/")

        parts = rel.split("/")
        if "/" in pattern:
            # anchored or multi-component: compare against exactly as many trailing parts
            depth = len(pattern.strip("/").split("/"))
            if pattern.startswith("/"):
                if len(parts) != depth:
                    return False
                candidate = rel
            else:
                if len(parts) < depth:
                    return False
                candidate = "/".join(parts[-depth:])
        else:
            candidate = parts[-1]
        return _pattern_spec(pattern).match_file(candidate)


def is_excluded(rules: Sequence[FilterRule], rel: str, is_dir: bool) -> bool:
    for rule in rules:
        if rule.matches(rel, is_dir):
            return rule.action == "-"
    return False


@dataclass(frozen=True)
class SyncRequest:
    source: Path
    destination: Path
    filters: tuple[FilterRule, ...] = ()
    link_dest: Optional[Path] = None
    backup_dir: Optional[Path] = None
    delete: bool = False
    prune_empty_dirs: bool = False
    one_file_system: bool = False
    hard_links: bool = False
    numeric_ids: bool = False
    xattrs: bool = False


@dataclass(frozen=True)
class ItemizedChange:
    code: str
    path: str
    link_target: Optional[str] = None

    @property
    def action(self) -> str:
        if self.code.startswith("*"):
            return "DELETE"
        return {">": "TRANSFER", "<": "TRANSFER", "h": "LINK", "c": "CREATE"}.get(self.code[0], "ATTRS")

    @property
    def is_dir(self) -> bool:
        if self.code.startswith("*"):
            return self.path.endswith("/")
        return self.code[1:2] == "d" or self.path.endswith("/")

    def render(self) -> str:
        text = f"{self.code} {self.path}"
        if self.link_target:
            text += f" => {self.link_target}"
        return text


@dataclass(frozen=True)
class TransferFailure:
    path: str
    error: str


@dataclass
class SyncStats:
    files_seen: int = 0
    transferred: int = 0
    linked: int = 0
    deleted: int = 0
    backed_up: int = 0
    bytes_transferred: int = 0

    def summary(self) -> str:
        return (
            f"files={self.files_seen} transferred={self.transferred} linked={self.linked} "
            f"deleted={self.deleted} backed_up={self.backed_up} bytes={self.bytes_transferred}"
        )


@dataclass
class SyncResult:
    changes: list[ItemizedChange] = field(default_factory=list)
    stats: SyncStats = field(default_factory=SyncStats)
    failures: list[TransferFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def record_sync_result(run_log: RunLog, phase: str, result: SyncResult) -> None:
    for change in result.changes:
        run_log.record(phase, change.render(), action=change.action, path=change.path, is_dir=change.is_dir)
    for warning in result.warnings:
        run_log.record(phase, warning, level=logging.WARNING)
    for failure in result.failures:
        run_log.record(
            phase,
            f"ERROR {failure.path} | {failure.error}",
            level=logging.ERROR,
            action="FAIL",
            path=failure.path,
        )
    run_log.record(phase, f"stats: {result.stats.summary()} failures={len(result.failures)}")


# -------------------------
# Sync engines
# -------------------------

class SyncEngine:
    """Copy + filter + reference-tree + displace-on-overwrite, in one call."""

    name = "abstract"

    def run(self, request: SyncRequest, *, dry_run: bool = False) -> SyncResult:
        raise NotImplementedError


class RsyncEngine(SyncEngine):
    name = "rsync"

    ITEM_RE = re.compile(r"^(?P<code>[<>ch.][fdLDS][.+?cstpoguaxn ]{9}) (?P<path>.+)$")
    DELETE_RE = re.compile(r"^\*deleting\s+(?P<path>.+)$")
    QUOTED_RE = re.compile(r'"([^"]+)"')
    STATS_RE = {
        "files_seen": re.compile(r"^Number of files: ([\d,]+)"),
        "transferred": re.compile(r"^Number of regular files transferred: ([\d,]+)"),
        "deleted": re.compile(r"^Number of deleted files: ([\d,]+)"),
        "bytes_transferred": re.compile(r"^Total transferred file size: ([\d,]+) bytes"),
    }

    def __init__(self, binary: str = "rsync", runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.binary = binary
        self.runner = runner

    def build_command(self, request: SyncRequest, *, dry_run: bool = False) -> list[str]:
        cmd = [self.binary]
        if dry_run:
            cmd.append("--dry-run")
        cmd += ["--itemize-changes", "--stats"]
        cmd += [rule.as_rsync_arg() for rule in request.filters]
        cmd.append("--archive")
        if request.one_file_system:
            cmd.append("--one-file-system")
        if request.xattrs:
            cmd.append("--xattrs")
        if request.hard_links:
            cmd += ["--hard-links", "--no-inc-recursive"]
        if request.numeric_ids:
            cmd.append("--numeric-ids")
        if request.link_dest is not None:
            cmd.append(f"--link-dest={request.link_dest}")
        if request.backup_dir is not None:
            cmd += ["--backup", f"--backup-dir={request.backup_dir}"]
        if request.delete:
            cmd += ["--delete", "--delete-during"]
        if request.prune_empty_dirs:
            cmd.append("--prune-empty-dirs")
        cmd += [f"{request.source}/", f"{request.destination}/"]
        return cmd

    def run(self, request: SyncRequest, *, dry_run: bool = False) -> SyncResult:
        cmd = self.build_command(request, dry_run=dry_run)
        try:
            proc = self.runner(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            raise SyncEngineError(f"could not start {self.binary}: {e}") from e

        result = self.parse_output(proc.stdout or "", proc.stderr or "", backup=request.backup_dir is not None)
        if proc.returncode in RSYNC_PARTIAL_CODES:
            if not result.failures:
                result.failures.append(TransferFailure("", f"rsync partial transfer (code {proc.returncode})"))
        elif proc.returncode != 0:
            detail = (proc.stderr or "").strip().splitlines()
            tail = detail[-1] if detail else "no output"
            raise SyncEngineError(f"rsync exited with code {proc.returncode}: {tail}", returncode=proc.returncode)
        return result

    @classmethod
    def parse_output(cls, stdout: str, stderr: str, backup: bool = False) -> SyncResult:
        result = SyncResult()
        replaced = 0
        for line in stdout.splitlines():
            line = line.rstrip()
            if not line:
                continue
            m = cls.DELETE_RE.match(line)
            if m:
                result.changes.append(ItemizedChange("*deleting", m.group("path")))
                continue
            m = cls.ITEM_RE.match(line)
            if m:
                path, _, target = m.group("path").partition(" => ")
                code = m.group("code")
                result.changes.append(ItemizedChange(code, path, target or None))
                if code.startswith("h"):
                    result.stats.linked += 1
                elif code.startswith(">f") and "+" not in code:
                    replaced += 1
                continue
            for key, pattern in cls.STATS_RE.items():
                sm = pattern.match(line)
                if sm:
                    setattr(result.stats, key, int(sm.group(1).replace(",", "")))
                    break

        for line in stderr.splitlines():
            line = line.strip()
            if line.startswith("rsync warning:"):
                result.warnings.append(line)
            elif line.startswith("rsync:"):
                quoted = cls.QUOTED_RE.search(line)
                result.failures.append(TransferFailure(quoted.group(1) if quoted else "", line))

        if backup:
            result.stats.backed_up = result.stats.deleted + replaced
        return result


@dataclass(frozen=True)
class _Entry:
    rel: str
    path: Path
    st: os.stat_result

    @property
    def is_dir(self) -> bool:
        return stat.S_ISDIR(self.st.st_mode)

    @property
    def is_file(self) -> bool:
        return stat.S_ISREG(self.st.st_mode)

    @property
    def is_link(self) -> bool:
        return stat.S_ISLNK(self.st.st_mode)

    @property
    def key(self) -> tuple[int, int]:
        return (self.st.st_dev, self.st.st_ino)


def scan_tree(
    root: Path,
    rules: Sequence[FilterRule],
    one_file_system: bool = False,
    on_error: Optional[Callable[[str, OSError], None]] = None,
) -> dict[str, _Entry]:
    """Filtered walk of root; parents come before their children."""
    entries: dict[str, _Entry] = {}
    try:
        root_dev = os.lstat(root).st_dev
    except FileNotFoundError:
        return entries

    def walk(dirpath: str, prefix: str) -> None:
        try:
            with os.scandir(dirpath) as it:
                items = sorted(it, key=lambda e: e.name)
        except OSError as e:
            if on_error is None:
                raise
            on_error(prefix.rstrip("/") or ".", e)
            return

        for item in items:
            rel = prefix + item.name
            try:
                st = item.stat(follow_symlinks=False)
            except OSError as e:
                if on_error is None:
                    raise
                on_error(rel, e)
                continue
            is_dir = stat.S_ISDIR(st.st_mode)
            if is_excluded(rules, rel, is_dir):
                continue
            entries[rel] = _Entry(rel, Path(item.path), st)
            if is_dir and not (one_file_system and st.st_dev != root_dev):
                walk(item.path, rel + "/")

    walk(str(root), "")
    return entries


def _without_empty_dirs(entries: dict[str, _Entry]) -> dict[str, _Entry]:
    keep: set[str] = set()
    for rel, entry in entries.items():
        if entry.is_dir:
            continue
        parts = rel.split("/")
        for i in range(1, len(parts)):
            keep.add("/".join(parts[:i]))
    return {rel: e for rel, e in entries.items() if not e.is_dir or rel in keep}


def _is_up_to_date(src_st: os.stat_result, dst_st: os.stat_result) -> bool:
    return (
        stat.S_ISREG(dst_st.st_mode)
        and src_st.st_size == dst_st.st_size
        and int(src_st.st_mtime) == int(dst_st.st_mtime)
    )


def _itemize(update: str, kind: str, flags: str = "") -> str:
    if flags == "+":
        return update + kind + "+" * 9
    return update + kind + "".join(c if c in flags else "." for c in "cstpoguax")


def _can_chown() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def _discard(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class LocalEngine(SyncEngine):
    """Pure-Python engine: whole-file transfers, same contract as rsync."""

    name = "python"

    def run(self, request: SyncRequest, *, dry_run: bool = False) -> SyncResult:
        return _LocalTransfer(request, dry_run).execute()


class _LocalTransfer:
    def __init__(self, request: SyncRequest, dry_run: bool):
        self.request = request
        self.dry_run = dry_run
        self.source = Path(request.source)
        self.dest = Path(request.destination)
        self.chown = request.numeric_ids and _can_chown()
        self.result = SyncResult()

    def execute(self) -> SyncResult:
        if not self.source.is_dir():
            raise SyncEngineError(f"source is not a directory: {self.source}")

        rules = self.request.filters
        src = scan_tree(self.source, rules, self.request.one_file_system, on_error=self._fail)
        if self.request.prune_empty_dirs:
            src = _without_empty_dirs(src)
        # an unreadable source folder would look like a mass deletion
        source_incomplete = bool(self.result.failures)
        dst = scan_tree(self.dest, rules, on_error=self._fail) if self.dest.is_dir() else {}
        self.result.stats.files_seen = len(src)

        if not self.dry_run:
            self.dest.mkdir(parents=True, exist_ok=True)
        if self.request.delete:
            if source_incomplete:
                self.result.warnings.append("IO error encountered -- skipping file deletion")
            else:
                self._delete_extraneous(src, dst)
        self._transfer_all(src, dst)
        if not self.dry_run:
            self._finish_dirs(src)
        return self.result

    # ---- bookkeeping
    def _fail(self, rel: str, error: OSError) -> None:
        self.result.failures.append(TransferFailure(rel, str(error)))

    def _record(self, code: str, rel: str, link_target: Optional[str] = None) -> None:
        self.result.changes.append(ItemizedChange(code, rel, link_target))

    # ---- displacement
    def _displace_file(self, rel: str, path: Path) -> None:
        backup_dir = self.request.backup_dir
        if backup_dir is None:
            os.unlink(path)
            return
        target = Path(backup_dir) / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        shutil.move(str(path), str(target))
        self.result.stats.backed_up += 1

    def _displace(self, entry: _Entry) -> None:
        if not entry.is_dir:
            self._displace_file(entry.rel, entry.path)
            return
        for dirpath, dirnames, filenames in os.walk(entry.path, topdown=False):
            rel_dir = Path(dirpath).relative_to(self.dest).as_posix()
            linked_dirs = [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]
            for name in filenames + linked_dirs:
                self._displace_file(f"{rel_dir}/{name}", Path(dirpath) / name)
            os.rmdir(dirpath)

    def _delete_extraneous(self, src: dict[str, _Entry], dst: dict[str, _Entry]) -> None:
        extraneous = [rel for rel in dst if rel not in src]
        for rel in sorted(extraneous, reverse=True):
            entry = dst[rel]
            if entry.is_dir:
                self._record("*deleting", rel + "/")
                if self.dry_run:
                    self.result.stats.deleted += 1
                    continue
                try:
                    if os.listdir(entry.path):
                        self.result.warnings.append(f"cannot delete non-empty directory: {rel}")
                        continue
                    os.rmdir(entry.path)
                except OSError as e:
                    self._fail(rel, e)
                    continue
            else:
                self._record("*deleting", rel)
                if not self.dry_run:
                    try:
                        self._displace_file(rel, entry.path)
                    except OSError as e:
                        self._fail(rel, e)
                        continue
            self.result.stats.deleted += 1

    # ---- transfer
    def _transfer_all(self, src: dict[str, _Entry], dst: dict[str, _Entry]) -> None:
        groups: dict[tuple[int, int], list[str]] = {}
        if self.request.hard_links:
            for rel, entry in src.items():
                if entry.is_file and entry.st.st_nlink > 1:
                    groups.setdefault(entry.key, []).append(rel)
            groups = {k: v for k, v in groups.items() if len(v) > 1}

        # a member already current at the destination anchors its link group
        preset: dict[tuple[int, int], str] = {}
        for key, members in groups.items():
            for rel in members:
                existing = dst.get(rel)
                if existing is not None and _is_up_to_date(src[rel].st, existing.st):
                    preset[key] = rel
                    break
        anchors = dict(preset)

        for rel, entry in src.items():
            existing = dst.get(rel)
            try:
                if entry.is_dir:
                    self._sync_dir(entry, existing)
                elif entry.is_link:
                    self._sync_symlink(entry, existing)
                elif entry.is_file:
                    key = entry.key
                    anchor = anchors.get(key)
                    if key not in groups or anchor is None or anchor == rel:
                        self._sync_file(entry, existing)
                        if key in groups:
                            anchors[key] = rel
                    else:
                        anchor_dst = dst.get(anchor) if preset.get(key) == anchor else None
                        self._link_member(entry, existing, anchor, anchor_dst)
                else:
                    self.result.warnings.append(f"skipping non-regular file {rel}")
            except OSError as e:
                self._fail(rel, e)

    def _sync_dir(self, entry: _Entry, existing: Optional[_Entry]) -> None:
        if existing is not None and existing.is_dir:
            return
        if not self.dry_run:
            if existing is not None:
                self._displace(existing)
            (self.dest / entry.rel).mkdir(parents=True, exist_ok=True)
        self._record(_itemize("c", "d", "+"), entry.rel + "/")

    def _sync_symlink(self, entry: _Entry, existing: Optional[_Entry]) -> None:
        link_target = os.readlink(entry.path)
        if existing is not None and existing.is_link and os.readlink(existing.path) == link_target:
            return
        if not self.dry_run:
            staged = self._staging_path(entry.rel)
            os.symlink(link_target, staged)
            self._chown_path(entry, staged)
            self._install(entry, existing, staged)
        self._record(_itemize("c", "L", "+"), entry.rel, None)

    def _sync_file(self, entry: _Entry, existing: Optional[_Entry]) -> None:
        if existing is not None and existing.is_file and _is_up_to_date(entry.st, existing.st):
            self._update_attrs(entry, existing)
            return
        if self._link_from_reference(entry, existing):
            return

        flags = "+"
        if existing is not None and existing.is_file:
            flags = ("s" if entry.st.st_size != existing.st.st_size else "") + (
                "t" if int(entry.st.st_mtime) != int(existing.st.st_mtime) else ""
            )
        if not self.dry_run:
            # never write into an existing inode: it may be linked from a shadow tree
            self._install(entry, existing, self._stage_copy(entry))
        self._record(_itemize(">", "f", flags), entry.rel)
        self.result.stats.transferred += 1
        self.result.stats.bytes_transferred += entry.st.st_size

    # ---- staging: new content lands beside the target, then replaces it
    def _staging_path(self, rel: str) -> Path:
        target = self.dest / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        staged = target.with_name(f".{target.name}.{os.getpid()}.tmp")
        if os.path.lexists(staged):
            os.unlink(staged)
        return staged

    def _stage_copy(self, entry: _Entry) -> Path:
        staged = self._staging_path(entry.rel)
        try:
            shutil.copy2(entry.path, staged, follow_symlinks=False)
            self._chown_path(entry, staged)
        except OSError:
            _discard(staged)
            raise
        return staged

    def _install(self, entry: _Entry, existing: Optional[_Entry], staged: Path, displace: bool = True) -> None:
        """Move the old entry out of the way and rename the staged one into place."""
        target = self.dest / entry.rel
        try:
            if existing is not None:
                if displace:
                    self._displace(existing)
                else:
                    os.unlink(existing.path)
            os.replace(staged, target)
        except OSError:
            _discard(staged)
            raise

    def _link_from_reference(self, entry: _Entry, existing: Optional[_Entry]) -> bool:
        if self.request.link_dest is None:
            return False
        ref = Path(self.request.link_dest) / entry.rel
        try:
            ref_st = os.lstat(ref)
        except OSError:
            return False
        if not _is_up_to_date(entry.st, ref_st):
            return False
        if stat.S_IMODE(ref_st.st_mode) != stat.S_IMODE(entry.st.st_mode):
            return False
        if (ref_st.st_uid, ref_st.st_gid) != (entry.st.st_uid, entry.st.st_gid):
            return False

        if not self.dry_run:
            staged = self._staging_path(entry.rel)
            try:
                os.link(ref, staged)
            except OSError:
                self._install(entry, existing, self._stage_copy(entry))
                self._record(_itemize(">", "f", "+"), entry.rel)
                self.result.stats.transferred += 1
                self.result.stats.bytes_transferred += entry.st.st_size
                return True
            self._install(entry, existing, staged)
        self._record(_itemize("h", "f", "+"), entry.rel, str(ref))
        self.result.stats.linked += 1
        return True

    def _link_member(
        self,
        entry: _Entry,
        existing: Optional[_Entry],
        anchor: str,
        anchor_dst: Optional[_Entry],
    ) -> None:
        if existing is not None and anchor_dst is not None and existing.key == anchor_dst.key:
            return
        if not self.dry_run:
            staged = self._staging_path(entry.rel)
            os.link(self.dest / anchor, staged)
            # an up-to-date copy is only relinked, not archived
            relink_only = existing is not None and existing.is_file and _is_up_to_date(entry.st, existing.st)
            self._install(entry, existing, staged, displace=not relink_only)
        self._record(_itemize("h", "f", "+"), entry.rel, anchor)
        self.result.stats.linked += 1

    def _update_attrs(self, entry: _Entry, existing: _Entry) -> None:
        flags = ""
        if stat.S_IMODE(entry.st.st_mode) != stat.S_IMODE(existing.st.st_mode):
            flags += "p"
        if self.chown and entry.st.st_uid != existing.st.st_uid:
            flags += "o"
        if self.chown and entry.st.st_gid != existing.st.st_gid:
            flags += "g"
        if entry.st.st_mtime_ns != existing.st.st_mtime_ns:
            flags += "t"
        if not flags:
            return
        if not self.dry_run:
            target = self.dest / entry.rel
            if "p" in flags:
                os.chmod(target, stat.S_IMODE(entry.st.st_mode))
            if "o" in flags or "g" in flags:
                self._chown_path(entry, target)
            if "t" in flags:
                os.utime(target, ns=(entry.st.st_atime_ns, entry.st.st_mtime_ns))
        self._record(_itemize(".", "f", flags), entry.rel)

    def _chown_path(self, entry: _Entry, target: Path) -> None:
        if self.chown:
            os.chown(target, entry.st.st_uid, entry.st.st_gid, follow_symlinks=False)

    def _finish_dirs(self, src: dict[str, _Entry]) -> None:
        # directory times last, after their contents stopped changing
        for rel, entry in reversed(list(src.items())):
            if not entry.is_dir:
                continue
            target = self.dest / rel
            try:
                if target.is_dir() and not target.is_symlink():
                    shutil.copystat(entry.path, target)
                    self._chown_path(entry, target)
            except OSError as e:
                self._fail(rel, e)


def select_engine(name: str = "auto", rsync: Optional[str] = None) -> SyncEngine:
    binary = rsync or os.environ.get(RSYNC_ENV) or shutil.which("rsync")
    if name == "python":
        return LocalEngine()
    if name == "rsync":
        if not binary:
            raise SyncEngineError("rsync not found; pass --rsync or use --engine python")
        return RsyncEngine(binary)
    if name == "auto":
        return RsyncEngine(binary) if binary else LocalEngine()
    raise InvalidConfiguration(f"Unknown engine: {name}")


# -------------------------
# Shadow links
# -------------------------

def update_shadow(
    root: Path,
    config: BackupConfig,
    engine: SyncEngine,
    run_log: Optional[RunLog] = None,
    phase: str = PHASE_SHADOW_SOURCE,
) -> SyncResult:
    """Rebuild root/<shadow> as a hard-linked image of root's non-hidden content."""
    run_log = run_log or RunLog()
    root = Path(root)
    if not root.is_dir():
        if config.dry_run:
            run_log.record(phase, f"{root} does not exist yet; nothing to shadow", level=logging.WARNING)
            return SyncResult()
        raise InvalidConfiguration(f"Cannot shadow a missing folder: {root}")

    request = SyncRequest(
        source=root,
        destination=root / config.shadow_name,
        filters=(
            FilterRule.exclude(f"/{config.shadow_name}"),
            FilterRule.exclude(f"/{config.archive_name}"),
            FilterRule.exclude(".*"),
        ),
        link_dest=root,
        delete=True,
        prune_empty_dirs=True,
    )
    run_log.record(phase, f"{root}/ -> {request.destination}/")
    result = engine.run(request, dry_run=config.dry_run)
    record_sync_result(run_log, phase, result)
    return result


# -------------------------
# Main sync
# -------------------------

def sync(
    config: BackupConfig,
    layout: Layout,
    engine: SyncEngine,
    bucket: Path,
    run_log: Optional[RunLog] = None,
) -> SyncResult:
    """Bring the mirror up to date; displaced mirror content lands in bucket."""
    run_log = run_log or RunLog()
    if not config.dry_run:
        bucket.mkdir(parents=True, exist_ok=True)
    run_log.record(PHASE_SYNC, f"{layout.source}/ -> {layout.mirror}/ (archive: {bucket})")

    request = SyncRequest(
        source=layout.source,
        destination=layout.mirror,
        filters=(
            FilterRule.include(f"/{config.shadow_name}"),
            FilterRule.exclude(".*"),
        ),
        backup_dir=bucket,
        delete=True,
        one_file_system=True,
        hard_links=True,
        numeric_ids=True,
        xattrs=True,
    )
    result = engine.run(request, dry_run=config.dry_run)
    record_sync_result(run_log, PHASE_SYNC, result)
    return result


# -------------------------
# Archive pruning
# -------------------------

@dataclass
class PruneReport:
    shadow_dirs: int = 0
    junk_files: int = 0
    linked_files: int = 0
    empty_dirs: int = 0
    failures: list[TransferFailure] = field(default_factory=list)


def _iter_files(root: str, skip: set[str]) -> Iterator[tuple[str, os.stat_result]]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if os.path.join(dirpath, d) not in skip]
        for name in filenames:
            path = os.path.join(dirpath, name)
            if path in skip:
                continue
            try:
                st = os.lstat(path)
            except FileNotFoundError:
                continue
            if stat.S_ISREG(st.st_mode):
                yield path, st


def prune(archive_root: Path, config: BackupConfig, run_log: Optional[RunLog] = None) -> PruneReport:
    """
    Clean the archive, in this order:
      1. shadow-named subtrees
      2. stray artifacts (junk patterns)
      3. files whose link count is still > 1 (not real deletions)
      4. empty directories, bottom-up
    Link counts are only meaningful once the shadow subtrees are gone.
    """
    run_log = run_log or RunLog()
    report = PruneReport()
    root = str(archive_root)
    if not os.path.isdir(root):
        run_log.record(PHASE_PRUNE, f"no archive at {root}; nothing to prune")
        return report

    dry_run = config.dry_run
    # dry run bookkeeping: what a real run would already have removed
    gone: set[str] = set()
    gone_links: Counter = Counter()

    def remove(path: str, reason: str, remover: Callable[[str], None], is_dir: bool = False) -> bool:
        run_log.record(PHASE_PRUNE, f"{reason} {path}", action="PRUNE", path=path, is_dir=is_dir)
        if dry_run:
            gone.add(path)
            return True
        try:
            remover(path)
            return True
        except OSError as e:
            report.failures.append(TransferFailure(path, str(e)))
            run_log.record(PHASE_PRUNE, f"ERROR removing {path} | {e}", level=logging.ERROR, action="FAIL", path=path)
            return False

    shadows = []
    for dirpath, dirnames, _ in os.walk(root):
        for d in list(dirnames):
            if d == config.shadow_name:
                shadows.append(os.path.join(dirpath, d))
                dirnames.remove(d)
    for shadow in shadows:
        if dry_run:
            for path, st in _iter_files(shadow, set()):
                gone.add(path)
                gone_links[(st.st_dev, st.st_ino)] += 1
            for dirpath, _, _ in os.walk(shadow):
                gone.add(dirpath)
        if remove(shadow, "removing shadow tree", shutil.rmtree, is_dir=True):
            report.shadow_dirs += 1

    junk = PathSpec.from_lines("gitwildmatch", config.junk_patterns)
    for path, st in _iter_files(root, gone):
        if junk.match_file(os.path.relpath(path, root)):
            if remove(path, "removing stray artifact", os.unlink):
                report.junk_files += 1
                if dry_run:
                    gone_links[(st.st_dev, st.st_ino)] += 1

    # link counts are read as each file is reached, so the last survivor of a
    # group linked only inside the archive is kept
    for path, st in _iter_files(root, gone):
        links = st.st_nlink - gone_links[(st.st_dev, st.st_ino)]
        if links > 1:
            if remove(path, f"removing still-linked file (links={links})", os.unlink):
                report.linked_files += 1
                if dry_run:
                    gone_links[(st.st_dev, st.st_ino)] += 1

    for dirpath, _, _ in os.walk(root, topdown=False):
        if dirpath == root or dirpath in gone:
            continue
        try:
            remaining = [n for n in os.listdir(dirpath) if os.path.join(dirpath, n) not in gone]
        except OSError as e:
            report.failures.append(TransferFailure(dirpath, str(e)))
            continue
        if not remaining and remove(dirpath, "removing empty directory", os.rmdir, is_dir=True):
            report.empty_dirs += 1

    run_log.record(
        PHASE_PRUNE,
        f"pruned: shadow_dirs={report.shadow_dirs} junk={report.junk_files} "
        f"linked={report.linked_files} empty_dirs={report.empty_dirs} failures={len(report.failures)}",
    )
    return report


# -------------------------
# Run lock
# -------------------------

class RunLock:
    """Advisory flock on a file inside the backup folder."""

    def __init__(self, path: Path):
        self.path = path
        self._handle = None

    def __enter__(self) -> "RunLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            handle.close()
            raise AlreadyRunning(f"Another run holds {self.path}") from e
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return self

    def __exit__(self, *exc) -> None:
        if self._handle is not None:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            self._handle.close()
            self._handle = None


# -------------------------
# Orchestration
# -------------------------

class RunStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class StepOutcome:
    name: str
    ok: bool
    started: dt.datetime
    finished: dt.datetime
    failures: int = 0
    error: Optional[str] = None


@dataclass
class RunResult:
    status: RunStatus
    steps: list[StepOutcome]
    bucket: Path
    log_path: Path
    failures: int
    events: list[LogEvent] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return {RunStatus.OK: EXIT_OK, RunStatus.PARTIAL: EXIT_PARTIAL}.get(self.status, EXIT_FAILED)

    def step(self, name: str) -> Optional[StepOutcome]:
        for outcome in self.steps:
            if outcome.name == name:
                return outcome
        return None


class BackupRun:
    def __init__(
        self,
        config: BackupConfig,
        engine: Optional[SyncEngine] = None,
        sink=None,
        clock: Callable[[], dt.datetime] = dt.datetime.now,
    ):
        self.config = config
        self.engine = engine
        self.sink = sink
        self.clock = clock

    def run(self) -> RunResult:
        layout = Layout.from_config(self.config)
        engine = self.engine or select_engine(self.config.engine, self.config.rsync)
        started = self.clock()

        layout.materialize(dry_run=self.config.dry_run)
        with RunLock(layout.lock_path):
            log_path = layout.log_path(started, self.config.dry_run)
            with attach_log_file(log_path):
                return self._run_steps(layout, engine, started, log_path)

    def _run_steps(self, layout: Layout, engine: SyncEngine, started: dt.datetime, log_path: Path) -> RunResult:
        config = self.config
        run_log = RunLog(self.sink, clock=self.clock)
        run_log.banner(PHASE_JOB, "JOB START" + (" (dry run)" if config.dry_run else ""))
        run_log.record(PHASE_JOB, f"Source : {layout.source}")
        run_log.record(PHASE_JOB, f"Mirror : {layout.mirror}")
        run_log.record(PHASE_JOB, f"Engine : {engine.name}")

        steps: list[StepOutcome] = []

        def shadow_step(root: Path, phase: str) -> int:
            return len(update_shadow(root, config, engine, run_log, phase=phase).failures)

        if not layout.shadow_of(layout.source).is_dir():
            run_log.record(
                PHASE_BOOTSTRAP,
                "WARNING: no shadow on source. Making initial shadow links dir.",
                level=logging.WARNING,
            )
            steps.append(self._step(run_log, PHASE_BOOTSTRAP, "Step 0: Initial shadow links on source",
                                    lambda: shadow_step(layout.source, PHASE_BOOTSTRAP)))

        bucket = layout.new_run_bucket(started)
        steps.append(self._step(run_log, PHASE_SYNC, "Step 1: Main transfer sync",
                                lambda: len(sync(config, layout, engine, bucket, run_log).failures)))

        run_log.banner(PHASE_SHADOW_SOURCE, "Step 2: Updating shadow links")
        steps.append(self._step(run_log, PHASE_SHADOW_SOURCE, "Step 2.1: Updating shadow links on source",
                                lambda: shadow_step(layout.source, PHASE_SHADOW_SOURCE), major=False))
        steps.append(self._step(run_log, PHASE_SHADOW_MIRROR, "Step 2.2: Updating shadow links on backup",
                                lambda: shadow_step(layout.mirror, PHASE_SHADOW_MIRROR), major=False))

        steps.append(self._step(run_log, PHASE_PRUNE, "Step 3: Cleaning up",
                                lambda: len(prune(layout.archive, config, run_log).failures)))

        failures = sum(s.failures for s in steps)
        if any(not s.ok for s in steps):
            status = RunStatus.FAILED
        elif failures:
            status = RunStatus.PARTIAL
        else:
            status = RunStatus.OK

        run_log.banner(PHASE_JOB, f"JOB END ({status.value}, failures={failures})")
        return RunResult(
            status=status,
            steps=steps,
            bucket=bucket,
            log_path=log_path,
            failures=failures,
            events=list(run_log.events),
        )

    def _step(self, run_log: RunLog, name: str, title: str, func: Callable[[], int], major: bool = True) -> StepOutcome:
        run_log.banner(name, title, major=major)
        started = self.clock()
        try:
            failures = func()
            ok, error = True, None
        except Exception as e:
            run_log.record(name, f"{title} failed: {e}", level=logging.ERROR, action="FAIL")
            failures, ok, error = 0, False, str(e)
        finished = self.clock()
        run_log.record(name, f"done in {(finished - started).total_seconds():.1f}s at {_stamp(finished)}")
        return StepOutcome(name=name, ok=ok, started=started, finished=finished, failures=failures, error=error)


# -------------------------
# Config / CLI
# -------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="shadow-backup",
        usage="%(prog)s -s SOURCE_TOP_DIR -b BACKUP_TOP_DIR [-n] [options]",
        description="Mirror a folder into a backup folder, archiving every overwritten or deleted file.",
    )
    p.add_argument("-s", "--source-top-dir", dest="source", default=None, help="Source directory to mirror.")
    p.add_argument("-b", "--backup-top-dir", dest="backup", default=None,
                   help="Target directory to put the mirror of the source dir.")
    p.add_argument("-n", "--dry-run", dest="dry_run", action="store_true", default=None,
                   help="Do a dry run of sync operations.")
    p.add_argument("--engine", choices=("auto", "rsync", "python"), default=None,
                   help="Transfer engine (default: rsync when found, else python).")
    p.add_argument("--rsync", default=None, help=f"Path to the rsync binary (env: {RSYNC_ENV}).")
    p.add_argument("--config", default=None, help="JSON file with defaults for these options.")
    p.add_argument("--no-color", action="store_true", help="Plain console output.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def load_config_file(path: Optional[str]) -> dict:
    if not path:
        return {}
    try:
        payload = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise InvalidConfiguration(f"Could not read config file {path}: {e}") from e
    if not isinstance(payload, dict):
        raise InvalidConfiguration(f"Config file {path} must hold a JSON object.")
    return payload


def build_effective_config(args: argparse.Namespace) -> BackupConfig:
    saved = load_config_file(args.config)

    def pick(name: str, default=None):
        value = getattr(args, name, None)
        return value if value is not None else saved.get(name, default)

    config = BackupConfig(
        source_root=normalize_root(pick("source")),
        backup_root=normalize_root(pick("backup")),
        dry_run=bool(pick("dry_run", False)),
        engine=pick("engine", "auto"),
        rsync=pick("rsync"),
    )
    if "junk_patterns" in saved:
        config = replace(config, junk_patterns=tuple(saved["junk_patterns"]))
    return config


def main(argv: Optional[list[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()
    if not argv:
        parser.print_help()
        return EXIT_FAILED
    args = parser.parse_args(argv)

    try:
        cfg = build_effective_config(args)
        Layout.from_config(cfg)
        engine = select_engine(cfg.engine, cfg.rsync)
    except ShadowBackupError as e:
        parser.error(str(e))

    logger = setup_logger(use_color=False if args.no_color else None)

    try:
        result = BackupRun(cfg, engine=engine).run()
    except AlreadyRunning as e:
        logger.error("Already running: %s", e)
        return EXIT_ALREADY_RUNNING
    except InvalidConfiguration as e:
        logger.error("Config error: %s", e)
        return EXIT_USAGE

    logger.info("Run %s: %d failure(s). Log: %s", result.status.value, result.failures, result.log_path)
    return result.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
