# src/wg_openwrt/keydir.py
from __future__ import annotations
import enum
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import TIMESTAMP_FORMAT, UCI_CONFIG_DIR, WIREGUARD_DIR
from .errors import ArchiveFailure, BackupFailure, NotFoundError

logger = logging.getLogger(__name__)


def timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


# -----------------------------
# Layout
# -----------------------------

@dataclass
class Layout:
    root: Path = WIREGUARD_DIR
    config_dir: Path = UCI_CONFIG_DIR

    @property
    def peers(self) -> Path:
        return self.root / "peers"

    @property
    def backup(self) -> Path:
        return self.root / "backup"

    @property
    def removed(self) -> Path:
        return self.root / "removed"

    @property
    def server_private(self) -> Path:
        return self.root / "privatekey"

    @property
    def server_public(self) -> Path:
        return self.root / "publickey"

    @property
    def journal(self) -> Path:
        return self.root / "rotation.json"

    def peer_conf(self, name: str) -> Path:
        return self.peers / f"{name}.conf"

    def peer_private(self, name: str) -> Path:
        return self.peers / f"{name}-privatekey"

    def peer_public(self, name: str) -> Path:
        return self.peers / f"{name}-publickey"

    def peer_png(self, name: str) -> Path:
        return self.peers / f"{name}.png"

    def peer_files(self, name: str) -> List[Path]:
        return [
            self.peer_conf(name),
            self.peer_private(name),
            self.peer_public(name),
            self.peer_png(name),
        ]

    def profiles(self) -> List[Path]:
        if not self.peers.is_dir():
            return []
        return sorted(p for p in self.peers.glob("*.conf") if p.is_file())


# -----------------------------
# Key material
# -----------------------------

def write_secret(path: Path, content: str) -> Path:
    """Writes with mode 0600 whatever the process umask is."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    path.chmod(0o600)
    return path


def read_key(path: Path) -> Optional[str]:
    if not path.is_file():
        return None
    value = path.read_text(encoding="utf-8").strip()
    return value or None


def stage_server_keys(layout: Layout, private_key: str, public_key: str) -> List[Tuple[Path, Path]]:
    """
    Writes privatekey.new / publickey.new. They replace the live files with
    promote() once the store holds the new key.
    """
    staged = []
    for target, value in ((layout.server_private, private_key), (layout.server_public, public_key)):
        # next to the target so the replace stays on one filesystem
        tmp = target.with_name(target.name + ".new")
        write_secret(tmp, value + "\n")
        staged.append((tmp, target))
    return staged


def leftover_server_keys(layout: Layout) -> List[Tuple[Path, Path]]:
    """Staged server keys an interrupted rotation left behind."""
    pairs = [(t.with_name(t.name + ".new"), t) for t in (layout.server_private, layout.server_public)]
    return [(tmp, target) for tmp, target in pairs if tmp.exists()]


def promote(staged: List[Tuple[Path, Path]]) -> None:
    for tmp, target in staged:
        os.replace(tmp, target)


def discard(staged: List[Tuple[Path, Path]]) -> None:
    for tmp, _ in staged:
        if tmp.exists():
            tmp.unlink()


def write_server_keys(layout: Layout, private_key: str, public_key: str) -> None:
    promote(stage_server_keys(layout, private_key, public_key))


def write_peer_files(layout: Layout, name: str, private_key: str, public_key: str, profile: str) -> Path:
    write_secret(layout.peer_private(name), private_key)
    write_secret(layout.peer_public(name), public_key)
    return write_secret(layout.peer_conf(name), profile)


# -----------------------------
# Backups
# -----------------------------

class BackupPolicy(enum.Enum):
    REQUIRED = "required"        # a failed backup aborts the operation
    BEST_EFFORT = "best-effort"  # warn and carry on
    DISABLED = "disabled"


class Backup:
    """A timestamped snapshot directory, filled file by file before mutating."""

    def __init__(self, directory: Path, policy: BackupPolicy = BackupPolicy.REQUIRED):
        self.directory = directory
        self.policy = policy
        self.saved: List[Path] = []

    @property
    def enabled(self) -> bool:
        return self.policy is not BackupPolicy.DISABLED

    def _fail(self, message: str, exc: OSError) -> None:
        if self.policy is BackupPolicy.REQUIRED:
            raise BackupFailure(message) from exc
        logger.warning("%s (continuing: %s)", message, exc)

    def save(self, path: Path, target: Optional[Path] = None) -> Optional[Path]:
        if not self.enabled or not path.is_file():
            return None
        target = target or self.directory / path.name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
        except OSError as e:
            self._fail(f"Backup of {path} failed", e)
            return None
        self.saved.append(target)
        return target


def key_backup(layout: Layout, ts: str, policy: BackupPolicy) -> Backup:
    return Backup(layout.backup / ts, policy)


def backup_config_files(layout: Layout, ts: str, policy: BackupPolicy,
                        configs: tuple = ("network", "firewall")) -> Dict[str, Path]:
    """Copies /etc/config/<name> to /etc/config/<name>.bak.<ts>."""
    backup = Backup(layout.config_dir, policy)
    saved = {}
    for name in configs:
        src = layout.config_dir / name
        dst = backup.save(src, layout.config_dir / f"{name}.bak.{ts}")
        if dst is not None:
            saved[name] = dst
    return saved


def restore_config_files(layout: Layout, ts: str, configs: tuple = ("network", "firewall")) -> List[Path]:
    restored = []
    for name in configs:
        src = layout.config_dir / f"{name}.bak.{ts}"
        if not src.is_file():
            raise NotFoundError(f"Backup not found: {src}")
    for name in configs:
        src = layout.config_dir / f"{name}.bak.{ts}"
        dst = layout.config_dir / name
        shutil.copy2(src, dst)
        restored.append(dst)
    return restored


# -----------------------------
# Archive of removed peers
# -----------------------------

class ArchiveResult(enum.Enum):
    ARCHIVED = "archived"
    ABSENT = "absent"  # nothing to move, already consistent


def archive_peer(layout: Layout, name: str, ts: str) -> Dict[Path, ArchiveResult]:
    """
    Moves every file of `name` to removed/<ts>-<name>/. Missing files are
    reported as ABSENT; a failed move raises ArchiveFailure.
    """
    archive_dir = layout.removed / f"{ts}-{name}"
    results: Dict[Path, ArchiveResult] = {}
    for src in layout.peer_files(name):
        if not src.exists():
            results[src] = ArchiveResult.ABSENT
            continue
        try:
            archive_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(src), str(archive_dir / src.name))
        except OSError as e:
            raise ArchiveFailure(f"Could not archive {src} to {archive_dir}: {e}") from e
        results[src] = ArchiveResult.ARCHIVED
    return results


def wipe(layout: Layout) -> List[Path]:
    """Deletes everything below the key directory, keeping the directory."""
    removed = []
    if not layout.root.is_dir():
        return removed
    for entry in sorted(layout.root.iterdir()):
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()
        removed.append(entry)
    return removed
