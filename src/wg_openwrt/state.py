# src/wg_openwrt/state.py
from __future__ import annotations
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .errors import JournalCorrupt


@dataclass
class RotationJournal:
    """
    Progress of a server key cascade. Written before the new server key is
    committed, updated after every patched profile, deleted when done.
    """
    new_public_key: str
    started: str
    pending: List[str] = field(default_factory=list)  # peer names still to patch
    done: List[str] = field(default_factory=list)

    def mark_done(self, name: str) -> None:
        if name in self.pending:
            self.pending.remove(name)
        if name not in self.done:
            self.done.append(name)


def journal_to_dict(journal: RotationJournal) -> dict:
    return {
        "new_public_key": journal.new_public_key,
        "started": journal.started,
        "pending": journal.pending,
        "done": journal.done,
    }


def dict_to_journal(data: dict) -> RotationJournal:
    return RotationJournal(
        new_public_key=data["new_public_key"],
        started=data["started"],
        pending=list(data.get("pending", [])),
        done=list(data.get("done", [])),
    )


def load_journal(path: Path) -> Optional[RotationJournal]:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as f:
        try:
            data = json.load(f)
            return dict_to_journal(data)
        except (ValueError, KeyError, TypeError) as e:
            raise JournalCorrupt(f"Rotation journal {path} is unreadable: {e}") from e


def save_journal(journal: RotationJournal, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(journal_to_dict(journal), f, indent=2)
    os.replace(tmp, path)


def clear_journal(path: Path) -> None:
    if path.exists():
        path.unlink()
