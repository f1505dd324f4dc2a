# src/wg_openwrt/uci.py
from __future__ import annotations
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import CommitFailure, ValidationError
from .wireguard import Runner, run_cmd

logger = logging.getLogger(__name__)

_IDENT_RE = re.compile(r"^[A-Za-z0-9_]+$")


# -----------------------------
# Data
# -----------------------------

@dataclass
class Section:
    name: str
    type: str
    # every option is a list; plain options simply hold one value
    options: Dict[str, List[str]] = field(default_factory=dict)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        values = self.options.get(key)
        return values[0] if values else default

    def get_list(self, key: str) -> List[str]:
        return list(self.options.get(key, []))


def quote(value: str) -> str:
    return "'" + str(value).replace("'", "'\\''") + "'"


def check_ident(name: str) -> str:
    if not _IDENT_RE.match(name):
        raise ValidationError(f"Invalid UCI identifier: {name!r}")
    return name


def parse_show(config: str, output: str) -> Dict[str, Section]:
    """
    Parses `uci -X show <config>`:

      network.wg0=interface
      network.wg0.addresses='192.168.20.1/24'
      network.cfg0a1b2c.allowed_ips='192.168.20.2/32' '10.0.0.0/8'
    """
    sections: Dict[str, Section] = {}
    prefix = config + "."
    for line in output.splitlines():
        if not line.startswith(prefix) or "=" not in line:
            continue
        path, _, raw = line.partition("=")
        parts = path.split(".")
        values = shlex.split(raw)
        if len(parts) == 2:
            sections[parts[1]] = Section(name=parts[1], type=values[0] if values else "")
        elif len(parts) == 3 and parts[1] in sections:
            sections[parts[1]].options[parts[2]] = values
    return sections


# -----------------------------
# Store
# -----------------------------

class UciStore:
    """
    One UCI config file. Reads come from a snapshot taken at first use;
    writes are staged in memory and only reach uci on commit().
    """

    def __init__(self, config: str, run: Runner = run_cmd):
        self.config = config
        self.run = run
        self._sections: Optional[Dict[str, Section]] = None
        self._pending: List[str] = []

    # ---- reading ----

    def load(self) -> None:
        result = self.run(["uci", "-q", "-X", "show", self.config], check=False)
        if result.returncode != 0:
            logger.debug("uci show %s returned %s, treating as empty", self.config, result.returncode)
            self._sections = {}
            return
        self._sections = parse_show(self.config, result.stdout)

    @property
    def _snapshot(self) -> Dict[str, Section]:
        if self._sections is None:
            self.load()
        return self._sections

    def get_section(self, name: str) -> Optional[Section]:
        return self._snapshot.get(name)

    def sections(self, type: Optional[str] = None) -> List[Section]:
        return [s for s in self._snapshot.values() if type is None or s.type == type]

    @property
    def pending(self) -> List[str]:
        return list(self._pending)

    # ---- staged writes ----

    def _path(self, section: str, key: Optional[str] = None) -> str:
        check_ident(section)
        if key is None:
            return f"{self.config}.{section}"
        return f"{self.config}.{section}.{check_ident(key)}"

    def _require(self, section: str) -> Section:
        s = self._snapshot.get(section)
        if s is None:
            raise KeyError(f"{self.config}.{section}")
        return s

    def set_section(self, name: str, type: str) -> None:
        self._pending.append(f"set {self._path(name)}={check_ident(type)}")
        existing = self._snapshot.get(name)
        if existing is None:
            self._snapshot[name] = Section(name=name, type=type)
        else:
            existing.type = type

    def set_field(self, section: str, key: str, value) -> None:
        s = self._require(section)
        self._pending.append(f"set {self._path(section, key)}={quote(value)}")
        s.options[key] = [str(value)]

    def add_list(self, section: str, key: str, value) -> None:
        s = self._require(section)
        self._pending.append(f"add_list {self._path(section, key)}={quote(value)}")
        s.options.setdefault(key, []).append(str(value))

    def delete_field(self, section: str, key: str) -> bool:
        s = self._snapshot.get(section)
        if s is None or key not in s.options:
            return False
        self._pending.append(f"delete {self._path(section, key)}")
        del s.options[key]
        return True

    def delete_section(self, name: str) -> bool:
        if name not in self._snapshot:
            return False
        self._pending.append(f"delete {self._path(name)}")
        del self._snapshot[name]
        return True

    # ---- persistence ----

    def commit(self) -> None:
        """
        Applies every staged write or none of them.
        """
        if not self._pending:
            return
        batch = "\n".join(self._pending) + "\n"
        try:
            result = self.run(["uci", "batch"], input=batch, check=False)
            if result.returncode != 0 or (result.stderr or "").strip():
                raise CommitFailure(
                    f"uci batch for '{self.config}' failed: {(result.stderr or '').strip()}"
                )
            result = self.run(["uci", "commit", self.config], check=False)
            if result.returncode != 0:
                raise CommitFailure(
                    f"uci commit {self.config} failed: {(result.stderr or '').strip()}"
                )
        except CommitFailure:
            self.revert()
            raise
        logger.info("committed %d change(s) to %s", len(self._pending), self.config)
        self._pending.clear()

    def revert(self) -> None:
        self.run(["uci", "revert", self.config], check=False)
        self._pending.clear()
        self._sections = None
