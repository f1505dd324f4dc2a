# src/wg_openwrt/registry.py
from __future__ import annotations
import logging
import re
from typing import Dict, List, Set

from .config import KEEPALIVE
from .errors import DuplicateName, NotFoundError, ValidationError
from .ipam import get_used_ips
from .models import PeerRecord, ServerRecord
from .uci import Section, UciStore

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_.@+-]+$")


def normalize_name(name: str) -> str:
    """Spaces become underscores; anything else outside the safe set is refused."""
    name = (name or "").strip().replace(" ", "_")
    if not name:
        raise ValidationError("Peer name required")
    if not _NAME_RE.match(name):
        raise ValidationError(f"Invalid peer name: {name!r}")
    return name


def _slug(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_]", "_", name)


class PeerRegistry:
    """Peers of one interface: the `wireguard_<interface>` sections of network."""

    def __init__(self, store: UciStore, interface: str):
        self.store = store
        self.interface = interface

    @property
    def section_type(self) -> str:
        return f"wireguard_{self.interface}"

    def _sections(self) -> List[Section]:
        return self.store.sections(self.section_type)

    @staticmethod
    def _to_record(section: Section) -> PeerRecord:
        keepalive = section.get("persistent_keepalive")
        return PeerRecord(
            name=section.get("description") or section.name,
            public_key=section.get("public_key", ""),
            allowed_address=section.get("allowed_ips", ""),
            keepalive=int(keepalive) if keepalive and keepalive.isdigit() else KEEPALIVE,
            enabled=section.get("disabled", "0") != "1",
            section=section.name,
        )

    # ---------- lookup ----------

    def list(self) -> List[PeerRecord]:
        return [self._to_record(s) for s in self._sections()]

    def index(self) -> Dict[str, str]:
        """name -> section id, first section wins on a repeated description."""
        mapping: Dict[str, str] = {}
        for record in self.list():
            if record.name in mapping:
                logger.warning(
                    "sections %s and %s share description '%s'; using %s",
                    mapping[record.name], record.section, record.name, mapping[record.name],
                )
                continue
            mapping[record.name] = record.section
        return mapping

    def find(self, name: str) -> PeerRecord:
        section_id = self.index().get(name)
        if section_id is None:
            raise NotFoundError(f"Peer '{name}' not found")
        return self._to_record(self.store.get_section(section_id))

    def exists(self, name: str) -> bool:
        return name in self.index()

    def used_addresses(self, server: ServerRecord) -> Set[str]:
        return get_used_ips(server, [r for r in self.list() if r.allowed_address])

    # ---------- staged mutations ----------

    def _new_section_id(self, name: str) -> str:
        base = f"{self.section_type}_{_slug(name)}"
        candidate, n = base, 2
        while self.store.get_section(candidate) is not None:
            candidate = f"{base}_{n}"
            n += 1
        return candidate

    def add(self, record: PeerRecord) -> PeerRecord:
        if self.exists(record.name):
            raise DuplicateName(f"Peer '{record.name}' already exists")

        section_id = self._new_section_id(record.name)
        self.store.set_section(section_id, self.section_type)
        self.store.set_field(section_id, "description", record.description)
        self.store.set_field(section_id, "public_key", record.public_key)
        self.store.set_field(section_id, "persistent_keepalive", record.keepalive)
        self.store.add_list(section_id, "allowed_ips", record.allowed_address)
        if not record.enabled:
            self.store.set_field(section_id, "disabled", "1")

        record.section = section_id
        return record

    def remove(self, name: str) -> PeerRecord:
        record = self.find(name)
        self.store.delete_section(record.section)
        return record

    def set_enabled(self, name: str, enabled: bool) -> bool:
        """Returns False, staging nothing, when the peer is already in that state."""
        record = self.find(name)
        if record.enabled == enabled:
            return False
        if enabled:
            self.store.delete_field(record.section, "disabled")
        else:
            self.store.set_field(record.section, "disabled", "1")
        return True

    def set_public_key(self, name: str, public_key: str) -> None:
        record = self.find(name)
        self.store.set_field(record.section, "public_key", public_key)
