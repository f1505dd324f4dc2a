# src/wg_openwrt/peers.py
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from . import profile, wireguard
from .config import ACTIVE_WINDOW_SECONDS, ENDPOINT_PLACEHOLDER
from .context import Context
from .errors import DuplicateName
from .ipam import next_free_address, subnet_base, validate_dns, validate_peer_address
from .keydir import ArchiveResult, archive_peer, timestamp, write_peer_files
from .models import PeerRecord, PeerStatus, ServerRecord
from .registry import normalize_name

logger = logging.getLogger(__name__)


# ---------- Results ----------

@dataclass
class AddResult:
    record: PeerRecord
    profile_path: Path
    profile: str
    endpoint: str
    dns: str
    png: Optional[Path] = None
    reloaded: Optional[bool] = None  # None: not asked / declined


@dataclass
class RemoveResult:
    record: PeerRecord
    archive_dir: Path
    archived: Dict[Path, ArchiveResult] = field(default_factory=dict)
    reloaded: Optional[bool] = None


@dataclass
class ToggleResult:
    record: PeerRecord
    changed: bool
    reloaded: Optional[bool] = None


@dataclass
class PeerDetails:
    record: PeerRecord
    profile_path: Path
    profile: Optional[str]
    status: Optional[PeerStatus] = None
    running: bool = False


# ---------- Helpers ----------

def existing_endpoint(ctx: Context) -> Optional[str]:
    for path in ctx.layout.profiles():
        endpoint = profile.profile_field(path.read_text(encoding="utf-8"), "Peer", "Endpoint")
        if endpoint:
            return endpoint
    return None


def default_endpoint(ctx: Context, server: ServerRecord) -> str:
    return existing_endpoint(ctx) or f"{ENDPOINT_PLACEHOLDER}:{server.listen_port}"


def next_address(ctx: Context, server: ServerRecord) -> str:
    return next_free_address(subnet_base(server.address), ctx.registry.used_addresses(server))


def _apply(ctx: Context, apply: bool) -> Optional[bool]:
    if not apply:
        return None
    if not ctx.confirm("Restart WireGuard interface now?", False):
        logger.info("interface not reloaded")
        return None
    return ctx.reload()


# ---------- Workflows ----------

def add_peer(
    ctx: Context,
    name: str,
    address: Optional[str] = None,
    endpoint: Optional[str] = None,
    dns: Optional[str] = None,
    apply: bool = True,
) -> AddResult:
    name = normalize_name(name)
    server = ctx.load_server()
    if ctx.registry.exists(name):
        raise DuplicateName(f"Peer '{name}' already exists")

    used = ctx.registry.used_addresses(server)
    if address:
        address = validate_peer_address(address, server.address, used)
    else:
        address = next_free_address(subnet_base(server.address), used)

    endpoint = profile.normalize_endpoint(endpoint or default_endpoint(ctx, server), server.listen_port)
    dns = validate_dns(dns) if dns else server.ip

    # files first: a failed key generation leaves the store untouched
    private_key, public_key = wireguard.generate_keypair(ctx.run)
    text = profile.render_profile(private_key, address, dns, server.public_key, endpoint)
    path = write_peer_files(ctx.layout, name, private_key, public_key, text)
    png = profile.save_qr_png(text, ctx.layout.peer_png(name)) if ctx.qr else None
    logger.info("peer %s: %s written", name, path)

    record = ctx.registry.add(PeerRecord(name=name, public_key=public_key, allowed_address=address))
    ctx.network.commit()

    result = AddResult(record=record, profile_path=path, profile=text,
                       endpoint=endpoint, dns=dns, png=png)
    result.reloaded = _apply(ctx, apply)
    return result


def remove_peer(ctx: Context, name: str, apply: bool = True) -> Optional[RemoveResult]:
    """Returns None when the operator declines the confirmation."""
    record = ctx.registry.find(name)
    if not ctx.confirm(f"This will permanently remove peer '{name}'. Are you sure?", False):
        return None

    ctx.registry.remove(name)
    ctx.network.commit()

    ts = timestamp()
    archived = archive_peer(ctx.layout, record.name, ts)
    for path, outcome in archived.items():
        if outcome is ArchiveResult.ABSENT:
            logger.warning("%s already absent, nothing to archive", path)

    result = RemoveResult(record=record, archive_dir=ctx.layout.removed / f"{ts}-{record.name}",
                          archived=archived)
    result.reloaded = _apply(ctx, apply)
    return result


def set_peer_enabled(ctx: Context, name: str, enabled: bool, apply: bool = True) -> ToggleResult:
    changed = ctx.registry.set_enabled(name, enabled)
    if changed:
        ctx.network.commit()
    record = ctx.registry.find(name)
    result = ToggleResult(record=record, changed=changed)
    if changed:
        result.reloaded = _apply(ctx, apply)
    return result


def list_peers(ctx: Context) -> List[PeerRecord]:
    ctx.interface_section()
    return ctx.registry.list()


def show_peer(ctx: Context, name: str) -> PeerDetails:
    record = ctx.registry.find(name)
    path = ctx.layout.peer_conf(record.name)
    details = PeerDetails(
        record=record,
        profile_path=path,
        profile=path.read_text(encoding="utf-8") if path.is_file() else None,
    )
    if wireguard.interface_running(ctx.interface, ctx.run):
        details.running = True
        details.status = wireguard.peer_statuses(ctx.interface, ctx.run).get(record.public_key)
    return details


def traffic(ctx: Context) -> List[Tuple[PeerRecord, Optional[PeerStatus]]]:
    statuses = wireguard.peer_statuses(ctx.interface, ctx.run)
    return [(r, statuses.get(r.public_key)) for r in ctx.registry.list() if r.public_key]


def active_peers(ctx: Context, now: Optional[float] = None,
                 window: Optional[int] = None) -> List[Tuple[PeerRecord, PeerStatus, int]]:
    now = time.time() if now is None else now
    window = ACTIVE_WINDOW_SECONDS if window is None else window

    active = []
    for record, status in traffic(ctx):
        if status is None:
            continue
        age = status.handshake_age(now)
        if age is not None and age < window:
            active.append((record, status, age))
    return active
