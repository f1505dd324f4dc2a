# src/wg_openwrt/rotate.py
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import keydir, profile, wireguard
from .config import ROTATE_ENDPOINT_PLACEHOLDER
from .context import Context
from .errors import CommitFailure, NotFoundError, ValidationError
from .keydir import Backup, key_backup, timestamp, write_peer_files, write_secret
from .models import ServerRecord
from .registry import normalize_name
from .state import RotationJournal, clear_journal, load_journal, save_journal

logger = logging.getLogger(__name__)


@dataclass
class PeerRotation:
    name: str
    public_key: str
    profile_path: Path
    profile: str
    png: Optional[Path] = None


@dataclass
class RotationResult:
    backup_dir: Optional[Path] = None
    server_public_key: Optional[str] = None  # set when the server pair was rotated
    patched: List[str] = field(default_factory=list)
    resumed: List[str] = field(default_factory=list)
    peers: List[PeerRotation] = field(default_factory=list)
    reloaded: Optional[bool] = None
    running: Optional[bool] = None


# ---------- Server key cascade ----------

def _patch_profiles(ctx: Context, journal: RotationJournal) -> List[str]:
    """Rewrites the server key of every pending profile, saving progress each step."""
    patched = []
    for name in list(journal.pending):
        path = ctx.layout.peer_conf(name)
        if path.is_file():
            text = path.read_text(encoding="utf-8")
            new_text = profile.replace_server_key(text, journal.new_public_key)
            if new_text != text:
                write_secret(path, new_text)
            logger.info("%s.conf carries the new server key", name)
        else:
            logger.warning("%s vanished during the cascade, skipping", path)
        journal.mark_done(name)
        save_journal(journal, ctx.layout.journal)
        patched.append(name)
    clear_journal(ctx.layout.journal)
    return patched


def _settle_staged_keys(ctx: Context, journal: RotationJournal) -> None:
    """Promotes server keys staged before a crash if the store already holds them."""
    staged = keydir.leftover_server_keys(ctx.layout)
    if not staged:
        return
    values = {target: keydir.read_key(tmp) for tmp, target in staged}
    private_key = values.get(ctx.layout.server_private, keydir.read_key(ctx.layout.server_private))
    public_key = values.get(ctx.layout.server_public, journal.new_public_key)
    committed = ctx.interface_section().get("private_key")
    if private_key == committed and public_key == journal.new_public_key:
        logger.warning("promoting server keys staged by the rotation started %s", journal.started)
        keydir.promote(staged)
    else:
        logger.warning("server keys staged by the rotation started %s were never committed; dropping them",
                       journal.started)
        keydir.discard(staged)


def resume_cascade(ctx: Context) -> List[str]:
    """Finishes a cascade an earlier run left behind. Returns patched peers."""
    journal = load_journal(ctx.layout.journal)
    if journal is None:
        return []
    _settle_staged_keys(ctx, journal)
    current = keydir.read_key(ctx.layout.server_public)
    if current != journal.new_public_key:
        logger.warning(
            "rotation journal from %s does not match the server key on disk; discarding it",
            journal.started,
        )
        clear_journal(ctx.layout.journal)
        return []
    logger.warning("resuming server key cascade started %s (%d pending)",
                   journal.started, len(journal.pending))
    return _patch_profiles(ctx, journal)


def rotate_server(ctx: Context, server: ServerRecord, ts: str) -> tuple[ServerRecord, List[str]]:
    private_key, public_key = wireguard.generate_keypair(ctx.run)

    staged = keydir.stage_server_keys(ctx.layout, private_key, public_key)
    journal = RotationJournal(
        new_public_key=public_key,
        started=ts,
        pending=[p.stem for p in ctx.layout.profiles()],
    )
    save_journal(journal, ctx.layout.journal)

    ctx.network.set_field(ctx.interface, "private_key", private_key)
    try:
        ctx.network.commit()
    except CommitFailure:
        keydir.discard(staged)
        clear_journal(ctx.layout.journal)
        raise
    keydir.promote(staged)
    patched = _patch_profiles(ctx, journal)

    server.private_key = private_key
    server.public_key = public_key
    return server, patched


# ---------- Peer keys ----------

def rotate_peer(ctx: Context, server: ServerRecord, name: str,
                endpoint: Optional[str] = None) -> PeerRotation:
    record = ctx.registry.find(name)
    path = ctx.layout.peer_conf(name)

    old = profile.parse_profile(path.read_text(encoding="utf-8")) if path.is_file() else {}
    old_endpoint = old.get("Peer", {}).get("Endpoint")
    old_dns = old.get("Interface", {}).get("DNS")

    endpoint = old_endpoint or endpoint or f"{ROTATE_ENDPOINT_PLACEHOLDER}:{server.listen_port}"
    endpoint = profile.normalize_endpoint(endpoint, server.listen_port)
    dns = old_dns or server.ip

    private_key, public_key = wireguard.generate_keypair(ctx.run)
    text = profile.render_profile(private_key, record.allowed_address, dns, server.public_key, endpoint)
    write_peer_files(ctx.layout, name, private_key, public_key, text)
    png = profile.save_qr_png(text, ctx.layout.peer_png(name)) if ctx.qr else None

    ctx.registry.set_public_key(name, public_key)
    return PeerRotation(name=name, public_key=public_key, profile_path=path, profile=text, png=png)


# ---------- Workflow ----------

def _targets(ctx: Context, peers: Iterable[str], all_peers: bool) -> List[str]:
    index = ctx.registry.index()
    if all_peers:
        return list(index)
    names = []
    for name in peers:
        name = normalize_name(name)
        if name not in names:
            names.append(name)
    missing = [n for n in names if n not in index]
    if missing:
        raise NotFoundError(f"Peer(s) not found in UCI config: {', '.join(missing)}")
    return names


def _backup(ctx: Context, backup: Backup, server: bool, targets: List[str]) -> None:
    if server:
        backup.save(ctx.layout.server_private)
        backup.save(ctx.layout.server_public)
        for conf in ctx.layout.profiles():
            backup.save(conf)
    for name in targets:
        backup.save(ctx.layout.peer_private(name))
        backup.save(ctx.layout.peer_public(name))
        backup.save(ctx.layout.peer_conf(name))


def rotate(
    ctx: Context,
    server: bool = False,
    peers: Iterable[str] = (),
    all_peers: bool = False,
    endpoint: Optional[str] = None,
    apply: bool = True,
) -> RotationResult:
    peers = list(peers)
    journal_pending = ctx.layout.journal.exists()
    if not (server or peers or all_peers or journal_pending):
        raise ValidationError("No rotation target specified! Use --server, --peer=NAME, or --all-peers")

    srv = ctx.load_server()
    targets = _targets(ctx, peers, all_peers)
    if endpoint:
        endpoint = profile.normalize_endpoint(endpoint, srv.listen_port)

    result = RotationResult()
    result.resumed = resume_cascade(ctx)
    if journal_pending:
        srv = ctx.load_server()

    ts = timestamp()
    backup = key_backup(ctx.layout, ts, ctx.backup_policy)
    _backup(ctx, backup, server, targets)
    if backup.saved:
        result.backup_dir = backup.directory

    if server:
        srv, result.patched = rotate_server(ctx, srv, ts)
        result.server_public_key = srv.public_key

    for name in targets:
        result.peers.append(rotate_peer(ctx, srv, name, endpoint))
    if targets:
        ctx.network.commit()

    if apply and (server or targets):
        if ctx.confirm("Restart WireGuard interface now?", True):
            result.reloaded = ctx.reload()
            result.running = wireguard.interface_running(ctx.interface, ctx.run)
            if not result.running:
                logger.warning("WireGuard interface %s failed to start; check logread", ctx.interface)
    return result
