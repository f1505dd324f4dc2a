# src/wg_openwrt/init_server.py
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from . import profile, wireguard
from .config import (
    DEFAULT_ADDRESS,
    DEFAULT_LAN_ZONE,
    DEFAULT_PORT,
    DEFAULT_WAN_ZONE,
    ENDPOINT_PLACEHOLDER,
)
from .context import Context
from .errors import DuplicateName, ValidationError
from .firewall import FirewallResult, enable_firewall
from .ipam import (
    next_free_address,
    parse_server_address,
    subnet_base,
    validate_dns,
    validate_peer_address,
)
from .keydir import (
    backup_config_files,
    read_key,
    restore_config_files,
    timestamp,
    write_peer_files,
    write_secret,
    write_server_keys,
)
from .models import PeerRecord
from .registry import normalize_name
from .uci import check_ident

logger = logging.getLogger(__name__)


@dataclass
class InitialPeer:
    name: str
    address: Optional[str] = None  # allocated when None


@dataclass
class InstallOptions:
    listen_port: int = DEFAULT_PORT
    address: str = DEFAULT_ADDRESS
    endpoint: Optional[str] = None
    dns: Optional[str] = None
    lan_zone: str = DEFAULT_LAN_ZONE
    wan_zone: str = DEFAULT_WAN_ZONE
    peers: List[InitialPeer] = field(default_factory=list)


@dataclass
class InstalledPeer:
    record: PeerRecord
    profile_path: Path
    profile: str
    png: Optional[Path] = None


@dataclass
class InstallResult:
    timestamp: str
    server_public_key: str
    generated_server_keys: bool
    endpoint: str
    dns: str
    backups: Dict[str, Path] = field(default_factory=dict)
    peers: List[InstalledPeer] = field(default_factory=list)
    firewall: Optional[FirewallResult] = None
    network_restarted: Optional[bool] = None
    firewall_restarted: Optional[bool] = None


# ---------- Validation ----------

def validate_port(port) -> int:
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid listen port: {port}") from None
    if not 1 <= value <= 65535:
        raise ValidationError(f"Listen port out of range (1-65535): {port}")
    return value


def validate_options(ctx: Context, options: InstallOptions) -> Tuple[InstallOptions, List[InitialPeer]]:
    """
    Returns normalized options and the initial peers with their final
    addresses. Nothing on disk or in uci is touched.
    """
    port = validate_port(options.listen_port)
    server_iface = parse_server_address(options.address)
    address = options.address.strip()

    endpoint = profile.normalize_endpoint(options.endpoint or f"{ENDPOINT_PLACEHOLDER}:{port}", port)
    dns = validate_dns(options.dns or str(server_iface.ip))
    lan_zone = check_ident(options.lan_zone)
    wan_zone = check_ident(options.wan_zone)

    # peers left over from an earlier install of the same interface keep their addresses
    existing = ctx.registry.index()
    used = {str(server_iface.ip)} | {r.ip for r in ctx.registry.list() if r.allowed_address}

    seen = set()
    explicit = []
    for peer in options.peers:
        name = normalize_name(peer.name)
        if name in seen or name in existing:
            raise DuplicateName(f"Peer '{name}' already exists")
        seen.add(name)
        addr = validate_peer_address(peer.address, address, used) if peer.address else None
        if addr:
            used.add(addr)
        explicit.append(InitialPeer(name=name, address=addr))

    base = subnet_base(address)
    peers = []
    for peer in explicit:
        if peer.address is None:
            peer.address = next_free_address(base, used)
            used.add(peer.address)
        peers.append(peer)

    normalized = InstallOptions(
        listen_port=port,
        address=address,
        endpoint=endpoint,
        dns=dns,
        lan_zone=lan_zone,
        wan_zone=wan_zone,
        peers=peers,
    )
    return normalized, peers


# ---------- Server keys ----------

def ensure_server_keys(ctx: Context) -> Tuple[str, str, bool]:
    """Returns (private, public, generated). An existing pair is reused."""
    private_key = read_key(ctx.layout.server_private)
    if private_key:
        public_key = read_key(ctx.layout.server_public)
        if public_key is None:
            public_key = wireguard.derive_public_key(private_key, ctx.run)
            write_secret(ctx.layout.server_public, public_key + "\n")
        logger.info("reusing server keypair from %s", ctx.layout.root)
        return private_key, public_key, False

    private_key, public_key = wireguard.generate_keypair(ctx.run)
    write_server_keys(ctx.layout, private_key, public_key)
    logger.info("generated server keypair in %s", ctx.layout.root)
    return private_key, public_key, True


# ---------- Workflow ----------

def _stage_interface(ctx: Context, private_key: str, options: InstallOptions) -> None:
    net = ctx.network
    iface = ctx.interface
    net.set_section(iface, "interface")
    net.set_field(iface, "proto", "wireguard")
    net.set_field(iface, "private_key", private_key)
    net.set_field(iface, "listen_port", options.listen_port)
    net.delete_field(iface, "addresses")
    net.add_list(iface, "addresses", options.address)


def install(ctx: Context, options: InstallOptions, apply: bool = True) -> InstallResult:
    options, peers = validate_options(ctx, options)

    ts = timestamp()
    backups = backup_config_files(ctx.layout, ts, ctx.backup_policy)

    private_key, public_key, generated = ensure_server_keys(ctx)
    result = InstallResult(
        timestamp=ts,
        server_public_key=public_key,
        generated_server_keys=generated,
        endpoint=options.endpoint,
        dns=options.dns,
        backups=backups,
    )

    _stage_interface(ctx, private_key, options)

    for peer in peers:
        peer_priv, peer_pub = wireguard.generate_keypair(ctx.run)
        text = profile.render_profile(peer_priv, peer.address, options.dns, public_key, options.endpoint)
        path = write_peer_files(ctx.layout, peer.name, peer_priv, peer_pub, text)
        png = profile.save_qr_png(text, ctx.layout.peer_png(peer.name)) if ctx.qr else None
        record = ctx.registry.add(PeerRecord(name=peer.name, public_key=peer_pub, allowed_address=peer.address))
        result.peers.append(InstalledPeer(record=record, profile_path=path, profile=text, png=png))
        logger.info("peer %s: %s at %s", peer.name, path, peer.address)

    ctx.network.commit()

    result.firewall = enable_firewall(
        ctx.firewall,
        ctx.interface,
        options.listen_port,
        options.lan_zone,
        options.wan_zone,
    )
    ctx.firewall.commit()

    if apply:
        if ctx.confirm("Restart network now?", False):
            result.network_restarted = ctx.reload(restart=True)
        result.firewall_restarted = ctx.restart_firewall()
    return result


def rollback(ctx: Context, ts: str) -> List[Path]:
    """Copies network/firewall back from the `.bak.<ts>` files and restarts both."""
    restored = restore_config_files(ctx.layout, ts)
    ctx.reload(restart=True)
    ctx.restart_firewall()
    return restored
