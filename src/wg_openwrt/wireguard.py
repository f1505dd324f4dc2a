# src/wg_openwrt/wireguard.py
from __future__ import annotations
import logging
import shutil
import subprocess
from typing import Callable, Dict, Iterable, List, Optional

from .config import REQUIRED_TOOLS
from .errors import DependencyMissing, ReloadFailure, WireGuardError
from .models import PeerStatus

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


# ---------- Process helpers ----------

def run_cmd(cmd: List[str], input: Optional[str] = None, check: bool = True) -> subprocess.CompletedProcess:
    logger.debug("exec: %s", " ".join(cmd))
    try:
        return subprocess.run(cmd, input=input, capture_output=True, text=True, check=check)
    except FileNotFoundError:
        raise DependencyMissing(f"'{cmd[0]}' not found") from None


def _which(cmd: str) -> str:
    path = shutil.which(cmd)
    if path is None:
        raise DependencyMissing(
            f"Missing '{cmd}'. Run: opkg update && opkg install wireguard-tools"
        )
    return path


def require_tools(tools: Iterable[str] = REQUIRED_TOOLS) -> None:
    for tool in tools:
        _which(tool)


# ---------- Key generation ----------

def _wg(run: Runner, args: List[str], input: Optional[str] = None) -> str:
    try:
        return run(["wg", *args], input=input, check=True).stdout.strip()
    except subprocess.CalledProcessError as e:
        raise WireGuardError(f"wg {args[0]} failed: {(e.stderr or '').strip()}") from e


def derive_public_key(private_key: str, run: Runner = run_cmd) -> str:
    # pubkey reads the private key on stdin
    return _wg(run, ["pubkey"], input=private_key.strip() + "\n")


def generate_keypair(run: Runner = run_cmd) -> tuple[str, str]:
    """
    Returns (private_key, public_key) using wg(8).
    """
    priv = _wg(run, ["genkey"])
    pub = derive_public_key(priv, run)
    return priv, pub


# ---------- Live status ----------

def interface_running(interface: str, run: Runner = run_cmd) -> bool:
    return run(["wg", "show", interface], check=False).returncode == 0


def parse_dump(output: str) -> Dict[str, PeerStatus]:
    """
    Parses `wg show <iface> dump`. The first line describes the interface,
    every following line is one peer:
    public-key, preshared-key, endpoint, allowed-ips, latest-handshake,
    transfer-rx, transfer-tx, persistent-keepalive
    """
    peers: Dict[str, PeerStatus] = {}
    lines = [l for l in output.splitlines() if l.strip()]
    for line in lines[1:]:
        parts = line.split("\t")
        if len(parts) < 7:
            continue
        peers[parts[0]] = PeerStatus(
            public_key=parts[0],
            endpoint=None if parts[2] == "(none)" else parts[2],
            allowed_ips=parts[3],
            latest_handshake=int(parts[4]),
            rx_bytes=int(parts[5]),
            tx_bytes=int(parts[6]),
        )
    return peers


def peer_statuses(interface: str, run: Runner = run_cmd) -> Dict[str, PeerStatus]:
    if not interface_running(interface, run):
        raise WireGuardError(f"WireGuard interface '{interface}' is not running")
    return parse_dump(run(["wg", "show", interface, "dump"], check=True).stdout)


# ---------- System apply ----------

def _init_script(service: str, action: str, run: Runner) -> None:
    result = run([f"/etc/init.d/{service}", action], check=False)
    if result.returncode != 0:
        raise ReloadFailure(
            f"/etc/init.d/{service} {action} failed: {(result.stderr or '').strip()}"
        )


def reload_network(run: Runner = run_cmd) -> None:
    _init_script("network", "reload", run)


def restart_network(run: Runner = run_cmd) -> None:
    _init_script("network", "restart", run)


def restart_firewall(run: Runner = run_cmd) -> None:
    _init_script("firewall", "restart", run)


def link_exists(interface: str, run: Runner = run_cmd) -> bool:
    return run(["ip", "link", "show", interface], check=False).returncode == 0


def delete_link(interface: str, run: Runner = run_cmd) -> None:
    result = run(["ip", "link", "delete", interface], check=False)
    if result.returncode != 0:
        raise WireGuardError(f"ip link delete {interface} failed: {(result.stderr or '').strip()}")
