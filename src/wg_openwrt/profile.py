# src/wg_openwrt/profile.py
from __future__ import annotations
import logging
import re
from pathlib import Path
from typing import Dict, Optional, TextIO

import qrcode

from .config import CLIENT_ALLOWED_IPS, KEEPALIVE
from .errors import ValidationError

logger = logging.getLogger(__name__)


PROFILE_TEMPLATE = """[Interface]
PrivateKey = {private_key}
Address = {address}
DNS = {dns}

[Peer]
PublicKey = {server_public_key}
Endpoint = {endpoint}
AllowedIPs = {allowed_ips}
PersistentKeepalive = {keepalive}
"""


# ---------- Rendering ----------

def normalize_endpoint(endpoint: str, listen_port: int) -> str:
    """Appends the server port when the operator gave a bare host."""
    endpoint = endpoint.strip()
    if not endpoint or any(c.isspace() or not c.isprintable() for c in endpoint):
        raise ValidationError(f"Invalid endpoint: {endpoint!r}")
    if endpoint.startswith("["):
        return endpoint if "]:" in endpoint else f"{endpoint}:{listen_port}"
    if ":" in endpoint:
        return endpoint
    return f"{endpoint}:{listen_port}"


def render_profile(
    private_key: str,
    address: str,
    dns: str,
    server_public_key: str,
    endpoint: str,
) -> str:
    return PROFILE_TEMPLATE.format(
        private_key=private_key,
        address=address,
        dns=dns,
        server_public_key=server_public_key,
        endpoint=endpoint,
        allowed_ips=CLIENT_ALLOWED_IPS,
        keepalive=KEEPALIVE,
    )


# ---------- Parsing ----------

_SECTION_RE = re.compile(r"^\s*\[(\w+)\]\s*$")
_FIELD_RE = re.compile(r"^\s*(\w+)\s*=\s*(.*?)\s*$")


def parse_profile(text: str) -> Dict[str, Dict[str, str]]:
    """
    Returns {"Interface": {...}, "Peer": {...}}. Only the first [Peer]
    block is kept; peer profiles carry exactly one.
    """
    sections: Dict[str, Dict[str, str]] = {}
    current: Optional[Dict[str, str]] = None
    for line in text.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        m = _SECTION_RE.match(line)
        if m:
            current = sections.setdefault(m.group(1), {})
            continue
        m = _FIELD_RE.match(line)
        if m and current is not None:
            current.setdefault(m.group(1), m.group(2))
    return sections


def profile_field(text: str, section: str, key: str) -> Optional[str]:
    return parse_profile(text).get(section, {}).get(key) or None


def replace_server_key(text: str, new_public_key: str) -> str:
    """
    Rewrites the PublicKey line of the [Peer] block. Running it twice with
    the same key gives the same text.
    """
    out = []
    in_peer = False
    for line in text.splitlines(keepends=True):
        m = _SECTION_RE.match(line)
        if m:
            in_peer = m.group(1) == "Peer"
        elif in_peer:
            f = _FIELD_RE.match(line)
            if f and f.group(1) == "PublicKey":
                ending = "\n" if line.endswith("\n") else ""
                line = f"PublicKey = {new_public_key}{ending}"
        out.append(line)
    return "".join(out)


# ---------- QR codes ----------

def print_qr(text: str, out: Optional[TextIO] = None) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(text)
    qr.make(fit=True)
    qr.print_ascii(out=out)


def save_qr_png(text: str, path: Path) -> Optional[Path]:
    try:
        img = qrcode.make(text)
        img.save(str(path))
    except OSError as e:
        # QR output is presentational, the profile file is what matters
        logger.warning("QR PNG not written to %s: %s", path, e)
        return None
    path.chmod(0o600)
    return path
