# src/wg_openwrt/models.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from .config import KEEPALIVE


@dataclass
class PeerRecord:
    name: str
    public_key: str
    allowed_address: str       # ex "192.168.20.2/32"
    keepalive: int = KEEPALIVE
    enabled: bool = True
    section: Optional[str] = None  # UCI section id, None until written

    @property
    def description(self) -> str:
        return self.name

    @property
    def ip(self) -> str:
        return self.allowed_address.split("/")[0]


@dataclass
class ServerRecord:
    interface: str             # ex: "wg0"
    private_key: str
    public_key: str
    listen_port: int           # ex: 51820
    address: str               # server address in the VPN, ex "192.168.20.1/24"

    @property
    def ip(self) -> str:
        return self.address.split("/")[0]


@dataclass
class PeerStatus:
    """One peer line of `wg show <iface> dump`."""
    public_key: str
    endpoint: Optional[str]
    allowed_ips: str
    latest_handshake: int      # epoch seconds, 0 = never
    rx_bytes: int
    tx_bytes: int

    def handshake_age(self, now: float) -> Optional[int]:
        if not self.latest_handshake:
            return None
        return max(0, int(now) - self.latest_handshake)
