# src/wg_openwrt/config.py
from __future__ import annotations

from pathlib import Path


DEFAULT_INTERFACE = "wg0"
DEFAULT_PORT = 51820
DEFAULT_ADDRESS = "192.168.20.1/24"
DEFAULT_LAN_ZONE = "lan"
DEFAULT_WAN_ZONE = "wan"

# Peer profile constants
KEEPALIVE = 25
CLIENT_ALLOWED_IPS = "0.0.0.0/0"
ENDPOINT_PLACEHOLDER = "your.openwrt.hostname"
ROTATE_ENDPOINT_PLACEHOLDER = "your.host"

WIREGUARD_DIR = Path("/etc/wireguard")
UCI_CONFIG_DIR = Path("/etc/config")
LOGFILE = Path("/tmp/wg-setup.log")

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

# A peer counts as connected when its last handshake is younger than this
ACTIVE_WINDOW_SECONDS = 180

REQUIRED_TOOLS = ("wg", "uci")
