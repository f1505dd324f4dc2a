# src/wg_openwrt/context.py
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from . import wireguard
from .config import DEFAULT_INTERFACE, DEFAULT_PORT
from .errors import NotFoundError, ReloadFailure, ValidationError
from .keydir import BackupPolicy, Layout, read_key
from .models import ServerRecord
from .registry import PeerRegistry
from .uci import UciStore
from .wireguard import Runner, run_cmd

logger = logging.getLogger(__name__)

_IFACE_RE = re.compile(r"^[A-Za-z0-9_]{1,15}$")

# (question, default answer) -> answer
Confirm = Callable[[str, bool], bool]


def accept_default(question: str, default: bool) -> bool:
    return default


def validate_interface(name: str) -> str:
    if not _IFACE_RE.match(name or ""):
        raise ValidationError(f"Invalid interface name: {name!r}")
    return name


@dataclass
class Context:
    """Everything one workflow run needs; the interface is never global."""
    interface: str = DEFAULT_INTERFACE
    layout: Layout = field(default_factory=Layout)
    run: Runner = run_cmd
    backup_policy: BackupPolicy = BackupPolicy.REQUIRED
    qr: bool = True
    confirm: Confirm = accept_default

    def __post_init__(self):
        validate_interface(self.interface)
        self.network = UciStore("network", run=self.run)
        self.firewall = UciStore("firewall", run=self.run)
        self.registry = PeerRegistry(self.network, self.interface)

    def interface_section(self):
        section = self.network.get_section(self.interface)
        if section is None:
            raise NotFoundError(
                f"WireGuard interface '{self.interface}' not found in UCI configuration"
            )
        return section

    def load_server(self) -> ServerRecord:
        section = self.interface_section()
        address = section.get("addresses")
        if not address:
            raise NotFoundError(f"Interface '{self.interface}' has no address configured")

        private_key = section.get("private_key", "")
        public_key = read_key(self.layout.server_public)
        if public_key is None:
            if not private_key:
                raise NotFoundError(f"Server public key not found at {self.layout.server_public}")
            public_key = wireguard.derive_public_key(private_key, self.run)

        port = section.get("listen_port")
        return ServerRecord(
            interface=self.interface,
            private_key=private_key,
            public_key=public_key,
            listen_port=int(port) if port and port.isdigit() else DEFAULT_PORT,
            address=address,
        )

    def reload(self, restart: bool = False) -> bool:
        """
        Applies committed config to the live network stack. A failure is
        reported, not raised: the committed config stays valid.
        """
        try:
            if restart:
                wireguard.restart_network(self.run)
            else:
                wireguard.reload_network(self.run)
        except ReloadFailure as e:
            logger.warning("%s; run '/etc/init.d/network reload' manually", e)
            return False
        return True

    def restart_firewall(self) -> bool:
        try:
            wireguard.restart_firewall(self.run)
        except ReloadFailure as e:
            logger.warning("%s; run '/etc/init.d/firewall restart' manually", e)
            return False
        return True
