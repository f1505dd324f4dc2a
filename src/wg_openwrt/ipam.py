# src/wg_openwrt/ipam.py
from __future__ import annotations
import ipaddress
from typing import Iterable, Set

from .errors import Exhausted, ValidationError
from .models import PeerRecord, ServerRecord

# .1 is the server by convention, .255 broadcast
FIRST_HOST = 2
LAST_HOST = 254


def _host(address: str) -> ipaddress.IPv4Address:
    try:
        return ipaddress.IPv4Address(address.split("/")[0].strip())
    except ipaddress.AddressValueError as e:
        raise ValidationError(f"Invalid IPv4 address: {address}") from e


def parse_server_address(address: str) -> ipaddress.IPv4Interface:
    try:
        iface = ipaddress.IPv4Interface(address.strip())
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError) as e:
        raise ValidationError(f"Invalid server address (CIDR expected): {address}") from e
    if "/" not in address:
        raise ValidationError(f"Server address must be in CIDR form: {address}")
    return iface


def subnet_base(server_address: str) -> str:
    """'192.168.20.1/24' -> '192.168.20'"""
    octets = str(_host(server_address)).split(".")
    return ".".join(octets[:3])


def get_used_ips(server: ServerRecord, peers: Iterable[PeerRecord]) -> Set[str]:
    used = {server.ip}
    for p in peers:
        used.add(p.ip)
    return used


def next_free_address(base: str, used: Iterable[str]) -> str:
    """
    Returns the lowest free host as 'a.b.c.N/32', N in 2..254.
    `used` may hold bare addresses or /32 forms.
    """
    taken = {_host(u) for u in used}

    for n in range(FIRST_HOST, LAST_HOST + 1):
        candidate = ipaddress.IPv4Address(f"{base}.{n}")
        if candidate not in taken:
            return f"{candidate}/32"

    raise Exhausted(f"No available IPs in subnet {base}.0/24")


def validate_peer_address(address: str, server_address: str, used: Iterable[str]) -> str:
    address = address.strip()
    if not address.endswith("/32"):
        raise ValidationError(f"Peer address must include /32: {address}")
    host = _host(address)
    network = parse_server_address(server_address).network
    if host not in network:
        raise ValidationError(f"IP {address} not in subnet {network}")
    if host in (network.network_address, network.broadcast_address):
        raise ValidationError(f"IP {address} is reserved in subnet {network}")
    if host in {_host(u) for u in used}:
        raise ValidationError(f"IP {address} is already in use")
    return f"{host}/32"


def validate_dns(dns: str) -> str:
    try:
        return str(ipaddress.ip_address(dns.strip()))
    except ValueError:
        raise ValidationError(f"Invalid DNS server address: {dns}") from None
