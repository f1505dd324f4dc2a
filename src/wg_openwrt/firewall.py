# src/wg_openwrt/firewall.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

from .uci import Section, UciStore


# -----------------------------
# Data
# -----------------------------

@dataclass
class FirewallResult:
    zone: str
    created_zone: bool = False
    forwardings: List[str] = field(default_factory=list)
    rule: str = ""


# -----------------------------
# Low-level helpers
# -----------------------------

def _zone_id(iface: str) -> str:
    return f"{iface}_zone"


def _forwarding_id(src: str, dest: str) -> str:
    return f"{src}_to_{dest}"


def _rule_id(iface: str) -> str:
    return f"{iface}_allow_wan"


def _find_zone(store: UciStore, name: str) -> List[Section]:
    return [s for s in store.sections("zone") if s.get("name") == name]


def mentions_interface(section: Section, iface: str) -> bool:
    """Whole-word match, so 'wg0' does not hit 'wg01'."""
    pattern = re.compile(rf"(?<![A-Za-z0-9]){re.escape(iface)}(?![A-Za-z0-9])")
    if pattern.search(section.name):
        return True
    return any(pattern.search(v) for values in section.options.values() for v in values)


# -----------------------------
# Public API
# -----------------------------

def enable_firewall(
    store: UciStore,
    wg_iface: str = "wg0",
    listen_port: int = 51820,
    lan_zone: str = "lan",
    wan_zone: str = "wan",
) -> FirewallResult:
    """
    Stages the zone, vpn<->lan forwardings and the WAN accept rule. Every
    section is named, so running it again rewrites instead of duplicating.
    Nothing is committed here.
    """
    res = FirewallResult(zone=_zone_id(wg_iface))

    existing = _find_zone(store, wg_iface)
    if existing:
        res.zone = existing[0].name
    else:
        zone = _zone_id(wg_iface)
        store.set_section(zone, "zone")
        store.set_field(zone, "name", wg_iface)
        store.set_field(zone, "input", "ACCEPT")
        store.set_field(zone, "output", "ACCEPT")
        store.set_field(zone, "forward", "DROP")
        store.add_list(zone, "network", wg_iface)
        res.created_zone = True

    for src, dest in ((wg_iface, lan_zone), (lan_zone, wg_iface)):
        fwd = _forwarding_id(src, dest)
        store.set_section(fwd, "forwarding")
        store.set_field(fwd, "src", src)
        store.set_field(fwd, "dest", dest)
        res.forwardings.append(fwd)

    rule = _rule_id(wg_iface)
    store.set_section(rule, "rule")
    store.set_field(rule, "name", f"Allow-WG-{wg_iface}")
    store.set_field(rule, "src", wan_zone)
    store.set_field(rule, "proto", "udp")
    store.set_field(rule, "dest_port", listen_port)
    store.set_field(rule, "target", "ACCEPT")
    res.rule = rule

    return res


def sections_for_interface(store: UciStore, wg_iface: str) -> List[Section]:
    return [s for s in store.sections() if mentions_interface(s, wg_iface)]


def disable_firewall(store: UciStore, wg_iface: str = "wg0") -> List[str]:
    """Stages deletion of every firewall section that refers to the interface."""
    removed = []
    for section in sections_for_interface(store, wg_iface):
        if store.delete_section(section.name):
            removed.append(section.name)
    return removed
