# src/wg_openwrt/uninstall.py
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from . import wireguard
from .context import Context
from .firewall import disable_firewall, sections_for_interface
from .keydir import wipe

logger = logging.getLogger(__name__)

Report = Callable[[str], None]


@dataclass
class UninstallResult:
    dry_run: bool
    steps: List[str] = field(default_factory=list)
    network_sections: List[str] = field(default_factory=list)
    firewall_sections: List[str] = field(default_factory=list)
    wiped: List[Path] = field(default_factory=list)
    link_deleted: bool = False

    @property
    def summary(self) -> str:
        if self.dry_run:
            return "Dry-run complete. No changes were made."
        return "WireGuard uninstalled and cleaned up successfully."


def uninstall(ctx: Context, dry_run: bool = False, report: Optional[Report] = None) -> Optional[UninstallResult]:
    """
    Removes the interface, its peers, its firewall sections, the key
    directory contents and the live link. With dry_run every step is
    reported and nothing is changed. Returns None if not confirmed.
    """
    iface = ctx.interface
    question = (
        f"This will remove WireGuard interface '{iface}', all peer configs, related "
        f"firewall rules, and wipe the contents of {ctx.layout.root}. Are you sure?"
    )
    if not ctx.confirm(question, False):
        return None

    result = UninstallResult(dry_run=dry_run)

    def step(message: str) -> None:
        result.steps.append(message)
        logger.info(message)
        if report is not None:
            report(message)

    # network
    if ctx.network.get_section(iface) is not None:
        step(f"Removing network interface '{iface}'")
        result.network_sections.append(iface)
    for section in ctx.network.sections(ctx.registry.section_type):
        label = section.get("description") or section.name
        step(f"Removing peer section '{section.name}' ({label})")
        result.network_sections.append(section.name)

    if not dry_run and result.network_sections:
        for name in result.network_sections:
            ctx.network.delete_section(name)
        ctx.network.commit()
        ctx.reload(restart=True)

    # firewall
    step("Cleaning up firewall rules")
    for section in sections_for_interface(ctx.firewall, iface):
        step(f"Removing firewall section '{section.name}' ({section.type})")
        result.firewall_sections.append(section.name)

    if not dry_run and result.firewall_sections:
        disable_firewall(ctx.firewall, iface)
        ctx.firewall.commit()
        ctx.restart_firewall()

    # key directory
    step(f"Wiping all contents of {ctx.layout.root}")
    if not dry_run:
        result.wiped = wipe(ctx.layout)

    # live link
    if wireguard.link_exists(iface, ctx.run):
        step(f"Deleting live WireGuard interface '{iface}'")
        if not dry_run:
            wireguard.delete_link(iface, ctx.run)
            result.link_deleted = True

    return result
