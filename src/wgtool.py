# src/wgtool.py
from __future__ import annotations
import argparse
import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional

from wg_openwrt import peers as peer_ops
from wg_openwrt.config import (
    DEFAULT_ADDRESS,
    DEFAULT_INTERFACE,
    DEFAULT_LAN_ZONE,
    DEFAULT_PORT,
    DEFAULT_WAN_ZONE,
    ENDPOINT_PLACEHOLDER,
    LOGFILE,
)
from wg_openwrt.context import Context
from wg_openwrt.errors import ValidationError, WireGuardError
from wg_openwrt.init_server import InitialPeer, InstallOptions, install, rollback
from wg_openwrt.keydir import BackupPolicy
from wg_openwrt.profile import print_qr
from wg_openwrt.rotate import rotate
from wg_openwrt.uninstall import uninstall
from wg_openwrt.wireguard import require_tools

logger = logging.getLogger("wgtool")

RULE = "=" * 40


# ---------------------------------------------------
# Output / logging
# ---------------------------------------------------

def error(msg: str) -> None:
    print(f"[ERROR] {msg}", file=sys.stderr)


_handlers: List[logging.Handler] = []


def setup_logging(verbose: bool = False, logfile: Optional[Path] = None) -> None:
    root = logging.getLogger()
    for h in _handlers:
        root.removeHandler(h)
        h.close()
    _handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter("[!] %(message)s"))
    _handlers.append(console)

    if logfile is not None:
        try:
            fh = logging.FileHandler(logfile, encoding="utf-8")
        except OSError as e:
            print(f"[!] Cannot write log file {logfile}: {e}", file=sys.stderr)
        else:
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
            _handlers.append(fh)

    for h in _handlers:
        root.addHandler(h)
    root.setLevel(logging.DEBUG)


def human_bytes(n: int) -> str:
    value = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{n} B"


def show_profile(text: str, path: Path, qr: bool) -> None:
    print(f"[+] Configuration saved: {path}")
    print()
    print(text)
    if qr:
        print("[*] QR Code:")
        print_qr(text)


# ---------------------------------------------------
# Prompts
# ---------------------------------------------------

def ask(prompt: str, default: str = "", what: str = "", why: str = "") -> str:
    print()
    print(f"-> {prompt}")
    if what:
        print(f"     What: {what}")
    if why:
        print(f"     Why : {why}")
    try:
        reply = input(f"   Enter {prompt} [{default}]: ").strip()
    except EOFError:
        reply = ""
    return reply or default


def make_confirm(assume_yes: bool) -> Callable[[str, bool], bool]:
    """--yes answers every confirmation with yes."""

    def confirm(question: str, default: bool) -> bool:
        if assume_yes:
            return True
        hint = "Y/n" if default else "y/N"
        try:
            reply = input(f"{question} [{hint}]: ").strip().lower()
        except EOFError:
            return default
        if not reply:
            return default
        return reply.startswith("y")

    return confirm


# ---------------------------------------------------
# Parsers
# ---------------------------------------------------

class Parser(argparse.ArgumentParser):
    """Argument errors exit with 1, like every other validation failure."""

    def error(self, message):
        self.print_usage(sys.stderr)
        error(message)
        print("Use --help for usage information", file=sys.stderr)
        sys.exit(1)


def _common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--interface", default=DEFAULT_INTERFACE, help="WireGuard interface (default: wg0)")
    p.add_argument("--yes", "-y", action="store_true", help="answer yes to every confirmation")
    p.add_argument("-v", "--verbose", action="store_true", help="debug output on stderr")


def _backup_flags(p: argparse.ArgumentParser) -> None:
    g = p.add_mutually_exclusive_group()
    g.add_argument("--no-backup", action="store_true", help="skip backups")
    g.add_argument("--best-effort-backup", action="store_true",
                   help="warn instead of aborting when a backup cannot be written")


def _policy(args) -> BackupPolicy:
    if getattr(args, "no_backup", False):
        return BackupPolicy.DISABLED
    if getattr(args, "best_effort_backup", False):
        return BackupPolicy.BEST_EFFORT
    return BackupPolicy.REQUIRED


def make_context(args) -> Context:
    return Context(
        interface=args.interface,
        backup_policy=_policy(args),
        qr=not getattr(args, "no_qr", False),
        confirm=make_confirm(args.yes),
    )


def _guard(func: Callable[[], int]) -> int:
    try:
        return func()
    except (WireGuardError, subprocess.CalledProcessError, OSError) as e:
        logger.debug("aborted", exc_info=True)
        error(str(e))
        return 1
    except KeyboardInterrupt:
        print()
        error("Interrupted")
        return 1


# ---------------------------------------------------
# wg-openwrt-install
# ---------------------------------------------------

def install_parser() -> Parser:
    p = Parser(prog="wg-openwrt-install",
               description="Set up a WireGuard server on OpenWrt (network, firewall, peers).")
    _common(p)
    p.add_argument("--port", help=f"UDP listen port (default: {DEFAULT_PORT})")
    p.add_argument("--address", help=f"server VPN address in CIDR form (default: {DEFAULT_ADDRESS})")
    p.add_argument("--endpoint", help="public host[:port] peers connect to")
    p.add_argument("--dns", help="DNS server handed to peers (default: server address)")
    p.add_argument("--lan-zone", help=f"LAN firewall zone (default: {DEFAULT_LAN_ZONE})")
    p.add_argument("--wan-zone", help=f"WAN firewall zone (default: {DEFAULT_WAN_ZONE})")
    p.add_argument("--peer", action="append", default=[], metavar="NAME",
                   help="initial peer, repeatable")
    p.add_argument("--no-qr", action="store_true", help="no QR output")
    p.add_argument("--rollback", metavar="TIMESTAMP",
                   help="restore network/firewall from the backups taken at TIMESTAMP")
    _backup_flags(p)
    return p


def _prompt_options(args) -> InstallOptions:
    port = args.port or ask("UDP listen port", str(DEFAULT_PORT),
                            "Port WireGuard listens on", "Must be open/forwarded")
    address = args.address or ask("Server VPN address (CIDR)", DEFAULT_ADDRESS,
                                  "IP and subnet for the server", "Defines VPN subnet")
    endpoint = args.endpoint or ask("Public endpoint (host:port)", f"{ENDPOINT_PLACEHOLDER}:{port}",
                                    "Your OpenWrt's public hostname or IP", "Used by peers to connect")
    lan = args.lan_zone or ask("LAN zone name", DEFAULT_LAN_ZONE,
                               "LAN firewall zone in OpenWrt", "Enables LAN <-> VPN traffic")
    wan = args.wan_zone or ask("WAN zone name", DEFAULT_WAN_ZONE,
                               "WAN firewall zone in OpenWrt", "Allows peer connections")
    dns = args.dns or ask("DNS server for peers", address.split("/")[0],
                          "DNS IP to suggest to peers", "Avoids DNS leaks / enables local names")

    peers = [InitialPeer(name=n) for n in args.peer]
    if not peers:
        count = ask("Number of peers to add", "0",
                    "How many devices will connect", "Each gets its own config & keypair")
        if not count.isdigit():
            raise ValidationError(f"Invalid number of peers: {count}")
        while len(peers) < int(count):
            print()
            print(f"[*] Peer #{len(peers) + 1} details:")
            name = input("   Name (no spaces, e.g. phone, laptop): ").strip()
            if not name:
                error("Name required; try again.")
                continue
            addr = input("   Allowed IP (e.g. 192.168.20.2/32) [auto]: ").strip()
            peers.append(InitialPeer(name=name, address=addr or None))

    return InstallOptions(listen_port=port, address=address, endpoint=endpoint, dns=dns,
                          lan_zone=lan, wan_zone=wan, peers=peers)


def _flag_options(args) -> InstallOptions:
    return InstallOptions(
        listen_port=args.port or DEFAULT_PORT,
        address=args.address or DEFAULT_ADDRESS,
        endpoint=args.endpoint,
        dns=args.dns,
        lan_zone=args.lan_zone or DEFAULT_LAN_ZONE,
        wan_zone=args.wan_zone or DEFAULT_WAN_ZONE,
        peers=[InitialPeer(name=n) for n in args.peer],
    )


def _do_rollback(ctx: Context, ts: str, ask: bool = True) -> int:
    if ask and not ctx.confirm(f"Roll back network/firewall to the backups from {ts}?", False):
        print("[*] Cancelled")
        return 0
    print(f"[*] Rolling back to saved config from {ts}...")
    for path in rollback(ctx, ts):
        print(f"[+] Restored {path}")
    print("[+] Rollback complete. Reverted to previous config.")
    return 0


def _install(args) -> int:
    require_tools()
    ctx = make_context(args)

    if args.rollback:
        return _do_rollback(ctx, args.rollback)

    print("[*] Welcome to the WireGuard auto-setup for OpenWrt!")
    options = _flag_options(args) if args.yes else _prompt_options(args)

    result = install(ctx, options)

    if result.backups:
        print("[+] Backups created before applying changes:")
        for name, path in result.backups.items():
            print(f"    {name} -> {path}")
    if result.generated_server_keys:
        print("[+] Generated server keypair")
    else:
        print("[*] Found existing server keypair")
    print(f"[+] Server public key: {result.server_public_key}")

    for peer in result.peers:
        print()
        print(f"[+] Peer {peer.record.name} ({peer.record.allowed_address})")
        show_profile(peer.profile, peer.profile_path, ctx.qr)
        if peer.png:
            print(f"[+] QR PNG saved: {peer.png}")

    if result.network_restarted is False or result.firewall_restarted is False:
        print("[!] Restart failed, apply manually: /etc/init.d/network restart && /etc/init.d/firewall restart")

    print()
    print(f"[+] WireGuard '{ctx.interface}' setup complete.")
    print(f"[+] Peer configs saved in: {ctx.layout.peers}/")

    if not args.yes and result.backups:
        if ctx.confirm("Do you want to rollback to previous network/firewall config?", False):
            return _do_rollback(ctx, result.timestamp, ask=False)
        print(f"[*] To roll back later: wg-openwrt-install --rollback={result.timestamp}")
    return 0


def install_main(argv: Optional[List[str]] = None) -> int:
    args = install_parser().parse_args(argv)
    setup_logging(args.verbose, LOGFILE)
    return _guard(lambda: _install(args))


# ---------------------------------------------------
# wg-peer-manage
# ---------------------------------------------------

def peer_parser() -> Parser:
    p = Parser(prog="wg-peer-manage",
               description="Manage WireGuard peers. Without an action, an interactive menu starts.")
    _common(p)
    actions = p.add_argument_group("actions")
    actions.add_argument("--add", action="store_true", help="add a new peer")
    actions.add_argument("--remove", metavar="NAME", help="remove a peer (files are archived)")
    actions.add_argument("--show", metavar="NAME", help="show peer details and profile")
    actions.add_argument("--list", action="store_true", help="list all peers")
    actions.add_argument("--enable", metavar="NAME", help="enable a peer")
    actions.add_argument("--disable", metavar="NAME", help="disable a peer")
    actions.add_argument("--traffic", action="store_true", help="transfer statistics")
    actions.add_argument("--active", action="store_true", help="peers with a recent handshake")
    p.add_argument("--name", help="peer name for --add")
    p.add_argument("--address", help="peer address (a.b.c.d/32) for --add")
    p.add_argument("--endpoint", help="public host[:port] for --add")
    p.add_argument("--dns", help="DNS server for --add")
    p.add_argument("--no-clear", action="store_true", help="do not clear the screen in the menu")
    p.add_argument("--no-qr", action="store_true", help="no QR output")
    return p


def print_peer_list(ctx: Context) -> List[str]:
    records = peer_ops.list_peers(ctx)
    print()
    print(f"[*] WireGuard peers on interface '{ctx.interface}':")
    print(RULE)
    if not records:
        print("[!] No peers configured.")
    for i, r in enumerate(records, 1):
        status = "ENABLED" if r.enabled else "DISABLED"
        print(f"  {i}. {r.name} ({r.allowed_address or 'N/A'}) [{status}]")
    print()
    return [r.name for r in records]


def print_details(ctx: Context, name: str) -> None:
    d = peer_ops.show_peer(ctx, name)
    r = d.record
    print()
    print(f"[*] Peer details: {r.name}")
    print(RULE)
    print(f"  Status:      {'ENABLED' if r.enabled else 'DISABLED'}")
    print(f"  IP Address:  {r.allowed_address or 'N/A'}")
    print(f"  Public Key:  {r.public_key or 'N/A'}")
    print(f"  Keepalive:   {r.keepalive}s")
    print()
    if d.status is not None:
        age = d.status.handshake_age(time.time())
        print("[*] Connection status:")
        print(f"  Endpoint:    {d.status.endpoint or 'N/A'}")
        print(f"  Handshake:   {'never' if age is None else f'{age}s ago'}")
        print(f"  Transfer:    {human_bytes(d.status.rx_bytes)} received, "
              f"{human_bytes(d.status.tx_bytes)} sent")
        print()
    else:
        print("[!] Peer not currently connected")
    if d.profile is not None:
        print(f"[*] Configuration file: {d.profile_path}")
        print()
        print(d.profile)
        if ctx.qr:
            print("[*] QR Code:")
            print_qr(d.profile)
    else:
        print(f"[!] Configuration file not found: {d.profile_path}")
        print("[*] Run key rotation to regenerate peer configs")


def _reload_message(reloaded: Optional[bool]) -> None:
    if reloaded:
        print("[+] Interface reloaded")
    elif reloaded is False:
        print("[!] Reload failed, run: /etc/init.d/network reload")
    else:
        print("[!] Remember to restart the interface: /etc/init.d/network reload")


def do_add(ctx: Context, args, interactive: bool) -> None:
    name, address, endpoint, dns = args.name, args.address, args.endpoint, args.dns
    if interactive:
        server = ctx.load_server()
        name = name or ask("Peer name", "", "Device/user identifier (e.g., laptop, phone)",
                           "Used to identify this peer in configs")
        address = address or ask("Peer IP address", peer_ops.next_address(ctx, server),
                                 "VPN IP for this device", "Must be unique in the VPN subnet")
        endpoint = endpoint or ask("Public endpoint", peer_ops.default_endpoint(ctx, server),
                                   "Your OpenWrt's public hostname or IP", "Used by peers to connect")
        dns = dns or ask("DNS server", server.ip, "DNS IP to suggest to this peer",
                         "Avoids DNS leaks / enables local name resolution")
    if not name:
        raise ValidationError("Peer name required")

    res = peer_ops.add_peer(ctx, name, address=address, endpoint=endpoint, dns=dns)
    show_profile(res.profile, res.profile_path, ctx.qr)
    if res.png:
        print(f"[+] QR PNG saved: {res.png}")
    print()
    print(f"[+] Peer '{res.record.name}' added successfully!")
    print(f"  Name:     {res.record.name}")
    print(f"  IP:       {res.record.allowed_address}")
    print(f"  Endpoint: {res.endpoint}")
    print(f"  DNS:      {res.dns}")
    _reload_message(res.reloaded)


def do_remove(ctx: Context, name: str) -> None:
    res = peer_ops.remove_peer(ctx, name)
    if res is None:
        print("[*] Cancelled")
        return
    print(f"[+] Peer '{res.record.name}' removed from configuration")
    print(f"[+] Files archived to: {res.archive_dir}")
    _reload_message(res.reloaded)


def do_toggle(ctx: Context, name: str, enabled: bool) -> None:
    res = peer_ops.set_peer_enabled(ctx, name, enabled)
    state = "enabled" if enabled else "disabled"
    if not res.changed:
        print(f"[*] Peer '{res.record.name}' already {state}")
        return
    print(f"[+] Peer '{res.record.name}' {state}")
    _reload_message(res.reloaded)


def do_traffic(ctx: Context) -> None:
    rows = peer_ops.traffic(ctx)
    print()
    print(f"[*] Traffic statistics for '{ctx.interface}'")
    print(RULE)
    for record, status in rows:
        print(f"  Peer: {record.name}")
        if status is None:
            print("    No data")
        else:
            print(f"    RX: {human_bytes(status.rx_bytes)}, TX: {human_bytes(status.tx_bytes)}")
    print()


def do_active(ctx: Context) -> None:
    rows = peer_ops.active_peers(ctx)
    print()
    print(f"[*] Active connections on '{ctx.interface}'")
    print(RULE)
    if not rows:
        print("[!] No active peers")
    for record, status, age in rows:
        print(f"  Peer: {record.name}")
        print(f"    IP:       {record.allowed_address}")
        print(f"    Endpoint: {status.endpoint or 'N/A'}")
        print(f"    Last:     {age}s ago")
    print()


def _clear(args) -> None:
    if not args.no_clear:
        print("\033[2J\033[H", end="")


def _pause() -> None:
    try:
        input("Press Enter to continue...")
    except EOFError:
        pass


def _manage_menu(ctx: Context, args, name: str) -> None:
    while True:
        _clear(args)
        record = ctx.registry.find(name)
        print()
        print(f"[*] Manage peer: {name}")
        print(RULE)
        print("1. Show details + QR code")
        print("2. Disable peer" if record.enabled else "2. Enable peer")
        print("3. Remove peer")
        print("4. Back to main menu")
        choice = input("Select option [1-4]: ").strip()
        if choice == "1":
            print_details(ctx, name)
        elif choice == "2":
            do_toggle(ctx, name, not record.enabled)
        elif choice == "3":
            do_remove(ctx, name)
            if not ctx.registry.exists(name):
                _pause()
                return
        elif choice == "4":
            return
        else:
            error("Invalid option")
        _pause()


def _select_peer(ctx: Context, args) -> None:
    _clear(args)
    names = print_peer_list(ctx)
    if not names:
        print("[!] Add a peer first.")
        _pause()
        return
    choice = input("Select peer number (or 0 to cancel): ").strip()
    if choice == "0":
        return
    if not choice.isdigit() or not 1 <= int(choice) <= len(names):
        error("Invalid peer number")
        _pause()
        return
    _manage_menu(ctx, args, names[int(choice) - 1])


def interactive_menu(ctx: Context, args) -> int:
    while True:
        _clear(args)
        print()
        print("[*] WireGuard Peer Management")
        print(RULE)
        print(f"Interface: {ctx.interface}")
        print()
        print("1. List all peers")
        print("2. Add new peer")
        print("3. Manage existing peer")
        print("4. Show traffic statistics")
        print("5. Show active connections")
        print("6. Restart WireGuard interface")
        print("7. Exit")
        print()
        try:
            choice = input("Select option [1-7]: ").strip()
        except EOFError:
            return 0

        try:
            if choice == "1":
                print_peer_list(ctx)
            elif choice == "2":
                do_add(ctx, argparse.Namespace(name=None, address=None, endpoint=None, dns=None), True)
            elif choice == "3":
                _select_peer(ctx, args)
                continue
            elif choice == "4":
                do_traffic(ctx)
            elif choice == "5":
                do_active(ctx)
            elif choice == "6":
                print("[*] Restarting WireGuard interface...")
                _reload_message(ctx.reload())
            elif choice == "7":
                print("[*] Goodbye!")
                return 0
            else:
                error("Invalid option. Please select 1-7.")
                continue
        except WireGuardError as e:
            # the menu keeps running after a failed action
            error(str(e))
        except EOFError:
            return 0
        _pause()


def _peer(args) -> int:
    require_tools()
    ctx = make_context(args)
    ctx.interface_section()

    if args.list:
        print_peer_list(ctx)
    elif args.show:
        print_details(ctx, args.show)
    elif args.add:
        do_add(ctx, args, interactive=not args.yes)
    elif args.remove:
        do_remove(ctx, args.remove)
    elif args.enable:
        do_toggle(ctx, args.enable, True)
    elif args.disable:
        do_toggle(ctx, args.disable, False)
    elif args.traffic:
        do_traffic(ctx)
    elif args.active:
        do_active(ctx)
    else:
        return interactive_menu(ctx, args)
    return 0


def peer_main(argv: Optional[List[str]] = None) -> int:
    args = peer_parser().parse_args(argv)
    setup_logging(args.verbose)
    return _guard(lambda: _peer(args))


# ---------------------------------------------------
# wg-key-rotate
# ---------------------------------------------------

def rotate_parser() -> Parser:
    p = Parser(prog="wg-key-rotate", description="Rotate WireGuard server and/or peer keys.")
    _common(p)
    p.add_argument("--server", action="store_true", help="rotate the server keypair")
    p.add_argument("--peer", action="append", default=[], metavar="NAME",
                   help="rotate one peer, repeatable")
    p.add_argument("--all-peers", action="store_true", help="rotate every peer")
    p.add_argument("--endpoint", help="endpoint for peers whose old profile has none")
    p.add_argument("--no-qr", action="store_true", help="no QR output")
    _backup_flags(p)
    return p


def _rotate(args) -> int:
    require_tools()
    ctx = make_context(args)

    result = rotate(ctx, server=args.server, peers=args.peer, all_peers=args.all_peers,
                    endpoint=args.endpoint)

    if result.resumed:
        print(f"[+] Finished interrupted server key cascade for: {', '.join(result.resumed)}")
    if result.backup_dir:
        print(f"[+] Key backups in: {result.backup_dir}")

    if result.server_public_key:
        print()
        print("[*] ROTATING SERVER KEYS")
        print(RULE)
        print(f"[+] New server public key: {result.server_public_key}")
        for name in result.patched:
            print(f"[+] Updated {name}.conf with new server public key")
        print("[!] All peers must update their configurations with the new server public key!")

    for peer in result.peers:
        print()
        print(f"[*] Processing peer: {peer.name}")
        print(f"[+] New public key: {peer.public_key}")
        show_profile(peer.profile, peer.profile_path, ctx.qr)
        if peer.png:
            print(f"[+] QR PNG saved to: {peer.png}")

    print()
    if result.reloaded is None:
        print("[!] Interface not restarted. Run manually: /etc/init.d/network reload")
    elif result.running:
        print("[+] WireGuard interface is running")
    else:
        error("WireGuard interface failed to start! Check logs with: logread | grep -i wireguard")

    print()
    print("[*] KEY ROTATION COMPLETE")
    print(RULE)
    if result.peers:
        print(f"[+] Rotated keys for {len(result.peers)} peer(s)")
        print("[!] Distribute new .conf files to affected devices")
    if result.backup_dir:
        print(f"[*] Delete backups after confirming all devices work: rm -rf {result.backup_dir}")
    print(f"[*] Peer configs location: {ctx.layout.peers}/")
    return 0


def rotate_main(argv: Optional[List[str]] = None) -> int:
    args = rotate_parser().parse_args(argv)
    setup_logging(args.verbose)
    return _guard(lambda: _rotate(args))


# ---------------------------------------------------
# wg-uninstall
# ---------------------------------------------------

def uninstall_parser() -> Parser:
    p = Parser(prog="wg-uninstall",
               description="Remove the WireGuard interface, its peers, firewall rules and keys.")
    _common(p)
    p.add_argument("--dry-run", action="store_true", help="report every step, change nothing")
    return p


def _uninstall(args) -> int:
    require_tools(("uci",))
    ctx = make_context(args)
    if args.dry_run:
        print("[*] Running in dry-run mode. No changes will be made.")

    result = uninstall(ctx, dry_run=args.dry_run, report=lambda m: print(f"[*] {m}"))
    if result is None:
        print("[*] Aborted.")
        return 0
    print()
    print(f"[+] {result.summary}")
    return 0


def uninstall_main(argv: Optional[List[str]] = None) -> int:
    args = uninstall_parser().parse_args(argv)
    setup_logging(args.verbose)
    return _guard(lambda: _uninstall(args))


if __name__ == "__main__":
    sys.exit(peer_main())
