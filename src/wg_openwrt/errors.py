# src/wg_openwrt/errors.py
from __future__ import annotations


class WireGuardError(Exception):
    """Base class for every error the tools report to the operator."""


class ValidationError(WireGuardError, ValueError):
    """Bad argument, malformed address or name. Raised before any mutation."""


class DuplicateName(ValidationError):
    pass


class DependencyMissing(WireGuardError, RuntimeError):
    pass


class NotFoundError(WireGuardError, LookupError):
    pass


class Exhausted(WireGuardError, RuntimeError):
    pass


class CommitFailure(WireGuardError, RuntimeError):
    pass


class ReloadFailure(WireGuardError, RuntimeError):
    pass


class BackupFailure(WireGuardError, OSError):
    pass


class ArchiveFailure(WireGuardError, OSError):
    pass


class JournalCorrupt(WireGuardError, ValueError):
    """rotation.json exists but cannot be parsed; remove it after checking the peer profiles."""
