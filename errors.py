# errors.py
"""
Round Keeper — error taxonomy.
Steady-state errors are caught at tick level; only ConfigurationError is fatal.
"""

from __future__ import annotations
from typing import List, Optional


class KeeperError(Exception):
    """Base class for keeper errors."""


class OracleUnavailable(KeeperError):
    """Price fetch failed (network, status, payload)."""


class AccountNotFound(KeeperError):
    def __init__(self, label: str, address: str):
        super().__init__(f"{label} account not found: {address}")
        self.label = label
        self.address = address


class TransactionFailed(KeeperError):
    def __init__(self, message: str, logs: Optional[List[str]] = None):
        super().__init__(message)
        self.logs = list(logs or [])


class ConfigurationError(KeeperError):
    """Missing credential, malformed config JSON, invalid settings."""
