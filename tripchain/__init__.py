"""
Tripchain
Tamper-evidence engine for audit-protected mileage logbooks.
"""

from tripchain.backup import (
    BackupImport,
    BackupImportVerifier,
    BackupSnapshot,
    ImportState,
    export_backup,
    parse_snapshot,
    restore_backup,
)
from tripchain.chain import ChainBroken, ChainValid, GENESIS_HASH, TripChainHashCalculator
from tripchain.chain_service import TripChainService
from tripchain.errors import (
    AggregateTamperError,
    BrokenChainError,
    IntegrityViolationError,
    InvalidBackupError,
    MissingChainHashError,
)
from tripchain.integrity import IntegrityHashCalculator, TamperingDetected, VerificationSuccess
from tripchain.records import AuditLogEntry, Trip, Vehicle

__all__ = [
    "AggregateTamperError",
    "AuditLogEntry",
    "BackupImport",
    "BackupImportVerifier",
    "BackupSnapshot",
    "BrokenChainError",
    "ChainBroken",
    "ChainValid",
    "GENESIS_HASH",
    "ImportState",
    "IntegrityHashCalculator",
    "IntegrityViolationError",
    "InvalidBackupError",
    "MissingChainHashError",
    "TamperingDetected",
    "Trip",
    "TripChainHashCalculator",
    "TripChainService",
    "Vehicle",
    "VerificationSuccess",
    "export_backup",
    "parse_snapshot",
    "restore_backup",
]
