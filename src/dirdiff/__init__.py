"""Core package for the dirdiff project."""

from .cli import app, run
from .config import Config, RemoteConfig, RetrySettings, Settings
from .diff import DiffEngine, diff
from .errors import (
    DirdiffError,
    PlanConflict,
    RevisionNotFound,
    ScanError,
    StaleSourceError,
    StoreCorruption,
    TransportError,
    VerificationFailure,
)
from .executor import SyncExecutor
from .manager import DirdiffManager
from .models import (
    DiffResult,
    FileRecord,
    Operation,
    OperationKind,
    ScanResult,
    Snapshot,
    SyncOutcome,
    SyncPlan,
)
from .planner import SyncPlanner
from .resume import ResumeLog
from .scanner import ScanFilter, Scanner
from .store import RevisionStore
from .transport import LocalTransport, SSHTransport, Transport

__all__ = [
    "Config",
    "RemoteConfig",
    "RetrySettings",
    "Settings",
    "DirdiffManager",
    "DirdiffError",
    "ScanError",
    "RevisionNotFound",
    "StoreCorruption",
    "PlanConflict",
    "TransportError",
    "StaleSourceError",
    "VerificationFailure",
    "FileRecord",
    "Snapshot",
    "ScanResult",
    "DiffResult",
    "Operation",
    "OperationKind",
    "SyncPlan",
    "SyncOutcome",
    "Scanner",
    "ScanFilter",
    "RevisionStore",
    "DiffEngine",
    "diff",
    "SyncPlanner",
    "SyncExecutor",
    "ResumeLog",
    "Transport",
    "LocalTransport",
    "SSHTransport",
    "app",
    "run",
]
