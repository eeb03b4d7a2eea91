"""
Backup, verification and restore for Keepsake.

Provides the backup pipeline (collect, archive, commit), the verification
engine (parallel digest checks), the restore engine (per-kind
reconstruction) and the BackupEngine facade tying them to a target.
"""

from keepsake.backup.engine import BackupEngine
from keepsake.backup.pipeline import BackupPipeline, BackupResult, PipelineState
from keepsake.backup.restore import RestoreEngine, RestoreResult
from keepsake.backup.verification import HashMismatchError, VerificationEngine, VerifyResult

__all__ = [
    "BackupEngine",
    "BackupPipeline",
    "BackupResult",
    "PipelineState",
    "RestoreEngine",
    "RestoreResult",
    "VerificationEngine",
    "VerifyResult",
    "HashMismatchError",
]
