"""ORM models and record shapes of the offline layer."""
from .pending_op import OpKind, OpState, PendingOp
from .record import Activity, Land, MirrorRecord, Production, Record, RecordType, SyncStatus
from .sync_conflict import SyncConflict
from .sync_meta import SyncMeta

__all__ = [
    "Activity",
    "Land",
    "MirrorRecord",
    "OpKind",
    "OpState",
    "PendingOp",
    "Production",
    "Record",
    "RecordType",
    "SyncConflict",
    "SyncMeta",
    "SyncStatus",
]
