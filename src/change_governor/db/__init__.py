"""
Database module for policy, action, approval and snapshot persistence.

Exports:
    ActionDB: Async context manager for action operations
    ApprovalDB: Async context manager for pending approvals
    PolicyStore: Async context manager for settings and rules
    SnapshotStore: Async context manager for append-only snapshots
"""

from change_governor.db.actions import ActionDB
from change_governor.db.approvals import ApprovalDB
from change_governor.db.policy import PolicyStore
from change_governor.db.snapshots import SnapshotStore

__all__ = ["ActionDB", "ApprovalDB", "PolicyStore", "SnapshotStore"]
