"""Roster documents and their store."""

from atcroster.roster.models import (
    Controller,
    ExamResult,
    Facility,
    PromotionRecord,
    RoleAssignment,
    TransferRequest,
    TransferStatus,
)
from atcroster.roster.store import RosterStore

__all__ = [
    "Controller",
    "ExamResult",
    "Facility",
    "PromotionRecord",
    "RoleAssignment",
    "RosterStore",
    "TransferRequest",
    "TransferStatus",
]
