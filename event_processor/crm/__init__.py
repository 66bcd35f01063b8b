"""CRM tables touched by consumers."""

from event_processor.crm.repository import (
    ActionHistoryRecord,
    ApprovalRecord,
    CrmRepository,
    DuplicateRecordError,
    EnrollmentRecord,
    SequenceRecord,
)
from event_processor.crm.schema import CrmDb

__all__ = [
    "ActionHistoryRecord",
    "ApprovalRecord",
    "CrmDb",
    "CrmRepository",
    "DuplicateRecordError",
    "EnrollmentRecord",
    "SequenceRecord",
]
