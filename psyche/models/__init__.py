from psyche.models.audit_log import LlmAuditLog
from psyche.models.behavioral_event import BehavioralEventRecord
from psyche.models.credit import CreditLedgerRecord, UsageEventRecord
from psyche.models.profile import FusedProfileRecord, ProfileUpdateAuditRecord

__all__ = [
    "BehavioralEventRecord",
    "CreditLedgerRecord",
    "FusedProfileRecord",
    "LlmAuditLog",
    "ProfileUpdateAuditRecord",
    "UsageEventRecord",
]
