from app.models.branch import Branch, BranchStatus
from app.models.role import Role, ALL_PERMISSIONS
from app.models.user import User, NotificationSubscription
from app.models.count import (
    Count,
    CountDetail,
    CountStatus,
    CountType,
    CountClassification,
    CountPriority,
)
from app.models.request import AdjustmentRequest, RequestStatus
from app.models.folio_sequence import FolioSequence
from app.models.setting import Setting, SettingType
from app.models.audit_log import AuditLog

__all__ = [
    "Branch",
    "BranchStatus",
    "Role",
    "ALL_PERMISSIONS",
    "User",
    "NotificationSubscription",
    "Count",
    "CountDetail",
    "CountStatus",
    "CountType",
    "CountClassification",
    "CountPriority",
    "AdjustmentRequest",
    "RequestStatus",
    "FolioSequence",
    "Setting",
    "SettingType",
    "AuditLog",
]
