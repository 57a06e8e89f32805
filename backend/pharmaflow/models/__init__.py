from .auth import User, Role, UserRole, Permission, RolePermission, SessionToken
from .security import SecurityEvent
from .workflow import WorkflowStage, WorkflowStageLink, WorkflowTransition, StagePermission, WorkflowHistoryEntry
from .receiving import InvoiceReceiving, InvoiceReceivingLine
from .approvals import ApprovalRecord, QualityControl, WarehouseApproval, LineItemDecision, ManagerApproval
from .audit import AuditLog, Notification, DocumentSequence

__all__ = [
    'User', 'Role', 'UserRole', 'Permission', 'RolePermission', 'SessionToken',
    'SecurityEvent',
    'WorkflowStage', 'WorkflowStageLink', 'WorkflowTransition', 'StagePermission', 'WorkflowHistoryEntry',
    'InvoiceReceiving', 'InvoiceReceivingLine',
    'ApprovalRecord', 'QualityControl', 'WarehouseApproval', 'LineItemDecision', 'ManagerApproval',
    'AuditLog', 'Notification', 'DocumentSequence',
]
