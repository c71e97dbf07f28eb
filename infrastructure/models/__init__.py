"""Infrastructure models package exports."""
from .base import Base, metadata
from .user import UserModel
from .payment import PaymentModel, RefundModel, WebhookEventModel
from .audit_log import AuditLogModel

__all__ = [
    "Base",
    "metadata",
    "UserModel",
    "PaymentModel",
    "RefundModel",
    "WebhookEventModel",
    "AuditLogModel",
]
