"""
审计日志数据库模型
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index
from datetime import datetime, timezone

from .base import Base


class AuditLogModel(Base):
    """审计日志：只追加，不修改"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, comment="操作用户ID，系统事件为空")
    action = Column(String(64), nullable=False, comment="动作")
    resource = Column(String(64), nullable=False, comment="资源类型")
    resource_id = Column(String(64), nullable=True, comment="资源ID")
    details = Column(JSON, nullable=True, comment="详情")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )

    __table_args__ = (
        Index("ix_audit_logs_resource", "resource", "resource_id"),
        Index("ix_audit_logs_action", "action"),
    )

    def __repr__(self):
        return f"<AuditLogModel(id={self.id}, action='{self.action}', resource_id='{self.resource_id}')>"
