"""
审计日志实现 - 独立会话写入，失败只记日志
"""
from __future__ import annotations

from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from application.dtos.payments import AuditEntry
from core.logging_config import get_logger
from infrastructure.models.audit_log import AuditLogModel


logger = get_logger(__name__)


class SQLAlchemyAuditLogger:
    """AuditLogger 的 SQLAlchemy 实现

    每条审计记录使用独立的会话与事务，与业务事务互不影响。
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def record(self, entry: AuditEntry) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        AuditLogModel(
                            user_id=entry.user_id,
                            action=entry.action,
                            resource=entry.resource,
                            resource_id=entry.resource_id,
                            details=entry.details,
                        )
                    )
        except SQLAlchemyError as exc:
            logger.error(
                "audit_log_failed",
                action=entry.action,
                resource_id=entry.resource_id,
                error=str(exc),
            )
