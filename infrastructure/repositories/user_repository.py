"""
用户目录实现 - 只读访问认证服务维护的 users 表
"""
from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from application.dtos.payments import UserRef
from infrastructure.models.user import UserModel


class SQLAlchemyUserDirectory:
    """UserDirectory 的 SQLAlchemy 实现"""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def get_user(self, user_id: int) -> Optional[UserRef]:
        async with self._session_factory() as session:
            result = await session.execute(select(UserModel).where(UserModel.id == user_id))
            db_user = result.scalar_one_or_none()
        if db_user is None:
            return None
        return UserRef(
            id=db_user.id,
            username=db_user.username,
            email=db_user.email,
            is_active=db_user.is_active,
            is_superuser=db_user.is_superuser,
        )
