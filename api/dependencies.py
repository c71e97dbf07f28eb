"""
API依赖项 - 认证、授权与服务装配

Tokens are issued by the auth service; this service only verifies them and
looks the user up through the UserDirectory port.
"""
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from application.dtos.payments import Requester, UserRef
from application.ports.user_directory import UserDirectory
from application.services.payment_service import PaymentApplicationService
from application.services.webhook_service import WebhookIngestionService
from core.config import settings
from core.exceptions import UnauthorizedException
from domain.common.exceptions import ForbiddenException, UserInactiveException
from infrastructure.database import AsyncSessionLocal
from infrastructure.external.payments import payment_gateway_selector
from infrastructure.repositories.audit_repository import SQLAlchemyAuditLogger
from infrastructure.repositories.user_repository import SQLAlchemyUserDirectory
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


# HTTP Bearer for direct API calls
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token authentication",
    auto_error=False,
)


async def get_token(
    bearer_token: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> str:
    """从 Bearer token 中提取 token"""
    if bearer_token and bearer_token.credentials:
        return bearer_token.credentials
    raise UnauthorizedException("Missing authentication credentials")


def decode_user_id(token: str) -> int:
    """校验访问令牌并返回用户ID"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedException("Token has expired") from None
    except jwt.InvalidTokenError:
        raise UnauthorizedException("Invalid authentication credentials") from None

    if payload.get("type", "access") != "access":
        raise UnauthorizedException("Invalid token type")
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise UnauthorizedException("Invalid authentication credentials") from None


def get_user_directory() -> UserDirectory:
    return SQLAlchemyUserDirectory(AsyncSessionLocal)


async def get_current_user(
    token: str = Depends(get_token),
    directory: UserDirectory = Depends(get_user_directory),
) -> UserRef:
    """获取当前登录用户"""
    user = await directory.get_user(decode_user_id(token))
    if user is None:
        raise UnauthorizedException("Invalid authentication credentials")
    if not user.is_active:
        raise UserInactiveException()
    return user


async def get_requester(current_user: UserRef = Depends(get_current_user)) -> Requester:
    return Requester(id=current_user.id, is_privileged=current_user.is_superuser)


async def get_current_superuser(requester: Requester = Depends(get_requester)) -> Requester:
    """获取当前超级管理员用户"""
    if not requester.is_privileged:
        raise ForbiddenException("Superuser privileges required")
    return requester


def get_audit_logger() -> SQLAlchemyAuditLogger:
    return SQLAlchemyAuditLogger(AsyncSessionLocal)


def get_payment_service(
    audit: SQLAlchemyAuditLogger = Depends(get_audit_logger),
) -> PaymentApplicationService:
    return PaymentApplicationService(
        uow_factory=SQLAlchemyUnitOfWork,
        gateways=payment_gateway_selector,
        audit=audit,
    )


def get_webhook_service(
    audit: SQLAlchemyAuditLogger = Depends(get_audit_logger),
) -> WebhookIngestionService:
    return WebhookIngestionService(
        uow_factory=SQLAlchemyUnitOfWork,
        gateways=payment_gateway_selector,
        audit=audit,
    )
