"""
支付API路由 - FastAPI表现层

Keep this thin: authentication and request shaping only, no SDK details.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from api.dependencies import (
    get_current_superuser,
    get_payment_service,
    get_requester,
    get_webhook_service,
)
from application.dtos.payments import (
    CapturePaymentRequest,
    CreatedPaymentDTO,
    CreatePayment,
    PaymentDTO,
    RefundOutcomeDTO,
    RefundPaymentRequest,
    Requester,
    WebhookAck,
)
from application.services.payment_service import PaymentApplicationService
from application.services.webhook_service import WebhookIngestionService
from core.config import settings
from core.response import PaginatedData, Response as ApiResponse, paginated_response, success_response
from core.settings import payment_settings
from domain.payment.entity import PaymentStatus, Provider
from infrastructure.external.payments import SIGNATURE_HEADERS


router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post(
    "/",
    summary="创建支付",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[CreatedPaymentDTO],
)
async def create_payment(
    payload: CreatePayment,
    requester: Requester = Depends(get_requester),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    """
    通过当前启用的支付渠道创建支付

    - **amount**: 金额（主币种单位，最多两位小数）
    - **currency**: USD / INR / EUR / GBP
    - **payment_method**: 可选支付方式
    """
    created = await service.create_payment(requester, payload)
    return success_response(data=created, message="Payment created")


@router.get("/", summary="我的支付列表", response_model=ApiResponse[PaginatedData[PaymentDTO]])
async def list_my_payments(
    page: int = Query(1, ge=1),
    size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    requester: Requester = Depends(get_requester),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    items, total = await service.list_payments(requester, page=page, size=size, status=status_filter)
    return paginated_response(items=items, total=total, page=page, size=size)


@router.get("/admin/all", summary="所有支付（管理员）", response_model=ApiResponse[PaginatedData[PaymentDTO]])
async def list_all_payments(
    page: int = Query(1, ge=1),
    size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    requester: Requester = Depends(get_current_superuser),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    items, total = await service.list_payments(
        requester, page=page, size=size, status=status_filter, all_users=True
    )
    return paginated_response(items=items, total=total, page=page, size=size)


@router.get("/{payment_id}", summary="支付详情", response_model=ApiResponse[PaymentDTO])
async def get_payment(
    payment_id: str,
    requester: Requester = Depends(get_requester),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    payment = await service.get_payment(payment_id, requester)
    return success_response(data=payment)


@router.post("/{payment_id}/capture", summary="确认扣款", response_model=ApiResponse[PaymentDTO])
async def capture_payment(
    payment_id: str,
    payload: Optional[CapturePaymentRequest] = None,
    requester: Requester = Depends(get_requester),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    """未传 amount 时全额扣款"""
    amount = payload.amount if payload else None
    payment = await service.capture_payment(payment_id, requester, amount)
    return success_response(data=payment, message="Payment captured")


@router.post("/{payment_id}/refund", summary="退款", response_model=ApiResponse[RefundOutcomeDTO])
async def refund_payment(
    payment_id: str,
    payload: Optional[RefundPaymentRequest] = None,
    requester: Requester = Depends(get_requester),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    """未传 amount 时退还剩余全部可退金额"""
    outcome = await service.refund_payment(payment_id, requester, payload or RefundPaymentRequest())
    return success_response(data=outcome, message="Refund created")


@router.post("/{payment_id}/sync", summary="与渠道同步状态", response_model=ApiResponse[PaymentDTO])
async def sync_payment(
    payment_id: str,
    requester: Requester = Depends(get_requester),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    payment = await service.reconcile_payment(payment_id, requester)
    return success_response(data=payment)


@router.post("/webhooks/{provider}", summary="支付渠道回调", response_model=ApiResponse[WebhookAck])
async def payments_webhook(
    provider: str,
    request: Request,
    service: WebhookIngestionService = Depends(get_webhook_service),
):
    """Unauthenticated; trust comes from the provider signature over the raw body."""
    name = Provider.parse(provider)
    limit = payment_settings.webhook.max_body_bytes
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Webhook body too large")
    raw_body = await request.body()
    if len(raw_body) > limit:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Webhook body too large")

    signature = request.headers.get(SIGNATURE_HEADERS[name])
    ack = await service.ingest(name, raw_body, signature)
    return success_response(data=ack, message="Duplicate event ignored" if ack.duplicate else "Webhook received")
