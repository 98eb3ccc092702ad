"""API routes exposing billing functionality."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from ..billing import BillingError, Money, PaymentGateway
from ..schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    CouponRedeemRequest,
    CouponRedeemResponse,
    CouponTemplateRequest,
    CouponTemplateResponse,
    CouponValidateRequest,
    CouponValidateResponse,
    ExpireCouponsResponse,
    MintCouponsRequest,
    MintCouponsResponse,
    MoneyPayload,
    ReceiptIssueRequest,
    ReceiptResponse,
    SubscriptionStatusResponse,
    WebhookAckResponse,
)
from ..services.billing import get_billing_service


router = APIRouter(prefix="/api/billing", tags=["billing"])


def _money(payload: MoneyPayload) -> Money:
    try:
        return payload.to_money()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/coupons/validate", response_model=CouponValidateResponse)
def validate_coupon(payload: CouponValidateRequest) -> CouponValidateResponse:
    service = get_billing_service()
    amount = _money(payload.amount)
    try:
        result = service.validate_coupon(payload.code, payload.user_id, amount)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CouponValidateResponse.from_result(result, amount)


@router.post("/coupons/redeem", response_model=CouponRedeemResponse)
def redeem_coupon(payload: CouponRedeemRequest) -> CouponRedeemResponse:
    service = get_billing_service()
    amount = _money(payload.amount)
    try:
        result = service.redeem_coupon(payload.code, payload.user_id, amount, payload.payment_reference)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CouponRedeemResponse.from_result(result)


@router.post("/coupons/templates", response_model=CouponTemplateResponse, status_code=status.HTTP_201_CREATED)
def create_coupon_template(payload: CouponTemplateRequest) -> CouponTemplateResponse:
    service = get_billing_service()
    minimum = _money(payload.min_purchase_amount) if payload.min_purchase_amount else None
    try:
        template = service.create_coupon_template(
            name=payload.name,
            discount_percentage=payload.discount_percentage,
            validity_days=payload.validity_days,
            recipient_category=payload.recipient_category,
            min_purchase_amount=minimum,
            max_usage_count=payload.max_usage_count,
            max_usage_per_user=payload.max_usage_per_user,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CouponTemplateResponse(template=template)


@router.post(
    "/coupons/templates/{template_id}/mint",
    response_model=MintCouponsResponse,
    status_code=status.HTTP_201_CREATED,
)
def mint_coupons(template_id: str, payload: MintCouponsRequest) -> MintCouponsResponse:
    service = get_billing_service()
    try:
        coupons = service.mint_coupons(
            template_id,
            quantity=payload.quantity,
            custom_code=payload.custom_code,
            prefix=payload.prefix,
            recipients=payload.recipients,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return MintCouponsResponse(coupons=coupons)


@router.post("/coupons/expire", response_model=ExpireCouponsResponse)
def expire_coupons() -> ExpireCouponsResponse:
    service = get_billing_service()
    try:
        expired = service.expire_coupons()
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ExpireCouponsResponse(expired=expired)


@router.post("/webhooks/{provider}", response_model=WebhookAckResponse)
async def receive_webhook(provider: PaymentGateway, request: Request) -> WebhookAckResponse:
    service = get_billing_service()
    raw_payload = await request.body()
    try:
        ack = await run_in_threadpool(service.process_webhook, provider, raw_payload, dict(request.headers))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return WebhookAckResponse.from_ack(ack)


@router.get("/subscriptions/{user_id}", response_model=SubscriptionStatusResponse)
def get_subscription_status(user_id: str) -> SubscriptionStatusResponse:
    service = get_billing_service()
    try:
        subscription = service.get_subscription_status(user_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return SubscriptionStatusResponse.from_subscription(subscription)


@router.post("/receipts", response_model=ReceiptResponse)
def issue_receipt(payload: ReceiptIssueRequest) -> ReceiptResponse:
    service = get_billing_service()
    try:
        receipt = service.issue_receipt(
            user_id=payload.user_id,
            provider=payload.provider,
            external_payment_id=payload.external_payment_id,
            amount=_money(payload.amount),
            paid_at=payload.paid_at,
            description=payload.description,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ReceiptResponse.from_receipt(receipt)


@router.get("/receipts/{receipt_number}", response_model=ReceiptResponse)
def get_receipt(receipt_number: str) -> ReceiptResponse:
    service = get_billing_service()
    try:
        receipt = service.get_receipt(receipt_number)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ReceiptResponse.from_receipt(receipt)


@router.post("/checkout", response_model=CheckoutResponse)
def start_checkout(payload: CheckoutRequest) -> CheckoutResponse:
    service = get_billing_service()
    try:
        session = service.initialize_subscription_payment(
            user_id=payload.user_id,
            email=payload.email,
            plan_id=payload.plan_id,
            provider=payload.provider,
            callback_url=payload.callback_url,
            metadata=payload.metadata,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutResponse.from_session(session)
