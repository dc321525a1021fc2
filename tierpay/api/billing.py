"""
Payment API routes.

User surface (caller identity from the gateway):
- POST /api/payments/{provider}/initialize
- GET  /api/payments/{provider}/verify/{reference}
- POST /api/payments/subscription/cancel
- POST /api/payments/subscription/change

Provider surface (signature-verified):
- POST /api/payments/{provider}/webhook

Operator surface (X-Admin-Key):
- POST /api/payments/manual
"""
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from tierpay.core.auth import AdminActor, get_current_user_id, require_admin
from tierpay.core.logging import log_event
from tierpay.features.billing.provider import PaymentReference
from tierpay.features.billing.service import SubscriptionOrchestrator, get_orchestrator
from tierpay.models.billing import BillingCycle, ConfirmOutcome

router = APIRouter(prefix="/payments", tags=["payments"])


class InitializeRequest(BaseModel):
    plan: str = Field(..., min_length=1)
    billing_cycle: BillingCycle


class ChangePlanRequest(BaseModel):
    new_plan: str = Field(..., min_length=1)
    new_billing_cycle: BillingCycle
    provider: Optional[str] = None


class ManualPaymentRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    plan: str = Field(..., min_length=1)
    billing_cycle: BillingCycle
    payment_method: str = Field(..., min_length=1, description="cash, bank_transfer, ...")


class PaymentReferenceResponse(BaseModel):
    provider: str
    reference: str
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    status: str

    @classmethod
    def from_reference(cls, ref: PaymentReference) -> "PaymentReferenceResponse":
        return cls(
            provider=ref.provider,
            reference=ref.reference,
            authorization_url=ref.authorization_url,
            access_code=ref.access_code,
            status=ref.status,
        )


class WebhookAck(BaseModel):
    received: bool = True
    outcome: Optional[ConfirmOutcome] = None


@router.post("/subscription/cancel")
def cancel_subscription(
    user_id: str = Depends(get_current_user_id),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.cancel_subscription(user_id)


@router.post("/subscription/change", response_model=PaymentReferenceResponse)
def change_plan(
    body: ChangePlanRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    reference = orchestrator.change_plan(user_id, body.new_plan, body.new_billing_cycle.value, body.provider)
    return PaymentReferenceResponse.from_reference(reference)


@router.post("/manual")
def record_manual_payment(
    body: ManualPaymentRequest,
    actor: AdminActor = Depends(require_admin),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    log_event(
        "info",
        "admin.manual_payment",
        user_id=body.user_id,
        extra={"actor": actor.actor_id, "amount": str(body.amount), "plan": body.plan},
    )
    return orchestrator.record_manual_payment(
        body.user_id,
        body.amount,
        body.plan,
        body.billing_cycle.value,
        body.payment_method,
    )


@router.post("/{provider}/initialize", response_model=PaymentReferenceResponse)
def initialize_payment(
    provider: str,
    body: InitializeRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    reference = orchestrator.initialize_payment(user_id, body.plan, body.billing_cycle.value, provider)
    return PaymentReferenceResponse.from_reference(reference)


@router.get("/{provider}/verify/{reference}", response_model=ConfirmOutcome)
def verify_payment(
    provider: str,
    reference: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.verify_payment(provider, reference)


@router.post("/{provider}/webhook", response_model=WebhookAck)
async def payment_webhook(
    provider: str,
    request: Request,
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """
    Provider webhook receiver.

    The raw body is needed for signature verification. Duplicate deliveries
    are acknowledged with an already_processed outcome; ignored event types
    are acknowledged with no outcome.
    """
    body = await request.body()
    headers = dict(request.headers)
    outcome = await run_in_threadpool(orchestrator.handle_webhook, provider, headers, body)
    return WebhookAck(outcome=outcome)
