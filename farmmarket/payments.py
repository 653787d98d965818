# payments.py
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.exc import IntegrityError

from .dependencies import get_current_user, get_payment_gateway, get_storage, require_role
from .exceptions import (
    AuthorizationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from .lifecycle import confirm_order
from .models import (
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Role,
    SubscriptionTier,
    User,
    utcnow,
)
from .storage import Storage
from .stripe_gateway import (
    CheckoutLineItem,
    StripeGateway,
    WebhookSignatureError,
    verify_webhook_signature,
)

load_dotenv()

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

SUBSCRIPTION_PERIOD = timedelta(days=30)

# Gateway subscription states after which it no longer renews
INACTIVE_SUBSCRIPTION_STATES = {"canceled", "unpaid", "incomplete_expired"}
ACTIVE_SUBSCRIPTION_STATES = {"active", "trialing"}


# ---------------------------
# Pydantic Schemas
# ---------------------------
class CheckoutRequest(BaseModel):
    order_id: int
    amount: Decimal = Field(..., max_digits=10, decimal_places=2)
    tip_amount: Optional[Decimal] = Field(None, max_digits=10, decimal_places=2)
    email: EmailStr
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class CheckoutResult(BaseModel):
    success: bool = True
    payment_id: int
    checkout_url: str


class PaymentSchema(BaseModel):
    id: int
    order_id: int
    amount: Decimal
    tip_amount: Decimal
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SubscriptionRequest(BaseModel):
    email: EmailStr
    # checked by the service so an unknown tier answers 400
    tier: str
    price: Decimal = Field(..., max_digits=10, decimal_places=2)


class SubscriptionResult(BaseModel):
    success: bool = True
    subscription_id: int
    checkout_url: str


class SubscriptionSchema(BaseModel):
    id: int
    farmer_id: int
    tier: SubscriptionTier
    price: Decimal
    start_date: datetime
    end_date: datetime
    is_active: bool
    auto_renew: bool
    features: Optional[dict] = None

    class Config:
        from_attributes = True


class SubscriptionCancelResult(BaseModel):
    success: bool = True
    subscription: SubscriptionSchema


class SubscriptionPaymentSchema(BaseModel):
    id: int
    subscription_id: int
    amount: Decimal
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: Optional[str] = None
    billing_date: datetime

    class Config:
        from_attributes = True


# ---------------------------
# Order payments
# ---------------------------
def initiate_checkout(
    storage: Storage,
    gateway: StripeGateway,
    order_id: int,
    customer_id: int,
    amount: Decimal,
    payer_email: str,
    payer_name: str,
    tip_amount: Optional[Decimal] = None,
    description: Optional[str] = None,
) -> CheckoutResult:
    """
    Record a pending payment and open a gateway checkout session for it.
    The order itself only moves once the gateway confirms the payment.
    """
    if amount is None or amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if tip_amount is not None and tip_amount < 0:
        raise ValidationError("Tip amount cannot be negative")

    description = description or f"Payment for order #{order_id}"

    with storage.transaction():
        order = storage.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.customer_id != customer_id:
            raise ConflictError("Order belongs to another customer")
        if order.status != OrderStatus.PENDING:
            raise ConflictError("Only pending orders can be paid")
        if amount < order.total_amount:
            raise ValidationError("Amount is less than the order total")

        payment = storage.create_payment(
            order_id=order.id,
            amount=amount,
            tip_amount=tip_amount or Decimal("0"),
            method=PaymentMethod.CREDIT_CARD,
            status=PaymentStatus.PENDING,
            payment_details={
                "payer_email": payer_email,
                "payer_name": payer_name,
                "description": description,
            },
        )
        payment_id = payment.id

    line_items = [CheckoutLineItem(name=description, amount=amount)]
    if tip_amount and tip_amount > 0:
        line_items.append(CheckoutLineItem(name="Tip", amount=tip_amount))

    try:
        session = gateway.create_checkout_session(
            line_items=line_items,
            success_url=f"{gateway.app_url}/order/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{gateway.app_url}/order/cancel?session_id={{CHECKOUT_SESSION_ID}}",
            customer_email=payer_email,
            metadata={
                "paymentId": str(payment_id),
                "orderId": str(order_id),
                "customerId": str(customer_id),
            },
        )
    except ExternalServiceError as exc:
        logger.error(f"Checkout for order {order_id} failed: {exc.message}")
        with storage.transaction():
            storage.update_payment_status(payment_id, PaymentStatus.FAILED)
        raise

    with storage.transaction():
        storage.update_payment(payment_id, transaction_id=session.id)

    logger.info(f"Payment {payment_id} pending for order {order_id}")
    return CheckoutResult(payment_id=payment_id, checkout_url=session.url)


def on_payment_confirmed(storage: Storage, payment_id: int, order_id: Optional[int] = None) -> bool:
    """
    Mark the payment completed and move its order from pending to confirmed.
    Replays leave both untouched.
    """
    with storage.transaction():
        payment = storage.get_payment(payment_id)
        if payment is None:
            logger.warning(f"Confirmation for unknown payment {payment_id}")
            return False

        if order_id is not None and order_id != payment.order_id:
            logger.warning(
                f"Payment {payment_id} belongs to order {payment.order_id}, "
                f"not {order_id}; using {payment.order_id}"
            )

        if payment.status == PaymentStatus.COMPLETED:
            logger.info(f"Payment {payment_id} already completed")
        else:
            payment.status = PaymentStatus.COMPLETED

        order = storage.get_order(payment.order_id, for_update=True)
        if order is None:
            logger.error(f"Payment {payment_id} references missing order {payment.order_id}")
            return True

        if confirm_order(storage, order):
            logger.info(f"Order {order.id} confirmed by payment {payment_id}")
        elif order.status == OrderStatus.CANCELLED:
            logger.warning(f"Payment {payment_id} completed for cancelled order {order.id}")

    return True


def on_payment_failed_or_expired(storage: Storage, payment_id: int) -> bool:
    """The order stays pending and remains cancellable by its customer."""
    with storage.transaction():
        payment = storage.get_payment(payment_id)
        if payment is None:
            logger.warning(f"Failure notice for unknown payment {payment_id}")
            return False

        if payment.status == PaymentStatus.COMPLETED:
            logger.warning(f"Ignoring failure notice for completed payment {payment_id}")
            return True

        payment.status = PaymentStatus.FAILED

    logger.info(f"Payment {payment_id} failed")
    return True


# ---------------------------
# Farmer subscriptions
# ---------------------------
def parse_tier(value) -> SubscriptionTier:
    try:
        return SubscriptionTier(value)
    except ValueError:
        raise ValidationError("Invalid subscription tier")


def initiate_subscription(
    storage: Storage,
    gateway: StripeGateway,
    farmer_id: int,
    email: str,
    tier,
    price: Decimal,
) -> SubscriptionResult:
    tier = parse_tier(tier)
    if price is None or price <= 0:
        raise ValidationError("Price must be greater than zero")

    now = utcnow()
    fields = {
        "tier": tier,
        "price": price,
        "start_date": now,
        "end_date": now + SUBSCRIPTION_PERIOD,
        "is_active": False,
        "auto_renew": True,
        "features": {},
        "gateway_subscription_id": None,
    }

    try:
        with storage.transaction():
            farmer = storage.get_user(farmer_id)
            if farmer is None or farmer.role != Role.FARMER:
                raise NotFoundError("Farmer not found")

            existing = storage.get_subscription_by_farmer(farmer_id)
            if existing and existing.is_active:
                raise ConflictError("Farmer already has an active subscription")

            # one row per farmer: a lapsed subscription is reset in place
            if existing:
                subscription = storage.update_subscription(existing.id, **fields)
            else:
                subscription = storage.create_subscription(farmer_id=farmer_id, **fields)
            subscription_id = subscription.id
    except IntegrityError:
        raise ConflictError("Farmer already has an active subscription")

    try:
        session = gateway.create_checkout_session(
            line_items=[
                CheckoutLineItem(
                    name=f"Farmer Subscription - {tier.value} Tier",
                    description="Monthly subscription for farmers marketplace",
                    amount=price,
                    recurring_interval="month",
                )
            ],
            success_url=f"{gateway.app_url}/dashboard?subscription=success",
            cancel_url=f"{gateway.app_url}/dashboard?subscription=cancel",
            customer_email=email,
            metadata={
                "subscriptionId": str(subscription_id),
                "farmerId": str(farmer_id),
                "tier": tier.value,
            },
            mode="subscription",
        )
    except ExternalServiceError as exc:
        logger.error(f"Subscription checkout for farmer {farmer_id} failed: {exc.message}")
        raise

    logger.info(f"Subscription {subscription_id} awaiting payment for farmer {farmer_id}")
    return SubscriptionResult(subscription_id=subscription_id, checkout_url=session.url)


def set_subscription_active(
    storage: Storage,
    subscription_id: int,
    is_active: bool,
    **fields,
) -> bool:
    with storage.transaction():
        subscription = storage.update_subscription(subscription_id, is_active=is_active, **fields)
    if subscription is None:
        logger.warning(f"Status event for unknown subscription {subscription_id}")
        return False
    logger.info(f"Subscription {subscription_id} active={is_active}")
    return True


def record_invoice(storage: Storage, subscription_id: int, invoice: dict, paid: bool) -> bool:
    """
    Record one billing attempt. A paid invoice also extends the period and
    reaffirms the subscription; a failed one leaves is_active alone.
    """
    status = PaymentStatus.COMPLETED if paid else PaymentStatus.FAILED
    invoice_id = invoice.get("id")
    amount_cents = invoice.get("amount_paid" if paid else "amount_due") or 0

    with storage.transaction():
        subscription = storage.get_subscription(subscription_id)
        if subscription is None:
            logger.warning(f"Invoice {invoice_id} for unknown subscription {subscription_id}")
            return False

        if invoice_id and storage.find_subscription_payment(subscription.id, invoice_id, status):
            logger.info(f"Invoice {invoice_id} already recorded")
            return True

        if paid and amount_cents <= 0:
            return True

        created = invoice.get("created")
        billing_date = (
            datetime.fromtimestamp(created, timezone.utc).replace(tzinfo=None)
            if created else utcnow()
        )

        storage.create_subscription_payment(
            subscription_id=subscription.id,
            amount=Decimal(amount_cents) / 100,
            method=PaymentMethod.CREDIT_CARD,
            status=status,
            transaction_id=invoice_id,
            billing_date=billing_date,
            details=invoice,
        )

        if paid:
            subscription.end_date = subscription.end_date + SUBSCRIPTION_PERIOD
            subscription.is_active = True

    logger.info(f"Invoice {invoice_id} recorded for subscription {subscription_id}: {status.value}")
    return True


# ---------------------------
# Webhook dispatch
# ---------------------------
def _int_or_none(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _internal_subscription_id(storage: Storage, gateway_subscription: dict) -> Optional[int]:
    metadata = gateway_subscription.get("metadata") or {}
    subscription_id = _int_or_none(metadata.get("subscriptionId"))
    if subscription_id is not None:
        return subscription_id

    gateway_id = gateway_subscription.get("id")
    if gateway_id:
        subscription = storage.get_subscription_by_gateway_id(gateway_id)
        if subscription:
            return subscription.id
    return None


def _invoice_subscription_id(storage: Storage, gateway: StripeGateway, invoice: dict) -> Optional[int]:
    # newer API versions nest subscription details under "parent"
    details = invoice.get("subscription_details") or (
        (invoice.get("parent") or {}).get("subscription_details") or {}
    )
    gateway_id = invoice.get("subscription") or details.get("subscription")

    if gateway_id:
        subscription = storage.get_subscription_by_gateway_id(gateway_id)
        if subscription:
            return subscription.id

    subscription_id = _int_or_none((details.get("metadata") or {}).get("subscriptionId"))
    if subscription_id is not None:
        return subscription_id

    if gateway_id:
        remote = gateway.retrieve_subscription(gateway_id)
        return _int_or_none((remote.get("metadata") or {}).get("subscriptionId"))
    return None


def _checkout_completed(storage, gateway, session: dict) -> bool:
    metadata = session.get("metadata") or {}

    if session.get("mode") == "subscription":
        subscription_id = _int_or_none(metadata.get("subscriptionId"))
        gateway_id = session.get("subscription")
        if subscription_id is None or not gateway_id:
            logger.error("No subscription ID in webhook data")
            return False
        with storage.transaction():
            updated = storage.update_subscription(subscription_id, gateway_subscription_id=gateway_id)
        return updated is not None

    payment_id = _int_or_none(metadata.get("paymentId"))
    if payment_id is None:
        logger.error("No payment ID in webhook data")
        return False
    return on_payment_confirmed(storage, payment_id, _int_or_none(metadata.get("orderId")))


def _checkout_failed(storage, gateway, session: dict) -> bool:
    metadata = session.get("metadata") or {}
    payment_id = _int_or_none(metadata.get("paymentId"))
    if payment_id is None:
        if session.get("mode") == "subscription":
            # the subscription row simply stays inactive
            return True
        logger.error("No payment ID in webhook data")
        return False
    return on_payment_failed_or_expired(storage, payment_id)


def _subscription_created(storage, gateway, gateway_subscription: dict) -> bool:
    subscription_id = _internal_subscription_id(storage, gateway_subscription)
    if subscription_id is None:
        logger.error("No subscription ID in webhook data")
        return False
    return set_subscription_active(
        storage,
        subscription_id,
        True,
        gateway_subscription_id=gateway_subscription.get("id"),
    )


def _subscription_updated(storage, gateway, gateway_subscription: dict) -> bool:
    subscription_id = _internal_subscription_id(storage, gateway_subscription)
    if subscription_id is None:
        logger.error("No subscription ID in webhook data")
        return False

    state = gateway_subscription.get("status")
    auto_renew = not gateway_subscription.get("cancel_at_period_end", False)
    if state in ACTIVE_SUBSCRIPTION_STATES:
        return set_subscription_active(storage, subscription_id, True, auto_renew=auto_renew)
    if state in INACTIVE_SUBSCRIPTION_STATES:
        return set_subscription_active(storage, subscription_id, False, auto_renew=False)

    logger.info(f"Subscription {subscription_id} moved to {state}; no change")
    return True


def _subscription_deleted(storage, gateway, gateway_subscription: dict) -> bool:
    subscription_id = _internal_subscription_id(storage, gateway_subscription)
    if subscription_id is None:
        logger.error("No subscription ID in webhook data")
        return False
    return set_subscription_active(storage, subscription_id, False, auto_renew=False)


def _invoice_paid(storage, gateway, invoice: dict) -> bool:
    subscription_id = _invoice_subscription_id(storage, gateway, invoice)
    if subscription_id is None:
        logger.error("No internal subscription ID in webhook data")
        return False
    return record_invoice(storage, subscription_id, invoice, paid=True)


def _invoice_payment_failed(storage, gateway, invoice: dict) -> bool:
    subscription_id = _invoice_subscription_id(storage, gateway, invoice)
    if subscription_id is None:
        logger.error("No internal subscription ID in webhook data")
        return False
    return record_invoice(storage, subscription_id, invoice, paid=False)


WEBHOOK_HANDLERS = {
    "checkout.session.completed": _checkout_completed,
    "checkout.session.expired": _checkout_failed,
    "checkout.session.async_payment_failed": _checkout_failed,
    "customer.subscription.created": _subscription_created,
    "customer.subscription.updated": _subscription_updated,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.paid": _invoice_paid,
    "invoice.payment_failed": _invoice_payment_failed,
}


def handle_webhook_event(storage: Storage, gateway: StripeGateway, event: dict) -> bool:
    """Dispatch one verified gateway event. Returns whether it was acted on."""
    event_type = event.get("type", "")
    handler = WEBHOOK_HANDLERS.get(event_type)
    if handler is None:
        logger.warning(f"Unhandled event type: {event_type}")
        return False

    logger.info(f"Processing webhook event: {event_type}")
    data_object = (event.get("data") or {}).get("object") or {}
    return handler(storage, gateway, data_object)


# ---------------------------
# Access helpers
# ---------------------------
def _check_payment_access(user: User, order: Optional[Order]) -> None:
    if order is None:
        raise NotFoundError("Order not found")
    if user.role == Role.CUSTOMER and order.customer_id == user.id:
        return
    if user.role == Role.DELIVERY and order.delivery_person_id == user.id:
        return
    raise AuthorizationError("Unauthorized")


def _owned_subscription(storage: Storage, user: User, subscription_id: int):
    subscription = storage.get_subscription(subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    if subscription.farmer_id != user.id:
        raise AuthorizationError("Unauthorized")
    return subscription


async def raw_body(request: Request) -> bytes:
    return await request.body()


# ---------------------------
# Endpoints
# ---------------------------
@router.post("/checkout", response_model=CheckoutResult)
def create_checkout(
    payload: CheckoutRequest,
    storage: Storage = Depends(get_storage),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: User = Depends(require_role(Role.CUSTOMER)),
):
    return initiate_checkout(
        storage,
        gateway,
        order_id=payload.order_id,
        customer_id=current_user.id,
        amount=payload.amount,
        payer_email=payload.email,
        payer_name=payload.name,
        tip_amount=payload.tip_amount,
        description=payload.description,
    )


@router.post("/webhook")
def stripe_webhook(
    payload: bytes = Depends(raw_body),
    stripe_signature: Optional[str] = Header(None),
    storage: Storage = Depends(get_storage),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """
    Always acknowledged: events we cannot verify or do not handle are
    logged, never answered with an error the gateway would retry.
    """
    try:
        verify_webhook_signature(payload, stripe_signature, STRIPE_WEBHOOK_SECRET)
    except WebhookSignatureError as exc:
        logger.warning(f"Webhook signature verification failed: {exc}")
        return {"received": True, "handled": False}

    try:
        event = json.loads(payload)
    except ValueError:
        logger.warning("Webhook payload is not valid JSON")
        return {"received": True, "handled": False}

    if not isinstance(event, dict):
        logger.warning("Webhook payload is not a JSON object")
        return {"received": True, "handled": False}

    event_type = event.get("type")
    try:
        handled = handle_webhook_event(storage, gateway, event)
    except Exception:
        logger.exception(f"Error processing webhook event {event_type}")
        handled = False

    if not handled:
        logger.info(f"Unhandled event type {event_type}")
    return {"received": True, "handled": handled}


@router.post("/subscription", response_model=SubscriptionResult)
def create_subscription(
    payload: SubscriptionRequest,
    storage: Storage = Depends(get_storage),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: User = Depends(require_role(Role.FARMER)),
):
    return initiate_subscription(
        storage,
        gateway,
        farmer_id=current_user.id,
        email=payload.email,
        tier=payload.tier,
        price=payload.price,
    )


@router.get("/subscription/farmer/{farmer_id}", response_model=SubscriptionSchema)
def get_farmer_subscription(
    farmer_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    subscription = storage.get_subscription_by_farmer(farmer_id)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return subscription


@router.post("/subscription/{subscription_id}/cancel", response_model=SubscriptionCancelResult)
def cancel_subscription(
    subscription_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.FARMER)),
):
    _owned_subscription(storage, current_user, subscription_id)
    with storage.transaction():
        subscription = storage.cancel_subscription(subscription_id)
    logger.info(f"Subscription {subscription_id} cancelled by farmer {current_user.id}")
    return SubscriptionCancelResult(subscription=SubscriptionSchema.model_validate(subscription))


@router.get("/subscription/{subscription_id}/payments", response_model=List[SubscriptionPaymentSchema])
def subscription_payments(
    subscription_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.FARMER)),
):
    _owned_subscription(storage, current_user, subscription_id)
    return storage.get_subscription_payments(subscription_id)


@router.get("/order/{order_id}", response_model=List[PaymentSchema])
def order_payments(
    order_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    _check_payment_access(current_user, storage.get_order(order_id))
    return storage.get_payments_by_order(order_id)


@router.get("/{payment_id}", response_model=PaymentSchema)
def get_payment(
    payment_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    payment = storage.get_payment(payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    _check_payment_access(current_user, storage.get_order(payment.order_id))
    return payment
