"""
Order / delivery status lifecycle
---------------------------------
pending -> confirmed -> processing -> out_for_delivery -> delivered,
with cancelled reachable from every non-terminal status.

pending -> confirmed belongs to the payment gate alone. Every other edge is
checked against the caller's role and ownership, and an order's status
change is mirrored onto its delivery record in the same transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .models import Delivery, Order, OrderStatus, Role, User, utcnow
from .storage import Storage

logger = logging.getLogger(__name__)


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Edges a delivery person may drive on an order assigned to them
DELIVERY_PROGRESS = frozenset({
    (OrderStatus.CONFIRMED, OrderStatus.PROCESSING),
    (OrderStatus.PROCESSING, OrderStatus.OUT_FOR_DELIVERY),
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED),
})

# Placeholder scheduling policy for new deliveries
DELIVERY_SCHEDULE_OFFSET = timedelta(hours=24)


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError("Invalid status")


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(role: Role, current: OrderStatus, target: OrderStatus) -> bool:
    """Role-level permission for one edge, ownership aside."""
    if role == Role.CUSTOMER:
        return target == OrderStatus.CANCELLED and not is_terminal(current)
    if role == Role.DELIVERY:
        return (current, target) in DELIVERY_PROGRESS
    # farmers have no order-status authority
    return False


def authorize_transition(user: User, order: Order, target: OrderStatus) -> None:
    if user.role == Role.CUSTOMER:
        if order.customer_id != user.id:
            raise AuthorizationError("Unauthorized")
        if target != OrderStatus.CANCELLED:
            raise AuthorizationError("Customers can only cancel orders")
    elif user.role == Role.DELIVERY:
        if order.delivery_person_id != user.id:
            raise AuthorizationError("Order is not assigned to you")
    else:
        raise AuthorizationError("Farmers cannot change order status")

    if not can_transition(user.role, order.status, target):
        raise AuthorizationError(
            f"Cannot change order from {order.status.value} to {target.value}"
        )


def schedule_delivery(now: datetime) -> datetime:
    return now + DELIVERY_SCHEDULE_OFFSET


def _apply_status(storage: Storage, order: Order, target: OrderStatus) -> Optional[Delivery]:
    """Set the order status and mirror it onto the assigned delivery."""
    order.status = target

    if order.delivery_person_id is None:
        return None

    delivery = storage.get_delivery_for_order(order.delivery_person_id, order.id)
    if delivery is None:
        logger.warning(f"Order {order.id} is assigned but has no delivery record")
        return None

    now = utcnow()
    delivery.status = target
    if target == OrderStatus.OUT_FOR_DELIVERY and delivery.start_time is None:
        delivery.start_time = now
    if target == OrderStatus.DELIVERED:
        delivery.completed_time = now
    return delivery


def change_order_status(storage: Storage, user: User, order_id: int, status) -> Order:
    target = parse_status(status)

    with storage.transaction():
        order = storage.get_order(order_id, for_update=True)
        if order is None:
            raise NotFoundError("Order not found")

        previous = order.status
        authorize_transition(user, order, target)
        _apply_status(storage, order, target)

    logger.info(
        f"Order {order_id}: {previous.value} -> {target.value} by {user.role.value} {user.id}"
    )
    return order


def change_delivery_status(storage: Storage, user: User, delivery_id: int, status) -> Delivery:
    """Drive the delivery's order through the same transitions."""
    target = parse_status(status)

    delivery = storage.get_delivery(delivery_id)
    if delivery is None:
        raise NotFoundError("Delivery not found")
    if delivery.delivery_person_id != user.id:
        raise AuthorizationError("Unauthorized")

    change_order_status(storage, user, delivery.order_id, target)
    return delivery


def assign_delivery_person(storage: Storage, user: User, order_id: int) -> Order:
    """Self-assignment of a delivery person to a confirmed, unassigned order."""
    if user.role != Role.DELIVERY:
        raise AuthorizationError("Access denied")

    with storage.transaction():
        order = storage.get_order(order_id, for_update=True)
        if order is None:
            raise NotFoundError("Order not found")

        if order.delivery_person_id is not None:
            raise ConflictError("Order already has a delivery person assigned")
        if order.status != OrderStatus.CONFIRMED:
            raise ConflictError("Only confirmed orders can be assigned")

        if not storage.assign_delivery_person(order.id, user.id):
            raise ConflictError("Order already has a delivery person assigned")

        storage.create_delivery(
            delivery_person_id=user.id,
            order_id=order.id,
            status=OrderStatus.CONFIRMED,
            scheduled_time=schedule_delivery(utcnow()),
            route_info={},
        )

    logger.info(f"Order {order_id} assigned to delivery person {user.id}")
    return order


def confirm_order(storage: Storage, order: Order) -> bool:
    """
    pending -> confirmed on behalf of the payment gate. Runs inside the
    caller's transaction; returns False when there is nothing to advance.
    """
    if order.status != OrderStatus.PENDING:
        return False
    _apply_status(storage, order, OrderStatus.CONFIRMED)
    return True
