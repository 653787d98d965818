import logging
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from .dependencies import get_current_user, get_storage, require_role
from .exceptions import AuthorizationError, EmptyCartError, NotFoundError
from .lifecycle import assign_delivery_person, change_order_status
from .models import Order, OrderStatus, Role, User
from .storage import Storage
from .store_schema import ProductOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


# =====================================================
# Pydantic Schemas
# =====================================================

class OrderItemSchema(BaseModel):
    id: int
    order_id: int
    product_id: int
    quantity: int
    price: Decimal
    product: Optional[ProductOut] = None

    class Config:
        from_attributes = True


class OrderSchema(BaseModel):
    id: int
    customer_id: int
    status: OrderStatus
    total_amount: Decimal
    delivery_address: str
    delivery_notes: Optional[str] = None
    delivery_person_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class OrderDetailSchema(OrderSchema):
    items: List[OrderItemSchema]


class PlaceOrderSchema(BaseModel):
    delivery_address: str = Field(..., min_length=1, max_length=255)
    delivery_notes: Optional[str] = None


class OrderStatusUpdateSchema(BaseModel):
    # checked against OrderStatus by the lifecycle so bad values answer 400
    status: str


# =====================================================
# Service Logic
# =====================================================

def place_order(
    storage: Storage,
    customer_id: int,
    delivery_address: str,
    delivery_notes: Optional[str] = None,
) -> Order:
    """
    Turn the customer's cart into an order with one line per cart item.

    Product existence is checked and prices are snapshotted in the same
    transaction that writes the order and empties the cart, so either all
    of it happens or none of it does.
    """
    with storage.transaction():
        cart_items = storage.get_cart_items(customer_id)
        if not cart_items:
            raise EmptyCartError()

        lines = []
        total_amount = Decimal("0")
        for item in cart_items:
            product = storage.get_product(item.product_id)
            if product is None:
                raise NotFoundError(f"Product {item.product_id} not found")

            price = Decimal(product.price)
            total_amount += price * item.quantity
            lines.append((item.product_id, item.quantity, price))

        order = storage.create_order(
            customer_id=customer_id,
            total_amount=total_amount,
            status=OrderStatus.PENDING,
            delivery_address=delivery_address,
            delivery_notes=delivery_notes,
        )

        for product_id, quantity, price in lines:
            storage.create_order_item(
                order_id=order.id,
                product_id=product_id,
                quantity=quantity,
                price=price,
            )

        storage.clear_cart(customer_id)

    logger.info(
        f"Order {order.id} placed by customer {customer_id}: "
        f"{len(lines)} lines, total {total_amount}"
    )
    return order


def list_orders(storage: Storage, user: User) -> List[Order]:
    if user.role == Role.CUSTOMER:
        return storage.get_orders_by_customer(user.id)
    if user.role == Role.DELIVERY:
        return storage.get_orders_by_delivery_person(user.id)
    return storage.get_orders_by_farmer(user.id)


def _farmer_has_product_in(storage: Storage, farmer_id: int, order: Order) -> bool:
    product_ids = {item.product_id for item in storage.get_order_items(order.id)}
    return any(
        product.farmer_id == farmer_id
        for product in storage.get_products_by_ids(product_ids)
    )


def check_order_access(storage: Storage, user: User, order: Order) -> None:
    if user.role == Role.CUSTOMER and order.customer_id != user.id:
        raise AuthorizationError("Unauthorized")
    if user.role == Role.DELIVERY and order.delivery_person_id != user.id:
        raise AuthorizationError("Unauthorized")
    if user.role == Role.FARMER and not _farmer_has_product_in(storage, user.id, order):
        raise AuthorizationError("Unauthorized")


def order_items_out(storage: Storage, order_id: int) -> List[OrderItemSchema]:
    items = storage.get_order_items(order_id)
    products = {
        product.id: product
        for product in storage.get_products_by_ids({item.product_id for item in items})
    }
    return [
        OrderItemSchema(
            id=item.id,
            order_id=item.order_id,
            product_id=item.product_id,
            quantity=item.quantity,
            price=item.price,
            product=ProductOut.model_validate(products[item.product_id])
            if item.product_id in products else None,
        )
        for item in items
    ]


def order_detail(storage: Storage, user: User, order_id: int) -> OrderDetailSchema:
    order = storage.get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")

    check_order_access(storage, user, order)

    detail = OrderSchema.model_validate(order).model_dump()
    return OrderDetailSchema(**detail, items=order_items_out(storage, order.id))


# =====================================================
# API Routes
# =====================================================

@router.post(
    "",
    response_model=OrderSchema,
    status_code=status.HTTP_201_CREATED
)
def create_order(
    data: PlaceOrderSchema,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.CUSTOMER)),
):
    return place_order(storage, current_user.id, data.delivery_address, data.delivery_notes)


@router.get("", response_model=List[OrderSchema])
def my_orders(
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    return list_orders(storage, current_user)


@router.get("/available", response_model=List[OrderSchema])
def available_orders(
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.DELIVERY)),
):
    """Confirmed orders nobody has picked up yet."""
    return storage.get_unassigned_orders(OrderStatus.CONFIRMED)


@router.get("/{order_id}", response_model=OrderDetailSchema)
def get_order(
    order_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    return order_detail(storage, current_user, order_id)


@router.patch("/{order_id}/status", response_model=OrderSchema)
def update_order_status(
    order_id: int,
    data: OrderStatusUpdateSchema,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    return change_order_status(storage, current_user, order_id, data.status)


@router.patch("/{order_id}/delivery", response_model=OrderSchema)
def assign_delivery(
    order_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.DELIVERY)),
):
    return assign_delivery_person(storage, current_user, order_id)
