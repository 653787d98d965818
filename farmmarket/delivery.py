from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from .dependencies import get_storage, require_role
from .exceptions import AuthorizationError, NotFoundError
from .lifecycle import change_delivery_status
from .models import Delivery, OrderStatus, Role, User
from .order import OrderDetailSchema, OrderSchema, OrderStatusUpdateSchema, order_items_out
from .storage import Storage

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


# =====================================================
# Pydantic Schemas
# =====================================================

class DeliverySchema(BaseModel):
    id: int
    delivery_person_id: int
    order_id: int
    status: OrderStatus
    scheduled_time: datetime
    start_time: Optional[datetime] = None
    completed_time: Optional[datetime] = None
    route_info: Optional[dict] = None

    class Config:
        from_attributes = True


class DeliveryWithOrderSchema(DeliverySchema):
    order: Optional[OrderSchema] = None


class DeliveryDetailSchema(DeliverySchema):
    order: Optional[OrderDetailSchema] = None


# =====================================================
# Service Logic
# =====================================================

def _owned_delivery(storage: Storage, user: User, delivery_id: int) -> Delivery:
    delivery = storage.get_delivery(delivery_id)
    if delivery is None:
        raise NotFoundError("Delivery not found")
    if delivery.delivery_person_id != user.id:
        raise AuthorizationError("Unauthorized")
    return delivery


def delivery_detail(storage: Storage, user: User, delivery_id: int) -> DeliveryDetailSchema:
    delivery = _owned_delivery(storage, user, delivery_id)

    detail = DeliverySchema.model_validate(delivery).model_dump()
    order = storage.get_order(delivery.order_id)
    if order is None:
        return DeliveryDetailSchema(**detail)

    order_out = OrderDetailSchema(
        **OrderSchema.model_validate(order).model_dump(),
        items=order_items_out(storage, order.id),
    )
    return DeliveryDetailSchema(**detail, order=order_out)


# =====================================================
# API Routes
# =====================================================

@router.get("", response_model=List[DeliveryWithOrderSchema])
def my_deliveries(
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.DELIVERY)),
):
    return [
        DeliveryWithOrderSchema(
            **DeliverySchema.model_validate(delivery).model_dump(),
            order=OrderSchema.model_validate(delivery.order) if delivery.order else None,
        )
        for delivery in storage.get_deliveries_by_delivery_person(current_user.id)
    ]


@router.get("/{delivery_id}", response_model=DeliveryDetailSchema)
def get_delivery(
    delivery_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.DELIVERY)),
):
    return delivery_detail(storage, current_user, delivery_id)


@router.patch("/{delivery_id}/status", response_model=DeliverySchema)
def update_delivery_status(
    delivery_id: int,
    data: OrderStatusUpdateSchema,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.DELIVERY)),
):
    return change_delivery_status(storage, current_user, delivery_id, data.status)
