import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from .dependencies import get_current_user, get_storage, require_role
from .exceptions import AuthorizationError, NotFoundError, ValidationError
from .models import OrderStatus, Product, Role, User
from .storage import Storage
from .store_schema import ProductOut

logger = logging.getLogger(__name__)

router = APIRouter(tags=["reviews"])


# ---------- Schemas ----------

class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class ReviewOut(BaseModel):
    id: int
    product_id: int
    user_id: int
    rating: int
    comment: Optional[str] = None
    created_at: datetime
    helpful: int
    is_verified_purchase: bool

    class Config:
        from_attributes = True


class RecommendationCreate(BaseModel):
    recommended_product_id: int
    score: Decimal = Field(..., ge=0, max_digits=5, decimal_places=2)
    reason: Optional[str] = None


class RecommendationOut(BaseModel):
    id: int
    source_product_id: int
    recommended_product_id: int
    score: Decimal
    reason: Optional[str] = None

    class Config:
        from_attributes = True


# ---------- Service Logic ----------

def purchased_product_ids(storage: Storage, user_id: int, delivered_only: bool = False) -> set:
    orders = storage.get_orders_by_customer(user_id)
    if delivered_only:
        orders = [order for order in orders if order.status == OrderStatus.DELIVERED]
    items = storage.get_order_items_by_orders([order.id for order in orders])
    return {item.product_id for item in items}


def _recommended_products(storage: Storage, recommendations, exclude: set, limit: int) -> List[Product]:
    """Products in recommendation order, each at most once."""
    ordered_ids = []
    for recommendation in recommendations:
        product_id = recommendation.recommended_product_id
        if product_id in exclude or product_id in ordered_ids:
            continue
        ordered_ids.append(product_id)

    products = {product.id: product for product in storage.get_products_by_ids(ordered_ids)}
    return [products[product_id] for product_id in ordered_ids if product_id in products][:limit]


def recommended_for_product(storage: Storage, product_id: int, limit: int = 5) -> List[Product]:
    recommendations = storage.get_recommendations_for_products([product_id])
    return _recommended_products(storage, recommendations, {product_id}, limit)


def personalized_recommendations(storage: Storage, user_id: int, limit: int = 10) -> List[Product]:
    """
    Recommendations for everything the user has ordered, minus what they
    already bought. Users without orders get the featured products.
    """
    if not storage.get_orders_by_customer(user_id):
        return storage.get_featured_products()[:limit]

    purchased = purchased_product_ids(storage, user_id)
    recommendations = storage.get_recommendations_for_products(purchased)
    return _recommended_products(storage, recommendations, purchased, limit)


def _existing_product(storage: Storage, product_id: int) -> Product:
    product = storage.get_product(product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


# ---------- Routes ----------

@router.get("/products/{product_id}/reviews", response_model=List[ReviewOut])
def product_reviews(product_id: int, storage: Storage = Depends(get_storage)):
    return storage.get_reviews_by_product(product_id)


@router.post(
    "/products/{product_id}/reviews",
    response_model=ReviewOut,
    status_code=status.HTTP_201_CREATED,
)
def create_review(
    product_id: int,
    data: ReviewCreate,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    _existing_product(storage, product_id)
    verified = product_id in purchased_product_ids(storage, current_user.id, delivered_only=True)

    with storage.transaction():
        review = storage.create_review(
            product_id=product_id,
            user_id=current_user.id,
            rating=data.rating,
            comment=data.comment,
            is_verified_purchase=verified,
        )
    return review


@router.post("/reviews/{review_id}/helpful", response_model=ReviewOut)
def mark_review_helpful(
    review_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    with storage.transaction():
        review = storage.update_review_helpful(review_id, 1)
    if review is None:
        raise NotFoundError("Review not found")
    return review


@router.get("/products/{product_id}/recommendations", response_model=List[ProductOut])
def product_recommendations(
    product_id: int,
    limit: int = Query(5, ge=1, le=50),
    storage: Storage = Depends(get_storage),
):
    _existing_product(storage, product_id)
    return recommended_for_product(storage, product_id, limit)


@router.post(
    "/products/{product_id}/recommendations",
    response_model=RecommendationOut,
    status_code=status.HTTP_201_CREATED,
)
def create_recommendation(
    product_id: int,
    data: RecommendationCreate,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.FARMER)),
):
    source = _existing_product(storage, product_id)
    if source.farmer_id != current_user.id:
        raise AuthorizationError("You can only modify your own products")
    if data.recommended_product_id == product_id:
        raise ValidationError("A product cannot recommend itself")
    _existing_product(storage, data.recommended_product_id)

    with storage.transaction():
        recommendation = storage.create_product_recommendation(
            source_product_id=product_id,
            recommended_product_id=data.recommended_product_id,
            score=data.score,
            reason=data.reason,
        )
    return recommendation


@router.get("/recommendations", response_model=List[ProductOut])
def my_recommendations(
    limit: int = Query(10, ge=1, le=50),
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    return personalized_recommendations(storage, current_user.id, limit)
