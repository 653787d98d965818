import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from .dependencies import get_storage, require_role
from .exceptions import AuthorizationError, NotFoundError
from .models import Product, Role, User
from .storage import Storage
from .store_schema import (
    CategoryCreate,
    CategoryOut,
    ProductCreate,
    ProductOut,
    ProductUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter()


DEFAULT_CATEGORIES = [
    {"name": "Vegetables", "icon": "carrot", "color": "#2C7A39"},
    {"name": "Fruits", "icon": "apple-alt", "color": "#DC3545"},
    {"name": "Dairy", "icon": "egg", "color": "#F7B538"},
    {"name": "Grains", "icon": "wheat-awn", "color": "#D4A24C"},
    {"name": "Herbs", "icon": "seedling", "color": "#28A745"},
]


def seed_categories(storage: Storage) -> int:
    """Create the default categories when none exist yet."""
    if storage.get_categories():
        return 0
    with storage.transaction():
        for category in DEFAULT_CATEGORIES:
            storage.create_category(**category)
    logger.info(f"Seeded {len(DEFAULT_CATEGORIES)} default categories")
    return len(DEFAULT_CATEGORIES)


def _owned_product(storage: Storage, user: User, product_id: int) -> Product:
    product = storage.get_product(product_id)
    if product is None:
        raise NotFoundError("Product not found")
    if product.farmer_id != user.id:
        raise AuthorizationError("You can only modify your own products")
    return product


def _check_category(storage: Storage, category_id: Optional[int]) -> None:
    if category_id is not None and storage.get_category(category_id) is None:
        raise NotFoundError("Category not found")


# ---------- CATEGORY ----------
@router.get("/categories", response_model=List[CategoryOut])
def read_categories(storage: Storage = Depends(get_storage)):
    return storage.get_categories()


@router.post(
    "/categories",
    status_code=status.HTTP_201_CREATED,
    response_model=CategoryOut
)
def create_category(
    category: CategoryCreate,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.FARMER)),
):
    with storage.transaction():
        db_category = storage.create_category(**category.model_dump())
    return db_category


@router.get("/categories/{category_id}", response_model=CategoryOut)
def read_category(category_id: int, storage: Storage = Depends(get_storage)):
    category = storage.get_category(category_id)
    if not category:
        raise NotFoundError("Category not found")
    return category


# ---------- PRODUCT ----------
@router.get("/products", response_model=List[ProductOut])
def read_products(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    category_id: Optional[int] = None,
    storage: Storage = Depends(get_storage),
):
    if category_id is not None:
        return storage.get_products_by_category(category_id, limit=limit, offset=offset)
    return storage.get_products(limit=limit, offset=offset)


@router.get("/products/featured", response_model=List[ProductOut])
def read_featured_products(storage: Storage = Depends(get_storage)):
    return storage.get_featured_products()


@router.get("/farmer/products", response_model=List[ProductOut])
def read_farmer_products(
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.FARMER)),
):
    return storage.get_products_by_farmer(current_user.id)


@router.post(
    "/products",
    status_code=status.HTTP_201_CREATED,
    response_model=ProductOut
)
def create_product(
    product: ProductCreate,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.FARMER)),
):
    _check_category(storage, product.category_id)
    with storage.transaction():
        db_product = storage.create_product(
            **product.model_dump(),
            farmer_id=current_user.id,
        )
    logger.info(f"Product {db_product.id} listed by farmer {current_user.id}")
    return db_product


@router.get("/products/{product_id}", response_model=ProductOut)
def read_product(product_id: int, storage: Storage = Depends(get_storage)):
    product = storage.get_product(product_id)
    if not product:
        raise NotFoundError("Product not found")
    return product


@router.put("/products/{product_id}", response_model=ProductOut)
def update_product(
    product_id: int,
    product: ProductUpdate,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.FARMER)),
):
    _owned_product(storage, current_user, product_id)
    changes = product.model_dump(exclude_unset=True)
    _check_category(storage, changes.get("category_id"))

    with storage.transaction():
        db_product = storage.update_product(product_id, **changes)
    return db_product


@router.delete("/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_product(
    product_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(require_role(Role.FARMER)),
):
    _owned_product(storage, current_user, product_id)
    with storage.transaction():
        storage.delete_product(product_id)
    logger.info(f"Product {product_id} removed by farmer {current_user.id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
