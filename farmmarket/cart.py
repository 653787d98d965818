from typing import List, Optional

from fastapi import APIRouter, Depends, Response, status

from .dependencies import get_current_user, get_storage
from .exceptions import NotFoundError, ValidationError
from .models import CartItem, Product, User
from .storage import Storage
from .store_schema import (
    CartItemCreate,
    CartItemOut,
    CartItemUpdate,
    ProductOut,
)


router = APIRouter(
    prefix="/cart",
    tags=["cart"],
)


# Largest quantity a single cart line may hold
MAX_QUANTITY = 10_000


# ---------- Service Logic ----------

def _check_quantity(quantity) -> int:
    # bool is an int subclass
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Quantity must be a positive integer")
    if quantity > MAX_QUANTITY:
        raise ValidationError(f"Quantity cannot exceed {MAX_QUANTITY}")
    return quantity


def _owned_cart_item(storage: Storage, user_id: int, cart_item_id: int) -> CartItem:
    cart_item = storage.get_cart_item(cart_item_id)
    if cart_item is None or cart_item.user_id != user_id:
        raise NotFoundError("Cart item not found")
    return cart_item


def cart_item_out(cart_item: CartItem, product: Optional[Product]) -> CartItemOut:
    return CartItemOut(
        id=cart_item.id,
        user_id=cart_item.user_id,
        product_id=cart_item.product_id,
        quantity=cart_item.quantity,
        product=ProductOut.model_validate(product) if product else None,
    )


def add_item(storage: Storage, user_id: int, product_id: int, quantity: int) -> CartItem:
    """Add to the cart, folding into an existing line for the same product."""
    quantity = _check_quantity(quantity)

    with storage.transaction():
        if storage.get_product(product_id) is None:
            raise NotFoundError("Product not found")

        cart_item = storage.find_cart_item(user_id, product_id)
        if cart_item:
            cart_item.quantity = _check_quantity(cart_item.quantity + quantity)
        else:
            cart_item = storage.create_cart_item(
                user_id=user_id,
                product_id=product_id,
                quantity=quantity,
            )

    return cart_item


def update_quantity(storage: Storage, user_id: int, cart_item_id: int, quantity: int) -> CartItem:
    quantity = _check_quantity(quantity)

    with storage.transaction():
        cart_item = _owned_cart_item(storage, user_id, cart_item_id)
        cart_item.quantity = quantity

    return cart_item


def remove_item(storage: Storage, user_id: int, cart_item_id: int) -> None:
    with storage.transaction():
        cart_item = _owned_cart_item(storage, user_id, cart_item_id)
        storage.remove_cart_item(cart_item.id)


def clear(storage: Storage, user_id: int) -> int:
    with storage.transaction():
        removed = storage.clear_cart(user_id)
    return removed


def list_items(storage: Storage, user_id: int) -> List[CartItemOut]:
    cart_items = storage.get_cart_items(user_id)
    products = {
        product.id: product
        for product in storage.get_products_by_ids({item.product_id for item in cart_items})
    }
    return [cart_item_out(item, products.get(item.product_id)) for item in cart_items]


# ---------- Routes ----------

@router.get("", response_model=List[CartItemOut])
def get_cart(
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    return list_items(storage, current_user.id)


@router.post("", response_model=CartItemOut, status_code=status.HTTP_201_CREATED)
def add_item_to_cart(
    data: CartItemCreate,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    cart_item = add_item(storage, current_user.id, data.product_id, data.quantity)
    return cart_item_out(cart_item, storage.get_product(cart_item.product_id))


@router.put("/{item_id}", response_model=CartItemOut)
def update_cart_item(
    item_id: int,
    data: CartItemUpdate,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    cart_item = update_quantity(storage, current_user.id, item_id, data.quantity)
    return cart_item_out(cart_item, storage.get_product(cart_item.product_id))


@router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_cart_item(
    item_id: int,
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    remove_item(storage, current_user.id, item_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
def clear_cart(
    storage: Storage = Depends(get_storage),
    current_user: User = Depends(get_current_user),
):
    clear(storage, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
