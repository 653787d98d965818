from decimal import Decimal
from pydantic import BaseModel, Field
from typing import List, Optional

# Upper bound of the integer stock column
MAX_STOCK = 2_147_483_647

# ---------- CATEGORY ----------

class CategoryBase(BaseModel):
    name: str = Field(..., min_length=1)
    icon: str
    color: str


class CategoryCreate(CategoryBase):
    pass


class CategoryOut(CategoryBase):
    id: int

    class Config:
        from_attributes = True


# ---------- PRODUCT ----------

class ProductBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str
    price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    unit: str
    stock: int = Field(0, ge=0, le=MAX_STOCK)
    category_id: int
    organic: bool = False
    featured: bool = False
    image_urls: List[str] = []


class ProductCreate(ProductBase):
    pass


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    unit: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0, le=MAX_STOCK)
    category_id: Optional[int] = None
    organic: Optional[bool] = None
    featured: Optional[bool] = None
    image_urls: Optional[List[str]] = None


class ProductOut(ProductBase):
    id: int
    farmer_id: int

    class Config:
        from_attributes = True


# =========================
# CartItem Schemas
# =========================

class CartItemCreate(BaseModel):
    product_id: int
    # range checked by the cart service so it answers 400, not 422
    quantity: int = 1


class CartItemUpdate(BaseModel):
    quantity: int


class CartItemOut(BaseModel):
    id: int
    user_id: int
    product_id: int
    quantity: int
    # None once the listing has been deleted
    product: Optional[ProductOut] = None

    class Config:
        from_attributes = True
