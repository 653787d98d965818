"""
Entity store
------------
Keyed collections for every entity type, backed by one SQLAlchemy session.

Lookups for an absent id return None (deletes return False); they never
raise. Writes only flush, so a caller groups several of them into one unit
with ``transaction()``.
"""

from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import (
    CartItem,
    Category,
    Delivery,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
    ProductRecommendation,
    Review,
    Subscription,
    SubscriptionPayment,
    User,
)


class Storage:

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def transaction(self):
        """Commit everything written inside the block, or nothing."""
        try:
            yield self
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ---------- generic ----------

    def _create(self, model, **fields):
        record = model(**fields)
        self.db.add(record)
        self.db.flush()
        return record

    def _get(self, model, record_id: int):
        return self.db.get(model, record_id)

    def _update(self, model, record_id: int, fields: dict):
        record = self._get(model, record_id)
        if record is None:
            return None
        for key, value in fields.items():
            setattr(record, key, value)
        self.db.flush()
        return record

    # ---------- users ----------

    def get_user(self, user_id: int) -> Optional[User]:
        return self._get(User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self.db.query(User).filter(User.username == username).first()

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email).first()

    def create_user(self, **fields) -> User:
        return self._create(User, **fields)

    # ---------- categories ----------

    def get_category(self, category_id: int) -> Optional[Category]:
        return self._get(Category, category_id)

    def get_categories(self) -> List[Category]:
        return self.db.query(Category).order_by(Category.id).all()

    def create_category(self, **fields) -> Category:
        return self._create(Category, **fields)

    # ---------- products ----------

    def get_product(self, product_id: int) -> Optional[Product]:
        return self._get(Product, product_id)

    def get_products(self, limit: int = 100, offset: int = 0) -> List[Product]:
        return (
            self.db.query(Product)
            .order_by(Product.id)
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_products_by_ids(self, product_ids) -> List[Product]:
        if not product_ids:
            return []
        return (
            self.db.query(Product)
            .filter(Product.id.in_(list(product_ids)))
            .order_by(Product.id)
            .all()
        )

    def get_products_by_category(self, category_id: int, limit: int = 100, offset: int = 0) -> List[Product]:
        return (
            self.db.query(Product)
            .filter(Product.category_id == category_id)
            .order_by(Product.id)
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_products_by_farmer(self, farmer_id: int) -> List[Product]:
        return (
            self.db.query(Product)
            .filter(Product.farmer_id == farmer_id)
            .order_by(Product.id)
            .all()
        )

    def get_featured_products(self) -> List[Product]:
        return (
            self.db.query(Product)
            .filter(Product.featured.is_(True))
            .order_by(Product.id)
            .all()
        )

    def create_product(self, **fields) -> Product:
        return self._create(Product, **fields)

    def update_product(self, product_id: int, **fields) -> Optional[Product]:
        return self._update(Product, product_id, fields)

    def delete_product(self, product_id: int) -> bool:
        product = self.get_product(product_id)
        if product is None:
            return False
        self.db.delete(product)
        self.db.flush()
        return True

    # ---------- cart ----------

    def get_cart_item(self, cart_item_id: int) -> Optional[CartItem]:
        return self._get(CartItem, cart_item_id)

    def get_cart_items(self, user_id: int) -> List[CartItem]:
        return (
            self.db.query(CartItem)
            .filter(CartItem.user_id == user_id)
            .order_by(CartItem.id)
            .all()
        )

    def find_cart_item(self, user_id: int, product_id: int) -> Optional[CartItem]:
        return (
            self.db.query(CartItem)
            .filter(CartItem.user_id == user_id, CartItem.product_id == product_id)
            .first()
        )

    def create_cart_item(self, **fields) -> CartItem:
        return self._create(CartItem, **fields)

    def remove_cart_item(self, cart_item_id: int) -> bool:
        cart_item = self.get_cart_item(cart_item_id)
        if cart_item is None:
            return False
        self.db.delete(cart_item)
        self.db.flush()
        return True

    def clear_cart(self, user_id: int) -> int:
        removed = (
            self.db.query(CartItem)
            .filter(CartItem.user_id == user_id)
            .delete(synchronize_session="fetch")
        )
        self.db.flush()
        return removed

    # ---------- orders ----------

    def get_order(self, order_id: int, for_update: bool = False) -> Optional[Order]:
        if not for_update:
            return self._get(Order, order_id)
        return (
            self.db.query(Order)
            .filter(Order.id == order_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def get_orders_by_customer(self, customer_id: int) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.customer_id == customer_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )

    def get_orders_by_delivery_person(self, delivery_person_id: int) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.delivery_person_id == delivery_person_id)
            .order_by(Order.id)
            .all()
        )

    def get_orders_by_farmer(self, farmer_id: int) -> List[Order]:
        """Orders containing at least one of the farmer's products."""
        product_ids = select(Product.id).where(Product.farmer_id == farmer_id)
        order_ids = select(OrderItem.order_id).where(OrderItem.product_id.in_(product_ids))
        return (
            self.db.query(Order)
            .filter(Order.id.in_(order_ids))
            .order_by(Order.id)
            .all()
        )

    def get_unassigned_orders(self, status: OrderStatus) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.status == status, Order.delivery_person_id.is_(None))
            .order_by(Order.id)
            .all()
        )

    def create_order(self, **fields) -> Order:
        return self._create(Order, **fields)

    def assign_delivery_person(self, order_id: int, delivery_person_id: int) -> bool:
        """
        Compare-and-set: only succeeds while the order has no delivery person.
        """
        updated = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.delivery_person_id.is_(None))
            .update(
                {Order.delivery_person_id: delivery_person_id},
                synchronize_session="fetch",
            )
        )
        self.db.flush()
        return updated == 1

    # ---------- order items ----------

    def get_order_items(self, order_id: int) -> List[OrderItem]:
        return (
            self.db.query(OrderItem)
            .filter(OrderItem.order_id == order_id)
            .order_by(OrderItem.id)
            .all()
        )

    def get_order_items_by_orders(self, order_ids) -> List[OrderItem]:
        if not order_ids:
            return []
        return (
            self.db.query(OrderItem)
            .filter(OrderItem.order_id.in_(list(order_ids)))
            .order_by(OrderItem.id)
            .all()
        )

    def create_order_item(self, **fields) -> OrderItem:
        return self._create(OrderItem, **fields)

    # ---------- deliveries ----------

    def get_delivery(self, delivery_id: int) -> Optional[Delivery]:
        return self._get(Delivery, delivery_id)

    def get_deliveries_by_delivery_person(self, delivery_person_id: int) -> List[Delivery]:
        return (
            self.db.query(Delivery)
            .filter(Delivery.delivery_person_id == delivery_person_id)
            .order_by(Delivery.id)
            .all()
        )

    def get_delivery_for_order(self, delivery_person_id: int, order_id: int) -> Optional[Delivery]:
        return (
            self.db.query(Delivery)
            .filter(
                Delivery.order_id == order_id,
                Delivery.delivery_person_id == delivery_person_id,
            )
            .first()
        )

    def create_delivery(self, **fields) -> Delivery:
        return self._create(Delivery, **fields)

    # ---------- payments ----------

    def get_payment(self, payment_id: int) -> Optional[Payment]:
        return self._get(Payment, payment_id)

    def get_payments_by_order(self, order_id: int) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.order_id == order_id)
            .order_by(Payment.id)
            .all()
        )

    def create_payment(self, **fields) -> Payment:
        return self._create(Payment, **fields)

    def update_payment(self, payment_id: int, **fields) -> Optional[Payment]:
        return self._update(Payment, payment_id, fields)

    def update_payment_status(self, payment_id: int, status: PaymentStatus) -> Optional[Payment]:
        return self._update(Payment, payment_id, {"status": status})

    # ---------- subscriptions ----------

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        return self._get(Subscription, subscription_id)

    def get_subscription_by_farmer(self, farmer_id: int) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.farmer_id == farmer_id)
            .first()
        )

    def get_subscription_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.gateway_subscription_id == gateway_subscription_id)
            .first()
        )

    def create_subscription(self, **fields) -> Subscription:
        return self._create(Subscription, **fields)

    def update_subscription(self, subscription_id: int, **fields) -> Optional[Subscription]:
        return self._update(Subscription, subscription_id, fields)

    def cancel_subscription(self, subscription_id: int) -> Optional[Subscription]:
        return self._update(
            Subscription,
            subscription_id,
            {"is_active": False, "auto_renew": False},
        )

    # ---------- subscription payments ----------

    def get_subscription_payments(self, subscription_id: int) -> List[SubscriptionPayment]:
        return (
            self.db.query(SubscriptionPayment)
            .filter(SubscriptionPayment.subscription_id == subscription_id)
            .order_by(SubscriptionPayment.id)
            .all()
        )

    def find_subscription_payment(
        self,
        subscription_id: int,
        transaction_id: str,
        status: PaymentStatus,
    ) -> Optional[SubscriptionPayment]:
        return (
            self.db.query(SubscriptionPayment)
            .filter(
                SubscriptionPayment.subscription_id == subscription_id,
                SubscriptionPayment.transaction_id == transaction_id,
                SubscriptionPayment.status == status,
            )
            .first()
        )

    def create_subscription_payment(self, **fields) -> SubscriptionPayment:
        return self._create(SubscriptionPayment, **fields)

    # ---------- reviews ----------

    def get_review(self, review_id: int) -> Optional[Review]:
        return self._get(Review, review_id)

    def get_reviews_by_product(self, product_id: int) -> List[Review]:
        return (
            self.db.query(Review)
            .filter(Review.product_id == product_id)
            .order_by(Review.id)
            .all()
        )

    def create_review(self, **fields) -> Review:
        return self._create(Review, **fields)

    def update_review_helpful(self, review_id: int, increment: int) -> Optional[Review]:
        review = self.get_review(review_id)
        if review is None:
            return None
        review.helpful = (review.helpful or 0) + increment
        self.db.flush()
        return review

    # ---------- recommendations ----------

    def get_recommendations_for_products(self, product_ids) -> List[ProductRecommendation]:
        """Highest score first."""
        if not product_ids:
            return []
        return (
            self.db.query(ProductRecommendation)
            .filter(ProductRecommendation.source_product_id.in_(list(product_ids)))
            .order_by(ProductRecommendation.score.desc(), ProductRecommendation.id)
            .all()
        )

    def create_product_recommendation(self, **fields) -> ProductRecommendation:
        return self._create(ProductRecommendation, **fields)
