from decimal import Decimal

import pytest

from conftest import auth_headers
from farmmarket.cart import add_item
from farmmarket.exceptions import EmptyCartError, NotFoundError
from farmmarket.models import Order, OrderItem, OrderStatus, Role
from farmmarket.order import place_order


def test_place_order_snapshots_prices_and_empties_cart(storage, customer, make_product):
    carrots = make_product("2.50", "Carrots")
    eggs = make_product("4.00", "Eggs")
    add_item(storage, customer.id, carrots.id, 2)
    add_item(storage, customer.id, eggs.id, 3)
    add_item(storage, customer.id, carrots.id, 1)

    order = place_order(storage, customer.id, "12 Farm Lane", "back door")

    assert order.status == OrderStatus.PENDING
    assert order.total_amount == Decimal("19.50")
    assert storage.get_cart_items(customer.id) == []
    items = storage.get_order_items(order.id)
    assert len(items) == 2
    assert {item.product_id: item.price for item in items} == {
        carrots.id: Decimal("2.50"),
        eggs.id: Decimal("4.00"),
    }


def test_order_total_is_unaffected_by_later_price_changes(storage, customer, make_product):
    product = make_product("3.00")
    add_item(storage, customer.id, product.id, 2)
    order = place_order(storage, customer.id, "addr")

    with storage.transaction():
        storage.update_product(product.id, price=Decimal("99.00"))

    storage.db.expire_all()
    assert storage.get_order(order.id).total_amount == Decimal("6.00")
    assert storage.get_order_items(order.id)[0].price == Decimal("3.00")


def test_empty_cart_creates_nothing(storage, customer):
    with pytest.raises(EmptyCartError):
        place_order(storage, customer.id, "addr")

    assert storage.db.query(Order).count() == 0
    assert storage.db.query(OrderItem).count() == 0


def test_missing_product_fails_the_whole_order(storage, customer, make_product):
    kept = make_product(name="Kale")
    gone = make_product(name="Leeks")
    add_item(storage, customer.id, kept.id, 1)
    add_item(storage, customer.id, gone.id, 1)
    with storage.transaction():
        storage.delete_product(gone.id)

    with pytest.raises(NotFoundError):
        place_order(storage, customer.id, "addr")

    assert storage.db.query(Order).count() == 0
    assert storage.db.query(OrderItem).count() == 0
    assert len(storage.get_cart_items(customer.id)) == 2


def test_place_order_route(client, customer, make_product, farmer):
    product = make_product("1.25")
    headers = auth_headers(customer)
    client.post("/cart", json={"product_id": product.id, "quantity": 4}, headers=headers)

    response = client.post("/orders", json={"delivery_address": "1 Main St"}, headers=headers)
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert Decimal(str(body["total_amount"])) == Decimal("5.00")
    assert "items" not in body

    response = client.post("/orders", json={"delivery_address": "1 Main St"}, headers=headers)
    assert response.status_code == 400
    assert response.json() == {"detail": "Cart is empty"}

    response = client.post("/orders", json={"delivery_address": "1 Main St"}, headers=auth_headers(farmer))
    assert response.status_code == 403


def test_order_detail_access(client, make_order, make_user, farmer, courier):
    order = make_order(OrderStatus.CONFIRMED, delivery_person=courier)
    owner = order.customer_id

    stranger = make_user(Role.CUSTOMER)
    other_courier = make_user(Role.DELIVERY)
    other_farmer = make_user(Role.FARMER)

    response = client.get(f"/orders/{order.id}", headers=auth_headers(farmer))
    assert response.status_code == 200
    assert response.json()["customer_id"] == owner
    assert len(response.json()["items"]) == 1
    assert response.json()["items"][0]["product"]["name"] == "Carrots"

    assert client.get(f"/orders/{order.id}", headers=auth_headers(courier)).status_code == 200
    for user in (stranger, other_courier, other_farmer):
        assert client.get(f"/orders/{order.id}", headers=auth_headers(user)).status_code == 403
    assert client.get("/orders/999", headers=auth_headers(courier)).status_code == 404


def test_order_listings_by_role(client, customer, farmer, courier, make_order):
    pending = make_order()
    assigned = make_order(OrderStatus.CONFIRMED, delivery_person=courier)
    open_order = make_order(OrderStatus.CONFIRMED)

    mine = client.get("/orders", headers=auth_headers(customer)).json()
    assert [o["id"] for o in mine] == [open_order.id, assigned.id, pending.id]

    delivered_by_me = client.get("/orders", headers=auth_headers(courier)).json()
    assert [o["id"] for o in delivered_by_me] == [assigned.id]

    farmer_orders = client.get("/orders", headers=auth_headers(farmer)).json()
    assert {o["id"] for o in farmer_orders} == {pending.id, assigned.id, open_order.id}

    available = client.get("/orders/available", headers=auth_headers(courier)).json()
    assert [o["id"] for o in available] == [open_order.id]
    assert client.get("/orders/available", headers=auth_headers(customer)).status_code == 403
