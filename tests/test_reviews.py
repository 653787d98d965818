from conftest import auth_headers
from farmmarket.models import OrderStatus, Role
from farmmarket.reviews import personalized_recommendations, recommended_for_product


def recommend(storage, source, target, score):
    with storage.transaction():
        storage.create_product_recommendation(
            source_product_id=source.id,
            recommended_product_id=target.id,
            score=score,
        )


def test_reviews_mark_verified_purchases(client, storage, customer, make_user, make_order):
    order = make_order(OrderStatus.DELIVERED)
    product_id = storage.get_order_items(order.id)[0].product_id

    response = client.post(
        f"/products/{product_id}/reviews",
        json={"rating": 5, "comment": "Crunchy"},
        headers=auth_headers(customer),
    )
    assert response.status_code == 201
    assert response.json()["is_verified_purchase"] is True
    assert response.json()["helpful"] == 0

    response = client.post(
        f"/products/{product_id}/reviews",
        json={"rating": 2},
        headers=auth_headers(make_user(Role.CUSTOMER)),
    )
    assert response.json()["is_verified_purchase"] is False

    reviews = client.get(f"/products/{product_id}/reviews").json()
    assert [r["rating"] for r in reviews] == [5, 2]

    review_id = reviews[0]["id"]
    response = client.post(f"/reviews/{review_id}/helpful", headers=auth_headers(customer))
    assert response.json()["helpful"] == 1


def test_review_validation(client, customer, make_product):
    product = make_product()
    headers = auth_headers(customer)

    assert client.post(f"/products/{product.id}/reviews", json={"rating": 6}, headers=headers).status_code == 422
    assert client.post("/products/999/reviews", json={"rating": 4}, headers=headers).status_code == 404
    assert client.post("/reviews/999/helpful", headers=headers).status_code == 404


def test_product_recommendations_highest_score_first(storage, make_product):
    source = make_product(name="Carrots")
    low = make_product(name="Onions")
    high = make_product(name="Potatoes")
    recommend(storage, source, low, "1.50")
    recommend(storage, source, high, "9.00")

    assert [p.name for p in recommended_for_product(storage, source.id)] == ["Potatoes", "Onions"]
    assert [p.name for p in recommended_for_product(storage, source.id, limit=1)] == ["Potatoes"]


def test_personalized_recommendations(storage, customer, make_product, make_order):
    featured = make_product(name="Berries", featured=True)
    assert personalized_recommendations(storage, customer.id) == [featured]

    order = make_order()
    bought_id = storage.get_order_items(order.id)[0].product_id
    bought = storage.get_product(bought_id)
    suggestion = make_product(name="Dip")
    recommend(storage, bought, suggestion, "5.00")
    recommend(storage, suggestion, bought, "8.00")
    recommend(storage, bought, bought, "3.00")

    assert personalized_recommendations(storage, customer.id) == [suggestion]


def test_recommendation_routes(client, farmer, make_user, make_product):
    source = make_product(name="Carrots")
    target = make_product(name="Hummus")

    response = client.post(
        f"/products/{source.id}/recommendations",
        json={"recommended_product_id": target.id, "score": "7.5", "reason": "Goes well together"},
        headers=auth_headers(make_user(Role.FARMER)),
    )
    assert response.status_code == 403

    response = client.post(
        f"/products/{source.id}/recommendations",
        json={"recommended_product_id": source.id, "score": "7.5"},
        headers=auth_headers(farmer),
    )
    assert response.status_code == 400

    response = client.post(
        f"/products/{source.id}/recommendations",
        json={"recommended_product_id": target.id, "score": "7.5", "reason": "Goes well together"},
        headers=auth_headers(farmer),
    )
    assert response.status_code == 201

    listed = client.get(f"/products/{source.id}/recommendations").json()
    assert [p["id"] for p in listed] == [target.id]
