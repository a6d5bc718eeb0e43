from datetime import timedelta

from shared.utils import utcnow

from conftest import bearer, fake_webhook, run

USER = bearer("user-1")
OTHER = bearer("user-2")
ADMIN = bearer("admin-1", role="admin")

TEE = {"productId": "tee-1", "color": "Black", "size": "M"}
ADDRESS = {"street": "12 MG Road", "city": "Bengaluru", "state": "Karnataka", "pincode": "560001"}


def add_tee(client, quantity=2, headers=USER):
    return client.post("/cart/items", json={"userId": "user-1", "quantity": quantity, **TEE}, headers=headers)


def checkout_ready(client) -> dict:
    add_tee(client)
    response = client.put("/cart/user-1/address", json=ADDRESS, headers=USER)
    assert response.status_code == 200
    return response.json()["data"]


def pay(client, cart, method="fake"):
    response = client.post("/payments", json={
        "userId": "user-1", "cartId": cart["id"], "paymentMethod": method, "amount": cart["totalAmount"],
    }, headers=USER)
    assert response.status_code == 200, response.text
    return response.json()["data"]


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"] == "in-memory"
    assert body["dependencies"]["gateways"] == "cod, fake, stripe"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_authentication_is_required(client):
    assert client.get("/cart/user-1").status_code == 422

    response = client.get("/cart/user-1", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "error": "Could not validate credentials",
        "details": {"code": "Unauthorized"},
    }


def test_cart_lifecycle_over_http(client):
    response = add_tee(client, quantity=2)
    assert response.status_code == 201
    cart = response.json()["data"]
    assert cart["userId"] == "user-1"
    assert cart["items"][0]["unitPrice"] == 499.5
    assert cart["totalAmount"] == 1098.0

    response = client.put("/cart/items/quantity", json={"userId": "user-1", "quantity": 1, **TEE}, headers=USER)
    assert response.json()["data"]["items"][0]["quantity"] == 1

    total = client.get("/cart/user-1/total", headers=USER).json()["data"]
    assert total["itemCount"] == 1
    assert total["isEmpty"] is False

    response = client.request("DELETE", "/cart/items", json={"userId": "user-1", **TEE}, headers=USER)
    assert response.status_code == 200
    assert response.json()["data"]["items"] == []


def test_replace_cart(client):
    response = client.post("/cart", json={
        "userId": "user-1",
        "items": [{"quantity": 1, **TEE}, {"productId": "hoodie-1", "color": "Grey", "size": "M", "quantity": 2}],
    }, headers=USER)
    assert response.status_code == 200
    assert [i["quantity"] for i in response.json()["data"]["items"]] == [1, 2]


def test_acting_for_another_user_is_forbidden(client):
    response = add_tee(client, headers=OTHER)
    assert response.status_code == 403
    assert response.json()["details"]["code"] == "Forbidden"

    assert add_tee(client, headers=ADMIN).status_code == 201


def test_insufficient_stock_reports_availability(client):
    response = add_tee(client, quantity=6)
    assert response.status_code == 409
    body = response.json()
    assert body["details"] == {"code": "InsufficientStock", "available": 5}


def test_quantity_must_be_positive(client):
    assert add_tee(client, quantity=0).status_code == 422


def test_address_defaults_country(client):
    add_tee(client)
    response = client.put("/cart/user-1/address", json=ADDRESS, headers=USER)
    assert response.json()["data"]["shippingAddress"]["country"] == "India"

    response = client.put("/cart/user-1/address", json={**ADDRESS, "city": ""}, headers=USER)
    assert response.status_code == 400


def test_missing_cart_is_not_found(client):
    response = client.get("/cart/user-1", headers=USER)
    assert response.status_code == 404
    assert response.json()["details"]["code"] == "NotFound"


def test_inventory_endpoints(client):
    variant = {"productId": "cap-1", "color": "Red", "size": "Free", "price": 250, "stock": 4}
    assert client.put("/inventory/variants", json=variant, headers=USER).status_code == 403
    assert client.put("/inventory/variants", json=variant, headers=ADMIN).status_code == 200

    response = client.get("/inventory/variants/cap-1/Red/Free")
    assert response.json()["data"]["stock"] == 4
    assert client.get("/inventory/variants/cap-1/Blue/Free").status_code == 404


def test_coupon_admin_and_apply(client):
    expiry = (utcnow() + timedelta(days=7)).isoformat()
    coupon = {"couponCode": "SAVE10", "couponAmount": 10, "expiryDate": expiry}
    assert client.post("/coupons", json=coupon, headers=USER).status_code == 403
    response = client.post("/coupons", json=coupon, headers=ADMIN)
    assert response.status_code == 201
    coupon_id = response.json()["data"]["id"]

    assert [c["code"] for c in client.get("/coupons/active").json()["data"]] == ["SAVE10"]

    cart = add_tee(client).json()["data"]
    response = client.post("/coupons/apply", json={
        "userId": "user-1", "cartId": cart["id"], "couponCode": "SAVE10",
    }, headers=USER)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["discountApplied"] == 10
    assert data["newTotal"] == 1088.0
    assert data["cart"]["couponCode"] == "SAVE10"

    response = client.post("/coupons/apply", json={
        "userId": "user-1", "cartId": cart["id"], "couponId": coupon_id,
    }, headers=USER)
    assert response.status_code == 400
    assert response.json()["details"]["code"] == "AlreadyUsedByUser"

    response = client.patch(f"/coupons/{coupon_id}", json={
        "changes": [{"field": "isActive", "value": False}],
    }, headers=ADMIN)
    assert response.json()["data"]["isActive"] is False


def test_payment_and_webhook_flow(client):
    cart = checkout_ready(client)
    payment = pay(client, cart)
    assert payment["status"] == "Initiated"
    assert payment["redirectUrl"].startswith("https://fake.gateway/pay/")

    signed = {"X-Gateway-Signature": "test-signature"}
    body = fake_webhook("Completed", payment["transactionId"])
    response = client.post("/payments/webhook/fake", content=body, headers=signed)
    assert response.status_code == 200
    ack = response.json()
    assert ack["success"] is True
    assert ack["outcome"] == "completed"
    assert ack["paymentReferenceId"] == payment["paymentReferenceId"]

    replay = client.post("/payments/webhook/fake", content=body, headers=signed).json()
    assert replay["outcome"] == "duplicate"
    assert replay["orderId"] == ack["orderId"]

    orders = client.get("/orders", headers=USER).json()["data"]
    assert [o["orderId"] for o in orders] == [ack["orderId"]]
    assert orders[0]["paymentStatus"] == "Completed"

    status = client.get(f"/payments/{payment['paymentReferenceId']}", headers=USER).json()["data"]
    assert status["orderId"] == ack["orderId"]
    assert client.get(f"/payments/{payment['paymentReferenceId']}", headers=OTHER).status_code == 403

    response = client.post(f"/orders/{ack['orderId']}/cancel", json={"reason": "Changed my mind"}, headers=USER)
    assert response.status_code == 400
    assert response.json()["details"]["code"] == "PaymentAlreadyCaptured"


def test_rejected_webhooks_are_still_acknowledged(client):
    cart = checkout_ready(client)
    payment = pay(client, cart)
    body = fake_webhook("Completed", payment["transactionId"])

    response = client.post("/payments/webhook/fake", content=body, headers={"X-Gateway-Signature": "forged"})
    assert response.status_code == 200
    assert response.json()["outcome"] == "rejected"

    response = client.post("/payments/webhook/unknown", content=body)
    assert response.json()["outcome"] == "unknown_gateway"


def test_payment_amount_must_match_cart(client):
    cart = checkout_ready(client)
    response = client.post("/payments", json={
        "userId": "user-1", "cartId": cart["id"], "paymentMethod": "fake", "amount": 1,
    }, headers=USER)
    assert response.status_code == 400


def test_verify_endpoint(client, fake_gateway):
    from commerce.models import PaymentStatus

    payment = pay(client, checkout_ready(client))
    fake_gateway.statuses[payment["orderRef"]] = PaymentStatus.COMPLETED
    response = client.post(f"/payments/{payment['paymentReferenceId']}/verify", headers=USER)
    assert response.json()["data"]["status"] == "Completed"
    assert response.json()["data"]["orderId"]


def test_cash_on_delivery_order_lifecycle(client):
    payment = pay(client, checkout_ready(client), method="cod")
    order_id = payment["orderId"]

    order = client.get(f"/orders/{order_id}", headers=USER).json()["data"]
    assert order["status"] == "Order Placed"
    assert order["paymentStatus"] == "Pending"
    assert client.get(f"/orders/{order_id}", headers=OTHER).status_code == 403

    response = client.put(f"/orders/{order_id}/status", json={"status": "Processing"}, headers=USER)
    assert response.status_code == 403
    response = client.put(f"/orders/{order_id}/status", json={"status": "Processing"}, headers=ADMIN)
    assert response.json()["data"]["status"] == "Processing"

    response = client.post(f"/orders/{order_id}/cancel", json={"reason": "Ordered by mistake"}, headers=USER)
    assert response.status_code == 200
    cancelled = response.json()["data"]
    assert cancelled["status"] == "Cancelled"
    assert cancelled["cancelledBy"] == "user"

    response = client.post(f"/orders/{order_id}/cancel", json={}, headers=USER)
    assert response.status_code == 400
    assert response.json()["details"]["code"] == "InvalidState"


def test_cancellation_reasons(client):
    reasons = client.get("/orders/cancellation-reasons").json()["data"]["reasons"]
    assert "Changed my mind" in reasons
    assert reasons[-1] == "Other"


def test_refresh_and_logout(client, core):
    tokens = run(core.tokens.issue("user-1"))

    response = client.post("/auth/refresh", json={"refreshToken": tokens["refresh_token"]})
    assert response.status_code == 200
    rotated = response.json()["data"]
    assert rotated["tokenType"] == "bearer"
    assert client.post("/auth/refresh", json={"refreshToken": tokens["refresh_token"]}).status_code == 401

    headers = {"Authorization": f"Bearer {rotated['accessToken']}"}
    response = client.post("/auth/logout", json={"refreshToken": rotated["refreshToken"]}, headers=headers)
    assert response.status_code == 200

    response = client.get("/orders", headers=headers)
    assert response.status_code == 401
    assert response.json()["error"] == "Token has been revoked"


def test_admin_sweeps(client):
    assert client.post("/admin/sweeps", headers=USER).status_code == 403
    response = client.post("/admin/sweeps", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["data"] == {
        "expired": 0, "settled": 0, "ordersRetried": 0, "couponsDeactivated": 0, "cartsReleased": 0,
    }
