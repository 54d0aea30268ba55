from storefront.main import app
from storefront.models.order import OrderStatus, load_order
from storefront.services.errors import GatewayFailure
from storefront.services.payment_gateway import get_payment_gateway

from conftest import auth_headers


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requests_without_token_are_rejected(client, make_order):
    order = make_order()
    res = client.post(f"/api/orders/{order.id}/cancel")
    assert res.status_code == 401
    assert res.json()["error"] == "not_authenticated"


def test_garbage_token_is_rejected(client):
    res = client.get("/api/orders/", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_list_and_get_own_orders(client, make_order, customer, other_customer):
    order = make_order()
    res = client.get("/api/orders/", headers=auth_headers(customer))
    assert res.status_code == 200
    assert [o["id"] for o in res.json()] == [order.id]

    assert client.get(f"/api/orders/{order.id}", headers=auth_headers(customer)).json()["status"] == "ORDER_PLACED"
    assert client.get(f"/api/orders/{order.id}", headers=auth_headers(other_customer)).status_code == 403
    assert client.get("/api/orders/9999", headers=auth_headers(customer)).status_code == 404


def test_cancel_paid_order(client, db, make_order, customer, gateway):
    order = make_order(total=30.0)

    res = client.post(f"/api/orders/{order.id}/cancel", headers=auth_headers(customer))

    assert res.status_code == 200
    body = res.json()
    assert body["refundStatus"] == "REFUNDED"
    assert body["order"]["status"] == "CANCELLED"
    assert body["order"]["refundAmount"] == 30.0
    assert len(gateway.calls) == 1


def test_cancel_delivered_order_conflicts(client, make_order, customer):
    order = make_order(status=OrderStatus.DELIVERED)
    res = client.post(f"/api/orders/{order.id}/cancel", headers=auth_headers(customer))
    assert res.status_code == 409
    assert res.json()["error"] == "invalid_transition"
    assert res.json()["details"] == {"status": "DELIVERED"}


def test_cancel_with_gateway_timeout_still_cancels(client, db, make_order, customer, gateway):
    order = make_order()
    gateway.time_out()

    res = client.post(f"/api/orders/{order.id}/cancel", headers=auth_headers(customer))

    assert res.status_code == 200
    assert res.json()["refundStatus"] == "FAILED"
    db.expire_all()
    assert load_order(db, order.id).status == OrderStatus.CANCELLED


def test_return_request_validation_map(client, make_order, customer):
    order = make_order(status=OrderStatus.DELIVERED, delivered_days_ago=1)
    res = client.post(
        "/api/returns/",
        json={"orderId": order.id, "reason": "", "images": ["javascript:alert(1)"]},
        headers=auth_headers(customer),
    )
    assert res.status_code == 400
    body = res.json()
    assert body["error"] == "validation_error"
    assert body["details"]["reason"] == "Reason is required"
    assert body["details"]["images"] == "Each image must be an http(s) URL"


def test_return_window_expired_response(client, make_order, customer):
    order = make_order(status=OrderStatus.DELIVERED, delivered_days_ago=8)
    res = client.post(
        "/api/returns/", json={"orderId": order.id, "reason": "wrong size"}, headers=auth_headers(customer)
    )
    assert res.status_code == 409
    body = res.json()
    assert body["error"] == "return_window_expired"
    assert body["details"]["maxDays"] == 7
    assert "7 days" in body["message"]


def test_return_requests_are_rate_limited(client, make_order, customer):
    orders = [make_order(status=OrderStatus.DELIVERED, delivered_days_ago=1) for _ in range(6)]
    for order in orders[:5]:
        res = client.post(
            "/api/returns/", json={"orderId": order.id, "reason": "damaged"}, headers=auth_headers(customer)
        )
        assert res.status_code == 200

    res = client.post(
        "/api/returns/", json={"orderId": orders[5].id, "reason": "damaged"}, headers=auth_headers(customer)
    )
    assert res.status_code == 429
    assert res.json()["error"] == "rate_limited"
    assert int(res.headers["Retry-After"]) > 0


def test_return_flow_over_http(client, db, make_order, customer, other_customer, seller):
    order = make_order(status=OrderStatus.DELIVERED, delivered_days_ago=2)
    created = client.post(
        "/api/returns/",
        json={"orderId": order.id, "reason": "Strap snapped", "images": ["https://cdn.example.com/1.jpg"]},
        headers=auth_headers(customer),
    ).json()
    assert created["status"] == "REQUESTED"

    detail = client.get(f"/api/returns/{created['id']}", headers=auth_headers(customer)).json()
    assert detail["order"]["status"] == "RETURN_REQUESTED"
    assert detail["store"]["name"] == "Seller Goods"
    assert client.get(f"/api/returns/{created['id']}", headers=auth_headers(other_customer)).status_code == 403

    assert [r["id"] for r in client.get("/api/returns/", headers=auth_headers(customer)).json()] == [created["id"]]
    assert [r["id"] for r in client.get("/api/admin/returns/", headers=auth_headers(seller)).json()] == [created["id"]]
    assert client.get("/api/admin/returns/", headers=auth_headers(customer)).status_code == 403

    res = client.put(
        f"/api/admin/returns/{created['id']}/status",
        json={"status": "APPROVED", "adminNote": "Send it back"},
        headers=auth_headers(seller),
    )
    assert res.status_code == 200
    assert res.json()["adminNote"] == "Send it back"

    again = client.put(
        f"/api/admin/returns/{created['id']}/status", json={"status": "APPROVED"}, headers=auth_headers(seller)
    )
    assert again.status_code == 409

    bad = client.put(
        f"/api/admin/returns/{created['id']}/status", json={"status": "REQUESTED"}, headers=auth_headers(seller)
    )
    assert bad.status_code == 400
    assert "status" in bad.json()["details"]


def test_store_fulfilment_over_http(client, make_order, seller, customer):
    order = make_order()
    res = client.put(f"/api/store/orders/{order.id}/status", json={"status": "PROCESSING"}, headers=auth_headers(seller))
    assert res.status_code == 200
    assert res.json()["status"] == "PROCESSING"

    res = client.put(f"/api/store/orders/{order.id}/status", json={"status": "DELIVERED"}, headers=auth_headers(customer))
    assert res.status_code == 403


def test_admin_refund_over_http(client, make_order, admin, seller, gateway):
    order = make_order(status=OrderStatus.DELIVERED, total=80.0)

    assert client.post(f"/api/admin/orders/{order.id}/refund", json={}, headers=auth_headers(seller)).status_code == 403

    res = client.post(
        f"/api/admin/orders/{order.id}/refund", json={"amount": 20.0, "reason": "Late"}, headers=auth_headers(admin)
    )
    assert res.status_code == 200
    body = res.json()
    assert body["refundId"] == "re_1"
    assert body["amountRefunded"] == 20.0
    assert body["order"]["status"] == "REFUNDED"

    again = client.post(f"/api/admin/orders/{order.id}/refund", json={}, headers=auth_headers(admin))
    assert again.status_code == 409
    assert again.json()["error"] == "already_refunded"


def test_store_refund_amount_over_total(client, make_order, seller, gateway):
    order = make_order(status=OrderStatus.DELIVERED, total=10.0)
    res = client.post(f"/api/store/orders/{order.id}/refund", json={"amount": 10.5}, headers=auth_headers(seller))
    assert res.status_code == 400
    assert "amount" in res.json()["details"]
    assert gateway.calls == []


def test_gateway_failure_is_bad_gateway(client, db, make_order, admin, gateway):
    order = make_order(status=OrderStatus.DELIVERED)
    gateway.fail_with = GatewayFailure("Payment gateway rejected the refund: insufficient balance")

    res = client.post(f"/api/admin/orders/{order.id}/refund", json={}, headers=auth_headers(admin))

    assert res.status_code == 502
    assert res.json()["error"] == "gateway_failure"
    db.expire_all()
    assert load_order(db, order.id).refunded_at is None


def test_unconfigured_gateway_fails_loudly(client, make_order, admin):
    app.dependency_overrides.pop(get_payment_gateway)
    order = make_order(status=OrderStatus.DELIVERED)
    res = client.post(f"/api/admin/orders/{order.id}/refund", json={}, headers=auth_headers(admin))
    assert res.status_code == 502
    assert res.json()["message"] == "Payment gateway is not configured"


def test_over_long_escaped_reason_does_not_use_a_return_slot(client, make_order, customer, limiter):
    order = make_order(status=OrderStatus.DELIVERED, delivered_days_ago=1)
    res = client.post(
        "/api/returns/", json={"orderId": order.id, "reason": "&" * 100}, headers=auth_headers(customer)
    )
    assert res.status_code == 400
    assert "reason" in res.json()["details"]
    assert limiter.allow(f"{customer.id}:return_request", 5, 24 * 60 * 60).remaining == 4


def test_return_refund_and_history_over_http(client, db, make_order, customer, other_customer, seller, admin, gateway):
    order = make_order(status=OrderStatus.DELIVERED, delivered_days_ago=2, total=45.0)
    created = client.post(
        "/api/returns/", json={"orderId": order.id, "reason": "Strap snapped"}, headers=auth_headers(customer)
    ).json()

    early = client.post(f"/api/admin/returns/{created['id']}/refund", json={}, headers=auth_headers(seller))
    assert early.status_code == 409
    assert gateway.calls == []

    client.put(f"/api/admin/returns/{created['id']}/status", json={"status": "APPROVED"}, headers=auth_headers(seller))
    assert client.post(
        f"/api/admin/returns/{created['id']}/refund", json={}, headers=auth_headers(customer)
    ).status_code == 403

    res = client.post(f"/api/admin/returns/{created['id']}/refund", json={}, headers=auth_headers(seller))
    assert res.status_code == 200
    body = res.json()
    assert body["refundId"] == "re_1"
    assert body["amountRefunded"] == 45.0
    assert body["order"]["status"] == "REFUNDED"

    history = client.get("/api/refunds/", headers=auth_headers(customer)).json()
    assert [r["orderId"] for r in history] == [order.id]
    assert history[0]["reason"] == "Return refund"
    assert history[0]["initiatedBy"] == seller.id
    assert history[0]["order"]["status"] == "REFUNDED"

    assert len(client.get("/api/refunds/", headers=auth_headers(admin)).json()) == 1
    assert client.get("/api/refunds/", headers=auth_headers(other_customer)).json() == []
    assert client.get("/api/refunds/").status_code == 401
