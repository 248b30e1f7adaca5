# Overview: HTTP-level tests for the JSON API (status codes, error mapping, command headers).

from conftest import checkout_payload
from stockroom.services import ledger_service


def _create_order(client, product, quantity=1, **headers):
    return client.post(
        "/api/orders",
        json={
            "items": [{"product_id": product.id, "quantity": quantity, "unit_price_cents": product.price_cents}],
            "customer_email": "ada@example.com",
        },
        headers=headers,
    )


class TestHealth:
    def test_health_ok(self, client, db_session):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["balance_view"]["status"] == "healthy"


class TestStockRoutes:
    def test_post_and_read_movement(self, client, make_product):
        product = make_product()
        resp = client.post(
            f"/api/stock/{product.id}/movements",
            json={"movement_type": "incoming", "quantity": 10, "reason": "Delivery"},
            headers={"X-Actor": "clerk-7"},
        )
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["quantity_on_hand"] == 10
        assert body["movement"]["created_by"] == "clerk-7"

        resp = client.get(f"/api/stock/{product.id}")
        assert resp.get_json()["quantity_on_hand"] == 10

    def test_insufficient_stock_is_409(self, client, make_product):
        product = make_product(stock=1)
        resp = client.post(
            f"/api/stock/{product.id}/movements",
            json={"movement_type": "OUTGOING", "quantity": 2},
        )
        assert resp.status_code == 409
        body = resp.get_json()
        assert body["code"] == "insufficient_stock"
        assert body["retryable"] is False

    def test_unknown_field_is_400(self, client, make_product):
        product = make_product()
        resp = client.post(
            f"/api/stock/{product.id}/movements",
            json={"movement_type": "INCOMING", "quantity": 1, "delta": 99},
        )
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "validation_error"

    def test_unknown_product_is_404(self, client, db_session):
        resp = client.get("/api/stock/424242")
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "not_found"

    def test_adjust(self, client, make_product):
        product = make_product(stock=10)
        resp = client.post(f"/api/stock/{product.id}/adjust", json={"target_balance": 7, "reason": "Count"})
        assert resp.status_code == 201
        assert resp.get_json()["movement"]["quantity"] == -3

        resp = client.post(f"/api/stock/{product.id}/adjust", json={"target_balance": 7, "reason": "Count"})
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "no_op"

    def test_as_of_must_parse(self, client, make_product):
        product = make_product(stock=1)
        resp = client.get(f"/api/stock/{product.id}?as_of=yesterday")
        assert resp.status_code == 400

    def test_non_object_body_is_400(self, client, make_product):
        product = make_product()
        resp = client.post(f"/api/stock/{product.id}/movements", json=[1, 2, 3])
        assert resp.status_code == 400


class TestOrderRoutes:
    def test_create_and_get(self, client, make_product):
        product = make_product(stock=3, price_cents=1500)
        resp = _create_order(client, product, 2)
        assert resp.status_code == 201
        order = resp.get_json()["order"]
        assert order["status"] == "Draft"
        assert order["order_total_cents"] == 3000
        assert order["allowed_transitions"] == ["Paid", "Cancelled"]

        resp = client.get(f"/api/orders/{order['uuid']}")
        assert resp.status_code == 200
        assert len(resp.get_json()["order"]["items"]) == 1

    def test_transition_flow_and_replay(self, client, make_product, gateway):
        product = make_product(stock=3)
        uuid = _create_order(client, product, 2).get_json()["order"]["uuid"]

        resp = client.post(f"/api/orders/{uuid}/transitions", json={
            "target_status": "Paid", "checkout": checkout_payload(),
        })
        assert resp.status_code == 201
        assert ledger_service.current_stock(product.id) == 1

        headers = {"Idempotency-Key": "confirm-http-1"}
        first = client.post(f"/api/orders/{uuid}/transitions", json={"target_status": "Confirmed"}, headers=headers)
        second = client.post(f"/api/orders/{uuid}/transitions", json={"target_status": "Confirmed"}, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.get_json()["replayed"] is True
        assert second.get_json()["event"]["id"] == first.get_json()["event"]["id"]
        assert len(gateway.sent) == 1

    def test_invalid_transition_is_409(self, client, make_product):
        uuid = _create_order(client, make_product(stock=1)).get_json()["order"]["uuid"]
        resp = client.post(f"/api/orders/{uuid}/transitions", json={"target_status": "Complete"})
        assert resp.status_code == 409
        body = resp.get_json()
        assert body["code"] == "invalid_transition"
        assert body["details"]["allowed"] == ["Paid", "Cancelled"]

    def test_gateway_failure_is_503(self, client, make_product, gateway):
        from stockroom.services.notification_gateway import SendResult

        uuid = _create_order(client, make_product(stock=1)).get_json()["order"]["uuid"]
        client.post(f"/api/orders/{uuid}/transitions", json={"target_status": "Paid", "checkout": checkout_payload()})
        gateway.fail_with = SendResult(success=False, error="timeout", timed_out=True)

        resp = client.post(f"/api/orders/{uuid}/transitions", json={"target_status": "Confirmed"})
        assert resp.status_code == 503
        body = resp.get_json()
        assert body["code"] == "downstream_unavailable"
        assert body["retryable"] is True
        assert client.get(f"/api/orders/{uuid}").get_json()["order"]["status"] == "Paid"

    def test_malformed_checkout_is_400(self, client, make_product):
        product = make_product(stock=1)
        uuid = _create_order(client, product).get_json()["order"]["uuid"]
        resp = client.post(f"/api/orders/{uuid}/transitions", json={
            "target_status": "Paid", "checkout": checkout_payload(payment={"method": 5}),
        })
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "validation_error"
        assert ledger_service.current_stock(product.id) == 1

    def test_stale_expected_status_is_409(self, client, make_product):
        uuid = _create_order(client, make_product(stock=1)).get_json()["order"]["uuid"]
        resp = client.post(
            f"/api/orders/{uuid}/transitions",
            json={"target_status": "Cancelled", "expected_status": "Paid"},
        )
        assert resp.status_code == 409
        body = resp.get_json()
        assert body["code"] == "concurrent_modification"
        assert body["retryable"] is True

    def test_timeline(self, client, make_product):
        uuid = _create_order(client, make_product(stock=1)).get_json()["order"]["uuid"]
        resp = client.post(
            f"/api/orders/{uuid}/events",
            json={"event_type": "support_ticket", "data": {"ticket_id": "T-1", "subject": "Help", "status": "open"}},
        )
        assert resp.status_code == 201

        body = client.get(f"/api/orders/{uuid}/timeline").get_json()
        assert [e["event_type"] for e in body["events"]] == ["support_ticket", "status_change"]
        assert body["stats"]["support_tickets"] == 1
        assert body["status_history"][0]["status"] == "Draft"

    def test_missing_order_is_404(self, client, db_session):
        resp = client.get("/api/orders/does-not-exist/timeline")
        assert resp.status_code == 404


class TestPurchaseOrderRoutes:
    def test_receive_line_replay(self, client, make_product, supplier):
        product = make_product()
        resp = client.post("/api/purchase-orders", json={
            "supplier_id": supplier.id,
            "items": [{"product_id": product.id, "quantity_ordered": 5, "unit_cost_cents": 100}],
        })
        assert resp.status_code == 201
        po_id = resp.get_json()["purchase_order"]["id"]

        assert client.post(f"/api/purchase-orders/{po_id}/approve").status_code == 200

        headers = {"Idempotency-Key": "rcv-http-1"}
        body = {"product_id": product.id, "quantity_received": 5}
        first = client.post(f"/api/purchase-orders/{po_id}/receive-line", json=body, headers=headers)
        second = client.post(f"/api/purchase-orders/{po_id}/receive-line", json=body, headers=headers)

        assert first.status_code == 201
        assert first.get_json()["purchase_order"]["status"] == "Received"
        assert second.status_code == 200
        assert ledger_service.current_stock(product.id) == 5

    def test_receive_pending_is_409(self, client, make_product):
        product = make_product()
        po_id = client.post("/api/purchase-orders", json={
            "items": [{"product_id": product.id, "quantity_ordered": 5}],
        }).get_json()["purchase_order"]["id"]

        resp = client.post(
            f"/api/purchase-orders/{po_id}/receive-line",
            json={"product_id": product.id, "quantity_received": 1},
        )
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "precondition_failed"
