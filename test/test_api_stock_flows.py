import pytest

import ledger


@pytest.fixture
def product(client):
    return client.post("/products", json={
        "name": "Test Product - Stock Reduction", "costPrice": 10.0, "price": 20.0, "stockQuantity": 100,
    }).json()


@pytest.fixture
def buyer(client):
    return client.post("/customers", json={
        "name": "Test Customer - Stock Test", "phone": "123-456-7890", "address": "123 Test Street",
    }).json()


def _stock(client, product_id):
    return client.get(f"/products/{product_id}").json()["stockQuantity"]


def test_stock_reduction_flow(client, product, buyer):
    pid, cid = product["productId"], buyer["customerId"]

    purchase = client.post("/purchases", json={
        "productId": pid, "quantity": 50, "unitCost": 9.0, "totalCost": 450.0,
    })
    assert purchase.status_code == 200
    assert purchase.json()["product"]["stockQuantity"] == 150

    sale = client.post("/sales", json={
        "productId": pid, "customerId": cid, "quantity": 25, "unitPrice": 20.0,
        "totalAmount": 500.0, "profit": 275.0,
    }).json()
    assert sale["profit"] == 275.0
    assert sale["customer"]["name"] == "Test Customer - Stock Test"
    assert _stock(client, pid) == 125

    client.post("/sales", json={"productId": pid, "customerId": cid, "quantity": 30, "unitPrice": 20.0})
    assert _stock(client, pid) == 95


def test_insufficient_stock_is_409(client, buyer):
    low = client.post("/products", json={"name": "Low Stock Test Product", "costPrice": 5.0, "price": 15.0, "stockQuantity": 5}).json()

    resp = client.post("/sales", json={
        "productId": low["productId"], "customerId": buyer["customerId"], "quantity": 10, "unitPrice": 15.0,
    })

    assert resp.status_code == 409
    assert resp.json()["error"] == "InsufficientStock"
    assert _stock(client, low["productId"]) == 5
    assert client.get("/sales").json() == []


def test_client_totals_are_recomputed(client, product, buyer):
    resp = client.post("/sales", json={
        "productId": product["productId"], "customerId": buyer["customerId"], "quantity": 2, "unitPrice": 20.0,
        "totalAmount": 9999, "profit": 9999,
    })
    assert resp.json()["totalAmount"] == 40.0
    assert resp.json()["profit"] == 20.0

    purchase = client.post("/purchases", json={
        "productId": product["productId"], "quantity": 3, "unitCost": 2.5, "totalCost": 1,
    }).json()
    assert purchase["totalCost"] == 7.5


def test_sale_with_unknown_customer_is_404(client, product):
    resp = client.post("/sales", json={"productId": product["productId"], "customerId": "ghost", "quantity": 1, "unitPrice": 1})
    assert resp.status_code == 404
    assert _stock(client, product["productId"]) == 100


@pytest.mark.parametrize("body", [
    {"quantity": 0, "unitPrice": 1.0},
    {"quantity": -2, "unitPrice": 1.0},
    {"quantity": 1, "unitPrice": -1.0},
    {"quantity": "many", "unitPrice": 1.0},
])
def test_malformed_sale_is_422(client, product, buyer, body):
    body.update(productId=product["productId"], customerId=buyer["customerId"])
    assert client.post("/sales", json=body).status_code == 422


def test_update_and_delete_sale(client, product, buyer):
    pid = product["productId"]
    sale = client.post("/sales", json={"productId": pid, "customerId": buyer["customerId"], "quantity": 10, "unitPrice": 20.0}).json()
    assert _stock(client, pid) == 90

    resp = client.put(f"/sales/{sale['saleId']}", json={"quantity": 4})
    assert resp.status_code == 200
    assert resp.json()["totalAmount"] == 80.0
    assert resp.json()["product"]["stockQuantity"] == 96

    resp = client.put(f"/sales/{sale['saleId']}", json={"quantity": 500})
    assert resp.status_code == 409
    assert client.get(f"/sales/{sale['saleId']}").json()["quantity"] == 4
    assert _stock(client, pid) == 96

    assert client.delete(f"/sales/{sale['saleId']}").status_code == 204
    assert _stock(client, pid) == 100
    assert client.get(f"/sales/{sale['saleId']}").status_code == 404


def test_update_and_delete_purchase(client, product, buyer):
    pid = product["productId"]
    purchase = client.post("/purchases", json={"productId": pid, "quantity": 20, "unitCost": 8.0}).json()
    assert _stock(client, pid) == 120

    resp = client.put(f"/purchases/{purchase['purchaseId']}", json={"quantity": 25, "unitCost": 6.0})
    assert resp.status_code == 200
    assert resp.json()["totalCost"] == 150.0
    assert _stock(client, pid) == 125

    client.post("/sales", json={"productId": pid, "customerId": buyer["customerId"], "quantity": 110, "unitPrice": 20.0})
    assert _stock(client, pid) == 15

    resp = client.delete(f"/purchases/{purchase['purchaseId']}")
    assert resp.status_code == 409
    assert _stock(client, pid) == 15
    assert client.get(f"/purchases/{purchase['purchaseId']}").status_code == 200


def test_lists_are_newest_first(client, product, buyer):
    pid = product["productId"]
    first = client.post("/purchases", json={"productId": pid, "quantity": 1, "unitCost": 1.0}).json()
    second = client.post("/purchases", json={"productId": pid, "quantity": 2, "unitCost": 1.0}).json()

    ids = [p["purchaseId"] for p in client.get("/purchases").json()]
    assert ids == [second["purchaseId"], first["purchaseId"]]


def test_movement_history(client, product, buyer):
    pid = product["productId"]
    client.post("/purchases", json={"productId": pid, "quantity": 5, "unitCost": 1.0})
    sale = client.post("/sales", json={"productId": pid, "customerId": buyer["customerId"], "quantity": 3, "unitPrice": 2.0}).json()
    client.delete(f"/sales/{sale['saleId']}")

    movements = client.get(f"/stock/product/{pid}/movements").json()
    assert [(m["type"], m["quantity"], m["stockAfter"]) for m in movements] == [
        ("initial", 100, 100),
        ("purchase", 5, 105),
        ("sale", -3, 102),
        ("sale_reversal", 3, 105),
    ]
    assert len(client.get("/stock/movements").json()) == 4
    assert client.get("/stock/product/nope/movements").status_code == 404


def test_failed_requests_leave_no_lock_entries(client, product):
    before = len(ledger.product_locks)

    for n in range(50):
        resp = client.post("/purchases", json={"productId": f"missing-{n}", "quantity": 1, "unitCost": 1.0})
        assert resp.status_code == 404
    client.delete(f"/products/{product['productId']}")

    assert len(ledger.product_locks) == before
