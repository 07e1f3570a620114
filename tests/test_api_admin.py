import httpx
import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app

PRODUCT = {
    "name": "Emerald Bracelet",
    "description": "<p>Hand-set emeralds</p>",
    "image": "https://cdn.jewelhaven.co.ke/emerald-bracelet.jpg",
    "category": "bracelets",
    "price": 8900,
    "stock_quantity": 0,
}
CONTACT = {
    "name": "Nyambura Wairimu",
    "email": "nyambura@jewelhaven.co.ke",
    "phone": "0711222333",
    "subject": "Ring resizing",
    "message": "Can you resize a ring bought last month?",
}


@pytest.mark.parametrize("method, url", [
    ("get", "/api/admin/dashboard"),
    ("get", "/api/admin/products"),
    ("get", "/api/admin/orders"),
    ("get", "/api/admin/users"),
    ("get", "/api/admin/contacts"),
])
def test_admin_routes_need_admin(client, make_user, method, url):
    _, headers = make_user()
    assert getattr(client, method)(url).status_code == 401
    response = getattr(client, method)(url, headers=headers)
    assert response.status_code == 403
    assert response.json()["detail"] == "Forbidden"


def test_demoted_admin_loses_access(client, storage, make_user):
    admin, headers = make_user(role="admin")
    assert client.get("/api/admin/users", headers=headers).status_code == 200
    storage.update_user(admin["id"], {"role": "user"})
    assert client.get("/api/admin/users", headers=headers).status_code == 403


def test_product_crud(client, make_user):
    _, admin = make_user(role="admin")

    created = client.post("/api/admin/products", json=PRODUCT, headers=admin)
    assert created.status_code == 200
    product = created.json()
    assert product["stock_status"] == "out of stock"

    updated = client.patch(f"/api/admin/products/{product['id']}", json={"stock_quantity": 4, "price": 9500},
                           headers=admin)
    assert updated.json()["stock_status"] == "in stock"
    assert updated.json()["price"] == 9500
    assert client.get(f"/api/products/{product['id']}").json()["stock_quantity"] == 4

    assert client.delete(f"/api/admin/products/{product['id']}", headers=admin).status_code == 200
    assert client.get(f"/api/products/{product['id']}").status_code == 404
    assert client.delete(f"/api/admin/products/{product['id']}", headers=admin).status_code == 404


def test_product_image_too_large(client, settings, make_user):
    _, admin = make_user(role="admin")
    settings.max_image_bytes = 100
    body = {**PRODUCT, "image": "data:image/jpeg;base64," + "Q" * 500}

    response = client.post("/api/admin/products", json=body, headers=admin)

    assert response.status_code == 413


def test_dashboard(client, storage, make_user, make_product, workflow):
    _, admin = make_user(role="admin")
    ring = make_product()
    for method in ("cod", "mpesa"):
        workflow.create_order(
            user_id="u1", items=[{"product_id": ring["id"], "price": 2500.0, "quantity": 1}],
            delivery={"delivery_name": "A", "delivery_phone": "0712345678", "delivery_address": "Kisumu"},
            payment_method=method, subtotal=2500.0, delivery_fee=0, total=2500.0,
        )
    cod = [o for o in storage.get_all_orders() if o["payment_method"] == "cod"][0]
    workflow.update_status(cod["id"], "delivered")

    body = client.get("/api/admin/dashboard", headers=admin).json()

    assert body["total_products"] == 1
    assert body["total_orders"] == 2
    assert body["total_users"] == 1
    assert body["total_revenue"] == 2500.0
    assert len(body["recent_orders"]) == 2


def test_admin_orders_include_items(client, make_user, make_product, workflow):
    _, admin = make_user(role="admin")
    ring = make_product()
    workflow.create_order(
        user_id="u1", items=[{"product_id": ring["id"], "price": 2500.0, "quantity": 2}],
        delivery={"delivery_name": "A", "delivery_phone": "0712345678", "delivery_address": "Kisumu"},
        payment_method="cod", subtotal=5000.0, delivery_fee=0, total=5000.0,
    )

    orders = client.get("/api/admin/orders", headers=admin).json()

    assert orders[0]["items"][0]["quantity"] == 2


def test_role_changes_are_superadmin_only(client, make_user):
    _, superadmin = make_user(role="superadmin")
    _, admin = make_user(role="admin")
    target, _ = make_user()
    url = f"/api/admin/users/{target['id']}/role"

    denied = client.patch(url, json={"role": "admin"}, headers=admin)
    assert denied.status_code == 403
    assert denied.json()["detail"] == "Only super admin can change roles"

    assert client.patch(url, json={"role": "superadmin"}, headers=superadmin).status_code == 400
    promoted = client.patch(url, json={"role": "admin"}, headers=superadmin)
    assert promoted.json()["role"] == "admin"
    assert "password_hash" not in promoted.json()


def test_superadmin_cannot_be_edited(client, make_user):
    owner, _ = make_user(role="superadmin")
    _, admin = make_user(role="admin")

    response = client.patch(f"/api/admin/users/{owner['id']}", json={"name": "Someone Else"}, headers=admin)

    assert response.status_code == 403
    assert response.json()["detail"] == "Cannot edit super admin"


def test_admin_edits_user(client, make_user):
    _, admin = make_user(role="admin")
    target, _ = make_user()
    taken, _ = make_user()
    url = f"/api/admin/users/{target['id']}"

    clash = client.patch(url, json={"email": taken["email"]}, headers=admin)
    assert clash.status_code == 400
    assert clash.json()["detail"] == "Email already in use"

    ok = client.patch(url, json={"name": "Halima Hassan", "is_verified": False}, headers=admin)
    assert ok.json()["name"] == "Halima Hassan"
    assert ok.json()["is_verified"] is False


def test_contact_reply_flow(client, make_user):
    _, admin = make_user(role="admin")

    sent = client.post("/api/contact", json=CONTACT)
    assert sent.status_code == 200
    contact = sent.json()["data"]
    assert contact["status"] == "new"
    assert contact.get("user_id") is None

    reply = client.post(f"/api/admin/contacts/{contact['id']}/reply", json={"message": "Yes, visit our shop."},
                        headers=admin)
    assert reply.json()["success"] is True

    listed = client.get("/api/admin/contacts", headers=admin).json()
    assert listed[0]["status"] == "replied"
    assert listed[0]["replies"][0]["message"] == "Yes, visit our shop."

    mine = client.get("/api/contact/messages", params={"email": CONTACT["email"]}).json()
    assert len(mine) == 1
    assert mine[0]["replies"][0]["admin_name"].startswith("Shopper")


def test_contact_reply_needs_message(client, make_user):
    _, admin = make_user(role="admin")
    contact = client.post("/api/contact", json=CONTACT).json()["data"]
    response = client.post(f"/api/admin/contacts/{contact['id']}/reply", json={}, headers=admin)
    assert response.status_code == 400


def test_contact_validation(client):
    response = client.post("/api/contact", json={**CONTACT, "message": "short"})
    assert response.status_code == 400
    assert response.json()["detail"].startswith("message:")


def test_contact_status_and_delete(client, make_user):
    _, admin = make_user(role="admin")
    user, headers = make_user()
    contact = client.post("/api/contact", json=CONTACT, headers=headers).json()["data"]
    assert contact["user_id"] == user["id"]
    assert len(client.get("/api/user/contacts", headers=headers).json()) == 1

    read = client.patch(f"/api/admin/contacts/{contact['id']}", json={"status": "read"}, headers=admin)
    assert read.json()["data"]["status"] == "read"

    assert client.delete(f"/api/admin/contacts/{contact['id']}", headers=admin).status_code == 200
    assert client.get("/api/admin/contacts", headers=admin).json() == []


def test_contact_messages_need_email(client):
    assert client.get("/api/contact/messages").status_code == 400


@pytest.fixture
def production(db, gateway):
    settings = Settings(jwt_secret="prod-secret", app_env="production", mpesa_api_url="http://mpesa.test",
                        allowed_origin="https://jwl.giftedtech.co.ke")
    app = create_app(settings, db=db, http=httpx.Client(transport=httpx.MockTransport(gateway.handler)))
    with TestClient(app) as c:
        yield c


def test_production_blocks_foreign_origins(production):
    blocked = production.post("/api/contact", json=CONTACT, headers={"Origin": "https://evil.example"})
    assert blocked.status_code == 403
    assert blocked.json()["code"] == "STRICT_ORIGIN_REQUIRED"
    assert blocked.headers["x-frame-options"] == "DENY"
    assert "frame-ancestors 'none'" in blocked.headers["content-security-policy"]

    allowed = production.post("/api/contact", json=CONTACT, headers={"Origin": "https://jwl.giftedtech.co.ke"})
    assert allowed.status_code == 200

    by_referer = production.post("/api/contact", json=CONTACT,
                                 headers={"Referer": "https://jwl.giftedtech.co.ke/contact"})
    assert by_referer.status_code == 200


def test_production_security_headers(production):
    response = production.get("/api/health")
    assert response.headers["x-frame-options"] == "DENY"
    assert response.headers["x-content-type-options"] == "nosniff"
    assert "frame-ancestors 'none'" in response.headers["content-security-policy"]
