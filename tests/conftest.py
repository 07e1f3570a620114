import json

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_token, hash_password
from config import Settings
from main import create_app
from schemas import Product, User


class FakeGateway:
    """Answers every outbound call by URL path and records what was sent."""

    def __init__(self):
        self.calls = []
        self.routes = {}

    def reply(self, path, status=200, json=None, text=None, error=None):
        self.routes[path] = (status, json, text, error)

    def sent_to(self, path):
        return [body for p, body in self.calls if p == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.calls.append((request.url.path, body))
        status, payload, text, error = self.routes.get(request.url.path, (200, {"success": True}, None, None))
        if error is not None:
            raise error
        if text is not None:
            return httpx.Response(status, text=text)
        return httpx.Response(status, json=payload)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="test-secret",
        mpesa_api_url="http://mpesa.test",
        email_api_url="http://email.test",
        sms_api_url="http://sms.test/send",
        sms_api_token="sms-token",
        sms_sender_id="JEWELHAVEN",
    )


@pytest.fixture
def db():
    return mongomock.MongoClient()["jewelhaven_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(settings, db, gateway):
    http = httpx.Client(transport=httpx.MockTransport(gateway.handler))
    return create_app(settings, db=db, http=http)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def storage(app):
    return app.state.storage


@pytest.fixture
def workflow(app):
    return app.state.workflow


@pytest.fixture
def make_user(storage, settings):
    counter = {"n": 0}

    def _make(role="user", email=None, password="secret123", verified=True):
        counter["n"] += 1
        user = storage.create_user(User(
            name=f"Shopper {counter['n']}",
            email=email or f"shopper{counter['n']}@jewelhaven.co.ke",
            phone="0712345678",
            password_hash=hash_password(password),
            role=role,
            is_verified=verified,
        ))
        headers = {"Authorization": f"Bearer {create_token(settings, user['id'], user['role'])}"}
        return user, headers

    return _make


@pytest.fixture
def make_product(storage):
    def _make(name="Gold Ring", stock=10, price=2500.0, category="rings", featured=False, **extra):
        return storage.create_product(Product(
            name=name,
            description=f"{name} in 18k",
            image=f"https://cdn.jewelhaven.co.ke/{name.lower().replace(' ', '-')}.jpg",
            category=category,
            price=price,
            stock_quantity=stock,
            featured=featured,
            **extra,
        ))

    return _make
