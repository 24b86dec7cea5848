import os
import tempfile

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="marketplace-uploads-"))

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from context import AppContext
from database import Database
from main import create_app
from schemas import Identity, ProductCreate, RegisterPayload


class RecordingSink:
    """Event sink that keeps every published event in memory."""

    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)

    def named(self, name):
        return [e for e in self.events if e.name == name]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
async def context(sink):
    ctx = AppContext(Database(client=AsyncMongoMockClient()), events=sink)
    await ctx.start()
    yield ctx
    await ctx.close()


@pytest.fixture
def make_user(context):
    async def _make(user_type="farmer", name=None, email=None, password="secret123"):
        payload = RegisterPayload(
            type=user_type,
            name=name or f"{user_type.title()} One",
            email=email or f"{user_type}@market.io",
            password=password,
        )
        user = (await context.users.register(payload))["user"]
        return Identity(id=user["id"], type=user["type"], name=user["name"])
    return _make


@pytest.fixture
def make_product(context):
    async def _make(farmer, **fields):
        data = {"name": "Tomatoes", "category": "Vegetables", "quantity": 10, "unit": "kg", "price": 5}
        data.update(fields)
        return await context.products.create(ProductCreate(**data), farmer)
    return _make


@pytest.fixture
def client():
    app = create_app(AppContext(Database(client=AsyncMongoMockClient())))
    with TestClient(app) as test_client:
        yield test_client


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def signup(client):
    def _signup(user_type, email, name=None, password="secret123"):
        res = client.post("/api/users/register", json={
            "type": user_type,
            "name": name or f"{user_type.title()} User",
            "email": email,
            "password": password,
        })
        assert res.status_code == 201, res.text
        body = res.json()
        return body["user"], bearer(body["access_token"])
    return _signup
