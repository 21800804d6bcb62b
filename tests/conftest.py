"""Pytest fixtures for storefront tests."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from storefront.config import Settings
from storefront.events import EventPublisher
from storefront.main import create_app
from storefront.memory_store import InMemoryDocumentStore
from storefront.repositories import Repositories
from storefront.store import Collection


class RecordingRedis:
    """Stands in for a redis connection; records pub/sub messages."""

    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1

    async def aclose(self):
        pass

    def event_types(self):
        return [message["event_type"] for _, message in self.published]


class Shop:
    """Seeds documents straight into a store."""

    def __init__(self, store):
        self.store = store

    async def product(self, product_id, name="Widget", price=10.0, stock=10, status="Active"):
        await self.store.set(
            Collection.PRODUCTS,
            product_id,
            {"name": name, "price": price, "stock": stock, "status": status},
        )

    async def address(self, address_id, user_id, city="Springfield"):
        await self.store.set(
            Collection.ADDRESSES,
            address_id,
            {
                "user_id": user_id,
                "first_name": "Ada",
                "last_name": "Lovelace",
                "address_line1": "1 Main St",
                "city": city,
                "zip_code": "12345",
                "country": "US",
            },
        )

    async def cart(self, user_id, lines):
        """lines: (product_id, quantity, price) tuples."""
        items = [
            {
                "id": f"line-{i}",
                "product_id": product_id,
                "quantity": quantity,
                "price": price,
                "added_at": datetime.now(timezone.utc).isoformat(),
            }
            for i, (product_id, quantity, price) in enumerate(lines)
        ]
        await self.store.set(
            Collection.CARTS,
            user_id,
            {
                "user_id": user_id,
                "items": items,
                "total": sum(q * p for _, q, p in lines),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )

    async def user(self, user_id, role="user", token=None, expires_in=timedelta(days=1)):
        await self.store.set(
            Collection.USERS,
            user_id,
            {"email": f"{user_id}@example.com", "name": user_id.title(), "role": role},
        )
        await self.store.set(
            Collection.SESSIONS,
            f"session-{user_id}",
            {
                "token": token or f"token-{user_id}",
                "user_id": user_id,
                "expires_at": (datetime.now(timezone.utc) + expires_in).isoformat(),
            },
        )

    async def stock(self, product_id):
        doc = await self.store.get(Collection.PRODUCTS, product_id)
        return doc["stock"]


@pytest.fixture
def settings():
    return Settings(store_backend="memory")


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def repos(store):
    return Repositories(store)


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def events(redis):
    return EventPublisher(redis)


@pytest.fixture
def shop(store):
    return Shop(store)


@pytest.fixture
def shop_for():
    return Shop


@pytest.fixture
def client(settings, store, redis):
    app = create_app(settings=settings, store=store, redis=redis)
    with TestClient(app) as c:
        yield c


def auth(user_id):
    return {"Authorization": f"Bearer token-{user_id}"}


@pytest.fixture
def auth_headers():
    return auth
