"""
Shared fixtures: an in-process Redis, a seeded catalog, and wired services.
"""
from decimal import Decimal

import fakeredis
import pytest
from fastapi.testclient import TestClient

from evmarket import redis_client as redis_client_module
from evmarket.cart_service import CartService
from evmarket.catalog import CatalogClient
from evmarket.models import Accessory, PaymentRequest, Vehicle, VehicleStatus
from evmarket.order_service import OrderService
from evmarket.payment_service import PaymentService, modulo_approval_policy
from evmarket.redis_client import RedisClient


@pytest.fixture
def redis_client() -> RedisClient:
    """RedisClient wrapping a private fakeredis server"""
    server = fakeredis.FakeServer()
    return RedisClient(client=fakeredis.FakeRedis(server=server, decode_responses=True))


@pytest.fixture
def catalog(redis_client) -> CatalogClient:
    catalog = CatalogClient(redis_client)
    catalog.save_vehicle(Vehicle(id="V1", name="Model 3", price=Decimal("50000")))
    catalog.save_vehicle(Vehicle(id="V2", name="Ioniq 5", price=Decimal("42000")))
    catalog.save_vehicle(
        Vehicle(id="V3", name="Leaf", price=Decimal("18000"), status=VehicleStatus.PENDING)
    )
    catalog.save_accessory(Accessory(id="A1", name="Wall charger", price=Decimal("650")))
    catalog.save_accessory(Accessory(id="A2", name="All-weather mats", price=Decimal("120.50")))
    return catalog


@pytest.fixture
def cart_service(redis_client, catalog) -> CartService:
    return CartService(redis_client, catalog)


@pytest.fixture
def order_service(redis_client, catalog, cart_service) -> OrderService:
    return OrderService(redis_client, catalog, cart_service)


@pytest.fixture
def payment_service_factory(redis_client, catalog, cart_service, order_service):
    """Build a PaymentService with a custom approval policy"""
    def _factory(policy=None) -> PaymentService:
        return PaymentService(
            redis_client,
            catalog,
            cart_service,
            order_service,
            approval_policy=policy or modulo_approval_policy(3, 2)
        )
    return _factory


@pytest.fixture
def payment_service(payment_service_factory) -> PaymentService:
    return payment_service_factory()


@pytest.fixture
def payment_details() -> PaymentRequest:
    return PaymentRequest(
        payment_method="CREDIT_CARD",
        card_holder_name="Ada Lovelace",
        card_number="4111 1111 1111 1111",
        expiry_date="12/29",
        cvv="123",
        address="1 Main St, Toronto"
    )


@pytest.fixture
def api_client(redis_client, catalog, monkeypatch) -> TestClient:
    monkeypatch.setattr(redis_client_module, "_redis_client", redis_client)
    from evmarket.main import app

    return TestClient(app)
