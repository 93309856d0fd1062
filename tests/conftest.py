"""Pytest configuration and fixtures."""

import hashlib
import hmac
import itertools
import json
import time
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select

from payment_service.config import Settings
from payment_service.database import Database
from payment_service.gateway import PaymentIntentResult, StripeGatewayClient
from payment_service.models import Order, OrderStatus, PaymentAttempt
from payment_service.state_machine import PaymentStateMachine

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        publish_events=False,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        store_currency="inr",
        max_payment_attempts=3,
        gateway_timeout_seconds=5,
        gateway_retry_attempts=3,
        gateway_retry_wait_max=0,
        reconcile_after_seconds=900,
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.init_db()
    yield db
    await db.dispose()


@pytest.fixture
def gateway():
    """Gateway double handing out sequential PaymentIntent references."""
    counter = itertools.count(1)

    def create_payment_intent(**kwargs):
        n = next(counter)
        return PaymentIntentResult(gateway_reference=f"pi_test_{n}", client_secret=f"pi_test_{n}_secret_abc")

    mock_gateway = AsyncMock(spec=StripeGatewayClient)
    mock_gateway.create_payment_intent.side_effect = create_payment_intent
    return mock_gateway


@pytest.fixture
def publisher():
    return AsyncMock()


@pytest.fixture
def state_machine(database, gateway, settings, publisher):
    return PaymentStateMachine(database.session_factory, gateway, settings, publisher=publisher)


@pytest.fixture
def make_order(database):
    async def _make_order(amount="49.99", status=OrderStatus.CREATED, order_id=None):
        order = Order(
            id=order_id or str(uuid4()),
            customer_id="cust-123",
            items=json.dumps([{"product_id": "product-A", "quantity": 1}]),
            amount=Decimal(amount),
            currency="inr",
            status=status,
        )
        async with database.session_factory() as session:
            session.add(order)
            await session.commit()
        return order.id

    return _make_order


@pytest.fixture
def fetch_order(database):
    async def _fetch_order(order_id):
        async with database.session_factory() as session:
            result = await session.execute(select(Order).where(Order.id == order_id))
            return result.scalar_one()

    return _fetch_order


@pytest.fixture
def add_attempt(database):
    """Insert an attempt row directly, bypassing the state machine."""

    async def _add_attempt(order_id, sequence, gateway_reference=None, created_at=None):
        attempt = PaymentAttempt(
            id=str(uuid4()),
            order_id=order_id,
            sequence=sequence,
            gateway_reference=gateway_reference,
        )
        if created_at is not None:
            attempt.created_at = created_at
        async with database.session_factory() as session:
            session.add(attempt)
            await session.commit()
        return attempt.id

    return _add_attempt


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def webhook_delivery():
    """Build a signed Stripe-style webhook body and its signature header."""

    def _webhook_delivery(event_id, event_type, gateway_reference, secret=WEBHOOK_SECRET, timestamp=None):
        payload = json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": {"id": gateway_reference, "object": "payment_intent"}},
        })
        return payload.encode("utf-8"), sign_payload(payload, secret, timestamp)

    return _webhook_delivery
