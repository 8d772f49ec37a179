"""Shared fixtures: in-memory database, gateway settings and envelope codec."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("API_KEY", "test-key")

from decimal import Decimal

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bdpay.common.config import BillDeskSettings
from bdpay.common.db import Base
from bdpay.common.jose import EnvelopeCodec
from bdpay.common.rate_limit import SlidingWindowRateLimiter
from bdpay.services.billdesk.client import BillDeskClient
from bdpay.services.billdesk.diagnostics import GatewayDiagnostics
from bdpay.services.billdesk.models import Customer, Order
from bdpay.services.billdesk.processor import ResponseProcessor
from bdpay.services.billdesk.service import BillDeskPaymentService
from bdpay.services.billdesk.store import OrderStore, TransactionStore


MERCHANT_ID = "BDMERCH01"
KEY_ID = "KEY7h2wbB"
CLIENT_ID = "bdmerch01client"


@pytest.fixture
def billdesk() -> BillDeskSettings:
    return BillDeskSettings(
        merchant_id=MERCHANT_ID,
        security_id=KEY_ID,
        client_id=CLIENT_ID,
        client_secret="client-secret",
        signing_password="signing-secret-0123456789",
        encryption_password="encryption-secret-0123456789",
        base_url="https://gateway.test/u2",
        return_url="https://shop.test/payments/billdesk/return",
        webhook_url="https://shop.test/payments/billdesk/webhook",
    )


@pytest.fixture
def codec(billdesk) -> EnvelopeCodec:
    return EnvelopeCodec.from_settings(billdesk)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def transactions(session_factory) -> TransactionStore:
    return TransactionStore(session_factory)


@pytest.fixture
def orders(session_factory) -> OrderStore:
    return OrderStore(session_factory)


@pytest.fixture
def diagnostics(session_factory) -> GatewayDiagnostics:
    return GatewayDiagnostics(session_factory)


@pytest.fixture
def make_order(session_factory):
    """Insert a storefront order (and its customer) and return it."""

    def _make(amount="1500.00", order_number=None, email="buyer@example.com", phone="+91 98765-43210"):
        with session_factory() as db:
            customer = Customer(email=email, phone=phone)
            db.add(customer)
            db.flush()
            order = Order(
                order_number=order_number,
                customer_id=customer.customer_id,
                final_amount=Decimal(amount) if amount is not None else None,
            )
            db.add(order)
            db.commit()
            return order

    return _make


@pytest.fixture
def build_client(billdesk, codec, transactions, orders, diagnostics):
    def _build(handler, rate_limiter=None) -> BillDeskClient:
        return BillDeskClient(
            billdesk,
            codec,
            rate_limiter or SlidingWindowRateLimiter(),
            transactions,
            orders,
            diagnostics,
            transport=httpx.MockTransport(handler),
        )

    return _build


@pytest.fixture
def build_service(billdesk, codec, transactions, orders, diagnostics, build_client):
    def _build(handler, settings_override=None) -> BillDeskPaymentService:
        gateway = settings_override or billdesk
        client = build_client(handler)
        client.billdesk = gateway
        processor = ResponseProcessor(gateway, codec, transactions, diagnostics)
        return BillDeskPaymentService(
            gateway, client, processor, transactions, orders, diagnostics, frontend_url="https://shop.test"
        )

    return _build
