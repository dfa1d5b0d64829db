"""
Shared fixtures: a temporary SQLite database per test, the provider
sandbox wired into real gateway adapters, and an app client.
"""
import json
from decimal import Decimal
from typing import Any, Callable, Dict, Tuple

import pytest
from fastapi.testclient import TestClient

from payflow.config import Settings
from payflow.db.init_db import create_engine, create_session_factory, initialize_database
from payflow.gateways.registry import build_gateways
from payflow.gateways.sandbox import ProviderSandbox
from payflow.main import create_app
from payflow.models.transactions import PaymentCreate
from payflow.services.orchestrator import PaymentOrchestrator
from payflow.services.signature_service import compute_signature
from payflow.services.transaction_store import TransactionStore
from payflow.services.webhook_reconciler import WebhookReconciler

IBAN = "DE89370400440532013000"
CARD = "4111111111111111"
APPLE_VALIDATION_URL = "https://apple-pay-gateway.apple.com/paymentservices/paymentSession"


def payment_body(method: str = "bank_transfer", **overrides: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "amount": "100.00",
        "currency": "EUR",
        "customerEmail": "ada@example.com",
        "customerName": "Ada Lovelace",
        "description": "Order 1001",
        "method": method,
    }
    if method == "bank_transfer":
        body["recipient"] = {"accountHolderName": "Ada Lovelace", "iban": IBAN}
    elif method == "card_push":
        body["currency"] = "USD"
        body["card"] = {"recipientPrimaryAccountNumber": CARD, "expiryDate": "2030-12"}
    elif method == "wallet_token":
        body["currency"] = "USD"
        body["wallet"] = {"paymentToken": {"paymentData": {"data": "tok_visa"}, "transactionIdentifier": "abc"}}
    body.update(overrides)
    return body


def signed(payload: Dict[str, Any], secret: str, encoding: str = "hex") -> Tuple[bytes, str]:
    raw = json.dumps(payload).encode("utf-8")
    return raw, compute_signature(raw, secret, "sha256", encoding)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        demo_mode=True,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payflow.db'}",
        jwt_secret="test-jwt-secret",
        gateway_backoff_seconds=0,
        gateway_backoff_max_seconds=0,
        email_enabled=False,
        rate_limit_backend="memory",
    )


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings.database_url)
    await initialize_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory) -> TransactionStore:
    return TransactionStore(session_factory)


@pytest.fixture
def sandbox() -> ProviderSandbox:
    return ProviderSandbox()


@pytest.fixture
async def gateways(settings, sandbox):
    registry = build_gateways(settings, sandbox.transport())
    yield registry
    await registry.aclose()


@pytest.fixture
def orchestrator(store, gateways) -> PaymentOrchestrator:
    return PaymentOrchestrator(store, gateways, max_attempts=3, backoff_seconds=0, backoff_max_seconds=0)


@pytest.fixture
def reconciler(store, gateways) -> WebhookReconciler:
    return WebhookReconciler(store, gateways)


@pytest.fixture
def make_payment() -> Callable[..., PaymentCreate]:
    def make(method: str = "bank_transfer", **overrides: Any) -> PaymentCreate:
        return PaymentCreate.model_validate(payment_body(method, **overrides))
    return make


@pytest.fixture
def completed_payment(orchestrator, make_payment):
    """Card push payment that settled synchronously."""
    async def make(amount: str = "100.00"):
        created = await orchestrator.create_payment(make_payment("card_push", amount=amount))
        result = await orchestrator.dispatch(created.value.transaction.id, created.value.instrument)
        assert result.value.amount == Decimal(amount)
        return result.value
    return make


@pytest.fixture
def app(settings, sandbox):
    return create_app(settings, gateway_transport=sandbox.transport())


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(client) -> Callable[..., Dict[str, str]]:
    def make(*roles: str, user_id: str = "user_1", permissions: Tuple[str, ...] = ()) -> Dict[str, str]:
        token = client.app.state.auth_guard.issue_token(
            user_id, f"{user_id}@example.com", roles=roles, permissions=permissions
        )
        return {"Authorization": f"Bearer {token}"}
    return make
