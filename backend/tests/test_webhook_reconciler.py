from decimal import Decimal

import pytest

from conftest import signed
from payflow.exceptions import NotFoundError, SignatureError, ValidationError
from payflow.models.gateway import ExternalRef
from payflow.models.transactions import PaymentMethod, RefundCreate, TransactionStatus as S
from payflow.services.webhook_reconciler import Ack, Rejected


def wise_event(transfer_id, state, occurred_at="2026-05-01T12:00:00Z"):
    return {
        "event_type": "transfers#state-change",
        "schema_version": "2.0.0",
        "sent_at": occurred_at,
        "data": {
            "resource": {"id": int(transfer_id), "type": "transfer", "profile_id": 1},
            "current_state": state,
            "previous_state": "processing",
            "occurred_at": occurred_at,
        },
    }


@pytest.fixture
def deliver(reconciler, settings):
    async def send(payload, provider="wise", secret=None):
        secrets = {
            "wise": (settings.wise_webhook_secret, "base64"),
            "visa": (settings.visa_webhook_secret, "hex"),
            "apple-pay": (settings.apple_pay_webhook_secret, "hex"),
        }
        default_secret, encoding = secrets.get(provider, ("unused", "hex"))
        raw, signature = signed(payload, secret or default_secret, encoding)
        return await reconciler.handle(provider, raw, signature)
    return send


@pytest.fixture
async def transfer(orchestrator, make_payment):
    created = await orchestrator.create_payment(make_payment("bank_transfer"))
    result = await orchestrator.dispatch(created.value.transaction.id, created.value.instrument)
    assert result.value.status == S.PROCESSING
    return result.value


async def test_completion_event_is_applied(deliver, store, transfer):
    result = await deliver(wise_event(transfer.provider_ref, "outgoing_payment_sent"))

    assert result == Ack("applied", transfer.id)
    stored = await store.get(transfer.id)
    assert stored.status == S.COMPLETED
    assert stored.last_event_at.isoformat() == "2026-05-01T12:00:00"
    events = await store.list_events(transfer.id)
    assert events[-1].source == "webhook"


async def test_redelivery_is_a_duplicate(deliver, store, transfer):
    payload = wise_event(transfer.provider_ref, "outgoing_payment_sent")

    first = await deliver(payload)
    second = await deliver(payload)

    assert first.outcome == "applied"
    assert second.outcome == "duplicate"
    assert len(await store.list_events(transfer.id)) == 3


async def test_completed_is_sticky(deliver, store, transfer):
    await deliver(wise_event(transfer.provider_ref, "outgoing_payment_sent"))

    result = await deliver(wise_event(transfer.provider_ref, "bounced_back", "2026-05-01T13:00:00Z"))

    assert result == Ack("conflict", transfer.id)
    assert (await store.get(transfer.id)).status == S.COMPLETED


async def test_stale_event_is_dropped(deliver, store, transfer):
    await deliver(wise_event(transfer.provider_ref, "outgoing_payment_sent", "2026-05-01T12:00:00Z"))

    result = await deliver(wise_event(transfer.provider_ref, "funds_refunded", "2026-05-01T11:00:00Z"))

    assert result.outcome == "stale"
    assert (await store.get(transfer.id)).status == S.COMPLETED


async def test_unknown_status_does_not_complete(deliver, store, transfer):
    result = await deliver(wise_event(transfer.provider_ref, "some_future_state"))

    assert result.outcome == "conflict"
    assert (await store.get(transfer.id)).status == S.PROCESSING


async def test_bad_signature_is_rejected_without_changes(reconciler, store, transfer):
    raw, _ = signed(wise_event(transfer.provider_ref, "outgoing_payment_sent"), "attacker-secret", "base64")

    result = await reconciler.handle("wise", raw, "bm90IGEgcmVhbCBzaWduYXR1cmU=")

    assert isinstance(result, Rejected)
    assert isinstance(result.error, SignatureError)
    assert result.status_code == 401
    assert (await store.get(transfer.id)).status == S.PROCESSING


async def test_missing_signature_is_rejected(reconciler):
    raw, _ = signed({"event_type": "transfers#state-change"}, "x", "base64")
    result = await reconciler.handle("wise", raw, None)
    assert isinstance(result.error, SignatureError)


async def test_signature_from_other_secret_is_rejected(deliver, transfer):
    result = await deliver(wise_event(transfer.provider_ref, "outgoing_payment_sent"), secret="other-secret")
    assert result.status_code == 401


async def test_malformed_payload_is_rejected(deliver):
    result = await deliver({"event_type": "transfers#state-change", "data": {}})
    assert isinstance(result.error, ValidationError)
    assert result.status_code == 400


async def test_non_json_body_is_rejected(reconciler, settings):
    from payflow.services.signature_service import compute_signature

    raw = b"not json"
    signature = compute_signature(raw, settings.wise_webhook_secret, encoding="base64")
    result = await reconciler.handle("wise", raw, signature)
    assert result.status_code == 400


async def test_unknown_provider(deliver):
    result = await deliver({"id": 1}, provider="stripe")
    assert isinstance(result.error, NotFoundError)
    assert result.status_code == 404


async def test_events_without_status_are_ignored(deliver):
    result = await deliver({"event_type": "balances#credit", "data": {"amount": 10}})
    assert result == Ack("ignored")


async def test_event_for_unknown_reference_creates_placeholder(deliver, store):
    result = await deliver(
        {"transactionId": "771", "status": "approved", "amount": "12.50", "currency": "usd"},
        provider="visa",
    )

    assert result.outcome == "applied"
    placeholder = await store.get_by_provider_ref("771")
    assert placeholder.id.startswith("whk_")
    assert placeholder.is_placeholder
    assert placeholder.status == S.COMPLETED
    assert placeholder.amount == Decimal("12.50")
    assert placeholder.currency == "USD"
    assert placeholder.method == PaymentMethod.CARD_PUSH


async def test_early_webhook_is_merged_into_dispatch(deliver, orchestrator, gateways, store, make_payment, sandbox):
    wise = gateways.for_method(PaymentMethod.BANK_TRANSFER)
    quote = await wise.create_quote(Decimal("100.00"), "EUR", "EUR")
    early = await wise.execute_transfer(quote, ExternalRef(id="1", kind="recipient"), "order-77")
    await deliver(wise_event(early.id, "outgoing_payment_sent"))
    assert (await store.get_by_provider_ref(early.id)).is_placeholder

    created = await orchestrator.create_payment(make_payment("bank_transfer"), "order-77")
    result = await orchestrator.dispatch(created.value.transaction.id, created.value.instrument)

    payment = result.value
    assert payment.provider_ref == early.id
    assert payment.status == S.COMPLETED
    assert not payment.is_placeholder
    assert (await store.get_by_provider_ref(early.id)).id == payment.id
    assert sandbox.count("wise.fund") == 0


async def test_apple_pay_event(deliver, orchestrator, make_payment, store):
    created = await orchestrator.create_payment(make_payment("wallet_token"))
    tx_id = created.value.transaction.id
    payment = (await orchestrator.dispatch(tx_id, created.value.instrument)).value

    result = await deliver(
        {"paymentId": payment.provider_ref, "status": "refunded", "type": "payment.refunded"},
        provider="apple-pay",
    )

    assert result.outcome == "applied"
    assert (await store.get(tx_id)).status == S.REFUNDED


@pytest.fixture
def pending_refund(orchestrator, make_payment, sandbox):
    """Wallet payment with a refund the processor reports as pending."""
    async def make(amount: str):
        created = await orchestrator.create_payment(make_payment("wallet_token"))
        payment = (await orchestrator.dispatch(created.value.transaction.id, created.value.instrument)).value
        sandbox.refund_status = "pending"
        refund = (await orchestrator.refund(RefundCreate.model_validate({
            "paymentId": payment.id, "amount": amount, "currency": "USD", "reason": "damaged",
        }))).value
        assert refund.status == S.PROCESSING
        return payment, refund
    return make


async def test_refund_completed_by_webhook_refunds_the_payment(deliver, store, pending_refund):
    payment, refund = await pending_refund("100.00")

    result = await deliver({"paymentId": refund.provider_ref, "status": "succeeded"}, provider="apple-pay")

    assert result == Ack("applied", refund.id)
    assert (await store.get(refund.id)).status == S.COMPLETED
    parent = await store.get(payment.id)
    assert parent.status == S.REFUNDED
    assert parent.refunded_amount == Decimal("100.00")


async def test_partial_refund_completed_by_webhook(deliver, store, pending_refund):
    payment, refund = await pending_refund("30.00")
    payload = {"paymentId": refund.provider_ref, "status": "succeeded"}

    await deliver(payload, provider="apple-pay")
    second = await deliver(payload, provider="apple-pay")

    assert second.outcome == "duplicate"
    parent = await store.get(payment.id)
    assert parent.status == S.COMPLETED
    assert parent.refunded_amount == Decimal("30.00")


async def test_failed_refund_leaves_the_payment_alone(deliver, store, pending_refund):
    payment, refund = await pending_refund("30.00")

    result = await deliver({"paymentId": refund.provider_ref, "status": "failed"}, provider="apple-pay")

    assert result.outcome == "applied"
    assert (await store.get(refund.id)).status == S.FAILED
    assert (await store.get(payment.id)).refunded_amount == Decimal("0")
