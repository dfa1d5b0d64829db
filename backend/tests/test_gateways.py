import hashlib
import hmac
from decimal import Decimal

import httpx
import pytest

from conftest import APPLE_VALIDATION_URL, CARD, IBAN
from payflow.exceptions import GatewayError
from payflow.gateways.apple_pay import is_apple_validation_url
from payflow.gateways.sandbox import OUTAGE_AMOUNT
from payflow.gateways.visa_direct import VisaDirectGateway, trace_numbers
from payflow.gateways.wise import wise_uuid
from payflow.models.gateway import ExternalRef
from payflow.models.transactions import PaymentMethod, TransactionStatus as S


@pytest.fixture
def wise(gateways):
    return gateways.for_method(PaymentMethod.BANK_TRANSFER)


@pytest.fixture
def visa(gateways):
    return gateways.for_method(PaymentMethod.CARD_PUSH)


@pytest.fixture
def apple(gateways):
    return gateways.for_method(PaymentMethod.WALLET_TOKEN)


def test_registry_looks_up_by_method_and_provider(gateways):
    assert gateways.providers == ["apple-pay", "visa", "wise"]
    assert gateways.for_provider("wise") is gateways.for_method(PaymentMethod.BANK_TRANSFER)
    assert gateways.for_provider("stripe") is None


async def test_demo_mode_without_transport_builds_its_own_sandbox(settings):
    from payflow.gateways.registry import build_gateways

    registry = build_gateways(settings)
    assert registry.sandbox is not None
    assert len(registry.providers) == 3
    await registry.aclose()


def test_missing_credentials_disable_provider(settings):
    from payflow.gateways.registry import build_gateways

    live = settings.model_copy(update={"demo_mode": False})
    registry = build_gateways(live)
    assert registry.providers == []


# ============================================================================
# Wise
# ============================================================================

async def test_wise_full_sequence(wise, sandbox):
    quote = await wise.create_quote(Decimal("100.00"), "EUR", "EUR")
    recipient = await wise.create_recipient_or_session(
        {"accountHolderName": "Ada", "iban": IBAN, "currency": "EUR", "reference": "Order 1"}
    )
    transfer = await wise.execute_transfer(quote, recipient, "key-1")
    assert transfer.status == S.PROCESSING
    assert transfer.raw_status == "incoming_payment_waiting"

    funded = await wise.fund(transfer.id)
    assert funded.status == S.PROCESSING

    status = await wise.get_status(transfer.id)
    assert status.status == S.COMPLETED


async def test_wise_transfer_is_idempotent_on_key(wise, sandbox):
    quote = await wise.create_quote(Decimal("10.00"), "EUR", "EUR")
    recipient = ExternalRef(id="123", kind="recipient")

    first = await wise.execute_transfer(quote, recipient, "same-key")
    second = await wise.execute_transfer(quote, recipient, "same-key")

    assert first.id == second.id
    assert len(sandbox.wise_transfers) == 1


def test_wise_uuid_is_stable_per_key():
    assert wise_uuid("abc") == wise_uuid("abc")
    assert wise_uuid("abc") != wise_uuid("abd")


async def test_wise_invalid_iban_is_terminal(wise):
    with pytest.raises(GatewayError) as exc_info:
        await wise.create_recipient_or_session({"accountHolderName": "Ada", "iban": "XX00BAD", "currency": "EUR"})
    assert not exc_info.value.retryable
    assert "IBAN is not valid" in exc_info.value.message


async def test_wise_recipient_requires_iban(wise, sandbox):
    with pytest.raises(GatewayError):
        await wise.create_recipient_or_session({"accountHolderName": "Ada", "currency": "EUR"})
    assert sandbox.count("wise.recipient") == 0


async def test_wise_conversion_quote_uses_provider_rate(wise):
    quote = await wise.create_quote(Decimal("100.00"), "EUR", "GBP")
    assert quote.rate == Decimal("0.92")
    assert quote.target_currency == "GBP"


def test_wise_state_change_webhook(wise):
    event = wise.parse_webhook({
        "event_type": "transfers#state-change",
        "data": {
            "resource": {"id": 4242, "type": "transfer"},
            "current_state": "outgoing_payment_sent",
            "occurred_at": "2026-01-02T03:04:05Z",
        },
    })
    assert event.external_ref == "4242"
    assert event.new_status == S.COMPLETED
    assert event.occurred_at.isoformat() == "2026-01-02T03:04:05"


def test_wise_other_events_carry_no_reference(wise):
    event = wise.parse_webhook({"event_type": "balances#credit", "data": {}})
    assert event.external_ref is None


def test_wise_state_change_without_resource_is_malformed(wise):
    with pytest.raises(ValueError):
        wise.parse_webhook({"event_type": "transfers#state-change", "data": {"current_state": "processing"}})


def test_unknown_provider_status_maps_to_pending(wise):
    assert wise.map_status("something_new") == S.PENDING


# ============================================================================
# Visa Direct
# ============================================================================

async def test_visa_push_settles_synchronously(visa, sandbox):
    quote = await visa.create_quote(Decimal("25.00"), "USD", "USD")
    recipient = await visa.create_recipient_or_session({"recipientPrimaryAccountNumber": CARD})
    transfer = await visa.execute_transfer(quote, recipient, "key-1")

    assert recipient.id == "card-1111"
    assert transfer.status == S.COMPLETED
    assert transfer.raw_status == "actionCode:00"
    assert (await visa.get_status(transfer.id)).status == S.COMPLETED
    assert sandbox.count("visa.push") == 1


async def test_visa_decline(visa):
    quote = await visa.create_quote(Decimal("25.00"), "USD", "USD")
    recipient = await visa.create_recipient_or_session({"recipientPrimaryAccountNumber": "4000000000009995"})
    transfer = await visa.execute_transfer(quote, recipient, "key-2")
    assert transfer.status == S.FAILED
    assert transfer.raw_status == "actionCode:51"


async def test_visa_local_quote_refuses_conversion(visa):
    with pytest.raises(GatewayError):
        await visa.create_quote(Decimal("25.00"), "USD", "EUR")


async def test_visa_outage_is_retryable(visa):
    quote = await visa.create_quote(OUTAGE_AMOUNT, "USD", "USD")
    recipient = await visa.create_recipient_or_session({"recipientPrimaryAccountNumber": CARD})
    with pytest.raises(GatewayError) as exc_info:
        await visa.execute_transfer(quote, recipient, "key-3")
    assert exc_info.value.retryable
    assert exc_info.value.details["status_code"] == 503


async def test_visa_refund_completes(visa):
    quote = await visa.create_quote(Decimal("25.00"), "USD", "USD")
    recipient = await visa.create_recipient_or_session({"recipientPrimaryAccountNumber": CARD})
    transfer = await visa.execute_transfer(quote, recipient, "key-4")

    refund = await visa.refund(transfer.id, Decimal("5.00"), "USD", "rfd-1")
    again = await visa.refund(transfer.id, Decimal("5.00"), "USD", "rfd-1")

    assert refund.status == S.COMPLETED
    assert again.id == refund.id


def test_trace_numbers_are_fixed_width():
    stan, rrn = trace_numbers("idem-key")
    assert len(stan) == 6 and stan.isdigit()
    assert len(rrn) == 12 and rrn.isdigit()
    assert trace_numbers("idem-key") == (stan, rrn)


def test_x_pay_token_format():
    gateway = VisaDirectGateway(
        api_url="https://sandbox.api.visa.com",
        api_key="key",
        shared_secret="shh",
        user_id="u",
        password="p",
        webhook_secret="w",
    )
    token = gateway.x_pay_token("/visadirect/v1/pushpayments", "apikey=key", "{}", timestamp=1700000000)

    expected = hmac.new(b"shh", b"1700000000visadirect/v1/pushpaymentsapikey=key{}", hashlib.sha256).hexdigest()
    assert token == f"xv2:1700000000:{expected}"


async def test_visa_requests_carry_credentials(sandbox):
    seen = []
    original = sandbox.handle

    def spy(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return original(request)

    sandbox.handle = spy
    gateway = VisaDirectGateway(
        api_url="https://sandbox.api.visa.com", api_key="key", shared_secret="shh",
        user_id="u", password="p", webhook_secret="w", transport=sandbox.transport(),
    )
    quote = await gateway.create_quote(Decimal("1.00"), "USD", "USD")
    recipient = await gateway.create_recipient_or_session({"recipientPrimaryAccountNumber": CARD})
    await gateway.execute_transfer(quote, recipient, "k")
    await gateway.aclose()

    request = seen[0]
    assert request.url.params["apikey"] == "key"
    assert request.headers["x-pay-token"].startswith("xv2:")
    assert request.headers["authorization"].startswith("Basic ")


def test_visa_webhook(visa):
    event = visa.parse_webhook({
        "transactionId": "991",
        "status": "DECLINED",
        "amount": "25.00",
        "currency": "usd",
        "occurredAt": "2026-03-01T10:00:00+01:00",
    })
    assert event.external_ref == "991"
    assert event.new_status == S.FAILED
    assert event.amount == Decimal("25.00")
    assert event.currency == "USD"
    assert event.occurred_at.isoformat() == "2026-03-01T09:00:00"


def test_visa_webhook_without_status_is_malformed(visa):
    with pytest.raises(ValueError):
        visa.parse_webhook({"transactionId": "991"})


# ============================================================================
# Apple Pay
# ============================================================================

@pytest.mark.parametrize(
    "url,expected",
    [
        (APPLE_VALIDATION_URL, True),
        ("https://apple.com/paymentservices/startSession", True),
        ("http://apple-pay-gateway.apple.com/paymentservices/startSession", False),
        ("https://apple.com.evil.example/paymentservices/startSession", False),
        ("https://evilapple.com/paymentservices/startSession", False),
    ],
)
def test_apple_validation_url_host_check(url, expected):
    assert is_apple_validation_url(url) is expected


async def test_apple_authorize_then_capture(apple, sandbox):
    session = await apple.create_recipient_or_session(
        {"paymentToken": {"paymentData": {"data": "tok_visa"}}, "validationUrl": APPLE_VALIDATION_URL}
    )
    assert session.id.startswith("SSH")
    assert sandbox.count("apple.session") == 1

    quote = await apple.create_quote(Decimal("40.00"), "USD", "USD")
    authorized = await apple.execute_transfer(quote, session, "key-1")
    assert authorized.status == S.PROCESSING

    captured = await apple.fund(authorized.id)
    assert captured.status == S.COMPLETED


async def test_apple_session_without_validation_url_is_local(apple, sandbox):
    session = await apple.create_recipient_or_session({"paymentToken": {"paymentData": {"data": "tok_visa"}}})
    assert session.id.startswith("token-")
    assert sandbox.count("apple.session") == 0


async def test_apple_rejects_foreign_validation_url(apple, sandbox):
    with pytest.raises(GatewayError):
        await apple.create_recipient_or_session(
            {"paymentToken": {"data": "x"}, "validationUrl": "https://attacker.example/session"}
        )
    assert sandbox.calls == []


async def test_apple_declined_token(apple):
    session = await apple.create_recipient_or_session({"paymentToken": {"paymentData": {"data": "tok_decline"}}})
    quote = await apple.create_quote(Decimal("40.00"), "USD", "USD")
    result = await apple.execute_transfer(quote, session, "key-2")
    assert result.status == S.FAILED


async def test_timeout_is_retryable(apple, sandbox):
    sandbox.fail_next("apple.status", None)
    with pytest.raises(GatewayError) as exc_info:
        await apple.get_status("pay_123")
    assert exc_info.value.retryable


async def test_not_found_is_terminal(apple):
    with pytest.raises(GatewayError) as exc_info:
        await apple.get_status("pay_missing")
    assert not exc_info.value.retryable


async def test_rate_limited_response_is_retryable(apple, sandbox):
    sandbox.fail_next("apple.status", 429)
    with pytest.raises(GatewayError) as exc_info:
        await apple.get_status("pay_123")
    assert exc_info.value.retryable


def test_apple_webhook(apple):
    event = apple.parse_webhook({"paymentId": "pay_1", "status": "captured", "type": "payment.captured"})
    assert event.event_type == "payment.captured"
    assert event.new_status == S.COMPLETED
