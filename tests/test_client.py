"""Outbound order creation and transaction retrieval against a mocked gateway."""

import json
import re
from decimal import Decimal

import httpx
import pytest

from bdpay.common import jose
from bdpay.common.errors import (
    AmountExceedsLimit,
    GatewayError,
    GatewayTimeout,
    InvalidAmount,
    MalformedResponse,
    RateLimited,
)
from bdpay.common.rate_limit import SlidingWindowRateLimiter
from bdpay.common.logging import order_number_ctx, trace_id_ctx
from bdpay.services.billdesk.diagnostics import DECODED, ERROR, REQUEST, RESPONSE
from bdpay.services.billdesk.models import Transaction

CHECKOUT_HREF = "https://uat1.billdesk.com/u2/web/v1_2/embeddedsdk"


def _created_body(codec, bd_order_id="BD0001"):
    return codec.seal(
        {
            "objectid": "order",
            "bdorderid": bd_order_id,
            "links": [
                {"rel": "self", "href": "https://gateway.test/u2/payments/ve1_2/orders/BD0001"},
                {
                    "rel": "redirect",
                    "href": CHECKOUT_HREF,
                    "parameters": {"mercid": "BDMERCH01", "bdorderid": bd_order_id, "rdata": "RDATA-TOKEN"},
                },
            ],
        }
    )


@pytest.mark.asyncio
async def test_create_payment_request_sends_signed_order(build_client, codec, make_order, transactions):
    """The order goes out sealed, with gateway headers, after the pending row is stored."""

    order = make_order(amount="1500.00")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        payload = codec.open_json(request.content.decode())
        seen["request"] = request
        seen["payload"] = payload
        seen["stored_status"] = transactions.find_by_order_number(payload["orderid"]).status
        return httpx.Response(200, text=_created_body(codec))

    result = await build_client(handler).create_payment_request(order, "203.0.113.7")

    request, payload = seen["request"], seen["payload"]
    assert request.url == "https://gateway.test/u2/payments/ve1_2/orders/create"
    assert request.headers["content-type"] == "application/jose"
    assert request.headers["accept"] == "application/jose"
    assert request.headers["authorization"].startswith("Basic ")
    assert request.headers["bd-traceid"].startswith("TXN")
    assert len(request.headers["bd-traceid"]) <= 35
    assert request.headers["bd-timestamp"].isdigit()

    assert payload["mercid"] == "BDMERCH01"
    assert payload["amount"] == "1500.00"
    assert payload["currency"] == "356"
    assert payload["ru"] == "https://shop.test/payments/billdesk/return"
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\+0530", payload["order_date"])
    assert payload["additional_info"]["additional_info1"] == f"Order {payload['orderid']}"
    assert payload["additional_info"]["additional_info2"] == "buyer@example.com"
    assert payload["device"]["ip"] == "203.0.113.7"
    assert payload["device"]["init_channel"] == "internet"
    # The pending row exists before the gateway is contacted.
    assert seen["stored_status"] == "pending"

    assert result.success
    assert result.bd_order_id == "BD0001"
    assert result.payment_url == CHECKOUT_HREF
    assert result.rdata == "RDATA-TOKEN"
    assert result.parameters["bdorderid"] == "BD0001"
    assert result.order_number == payload["orderid"]

    txn = transactions.get(result.transaction_id)
    assert txn.status == "pending"
    assert txn.meta["bd_order_id"] == "BD0001"
    assert txn.meta["trace_id"] == result.trace_id
    assert txn.meta["customer_phone"] == "919876543210"


@pytest.mark.asyncio
@pytest.mark.parametrize(("amount", "error"), [("0", InvalidAmount), ("-5", InvalidAmount), (None, InvalidAmount),
                                               ("1000000.01", AmountExceedsLimit)])
async def test_invalid_amounts_have_no_side_effects(build_client, make_order, session_factory, amount, error):
    """Rejected amounts neither persist a row nor contact the gateway."""

    order = make_order(amount=amount)
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    with pytest.raises(error):
        await build_client(handler).create_payment_request(order, "203.0.113.7")

    assert calls == []
    with session_factory() as db:
        assert db.query(Transaction).count() == 0


@pytest.mark.asyncio
async def test_rate_limited_before_any_persistence(build_client, codec, make_order):
    """Throttling happens per order and client address before any write."""

    order = make_order()
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, text=_created_body(codec))

    client = build_client(handler, rate_limiter=SlidingWindowRateLimiter(window_seconds=60, max_requests=1))
    await client.create_payment_request(order, "203.0.113.7")
    with pytest.raises(RateLimited):
        await client.create_payment_request(order, "203.0.113.7")

    assert len(calls) == 1
    # A different client address has its own window.
    await client.create_payment_request(order, "198.51.100.2")
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_order_number_is_reused_only_once(build_client, codec, make_order):
    """Retries get a fresh gateway order reference."""

    order = make_order(order_number="ORD-1")
    client = build_client(lambda request: httpx.Response(200, text=_created_body(codec)))

    first = await client.create_payment_request(order, "203.0.113.7")
    second = await client.create_payment_request(order, "203.0.113.8")

    assert first.order_number == "ORD-1"
    assert second.order_number.startswith("order")
    assert second.order_number != first.order_number


@pytest.mark.asyncio
async def test_html_body_is_returned_as_redirect_form(build_client, make_order):
    """An HTML body is passed through as an auto-submitting form."""

    form = "<html><body><form action='https://pay.test' method='post'></form></body></html>"
    client = build_client(lambda request: httpx.Response(200, text=form, headers={"content-type": "text/html"}))

    result = await client.create_payment_request(make_order(), "203.0.113.7")

    assert result.is_redirect
    assert result.form_html == form
    assert result.bd_order_id is None


@pytest.mark.asyncio
async def test_plain_json_body_is_accepted(build_client, billdesk, make_order):
    """Unsigned JSON bodies are read when the gateway skips the envelope."""

    body = json.dumps({"bdorderid": "BD0002", "links": []})
    client = build_client(lambda request: httpx.Response(200, text=body))

    result = await client.create_payment_request(make_order(), "203.0.113.7")

    assert result.bd_order_id == "BD0002"
    assert result.payment_url == billdesk.checkout_url


@pytest.mark.asyncio
async def test_missing_bdorderid_is_malformed(build_client, codec, make_order):
    """A success body without bdorderid is a malformed response."""

    client = build_client(lambda request: httpx.Response(200, text=codec.seal({"links": []})))

    with pytest.raises(MalformedResponse):
        await client.create_payment_request(make_order(), "203.0.113.7")


@pytest.mark.asyncio
async def test_gateway_error_surfaces_sentinel_signed_message(build_client, billdesk, make_order, transactions, diagnostics):
    """Error bodies signed under the HMAC key id still yield the gateway message."""

    error_body = json.dumps({"status": 422, "error_type": "invalid_data_error", "message": "Invalid mercid"})
    inner = jose.encrypt(error_body, billdesk.client_id, billdesk.encryption_password, billdesk.security_id)
    envelope = jose.sign(inner, billdesk.client_id, billdesk.signing_password, jose.SENTINEL_KEY_ID)
    client = build_client(lambda request: httpx.Response(422, text=envelope))

    with pytest.raises(GatewayError) as excinfo:
        await client.create_payment_request(make_order(order_number="ORD-422"), "203.0.113.7")

    assert excinfo.value.status_code == 422
    assert excinfo.value.gateway_message == "Invalid mercid"
    assert "Invalid mercid" in excinfo.value.message
    assert transactions.find_by_order_number("ORD-422").status == "pending"

    logged = [entry["type"] for entry in diagnostics.recent(10)]
    assert sorted(logged) == sorted([REQUEST, RESPONSE, DECODED, ERROR])


@pytest.mark.asyncio
async def test_timeout_raises_gateway_timeout(build_client, make_order):
    """Transport timeouts surface as GatewayTimeout."""

    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayTimeout):
        await build_client(handler).create_payment_request(make_order(), "203.0.113.7")


@pytest.mark.asyncio
async def test_request_diagnostics_redact_authorization(build_client, codec, make_order, diagnostics):
    """Diagnostics record that auth was sent, never the credentials."""

    result = await build_client(lambda request: httpx.Response(200, text=_created_body(codec))).create_payment_request(
        make_order(), "203.0.113.7"
    )

    request_entry = next(entry for entry in diagnostics.by_trace_id(result.trace_id) if entry["type"] == REQUEST)
    assert request_entry["headers"]["Authorization"] == "[PRESENT]"
    assert "client-secret" not in json.dumps(request_entry)


@pytest.mark.asyncio
async def test_retrieve_transaction_returns_decoded_body(build_client, codec):
    """Status retrieval posts the sealed query and returns the opened body."""

    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["trace"] = request.headers["bd-traceid"]
        seen["payload"] = codec.open_json(request.content.decode())
        return httpx.Response(200, text=codec.seal({"orderid": "ORD-1", "auth_status": "0300", "status": "SUCCESS"}))

    result = await build_client(handler).retrieve_transaction("ORD-1")

    assert result == {"success": True, "data": {"orderid": "ORD-1", "auth_status": "0300", "status": "SUCCESS"}}
    assert seen["url"].endswith("/payments/ve1_2/transactions/get")
    assert seen["trace"].startswith("STS")
    assert seen["payload"] == {"mercid": "BDMERCH01", "orderid": "ORD-1", "refund_details": True}


@pytest.mark.asyncio
async def test_retrieve_transaction_never_raises(build_client):
    """Network failures come back as a failed result with the transport's text."""

    def handler(request):
        raise httpx.ConnectError("connection refused by gateway.test", request=request)

    result = await build_client(handler).retrieve_transaction("ORD-1")

    assert result == {"success": False, "message": "connection refused by gateway.test"}


@pytest.mark.asyncio
async def test_sub_paisa_amount_is_rejected_before_sending(build_client, make_order, session_factory):
    """An amount that rounds to 0.00 never reaches the gateway."""

    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    with pytest.raises(InvalidAmount):
        await build_client(handler).create_payment_request(make_order(amount="0.004"), "203.0.113.7")

    assert calls == []
    with session_factory() as db:
        assert db.query(Transaction).count() == 0


@pytest.mark.asyncio
async def test_amount_is_rounded_half_up_to_paise(build_client, codec, make_order, transactions):
    """Amounts are rounded half up to paise before sending and storing."""

    seen = {}

    def handler(request):
        seen["payload"] = codec.open_json(request.content.decode())
        return httpx.Response(200, text=_created_body(codec))

    result = await build_client(handler).create_payment_request(make_order(amount="10.005"), "203.0.113.7")

    assert seen["payload"]["amount"] == "10.01"
    assert transactions.get(result.transaction_id).amount == Decimal("10.01")


@pytest.mark.asyncio
async def test_diagnostics_keep_full_envelope_and_decoded_body(build_client, codec, make_order, diagnostics):
    """The request entry holds the whole envelope; the decrypted response sits beside it."""

    seen = {}

    def handler(request):
        seen["envelope"] = request.content.decode()
        return httpx.Response(200, text=_created_body(codec))

    result = await build_client(handler).create_payment_request(make_order(), "203.0.113.7")

    entries = {entry["type"]: entry for entry in diagnostics.by_trace_id(result.trace_id)}
    assert len(seen["envelope"]) > 500
    assert entries[REQUEST]["body"]["full_body"] == seen["envelope"]
    assert entries[REQUEST]["body"]["length"] == len(seen["envelope"])
    assert entries[DECODED]["operation"] == "create_order"
    assert entries[DECODED]["payload"]["bdorderid"] == "BD0001"
    assert entries[DECODED]["payload"]["links"][1]["parameters"]["rdata"] == "RDATA-TOKEN"


@pytest.mark.asyncio
async def test_unreadable_error_body_stays_in_diagnostics(build_client, make_order, diagnostics):
    """Raw upstream error text is kept for support but not put in the caller-facing message."""

    page = "<html><body>proxy error at 10.0.3.12</body></html>"
    client = build_client(lambda request: httpx.Response(502, text=page))

    with pytest.raises(GatewayError) as excinfo:
        await client.create_payment_request(make_order(), "203.0.113.7")

    assert excinfo.value.message == "Payment gateway error. Please try again. (Status: 502)"
    assert excinfo.value.gateway_message == page
    error_entry = next(entry for entry in diagnostics.recent(10) if entry["type"] == ERROR)
    assert error_entry["gateway_message"] == page


@pytest.mark.asyncio
async def test_log_context_is_restored_after_request(build_client, codec, make_order):
    """Trace and order log context do not leak past the call."""

    trace_token = trace_id_ctx.set("outer-trace")
    order_token = order_number_ctx.set("outer-order")
    try:
        await build_client(lambda request: httpx.Response(200, text=_created_body(codec))).create_payment_request(
            make_order(), "203.0.113.7"
        )

        assert trace_id_ctx.get() == "outer-trace"
        assert order_number_ctx.get() == "outer-order"
    finally:
        trace_id_ctx.reset(trace_token)
        order_number_ctx.reset(order_token)
