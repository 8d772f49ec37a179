"""Outbound BillDesk calls: order creation and transaction retrieval.

Both calls send a signed/encrypted envelope with the gateway's custom headers
(`BD-Traceid`, `BD-Timestamp`) and HTTP basic auth. Validation and rate
limiting run before anything is persisted or sent.
"""

import json
import secrets
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from zoneinfo import ZoneInfo

import httpx

from bdpay.common.config import settings
from bdpay.common.errors import (
    AmountExceedsLimit,
    EnvelopeError,
    GatewayError,
    GatewayTimeout,
    InvalidAmount,
    MalformedResponse,
    MissingOrderId,
    RateLimited,
)
from bdpay.common.logging import logger, order_number_ctx, trace_id_ctx
from bdpay.common.metrics import gateway_latency_seconds, gateway_requests_total, rate_limited_total
from bdpay.common.tracing import gateway_span
from bdpay.services.billdesk.schemas import PaymentResult


JOSE_MEDIA_TYPE = "application/jose"
TRACE_ID_MAX_LENGTH = 35
PAISE = Decimal("0.01")
DEFAULT_EMAIL = "customer@example.com"
DEFAULT_PHONE = "9999999999"
DEFAULT_USER_AGENT = "Mozilla/5.0(WindowsNT10.0;WOW64;)Gecko/20100101Firefox/51.0"


def new_trace_id(prefix: str) -> str:
    """`BD-Traceid` value: prefix, epoch milliseconds and a random suffix."""

    return f"{prefix}{int(time.time() * 1000)}{secrets.randbelow(1000)}"[:TRACE_ID_MAX_LENGTH]


def looks_like_html(body: str) -> bool:
    head = body.lstrip()[:200].lower()
    return head.startswith("<!doctype html") or head.startswith("<html") or "<form" in head


def select_redirect_link(links) -> dict | None:
    """The `rel == "redirect"` link, preferring the embedded-SDK checkout."""

    candidates = [link for link in links or [] if isinstance(link, dict) and link.get("rel") == "redirect"]
    for link in candidates:
        if "embeddedsdk" in str(link.get("href", "")):
            return link
    return candidates[0] if candidates else None


def _error_text(body: dict) -> str | None:
    for key in ("message", "error_description", "error_msg", "error"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class BillDeskClient:
    """Builds, signs and sends gateway requests for one merchant."""

    def __init__(
        self,
        billdesk,
        codec,
        rate_limiter,
        transactions,
        orders,
        diagnostics,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.billdesk = billdesk
        self.codec = codec
        self.rate_limiter = rate_limiter
        self.transactions = transactions
        self.orders = orders
        self.diagnostics = diagnostics
        self._transport = transport

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.billdesk.request_timeout_seconds,
            transport=self._transport,
            auth=httpx.BasicAuth(self.billdesk.client_id, self.billdesk.client_secret),
        )

    def _headers(self, trace_id: str) -> dict:
        return {
            "Content-Type": JOSE_MEDIA_TYPE,
            "Accept": JOSE_MEDIA_TYPE,
            "BD-Traceid": trace_id,
            "BD-Timestamp": str(int(time.time())),
        }

    def _credentials(self) -> dict:
        return {
            "merchant_id": self.billdesk.merchant_id,
            "client_id": self.billdesk.client_id,
            "key_id": self.billdesk.security_id,
        }

    def validate_order(self, order) -> Decimal:
        """Return the order's amount; raise on anything the gateway must never see."""

        raw_amount = getattr(order, "final_amount", None)
        if raw_amount is None:
            raise InvalidAmount()
        try:
            amount = raw_amount if isinstance(raw_amount, Decimal) else Decimal(str(raw_amount))
        except InvalidOperation as exc:
            raise InvalidAmount() from exc
        if not amount.is_finite():
            raise InvalidAmount()
        # Compared in paise: 0.004 rounds to 0.00 and is rejected.
        try:
            amount = amount.quantize(PAISE, rounding=ROUND_HALF_UP)
        except InvalidOperation as exc:
            raise AmountExceedsLimit() from exc
        if amount <= 0:
            raise InvalidAmount()
        if amount > self.billdesk.max_amount:
            raise AmountExceedsLimit()
        if not getattr(order, "order_id", None):
            raise MissingOrderId()
        return amount

    def _customer_contact(self, order) -> tuple[str, str]:
        email, phone = DEFAULT_EMAIL, DEFAULT_PHONE
        try:
            found_email, found_phone = self.orders.customer_contact(getattr(order, "customer_id", None))
        except Exception as exc:
            logger.warning("customer lookup failed order_id=%s: %s", order.order_id, exc)
            return email, phone
        if found_email and found_email.strip():
            email = found_email.strip()
        digits = "".join(ch for ch in (found_phone or "") if ch.isdigit())
        if digits:
            phone = digits
        return email, phone

    def _order_number(self, order) -> str:
        """Reuse the storefront's order number unless an attempt already used it."""

        if order.order_number and not self.transactions.order_number_taken(order.order_number):
            return order.order_number
        while True:
            candidate = f"order{int(time.time() * 1000)}{secrets.randbelow(1000)}"
            if not self.transactions.order_number_taken(candidate):
                return candidate

    def build_order_payload(self, order_number: str, amount: Decimal, email: str, client_ip: str, user_agent: str) -> dict:
        order_date = datetime.now(ZoneInfo(self.billdesk.gateway_timezone))
        return {
            "mercid": self.billdesk.merchant_id,
            "orderid": order_number,
            "amount": str(amount.quantize(PAISE, rounding=ROUND_HALF_UP)),
            "order_date": order_date.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "currency": self.billdesk.currency,
            "ru": self.billdesk.return_url,
            "additional_info": {
                "additional_info1": f"Order {order_number}",
                "additional_info2": email,
                "additional_info7": self.billdesk.additional_info_tag,
            },
            "itemcode": self.billdesk.item_code,
            "device": {
                "init_channel": "internet",
                "ip": client_ip,
                "user_agent": user_agent,
                "accept_header": "text/html",
            },
        }

    async def _post(self, operation: str, url: str, envelope: str, trace_id: str, order_number: str) -> httpx.Response:
        headers = self._headers(trace_id)
        self.diagnostics.record_request(
            trace_id,
            url,
            {**headers, "Authorization": "Basic"},
            envelope,
            order_number=order_number,
            credentials=self._credentials(),
        )
        start = time.perf_counter()
        try:
            with gateway_span(operation, trace_id, order_number) as span:
                async with self._http_client() as client:
                    response = await client.post(url, content=envelope, headers=headers)
                span.set_attribute("http.status_code", response.status_code)
        except httpx.TimeoutException as exc:
            gateway_requests_total.labels(
                service=settings.service_name, operation=operation, outcome="timeout"
            ).inc()
            raise GatewayTimeout(self.billdesk.request_timeout_seconds) from exc
        except httpx.HTTPError as exc:
            gateway_requests_total.labels(
                service=settings.service_name, operation=operation, outcome="network_error"
            ).inc()
            raise GatewayError(gateway_message=str(exc)) from exc
        finally:
            gateway_latency_seconds.labels(service=settings.service_name, operation=operation).observe(
                max(0.0, time.perf_counter() - start)
            )
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        gateway_requests_total.labels(
            service=settings.service_name,
            operation=operation,
            outcome="ok" if response.is_success else f"http_{response.status_code}",
        ).inc()
        self.diagnostics.record_response(
            trace_id, response.status_code, dict(response.headers), response.text, elapsed_ms, order_number=order_number
        )
        logger.info("%s -> %s in %sms", operation, response.status_code, elapsed_ms)
        return response

    def _open_body(self, body: str) -> dict:
        """Verify/decrypt a gateway body, falling back to plain JSON."""

        try:
            return self.codec.open_json(body)
        except EnvelopeError as exc:
            envelope_error = exc
        try:
            parsed = json.loads(body)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            logger.warning("gateway body was plain JSON, not an envelope (%s)", envelope_error)
            return parsed
        raise MalformedResponse(f"Invalid response format from payment gateway: {envelope_error}")

    def _decode(self, operation: str, body: str, trace_id: str, order_number: str) -> dict:
        data = self._open_body(body)
        self.diagnostics.record_decoded(trace_id, operation, data, order_number=order_number)
        return data

    def _error_details(self, operation: str, body: str, trace_id: str, order_number: str) -> tuple:
        """`(caller_message, gateway_text)` for a non-2xx body.

        Only text taken from a decoded body is fit for callers; anything else
        stays in `gateway_text` for the diagnostic log.
        """

        try:
            extracted = _error_text(self._decode(operation, body, trace_id, order_number))
        except MalformedResponse:
            return None, body.strip()[:200] or None
        return extracted, extracted

    async def create_payment_request(
        self, order, client_ip: str, user_agent: str = DEFAULT_USER_AGENT
    ) -> PaymentResult:
        """Create a BillDesk order for `order` and return how to continue checkout."""

        amount = self.validate_order(order)
        if not self.rate_limiter.admit(f"{order.order_id}-{client_ip}"):
            rate_limited_total.labels(service=settings.service_name).inc()
            raise RateLimited()

        email, phone = self._customer_contact(order)
        order_number = self._order_number(order)
        trace_id = new_trace_id("TXN")
        trace_token = trace_id_ctx.set(trace_id)
        order_token = order_number_ctx.set(order_number)
        try:
            return await self._create_order(order, amount, email, phone, order_number, trace_id, client_ip, user_agent)
        finally:
            trace_id_ctx.reset(trace_token)
            order_number_ctx.reset(order_token)

    async def _create_order(
        self, order, amount: Decimal, email: str, phone: str, order_number: str, trace_id: str, client_ip: str, user_agent: str
    ) -> PaymentResult:
        payload = self.build_order_payload(order_number, amount, email, client_ip, user_agent)
        envelope = self.codec.seal(payload)
        txn = self.transactions.create_pending(
            order.order_id,
            order_number,
            amount,
            {"trace_id": trace_id, "customer_email": email, "customer_phone": phone, "client_ip": client_ip},
        )

        url = self.billdesk.create_order_url
        try:
            response = await self._post("create_order", url, envelope, trace_id, order_number)
            body = response.text
            if not response.is_success:
                caller_message, gateway_text = self._error_details("create_order", body, trace_id, order_number)
                raise GatewayError(
                    f"Payment gateway error: {caller_message}"
                    if caller_message
                    else f"Payment gateway error. Please try again. (Status: {response.status_code})",
                    status_code=response.status_code,
                    gateway_message=gateway_text,
                )

            if looks_like_html(body):
                logger.info("gateway returned an HTML redirect form order_number=%s", order_number)
                self.transactions.merge_metadata(txn.transaction_id, {"response_type": "html_form"})
                return PaymentResult(
                    success=True,
                    transaction_id=txn.transaction_id,
                    order_number=order_number,
                    merchant_id=self.billdesk.merchant_id,
                    trace_id=trace_id,
                    is_redirect=True,
                    form_html=body,
                )

            data = self._decode("create_order", body, trace_id, order_number)
            bd_order_id = data.get("bdorderid")
            if not bd_order_id:
                raise MalformedResponse("Missing bdorderid in gateway response", status_code=response.status_code)
        except GatewayError as exc:
            logger.error("create order failed order_number=%s: %s", order_number, exc.gateway_message or exc.message)
            self.diagnostics.record_error(
                trace_id, exc, order_number=order_number, context={"operation": "create_order", "url": url}
            )
            raise

        link = select_redirect_link(data.get("links")) or {}
        parameters = link.get("parameters") if isinstance(link.get("parameters"), dict) else {}
        rdata = parameters.get("rdata") or data.get("rdata")
        payment_url = link.get("href") or self.billdesk.checkout_url
        self.transactions.merge_metadata(
            txn.transaction_id,
            {"bd_order_id": bd_order_id, "payment_url": payment_url, "response_type": "json"},
        )
        logger.info("gateway order created order_number=%s bdorderid=%s", order_number, bd_order_id)
        return PaymentResult(
            success=True,
            transaction_id=txn.transaction_id,
            order_number=order_number,
            merchant_id=self.billdesk.merchant_id,
            trace_id=trace_id,
            bd_order_id=bd_order_id,
            payment_url=payment_url,
            parameters={"mercid": self.billdesk.merchant_id, "bdorderid": bd_order_id, **parameters},
            rdata=rdata,
        )

    async def retrieve_transaction(self, order_number: str) -> dict:
        """Ask the gateway for the current state of `order_number`. Never raises.

        On failure `message` carries the gateway's or the transport's own text
        when there is one; the result is only logged, never shown to shoppers.
        """

        trace_id = new_trace_id("STS")
        url = self.billdesk.retrieve_transaction_url
        payload = {"mercid": self.billdesk.merchant_id, "orderid": order_number, "refund_details": True}
        try:
            envelope = self.codec.seal(payload)
            response = await self._post("retrieve_transaction", url, envelope, trace_id, order_number)
            if not response.is_success:
                caller_message, gateway_text = self._error_details(
                    "retrieve_transaction", response.text, trace_id, order_number
                )
                raise GatewayError(
                    f"Payment gateway error: {caller_message or response.status_code}",
                    status_code=response.status_code,
                    gateway_message=gateway_text,
                )
            return {"success": True, "data": self._decode("retrieve_transaction", response.text, trace_id, order_number)}
        except GatewayError as exc:
            logger.error("retrieve transaction failed order_number=%s: %s", order_number, exc.gateway_message or exc.message)
            self.diagnostics.record_error(
                trace_id, exc, order_number=order_number, context={"operation": "retrieve_transaction", "url": url}
            )
            return {"success": False, "message": exc.gateway_message or exc.message}
