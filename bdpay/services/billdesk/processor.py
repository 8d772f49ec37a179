"""Return-URL and webhook processing.

`process_response` turns whatever the gateway delivered into a
`ProcessResult` and never raises. Only bodies that passed signature
verification can mark a transaction `success`; plain-JSON bodies are accepted
for failure and pending reports only.
"""

import json
from datetime import datetime, timedelta, timezone

from bdpay.common.config import settings
from bdpay.common.errors import EnvelopeError, TransactionNotFound
from bdpay.common.logging import logger, order_number_ctx
from bdpay.common.metrics import gateway_callbacks_total
from bdpay.common.state_machine import FAILED, PENDING, SUCCESS, map_gateway_status
from bdpay.services.billdesk.schemas import ProcessResult


UNKNOWN_ORDER = "unknown"

# BillDesk `auth_status` codes, used when a body carries no `status` string.
AUTH_STATUS_CODES = {
    "0300": SUCCESS,
    "0399": FAILED,
    "0002": PENDING,
}


def gateway_status_of(body: dict) -> str:
    """Local status for a decoded gateway body."""

    status = body.get("status")
    if isinstance(status, str) and status.strip():
        return map_gateway_status(status)
    auth_status = body.get("auth_status")
    if auth_status is not None:
        return AUTH_STATUS_CODES.get(str(auth_status).strip(), PENDING)
    return PENDING


def _order_id_of(body: dict) -> str | None:
    value = body.get("orderid") or body.get("order_id")
    return str(value) if value else None


class ResponseProcessor:
    """Verifies gateway callbacks and applies them to stored transactions."""

    def __init__(self, billdesk, codec, transactions, diagnostics=None) -> None:
        self.billdesk = billdesk
        self.codec = codec
        self.transactions = transactions
        self.diagnostics = diagnostics

    def _failure(self, message: str, reason: str, order_number: str = UNKNOWN_ORDER, data: dict | None = None):
        return ProcessResult(
            success=False,
            status=FAILED,
            order_number=order_number,
            message=message,
            reason=reason,
            data=data,
        )

    def _decode(self, raw) -> tuple[dict | None, bool, str | None]:
        """Return `(body, verified, error)` for a raw callback."""

        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, dict):
            wrapped = raw.get("transaction_response")
            if not isinstance(wrapped, str):
                return dict(raw), False, None
            raw = wrapped
        if not isinstance(raw, str) or not raw.strip():
            return None, False, "empty gateway response"

        try:
            return self.codec.open_json(raw.strip()), True, None
        except EnvelopeError as exc:
            envelope_error = str(exc)
        try:
            parsed = json.loads(raw)
        except ValueError:
            return None, False, envelope_error
        if not isinstance(parsed, dict):
            return None, False, envelope_error
        logger.warning("gateway callback was plain JSON, not an envelope (%s)", envelope_error)
        return parsed, False, None

    def _order_from_embedded_response(self, body: dict) -> str | None:
        embedded = body.get("transaction_response")
        if isinstance(embedded, str):
            try:
                embedded = json.loads(embedded)
            except ValueError:
                return None
        if isinstance(embedded, dict):
            return _order_id_of(embedded)
        return None

    def _recover_recent_pending(self) -> str | None:
        if not self.billdesk.legacy_order_recovery:
            return None
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.billdesk.order_recovery_window_minutes)
        txn = self.transactions.latest_pending_since(cutoff)
        if txn is None:
            return None
        logger.warning("order id recovered from latest pending transaction order_number=%s", txn.order_number)
        return txn.order_number

    def _merge_nested(self, body: dict, verified: bool) -> tuple[dict, bool]:
        nested = body.pop("encrypted_response")
        if isinstance(nested, dict):
            return {**body, **nested}, verified
        if isinstance(nested, str):
            try:
                return {**body, **self.codec.open_json(nested)}, True
            except EnvelopeError as exc:
                logger.warning("nested encrypted_response could not be opened: %s", exc)

        order_number = (
            _order_id_of(body) or self._order_from_embedded_response(body) or self._recover_recent_pending()
        )
        if order_number:
            body["orderid"] = order_number
        return body, verified

    def process_response(self, raw, channel: str = "webhook") -> ProcessResult:
        try:
            result = self._process(raw)
        except Exception:
            logger.exception("unexpected error processing gateway %s", channel)
            result = self._failure("Error processing payment response", reason="internal_error")
        gateway_callbacks_total.labels(service=settings.service_name, channel=channel, status=result.status).inc()
        if self.diagnostics is not None:
            self.diagnostics.record_callback(channel, result.order_number, result.status, result.reason, raw)
        return result

    def _process(self, raw) -> ProcessResult:
        body, verified, error = self._decode(raw)
        if body is None:
            logger.error("gateway response could not be decoded: %s", error)
            return self._failure("Unable to decode gateway response", reason="decryption_failed")

        if "encrypted_response" in body:
            body, verified = self._merge_nested(body, verified)

        order_number = _order_id_of(body)
        if not order_number:
            return self._failure("Order ID not found in gateway response", reason="missing_order_id", data=body)
        order_number_ctx.set(order_number)

        merchant_id = body.get("mercid") or body.get("merchantid")
        if merchant_id and str(merchant_id) != self.billdesk.merchant_id:
            logger.error("gateway response for foreign merchant %s order_number=%s", merchant_id, order_number)
            return self._failure("Merchant mismatch", reason="merchant_mismatch", order_number=order_number)

        status = gateway_status_of(body)
        if status == SUCCESS and not verified:
            logger.warning("unsigned success report ignored order_number=%s", order_number)
            status = PENDING

        gateway_transaction_id = body.get("transactionid") or body.get("transaction_id")
        try:
            txn, changed = self.transactions.apply_gateway_status(
                order_number,
                status,
                str(gateway_transaction_id) if gateway_transaction_id else None,
                {"payload": body, "verified": verified},
            )
        except TransactionNotFound:
            logger.error("no transaction for gateway order_number=%s", order_number)
            return self._failure(
                "Transaction record not found", reason="transaction_not_found", order_number=order_number, data=body
            )

        return ProcessResult(
            success=txn.status == SUCCESS,
            status=txn.status,
            order_number=order_number,
            transaction_id=txn.transaction_id,
            message=f"Payment {txn.status}",
            reason=None if changed or txn.status == status else "already_final",
            data=body,
        )
