"""Payment flow orchestration between the storefront order and BillDesk."""

from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from bdpay.common.config import settings
from bdpay.common.errors import OrderNotFound, TransactionNotFound
from bdpay.common.logging import logger
from bdpay.common.metrics import status_polls_total
from bdpay.common.state_machine import FAILED, PENDING, SUCCESS
from bdpay.services.billdesk.client import DEFAULT_USER_AGENT
from bdpay.services.billdesk.processor import gateway_status_of
from bdpay.services.billdesk.store import ORDER_STATUS_SYNC


class BillDeskPaymentService:
    """Initialize, poll and settle BillDesk payments for storefront orders."""

    def __init__(self, billdesk, client, processor, transactions, orders, diagnostics, frontend_url: str) -> None:
        self.billdesk = billdesk
        self.client = client
        self.processor = processor
        self.transactions = transactions
        self.orders = orders
        self.diagnostics = diagnostics
        self.frontend_url = frontend_url.rstrip("/")

    def _load_order(self, order_id: str):
        order = self.orders.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def initialize_payment(self, order_id: str, client_ip: str, user_agent: str | None = None) -> dict:
        order = self._load_order(order_id)
        self.orders.set_payment_status(order.order_id, "pending")
        result = await self.client.create_payment_request(order, client_ip, user_agent or DEFAULT_USER_AGENT)
        return {
            "success": True,
            "orderId": order.order_id,
            "orderNumber": result.order_number,
            "transactionId": result.transaction_id,
            "traceId": result.trace_id,
            "paymentData": {
                "paymentUrl": result.payment_url,
                "bdOrderId": result.bd_order_id,
                "merchantId": result.merchant_id,
                "rdata": result.rdata,
                "parameters": result.parameters,
                "isRedirect": result.is_redirect,
                "formHtml": result.form_html,
            },
        }

    def _is_stale(self, txn) -> bool:
        updated_at = txn.updated_at or txn.created_at
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - updated_at > timedelta(minutes=self.billdesk.stale_after_minutes)

    async def _poll_gateway(self, txn):
        result = await self.client.retrieve_transaction(txn.order_number)
        if not result["success"]:
            status_polls_total.labels(service=settings.service_name, outcome="error").inc()
            logger.error("status poll failed order_number=%s: %s", txn.order_number, result["message"])
            return txn
        data = result["data"]
        status = gateway_status_of(data)
        status_polls_total.labels(service=settings.service_name, outcome=status).inc()
        if status == PENDING:
            return txn
        gateway_transaction_id = data.get("transactionid") or data.get("transaction_id")
        try:
            txn, _ = self.transactions.apply_gateway_status(
                txn.order_number,
                status,
                str(gateway_transaction_id) if gateway_transaction_id else None,
                {"payload": data, "verified": True, "channel": "poll"},
            )
        except TransactionNotFound:
            logger.error("transaction vanished during status poll order_number=%s", txn.order_number)
        return txn

    async def check_status(self, order_id: str) -> dict:
        order = self._load_order(order_id)
        txn = self.transactions.latest_for_order(order.order_id)
        if txn is None:
            return {"success": True, "orderId": order.order_id, "paymentStatus": order.payment_status}

        if txn.status == PENDING and self._is_stale(txn):
            logger.info("polling gateway for stale transaction order_number=%s", txn.order_number)
            txn = await self._poll_gateway(txn)
        if order.payment_status != ORDER_STATUS_SYNC[txn.status][0]:
            self.orders.sync_with_transaction(order.order_id, txn.status)

        return {
            "success": True,
            "orderId": order.order_id,
            "orderNumber": txn.order_number,
            "transactionId": txn.transaction_id,
            "paymentStatus": txn.status,
            "amount": str(txn.amount),
            "gatewayTransactionId": (txn.meta or {}).get("gateway_transaction_id"),
            "updatedAt": txn.updated_at.isoformat() if txn.updated_at else None,
        }

    def _settle_order(self, result) -> str | None:
        """Mirror the transaction status onto its order; returns the order id."""

        if not result.transaction_id:
            return None
        try:
            txn = self.transactions.get(result.transaction_id)
        except Exception:
            logger.exception("transaction lookup failed transaction_id=%s", result.transaction_id)
            return None
        if txn is None:
            return None
        try:
            self.orders.sync_with_transaction(txn.order_id, txn.status)
        except Exception:
            # The callback is still answered; check_status re-syncs a lagging order.
            logger.exception("order sync failed order_id=%s transaction_id=%s", txn.order_id, txn.transaction_id)
        return txn.order_id

    def _redirect_url(self, path: str, params: dict) -> str:
        return f"{self.frontend_url}{path}?{urlencode(params)}"

    def handle_return(self, raw) -> tuple:
        """Process the browser return post; returns `(result, frontend_redirect_url)`."""

        result = self.processor.process_response(raw, channel="return")
        order_id = self._settle_order(result)
        if result.status == SUCCESS:
            url = self._redirect_url("/thank-you", {"orderId": order_id})
        elif result.status == FAILED:
            params = {"orderId": order_id} if order_id else {}
            params["message"] = result.message
            url = self._redirect_url("/payment/failed", params)
        else:
            url = self._redirect_url("/payment/pending", {"orderId": order_id or ""})
        return result, url

    def handle_webhook(self, raw) -> dict:
        result = self.processor.process_response(raw, channel="webhook")
        self._settle_order(result)
        return {
            "success": result.success,
            "orderNumber": result.order_number,
            "status": result.status,
            "message": result.message,
        }
