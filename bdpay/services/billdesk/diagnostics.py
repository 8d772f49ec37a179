"""Gateway diagnostic capture for support tickets.

Every outbound call and inbound callback is written to `gateway_logs`. Writes
are fire-and-forget: a failing write is reported through the application
logger and never reaches the payment flow.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select

from bdpay.common.logging import logger
from bdpay.services.billdesk.models import GatewayLogEntry


REQUEST = "REQUEST"
RESPONSE = "RESPONSE"
ERROR = "ERROR"
CALLBACK = "CALLBACK"
DECODED = "DECODED"

BODY_PREVIEW_CHARS = 500
# Authorization headers go through `redact_headers` instead.
SENSITIVE_MARKERS = ("password", "secret", "token")


def redact_headers(headers: dict) -> dict:
    """Copy of `headers` with the Authorization value replaced by a presence flag."""

    redacted = {key: value for key, value in headers.items() if key.lower() != "authorization"}
    present = any(key.lower() == "authorization" and value for key, value in headers.items())
    redacted["Authorization"] = "[PRESENT]" if present else "[MISSING]"
    return redacted


def sanitize(data):
    if isinstance(data, dict):
        return {
            key: "[REDACTED]" if any(marker in str(key).lower() for marker in SENSITIVE_MARKERS) else sanitize(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [sanitize(item) for item in data]
    return data


def _body_fields(body: str | None) -> dict:
    body = body or ""
    return {
        "length": len(body),
        "preview": body[:BODY_PREVIEW_CHARS],
        "full_body": body,
    }


class GatewayDiagnostics:
    """Writes and queries `gateway_logs` rows."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def _write(self, event_type: str, trace_id: str | None, order_number: str | None, payload: dict) -> None:
        try:
            with self.session_factory() as db:
                db.add(
                    GatewayLogEntry(
                        trace_id=trace_id,
                        event_type=event_type,
                        order_number=order_number,
                        payload=sanitize(payload),
                    )
                )
                db.commit()
        except Exception:
            logger.exception("gateway diagnostic write failed event_type=%s trace_id=%s", event_type, trace_id)

    def record_request(
        self,
        trace_id: str,
        url: str,
        headers: dict,
        envelope: str,
        order_number: str | None = None,
        credentials: dict | None = None,
    ) -> None:
        self._write(
            REQUEST,
            trace_id,
            order_number,
            {
                "url": url,
                "method": "POST",
                "headers": redact_headers(headers),
                "body": _body_fields(envelope),
                "credentials": credentials or {},
            },
        )

    def record_response(
        self,
        trace_id: str,
        status_code: int,
        headers: dict,
        body: str,
        elapsed_ms: int,
        order_number: str | None = None,
    ) -> None:
        self._write(
            RESPONSE,
            trace_id,
            order_number,
            {
                "status_code": status_code,
                "headers": dict(headers),
                "body": _body_fields(body),
                "elapsed_ms": elapsed_ms,
            },
        )

    def record_decoded(self, trace_id: str, operation: str, payload: dict, order_number: str | None = None) -> None:
        """Keep the verified and decrypted gateway body next to its raw envelope."""

        self._write(DECODED, trace_id, order_number, {"operation": operation, "payload": payload})

    def record_error(
        self,
        trace_id: str | None,
        error: Exception,
        order_number: str | None = None,
        context: dict | None = None,
    ) -> None:
        self._write(
            ERROR,
            trace_id,
            order_number,
            {
                "error_type": type(error).__name__,
                "error_message": str(error),
                "status_code": getattr(error, "status_code", None),
                "gateway_message": getattr(error, "gateway_message", None),
                "context": context or {},
            },
        )

    def record_callback(self, channel: str, order_number: str | None, status: str, reason: str | None, raw) -> None:
        raw_text = raw if isinstance(raw, str) else repr(raw)
        self._write(
            CALLBACK,
            None,
            order_number,
            {"channel": channel, "status": status, "reason": reason, "raw": _body_fields(raw_text)},
        )

    def _as_dict(self, entry: GatewayLogEntry) -> dict:
        return {
            "id": entry.id,
            "trace_id": entry.trace_id,
            "type": entry.event_type,
            "order_number": entry.order_number,
            "timestamp": entry.created_at.isoformat() if entry.created_at else None,
            **(entry.payload or {}),
        }

    def recent(self, count: int = 10) -> list[dict]:
        with self.session_factory() as db:
            rows = db.execute(
                select(GatewayLogEntry).order_by(GatewayLogEntry.created_at.desc()).limit(count)
            ).scalars()
            return [self._as_dict(row) for row in rows]

    def by_trace_id(self, trace_id: str) -> list[dict]:
        with self.session_factory() as db:
            rows = db.execute(
                select(GatewayLogEntry)
                .where(GatewayLogEntry.trace_id == trace_id)
                .order_by(GatewayLogEntry.created_at.asc())
            ).scalars()
            return [self._as_dict(row) for row in rows]

    def support_ticket(self, trace_id: str) -> dict | None:
        """Summary of one gateway exchange in the shape BillDesk support asks for."""

        logs = self.by_trace_id(trace_id)
        if not logs:
            return None
        request = next((log for log in logs if log["type"] == REQUEST), {})
        response = next((log for log in logs if log["type"] == RESPONSE), {})
        decoded = next((log for log in logs if log["type"] == DECODED), None)
        error = next((log for log in logs if log["type"] == ERROR), None)
        request_headers = request.get("headers", {})
        credentials = request.get("credentials", {})
        return {
            "trace_id": trace_id,
            "timestamp": request.get("timestamp"),
            "request": {
                "bd_traceid": request_headers.get("BD-Traceid"),
                "bd_timestamp": request_headers.get("BD-Timestamp"),
                "url": request.get("url"),
                "merchant_id": credentials.get("merchant_id"),
                "client_id": credentials.get("client_id"),
                "key_id": credentials.get("key_id"),
                "has_authorization": request_headers.get("Authorization") == "[PRESENT]",
            },
            "response": {
                "status_code": response.get("status_code"),
                "headers": response.get("headers"),
                "body_preview": response.get("body", {}).get("preview"),
                "decoded": decoded["payload"] if decoded else None,
            },
            "error": {"type": error["error_type"], "message": error["error_message"]} if error else None,
            "full_logs": logs,
        }

    def purge_older_than(self, days: int = 7) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        with self.session_factory() as db:
            result = db.execute(delete(GatewayLogEntry).where(GatewayLogEntry.created_at < cutoff))
            db.commit()
        logger.info("purged %s gateway log entries older than %s days", result.rowcount, days)
        return result.rowcount
