"""Startup-time helpers for safe config logging."""

import os

from bdpay.common.logging import logger


SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN")


def _safe_env(name: str) -> str:
    """Return env value with simple redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(secret in name for secret in SECRET_MARKERS):
        return "<redacted>"
    return value


def _mask(value: str, visible: int = 4) -> str:
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)


def log_gateway_config(billdesk) -> None:
    """Log the effective BillDesk settings once they are loaded.

    Identifiers are partially masked; secrets only report whether they are set.
    """

    logger.info(
        "billdesk_config=%s",
        {
            "merchant_id": billdesk.merchant_id,
            "client_id": _mask(billdesk.client_id),
            "security_id": _mask(billdesk.security_id),
            "client_secret_set": bool(billdesk.client_secret),
            "signing_password_set": bool(billdesk.signing_password),
            "encryption_password_set": bool(billdesk.encryption_password),
            "create_order_url": billdesk.create_order_url,
            "return_url": billdesk.return_url,
            "webhook_url": billdesk.webhook_url,
            "rate_limit": f"{billdesk.rate_limit_max_requests}/{billdesk.rate_limit_window_seconds:g}s "
            f"({billdesk.rate_limit_backend})",
            "legacy_order_recovery": billdesk.legacy_order_recovery,
        },
    )
