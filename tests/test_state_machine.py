"""Unit tests for transaction status guardrails."""

import pytest

from bdpay.common.state_machine import is_terminal, map_gateway_status, validate_transition


def test_valid_transition():
    """Pending may settle either way or be re-affirmed."""

    validate_transition("pending", "success")
    validate_transition("pending", "failed")
    validate_transition("pending", "pending")


@pytest.mark.parametrize("current", ["success", "failed"])
def test_terminal_status_never_changes(current):
    """Terminal statuses must reject every transition, including back to pending."""

    assert is_terminal(current)
    for new in ("pending", "success", "failed"):
        with pytest.raises(ValueError):
            validate_transition(current, new)


@pytest.mark.parametrize(
    ("reported", "expected"),
    [("SUCCESS", "success"), ("success", "success"), ("FAILED", "failed"), ("Failed", "failed"),
     ("PENDING", "pending"), ("", "pending"), (None, "pending"), ("REFUNDED", "pending")],
)
def test_gateway_status_mapping(reported, expected):
    """Gateway status strings and auth codes map onto local statuses."""

    assert map_gateway_status(reported) == expected
