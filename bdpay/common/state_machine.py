"""Transaction status transitions.

`pending` may be re-affirmed while the gateway reports an intermediate state;
`success` and `failed` are terminal.
"""

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PENDING, SUCCESS, FAILED},
    SUCCESS: set(),
    FAILED: set(),
}


def is_terminal(status: str) -> bool:
    return not ALLOWED_TRANSITIONS.get(status, set())


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def map_gateway_status(status: str | None) -> str:
    """Map the gateway's status string (any casing) onto a local status."""

    normalized = (status or "").strip().upper()
    if normalized == "SUCCESS":
        return SUCCESS
    if normalized == "FAILED":
        return FAILED
    return PENDING
