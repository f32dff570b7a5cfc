"""Payment attempt state machine shared by every reconciliation channel.

Gateway signals arrive in several vocabularies (webhook `state`, status API
`data.state`/`code`, redirect arrival). They are collapsed to one canonical
outcome here before the store is touched, so every channel agrees on what
counts as paid.
"""

PENDING = "PENDING"
PAID = "PAID"
FAILED = "FAILED"

OUTCOME_SUCCESS = "SUCCESS"
OUTCOME_FAILED = "FAILED"
OUTCOME_PENDING = "PENDING"

SUCCESS_STATES = frozenset({"SUCCESS", "COMPLETED"})
FAILURE_STATES = frozenset({"FAILED", "CANCELLED", "EXPIRED"})

# PAID is the only terminal state: a late confirmation supersedes a failure
# report, never the other way around.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PAID, FAILED},
    FAILED: {PAID},
    PAID: set(),
}

_OUTCOME_TARGETS = {
    OUTCOME_SUCCESS: PAID,
    OUTCOME_FAILED: FAILED,
}


def normalize_outcome(raw_state: str | None) -> str:
    """Map any channel's state string to SUCCESS, FAILED or PENDING."""

    state = (raw_state or "").strip().upper()
    if state in SUCCESS_STATES:
        return OUTCOME_SUCCESS
    if state in FAILURE_STATES:
        return OUTCOME_FAILED
    return OUTCOME_PENDING


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def next_status(current: str, raw_state: str | None) -> str | None:
    """Return the status a signal moves `current` to, or None for a no-op.

    Repeated signals, pending signals and failure reports against a paid
    attempt all resolve to None.
    """

    target = _OUTCOME_TARGETS.get(normalize_outcome(raw_state))
    if target is None or target == current:
        return None
    try:
        validate_transition(current, target)
    except ValueError:
        return None
    return target
