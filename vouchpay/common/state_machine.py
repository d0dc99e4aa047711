"""Ledger operation state machine enforced by the transaction engine."""

VALIDATING = "VALIDATING"
LOCKED = "LOCKED"
APPLYING = "APPLYING"
COMMITTED = "COMMITTED"
FAILED = "FAILED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    VALIDATING: {LOCKED, FAILED},
    LOCKED: {APPLYING, FAILED},
    APPLYING: {COMMITTED, FAILED},
    COMMITTED: set(),
    FAILED: set(),
}

TERMINAL_STATES = frozenset({COMMITTED, FAILED})


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
