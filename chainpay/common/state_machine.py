"""Lifecycle transitions for observed transfers and deposit intents."""

TRANSFER_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"CONFIRMING", "CONFIRMED", "REORGED"},
    "CONFIRMING": {"CONFIRMED", "REORGED"},
    "CONFIRMED": {"CREDITED", "REORGED"},
    "CREDITED": set(),
    "REORGED": set(),
}

INTENT_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"DETECTED", "EXPIRED", "CREDITED"},
    "DETECTED": {"CREDITED"},
    "CREDITED": set(),
    "EXPIRED": set(),
}

# Forward order of the confirmation states; used to refuse backward moves.
TRANSFER_PROGRESS = {"PENDING": 0, "CONFIRMING": 1, "CONFIRMED": 2}


def can_transition(current: str, new: str, transitions: dict[str, set[str]] = TRANSFER_TRANSITIONS) -> bool:
    return new in transitions.get(current, set())


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = TRANSFER_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition(current, new, transitions):
        raise ValueError(f"Invalid transition: {current} -> {new}")
