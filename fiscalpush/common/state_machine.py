"""Status transitions for notification records and fiscal receipts."""

NOTIFICATION_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"sent", "failed"},
    "sent": {"delivered", "read", "failed"},
    "delivered": {"read"},
    "read": set(),
    "failed": set(),
}

# Only the retry scheduler re-dispatches a failed record.
NOTIFICATION_RETRY_TRANSITIONS: dict[str, set[str]] = {
    "failed": {"sent", "failed"},
}

RECEIPT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"generated", "failed"},
    "failed": {"pending"},
    "generated": set(),
}


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = NOTIFICATION_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in transitions.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
