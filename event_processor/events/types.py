"""Canonical event types known to the processor."""


class EventTypes:
    """Event type discriminators used by built-in producers and consumers."""

    # A new lead entered the CRM; consumed by cold_agent_enroller
    LEAD_CREATED = "lead_created"

    # A lead was enrolled into a cold outreach sequence
    COLD_SEQUENCE_ENROLLED = "cold_sequence_enrolled"


def cold_enrollment_key(lead_id: str, sequence_id: str) -> str:
    """Idempotency key for the follow-up event of one (lead, sequence) enrollment."""
    return f"{EventTypes.COLD_SEQUENCE_ENROLLED}:{lead_id}:{sequence_id}"
