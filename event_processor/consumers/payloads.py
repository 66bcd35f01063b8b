"""Payload models decoded at the consumer boundary."""

from pydantic import BaseModel, ConfigDict, ValidationError

from event_processor.consumers.contract import ConsumerError


class ConsentStatus(BaseModel):
    call: bool = False
    sms: bool = False
    email: bool = False


class LeadCreatedPayload(BaseModel):
    """Payload of a lead_created event. Unknown keys are kept but ignored."""

    model_config = ConfigDict(extra="allow")

    lead_id: str | None = None
    source: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None
    consent_status: ConsentStatus | None = None
    lead_score: int | float | None = None
    tenant_id: str | None = None

    def utm_fields(self) -> dict[str, str]:
        """UTM attribution fields that are set and non-empty."""
        fields = {
            "utm_source": self.utm_source,
            "utm_medium": self.utm_medium,
            "utm_campaign": self.utm_campaign,
            "utm_term": self.utm_term,
            "utm_content": self.utm_content,
        }
        return {k: v for k, v in fields.items() if v}


def decode_lead_created(payload: dict) -> LeadCreatedPayload:
    """Validate a lead_created payload, raising ConsumerError on bad data."""
    try:
        return LeadCreatedPayload.model_validate(payload or {})
    except ValidationError as e:
        raise ConsumerError(f"Invalid lead_created payload: {e.error_count()} error(s)") from e
