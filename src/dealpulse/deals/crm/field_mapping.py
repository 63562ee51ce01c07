"""HubSpot property mappings and metadata normalization for CRM sync.

Defines:
- DEAL_PROPERTIES / COMPANY_PROPERTIES / CONTACT_PROPERTIES: property lists
  requested from the HubSpot CRM v3 API.
- from_hubspot_deal(): Converts a deals-list record to RemoteDealSnapshot.
- company_display_name() / contact_display_name(): Entity labels.
- format_stage_name(): Readable label for a pipeline stage id.
- normalize_metadata(): Ingestion-boundary normalization of the deal
  metadata bag. Older rows were written with snake_case / raw HubSpot keys
  (``company_name``, ``next_step``, ``closedate``); current rows use the
  camelCase keys the dashboard reads (``company``, ``nextStep``,
  ``closeDate``). Both are accepted here, camelCase wins when both are
  present, and anything unrecognised is kept in ``extra``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from src.dealpulse.deals.schemas import DealMetadata, RemoteDealSnapshot


# ── HubSpot Property Lists ─────────────────────────────────────────────────

# Duration the deal has spent in its current stage, in milliseconds
TIME_IN_STAGE_PROPERTY = "hs_v2_time_in_current_stage"

DEAL_PROPERTIES: list[str] = [
    "dealname",
    "amount",
    "deal_currency_code",
    "dealstage",
    "closedate",
    "createdate",
    "hs_lastmodifieddate",
    "hs_next_step",
    "description",
    TIME_IN_STAGE_PROPERTY,
]

COMPANY_PROPERTIES: list[str] = ["name", "domain"]
CONTACT_PROPERTIES: list[str] = ["firstname", "lastname", "email"]

ENTITY_PROPERTIES: dict[str, list[str]] = {
    "companies": COMPANY_PROPERTIES,
    "contacts": CONTACT_PROPERTIES,
}

_MODELED_DEAL_PROPERTIES = set(DEAL_PROPERTIES) | {"hs_object_id"}


# ── Stage Labels ───────────────────────────────────────────────────────────

HUBSPOT_STAGE_LABELS: dict[str, str] = {
    "appointmentscheduled": "Appointment Scheduled",
    "qualifiedtobuy": "Qualified to Buy",
    "presentationscheduled": "Presentation Scheduled",
    "decisionmakerboughtin": "Decision Maker Bought In",
    "contractsent": "Contract Sent",
    "closedwon": "Closed Won",
    "closedlost": "Closed Lost",
    "new": "New",
    "qualified": "Qualified",
    "proposal": "Proposal",
    "negotiation": "Negotiation",
    "discovery": "Discovery",
    "demo": "Demo",
    "evaluation": "Evaluation",
    "onboarding": "Onboarding",
}


def format_stage_name(stage: str | None) -> str:
    """Format a raw stage identifier into a readable label.

    Known HubSpot stage ids map to their pipeline labels; anything else is
    split on camelCase, underscores and hyphens and title-cased.
    """
    if not stage:
        return "Unknown"

    normalized = re.sub(r"[_-]", "", stage.lower())
    if normalized in HUBSPOT_STAGE_LABELS:
        return HUBSPOT_STAGE_LABELS[normalized]

    formatted = re.sub(r"([a-z])([A-Z])", r"\1 \2", stage)
    formatted = re.sub(r"[_-]", " ", formatted)
    formatted = " ".join(word[:1].upper() + word[1:] for word in formatted.split())
    return formatted or stage


# ── Value Parsing ──────────────────────────────────────────────────────────


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a HubSpot timestamp (ISO-8601 string or epoch milliseconds)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    raw = str(value).strip()
    if raw.isdigit():
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_amount(value: Any) -> float | None:
    """Parse a HubSpot amount string; unparsable values become None."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_millis(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _association_ids(record: dict[str, Any], kind: str) -> list[str]:
    """Distinct associated ids of one kind, in response order.

    The v3 list endpoint repeats an id once per association type
    (labelled and unlabelled), so duplicates are dropped here.
    """
    results = record.get("associations", {}).get(kind, {}).get("results", [])
    seen: dict[str, None] = {}
    for item in results:
        entity_id = item.get("id")
        if entity_id is not None:
            seen.setdefault(str(entity_id), None)
    return list(seen)


# ── Conversion Functions ───────────────────────────────────────────────────


def from_hubspot_deal(record: dict[str, Any]) -> RemoteDealSnapshot:
    """Convert one HubSpot deals-list record to a RemoteDealSnapshot.

    Args:
        record: Result entry with ``id``, ``properties`` and ``associations``.

    Returns:
        RemoteDealSnapshot with parsed values and association stubs.
    """
    props: dict[str, Any] = record.get("properties") or {}

    extra = {
        key: value
        for key, value in props.items()
        if key not in _MODELED_DEAL_PROPERTIES and value not in (None, "")
    }

    return RemoteDealSnapshot(
        remote_id=str(record["id"]),
        name=props.get("dealname") or None,
        amount=parse_amount(props.get("amount")),
        currency=props.get("deal_currency_code") or None,
        stage_id=props.get("dealstage") or None,
        created_at=parse_timestamp(props.get("createdate")),
        last_modified_at=parse_timestamp(props.get("hs_lastmodifieddate")),
        close_at=parse_timestamp(props.get("closedate")),
        next_step=props.get("hs_next_step") or None,
        notes=props.get("description") or None,
        time_in_current_stage_millis=parse_millis(props.get(TIME_IN_STAGE_PROPERTY)),
        company_ids=_association_ids(record, "companies"),
        contact_ids=_association_ids(record, "contacts"),
        extra_properties=extra,
    )


def company_display_name(properties: dict[str, Any]) -> str | None:
    return properties.get("name") or properties.get("domain") or None


def contact_display_name(properties: dict[str, Any]) -> str | None:
    full_name = " ".join(
        part for part in (properties.get("firstname"), properties.get("lastname")) if part
    ).strip()
    return full_name or properties.get("email") or None


def entity_display_name(kind: str, properties: dict[str, Any]) -> str | None:
    if kind == "companies":
        return company_display_name(properties)
    return contact_display_name(properties)


# ── Metadata Normalization ─────────────────────────────────────────────────

# Legacy key -> canonical camelCase key
LEGACY_METADATA_KEYS: dict[str, str] = {
    "company_name": "company",
    "companyName": "company",
    "contact_name": "contact",
    "contactName": "contact",
    "company_id": "companyId",
    "contact_id": "contactId",
    "next_step": "nextStep",
    "days_in_stage": "daysInStage",
    "days_inactive": "daysInactive",
    "stage_label": "stageLabel",
    "risk_score": "riskScore",
    "risk_level": "riskLevel",
    "risk_factors": "riskFactors",
    "closedate": "closeDate",
    "close_date": "closeDate",
    "createdate": "createdDate",
    "created_date": "createdDate",
    "hs_lastmodifieddate": "lastModifiedDate",
    "last_modified_date": "lastModifiedDate",
}

_CANONICAL_KEYS = {
    field.alias or name
    for name, field in DealMetadata.model_fields.items()
    if name != "extra"
}


def normalize_metadata(raw: dict[str, Any] | None) -> DealMetadata:
    """Read a stored metadata bag written under either naming convention.

    Args:
        raw: The JSON bag from the deals row (may be None or empty).

    Returns:
        DealMetadata with known fields typed and everything else in ``extra``.
    """
    if not raw:
        return DealMetadata()

    canonical: dict[str, Any] = {}
    extra: dict[str, Any] = {}

    # Legacy keys first so canonical keys overwrite them
    for key, value in raw.items():
        target = LEGACY_METADATA_KEYS.get(key)
        if target is not None and value is not None:
            canonical[target] = value

    for key, value in raw.items():
        if key in _CANONICAL_KEYS:
            if value is not None:
                canonical[key] = value
        elif key not in LEGACY_METADATA_KEYS:
            extra[key] = value

    if canonical.get("riskFactors") is None:
        canonical.pop("riskFactors", None)
    for key in ("daysInStage", "daysInactive", "riskScore"):
        if key in canonical:
            try:
                canonical[key] = int(canonical[key])
            except (TypeError, ValueError):
                canonical.pop(key)

    return DealMetadata.model_validate({**canonical, "extra": extra})
