"""Priority-based field mapping from raw CRM records to internal records.

Defines:
- FieldPolicy / FieldRule: how one internal field is sourced and merged
- CANDIDATE_FIELDS, CLIENT_FIELDS, VACANCY_FIELDS, TODO_FIELDS: per-entity
  tables of internal field -> ordered source names (normalized camelCase names
  first, then raw vendor names and custom-field codes)
- extract_authoritative() / extract_protective(): the two extraction rules
- normalize_*() / parse_*(): value validation and cleanup
- map_contact(), map_account(), map_job(), map_task(): record mappers
- merge_fields(): store-side application of the field policies

Everything here is pure: no I/O, no logging side effects on the data path.

Policy contract:
- AUTHORITATIVE fields take the value of the first source name *present* on
  the record, even when that value is empty, so the CRM can blank local data.
  A field none of whose source names appear is left unset.
- PROTECTIVE fields take the first *non-empty* value and are never blanked.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from src.recruitops.sync.schemas import EntityType, IncomingRecord


class FieldPolicy(str, Enum):
    AUTHORITATIVE = "authoritative"
    PROTECTIVE = "protective"


@dataclass(frozen=True)
class FieldRule:
    """Source names (priority order), merge policy and value normalizer."""

    sources: tuple[str, ...]
    policy: FieldPolicy = FieldPolicy.AUTHORITATIVE
    normalize: Callable[[Any], Any] | None = None


# ── Validation Helpers ──────────────────────────────────────────────────────

PROFILE_URL_PATTERN = re.compile(r"^https?://(www\.)?linkedin\.com/(in/|pub/|profile/view)", re.IGNORECASE)
_PHONE_DISALLOWED = re.compile(r"[^\d+\-\s()]")
_WHITESPACE = re.compile(r"\s+")
_NON_DIGITS = re.compile(r"[^\d]")


def is_empty(value: Any) -> bool:
    """True for None and for strings that are blank after trimming."""
    return value is None or (isinstance(value, str) and value.strip() == "")


def normalize_string(value: Any) -> str | None:
    """Trim a value to a string; blank becomes None."""
    if is_empty(value):
        return None
    text = str(value).strip()
    return text or None


def normalize_phone(value: Any) -> str | None:
    """Keep digits, ``+``, ``-``, spaces and parentheses; collapse whitespace."""
    text = normalize_string(value)
    if text is None:
        return None
    cleaned = _WHITESPACE.sub(" ", _PHONE_DISALLOWED.sub("", text)).strip()
    return cleaned or None


def normalize_profile_url(value: Any) -> str | None:
    """Return a canonical https LinkedIn profile URL, or None if it is not one.

    Query strings and fragments are dropped and a missing scheme becomes
    ``https://``.
    """
    text = normalize_string(value)
    if text is None:
        return None

    url = text.split("?", 1)[0].split("#", 1)[0]
    scheme, sep, rest = url.partition("://")
    if sep and scheme.lower() in ("http", "https"):
        url = "https://" + rest
    elif not sep:
        url = "https://" + url

    if not PROFILE_URL_PATTERN.match(url):
        return None
    return url


def normalize_website(value: Any) -> str | None:
    """Return an absolute http(s) URL with a host, or None."""
    text = normalize_string(value)
    if text is None:
        return None

    url = text if re.match(r"^https?://", text, re.IGNORECASE) else f"https://{text}"
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.netloc or " " in parts.netloc or "." not in parts.netloc:
        return None
    return url


def parse_int_range(value: Any) -> int | None:
    """Strip every non-digit and parse as int (``"EUR 55.000"`` -> 55000)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    digits = _NON_DIGITS.sub("", str(value))
    if not digits:
        return None
    return int(digits)


def parse_date(value: Any) -> date | None:
    """Parse ``YYYY-MM-DD`` or an ISO timestamp; anything else is None."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = normalize_string(value)
    if text is None:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def split_list(value: Any) -> list[str] | None:
    """Split a comma (or ``|##|`` multi-picklist) string into trimmed items."""
    if isinstance(value, (list, tuple)):
        items = [normalize_string(v) for v in value]
        return [v for v in items if v] or None
    text = normalize_string(value)
    if text is None:
        return None
    items = [part.strip() for part in re.split(r",|\|##\|", text)]
    return [item for item in items if item] or None


# ── Vocabulary Maps ─────────────────────────────────────────────────────────

JOB_STATUS_MAP: dict[str, str] = {
    "active": "open",
    "open": "open",
    "closed": "filled",
    "filled": "filled",
    "on hold": "on hold",
}
DEFAULT_JOB_STATUS = "open"

PRIORITY_MAP: dict[str, str] = {
    "high": "high",
    "medium": "medium",
    "low": "low",
}
DEFAULT_PRIORITY = "medium"


def map_job_status(value: Any) -> str:
    """CRM job status -> vacancy status; unknown or blank means ``open``."""
    text = normalize_string(value)
    return JOB_STATUS_MAP.get(text.lower(), DEFAULT_JOB_STATUS) if text else DEFAULT_JOB_STATUS


def map_priority(value: Any) -> str:
    """CRM task priority -> todo priority; unknown or blank means ``medium``."""
    text = normalize_string(value)
    return PRIORITY_MAP.get(text.lower(), DEFAULT_PRIORITY) if text else DEFAULT_PRIORITY


# ── Field Tables ────────────────────────────────────────────────────────────

_A = FieldPolicy.AUTHORITATIVE
_P = FieldPolicy.PROTECTIVE

CANDIDATE_FIELDS: dict[str, FieldRule] = {
    "first_name": FieldRule(("firstName", "firstname", "first_name", "fname")),
    "last_name": FieldRule(("lastName", "lastname", "last_name", "lname", "surname")),
    "email": FieldRule(("email", "email1", "primary_email", "contact_email")),
    "phone": FieldRule(
        ("phone", "mobile", "phone1", "primary_phone", "contact_phone"),
        normalize=normalize_phone,
    ),
    "job_title": FieldRule(("jobTitle", "title", "jobtitle", "job_title", "position", "role")),
    "title_description": FieldRule(
        ("titleDescription", "cf_title_description", "title_description", "cf_885")
    ),
    "profile_summary": FieldRule(
        ("profileSummary", "cf_profile_summary", "profile_summary", "cf_883", "description", "summary")
    ),
    "company": FieldRule(
        ("company", "cf_company", "accountname", "employer", "organization", "cf_867")
    ),
    "company_location": FieldRule(
        ("companyLocation", "cf_company_location", "company_location", "company_address", "cf_887")
    ),
    "branche": FieldRule(("branche", "cf_branche", "industry", "sector", "field", "cf_863")),
    "location": FieldRule(
        ("location", "cf_location", "city", "address", "geographic_location", "cf_857")
    ),
    "duration_current_role": FieldRule(
        ("durationCurrentRole", "cf_duration_current_role", "duration_current_role",
         "current_role_duration", "cf_889")
    ),
    "duration_at_company": FieldRule(
        ("durationAtCompany", "cf_duration_at_company", "duration_at_company",
         "company_duration", "cf_891")
    ),
    "past_employer": FieldRule(
        ("pastEmployer", "cf_past_employer", "past_employer", "previous_employer",
         "former_employer", "cf_893")
    ),
    "past_role_title": FieldRule(
        ("pastRoleTitle", "cf_past_role_title", "past_role_title", "previous_role",
         "former_position", "cf_897")
    ),
    "past_experience_duration": FieldRule(
        ("pastExperienceDuration", "cf_past_experience_duration", "past_experience_duration",
         "previous_experience", "cf_901")
    ),
    "salary_range_min": FieldRule(
        ("salaryRangeMin", "cf_salary_min", "salary_range_min", "min_salary", "salary_min"),
        policy=_P,
        normalize=parse_int_range,
    ),
    "salary_range_max": FieldRule(
        ("salaryRangeMax", "cf_salary_max", "salary_range_max", "max_salary", "salary_max"),
        policy=_P,
        normalize=parse_int_range,
    ),
    "salary_currency": FieldRule(
        ("salaryCurrency", "cf_salary_currency", "salary_currency", "currency", "salary_curr"),
        policy=_P,
    ),
    "linkedin_url": FieldRule(
        ("linkedinUrl", "cf_linkedin_url", "linkedin_url", "linkedin", "social_linkedin",
         "linkedin_profile", "cf_919"),
        normalize=normalize_profile_url,
    ),
    "scraped_on": FieldRule(
        ("scrapedOn", "cf_scraped_on", "scraped_on", "scrape_date", "extraction_date")
    ),
    # Last status the CRM holds; outbound sync pushes only when the local status differs.
    "crm_status": FieldRule(("candidateStatus", "candidatestatus")),
}

CLIENT_FIELDS: dict[str, FieldRule] = {
    "name": FieldRule(("companyName", "accountname", "account_name", "name")),
    "email": FieldRule(("email", "email1", "email2")),
    "phone": FieldRule(("phone", "otherphone"), normalize=normalize_phone),
    "location": FieldRule(("city", "bill_city", "ship_city")),
    "website": FieldRule(("website",), normalize=normalize_website),
    "industry": FieldRule(("industry",)),
}

VACANCY_FIELDS: dict[str, FieldRule] = {
    "title": FieldRule(("job_title", "jobtitle", "title", "name")),
    "description": FieldRule(("job_description", "description")),
    "location": FieldRule(("job_location", "location", "city")),
    "skills": FieldRule(("job_skills", "skills"), normalize=split_list),
    "status": FieldRule(("job_status", "jobstatus", "status"), normalize=map_job_status),
    "client_external_id": FieldRule(("account_id", "accountid", "related_to"), policy=_P),
}

TODO_FIELDS: dict[str, FieldRule] = {
    "title": FieldRule(("subject", "title")),
    "description": FieldRule(("description",)),
    "due_date": FieldRule(("due_date", "date_start"), normalize=parse_date),
    "priority": FieldRule(("taskpriority", "priority"), normalize=map_priority),
    "status": FieldRule(("taskstatus", "status", "eventstatus")),
}

FIELD_POLICIES: dict[EntityType, dict[str, FieldRule]] = {
    EntityType.CANDIDATE: CANDIDATE_FIELDS,
    EntityType.CLIENT: CLIENT_FIELDS,
    EntityType.VACANCY: VACANCY_FIELDS,
    EntityType.TODO: TODO_FIELDS,
}

SOURCE_LABEL = "Vtiger CRM"


# ── Extraction ──────────────────────────────────────────────────────────────


def _first_present(record: Mapping[str, Any], names: tuple[str, ...] | list[str]) -> tuple[bool, Any]:
    for name in names:
        if name in record:
            return True, record[name]
    return False, None


def _trim(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, tuple, dict, bool)):
        return value
    return str(value).strip()


def extract_authoritative(record: Mapping[str, Any], names: tuple[str, ...] | list[str]) -> Any:
    """Trimmed value of the first source name present on ``record``.

    Presence wins even when the value is empty, so ``""`` comes back as
    ``""`` and an explicit null as None. None is also returned when no name
    is present; map_fields() tells the two cases apart.
    """
    _, value = _first_present(record, names)
    return _trim(value)


def extract_protective(record: Mapping[str, Any], names: tuple[str, ...] | list[str]) -> str | None:
    """Trimmed value of the first source name holding a non-empty value."""
    for name in names:
        value = record.get(name)
        if not is_empty(value):
            return normalize_string(value)
    return None


def map_fields(record: Mapping[str, Any], rules: Mapping[str, FieldRule]) -> dict[str, Any]:
    """Apply ``rules`` to ``record`` and return the partial internal record."""
    mapped: dict[str, Any] = {}
    for field_name, rule in rules.items():
        if rule.policy == FieldPolicy.AUTHORITATIVE:
            present, raw = _first_present(record, rule.sources)
            if not present:
                continue
            value = _trim(raw)
            if rule.normalize is not None:
                value = rule.normalize(value)
            mapped[field_name] = value
        else:
            value = extract_protective(record, rule.sources)
            if value is None:
                continue
            if rule.normalize is not None:
                value = rule.normalize(value)
            if not is_empty(value):
                mapped[field_name] = value
    return mapped


def _external_id(record: Mapping[str, Any]) -> str | None:
    return normalize_string(record.get("vtigerId") or record.get("id"))


# ── Record Mappers ──────────────────────────────────────────────────────────


def map_contact(record: Mapping[str, Any]) -> IncomingRecord:
    """Map a CRM contact to a candidate record."""
    fields = map_fields(record, CANDIDATE_FIELDS)
    if "job_title" in fields:
        fields["current_title"] = fields["job_title"]
    fields["source"] = SOURCE_LABEL
    return IncomingRecord(
        entity_type=EntityType.CANDIDATE,
        external_id=_external_id(record),
        fields=fields,
    )


def map_account(record: Mapping[str, Any]) -> IncomingRecord:
    """Map a CRM organization to a client record."""
    fields = map_fields(record, CLIENT_FIELDS)
    fields["source"] = SOURCE_LABEL
    return IncomingRecord(
        entity_type=EntityType.CLIENT,
        external_id=_external_id(record),
        fields=fields,
    )


def map_job(record: Mapping[str, Any]) -> IncomingRecord:
    """Map a CRM job to a vacancy record."""
    return IncomingRecord(
        entity_type=EntityType.VACANCY,
        external_id=_external_id(record),
        fields=map_fields(record, VACANCY_FIELDS),
    )


def map_task(record: Mapping[str, Any]) -> IncomingRecord:
    """Map a CRM task/calendar item to a todo record."""
    return IncomingRecord(
        entity_type=EntityType.TODO,
        external_id=_external_id(record),
        fields=map_fields(record, TODO_FIELDS),
    )


MAPPERS: dict[EntityType, Callable[[Mapping[str, Any]], IncomingRecord]] = {
    EntityType.CANDIDATE: map_contact,
    EntityType.CLIENT: map_account,
    EntityType.VACANCY: map_job,
    EntityType.TODO: map_task,
}


# ── Merge ───────────────────────────────────────────────────────────────────


def merge_fields(
    existing: Mapping[str, Any],
    incoming: Mapping[str, Any],
    rules: Mapping[str, FieldRule],
) -> dict[str, Any]:
    """Overlay ``incoming`` on ``existing`` honouring field policies.

    Authoritative (and unlisted) fields always overwrite. Protective fields
    are only written when the incoming value is non-empty.
    """
    merged = dict(existing)
    for field_name, value in incoming.items():
        rule = rules.get(field_name)
        if rule is not None and rule.policy == FieldPolicy.PROTECTIVE and is_empty(value):
            continue
        merged[field_name] = value
    return merged
