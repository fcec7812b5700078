"""Unit tests for the priority-based field mapping engine.

Pure functions only -- no connector, no store.
"""

from __future__ import annotations

from datetime import date

import pytest

from src.recruitops.sync.field_mapping import (
    CANDIDATE_FIELDS,
    SOURCE_LABEL,
    extract_authoritative,
    extract_protective,
    map_account,
    map_contact,
    map_job,
    map_job_status,
    map_priority,
    map_task,
    merge_fields,
    normalize_phone,
    normalize_profile_url,
    normalize_website,
    parse_date,
    parse_int_range,
    split_list,
)
from src.recruitops.sync.schemas import EntityType


# ── Extraction Rules ─────────────────────────────────────────────────────────


class TestExtraction:
    def test_priority_order_first_present_wins(self):
        record = {"firstname": "Ana"}
        assert extract_authoritative(record, ("firstName", "firstname", "first_name")) == "Ana"

    def test_earlier_name_beats_later(self):
        record = {"first_name": "Later", "firstName": "Earlier"}
        assert extract_authoritative(record, ("firstName", "firstname", "first_name")) == "Earlier"

    def test_authoritative_keeps_present_empty(self):
        record = {"jobTitle": "", "title": "CTO"}
        assert extract_authoritative(record, ("jobTitle", "title")) == ""

    def test_authoritative_trims(self):
        assert extract_authoritative({"email": "  a@b.c "}, ("email",)) == "a@b.c"

    def test_authoritative_absent_is_none(self):
        assert extract_authoritative({}, ("email",)) is None

    def test_protective_skips_empty(self):
        record = {"salaryCurrency": " ", "cf_salary_currency": "EUR"}
        assert extract_protective(record, ("salaryCurrency", "cf_salary_currency")) == "EUR"

    def test_protective_all_empty_is_none(self):
        assert extract_protective({"currency": ""}, ("salaryCurrency", "currency")) is None


# ── Normalizers ──────────────────────────────────────────────────────────────


class TestNormalizers:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("linkedin.com/in/ana", "https://linkedin.com/in/ana"),
            ("http://www.linkedin.com/in/ana?trk=x#top", "https://www.linkedin.com/in/ana"),
            ("HTTPS://www.linkedin.com/in/ana", "https://www.linkedin.com/in/ana"),
            ("Http://linkedin.com/in/ana", "https://linkedin.com/in/ana"),
            ("https://example.com/in/ana", None),
            ("", None),
            (None, None),
        ],
    )
    def test_profile_url(self, raw, expected):
        assert normalize_profile_url(raw) == expected

    def test_phone_strips_letters(self):
        assert normalize_phone(" +31 (0)6-1234  5678 ext ") == "+31 (0)6-1234 5678"

    def test_website(self):
        assert normalize_website("acme.com") == "https://acme.com"
        assert normalize_website("not a url") is None

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("EUR 55.000", 55000), ("60k", 60), (70000, 70000), ("n/a", None), (None, None)],
    )
    def test_int_range(self, raw, expected):
        assert parse_int_range(raw) == expected

    def test_parse_date(self):
        assert parse_date("2026-03-04") == date(2026, 3, 4)
        assert parse_date("2026-03-04T10:00:00Z") == date(2026, 3, 4)
        assert parse_date("soon") is None

    def test_split_list(self):
        assert split_list("Python, SQL |##| Go") == ["Python", "SQL", "Go"]
        assert split_list("") is None

    def test_vocabulary_maps(self):
        assert map_job_status("Active") == "open"
        assert map_job_status("closed") == "filled"
        assert map_job_status("On Hold") == "on hold"
        assert map_job_status("weird") == "open"
        assert map_priority("HIGH") == "high"
        assert map_priority(None) == "medium"


# ── Record Mappers ───────────────────────────────────────────────────────────


class TestMapContact:
    def test_maps_vendor_names(self):
        record = map_contact(
            {
                "id": "12x7",
                "firstname": "Ana",
                "lastname": "Lopez",
                "email": "ana@example.com",
                "title": "Data Engineer",
                "cf_salary_min": "EUR 55.000",
                "cf_linkedin_url": "linkedin.com/in/ana-lopez",
            }
        )

        assert record.entity_type == EntityType.CANDIDATE
        assert record.external_id == "12x7"
        assert record.fields["first_name"] == "Ana"
        assert record.fields["job_title"] == "Data Engineer"
        assert record.fields["current_title"] == "Data Engineer"
        assert record.fields["salary_range_min"] == 55000
        assert record.fields["linkedin_url"] == "https://linkedin.com/in/ana-lopez"
        assert record.fields["source"] == SOURCE_LABEL

    def test_absent_authoritative_field_left_unset(self):
        record = map_contact({"id": "12x1", "email": "x@example.com"})
        assert "job_title" not in record.fields
        assert "phone" not in record.fields

    def test_present_empty_authoritative_field_blanks(self):
        record = map_contact({"id": "12x1", "jobTitle": ""})
        assert record.fields["job_title"] == ""

    def test_invalid_profile_url_becomes_none(self):
        record = map_contact({"id": "12x1", "linkedin": "https://example.com/ana"})
        assert record.fields["linkedin_url"] is None

    def test_empty_protective_field_not_emitted(self):
        record = map_contact({"id": "12x1", "salaryRangeMin": ""})
        assert "salary_range_min" not in record.fields

    def test_vtiger_id_preferred(self):
        assert map_contact({"vtigerId": "12x9", "id": "12x1"}).external_id == "12x9"


class TestOtherMappers:
    def test_map_account(self):
        record = map_account({"id": "11x3", "accountname": " Acme ", "website": "acme.io", "bill_city": "Utrecht"})
        assert record.entity_type == EntityType.CLIENT
        assert record.fields["name"] == "Acme"
        assert record.fields["website"] == "https://acme.io"
        assert record.fields["location"] == "Utrecht"

    def test_map_job(self):
        record = map_job({"id": "40x1", "job_title": "Backend", "job_status": "Closed", "skills": "Go, SQL", "account_id": "11x3"})
        assert record.fields["title"] == "Backend"
        assert record.fields["status"] == "filled"
        assert record.fields["skills"] == ["Go", "SQL"]
        assert record.fields["client_external_id"] == "11x3"

    def test_map_task(self):
        record = map_task({"id": "9x1", "subject": "Call Ana", "taskpriority": "Low", "due_date": "2026-05-01"})
        assert record.entity_type == EntityType.TODO
        assert record.fields["priority"] == "low"
        assert record.fields["due_date"] == date(2026, 5, 1)


# ── Merge ────────────────────────────────────────────────────────────────────


class TestMergeFields:
    def test_authoritative_overwrites_with_empty(self):
        merged = merge_fields({"job_title": "CTO"}, {"job_title": ""}, CANDIDATE_FIELDS)
        assert merged["job_title"] == ""

    def test_protective_survives_empty_incoming(self):
        merged = merge_fields({"salary_range_min": 50000}, {"salary_range_min": None}, CANDIDATE_FIELDS)
        assert merged["salary_range_min"] == 50000

    def test_protective_updated_by_value(self):
        merged = merge_fields({"salary_range_min": 50000}, {"salary_range_min": 60000}, CANDIDATE_FIELDS)
        assert merged["salary_range_min"] == 60000

    def test_untouched_fields_kept(self):
        merged = merge_fields({"status": "placed", "email": "a@b.c"}, {"email": "new@b.c"}, CANDIDATE_FIELDS)
        assert merged == {"status": "placed", "email": "new@b.c"}
