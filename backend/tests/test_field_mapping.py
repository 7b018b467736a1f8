import pytest

from crm_integration.models import Contact
from crm_integration.services.field_mapping import (
    ACME_FIELD_MAP,
    AcmeField,
    FieldMap,
    FIELD_MAPS,
    UnknownCrmError,
    from_external,
    get_field_map,
    register_field_map,
    to_external,
)


def build_contact(**overrides):
    values = dict(
        first_name="Ada",
        last_name="Lovelace",
        email="ada@analytical.io",
        phone="+1-555-000-1111",
        company="Analytical Engines",
        title="Mathematician",
        linkedin_url="https://www.linkedin.com/in/ada",
        notes="Met at the booth",
        created_by="user-1",
    )
    values.update(overrides)
    return Contact(**values)


def test_to_external_renames_every_field_and_adds_source():
    record = to_external(build_contact())

    assert record == {
        "acme_first_name": "Ada",
        "acme_last_name": "Lovelace",
        "acme_email": "ada@analytical.io",
        "acme_phone": "+1-555-000-1111",
        "acme_company": "Analytical Engines",
        "acme_job_title": "Mathematician",
        "acme_linkedin": "https://www.linkedin.com/in/ada",
        "acme_notes": "Met at the booth",
        "acme_source": "Linq QR Scan",
    }


def test_to_external_maps_missing_values_to_none():
    record = to_external(build_contact(phone=None, company=None, linkedin_url=None, notes=None))

    assert record["acme_phone"] is None
    assert record["acme_company"] is None
    assert record["acme_linkedin"] is None
    assert record["acme_notes"] is None
    assert set(record) == set(ACME_FIELD_MAP.fields.values()) | {"acme_source"}


def test_round_trip_reproduces_shared_fields():
    original = build_contact()

    restored = from_external(to_external(original), created_by="importer")

    for field in ACME_FIELD_MAP.fields:
        assert getattr(restored, field) == getattr(original, field)
    assert restored.created_by == "importer"
    assert restored.id is None


def test_from_external_accepts_enum_keys():
    record = {
        AcmeField.ID: "acme_42",
        AcmeField.FIRST_NAME: "Grace",
        AcmeField.LAST_NAME: "Hopper",
        AcmeField.EMAIL: "grace@navy.mil",
        AcmeField.JOB_TITLE: "Rear Admiral",
    }

    contact = from_external(record, created_by="importer")

    assert contact.first_name == "Grace"
    assert contact.last_name == "Hopper"
    assert contact.email == "grace@navy.mil"
    assert contact.title == "Rear Admiral"
    assert contact.acme_id == "acme_42"
    assert contact.phone is None


def test_unknown_crm_is_rejected():
    with pytest.raises(UnknownCrmError):
        get_field_map("salesforce")

    with pytest.raises(UnknownCrmError):
        to_external(build_contact(), crm="salesforce")


def test_registered_field_map_is_used_for_dispatch():
    widget_map = FieldMap(
        crm="widget",
        fields={"first_name": "given", "last_name": "family", "email": "mail"},
        id_field="uid",
    )
    register_field_map(widget_map)
    try:
        record = to_external(build_contact(), crm="widget")
        assert record == {"given": "Ada", "family": "Lovelace", "mail": "ada@analytical.io"}

        contact = from_external({"given": "Ada", "mail": "a@b.co", "uid": "w-1"}, "importer", crm="widget")
        assert contact.first_name == "Ada"
        assert contact.acme_id == "w-1"
    finally:
        FIELD_MAPS.pop("widget", None)
