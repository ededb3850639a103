from __future__ import annotations

from sqlalchemy import func, select

from ghl_sync.errors import ExternalApiError
from ghl_sync.sync.contacts import ContactSyncEngine
from ghl_sync.sync.models import Contact
from ghl_sync.sync.payloads import normalize_contact
from tests.factories import FakeGhlClient, make_account, make_connection


def _engine(db_session, integration_config, client=None) -> ContactSyncEngine:
    account = make_account(db_session)
    connection = make_connection(db_session, account)
    return ContactSyncEngine(db_session, connection, integration_config, client)


def _contact_params(external_id: str = "c-1", **overrides) -> dict:
    contact = {
        "id": external_id,
        "firstName": "Ada",
        "lastName": "Lovelace",
        "email": "ada@example.com",
        "phone": "15550001111",
        "locationId": "loc-123",
        "tags": ["vip"],
        "companyName": "Analytical Engines",
    }
    contact.update(overrides)
    return {"type": "ContactCreate", "locationId": "loc-123", "contact": contact}


def test_create_is_idempotent_for_repeated_deliveries(db_session, integration_config) -> None:
    engine = _engine(db_session, integration_config)

    first = engine.create_from_external(_contact_params())
    second = engine.create_from_external(_contact_params())

    assert first is not None and second is not None
    assert first.id == second.id
    assert db_session.scalar(select(func.count(Contact.id))) == 1
    assert first.identifier == "ext:c-1"
    assert first.name == "Ada Lovelace"
    assert first.phone_number == "+15550001111"
    assert first.custom_attributes["ghl_contact_id"] == "c-1"
    assert first.custom_attributes["ghl_tags"] == ["vip"]
    assert first.additional_attributes["company_name"] == "Analytical Engines"


def test_update_merges_attributes_and_keeps_existing_values(db_session, integration_config) -> None:
    engine = _engine(db_session, integration_config)
    contact = engine.create_from_external(_contact_params())
    assert contact is not None
    contact.custom_attributes = {**contact.custom_attributes, "local_note": "keep me"}
    db_session.commit()

    updated = engine.update_from_external(
        {"contact": {"id": "c-1", "email": "ada@newmail.example", "city": "London"}}
    )

    assert updated is not None
    assert updated.email == "ada@newmail.example"
    assert updated.name == "Ada Lovelace"
    assert updated.custom_attributes["local_note"] == "keep me"
    assert updated.additional_attributes["city"] == "London"
    assert updated.additional_attributes["company_name"] == "Analytical Engines"


def test_update_for_unknown_contact_creates_it(db_session, integration_config) -> None:
    engine = _engine(db_session, integration_config)

    contact = engine.update_from_external(_contact_params("c-new", email="new@example.com", phone=None))

    assert contact is not None
    assert contact.identifier == "ext:c-new"


def test_create_links_existing_contact_matching_email(db_session, integration_config) -> None:
    engine = _engine(db_session, integration_config)
    local = Contact(
        account_id=engine.account_id,
        name="Ada (local)",
        email="ada@example.com",
        custom_attributes={},
        additional_attributes={},
    )
    db_session.add(local)
    db_session.commit()

    linked = engine.create_from_external(_contact_params(phone=None))

    assert linked is not None
    assert linked.id == local.id
    assert linked.identifier == "ext:c-1"
    assert linked.custom_attributes["ghl_contact_id"] == "c-1"
    assert db_session.scalar(select(func.count(Contact.id))) == 1


def test_delete_archives_instead_of_removing(db_session, integration_config) -> None:
    engine = _engine(db_session, integration_config)
    engine.create_from_external(_contact_params())

    archived = engine.delete_from_external({"contact": {"id": "c-1"}})

    assert archived is not None
    assert archived.archived is True
    assert archived.archived_at is not None
    assert archived.custom_attributes["ghl_deleted"] is True
    assert db_session.scalar(select(func.count(Contact.id))) == 1
    assert engine.delete_from_external({"contact": {"id": "missing"}}) is None


def test_push_creates_remote_contact_and_binds_identifier(db_session, integration_config) -> None:
    client = FakeGhlClient()
    client.respond("POST", "/contacts/", {"contact": {"id": "remote-42"}})
    engine = _engine(db_session, integration_config, client)
    contact = Contact(
        account_id=engine.account_id,
        name="Grace Hopper",
        email="grace@example.com",
        custom_attributes={},
        additional_attributes={},
    )
    db_session.add(contact)
    db_session.commit()

    engine.push_to_external(contact)

    method, path, body, _ = client.calls[0]
    assert (method, path) == ("POST", "/contacts/")
    assert body == {"firstName": "Grace", "lastName": "Hopper", "email": "grace@example.com", "locationId": "loc-123"}
    assert contact.identifier == "ext:remote-42"
    assert contact.custom_attributes["ghl_contact_id"] == "remote-42"


def test_push_updates_bound_contact(db_session, integration_config) -> None:
    client = FakeGhlClient()
    engine = _engine(db_session, integration_config, client)
    contact = engine.create_from_external(_contact_params())
    assert contact is not None

    engine.push_to_external(contact)

    assert client.calls[0][:2] == ("PUT", "/contacts/c-1")


def test_push_swallows_client_errors_and_reraises_retryable(db_session, integration_config) -> None:
    client = FakeGhlClient()
    client.respond("PUT", "/contacts/c-1", ExternalApiError("PUT", "/contacts/c-1", 422), ExternalApiError("PUT", "/contacts/c-1", 503))
    engine = _engine(db_session, integration_config, client)
    contact = engine.create_from_external(_contact_params())
    assert contact is not None

    assert engine.push_to_external(contact) is None
    try:
        engine.push_to_external(contact)
    except ExternalApiError as exc:
        assert exc.retryable
    else:
        raise AssertionError("retryable error was swallowed")


def test_import_all_pages_until_short_batch(db_session, integration_config) -> None:
    client = FakeGhlClient()
    engine = _engine(db_session, integration_config, client)
    engine.create_from_external(_contact_params("c-0", email="zero@example.com", phone=None))

    page_size = integration_config.contact_page_size
    first_page = [{"id": f"c-{index}", "email": f"user{index}@example.com"} for index in range(page_size)]
    second_page = [{"id": "c-last", "email": "last@example.com"}]
    client.respond("GET", "/contacts/", {"contacts": first_page}, {"contacts": second_page})

    result = engine.import_all()

    assert result == {"imported": page_size, "skipped": 1, "total": page_size + 1}
    offsets = [call[3]["offset"] for call in client.calls]
    assert offsets == [0, page_size]
    assert db_session.scalar(select(func.count(Contact.id))) == page_size + 1


def test_scalar_tags_and_custom_fields_are_not_split_into_characters() -> None:
    payload = normalize_contact({"contact": {"id": "c-9", "tags": "vip", "customFields": "oops"}})

    assert payload.custom_attributes["ghl_tags"] == ["vip"]
    assert not any(key.startswith("ghl_cf_") for key in payload.custom_attributes)
