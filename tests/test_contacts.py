"""Summary: Tests for the contact service.

Importance: Ensures address-book entries follow the edit rules desks rely on.
Alternatives: Validate contacts only through the HTTP layer.
"""

from __future__ import annotations

import pytest

from conftest import DESK_A, DESK_B, DESK_C
from missiv.app import AppServices
from missiv.errors import InvalidState, NotFound


def test_create_and_lookup_contact(services: AppServices) -> None:
    """Summary: Verify contacts are stored per desk and found by desk reference."""

    contact = services.contacts.create_contact(
        DESK_A, "Bee", "(302) 555-0002", first_name="Bea", greeting_name="Dear Bea"
    )
    assert contact.desk_id_ref == DESK_B
    assert services.contacts.find_by_desk_ref(DESK_A, DESK_B).id == contact.id
    assert [item.id for item in services.contacts.list_contacts(DESK_A)] == [contact.id]
    assert services.contacts.list_contacts(DESK_B) == []


def test_contact_requires_existing_owner_desk(services: AppServices) -> None:
    """Summary: Verify the owning desk must exist but the referenced desk need not."""

    with pytest.raises(NotFound):
        services.contacts.create_contact("9995550000", "Ghost", DESK_A)
    stranger = services.contacts.create_contact(DESK_A, "Stranger", "8885550000")
    assert stranger.desk_id_ref == "8885550000"
    with pytest.raises(InvalidState):
        services.contacts.create_contact(DESK_A, "", DESK_C)


def test_update_contact_keeps_name_and_ref_when_blank(services: AppServices) -> None:
    """Summary: Verify blank name and ref are kept while free-form fields are replaced.

    Importance: Clients may send partial forms without wiping identity fields.
    Alternatives: Treat every blank as a deliberate clear.
    """

    contact = services.contacts.create_contact(DESK_A, "Cee", DESK_C, first_name="C", notes="old")
    updated = services.contacts.update_contact(contact.id, last_name="See")
    assert updated.name == "Cee"
    assert updated.desk_id_ref == DESK_C
    assert updated.first_name == ""
    assert updated.last_name == "See"
    assert updated.notes == ""
    renamed = services.contacts.update_contact(contact.id, name="Cecilia", desk_id_ref=DESK_B)
    assert renamed.name == "Cecilia"
    assert renamed.desk_id_ref == DESK_B


def test_delete_contact(services: AppServices) -> None:
    """Summary: Verify deleted contacts disappear."""

    contact = services.contacts.create_contact(DESK_A, "Temp", DESK_B)
    services.contacts.delete_contact(contact.id)
    with pytest.raises(NotFound):
        services.contacts.get_contact(contact.id)
    with pytest.raises(NotFound):
        services.contacts.find_by_desk_ref(DESK_A, DESK_B)
