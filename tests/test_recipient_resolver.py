"""Resolving `to` strings: jids, phone numbers, admin names and live group subjects."""

import pytest

from contacts_store import ContactsStore
from group_directory import GroupDirectory
from recipient_resolver import (
    AmbiguousRecipientError,
    InvalidRecipientError,
    RecipientNotFoundError,
    resolve_recipient,
    to_user_jid,
)


@pytest.fixture
def contacts(temp_dir):
    return ContactsStore(temp_dir / "contacts.json")


@pytest.fixture
def groups():
    g = GroupDirectory(clock=lambda: 1)
    g.replace(
        [
            {"jid": "111@g.us", "subject": "Team Alpha"},
            {"jid": "222@g.us", "subject": "Team Beta"},
            {"jid": "333@g.us", "subject": "Family"},
        ]
    )
    return g


@pytest.mark.parametrize(
    "raw,jid",
    [
        ("0821234567", "27821234567@s.whatsapp.net"),
        ("+27 82 123 4567", "27821234567@s.whatsapp.net"),
        ("0027821234567", "27821234567@s.whatsapp.net"),
        ("447700900123", "447700900123@s.whatsapp.net"),
    ],
)
def test_phone_numbers_normalize_to_user_jid(raw, jid):
    assert to_user_jid(raw, "27") == jid


def test_short_number_is_invalid():
    with pytest.raises(InvalidRecipientError):
        to_user_jid("12345", "27")


def test_jid_passes_through(contacts, groups):
    assert resolve_recipient("999@g.us", contacts, groups) == "999@g.us"


def test_group_alias_wins_over_directory(contacts, groups):
    contacts.upsert_group_alias("Team", "444@g.us")

    assert resolve_recipient("team", contacts, groups) == "444@g.us"


def test_contact_by_name_uses_jid_then_msisdn(contacts, groups):
    contacts.upsert_contact({"name": "Alice", "jid": "27820000001@s.whatsapp.net"})
    contacts.upsert_contact({"name": "Bob", "msisdn": "0820000002"})

    assert resolve_recipient(" alice ", contacts, groups) == "27820000001@s.whatsapp.net"
    assert resolve_recipient("BOB", contacts, groups, country_code="27") == "27820000002@s.whatsapp.net"


def test_exact_subject_match(contacts, groups):
    assert resolve_recipient("family", contacts, groups) == "333@g.us"


def test_ambiguous_subject_fails_with_candidates(contacts, groups):
    with pytest.raises(AmbiguousRecipientError) as exc:
        resolve_recipient("team", contacts, groups)

    assert exc.value.code == "AMBIGUOUS_GROUP"
    assert {m["jid"] for m in exc.value.matches} == {"111@g.us", "222@g.us"}


def test_unknown_name_is_unresolved(contacts, groups):
    with pytest.raises(RecipientNotFoundError):
        resolve_recipient("nobody", contacts, groups)


def test_empty_is_invalid(contacts, groups):
    with pytest.raises(InvalidRecipientError):
        resolve_recipient("  ", contacts, groups)


def test_group_alias_requires_group_jid(contacts):
    with pytest.raises(ValueError):
        contacts.upsert_group_alias("Team", "27820000001@s.whatsapp.net")


def test_contacts_upsert_is_case_insensitive(contacts):
    contacts.upsert_contact({"name": "Alice", "msisdn": "0820000001"})
    contacts.upsert_contact({"name": "ALICE", "tags": ["vip"]})

    store = contacts.read()
    assert len(store["contacts"]) == 1
    assert store["contacts"][0]["tags"] == ["vip"]
    assert contacts.delete_contact("alice") is True
    assert contacts.read()["contacts"] == []
