"""
Resolve a `to` string to a WhatsApp jid.

Order:
- Contains "@": already a jid, passed through.
- Looks like a phone number (9-15 digits): normalized to `<digits>@s.whatsapp.net`.
  Leading 00 is dropped; a leading 0 is replaced by DEFAULT_COUNTRY_CODE.
- Admin group alias, then admin contact (jid, else msisdn), by case-insensitive name.
- Live group directory by subject. Several matches raise AmbiguousRecipientError
  with the candidates; the caller must pick, we never guess.
"""

from __future__ import annotations

import logging

from config import DEFAULT_COUNTRY_CODE
from contacts_store import ContactsStore, norm
from group_directory import GroupDirectory

logger = logging.getLogger(__name__)

USER_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"


class RecipientError(ValueError):
    code = "invalid_recipient"


class InvalidRecipientError(RecipientError):
    code = "invalid_recipient"


class RecipientNotFoundError(RecipientError):
    code = "UNRESOLVED_TO"


class AmbiguousRecipientError(RecipientError):
    code = "AMBIGUOUS_GROUP"

    def __init__(self, message: str, matches: list[dict[str, str]]) -> None:
        super().__init__(message)
        self.matches = matches


def is_group_jid(jid: str | None) -> bool:
    return isinstance(jid, str) and jid.endswith(GROUP_SUFFIX)


def _digits(value: str) -> str:
    return "".join(c for c in str(value or "") if c.isdigit())


def looks_like_phone(value: str) -> bool:
    return 9 <= len(_digits(value)) <= 15


def to_user_jid(msisdn: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Normalize a phone number to a user jid. Raises InvalidRecipientError."""
    raw = str(msisdn or "").strip()
    if not raw:
        raise InvalidRecipientError("Invalid phone number (msisdn)")
    digits = _digits(raw)
    if digits.startswith("00"):
        digits = digits[2:]
    if digits.startswith("0"):
        digits = country_code + digits[1:]
    if len(digits) < 9:
        raise InvalidRecipientError("Invalid phone number (too short)")
    return f"{digits}{USER_SUFFIX}"


def resolve_recipient(
    to: str,
    contacts: ContactsStore,
    groups: GroupDirectory,
    *,
    country_code: str = DEFAULT_COUNTRY_CODE,
) -> str:
    """Return the jid for `to`. Raises a RecipientError subclass when it cannot."""
    target = str(to or "").strip()
    if not target:
        raise InvalidRecipientError('Missing "to"')

    if "@" in target:
        return target
    if looks_like_phone(target):
        return to_user_jid(target, country_code)

    alias = contacts.find_group_alias(target)
    if alias and alias.get("jid"):
        return alias["jid"]

    contact = contacts.find_contact(target)
    if contact:
        if contact.get("jid"):
            return contact["jid"]
        if contact.get("msisdn"):
            return to_user_jid(contact["msisdn"], country_code)

    matches = groups.find_by_name(target)
    if len(matches) == 1:
        return matches[0]["jid"]
    if len(matches) > 1:
        logger.info("resolve_recipient: ambiguous group name=%r matches=%s", norm(target), len(matches))
        raise AmbiguousRecipientError(
            "Multiple groups matched. Use a group alias in admin or be more specific.",
            matches,
        )

    raise RecipientNotFoundError(
        'Unresolved "to": not a jid/phone and not found in admin contacts/groups'
    )
