"""
Contact Store Module
In-memory address book
"""

import logging
import uuid
from dataclasses import replace
from typing import Dict, List, Optional

from ..utils.errors import NotFoundError, ValidationError
from ..utils.sanitization import redact_email
from ..utils.validators import is_valid_email
from .email_data import Contact

UPDATABLE_FIELDS = ("name", "email", "group", "phone")


class ContactStore:
    """
    Contacts keyed by generated id, in insertion order.

    Not safe for unsynchronised concurrent mutation; nothing is persisted.
    """

    def __init__(self):
        self._contacts: Dict[str, Contact] = {}
        self.logger = logging.getLogger("ContactStore")

    def add(
        self,
        name: str,
        email: str,
        group: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Contact:
        """
        Create a contact.

        Raises:
            ValidationError: Empty name or malformed email
        """
        self._check_name(name)
        self._check_email(email)

        contact = Contact(
            id=f"contact_{uuid.uuid4().hex}",
            name=name.strip(),
            email=email.strip(),
            group=_optional(group),
            phone=_optional(phone),
        )
        self._contacts[contact.id] = contact
        self.logger.debug(f"Added contact {contact.id} ({redact_email(contact.email)})")
        return contact

    def get(self, contact_id: str) -> Contact:
        contact = self._contacts.get(contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {contact_id} not found", "CONTACT_NOT_FOUND")
        return contact

    def list(self, limit: Optional[int] = None) -> List[Contact]:
        contacts = list(self._contacts.values())
        if limit is not None:
            if limit < 1:
                raise ValidationError(f"limit must be >= 1, got {limit}", "INVALID_PAGINATION")
            contacts = contacts[:limit]
        return contacts

    def search(self, query: str) -> List[Contact]:
        """Case-insensitive substring match over name, email and group"""
        needle = (query or "").strip().lower()
        if not needle:
            return self.list()
        return [
            c for c in self._contacts.values()
            if needle in c.name.lower()
            or needle in c.email.lower()
            or (c.group and needle in c.group.lower())
        ]

    def by_group(self, group: str) -> List[Contact]:
        """Contacts whose group equals ``group`` exactly"""
        return [c for c in self._contacts.values() if c.group == group]

    def update(self, contact_id: str, **fields) -> Contact:
        """
        Replace only the supplied fields.

        Raises:
            NotFoundError: Unknown id
            ValidationError: Unknown field, empty name or malformed email
        """
        contact = self.get(contact_id)

        unknown = sorted(k for k in fields if k not in UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Unknown contact field(s): {', '.join(unknown)}",
                "INVALID_CONTACT_FIELD",
                {"unknown_fields": unknown},
            )
        if "name" in fields:
            self._check_name(fields["name"])
            fields["name"] = fields["name"].strip()
        if "email" in fields:
            self._check_email(fields["email"])
            fields["email"] = fields["email"].strip()
        for key in ("group", "phone"):
            if key in fields:
                fields[key] = _optional(fields[key])

        updated = replace(contact, **fields)
        self._contacts[contact_id] = updated
        return updated

    def delete(self, contact_id: str) -> bool:
        """Remove a contact; False when the id is unknown"""
        return self._contacts.pop(contact_id, None) is not None

    def __len__(self):
        return len(self._contacts)

    @staticmethod
    def _check_name(name):
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Contact name is required", "INVALID_CONTACT")

    @staticmethod
    def _check_email(email):
        if not is_valid_email(email):
            raise ValidationError(
                f"Invalid email address: {email!r}",
                "INVALID_EMAIL_ADDRESS",
                {"invalid_emails": [email]},
            )


def _optional(value: Optional[str]) -> Optional[str]:
    """Blank group/phone values are stored as None"""
    if value is None:
        return None
    value = str(value).strip()
    return value or None
