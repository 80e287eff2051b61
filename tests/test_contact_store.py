"""
Tests for the in-memory ContactStore
"""

import unittest
from dataclasses import FrozenInstanceError

import pytest

from email_ops.modules.contact_store import ContactStore
from email_ops.utils.errors import NotFoundError, ValidationError


class TestContactStore(unittest.TestCase):
    def setUp(self):
        self.store = ContactStore()

    def test_round_trip_update_keeps_other_fields(self):
        contact = self.store.add("Ann", "ann@example.com")
        self.store.update(contact.id, name="Annie")

        listed = self.store.list()
        self.assertEqual(len(listed), 1)
        self.assertEqual(listed[0].name, "Annie")
        self.assertEqual(listed[0].email, "ann@example.com")
        self.assertEqual(listed[0].id, contact.id)

    def test_ids_are_unique(self):
        ids = {self.store.add(f"C{i}", f"c{i}@example.com").id for i in range(50)}
        self.assertEqual(len(ids), 50)
        self.assertTrue(all(i.startswith("contact_") for i in ids))

    def test_add_validates_email(self):
        with self.assertRaises(ValidationError) as ctx:
            self.store.add("Bad", "not-an-email")
        self.assertEqual(ctx.exception.code, "INVALID_EMAIL_ADDRESS")
        self.assertEqual(len(self.store), 0)

    def test_add_requires_name(self):
        with self.assertRaises(ValidationError):
            self.store.add("  ", "a@example.com")

    def test_list_preserves_insertion_order_and_limit(self):
        for name in ("one", "two", "three"):
            self.store.add(name, f"{name}@example.com")
        self.assertEqual([c.name for c in self.store.list()], ["one", "two", "three"])
        self.assertEqual([c.name for c in self.store.list(2)], ["one", "two"])
        with self.assertRaises(ValidationError):
            self.store.list(0)

    def test_search_is_case_insensitive_over_name_email_group(self):
        a = self.store.add("Alice Smith", "alice@work.com", group="Engineering")
        b = self.store.add("Bob", "bob@home.org", group="Family")
        c = self.store.add("Carol", "carol@WORK.com")

        self.assertEqual(self.store.search("SMITH"), [a])
        self.assertEqual(self.store.search("work.com"), [a, c])
        self.assertEqual(self.store.search("fam"), [b])
        self.assertEqual(self.store.search("nobody"), [])

    def test_by_group_is_exact(self):
        a = self.store.add("A", "a@example.com", group="Team")
        self.store.add("B", "b@example.com", group="Team Lead")
        self.store.add("C", "c@example.com")
        self.assertEqual(self.store.by_group("Team"), [a])
        self.assertEqual(self.store.by_group("team"), [])

    def test_update_partial_fields(self):
        contact = self.store.add("Dan", "dan@example.com", group="Old", phone="123")
        updated = self.store.update(contact.id, group="New")
        self.assertEqual(self.store.get(contact.id), updated)
        self.assertEqual(
            (updated.name, updated.email, updated.group, updated.phone),
            ("Dan", "dan@example.com", "New", "123"),
        )

    def test_update_rejects_unknown_fields_and_bad_email(self):
        contact = self.store.add("Eve", "eve@example.com")
        with self.assertRaises(ValidationError):
            self.store.update(contact.id, nickname="E")
        with self.assertRaises(ValidationError):
            self.store.update(contact.id, email="broken")
        self.assertEqual(self.store.get(contact.id).email, "eve@example.com")

    def test_returned_contacts_cannot_change_the_store(self):
        contact = self.store.add("Ann", "ann@example.com")

        with self.assertRaises(FrozenInstanceError):
            contact.email = "not-an-address"
        with self.assertRaises(FrozenInstanceError):
            self.store.list()[0].name = "Mallory"

        self.assertEqual(self.store.get(contact.id).email, "ann@example.com")
        self.assertEqual(self.store.get(contact.id).name, "Ann")

    def test_update_keeps_earlier_snapshots(self):
        before = self.store.add("Ann", "ann@example.com")
        self.store.update(before.id, name="Annie")
        self.assertEqual(before.name, "Ann")
        self.assertEqual(self.store.get(before.id).name, "Annie")

    def test_blank_group_and_phone_are_none(self):
        contact = self.store.add("Gil", "gil@example.com", group="  ", phone="")
        self.assertEqual((contact.group, contact.phone), (None, None))

        self.store.update(contact.id, group="Team", phone="555")
        updated = self.store.update(contact.id, group="", phone="   ")
        self.assertEqual((updated.group, updated.phone), (None, None))
        self.assertEqual(self.store.by_group(""), [])

    def test_update_missing_contact(self):
        with self.assertRaises(NotFoundError):
            self.store.update("contact_missing", name="X")

    def test_delete(self):
        contact = self.store.add("Fay", "fay@example.com")
        self.assertTrue(self.store.delete(contact.id))
        self.assertFalse(self.store.delete(contact.id))
        with self.assertRaises(NotFoundError):
            self.store.get(contact.id)


@pytest.mark.parametrize("query", ["", "   "])
def test_blank_search_returns_everything(query):
    store = ContactStore()
    store.add("Gus", "gus@example.com")
    assert len(store.search(query)) == 1
