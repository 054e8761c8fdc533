# FolderDAV
# Copyright (C) 2016-2017 Jelmer Vernooĳ <jelmer@jelmer.uk>, et al.
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; version 3
# of the License or (at your option) any later version of
# the License.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston,
# MA  02110-1301, USA.


"""Tests for folderdav.store."""

import unittest
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from folderdav.store import (
    FOLDER_TYPE_CONTACT,
    FOLDER_TYPE_EVENT,
    READ_ONLY_RIGHTS,
    NoSuchFolder,
    NoSuchItem,
    PermissionDenied,
    StoreError,
    matches_query,
    open_store,
)
from folderdav.store.memory import MemoryFolderStore
from folderdav.store.records import (
    MAX_DATETIME,
    Attachment,
    CalendarRecord,
    ContactRecord,
    Email,
    Member,
    Metadata,
    as_utc,
)


class MatchesQueryTests(unittest.TestCase):

    def test_empty(self):
        self.assertTrue(matches_query({"uid": "a"}, None))
        self.assertTrue(matches_query({"uid": "a"}, []))

    def test_equal(self):
        self.assertTrue(matches_query({"type": "event"}, [("type", "=", "event")]))
        self.assertFalse(matches_query({"type": "task"}, [("type", "=", "event")]))

    def test_membership(self):
        query = [("type", "=", ["contact", "distribution-list"])]
        self.assertTrue(matches_query({"type": "distribution-list"}, query))
        self.assertFalse(matches_query({"type": "other"}, query))

    def test_missing_field(self):
        self.assertFalse(matches_query({}, [("type", "=", "event")]))

    def test_list_value(self):
        index = {"email": ["a@example.com", "b@example.com"]}
        self.assertTrue(matches_query(index, [("email", "=", "b@example.com")]))
        self.assertFalse(matches_query(index, [("email", "=", "c@example.com")]))

    def test_ordering(self):
        index = {"dtstart": datetime(2020, 1, 1, tzinfo=timezone.utc)}
        self.assertTrue(matches_query(
            index,
            [("dtstart", "<=", datetime(2020, 1, 2, tzinfo=timezone.utc))]))
        self.assertFalse(matches_query(
            index,
            [("dtstart", ">", datetime(2020, 1, 2, tzinfo=timezone.utc))]))

    def test_unknown_operator(self):
        self.assertRaises(
            ValueError, matches_query, {"uid": "a"}, [("uid", "~", "a")])


class MetadataTests(unittest.TestCase):

    def test_merged(self):
        old = Metadata(msguid=3, mailbox="Calendar", size=10,
                       extra={"flags": "seen"})
        new = Metadata(removed_attachments=[1])
        merged = new.merged(old)
        self.assertEqual(3, merged.msguid)
        self.assertEqual("Calendar", merged.mailbox)
        self.assertEqual(10, merged.size)
        self.assertEqual({"flags": "seen"}, merged.extra)
        self.assertEqual([1], merged.removed_attachments)

    def test_removed_attachments_not_carried(self):
        old = Metadata(msguid=3, removed_attachments=[4])
        self.assertEqual([], Metadata().merged(old).removed_attachments)

    def test_merged_none(self):
        self.assertEqual(Metadata(size=2), Metadata(size=2).merged(None))

    def test_defaults_not_shared(self):
        a = Metadata()
        b = Metadata()
        a.removed_attachments.append(1)
        self.assertEqual([], b.removed_attachments)


class RecordTests(unittest.TestCase):

    def test_unknown_field(self):
        self.assertRaises(TypeError, CalendarRecord, color="red")

    def test_member_either_uid_or_email(self):
        self.assertRaises(ValueError, Member, uid="a", email="b@example.com")
        self.assertRaises(ValueError, Member)

    def test_as_utc(self):
        self.assertEqual(
            datetime(2020, 3, 1, tzinfo=timezone.utc), as_utc(date(2020, 3, 1)))
        self.assertEqual(
            datetime(2020, 3, 1, 10, tzinfo=timezone.utc),
            as_utc(datetime(2020, 3, 1, 10)))

    def test_event_index(self):
        record = CalendarRecord(
            uid="ev1", start=datetime(2020, 1, 1, 10, tzinfo=timezone.utc),
            end=datetime(2020, 1, 1, 11, tzinfo=timezone.utc))
        self.assertEqual({
            "uid": "ev1",
            "type": "event",
            "dtstart": datetime(2020, 1, 1, 10, tzinfo=timezone.utc),
            "dtend": datetime(2020, 1, 1, 11, tzinfo=timezone.utc),
        }, record.index())

    def test_recurring_index(self):
        record = CalendarRecord(
            uid="ev1", start=datetime(2020, 1, 1, 10, tzinfo=timezone.utc),
            end=datetime(2020, 1, 1, 11, tzinfo=timezone.utc),
            rrule="FREQ=DAILY;COUNT=3")
        self.assertEqual(
            datetime(2020, 1, 3, 11, tzinfo=timezone.utc),
            record.index()["dtend"])

    def test_recurring_index_across_daylight_saving(self):
        berlin = ZoneInfo("Europe/Berlin")
        record = CalendarRecord(
            uid="ev1", start=datetime(2024, 7, 1, 10, tzinfo=berlin),
            end=datetime(2024, 7, 1, 11, tzinfo=berlin),
            rrule="FREQ=WEEKLY;COUNT=20")
        self.assertEqual(
            datetime(2024, 11, 11, 10, tzinfo=timezone.utc),
            record.index()["dtend"])

    def test_recurring_all_day_index(self):
        record = CalendarRecord(
            uid="ev1", start=date(2020, 1, 1), end=date(2020, 1, 2),
            rrule="FREQ=DAILY;COUNT=3")
        self.assertEqual(
            datetime(2020, 1, 4, tzinfo=timezone.utc),
            record.index()["dtend"])

    def test_unbounded_recurrence(self):
        record = CalendarRecord(
            uid="ev1", start=datetime(2020, 1, 1, 10, tzinfo=timezone.utc),
            rrule="FREQ=WEEKLY")
        self.assertEqual(MAX_DATETIME, record.index()["dtend"])

    def test_contact_index(self):
        record = ContactRecord(
            uid="c1", name="Jane", email=[Email(address="jane@example.com")])
        self.assertEqual({
            "uid": "c1", "type": "contact", "name": "Jane",
            "email": ["jane@example.com"]}, record.index())


class MemoryFolderTests(unittest.TestCase):

    def setUp(self):
        super().setUp()
        self.store = MemoryFolderStore("jane")
        self.folder = self.store.add_folder("Calendar", FOLDER_TYPE_EVENT)

    def test_save_assigns_msguid(self):
        before = self.folder.get_imap_data()
        saved = self.folder.save(CalendarRecord(uid="ev1"))
        after = self.folder.get_imap_data()
        self.assertEqual(before["UIDNEXT"], saved.meta.msguid)
        self.assertEqual(before["UIDNEXT"] + 1, after["UIDNEXT"])
        self.assertGreater(after["HIGHESTMODSEQ"], before["HIGHESTMODSEQ"])
        self.assertEqual(before["UIDVALIDITY"], after["UIDVALIDITY"])
        self.assertEqual("Calendar", saved.meta.mailbox)

    def test_save_contact(self):
        folder = self.store.add_folder("Contacts", FOLDER_TYPE_CONTACT)
        saved = folder.save(ContactRecord(uid="c1", name="Jane"))
        self.assertEqual("Contacts", saved.meta.mailbox)
        record = saved.copy()
        record.name = "Jane Doe"
        folder.save(record)
        self.assertEqual("Jane Doe", folder.get_object("c1").name)
        self.assertEqual(["c1"], [r.uid for r in folder.select()])

    def test_get_object_is_a_copy(self):
        self.folder.save(CalendarRecord(uid="ev1", summary="one"))
        record = self.folder.get_object("ev1")
        record.summary = "two"
        self.assertEqual("one", self.folder.get_object("ev1").summary)

    def test_get_object_missing(self):
        self.assertIsNone(self.folder.get_object("nope"))

    def test_select(self):
        self.folder.save(CalendarRecord(uid="ev1"))
        self.folder.save(CalendarRecord(uid="td1", kind="task"))
        self.assertEqual(
            ["td1"],
            [r.uid for r in self.folder.select([("type", "=", "task")])])
        self.assertEqual(
            ["ev1", "td1"], [r.uid for r in self.folder.select()])

    def test_delete(self):
        self.folder.save(CalendarRecord(uid="ev1"))
        self.folder.delete("ev1")
        self.assertIsNone(self.folder.get_object("ev1"))
        self.assertRaises(NoSuchItem, self.folder.delete, "ev1")

    def test_attachments(self):
        saved = self.folder.save(CalendarRecord(
            uid="ev1", attachments=[
                Attachment(name="a.txt", mimetype="text/plain", data=b"a"),
                Attachment(name="b.txt", mimetype="text/plain", data=b"bb")]))
        self.assertEqual(
            [("a.txt", 1), ("b.txt", 2)],
            [(a.name, a.size) for a in saved.attachments])
        (first, second) = [a.id for a in saved.attachments]
        self.assertEqual(b"bb", self.folder.get_attachment("ev1", second))
        record = saved.copy()
        record.attachments = [record.attachments[1]]
        record.meta.removed_attachments = [first]
        saved = self.folder.save(record)
        self.assertEqual([second], [a.id for a in saved.attachments])
        self.assertRaises(
            NoSuchItem, self.folder.get_attachment, "ev1", first)

    def test_fail_writes(self):
        self.folder.fail_writes = True
        self.assertRaises(
            StoreError, self.folder.save, CalendarRecord(uid="ev1"))

    def test_read_only(self):
        folder = self.store.add_folder(
            "Other", FOLDER_TYPE_EVENT, rights=READ_ONLY_RIGHTS)
        self.assertRaises(
            PermissionDenied, folder.save, CalendarRecord(uid="ev1"))

    def test_shared_metadata_refused(self):
        self.folder.shared_metadata_writable = False
        self.assertRaises(
            PermissionDenied, self.folder.set_metadata,
            {"/shared/vendor/x": "y"})
        self.folder.set_metadata({"/private/vendor/x": "y"})
        self.assertEqual(
            {"/private/vendor/x": "y"},
            self.folder.get_metadata(["/private/vendor/x", "/shared/x"]))


class MemoryFolderStoreTests(unittest.TestCase):

    def setUp(self):
        super().setUp()
        self.store = MemoryFolderStore("jane")

    def test_open_store(self):
        self.assertIsInstance(open_store("memory:"), MemoryFolderStore)
        self.assertRaises(ValueError, open_store, "imap://localhost")

    def test_create_defaults(self):
        self.store.create_defaults()
        self.assertEqual(
            ["Contacts"],
            [f.name for f in self.store.get_folders(FOLDER_TYPE_CONTACT)])
        self.assertTrue(self.store.get_folder("Calendar").default)

    def test_folder_create(self):
        folder = self.store.folder_create(
            "Work", FOLDER_TYPE_EVENT, parent="Projects", color="ff0000")
        self.assertEqual("Projects/Work", folder.name)
        self.assertEqual("Work", folder.get_name())
        self.assertEqual("jane", folder.owner)
        self.assertRaises(
            StoreError, self.store.folder_create, "Projects/Work",
            FOLDER_TYPE_EVENT)

    def test_folder_update(self):
        folder = self.store.folder_create("Work", FOLDER_TYPE_EVENT)
        self.store.folder_update(folder, name="Job", displayname="My job")
        self.assertIsNone(self.store.get_folder("Work"))
        self.assertIs(folder, self.store.get_folder("Job"))
        self.assertEqual("My job", folder.get_name())

    def test_folder_delete(self):
        self.store.folder_create("Work", FOLDER_TYPE_EVENT)
        self.store.folder_delete("Work")
        self.assertRaises(NoSuchFolder, self.store.folder_delete, "Work")

    def test_freebusy_url(self):
        self.assertIsNone(self.store.get_freebusy_url("jane@example.com"))
        store = MemoryFolderStore(
            freebusy_url="https://fb.example.com/%(email)s.ifb")
        self.assertEqual(
            "https://fb.example.com/jane@example.com.ifb",
            store.get_freebusy_url("jane@example.com"))
