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


"""Tests for folderdav.caldav."""

import base64
import hashlib
import logging
import unittest
from datetime import datetime, timezone

from folderdav.caldav import (
    AttachmentContent,
    CalendarBackend,
    CompFilter,
    TimeRange,
    parse_filter,
    translate_filter,
)
from folderdav.context import RequestContext
from folderdav.davcommon import (
    PROP_CALENDAR_COLOR,
    PROP_DISPLAYNAME,
    PROP_SUPPORTED_CALENDAR_COMPONENT_SET,
    Forbidden,
    IdentityConflict,
    NotFound,
    ParseError,
    StorageFailure,
    Unsupported,
    UnsupportedComponent,
)
from folderdav.store import (
    FOLDER_TYPE_EVENT,
    FOLDER_TYPE_TASK,
    NAMESPACE_SHARED,
    READ_ONLY_RIGHTS,
)
from folderdav.store.memory import MemoryFolderStore

UTC = timezone.utc


def make_event(uid, start="20150601T100000Z", end="20150601T110000Z",
               summary="An event", extra=b""):
    return b"""\
BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example Corp.//CalDAV Client//EN
BEGIN:VEVENT
UID:%s
DTSTAMP:20150527T221952Z
DTSTART:%s
DTEND:%s
SUMMARY:%s
%sEND:VEVENT
END:VCALENDAR
""" % (uid.encode(), start.encode(), end.encode(), summary.encode(), extra)


EXAMPLE_VTODO1 = b"""\
BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example Corp.//CalDAV Client//EN
BEGIN:VTODO
UID:T1
DTSTAMP:20150527T221952Z
SUMMARY:do something
END:VTODO
END:VCALENDAR
"""


def attach(name, payload):
    return (b"ATTACH;FMTTYPE=text/plain;ENCODING=BASE64;VALUE=BINARY;"
            b"X-LABEL=" + name.encode() + b":"
            + base64.b64encode(payload) + b"\n")


FILTER_EVENTS_IN_JUNE = b"""\
<C:filter xmlns:C="urn:ietf:params:xml:ns:caldav">
  <C:comp-filter name="VCALENDAR">
    <C:comp-filter name="VEVENT">
      <C:time-range start="20150601T000000Z" end="20150701T000000Z"/>
    </C:comp-filter>
  </C:comp-filter>
</C:filter>
"""


class BackendTestCase(unittest.TestCase):

    user_agent = None

    def setUp(self):
        super().setUp()
        logging.disable(logging.ERROR)
        self.addCleanup(logging.disable, logging.NOTSET)
        self.store = MemoryFolderStore("jane")
        self.calendar = self.store.add_folder(
            "Calendar", FOLDER_TYPE_EVENT, default=True)
        self.tasks = self.store.add_folder("Tasks", FOLDER_TYPE_TASK)
        self.context = RequestContext(
            "jane", self.user_agent, base_uri="https://dav.example.com/")
        self.addCleanup(self.context.close)
        self.backend = CalendarBackend(self.store, self.context)

    def put(self, collection, uri, data):
        self.context.coordinator.validate_calendar(data)
        return self.backend.put_calendar_object(collection, uri, data)


class CalendarListingTests(BackendTestCase):

    def test_get_calendars(self):
        calendars = self.backend.get_calendars_for_user()
        self.assertEqual(
            ["Calendar", "Tasks"], [c.displayname for c in calendars])
        self.assertEqual(["VEVENT", "VJOURNAL"], calendars[0].components)
        self.assertEqual(["VTODO"], calendars[1].components)
        self.assertEqual("principals/jane", calendars[0].owner)
        self.assertFalse(calendars[0].read_only)

    def test_ctag(self):
        info = self.backend.get_calendar_by_name("Calendar")
        imap_data = self.calendar.get_imap_data()
        self.assertEqual(
            "%d-%d-%d" % (imap_data["UIDVALIDITY"],
                          imap_data["HIGHESTMODSEQ"], imap_data["UIDNEXT"]),
            info.ctag)
        self.put("Calendar", "E1.ics", make_event("E1"))
        self.assertNotEqual(
            info.ctag, self.backend.get_calendar_by_name("Calendar").ctag)

    def test_by_name_unknown(self):
        self.assertIsNone(self.backend.get_calendar_by_name("nope"))

    def test_shared_read_only(self):
        self.store.add_folder(
            "Holidays", FOLDER_TYPE_EVENT, namespace=NAMESPACE_SHARED,
            owner="admin", rights=READ_ONLY_RIGHTS)
        info = self.backend.get_calendar_by_name("Holidays")
        self.assertTrue(info.read_only)
        self.assertEqual("principals/admin", info.owner)


class CalendarCollectionTests(BackendTestCase):

    def test_create_event_calendar(self):
        self.backend.create_calendar(
            "principals/jane", "work", {PROP_DISPLAYNAME: "Work"})
        folder = self.store.get_folder("Work")
        self.assertEqual(FOLDER_TYPE_EVENT, folder.type)
        self.assertEqual("work", self.backend.get_calendar_by_name("work").id)

    def test_create_task_list(self):
        self.backend.create_calendar(
            "principals/jane", "todo",
            {PROP_SUPPORTED_CALENDAR_COMPONENT_SET: ["VTODO"]})
        self.assertEqual(FOLDER_TYPE_TASK, self.store.get_folder("todo").type)

    def test_create_long_uri(self):
        self.backend.create_calendar(
            "principals/jane", "0123456789abcdefghij", {})
        self.assertIsNotNone(self.store.get_folder("Untitled"))
        self.assertIsNotNone(
            self.backend.get_calendar_by_name("0123456789abcdefghij"))

    def test_update_rename(self):
        uid = self.backend.get_calendar_by_name("Calendar").id
        result = self.backend.update_calendar(
            uid, {PROP_DISPLAYNAME: "Agenda", PROP_CALENDAR_COLOR: "#ff0000ff"})
        self.assertTrue(result.ok)
        self.assertEqual("Agenda", self.calendar.name)
        self.assertEqual("ff0000", self.calendar.color)
        self.assertEqual(uid, self.backend.get_calendar_by_name("Agenda").id)

    def test_update_unsupported_is_atomic(self):
        result = self.backend.update_calendar(
            "Calendar", {PROP_DISPLAYNAME: "Agenda", "{DAV:}foo": "bar"})
        self.assertFalse(result.ok)
        self.assertEqual(["{DAV:}foo"], result.failed[403])
        self.assertEqual([PROP_DISPLAYNAME], result.failed[424])
        self.assertEqual("Calendar", self.calendar.name)

    def test_delete(self):
        self.backend.delete_calendar("Tasks")
        self.assertIsNone(self.store.get_folder("Tasks"))
        self.assertRaises(NotFound, self.backend.delete_calendar, "Tasks")

    def test_delete_read_only(self):
        self.store.add_folder(
            "Holidays", FOLDER_TYPE_EVENT, namespace=NAMESPACE_SHARED,
            rights=READ_ONLY_RIGHTS)
        self.assertRaises(Forbidden, self.backend.delete_calendar, "Holidays")


class CalendarObjectTests(BackendTestCase):

    def test_create_and_get(self):
        etag = self.put("Calendar", "E1.ics", make_event("E1"))
        record = self.calendar.get_object("E1")
        self.assertEqual(
            '"%s-%d"' % (hashlib.md5(b"E1").hexdigest()[:16],
                         record.meta.msguid),
            etag)
        obj = self.backend.get_calendar_object("Calendar", "E1.ics")
        self.assertEqual(etag, obj.etag)
        self.assertIn(b"UID:E1", obj.data)
        self.assertEqual("text/calendar", obj.content_type)

    def test_etag_stable_and_sensitive(self):
        etag = self.put("Calendar", "E1.ics", make_event("E1"))
        self.assertEqual(
            etag, self.backend.get_calendar_object("Calendar", "E1.ics").etag)
        new_etag = self.put(
            "Calendar", "E1.ics", make_event("E1", summary="Changed"))
        self.assertNotEqual(etag, new_etag)

    def test_list(self):
        self.put("Calendar", "E1.ics", make_event("E1"))
        self.put("Calendar", "E2.ics", make_event("E2"))
        self.assertEqual(
            ["E1.ics", "E2.ics"],
            [o.uri for o in self.backend.get_calendar_objects("Calendar")])

    def test_get_missing(self):
        self.assertRaises(
            NotFound, self.backend.get_calendar_object, "Calendar", "E1.ics")
        self.assertRaises(
            NotFound, self.backend.get_calendar_object, "nope", "E1.ics")

    def test_redirect_create(self):
        self.put("Calendar", "E1.ics", make_event("E2"))
        self.assertIsNone(self.calendar.get_object("E1"))
        self.assertIsNotNone(self.calendar.get_object("E2"))
        self.assertEqual(
            "/calendars/jane/Calendar/E2.ics",
            self.context.coordinator.decorate_location(
                "/calendars/jane/Calendar/E1.ics"))

    def test_redirect_to_existing(self):
        self.put("Calendar", "E2.ics", make_event("E2"))
        self.put("Calendar", "E1.ics", make_event("E2", summary="Updated"))
        self.assertEqual("Updated", self.calendar.get_object("E2").summary)
        self.assertEqual(["E2"], [r.uid for r in self.calendar.select()])
        self.assertEqual("E2.ics", self.context.coordinator.pop_redirect())

    def test_update_identity_conflict(self):
        self.put("Calendar", "E1.ics", make_event("E1"))
        data = make_event("E3")
        self.assertRaises(
            IdentityConflict, self.backend.update_calendar_object,
            "Calendar", "E1.ics", data)
        self.assertIsNotNone(self.calendar.get_object("E1"))
        self.assertIsNone(self.calendar.get_object("E3"))

    def test_update_keeps_metadata(self):
        self.put("Calendar", "E1.ics", make_event("E1"))
        self.calendar._records["E1"].meta.extra = {"flags": "seen"}
        self.put("Calendar", "E1.ics", make_event("E1", summary="Changed"))
        self.assertEqual(
            {"flags": "seen"}, self.calendar.get_object("E1").meta.extra)

    def test_wrong_component(self):
        self.assertRaises(
            UnsupportedComponent, self.backend.put_calendar_object,
            "Calendar", "T1.ics", EXAMPLE_VTODO1)
        self.backend.put_calendar_object("Tasks", "T1.ics", EXAMPLE_VTODO1)
        self.assertIsNotNone(self.tasks.get_object("T1"))

    def test_invalid_body(self):
        self.assertRaises(
            ParseError, self.backend.put_calendar_object, "Calendar",
            "E1.ics", b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n")
        self.assertEqual([], self.calendar.select())

    def test_storage_failure(self):
        self.calendar.fail_writes = True
        self.assertRaises(
            StorageFailure, self.put, "Calendar", "E1.ics", make_event("E1"))

    def test_read_only(self):
        self.store.add_folder(
            "Holidays", FOLDER_TYPE_EVENT, namespace=NAMESPACE_SHARED,
            rights=READ_ONLY_RIGHTS)
        self.assertRaises(
            Forbidden, self.put, "Holidays", "E1.ics", make_event("E1"))

    def test_delete(self):
        self.put("Calendar", "E1.ics", make_event("E1"))
        self.backend.delete_calendar_object("Calendar", "E1.ics")
        self.assertIsNone(self.calendar.get_object("E1"))
        self.assertRaises(
            NotFound, self.backend.delete_calendar_object, "Calendar",
            "E1.ics")

    def test_get_without_dtstamp_is_stable(self):
        self.put("Calendar", "E1.ics", make_event("E1").replace(
            b"DTSTAMP:20150527T221952Z\n", b""))
        first = self.backend.get_calendar_object("Calendar", "E1.ics")
        second = self.backend.get_calendar_object("Calendar", "E1.ics")
        self.assertEqual(first.etag, second.etag)
        self.assertEqual(first.data, second.data)

    def test_dtstamp_preserved(self):
        self.put("Calendar", "E1.ics", make_event("E1"))
        obj = self.backend.get_calendar_object("Calendar", "E1.ics")
        self.assertIn(b"DTSTAMP:20150527T221952Z", obj.data)

    def test_id_survives_rename(self):
        self.put("Calendar", "E1.ics", make_event("E1"))
        calendar_id = self.backend.get_calendar_by_name("Calendar").id
        self.store.folder_update(self.calendar, name="Agenda")
        self.backend.delete_calendar_object(calendar_id, "E1.ics")
        self.assertEqual([], self.calendar.select())


class AttachmentTests(BackendTestCase):

    def test_full_replace(self):
        self.put("Calendar", "E1.ics", make_event(
            "E1", extra=attach("a.txt", b"A") + attach("b.txt", b"B")))
        old_ids = [a.id for a in self.calendar.get_object("E1").attachments]
        self.assertEqual(2, len(old_ids))
        self.put("Calendar", "E1.ics", make_event(
            "E1", extra=attach("c.txt", b"C")))
        record = self.calendar.get_object("E1")
        self.assertEqual(["c.txt"], [a.name for a in record.attachments])
        for attachment_id in old_ids:
            self.assertRaises(
                NotFound, self.backend.get_calendar_object, "Calendar",
                "E1.ics:attachment:%d:x" % attachment_id)

    def test_create_existing_replaces_attachments(self):
        self.put("Calendar", "E1.ics", make_event(
            "E1", extra=attach("a.txt", b"A")))
        self.backend.create_calendar_object(
            "Calendar", "E1.ics", make_event("E1", extra=attach("b.txt", b"B")))
        record = self.calendar.get_object("E1")
        self.assertEqual(["b.txt"], [a.name for a in record.attachments])
        self.assertEqual(["E1"], [r.uid for r in self.calendar.select()])

    def test_get_attachment(self):
        self.put("Calendar", "E1.ics", make_event(
            "E1", extra=attach("a.txt", b"hello")))
        (attachment, ) = self.calendar.get_object("E1").attachments
        content = self.backend.get_calendar_object(
            "Calendar", "E1.ics:attachment:%d:a.txt" % attachment.id)
        self.assertIsInstance(content, AttachmentContent)
        self.assertEqual(b"hello", content.data)
        self.assertEqual("text/plain", content.mimetype)
        self.assertEqual("a.txt", content.name)

    def test_inline_for_other_clients(self):
        self.put("Calendar", "E1.ics", make_event(
            "E1", extra=attach("a.txt", b"hello")))
        obj = self.backend.get_calendar_object("Calendar", "E1.ics")
        self.assertIn(b"aGVsbG8=", obj.data.replace(b"\r\n ", b""))


class LightningAttachmentTests(BackendTestCase):

    user_agent = (
        "Mozilla/5.0 (X11; Linux x86_64; rv:52.0) Gecko/20100101 "
        "Thunderbird/52.5.0 Lightning/5.4.5")

    def test_attachment_link_roundtrip(self):
        self.put("Calendar", "E1.ics", make_event(
            "E1", extra=attach("a.txt", b"hello")))
        obj = self.backend.get_calendar_object("Calendar", "E1.ics")
        data = obj.data.replace(b"\r\n ", b"")
        self.assertIn(
            b"https://dav.example.com/calendars/jane/Calendar/E1.ics"
            b":attachment:", data)
        self.assertNotIn(b"aGVsbG8=", data)
        (attachment, ) = self.calendar.get_object("E1").attachments
        # Sending the link back keeps the stored attachment.
        self.put("Calendar", "E1.ics", data)
        self.assertEqual(
            [attachment.id],
            [a.id for a in self.calendar.get_object("E1").attachments])


class FilterTests(unittest.TestCase):

    def setUp(self):
        super().setUp()
        logging.disable(logging.WARNING)
        self.addCleanup(logging.disable, logging.NOTSET)

    def test_parse(self):
        comp_filter = parse_filter(FILTER_EVENTS_IN_JUNE)
        self.assertEqual("VCALENDAR", comp_filter.name)
        (event_filter, ) = comp_filter.comp_filters
        self.assertEqual("VEVENT", event_filter.name)
        self.assertEqual(
            datetime(2015, 6, 1, tzinfo=UTC), event_filter.time_range.start)

    def test_parse_invalid(self):
        self.assertRaises(ParseError, parse_filter, b"<not-xml")
        self.assertRaises(
            ParseError, parse_filter,
            b'<C:filter xmlns:C="urn:ietf:params:xml:ns:caldav"/>')

    def test_translate_time_range(self):
        self.assertEqual([
            ("type", "=", "event"),
            ("dtstart", "<=", datetime(2015, 7, 1, tzinfo=UTC)),
            ("dtend", ">=", datetime(2015, 6, 1, tzinfo=UTC)),
        ], translate_filter(parse_filter(FILTER_EVENTS_IN_JUNE)))

    def test_translate_todo(self):
        comp_filter = CompFilter("VCALENDAR")
        todo = CompFilter("VTODO")
        todo.time_range = TimeRange(datetime(2015, 6, 1, tzinfo=UTC))
        comp_filter.comp_filters.append(todo)
        self.assertEqual([("type", "=", "task")], translate_filter(comp_filter))

    def test_translate_negated(self):
        comp_filter = CompFilter("VCALENDAR")
        comp_filter.comp_filters.append(CompFilter("VEVENT", True))
        self.assertEqual([], translate_filter(comp_filter))


class CalendarQueryTests(BackendTestCase):

    def setUp(self):
        super().setUp()
        self.put("Calendar", "may.ics", make_event(
            "may", "20150510T100000Z", "20150510T110000Z"))
        self.put("Calendar", "june.ics", make_event(
            "june", "20150610T100000Z", "20150610T110000Z"))
        self.put("Calendar", "overlap.ics", make_event(
            "overlap", "20150531T100000Z", "20150601T110000Z"))
        self.put("Calendar", "july.ics", make_event(
            "july", "20150710T100000Z", "20150710T110000Z"))

    def test_time_range(self):
        self.assertEqual(
            ["june.ics", "overlap.ics"],
            self.backend.calendar_query("Calendar", FILTER_EVENTS_IN_JUNE))

    def test_untranslatable_is_superset(self):
        data = FILTER_EVENTS_IN_JUNE.replace(
            b'<C:time-range start="20150601T000000Z" '
            b'end="20150701T000000Z"/>',
            b'<C:prop-filter name="SUMMARY"><C:text-match>event'
            b'</C:text-match></C:prop-filter>')
        self.assertEqual(
            ["july.ics", "june.ics", "may.ics", "overlap.ics"],
            self.backend.calendar_query("Calendar", data))

    def test_top_level_must_be_vcalendar(self):
        self.assertRaises(
            Unsupported, self.backend.calendar_query, "Calendar",
            CompFilter("VEVENT"))

    def test_series_across_daylight_saving(self):
        # Weekly at 10:00 Berlin time; the last of 20 occurrences is on
        # 2024-11-11, after the switch back to winter time.
        self.put("Calendar", "R1.ics", make_event(
            "R1", "20240701T100000", "20240701T110000",
            extra=b"RRULE:FREQ=WEEKLY;COUNT=20\n").replace(
                b"DTSTART:", b"DTSTART;TZID=Europe/Berlin:").replace(
                b"DTEND:", b"DTEND;TZID=Europe/Berlin:"))
        data = FILTER_EVENTS_IN_JUNE.replace(
            b"20150601T000000Z", b"20241111T093000Z").replace(
            b"20150701T000000Z", b"20241111T094500Z")
        self.assertEqual(
            ["R1.ics"], self.backend.calendar_query("Calendar", data))
