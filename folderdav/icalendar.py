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

"""Calendar data conversion.

Converts between iCalendar data and calendar records. Parsing is
forgiving: content lines that can not be parsed are dropped instead of
failing the whole object.

Inline attachments are pulled out of the content lines before the data is
handed to the icalendar library, so that binary payloads are decoded
exactly as they were sent.
"""

import base64
import binascii
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import quote, unquote

import icalendar
from icalendar.cal import Alarm, Calendar, Event, Journal, Todo
from icalendar.parser import Contentline
from icalendar.prop import vCalAddress, vRecur, vUri

from . import __version__
from .davcommon import ParseError, UnsupportedComponent, unfold_lines
from .store import DEFAULT_MIME_TYPE
from .store.records import (
    KIND_EVENT,
    KIND_JOURNAL,
    KIND_TASK,
    Attachment,
    Attendee,
    CalendarRecord,
    as_utc,
)
from .store.records import Alarm as AlarmRecord
from .useragent import ClientKind

CONTENT_TYPE = "text/calendar"

PRODID = "-//FolderDAV//FolderDAV %s//icalendar %s//EN" % (
    ".".join(map(str, __version__)), icalendar.__version__)

COMPONENT_KINDS = {
    "VEVENT": KIND_EVENT,
    "VTODO": KIND_TASK,
    "VJOURNAL": KIND_JOURNAL,
}

COMPONENT_CLASSES = {
    KIND_EVENT: Event,
    KIND_TASK: Todo,
    KIND_JOURNAL: Journal,
}

# <uid>.ics:attachment:<id>:<name>
ATTACHMENT_PATH_RE = re.compile(r"^(.+)\.ics:attachment:(\d+):.+$")
ATTACHMENT_REFERENCE_RE = re.compile(r"\.ics:attachment:(\d+):([^/]+)$")

# Properties set from dedicated record fields.
_TEXT_FIELDS = (
    ("SUMMARY", "summary"),
    ("DESCRIPTION", "description"),
    ("LOCATION", "location"),
    ("STATUS", "status"),
    ("CLASS", "classification"),
    ("TRANSP", "transparency"),
    ("URL", "url"),
)
_INT_FIELDS = (
    ("PRIORITY", "priority"),
    ("PERCENT-COMPLETE", "percent_complete"),
    ("SEQUENCE", "sequence"),
)
_IGNORED_CUSTOM_PROPERTIES = ("X-WR-ALARMUID",)


class ParsedCalendar:
    """A parsed calendar object.

    Attributes:
      calendar: icalendar Calendar instance
      attachments: for every object component, the list of (params, value)
        tuples of its ATTACH properties
    """

    def __init__(self, calendar, attachments) -> None:
        self.calendar = calendar
        self.attachments = attachments

    @property
    def components(self):
        return [
            comp for comp in self.calendar.subcomponents
            if comp.name in COMPONENT_KINDS]

    def get_uid(self) -> str:
        """Return the UID of the object.

        :raise KeyError: if there is no object component with a UID
        """
        for comp in self.components:
            return str(comp["UID"])
        raise KeyError("UID")


def parse_calendar(data) -> ParsedCalendar:
    """Parse iCalendar data.

    Args:
      data: bytes or str
    Returns: ParsedCalendar
    :raise ParseError: if the data is not a calendar
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8", "replace")
    lines = []
    attachments = []
    stack = []
    for line in unfold_lines(data):
        try:
            (name, params, value) = Contentline(line).parts()
        except ValueError as exc:
            logging.debug("Ignoring invalid iCalendar line %r: %s", line, exc)
            continue
        name = name.upper()
        if name == "BEGIN":
            stack.append(value.upper())
            if len(stack) == 2 and stack[-1] in COMPONENT_KINDS:
                attachments.append([])
        elif name == "END":
            if stack:
                stack.pop()
        elif (name == "ATTACH" and len(stack) == 2
              and stack[-1] in COMPONENT_KINDS):
            attachments[-1].append((dict(params), value))
            continue
        lines.append(line)
    try:
        calendar = Calendar.from_ical("\r\n".join(lines) + "\r\n")
    except ValueError as exc:
        raise ParseError(CONTENT_TYPE, str(exc)) from exc
    if calendar.name != "VCALENDAR":
        raise ParseError(
            CONTENT_TYPE, f"expected VCALENDAR, got {calendar.name}")
    return ParsedCalendar(calendar, attachments)


def get_object_info(parsed: ParsedCalendar, supported_components=None):
    """Check that a calendar holds exactly one object.

    One object means one UID and one component type, which may be repeated
    for recurrence exceptions. Time zone definitions are ignored.

    Args:
      parsed: ParsedCalendar
      supported_components: optional set of allowed component names
    Returns: tuple with component name and UID
    :raise ParseError: if the calendar holds no object or more than one
    :raise UnsupportedComponent: if the component type is not allowed
    """
    component_name = uid = None
    for comp in parsed.calendar.subcomponents:
        if comp.name == "VTIMEZONE":
            continue
        if comp.name not in COMPONENT_KINDS:
            raise ParseError(
                CONTENT_TYPE, f"unexpected component {comp.name}")
        if component_name is None:
            if (supported_components is not None
                    and comp.name not in supported_components):
                raise UnsupportedComponent(comp.name)
            component_name = comp.name
        elif comp.name != component_name:
            raise ParseError(
                CONTENT_TYPE,
                f"mixed component types {component_name} and {comp.name}")
        try:
            comp_uid = str(comp["UID"])
        except KeyError as exc:
            raise ParseError(
                CONTENT_TYPE, f"{comp.name} component without UID") from exc
        if uid is None:
            uid = comp_uid
        elif comp_uid != uid:
            raise ParseError(
                CONTENT_TYPE, f"multiple UIDs: {uid} and {comp_uid}")
    if component_name is None:
        raise ParseError(CONTENT_TYPE, "no VEVENT, VTODO or VJOURNAL found")
    return component_name, uid


def _first(value):
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _as_list(value):
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _get_text(comp, name):
    value = _first(comp.get(name))
    if value is None:
        return None
    return str(value)


def _get_int(comp, name):
    value = _first(comp.get(name))
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logging.debug("Ignoring invalid %s value %r", name, value)
        return None


def _get_time(comp, name):
    value = _first(comp.get(name))
    if value is None:
        return None
    return getattr(value, "dt", None)


def _address_from_prop(prop) -> Attendee:
    value = str(prop)
    if value.lower().startswith("mailto:"):
        value = value[len("mailto:"):]
    params = getattr(prop, "params", {})
    rsvp = params.get("RSVP")
    return Attendee(
        email=value,
        name=params.get("CN"),
        role=params.get("ROLE"),
        status=params.get("PARTSTAT"),
        rsvp=None if rsvp is None else rsvp.upper() == "TRUE")


def _attachment_from_raw(params, value) -> Attachment:
    mimetype = params.get("FMTTYPE") or DEFAULT_MIME_TYPE
    name = (params.get("X-LABEL") or params.get("FILENAME")
            or params.get("X-FILENAME"))
    if (params.get("ENCODING", "").upper() == "BASE64"
            or params.get("VALUE", "").upper() == "BINARY"):
        try:
            data = base64.b64decode(value)
        except binascii.Error as exc:
            raise ParseError(
                CONTENT_TYPE, f"invalid attachment data: {exc}") from exc
        return Attachment(name=name, mimetype=mimetype, data=data)
    m = ATTACHMENT_REFERENCE_RE.search(value)
    if m:
        # Reference to an attachment we handed out earlier.
        return Attachment(
            id=int(m.group(1)), name=name or unquote(m.group(2)),
            mimetype=mimetype, uri=value)
    return Attachment(name=name, mimetype=mimetype, uri=value)


def _component_to_record(comp, raw_attachments) -> CalendarRecord:
    kind = COMPONENT_KINDS[comp.name]
    record = CalendarRecord(kind=kind, uid=str(comp["UID"]))
    for (prop, field) in _TEXT_FIELDS:
        setattr(record, field, _get_text(comp, prop))
    for (prop, field) in _INT_FIELDS:
        setattr(record, field, _get_int(comp, prop))
    record.start = _get_time(comp, "DTSTART")
    duration = _get_time(comp, "DURATION")
    if kind == KIND_EVENT:
        record.end = _get_time(comp, "DTEND")
        if record.end is None and record.start is not None:
            if isinstance(duration, timedelta):
                record.end = record.start + duration
            elif not isinstance(record.start, datetime):
                record.end = record.start + timedelta(days=1)
            else:
                record.end = record.start
    elif kind == KIND_TASK:
        record.due = _get_time(comp, "DUE")
        if (record.due is None and record.start is not None
                and isinstance(duration, timedelta)):
            record.due = record.start + duration
        record.completed = _get_time(comp, "COMPLETED")
    record.created = _get_time(comp, "CREATED")
    record.changed = _get_time(comp, "LAST-MODIFIED")
    record.stamp = _get_time(comp, "DTSTAMP") or datetime.now(timezone.utc)
    record.recurrence_id = _get_time(comp, "RECURRENCE-ID")
    rrule = _first(comp.get("RRULE"))
    if rrule is not None:
        record.rrule = rrule.to_ical().decode("ascii")
    for prop in _as_list(comp.get("EXDATE")):
        record.exdates.extend(d.dt for d in prop.dts)
    for prop in _as_list(comp.get("CATEGORIES")):
        cats = getattr(prop, "cats", None)
        if cats is None:
            cats = [prop]
        record.categories.extend(str(c) for c in cats)
    organizer = _first(comp.get("ORGANIZER"))
    if organizer is not None:
        record.organizer = _address_from_prop(organizer)
    record.attendees = [
        _address_from_prop(prop) for prop in _as_list(comp.get("ATTENDEE"))]
    for sub in comp.subcomponents:
        if sub.name != "VALARM":
            continue
        trigger = _first(sub.get("TRIGGER"))
        record.alarms.append(AlarmRecord(
            action=_get_text(sub, "ACTION"),
            trigger=getattr(trigger, "dt", None),
            related=(getattr(trigger, "params", {}).get("RELATED")
                     if trigger is not None else None),
            description=_get_text(sub, "DESCRIPTION"),
            summary=_get_text(sub, "SUMMARY")))
    for (name, value) in comp.items():
        if name.startswith("X-") and name not in _IGNORED_CUSTOM_PROPERTIES:
            record.custom.extend((name, str(v)) for v in _as_list(value))
    record.attachments = [
        _attachment_from_raw(params, value)
        for (params, value) in raw_attachments]
    return record


def decode_calendar(data, expected_uid: Optional[str] = None,
                    coordinator=None) -> CalendarRecord:
    """Convert iCalendar data to a calendar record.

    Recurrence exceptions end up in the ``exceptions`` list of the master
    record.

    Args:
      data: bytes, str or ParsedCalendar
      expected_uid: UID the object is expected to have; if the coordinator
        has already parsed this body, that result is reused
      coordinator: ValidationCoordinator for the current request
    Returns: CalendarRecord
    :raise ParseError: if the data does not hold exactly one object
    """
    if isinstance(data, ParsedCalendar):
        parsed = data
    else:
        parsed = None
        if coordinator is not None and expected_uid is not None:
            parsed = coordinator.get_parsed(CONTENT_TYPE, expected_uid, data)
        if parsed is None:
            parsed = parse_calendar(data)
    get_object_info(parsed)
    master = None
    exceptions = []
    for comp, raw_attachments in zip(parsed.components, parsed.attachments):
        record = _component_to_record(comp, raw_attachments)
        if record.recurrence_id is None and master is None:
            master = record
        else:
            exceptions.append(record)
    if master is None:
        master = exceptions.pop(0)
    master.exceptions = exceptions
    return master


def attachment_uri(object_uri: str, attachment) -> str:
    """Return the URI an attachment can be downloaded from."""
    return "%s:attachment:%d:%s" % (
        object_uri, attachment.id, quote(attachment.name or "attachment"))


def parse_attachment_path(object_name: str):
    """Split an attachment sub-resource name.

    Returns: tuple with object UID and attachment id, or None if the name
        does not refer to an attachment
    """
    m = ATTACHMENT_PATH_RE.match(object_name)
    if m is None:
        return None
    return m.group(1), int(m.group(2))


def _utc_timestamp(value):
    if not isinstance(value, datetime):
        return value
    return as_utc(value)


def _cal_address(attendee) -> vCalAddress:
    address = vCalAddress("mailto:" + attendee.email)
    if attendee.name:
        address.params["CN"] = attendee.name
    if attendee.role:
        address.params["ROLE"] = attendee.role
    if attendee.status:
        address.params["PARTSTAT"] = attendee.status
    if attendee.rsvp is not None:
        address.params["RSVP"] = "TRUE" if attendee.rsvp else "FALSE"
    return address


def alarm_uid(uid: str, index: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{uid}#alarm-{index}")).upper()


def _alarm_component(alarm, uid, index, client) -> Alarm:
    comp = Alarm()
    comp.add("action", alarm.action or "DISPLAY")
    if alarm.trigger is not None:
        parameters = {"RELATED": alarm.related} if alarm.related else None
        comp.add("trigger", alarm.trigger, parameters=parameters)
    if alarm.description is not None:
        comp.add("description", alarm.description)
    if alarm.summary is not None:
        comp.add("summary", alarm.summary)
    if client is ClientKind.APPLE:
        comp.add("x-wr-alarmuid", alarm_uid(uid, index))
    return comp


def _add_attachment(comp, attachment, uid, object_uri, client,
                    get_attachment):
    params = {"FMTTYPE": attachment.mimetype or DEFAULT_MIME_TYPE}
    if attachment.name:
        params["X-LABEL"] = attachment.name
    if attachment.id is None and attachment.data is None:
        if attachment.uri is not None:
            comp.add("attach", vUri(attachment.uri), parameters=params)
        return
    if (client is ClientKind.LIGHTNING and attachment.id is not None
            and object_uri):
        params["VALUE"] = "URI"
        comp.add(
            "attach", vUri(attachment_uri(object_uri, attachment)),
            parameters=params)
        return
    data = attachment.data
    if data is None and get_attachment is not None:
        data = get_attachment(attachment.id)
    if data is None:
        logging.warning(
            "No data for attachment %s of %s; leaving it out",
            attachment.id, uid)
        return
    params["ENCODING"] = "BASE64"
    params["VALUE"] = "BINARY"
    comp.add(
        "attach", vUri(base64.b64encode(data).decode("ascii")),
        parameters=params)


def _record_to_component(record, uid, object_uri, client, get_attachment):
    comp = COMPONENT_CLASSES[record.kind]()
    comp.add("uid", uid)
    comp.add("dtstamp", _utc_timestamp(
        record.stamp or record.changed or record.created
        or datetime.now(timezone.utc)))
    if record.created is not None:
        comp.add("created", _utc_timestamp(record.created))
    if record.changed is not None:
        comp.add("last-modified", _utc_timestamp(record.changed))
    if record.recurrence_id is not None:
        comp.add("recurrence-id", record.recurrence_id)
    if record.start is not None:
        comp.add("dtstart", record.start)
    if record.kind == KIND_EVENT and record.end is not None:
        comp.add("dtend", record.end)
    if record.kind == KIND_TASK:
        if record.due is not None:
            comp.add("due", record.due)
        if record.completed is not None:
            comp.add("completed", _utc_timestamp(record.completed))
    for (prop, field) in _TEXT_FIELDS + _INT_FIELDS:
        value = getattr(record, field)
        if value is not None:
            comp.add(prop, value)
    if record.rrule:
        comp.add("rrule", vRecur.from_ical(record.rrule))
    if record.exdates:
        comp.add("exdate", record.exdates)
    if record.categories:
        comp.add("categories", record.categories)
    if record.organizer is not None:
        comp.add("organizer", _cal_address(record.organizer))
    for attendee in record.attendees:
        comp.add("attendee", _cal_address(attendee))
    for (name, value) in record.custom:
        comp.add(name, value)
    for index, alarm in enumerate(record.alarms):
        comp.add_component(_alarm_component(alarm, uid, index, client))
    for attachment in record.attachments:
        _add_attachment(
            comp, attachment, uid, object_uri, client, get_attachment)
    return comp


def encode_calendar(
        record: CalendarRecord, object_uri: Optional[str] = None,
        client: ClientKind = ClientKind.GENERIC,
        get_attachment: Optional[Callable[[int], bytes]] = None) -> bytes:
    """Convert a calendar record to iCalendar data.

    VTIMEZONE components are generated for every time zone the record
    refers to.

    Args:
      record: CalendarRecord to serialize
      object_uri: Absolute URI of the object, used for attachment links
      client: Kind of client the data is meant for; Lightning receives
        links to stored attachments rather than their contents
      get_attachment: Callable returning the payload of a stored attachment
    Returns: iCalendar data as bytes
    """
    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add("calscale", "GREGORIAN")
    for sub in [record] + list(record.exceptions):
        cal.add_component(_record_to_component(
            sub, record.uid, object_uri, client, get_attachment))
    try:
        cal.add_missing_timezones()
    except ValueError as exc:
        logging.warning(
            "Unable to add time zone definitions for %s: %s", record.uid, exc)
    return cal.to_ical()
