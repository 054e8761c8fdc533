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

"""Structured records kept in folders.

Records hold the fields clients see. Everything the store tracks about a
record revision on its own (message UID, size, mailbox) lives in a separate
:class:`Metadata` instance, which is what gets carried forward when a
record is replaced.
"""

import copy
from datetime import date, datetime, timedelta, timezone

from dateutil import rrule
from icalendar.prop import vRecur

KIND_EVENT = "event"
KIND_TASK = "task"
KIND_JOURNAL = "journal"
KIND_CONTACT = "contact"
KIND_DISTRIBUTION_LIST = "distribution-list"

MIN_DATETIME = datetime(1, 1, 1, tzinfo=timezone.utc)
MAX_DATETIME = datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


class Struct:
    """Attribute container with value semantics.

    Subclasses list their attributes in ``_fields``; ``_defaults`` supplies
    values for attributes that are not passed in. Mutable defaults are
    copied for every instance.
    """

    _fields: tuple = ()
    _defaults: dict = {}

    def __init__(self, **kwargs) -> None:
        for name in self._fields:
            if name in kwargs:
                value = kwargs.pop(name)
            else:
                value = copy.copy(self._defaults.get(name))
            setattr(self, name, value)
        if kwargs:
            raise TypeError(
                "unexpected fields for %s: %s" % (
                    type(self).__name__, ", ".join(sorted(kwargs))))

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return all(
            getattr(self, name) == getattr(other, name)
            for name in self._fields)

    def __repr__(self) -> str:
        args = [
            "%s=%r" % (name, getattr(self, name)) for name in self._fields
            if getattr(self, name) not in (None, [], {})]
        return "%s(%s)" % (type(self).__name__, ", ".join(args))

    def copy(self):
        return copy.deepcopy(self)


class Metadata(Struct):
    """Store-side information about one revision of a record.

    ``removed_attachments`` lists attachment ids to drop on the next save;
    it is never carried forward.
    """

    _fields = ("msguid", "mailbox", "size", "removed_attachments", "extra")
    _defaults = {"removed_attachments": [], "extra": {}}

    def merged(self, previous: "Metadata") -> "Metadata":
        """Fill in the fields this instance lacks from a previous revision."""
        result = self.copy()
        if previous is None:
            return result
        for name in ("msguid", "mailbox", "size"):
            if getattr(result, name) is None:
                setattr(result, name, getattr(previous, name))
        extra = dict(previous.extra)
        extra.update(result.extra)
        result.extra = extra
        return result


class Attachment(Struct):
    """A file attached to a calendar object.

    Attachments that are already stored have an ``id``; new ones carry
    their payload in ``data``. ``uri`` is set for attachments that were
    submitted as a reference rather than inline.
    """

    _fields = ("id", "name", "mimetype", "size", "data", "uri")


class Attendee(Struct):

    _fields = ("email", "name", "role", "status", "rsvp")


class Alarm(Struct):

    _fields = ("action", "trigger", "related", "description", "summary")


class CalendarRecord(Struct):
    """An event, task or journal entry."""

    _fields = (
        "kind", "uid", "summary", "description", "location",
        "start", "end", "due", "completed", "status", "priority",
        "percent_complete", "sequence", "classification", "transparency",
        "url", "categories", "organizer", "attendees", "rrule", "exdates",
        "alarms", "attachments", "recurrence_id", "exceptions", "custom",
        "created", "changed", "stamp", "meta",
    )
    _defaults = {
        "kind": KIND_EVENT,
        "categories": [],
        "attendees": [],
        "exdates": [],
        "alarms": [],
        "attachments": [],
        "exceptions": [],
        "custom": [],
    }

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        if self.meta is None:
            self.meta = Metadata()

    def _span(self):
        start = self.start if self.start is not None else self.due
        end = self.end if self.end is not None else self.due
        if end is None:
            end = start
        return start, end

    def _recurrence_end(self, start, end):
        """Return the end of the last occurrence, or None if unbounded."""
        rule = vRecur.from_ical(self.rrule)
        if "COUNT" not in rule and "UNTIL" not in rule:
            return None
        try:
            last = None
            for last in recurrence_rule(self.rrule, start):
                pass
        except (ValueError, TypeError):
            return None
        if last is None:
            return as_utc(end)
        return as_utc(last) + (as_utc(end) - as_utc(start))

    def index(self) -> dict:
        """Return the values folders can be queried on.

        ``dtstart`` and ``dtend`` bound all occurrences, including
        exceptions; recurrences without an end extend to the end of time.
        """
        start, end = self._span()
        dtstart = as_utc(start) if start is not None else MIN_DATETIME
        dtend = as_utc(end) if end is not None else MAX_DATETIME
        if self.rrule and start is not None:
            try:
                recurrence_end = self._recurrence_end(start, end)
            except ValueError:
                recurrence_end = None
            dtend = MAX_DATETIME if recurrence_end is None else max(
                dtend, recurrence_end)
        for exception in self.exceptions:
            index = exception.index()
            dtstart = min(dtstart, index["dtstart"])
            dtend = max(dtend, index["dtend"])
        return {
            "uid": self.uid,
            "type": self.kind,
            "dtstart": dtstart,
            "dtend": dtend,
        }


class Email(Struct):

    _fields = ("address", "type")


class Phone(Struct):

    _fields = ("number", "type")


class Website(Struct):

    _fields = ("url", "type")


class PostalAddress(Struct):

    _fields = ("type", "street", "locality", "region", "code", "country")


class Member(Struct):
    """A distribution list member.

    Either ``uid`` refers to another contact, or ``email`` (and optionally
    ``name``) describe an external address. Never both.
    """

    _fields = ("uid", "email", "name")

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        if self.uid is not None and (self.email or self.name):
            raise ValueError("member refers to both a UID and an address")
        if self.uid is None and not self.email:
            raise ValueError("member needs either a UID or an address")


class ContactRecord(Struct):
    """A contact or distribution list."""

    _fields = (
        "kind", "uid", "name", "surname", "firstname", "middlename",
        "prefix", "suffix", "nickname", "jobtitle", "profession",
        "organization", "department", "assistant", "manager", "spouse",
        "children", "email", "phone", "website", "im", "address",
        "birthday", "anniversary", "gender", "notes", "photo", "categories",
        "freebusyurl", "members", "custom", "changed", "meta",
    )
    _defaults = {
        "kind": KIND_CONTACT,
        "assistant": [],
        "manager": [],
        "children": [],
        "email": [],
        "phone": [],
        "website": [],
        "im": [],
        "address": [],
        "categories": [],
        "members": [],
        "custom": [],
    }

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        if self.meta is None:
            self.meta = Metadata()

    def index(self) -> dict:
        return {
            "uid": self.uid,
            "type": self.kind,
            "name": self.name,
            "email": [email.address for email in self.email],
        }


def as_utc(value) -> datetime:
    """Convert a date or datetime to an aware UTC datetime.

    Dates become midnight UTC, floating times are taken to be UTC.
    """
    if isinstance(value, timedelta):
        raise TypeError(value)
    if not isinstance(value, datetime):
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day,
                            tzinfo=timezone.utc)
        raise TypeError(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def recurrence_rule(rule: str, start):
    """Parse an RRULE value into a dateutil rule anchored at ``start``.

    Occurrences are computed in the time zone of ``start``, so that wall
    clock times stay put across daylight saving changes. Dates and
    floating times give naive occurrences.
    """
    if not isinstance(start, datetime):
        start = datetime(start.year, start.month, start.day)
    try:
        return rrule.rrulestr(rule, dtstart=start)
    except ValueError:
        if start.tzinfo is not None:
            raise
        # UNTIL in UTC with a floating start
        return rrule.rrulestr(rule, dtstart=as_utc(start))
