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

"""CalDAV backend on top of a folder store.

https://tools.ietf.org/html/rfc4791
"""

import logging
import posixpath
from typing import Optional
from xml.etree.ElementTree import ParseError as XMLParseError

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring as xmlparse
from icalendar.prop import vDDDTypes

from . import icalendar
from .davcommon import (
    CALDAV_NAMESPACE,
    PROP_SUPPORTED_CALENDAR_COMPONENT_SET,
    CollectionInfo,
    Forbidden,
    IdentityConflict,
    NotFound,
    ObjectSummary,
    ParseError,
    StorageFailure,
    Unsupported,
    UnsupportedComponent,
    check_writeable,
    create_folder,
    is_writeable,
    make_ctag,
    make_etag,
    owner_principal,
    uid_from_uri,
    update_folder_properties,
)
from .store import (
    FOLDER_TYPE_EVENT,
    FOLDER_TYPE_TASK,
    NoSuchFolder,
    NoSuchItem,
    PermissionDenied,
    StoreError,
)
from .store.records import KIND_EVENT, KIND_JOURNAL, KIND_TASK, as_utc

OBJECT_SUFFIX = ".ics"

CALENDAR_FOLDER_TYPES = (FOLDER_TYPE_EVENT, FOLDER_TYPE_TASK)

SUPPORTED_COMPONENTS = {
    FOLDER_TYPE_EVENT: ("VEVENT", "VJOURNAL"),
    FOLDER_TYPE_TASK: ("VTODO",),
}

_FOLDER_KINDS = {
    FOLDER_TYPE_EVENT: (KIND_EVENT, KIND_JOURNAL),
    FOLDER_TYPE_TASK: (KIND_TASK,),
}

_COMPONENT_TYPES = {
    "VEVENT": KIND_EVENT,
    "VTODO": KIND_TASK,
    "VJOURNAL": KIND_JOURNAL,
}


class TimeRange:

    def __init__(self, start=None, end=None):
        self.start = start
        self.end = end

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.start!r}, {self.end!r})"


class PropFilter:

    def __init__(self, name, is_not_defined=False):
        self.name = name
        self.is_not_defined = is_not_defined
        self.time_range = None
        self.text_match = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class CompFilter:
    """A calendar-query comp-filter.

    Attributes:
      name: Component name, e.g. VEVENT
      comp_filters: Filters on subcomponents
      prop_filters: Filters on properties
      time_range: Optional TimeRange
      is_not_defined: Whether the component must be absent
    """

    def __init__(self, name, is_not_defined=False):
        self.name = name
        self.is_not_defined = is_not_defined
        self.comp_filters = []
        self.prop_filters = []
        self.time_range = None

    def __repr__(self) -> str:
        return "%s(%r, comp_filters=%r, time_range=%r)" % (
            type(self).__name__, self.name, self.comp_filters,
            self.time_range)


def _parse_time_range(el):
    start = el.get("start")
    end = el.get("end")
    if start is None and end is None:
        raise ParseError("application/xml", "empty time-range")
    try:
        return TimeRange(
            vDDDTypes.from_ical(start) if start else None,
            vDDDTypes.from_ical(end) if end else None)
    except ValueError as exc:
        raise ParseError("application/xml", str(exc)) from exc


def _parse_prop_filter(el):
    prop_filter = PropFilter(el.get("name"))
    for subel in el:
        if subel.tag == "{%s}is-not-defined" % CALDAV_NAMESPACE:
            prop_filter.is_not_defined = True
        elif subel.tag == "{%s}time-range" % CALDAV_NAMESPACE:
            prop_filter.time_range = _parse_time_range(subel)
        elif subel.tag == "{%s}text-match" % CALDAV_NAMESPACE:
            prop_filter.text_match = subel.text
        elif subel.tag == "{%s}param-filter" % CALDAV_NAMESPACE:
            logging.debug("Ignoring param-filter on %s", prop_filter.name)
        else:
            raise ParseError(
                "application/xml", f"unknown subelement {subel.tag!r}")
    return prop_filter


def _parse_comp_filter(el):
    comp_filter = CompFilter(el.get("name"))
    for subel in el:
        if subel.tag == "{%s}is-not-defined" % CALDAV_NAMESPACE:
            comp_filter.is_not_defined = True
        elif subel.tag == "{%s}comp-filter" % CALDAV_NAMESPACE:
            comp_filter.comp_filters.append(_parse_comp_filter(subel))
        elif subel.tag == "{%s}prop-filter" % CALDAV_NAMESPACE:
            comp_filter.prop_filters.append(_parse_prop_filter(subel))
        elif subel.tag == "{%s}time-range" % CALDAV_NAMESPACE:
            comp_filter.time_range = _parse_time_range(subel)
        else:
            raise ParseError(
                "application/xml", f"unknown filter tag {subel.tag!r}")
    return comp_filter


def parse_filter(data) -> CompFilter:
    """Parse a CALDAV:filter element.

    Args:
      data: XML bytes or an already parsed element
    Returns: the top-level (VCALENDAR) CompFilter
    :raise ParseError: if the filter is malformed
    """
    if isinstance(data, (bytes, str)):
        try:
            data = xmlparse(data)
        except (XMLParseError, DefusedXmlException) as exc:
            raise ParseError("application/xml", str(exc)) from exc
    if data.tag != "{%s}filter" % CALDAV_NAMESPACE:
        raise ParseError("application/xml", f"unexpected root {data.tag!r}")
    comp_filters = [
        subel for subel in data
        if subel.tag == "{%s}comp-filter" % CALDAV_NAMESPACE]
    if len(comp_filters) != 1:
        raise ParseError(
            "application/xml", "filter needs exactly one comp-filter")
    return _parse_comp_filter(comp_filters[0])


def translate_filter(calendar_filter: CompFilter):
    """Turn a calendar-query filter into a folder store query.

    Only clauses that map exactly onto indexed fields are translated: the
    component type, and time ranges on events. Everything else is left
    out, so the query matches a superset of what the filter matches.

    Returns: list of (field, operator, value) tuples
    """
    query = []
    if calendar_filter.is_not_defined:
        logging.debug("Not translating negated %s filter",
                      calendar_filter.name)
        return query
    if calendar_filter.time_range or calendar_filter.prop_filters:
        logging.debug("Not translating filters on %s", calendar_filter.name)
    for comp_filter in calendar_filter.comp_filters:
        if comp_filter.is_not_defined:
            logging.debug("Not translating negated %s filter",
                          comp_filter.name)
            continue
        kind = _COMPONENT_TYPES.get(comp_filter.name)
        if kind is None:
            logging.debug("Not translating filter on %s", comp_filter.name)
            continue
        query.append(("type", "=", kind))
        time_range = comp_filter.time_range
        if time_range is not None:
            if comp_filter.name == "VEVENT":
                if time_range.end is not None:
                    query.append(("dtstart", "<=", as_utc(time_range.end)))
                if time_range.start is not None:
                    query.append(("dtend", ">=", as_utc(time_range.start)))
            else:
                logging.debug(
                    "Not translating time-range on %s", comp_filter.name)
        if comp_filter.comp_filters or comp_filter.prop_filters:
            logging.debug(
                "Not translating nested filters on %s", comp_filter.name)
    return query


class AttachmentContent:
    """Payload of an attachment sub-resource."""

    def __init__(self, name, mimetype, data):
        self.name = name
        self.mimetype = mimetype
        self.data = data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.mimetype!r})"


class CalendarBackend:
    """Calendars and task lists of a folder store.

    Args:
      store: FolderStore to operate on
      context: RequestContext of the current request
    """

    folder_types = CALENDAR_FOLDER_TYPES

    def __init__(self, store, context) -> None:
        self.store = store
        self.context = context

    @property
    def resolver(self):
        return self.context.get_resolver(self.store, self.folder_types)

    def _get_folder(self, calendar_id):
        folder = self.resolver.resolve(calendar_id)
        if folder is None:
            raise NotFound(f"no such calendar: {calendar_id}")
        return folder

    def _calendar_info(self, folder) -> CollectionInfo:
        return CollectionInfo(
            id=self.resolver.get_id(folder),
            uri=self.resolver.get_id(folder),
            displayname=folder.get_name(),
            ctag=make_ctag(folder.get_imap_data()),
            owner=owner_principal(folder, self.context.principal_uri),
            principal_uri=self.context.principal_uri,
            read_only=not is_writeable(folder),
            color=folder.color,
            components=list(SUPPORTED_COMPONENTS[folder.type]))

    def get_calendars_for_user(self, principal_uri: Optional[str] = None):
        """List all calendars visible to the current user."""
        logging.debug("get_calendars_for_user(%r)", principal_uri)
        return [
            self._calendar_info(folder)
            for folder in self.resolver.list_all()]

    def get_calendar_by_name(self, name: str) -> Optional[CollectionInfo]:
        """Look up a calendar by id or folder name.

        Returns: CollectionInfo, or None if there is no such calendar
        """
        logging.debug("get_calendar_by_name(%r)", name)
        folder = self.resolver.resolve(name)
        if folder is None:
            return None
        return self._calendar_info(folder)

    def create_calendar(self, principal_uri, calendar_uri, properties) -> str:
        """Create a new calendar.

        Returns: id of the new calendar
        """
        logging.debug("create_calendar(%r, %r, %r)", principal_uri,
                      calendar_uri, properties)
        components = properties.get(PROP_SUPPORTED_CALENDAR_COMPONENT_SET)
        if components and set(components) == {"VTODO"}:
            folder_type = FOLDER_TYPE_TASK
        else:
            folder_type = FOLDER_TYPE_EVENT
        create_folder(
            self.store, folder_type,
            {k: v for (k, v) in properties.items()
             if k != PROP_SUPPORTED_CALENDAR_COMPONENT_SET},
            calendar_uri, self.resolver)
        return calendar_uri

    def update_calendar(self, calendar_id, mutations):
        """Change calendar properties.

        Returns: PropPatchResult
        """
        logging.debug("update_calendar(%r, %r)", calendar_id, mutations)
        folder = self._get_folder(calendar_id)
        result = update_folder_properties(self.store, folder, mutations)
        if result.ok:
            self.resolver.invalidate()
        return result

    def delete_calendar(self, calendar_id) -> None:
        logging.debug("delete_calendar(%r)", calendar_id)
        folder = self._get_folder(calendar_id)
        check_writeable(folder)
        try:
            self.store.folder_delete(folder.name)
        except NoSuchFolder as exc:
            raise NotFound(f"no such calendar: {calendar_id}") from exc
        except PermissionDenied as exc:
            raise Forbidden(str(exc)) from exc
        except StoreError as exc:
            logging.error(
                "Error deleting calendar folder %s: %s", folder.name, exc)
            raise StorageFailure(
                f"unable to delete calendar {calendar_id}") from exc
        self.resolver.invalidate()

    def _summary(self, calendar_id, record, data=None) -> ObjectSummary:
        return ObjectSummary(
            id=record.uid,
            uri=record.uid + OBJECT_SUFFIX,
            etag=make_etag(record.uid, record.meta.msguid),
            size=record.meta.size,
            lastmodified=record.changed,
            collection_id=calendar_id,
            data=data,
            content_type=icalendar.CONTENT_TYPE if data is not None else None)

    def get_calendar_objects(self, calendar_id):
        """List the objects in a calendar without serializing them."""
        logging.debug("get_calendar_objects(%r)", calendar_id)
        folder = self._get_folder(calendar_id)
        return [
            self._summary(calendar_id, record) for record in folder.select()]

    def _object_uri(self, calendar_id, uid) -> str:
        return "/".join([
            self.context.base_uri, "calendars", self.context.user,
            calendar_id, uid + OBJECT_SUFFIX])

    def get_calendar_object(self, calendar_id, object_uri):
        """Retrieve a single calendar object.

        URIs of the form ``<uid>.ics:attachment:<id>:<name>`` refer to an
        attachment of an object; for those the attachment payload is
        returned instead.

        Returns: ObjectSummary with data, or AttachmentContent
        :raise NotFound: if there is no such object or attachment
        """
        logging.debug("get_calendar_object(%r, %r)", calendar_id, object_uri)
        folder = self._get_folder(calendar_id)
        attachment_path = icalendar.parse_attachment_path(
            posixpath.basename(object_uri))
        if attachment_path is not None:
            return self._get_attachment(folder, *attachment_path)
        uid = uid_from_uri(object_uri, OBJECT_SUFFIX)
        record = folder.get_object(uid)
        if record is None:
            raise NotFound(f"no such object: {object_uri}")

        def get_attachment(attachment_id):
            try:
                return folder.get_attachment(uid, attachment_id)
            except NoSuchItem:
                return None

        data = icalendar.encode_calendar(
            record, self._object_uri(calendar_id, uid), self.context.client,
            get_attachment)
        return self._summary(calendar_id, record, data)

    def _get_attachment(self, folder, uid, attachment_id):
        record = folder.get_object(uid)
        if record is None:
            raise NotFound(f"no such object: {uid}")
        for attachment in record.attachments:
            if attachment.id == attachment_id:
                break
        else:
            raise NotFound(f"no attachment {attachment_id} on {uid}")
        try:
            data = folder.get_attachment(uid, attachment_id)
        except NoSuchItem as exc:
            raise NotFound(f"no attachment {attachment_id} on {uid}") from exc
        return AttachmentContent(attachment.name, attachment.mimetype, data)

    def _decode(self, folder, data, uid):
        record = icalendar.decode_calendar(
            data, uid, self.context.coordinator)
        if record.kind not in _FOLDER_KINDS[folder.type]:
            raise UnsupportedComponent(record.kind)
        return record

    def _save(self, folder, record, previous_uid=None):
        try:
            return folder.save(record, previous_uid)
        except PermissionDenied as exc:
            self.context.coordinator.pop_redirect()
            raise Forbidden(str(exc)) from exc
        except StoreError as exc:
            self.context.coordinator.pop_redirect()
            logging.error(
                "Error saving %s object %s to folder %s: %s", record.kind,
                record.uid, folder.name, exc)
            raise StorageFailure(
                f"unable to save calendar object {record.uid}") from exc

    def create_calendar_object(self, calendar_id, object_uri, data) -> str:
        """Store a new calendar object.

        If the UID in the body differs from the one in the URI, the object
        is stored under its own UID and a redirect is recorded. If an
        object with that UID exists already, it is updated instead.

        Returns: ETag of the new object
        """
        logging.debug("create_calendar_object(%r, %r)", calendar_id,
                      object_uri)
        uid = uid_from_uri(object_uri, OBJECT_SUFFIX)
        folder = self._get_folder(calendar_id)
        check_writeable(folder)
        record = self._decode(folder, data, uid)
        if record.uid != uid:
            self.context.coordinator.set_redirect(record.uid + OBJECT_SUFFIX)
        if folder.get_object(record.uid) is not None:
            return self.update_calendar_object(
                calendar_id, record.uid + OBJECT_SUFFIX, data)
        record.meta.removed_attachments = []
        saved = self._save(folder, record)
        return make_etag(saved.uid, saved.meta.msguid)

    def update_calendar_object(self, calendar_id, object_uri, data) -> str:
        """Replace an existing calendar object.

        Store-side metadata of the previous revision is carried forward;
        attachments that are not part of the new body are removed.

        Returns: ETag of the new revision
        :raise IdentityConflict: if the body has a different UID
        """
        logging.debug("update_calendar_object(%r, %r)", calendar_id,
                      object_uri)
        uid = uid_from_uri(object_uri, OBJECT_SUFFIX)
        folder = self._get_folder(calendar_id)
        check_writeable(folder)
        record = self._decode(folder, data, uid)
        if record.uid != uid:
            logging.error(
                "Error updating calendar object: UID %s doesn't match "
                "object URI %s", record.uid, object_uri)
            self.context.coordinator.pop_redirect()
            raise IdentityConflict(uid, record.uid)
        old = folder.get_object(uid)
        if old is None:
            raise NotFound(f"no such object: {object_uri}")
        record.meta = record.meta.merged(old.meta)
        kept = {a.id for a in record.attachments if a.id is not None}
        record.meta.removed_attachments = [
            a.id for a in old.attachments
            if a.id is not None and a.id not in kept]
        saved = self._save(folder, record, previous_uid=uid)
        return make_etag(saved.uid, saved.meta.msguid)

    def put_calendar_object(self, calendar_id, object_uri, data) -> str:
        """Create or replace a calendar object, whichever applies."""
        folder = self._get_folder(calendar_id)
        if folder.get_object(uid_from_uri(object_uri, OBJECT_SUFFIX)):
            return self.update_calendar_object(calendar_id, object_uri, data)
        return self.create_calendar_object(calendar_id, object_uri, data)

    def delete_calendar_object(self, calendar_id, object_uri) -> None:
        logging.debug("delete_calendar_object(%r, %r)", calendar_id,
                      object_uri)
        uid = uid_from_uri(object_uri, OBJECT_SUFFIX)
        folder = self._get_folder(calendar_id)
        check_writeable(folder)
        try:
            folder.delete(uid)
        except NoSuchItem as exc:
            raise NotFound(f"no such object: {object_uri}") from exc
        except PermissionDenied as exc:
            raise Forbidden(str(exc)) from exc
        except StoreError as exc:
            logging.error(
                "Error deleting object %s from folder %s: %s", uid,
                folder.name, exc)
            raise StorageFailure(
                f"unable to delete calendar object {uid}") from exc

    def calendar_query(self, calendar_id, calendar_filter):
        """Find the objects that may match a calendar-query filter.

        Args:
          calendar_id: Calendar to search
          calendar_filter: CompFilter, or filter XML
        Returns: list of object URIs
        """
        logging.debug("calendar_query(%r, %r)", calendar_id, calendar_filter)
        if not isinstance(calendar_filter, CompFilter):
            calendar_filter = parse_filter(calendar_filter)
        if calendar_filter.name != "VCALENDAR":
            raise Unsupported(
                f"top-level filter on {calendar_filter.name}")
        folder = self._get_folder(calendar_id)
        query = translate_filter(calendar_filter)
        return [
            record.uid + OBJECT_SUFFIX for record in folder.select(query)]
