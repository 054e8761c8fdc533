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

"""Common functions for the CalDAV and CardDAV backends."""

import hashlib
import logging
import posixpath
import re
from typing import Optional

from .store import NAMESPACE_PERSONAL, PermissionDenied, StoreError

DAV_NAMESPACE = "DAV:"
CALDAV_NAMESPACE = "urn:ietf:params:xml:ns:caldav"
CARDDAV_NAMESPACE = "urn:ietf:params:xml:ns:carddav"
APPLE_ICAL_NAMESPACE = "http://apple.com/ns/ical/"
CALENDARSERVER_NAMESPACE = "http://calendarserver.org/ns/"

PROP_DISPLAYNAME = "{DAV:}displayname"
PROP_CALENDAR_COLOR = "{%s}calendar-color" % APPLE_ICAL_NAMESPACE
PROP_CALENDAR_DESCRIPTION = "{%s}calendar-description" % CALDAV_NAMESPACE
PROP_SUPPORTED_CALENDAR_COMPONENT_SET = (
    "{%s}supported-calendar-component-set" % CALDAV_NAMESPACE)
PROP_GETCTAG = "{%s}getctag" % CALENDARSERVER_NAMESPACE
PROP_READ_ONLY = "{%s}read-only" % CALENDARSERVER_NAMESPACE
PROP_OWNER = "{DAV:}owner"

# Separators accepted between parent and leaf folder names on rename.
FOLDER_PATH_SEPARATOR_RE = re.compile(r"\s*/\s*|\s+[»:]\s+")


class FolderDAVError(Exception):
    """Base class for errors reported to the protocol layer."""

    status = 500

    def __init__(self, message) -> None:
        super().__init__(message)
        self.message = message


class NotFound(FolderDAVError):
    """Unknown collection, object or alias."""

    status = 404


class ParseError(FolderDAVError, ValueError):
    """Malformed object body."""

    status = 400

    def __init__(self, content_type, error) -> None:
        super().__init__(f"Invalid {content_type} file: {error}")
        self.content_type = content_type
        self.error = error


class IdentityConflict(FolderDAVError):
    """The UID in an object body disagrees with the object URI."""

    status = 409

    def __init__(self, uri_uid, body_uid) -> None:
        super().__init__(
            f"UID {body_uid} doesn't match object URI for {uri_uid}")
        self.uri_uid = uri_uid
        self.body_uid = body_uid


class StorageFailure(FolderDAVError):
    """The folder store failed to carry out an operation."""

    status = 500


class Forbidden(FolderDAVError):
    """Insufficient rights for a mutating operation."""

    status = 403


class Unsupported(FolderDAVError):
    """Operation, property or filter that is not implemented."""

    status = 403


class UnsupportedComponent(Unsupported):
    """Calendar component type not accepted by a collection."""

    def __init__(self, component) -> None:
        super().__init__(f"component {component} not supported here")
        self.component = component


class PropPatchResult:
    """Outcome of a collection property update.

    Attributes:
      succeeded: keys that were applied
      failed: dictionary mapping HTTP status codes to lists of keys
    """

    def __init__(self) -> None:
        self.succeeded = []
        self.failed = {}

    def fail(self, status, key):
        self.failed.setdefault(status, []).append(key)

    @property
    def ok(self) -> bool:
        return not self.failed

    def __repr__(self) -> str:
        return "%s(succeeded=%r, failed=%r)" % (
            type(self).__name__, self.succeeded, self.failed)


class CollectionInfo:
    """Projection of a folder as a calendar or address book."""

    def __init__(self, id, uri, displayname, ctag, owner, principal_uri,
                 read_only=False, color=None, components=None):
        self.id = id
        self.uri = uri
        self.displayname = displayname
        self.ctag = ctag
        self.owner = owner
        self.principal_uri = principal_uri
        self.read_only = read_only
        self.color = color
        self.components = components

    def properties(self) -> dict:
        """Return the WebDAV properties of this collection."""
        ret = {
            PROP_DISPLAYNAME: self.displayname,
            PROP_GETCTAG: self.ctag,
            PROP_OWNER: self.owner,
            PROP_READ_ONLY: self.read_only,
        }
        if self.color is not None:
            ret[PROP_CALENDAR_COLOR] = "#" + self.color.lstrip("#")
        if self.components is not None:
            ret[PROP_SUPPORTED_CALENDAR_COMPONENT_SET] = list(self.components)
        return ret

    def __repr__(self) -> str:
        return "%s(%r, %r)" % (type(self).__name__, self.id, self.displayname)


class ObjectSummary:
    """Lightweight description of a stored object."""

    def __init__(self, id, uri, etag, size, lastmodified=None,
                 collection_id=None, data=None, content_type=None):
        self.id = id
        self.uri = uri
        self.etag = etag
        self.size = size
        self.lastmodified = lastmodified
        self.collection_id = collection_id
        self.data = data
        self.content_type = content_type

    def __repr__(self) -> str:
        return "%s(%r, etag=%r)" % (type(self).__name__, self.uri, self.etag)


def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def create_strong_etag(etag: str) -> str:
    """Create strong etags.

    Args:
      etag: basic etag
    Returns: A strong etag
    """
    return '"' + etag + '"'


def extract_strong_etag(etag: Optional[str]) -> Optional[str]:
    """Extract a strong etag from a string."""
    if etag is None:
        return etag
    return etag.strip('"')


def make_etag(uid: str, msguid) -> str:
    """Compute the ETag of one revision of an object.

    Args:
      uid: Object UID
      msguid: Message UID the store assigned to this revision
    Returns: quoted ETag
    """
    return create_strong_etag("%s-%d" % (md5_hex(uid)[:16], msguid))


def make_ctag(imap_data) -> str:
    """Compute a collection tag from folder state markers."""
    return "%d-%d-%d" % (
        imap_data["UIDVALIDITY"], imap_data["HIGHESTMODSEQ"],
        imap_data["UIDNEXT"])


def unfold_lines(text: str):
    """Split text/calendar or text/vcard data into unfolded content lines.

    Empty lines are dropped.
    """
    lines = []
    for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if line[:1] in (" ", "\t") and lines:
            lines[-1] += line[1:]
        elif line.strip():
            lines.append(line)
    return lines


def is_writeable(folder) -> bool:
    return "i" in folder.get_myrights() or folder.namespace == NAMESPACE_PERSONAL


def owner_principal(folder, principal_uri: str) -> str:
    """Return the principal owning a folder.

    Personal folders belong to the requesting principal, other folders to
    their actual owner.
    """
    if folder.namespace == NAMESPACE_PERSONAL or not folder.owner:
        return principal_uri
    return "principals/" + folder.owner


def check_writeable(folder):
    if not is_writeable(folder):
        raise Forbidden(f"insufficient rights on {folder.name}")


def uid_from_uri(object_uri: str, suffix: str) -> str:
    """Return the object UID a resource URI refers to."""
    name = posixpath.basename(object_uri)
    if name.endswith(suffix):
        name = name[:-len(suffix)]
    return name


def split_folder_path(value: str):
    """Split a display name into parent path and leaf name."""
    parts = FOLDER_PATH_SEPARATOR_RE.split(value.strip())
    name = parts.pop()
    return name, "/".join(parts)


def normalize_color(value: str) -> str:
    return value.strip().strip("#")[:6]


def update_folder_properties(store, folder, mutations) -> PropPatchResult:
    """Apply collection property changes to a folder.

    Display names rename personal folders and are stored as a label on
    other folders; colors are stored as six hex digits. All other keys are
    rejected. Updates are all-or-nothing: if any key is rejected nothing is
    written and the remaining keys fail with 424.

    :raise StorageFailure: if the store fails to apply the update
    """
    result = PropPatchResult()
    updates = {}
    for key, value in mutations.items():
        if key == PROP_DISPLAYNAME and value:
            if folder.namespace == NAMESPACE_PERSONAL:
                name, parent = split_folder_path(value)
                updates["name"] = name
                updates["parent"] = parent or folder.name.rpartition("/")[0]
            else:
                updates["displayname"] = value
        elif key == PROP_CALENDAR_COLOR and value:
            updates["color"] = normalize_color(value)
        else:
            result.fail(403, key)
    if not result.ok:
        for key in mutations:
            if key not in result.failed[403]:
                result.fail(424, key)
        return result
    if updates:
        logging.debug("Updating folder %s: %r", folder.name, updates)
        try:
            store.folder_update(folder, **updates)
        except PermissionDenied as exc:
            raise Forbidden(str(exc)) from exc
        except StoreError as exc:
            logging.error(
                "Error updating properties for folder %s: %s", folder.name,
                exc)
            raise StorageFailure(
                f"unable to update folder {folder.name}") from exc
    result.succeeded.extend(mutations)
    return result


def create_folder(store, folder_type, properties, collection_id, resolver):
    """Create a folder for a new collection.

    The folder is named after its display name, or after the requested
    collection id if that is short enough to be one. The id is stored in the
    folder metadata so the new collection is found under the requested URI.

    :raise StorageFailure: if the folder can not be created
    """
    name = parent = None
    color = None
    for key, value in properties.items():
        if key == PROP_DISPLAYNAME and value:
            parts = value.split("/")
            name = parts.pop()
            parent = "/".join(parts) or None
        elif key == PROP_CALENDAR_COLOR and value:
            color = normalize_color(value)
    if not name:
        name = collection_id if len(collection_id) < 16 else "Untitled"
    try:
        folder = store.folder_create(
            name, folder_type, parent=parent, color=color)
    except PermissionDenied as exc:
        raise Forbidden(str(exc)) from exc
    except StoreError as exc:
        logging.error(
            "Error creating a new %s folder %r: %s", folder_type, name, exc)
        raise StorageFailure(f"unable to create folder {name}") from exc
    try:
        resolver.set_folder_uid(folder, collection_id)
    except StoreError as exc:
        logging.error(
            "Unable to store id %s for folder %s: %s", collection_id,
            folder.name, exc)
        raise StorageFailure(
            f"unable to store id for folder {folder.name}") from exc
    resolver.invalidate()
    return folder
