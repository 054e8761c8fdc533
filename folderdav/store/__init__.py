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

"""Folder stores.

A folder store keeps calendars, task lists and address books the way a
mail server keeps mailboxes: as a hierarchy of typed folders, each with
metadata annotations, an access rights string and a set of structured
records. Every saved revision of a record gets a new message UID, which is
what ETags and CTags are derived from.
"""

import logging
import mimetypes
import operator
from typing import Optional

FOLDER_TYPE_EVENT = "event"
FOLDER_TYPE_TASK = "task"
FOLDER_TYPE_CONTACT = "contact"
VALID_FOLDER_TYPES = (
    FOLDER_TYPE_EVENT,
    FOLDER_TYPE_TASK,
    FOLDER_TYPE_CONTACT,
)

NAMESPACE_PERSONAL = "personal"
NAMESPACE_OTHER = "other"
NAMESPACE_SHARED = "shared"

# Rights letters follow RFC 4314; "i" allows inserting messages.
DEFAULT_RIGHTS = "lrswikxtecda"
READ_ONLY_RIGHTS = "lrs"

MIMETYPES = mimetypes.MimeTypes()
MIMETYPES.add_type("text/calendar", ".ics")  # type: ignore
MIMETYPES.add_type("text/vcard", ".vcf")  # type: ignore

DEFAULT_MIME_TYPE = "application/octet-stream"


class StoreError(Exception):
    """A folder store operation failed."""


class PermissionDenied(StoreError):
    """The store refused an operation because of missing rights."""

    def __init__(self, name, operation) -> None:
        super().__init__(f"{operation} denied on {name}")
        self.name = name
        self.operation = operation


class NoSuchFolder(StoreError):
    """No folder with this name exists."""

    def __init__(self, name) -> None:
        super().__init__(f"no such folder: {name}")
        self.name = name


class NoSuchItem(StoreError):
    """No item with this UID exists in the folder."""

    def __init__(self, uid) -> None:
        super().__init__(f"no such item: {uid}")
        self.uid = uid


_OPERATORS = {
    "=": operator.eq,
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def matches_query(index, query) -> bool:
    """Check whether an index dictionary satisfies a query.

    Args:
      index: Dictionary as returned by a record's ``index()`` method
      query: Iterable of (field, operator, value) tuples; all must hold
    Returns: boolean
    """
    for field, op, value in query or []:
        try:
            actual = index[field]
        except KeyError:
            return False
        if op in ("=", "==") and isinstance(value, (list, tuple, set, frozenset)):
            if actual not in value:
                return False
            continue
        try:
            compare = _OPERATORS[op]
        except KeyError as exc:
            raise ValueError(f"unsupported query operator {op!r}") from exc
        if actual is None:
            return False
        if isinstance(actual, list):
            if not any(compare(v, value) for v in actual):
                return False
            continue
        try:
            if not compare(actual, value):
                return False
        except TypeError:
            # Values that can't be compared are kept; callers filter again.
            logging.debug(
                "Unable to compare %r with %r for %s; keeping record",
                actual, value, field)
    return True


class Folder:
    """A typed folder in a folder store."""

    name: str
    type: str
    owner: Optional[str]
    namespace: str
    default: bool
    color: Optional[str]
    displayname: Optional[str]

    def get_name(self) -> str:
        """Return a human readable name for this folder."""
        if self.displayname:
            return self.displayname
        return self.name.split("/")[-1]

    def get_metadata(self, keys) -> dict:
        """Return the metadata annotations present for the given keys."""
        raise NotImplementedError(self.get_metadata)

    def set_metadata(self, values) -> None:
        """Set metadata annotations.

        :raise PermissionDenied: if the annotations can not be written
        """
        raise NotImplementedError(self.set_metadata)

    def get_myrights(self) -> str:
        """Return the rights string of the current user on this folder."""
        raise NotImplementedError(self.get_myrights)

    def get_imap_data(self) -> dict:
        """Return folder state markers.

        Returns: dictionary with UIDVALIDITY, HIGHESTMODSEQ and UIDNEXT
        """
        raise NotImplementedError(self.get_imap_data)

    def select(self, query=None) -> list:
        """Return all records matching a query.

        Args:
          query: list of (field, operator, value) tuples, or None for all
        """
        raise NotImplementedError(self.select)

    def get_object(self, uid):
        """Return the record with the given UID, or None."""
        raise NotImplementedError(self.get_object)

    def save(self, record, previous_uid=None):
        """Store a record, creating a new revision.

        Args:
          record: Record to store
          previous_uid: UID of the revision being replaced, if any
        Returns: the stored record, with its metadata filled in
        :raise StoreError: if the record could not be stored
        """
        raise NotImplementedError(self.save)

    def delete(self, uid) -> None:
        """Delete a record.

        :raise NoSuchItem: if there is no record with this UID
        """
        raise NotImplementedError(self.delete)

    def get_attachment(self, uid, attachment_id) -> bytes:
        """Return the payload of an attachment.

        :raise NoSuchItem: if the record or attachment does not exist
        """
        raise NotImplementedError(self.get_attachment)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.type!r})"


class FolderStore:
    """A collection of typed folders."""

    def get_folders(self, folder_type) -> list:
        """List all folders of a type the current user can see."""
        raise NotImplementedError(self.get_folders)

    def get_folder(self, name) -> Optional[Folder]:
        """Look up a folder by its full name."""
        raise NotImplementedError(self.get_folder)

    def folder_create(
            self, name, folder_type, parent=None, color=None,
            displayname=None) -> Folder:
        """Create a new folder.

        :raise StoreError: if the folder could not be created
        """
        raise NotImplementedError(self.folder_create)

    def folder_update(
            self, folder, name=None, parent=None, color=None,
            displayname=None) -> Folder:
        """Rename a folder or change its properties.

        :raise StoreError: if the folder could not be updated
        """
        raise NotImplementedError(self.folder_update)

    def folder_delete(self, name) -> None:
        """Delete a folder and everything in it.

        :raise NoSuchFolder: if the folder does not exist
        """
        raise NotImplementedError(self.folder_delete)

    def get_freebusy_url(self, email) -> Optional[str]:
        """Return the URL of a published free/busy feed for an address."""
        return None


def open_store(location: str, **kwargs) -> FolderStore:
    """Open a folder store.

    Args:
      location: Store location, e.g. "memory:"
    Returns: A FolderStore
    """
    scheme = location.split(":", 1)[0]
    if scheme == "memory":
        from .memory import MemoryFolderStore
        return MemoryFolderStore(**kwargs)
    raise ValueError(f"unsupported store location {location!r}")
