# FolderDAV
# Copyright (C) 2025 Jelmer Vernooĳ <jelmer@jelmer.uk>, et al.
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

"""Memory store implementation."""

import itertools
import logging
from typing import Optional

from . import (
    DEFAULT_RIGHTS,
    FOLDER_TYPE_CONTACT,
    FOLDER_TYPE_EVENT,
    FOLDER_TYPE_TASK,
    NAMESPACE_PERSONAL,
    VALID_FOLDER_TYPES,
    Folder,
    FolderStore,
    NoSuchFolder,
    NoSuchItem,
    PermissionDenied,
    StoreError,
    matches_query,
)
from .records import Attachment

# UIDVALIDITY values only need to differ between folders.
_uidvalidity_counter = itertools.count(1000)


class MemoryFolder(Folder):
    """Pure in-memory folder implementation."""

    def __init__(self, name, folder_type, *, owner=None,
                 namespace=NAMESPACE_PERSONAL, default=False,
                 rights=DEFAULT_RIGHTS, color=None, displayname=None):
        if folder_type not in VALID_FOLDER_TYPES:
            raise ValueError(f"invalid folder type {folder_type!r}")
        self.name = name
        self.type = folder_type
        self.owner = owner
        self.namespace = namespace
        self.default = default
        self.rights = rights
        self.color = color
        self.displayname = displayname
        self._metadata = {}
        self._records = {}  # uid -> record
        self._attachments = {}  # uid -> {attachment id: (name, mimetype, data)}
        self._attachment_counter = itertools.count(1)
        self._uidvalidity = next(_uidvalidity_counter)
        self._uidnext = 1
        self._modseq = 1
        # Knobs for exercising failure paths.
        self.shared_metadata_writable = True
        self.private_metadata_writable = True
        self.fail_writes = False

    def get_metadata(self, keys):
        return {k: self._metadata[k] for k in keys if k in self._metadata}

    def set_metadata(self, values):
        for key in values:
            if key.startswith("/shared/") and not self.shared_metadata_writable:
                raise PermissionDenied(self.name, "setmetadata " + key)
            if key.startswith("/private/") and not self.private_metadata_writable:
                raise PermissionDenied(self.name, "setmetadata " + key)
        self._metadata.update(values)

    def get_myrights(self):
        return self.rights

    def get_imap_data(self):
        return {
            "UIDVALIDITY": self._uidvalidity,
            "HIGHESTMODSEQ": self._modseq,
            "UIDNEXT": self._uidnext,
        }

    def select(self, query=None):
        return [
            record.copy() for uid, record in sorted(self._records.items())
            if matches_query(record.index(), query)]

    def get_object(self, uid):
        try:
            return self._records[uid].copy()
        except KeyError:
            return None

    def _check_writable(self, operation):
        if self.fail_writes:
            raise StoreError(f"{operation} failed on {self.name}")
        if "i" not in self.rights:
            raise PermissionDenied(self.name, operation)

    def _store_attachments(self, record, stored):
        attachments = []
        for attachment in record.attachments:
            if attachment.data is not None:
                attachment_id = next(self._attachment_counter)
                stored[attachment_id] = (
                    attachment.name, attachment.mimetype, attachment.data)
            elif attachment.id is not None and attachment.id in stored:
                attachment_id = attachment.id
            elif attachment.uri is not None and attachment.id is None:
                attachments.append(attachment.copy())
                continue
            else:
                logging.debug(
                    "Dropping unknown attachment %r of %s",
                    attachment, record.uid)
                continue
            attachments.append(self._attachment_entry(attachment_id, stored))
        listed = {a.id for a in attachments if a.id is not None}
        for attachment_id in sorted(stored):
            if attachment_id not in listed:
                attachments.append(
                    self._attachment_entry(attachment_id, stored))
        return attachments

    @staticmethod
    def _attachment_entry(attachment_id, stored):
        (name, mimetype, data) = stored[attachment_id]
        return Attachment(
            id=attachment_id, name=name, mimetype=mimetype, size=len(data))

    def save(self, record, previous_uid=None):
        self._check_writable("save " + record.uid)
        if previous_uid is None and record.uid in self._records:
            previous_uid = record.uid
        if previous_uid is not None and previous_uid not in self._records:
            raise NoSuchItem(previous_uid)
        record = record.copy()
        stored = dict(self._attachments.get(previous_uid, {}))
        for attachment_id in record.meta.removed_attachments:
            stored.pop(attachment_id, None)
        if hasattr(record, "attachments"):
            record.attachments = self._store_attachments(record, stored)
        record.meta.msguid = self._uidnext
        record.meta.mailbox = self.name
        record.meta.removed_attachments = []
        record.meta.size = len(repr(record).encode("utf-8")) + sum(
            len(data) for (name, mimetype, data) in stored.values())
        self._uidnext += 1
        self._modseq += 1
        if previous_uid is not None and previous_uid != record.uid:
            del self._records[previous_uid]
            del self._attachments[previous_uid]
        self._records[record.uid] = record
        self._attachments[record.uid] = stored
        return record.copy()

    def delete(self, uid):
        self._check_writable("delete " + uid)
        try:
            del self._records[uid]
        except KeyError as exc:
            raise NoSuchItem(uid) from exc
        self._attachments.pop(uid, None)
        self._modseq += 1

    def get_attachment(self, uid, attachment_id):
        try:
            return self._attachments[uid][attachment_id][2]
        except KeyError as exc:
            raise NoSuchItem(f"{uid}:{attachment_id}") from exc


class MemoryFolderStore(FolderStore):
    """Pure in-memory folder store implementation."""

    def __init__(self, user="user", freebusy_url=None):
        self.user = user
        self.freebusy_url = freebusy_url
        self._folders = {}

    def add_folder(self, name, folder_type, **kwargs) -> MemoryFolder:
        if name in self._folders:
            raise StoreError(f"folder {name} already exists")
        kwargs.setdefault("owner", self.user)
        folder = MemoryFolder(name, folder_type, **kwargs)
        self._folders[name] = folder
        return folder

    def create_defaults(self):
        """Create a default calendar, task list and address book."""
        self.add_folder("Calendar", FOLDER_TYPE_EVENT, default=True)
        self.add_folder("Tasks", FOLDER_TYPE_TASK, default=True)
        self.add_folder("Contacts", FOLDER_TYPE_CONTACT, default=True)

    def get_folders(self, folder_type):
        return [f for f in self._folders.values() if f.type == folder_type]

    def get_folder(self, name) -> Optional[MemoryFolder]:
        return self._folders.get(name)

    @staticmethod
    def _full_name(name, parent):
        return f"{parent}/{name}" if parent else name

    def folder_create(self, name, folder_type, parent=None, color=None,
                      displayname=None):
        full_name = self._full_name(name, parent)
        logging.info("Creating %s folder %s", folder_type, full_name)
        return self.add_folder(
            full_name, folder_type, color=color, displayname=displayname)

    def folder_update(self, folder, name=None, parent=None, color=None,
                      displayname=None):
        if self._folders.get(folder.name) is not folder:
            raise NoSuchFolder(folder.name)
        if name:
            new_name = self._full_name(name, parent)
            if new_name != folder.name:
                if new_name in self._folders:
                    raise StoreError(f"folder {new_name} already exists")
                logging.info("Renaming folder %s to %s", folder.name, new_name)
                del self._folders[folder.name]
                folder.name = new_name
                self._folders[new_name] = folder
        if color is not None:
            folder.color = color
        if displayname is not None:
            folder.displayname = displayname
        return folder

    def folder_delete(self, name):
        try:
            del self._folders[name]
        except KeyError as exc:
            raise NoSuchFolder(name) from exc
        logging.info("Deleted folder %s", name)

    def get_freebusy_url(self, email):
        if not self.freebusy_url:
            return None
        return self.freebusy_url % {"email": email}
