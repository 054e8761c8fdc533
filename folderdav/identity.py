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

"""Stable collection identifiers for folders.

Folder names change when users rename folders, so collections are
addressed by an opaque id kept in the folder metadata instead. Folders
that don't have one yet get an id derived from their name and owner, which
is then written back so it survives later renames.
"""

import logging
from typing import Optional

from .davcommon import md5_hex
from .store import (
    NAMESPACE_OTHER,
    NAMESPACE_PERSONAL,
    NAMESPACE_SHARED,
    PermissionDenied,
    StoreError,
)

SHARED_UID_KEY = "/shared/vendor/folderdav/uniqueid"
PRIVATE_UID_KEY = "/private/vendor/folderdav/uniqueid"
CYRUS_UID_KEY = "/shared/vendor/cmu/cyrus-imapd/uniqueid"

# In order of preference.
UID_METADATA_KEYS = (SHARED_UID_KEY, PRIVATE_UID_KEY, CYRUS_UID_KEY)

_NAMESPACE_ORDER = {
    NAMESPACE_PERSONAL: 0,
    NAMESPACE_OTHER: 1,
    NAMESPACE_SHARED: 2,
}


def derive_folder_uid(name: str, owner: Optional[str]) -> str:
    """Derive a folder id from its name and owner.

    Returns: md5 hex digest split into dash-separated chunks of 12 digits
    """
    digest = md5_hex(name + (owner or ""))
    return "-".join(digest[i:i + 12] for i in range(0, len(digest), 12))


def sort_folders(folders):
    """Sort folders: personal ones first, defaults first, then by name."""
    return sorted(
        folders,
        key=lambda f: (
            _NAMESPACE_ORDER.get(f.namespace, len(_NAMESPACE_ORDER)),
            not f.default,
            f.name.lower(),
            f.name,
        ))


def set_folder_uid(folder, uid: str) -> None:
    """Store a folder id in the folder metadata.

    The shared annotation is preferred; if the store refuses that, the id
    is stored privately.

    :raise StoreError: if neither annotation could be written
    """
    try:
        folder.set_metadata({SHARED_UID_KEY: uid})
    except PermissionDenied:
        logging.debug(
            "Unable to set shared id on %s, using private annotation",
            folder.name)
        folder.set_metadata({PRIVATE_UID_KEY: uid})


def get_folder_uid(folder) -> str:
    """Return the collection id of a folder, assigning one if necessary."""
    metadata = folder.get_metadata(UID_METADATA_KEYS)
    for key in UID_METADATA_KEYS:
        uid = metadata.get(key)
        if uid:
            return uid
    uid = derive_folder_uid(folder.name, folder.owner)
    try:
        set_folder_uid(folder, uid)
    except StoreError as exc:
        # The derived id stays the same as long as the folder isn't renamed.
        logging.warning(
            "Unable to store id %s for folder %s: %s", uid, folder.name, exc)
    return uid


class FolderResolver:
    """Per-request mapping between collection ids and folders.

    Args:
      store: FolderStore to look folders up in
      folder_types: Folder types this resolver covers
    """

    def __init__(self, store, folder_types) -> None:
        self.store = store
        self.folder_types = tuple(folder_types)
        self.aliases = {}
        self._folders = None

    def list_all(self):
        """Return all folders, in a stable order.

        Builds the id and name alias tables as a side effect.
        """
        if self._folders is None:
            folders = []
            for folder_type in self.folder_types:
                folders.extend(self.store.get_folders(folder_type))
            self._folders = {}
            for folder in sort_folders(folders):
                folder_id = get_folder_uid(folder)
                self._folders[folder_id] = folder
                self.aliases[folder.name] = folder_id
        return list(self._folders.values())

    def list_ids(self):
        self.list_all()
        return list(self._folders)

    def add_alias(self, alias: str, collection_id: str) -> None:
        self.aliases[alias] = collection_id

    def resolve(self, collection_id: str):
        """Find the folder for a collection id or alias.

        Returns: folder, or None if there is no such collection
        """
        self.list_all()
        collection_id = self.aliases.get(collection_id, collection_id)
        try:
            return self._folders[collection_id]
        except KeyError:
            pass
        # Folders created since the listing aren't in the table yet.
        for folder_type in self.folder_types:
            for folder in self.store.get_folders(folder_type):
                if get_folder_uid(folder) == collection_id:
                    self._folders[collection_id] = folder
                    return folder
        return None

    def get_id(self, folder) -> str:
        return get_folder_uid(folder)

    def set_folder_uid(self, folder, uid: str) -> None:
        set_folder_uid(folder, uid)

    def invalidate(self) -> None:
        """Forget the folder listing, e.g. after a rename."""
        self._folders = None
        self.aliases = {}
