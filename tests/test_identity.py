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


"""Tests for folderdav.identity."""

import logging
import unittest

from folderdav.identity import (
    CYRUS_UID_KEY,
    PRIVATE_UID_KEY,
    SHARED_UID_KEY,
    FolderResolver,
    derive_folder_uid,
    get_folder_uid,
    sort_folders,
)
from folderdav.store import (
    FOLDER_TYPE_CONTACT,
    FOLDER_TYPE_EVENT,
    FOLDER_TYPE_TASK,
    NAMESPACE_OTHER,
    NAMESPACE_SHARED,
)
from folderdav.store.memory import MemoryFolderStore


class DeriveFolderUidTests(unittest.TestCase):

    def test_format(self):
        uid = derive_folder_uid("Calendar", "jane")
        self.assertEqual([12, 12, 8], [len(part) for part in uid.split("-")])

    def test_stable(self):
        self.assertEqual(
            derive_folder_uid("Calendar", "jane"),
            derive_folder_uid("Calendar", "jane"))
        self.assertNotEqual(
            derive_folder_uid("Calendar", "jane"),
            derive_folder_uid("Calendar", "joe"))


class GetFolderUidTests(unittest.TestCase):

    def setUp(self):
        super().setUp()
        logging.disable(logging.WARNING)
        self.addCleanup(logging.disable, logging.NOTSET)
        self.store = MemoryFolderStore("jane")
        self.folder = self.store.add_folder("Calendar", FOLDER_TYPE_EVENT)

    def test_existing_shared(self):
        self.folder.set_metadata({SHARED_UID_KEY: "abc"})
        self.assertEqual("abc", get_folder_uid(self.folder))

    def test_cyrus_uid(self):
        self.folder.set_metadata({CYRUS_UID_KEY: "cyrus-id"})
        self.assertEqual("cyrus-id", get_folder_uid(self.folder))

    def test_preference(self):
        self.folder.set_metadata({
            CYRUS_UID_KEY: "cyrus-id", PRIVATE_UID_KEY: "private-id"})
        self.assertEqual("private-id", get_folder_uid(self.folder))

    def test_derived_and_stored(self):
        uid = get_folder_uid(self.folder)
        self.assertEqual(derive_folder_uid("Calendar", "jane"), uid)
        self.assertEqual(
            {SHARED_UID_KEY: uid}, self.folder.get_metadata([SHARED_UID_KEY]))

    def test_private_fallback(self):
        self.folder.shared_metadata_writable = False
        uid = get_folder_uid(self.folder)
        self.assertEqual(
            {PRIVATE_UID_KEY: uid},
            self.folder.get_metadata([SHARED_UID_KEY, PRIVATE_UID_KEY]))

    def test_unwritable(self):
        self.folder.shared_metadata_writable = False
        self.folder.private_metadata_writable = False
        uid = get_folder_uid(self.folder)
        self.assertEqual(derive_folder_uid("Calendar", "jane"), uid)
        self.assertEqual({}, self.folder.get_metadata([PRIVATE_UID_KEY]))

    def test_survives_rename(self):
        uid = get_folder_uid(self.folder)
        self.store.folder_update(self.folder, name="Agenda")
        self.assertEqual(uid, get_folder_uid(self.folder))


class SortFoldersTests(unittest.TestCase):

    def test_order(self):
        store = MemoryFolderStore("jane")
        store.add_folder("shared", FOLDER_TYPE_EVENT,
                         namespace=NAMESPACE_SHARED)
        store.add_folder("other", FOLDER_TYPE_EVENT,
                         namespace=NAMESPACE_OTHER, owner="joe")
        store.add_folder("b", FOLDER_TYPE_EVENT)
        store.add_folder("a", FOLDER_TYPE_EVENT)
        store.add_folder("z", FOLDER_TYPE_EVENT, default=True)
        self.assertEqual(
            ["z", "a", "b", "other", "shared"],
            [f.name for f in sort_folders(store.get_folders(FOLDER_TYPE_EVENT))])


class FolderResolverTests(unittest.TestCase):

    def setUp(self):
        super().setUp()
        self.store = MemoryFolderStore("jane")
        self.calendar = self.store.add_folder("Calendar", FOLDER_TYPE_EVENT)
        self.tasks = self.store.add_folder("Tasks", FOLDER_TYPE_TASK)
        self.store.add_folder("Contacts", FOLDER_TYPE_CONTACT)
        self.resolver = FolderResolver(
            self.store, [FOLDER_TYPE_EVENT, FOLDER_TYPE_TASK])

    def test_list_all(self):
        self.assertEqual(
            ["Calendar", "Tasks"],
            [f.name for f in self.resolver.list_all()])

    def test_resolve_id(self):
        uid = self.resolver.get_id(self.tasks)
        self.assertIs(self.tasks, self.resolver.resolve(uid))

    def test_resolve_name(self):
        self.assertIs(self.calendar, self.resolver.resolve("Calendar"))

    def test_resolve_alias(self):
        self.resolver.add_alias("cal", self.resolver.get_id(self.calendar))
        self.assertIs(self.calendar, self.resolver.resolve("cal"))

    def test_resolve_unknown(self):
        self.assertIsNone(self.resolver.resolve("nope"))

    def test_resolve_wrong_type(self):
        self.assertIsNone(self.resolver.resolve("Contacts"))

    def test_resolve_new_folder(self):
        self.resolver.list_all()
        folder = self.store.add_folder("Late", FOLDER_TYPE_EVENT)
        folder.set_metadata({SHARED_UID_KEY: "late-id"})
        self.assertIs(folder, self.resolver.resolve("late-id"))

    def test_ids_stable(self):
        ids = self.resolver.list_ids()
        other = FolderResolver(
            self.store, [FOLDER_TYPE_EVENT, FOLDER_TYPE_TASK])
        self.assertEqual(ids, other.list_ids())

    def test_invalidate(self):
        self.resolver.list_all()
        self.store.folder_update(self.calendar, name="Agenda")
        self.resolver.invalidate()
        self.assertIs(self.calendar, self.resolver.resolve("Agenda"))
        self.assertIsNone(self.resolver.resolve("Calendar"))
