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

"""CardDAV backend on top of a folder store.

https://tools.ietf.org/html/rfc6352

Besides one address book per contact folder, there is an aggregate
address book (``__all__``) that spans all of them. It has no storage of
its own: objects are looked up by UID in each of the real address books.
"""

import logging
from typing import Optional
from xml.etree.ElementTree import ParseError as XMLParseError

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring as xmlparse

from . import vcard
from .davcommon import (
    CARDDAV_NAMESPACE,
    CollectionInfo,
    Forbidden,
    IdentityConflict,
    NotFound,
    ObjectSummary,
    ParseError,
    PropPatchResult,
    StorageFailure,
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
    FOLDER_TYPE_CONTACT,
    NoSuchFolder,
    NoSuchItem,
    PermissionDenied,
    StoreError,
)
from .store.records import KIND_CONTACT, KIND_DISTRIBUTION_LIST
from .useragent import ClientKind

OBJECT_SUFFIX = ".vcf"

AGGREGATE_ID = "__all__"
AGGREGATE_DISPLAYNAME = "All"


class RealCollection:
    """An address book backed by a single contact folder."""

    def __init__(self, id, folder):
        self.id = id
        self.folder = folder

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.id!r})"


class AggregateCollection:
    """The address book spanning all contact folders."""

    id = AGGREGATE_ID

    def __init__(self, members):
        self.members = members

    @property
    def member_ids(self):
        return [member.id for member in self.members]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.member_ids!r})"


class ContactsBackend:
    """Address books of a folder store.

    Args:
      store: FolderStore to operate on
      context: RequestContext of the current request
    """

    folder_types = (FOLDER_TYPE_CONTACT,)

    def __init__(self, store, context) -> None:
        self.store = store
        self.context = context

    @property
    def resolver(self):
        return self.context.get_resolver(self.store, self.folder_types)

    def _members(self):
        return [
            RealCollection(self.resolver.get_id(folder), folder)
            for folder in self.resolver.list_all()]

    def _lookup(self, address_book_id):
        if address_book_id == AGGREGATE_ID:
            return AggregateCollection(self._members())
        folder = self.resolver.resolve(address_book_id)
        if folder is None:
            raise NotFound(f"no such address book: {address_book_id}")
        return RealCollection(self.resolver.get_id(folder), folder)

    def _find(self, collection, uid):
        """Find a contact by UID.

        Returns: tuple with folder and record, or None
        """
        if isinstance(collection, AggregateCollection):
            members = collection.members
        else:
            members = [collection]
        for member in members:
            record = member.folder.get_object(uid)
            if record is not None:
                return member.folder, record
        return None

    def _create_target(self, collection):
        """Pick the folder new contacts are stored in."""
        if isinstance(collection, RealCollection):
            return collection.folder
        writeable = [
            member.folder for member in collection.members
            if is_writeable(member.folder)]
        for folder in writeable:
            if folder.default:
                return folder
        if writeable:
            return writeable[0]
        raise Forbidden("no writeable address book")

    def _address_book_info(self, collection) -> CollectionInfo:
        principal_uri = self.context.principal_uri
        if isinstance(collection, AggregateCollection):
            return CollectionInfo(
                id=AGGREGATE_ID,
                uri=AGGREGATE_ID,
                displayname=AGGREGATE_DISPLAYNAME,
                ctag=":".join(
                    make_ctag(member.folder.get_imap_data())
                    for member in collection.members),
                owner=principal_uri,
                principal_uri=principal_uri,
                read_only=not any(
                    is_writeable(member.folder)
                    for member in collection.members))
        folder = collection.folder
        return CollectionInfo(
            id=collection.id,
            uri=collection.id,
            displayname=folder.get_name(),
            ctag=make_ctag(folder.get_imap_data()),
            owner=owner_principal(folder, principal_uri),
            principal_uri=principal_uri,
            read_only=not is_writeable(folder))

    def get_address_books_for_user(self, principal_uri=None):
        """List the address books visible to the current user.

        Apple's address book can only handle a single address book; it
        gets to see just the aggregate when there is more than one.
        """
        logging.debug("get_address_books_for_user(%r) for %s",
                      principal_uri, self.context.client)
        members = self._members()
        if self.context.client is ClientKind.APPLE and len(members) > 1:
            return [self._address_book_info(AggregateCollection(members))]
        return [self._address_book_info(member) for member in members]

    def get_address_book_by_name(self, name) -> Optional[CollectionInfo]:
        """Look up an address book by id or folder name.

        Returns: CollectionInfo, or None if there is no such address book
        """
        logging.debug("get_address_book_by_name(%r)", name)
        try:
            return self._address_book_info(self._lookup(name))
        except NotFound:
            return None

    def create_address_book(self, principal_uri, url, properties) -> str:
        logging.debug("create_address_book(%r, %r, %r)", principal_uri, url,
                      properties)
        if url == AGGREGATE_ID:
            raise Forbidden(f"{AGGREGATE_ID} is reserved")
        create_folder(
            self.store, FOLDER_TYPE_CONTACT, properties, url, self.resolver)
        return url

    def update_address_book(self, address_book_id, mutations):
        """Change address book properties.

        The aggregate address book has no properties that can be changed.

        Returns: PropPatchResult
        """
        logging.debug("update_address_book(%r, %r)", address_book_id,
                      mutations)
        collection = self._lookup(address_book_id)
        if isinstance(collection, AggregateCollection):
            result = PropPatchResult()
            for key in mutations:
                result.fail(403, key)
            return result
        result = update_folder_properties(
            self.store, collection.folder, mutations)
        if result.ok:
            self.resolver.invalidate()
        return result

    def delete_address_book(self, address_book_id) -> None:
        logging.debug("delete_address_book(%r)", address_book_id)
        collection = self._lookup(address_book_id)
        if isinstance(collection, AggregateCollection):
            raise Forbidden(f"{AGGREGATE_ID} can not be deleted")
        folder = collection.folder
        check_writeable(folder)
        try:
            self.store.folder_delete(folder.name)
        except NoSuchFolder as exc:
            raise NotFound(f"no such address book: {address_book_id}") from exc
        except PermissionDenied as exc:
            raise Forbidden(str(exc)) from exc
        except StoreError as exc:
            logging.error(
                "Error deleting address book folder %s: %s", folder.name, exc)
            raise StorageFailure(
                f"unable to delete address book {address_book_id}") from exc
        self.resolver.invalidate()

    def _type_query(self):
        # Thunderbird can't render distribution lists.
        if self.context.client.is_mozilla:
            return [("type", "=", KIND_CONTACT)]
        return [("type", "=", [KIND_CONTACT, KIND_DISTRIBUTION_LIST])]

    def _summary(self, collection_id, record, data=None) -> ObjectSummary:
        return ObjectSummary(
            id=record.uid,
            uri=record.uid + OBJECT_SUFFIX,
            etag=make_etag(record.uid, record.meta.msguid),
            size=record.meta.size,
            lastmodified=record.changed,
            collection_id=collection_id,
            data=data,
            content_type=vcard.CONTENT_TYPE if data is not None else None)

    def _select(self, collection, query):
        if isinstance(collection, AggregateCollection):
            members = collection.members
        else:
            members = [collection]
        for member in members:
            for record in member.folder.select(query):
                yield member, record

    def get_cards(self, address_book_id):
        """List the contacts in an address book without serializing them."""
        logging.debug("get_cards(%r)", address_book_id)
        collection = self._lookup(address_book_id)
        return [
            self._summary(member.id, record)
            for (member, record) in self._select(
                collection, self._type_query())]

    def get_card(self, address_book_id, card_uri) -> ObjectSummary:
        """Retrieve a single contact.

        :raise NotFound: if there is no such contact
        """
        logging.debug("get_card(%r, %r)", address_book_id, card_uri)
        uid = uid_from_uri(card_uri, OBJECT_SUFFIX)
        found = self._find(self._lookup(address_book_id), uid)
        if found is None:
            raise NotFound(f"no such contact: {card_uri}")
        (folder, record) = found
        data = vcard.encode_vcard(record, self.context.client)
        return self._summary(address_book_id, record, data)

    def _save(self, folder, record, previous_uid=None):
        try:
            return folder.save(record, previous_uid)
        except PermissionDenied as exc:
            self.context.coordinator.pop_redirect()
            raise Forbidden(str(exc)) from exc
        except StoreError as exc:
            self.context.coordinator.pop_redirect()
            logging.error(
                "Error saving contact %s to folder %s: %s", record.uid,
                folder.name, exc)
            raise StorageFailure(
                f"unable to save contact {record.uid}") from exc

    def _decode(self, data, uid):
        return vcard.decode_vcard(data, uid, self.context.coordinator)

    def create_card(self, address_book_id, card_uri, data) -> str:
        """Store a new contact.

        New contacts put into the aggregate end up in the default address
        book, or the first writeable one if there is no default.

        Returns: ETag of the new contact
        """
        logging.debug("create_card(%r, %r)", address_book_id, card_uri)
        uid = uid_from_uri(card_uri, OBJECT_SUFFIX)
        collection = self._lookup(address_book_id)
        record = self._decode(data, uid)
        if record.uid != uid:
            self.context.coordinator.set_redirect(record.uid + OBJECT_SUFFIX)
        if self._find(collection, record.uid) is not None:
            return self.update_card(
                address_book_id, record.uid + OBJECT_SUFFIX, data)
        folder = self._create_target(collection)
        check_writeable(folder)
        saved = self._save(folder, record)
        return make_etag(saved.uid, saved.meta.msguid)

    def update_card(self, address_book_id, card_uri, data) -> str:
        """Replace an existing contact.

        In the aggregate, the contact is updated in the first address book
        that holds its UID.

        Returns: ETag of the new revision
        :raise IdentityConflict: if the body has a different UID
        """
        logging.debug("update_card(%r, %r)", address_book_id, card_uri)
        uid = uid_from_uri(card_uri, OBJECT_SUFFIX)
        collection = self._lookup(address_book_id)
        record = self._decode(data, uid)
        if record.uid != uid:
            logging.error(
                "Error updating contact: UID %s doesn't match object URI %s",
                record.uid, card_uri)
            self.context.coordinator.pop_redirect()
            raise IdentityConflict(uid, record.uid)
        found = self._find(collection, uid)
        if found is None:
            raise NotFound(f"no such contact: {card_uri}")
        (folder, old) = found
        check_writeable(folder)
        record.meta = record.meta.merged(old.meta)
        saved = self._save(folder, record, previous_uid=uid)
        return make_etag(saved.uid, saved.meta.msguid)

    def put_card(self, address_book_id, card_uri, data) -> str:
        """Create or replace a contact, whichever applies."""
        uid = uid_from_uri(card_uri, OBJECT_SUFFIX)
        if self._find(self._lookup(address_book_id), uid) is not None:
            return self.update_card(address_book_id, card_uri, data)
        return self.create_card(address_book_id, card_uri, data)

    def delete_card(self, address_book_id, card_uri) -> None:
        logging.debug("delete_card(%r, %r)", address_book_id, card_uri)
        uid = uid_from_uri(card_uri, OBJECT_SUFFIX)
        found = self._find(self._lookup(address_book_id), uid)
        if found is None:
            raise NotFound(f"no such contact: {card_uri}")
        (folder, record) = found
        check_writeable(folder)
        try:
            folder.delete(uid)
        except NoSuchItem as exc:
            raise NotFound(f"no such contact: {card_uri}") from exc
        except PermissionDenied as exc:
            raise Forbidden(str(exc)) from exc
        except StoreError as exc:
            logging.error(
                "Error deleting contact %s from folder %s: %s", uid,
                folder.name, exc)
            raise StorageFailure(f"unable to delete contact {uid}") from exc

    def address_book_query(self, address_book_id, query_filter=None):
        """Find the contacts that may match an addressbook-query filter.

        Property filters are not evaluated here; the result is every
        contact the client can handle.

        Args:
          address_book_id: Address book to search
          query_filter: CARDDAV:filter XML, or None
        Returns: list of contact URIs
        """
        logging.debug("address_book_query(%r)", address_book_id)
        if query_filter is not None:
            if isinstance(query_filter, (bytes, str)):
                try:
                    query_filter = xmlparse(query_filter)
                except (XMLParseError, DefusedXmlException) as exc:
                    raise ParseError("application/xml", str(exc)) from exc
            if query_filter.tag != "{%s}filter" % CARDDAV_NAMESPACE:
                raise ParseError(
                    "application/xml",
                    f"unexpected root {query_filter.tag!r}")
            if len(query_filter):
                logging.debug(
                    "Not translating %d property filters",
                    len(query_filter))
        collection = self._lookup(address_book_id)
        return [
            record.uid + OBJECT_SUFFIX
            for (member, record) in self._select(
                collection, self._type_query())]
