# FolderDAV
# Copyright (C) 2017 Jelmer Vernooĳ <jelmer@jelmer.uk>, et al.
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

"""VCard handling."""

import base64
import binascii
import logging
from datetime import date, datetime, timezone
from email.utils import formataddr, parseaddr
from typing import Optional
from urllib.parse import quote, unquote

import vobject
from dateutil import parser as date_parser
from vobject.vcard import Address, Name

from . import __version__
from .davcommon import ParseError, unfold_lines
from .store.records import (
    KIND_CONTACT,
    KIND_DISTRIBUTION_LIST,
    ContactRecord,
    Email,
    Member,
    Phone,
    PostalAddress,
    Website,
    as_utc,
)
from .useragent import ClientKind

CONTENT_TYPE = "text/vcard"

PRODID = "-//FolderDAV//FolderDAV %s//vobject//EN" % (
    ".".join(map(str, __version__)))

PHONE_TYPES = {
    "main": "voice",
    "homefax": "fax",
    "workfax": "fax",
    "mobile": "cell",
    "other": "textphone",
}
PHONE_TYPES_REVERSE = {
    "voice": "main",
    "fax": "workfax",
    "cell": "mobile",
    "textphone": "other",
}

IM_PROTOCOLS = {
    "jabber": "xmpp",
}
IM_PROTOCOLS_REVERSE = {v: k for (k, v) in IM_PROTOCOLS.items()}

# Services that have their own X- property.
IM_PROPERTIES = ("jabber", "icq", "msn", "aim", "yahoo", "skype")

APPLE_GROUP_PREFIX = "X-ADDRESSBOOKSERVER-"
APPLE_ANNIVERSARY_LABEL = "_$!<Anniversary>!$_"
APPLE_ITEM_GROUP = "folderdav"

# TYPE values that carry no information about the kind of channel.
_IGNORED_TYPES = ("internet", "pref")


def parse_vcard(data):
    """Parse vCard data.

    Lines that can not be parsed are dropped.

    Args:
      data: bytes or str
    Returns: vobject Component
    :raise ParseError: if the data is not a vCard
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8", "surrogateescape")
    lines = []
    for line in unfold_lines(data):
        try:
            vobject.base.parseLine(line)
        except vobject.base.ParseError as exc:
            logging.debug("Ignoring invalid vCard line %r: %s", line, exc)
            continue
        lines.append(line)
    try:
        card = vobject.readOne(
            "\r\n".join(lines) + "\r\n", ignoreUnreadable=True)
    except (vobject.base.ParseError, ValueError) as exc:
        raise ParseError(CONTENT_TYPE, str(exc)) from exc
    except StopIteration as exc:
        raise ParseError(CONTENT_TYPE, "no vCard found") from exc
    if card.name.upper() != "VCARD":
        raise ParseError(CONTENT_TYPE, f"expected VCARD, got {card.name}")
    return card


def get_vcard_uid(card) -> str:
    """Return the UID of a parsed vCard.

    :raise ParseError: if the UID or formatted name is missing
    """
    uid = fn = None
    for line in card.getChildren():
        if line.name == "UID":
            uid = _text_value(line)
        elif line.name == "FN":
            fn = _text_value(line)
    if not uid:
        raise ParseError(CONTENT_TYPE, "missing UID")
    if not fn:
        raise ParseError(CONTENT_TYPE, "missing FN")
    return uid


def _text_value(line) -> str:
    value = line.value
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)


def _list_value(line):
    value = line.value
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v)]
    return [v for v in str(value).split(",") if v]


def _parts(value, count):
    if isinstance(value, str):
        parts = value.split(";")
    else:
        parts = list(value)
    parts = [" ".join(p) if isinstance(p, (list, tuple)) else p
             for p in parts]
    parts.extend([""] * (count - len(parts)))
    return [p or None for p in parts[:count]]


def _name_parts(line):
    value = line.value
    if isinstance(value, Name):
        value = [value.family, value.given, value.additional, value.prefix,
                 value.suffix]
    return _parts(value, 5)


def _address_parts(line):
    value = line.value
    if isinstance(value, Address):
        value = [value.box, value.extended, value.street, value.city,
                 value.region, value.code, value.country]
    return _parts(value, 7)


def _types(line):
    types = []
    for value in line.params.get("TYPE", []):
        types.extend(t.strip().lower() for t in value.split(","))
    types.extend(p.lower() for p in getattr(line, "singletonparams", []))
    return [t for t in types if t and t not in _IGNORED_TYPES]


def _parse_date(value):
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError):
        logging.debug("Ignoring invalid date %r", value)
        return None
    return parsed.date()


def _parse_timestamp(value):
    try:
        return date_parser.parse(value)
    except (ValueError, OverflowError):
        logging.debug("Ignoring invalid timestamp %r", value)
        return None


def _photo(line) -> Optional[bytes]:
    """Return the photo data if it is base64-encoded inline data."""
    if isinstance(line.value, bytes):
        return line.value
    encoding = line.params.get("ENCODING", [""])[0].lower()
    singletons = [p.lower() for p in getattr(line, "singletonparams", [])]
    if encoding not in ("b", "base64") and "base64" not in singletons:
        return None
    try:
        return base64.b64decode(line.value)
    except binascii.Error:
        logging.debug("Ignoring undecodable photo")
        return None


def decode_member(value: str) -> Optional[Member]:
    """Parse a group MEMBER value."""
    if value.startswith("urn:uuid:"):
        return Member(uid=value[len("urn:uuid:"):])
    if value.startswith("mailto:"):
        (name, address) = parseaddr(unquote(value[len("mailto:"):]))
        if address:
            return Member(email=address, name=name or None)
    logging.debug("Ignoring unsupported group member %r", value)
    return None


def encode_member(member: Member) -> str:
    if member.uid is not None:
        return "urn:uuid:" + member.uid
    if member.name:
        address = formataddr((member.name, member.email))
    else:
        address = member.email
    return "mailto:" + quote(address, safe="@")


def _anniversary_groups(card):
    groups = set()
    for line in card.getChildren():
        if (line.name == "X-ABLABEL"
                and _text_value(line).strip("_$!<>").lower() == "anniversary"):
            groups.add(line.group)
    return groups


def decode_vcard(data, expected_uid: Optional[str] = None,
                 coordinator=None) -> ContactRecord:
    """Convert vCard data to a contact record.

    Args:
      data: bytes, str or parsed vobject Component
      expected_uid: UID the card is expected to have; if the coordinator
        has already parsed this body, that result is reused
      coordinator: ValidationCoordinator for the current request
    Returns: ContactRecord
    :raise ParseError: if the data is not a valid vCard
    """
    if isinstance(data, (bytes, str)):
        card = None
        if coordinator is not None and expected_uid is not None:
            card = coordinator.get_parsed(CONTENT_TYPE, expected_uid, data)
        if card is None:
            card = parse_vcard(data)
    else:
        card = data
    record = ContactRecord(kind=KIND_CONTACT, uid=get_vcard_uid(card))
    anniversary_groups = _anniversary_groups(card)
    for line in card.getChildren():
        if not isinstance(line, vobject.base.ContentLine):
            continue
        name = line.name
        if name in ("VERSION", "PRODID", "UID"):
            continue
        elif name == "FN":
            record.name = _text_value(line)
        elif name == "N":
            (record.surname, record.firstname, record.middlename,
             record.prefix, record.suffix) = _name_parts(line)
        elif name == "NICKNAME":
            record.nickname = _text_value(line)
        elif name == "TITLE":
            record.jobtitle = _text_value(line)
        elif name == "NOTE":
            record.notes = _text_value(line)
        elif name == "ORG":
            (record.organization, record.department) = _parts(
                line.value, 2)
        elif name in ("CATEGORIES", "CATEGORY"):
            record.categories = _list_value(line)
        elif name == "EMAIL":
            types = _types(line)
            record.email.append(Email(
                address=_text_value(line),
                type=types[0] if types else "other"))
        elif name == "URL":
            types = _types(line)
            record.website.append(Website(
                url=_text_value(line), type=types[0] if types else None))
        elif name == "TEL":
            types = _types(line)
            phone_type = types[0] if types else None
            record.phone.append(Phone(
                number=_text_value(line),
                type=PHONE_TYPES_REVERSE.get(phone_type, phone_type)))
        elif name == "ADR":
            types = _types(line)
            (_, _, street, locality, region, code, country) = (
                _address_parts(line))
            record.address.append(PostalAddress(
                type=types[0] if types else None, street=street,
                locality=locality, region=region, code=code,
                country=country))
        elif name == "BDAY":
            record.birthday = _parse_date(_text_value(line))
        elif name in ("ANNIVERSARY", "X-ANNIVERSARY"):
            record.anniversary = _parse_date(_text_value(line))
        elif name == "X-ABDATE" and line.group in anniversary_groups:
            record.anniversary = _parse_date(_text_value(line))
        elif name == "X-ABLABEL" and line.group in anniversary_groups:
            continue
        elif name in ("SEX", "X-GENDER", "GENDER"):
            record.gender = _text_value(line)
        elif name == "X-PROFESSION":
            record.profession = _text_value(line)
        elif name == "X-SPOUSE":
            record.spouse = _text_value(line)
        elif name in ("X-MANAGER", "X-ASSISTANT", "X-CHILDREN"):
            setattr(record, name[2:].lower(), _list_value(line))
        elif name[2:].lower() in IM_PROPERTIES and name.startswith("X-"):
            protocol = name[2:].lower()
            value = _text_value(line)
            if ":" in value:
                value = value.split(":", 1)[1]
            record.im.append(
                IM_PROTOCOLS.get(protocol, protocol) + ":" + value)
        elif name == "IMPP":
            value = unquote(_text_value(line))
            service = line.params.get("X-SERVICE-TYPE", [""])[0].lower()
            if service and ":" not in value:
                value = IM_PROTOCOLS.get(service, service) + ":" + value
            record.im.append(value)
        elif name == "PHOTO":
            record.photo = _photo(line)
        elif name in ("KIND", APPLE_GROUP_PREFIX + "KIND"):
            if _text_value(line).lower() == "group":
                record.kind = KIND_DISTRIBUTION_LIST
        elif name in ("MEMBER", APPLE_GROUP_PREFIX + "MEMBER"):
            member = decode_member(_text_value(line))
            if member is not None:
                record.members.append(member)
        elif name == "REV":
            record.changed = _parse_timestamp(_text_value(line))
        elif name == "FBURL":
            record.freebusyurl = _text_value(line)
        elif name.startswith(("X-", "CUSTOM")):
            prefix = line.group + "." if line.group else ""
            record.custom.append((prefix + name, _text_value(line)))
    # Duplicates show up when clients send both IMPP and X- properties.
    record.im = list(dict.fromkeys(record.im))
    return record


def _add(card, name, content, group=None, **params):
    line = card.add(name, group=group) if group else card.add(name)
    line.value = content
    for (key, param) in params.items():
        if param:
            line.params[key.upper()] = [param]
    return line


def _add_preencoded(card, name, content, group=None, **params):
    """Add a property whose value is already in its wire form."""
    line = _add(card, name, content, group, **params)
    line.encoded = True
    return line


def _escape_list_item(value):
    return (value.replace("\\", "\\\\").replace(",", "\\,")
            .replace(";", "\\;").replace("\n", "\\n"))


def _format_date(value) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.strftime("%Y-%m-%d") if isinstance(value, date) else value


def encode_vcard(record: ContactRecord,
                 client: ClientKind = ClientKind.GENERIC) -> bytes:
    """Convert a contact record to vCard data.

    Distribution lists become vCard 4 groups; Apple clients get version 3
    cards with the group properties under their own prefix instead, and an
    anniversary as a labelled date.

    Args:
      record: ContactRecord to serialize
      client: Kind of client the data is meant for
    Returns: vCard data as bytes
    """
    card = vobject.vCard()
    apple = client.is_apple
    is_group = record.kind == KIND_DISTRIBUTION_LIST
    _add(card, "VERSION", "4.0" if is_group and not apple else "3.0")
    _add(card, "PRODID", PRODID)
    _add(card, "UID", record.uid)
    _add(card, "FN", record.name or "")
    _add(card, "N", Name(
        family=record.surname or "", given=record.firstname or "",
        additional=record.middlename or "", prefix=record.prefix or "",
        suffix=record.suffix or ""))
    if is_group:
        prefix = APPLE_GROUP_PREFIX if apple else ""
        _add(card, prefix + "KIND", "group")
        for member in record.members:
            _add(card, prefix + "MEMBER", encode_member(member))
    if record.nickname:
        _add(card, "NICKNAME", record.nickname)
    if record.jobtitle:
        _add(card, "TITLE", record.jobtitle)
    if record.profession:
        _add(card, "X-PROFESSION", record.profession)
    if record.organization or record.department:
        _add(card, "ORG", [record.organization or "",
                           record.department or ""])
    for field in ("assistant", "manager", "children"):
        values = getattr(record, field)
        if values:
            _add(card, "X-" + field.upper(), ",".join(values))
    if record.spouse:
        _add(card, "X-SPOUSE", record.spouse)
    for email in record.email:
        line = _add(card, "EMAIL", email.address)
        line.params["TYPE"] = ["INTERNET"] + (
            [email.type.upper()] if email.type else [])
    for phone in record.phone:
        phone_type = PHONE_TYPES.get(phone.type, phone.type)
        _add(card, "TEL", phone.number,
             type=phone_type.upper() if phone_type else None)
    for website in record.website:
        _add(card, "URL", website.url,
             type=website.type.upper() if website.type else None)
    for im in record.im:
        (protocol, sep, value) = im.partition(":")
        protocol = IM_PROTOCOLS_REVERSE.get(protocol, protocol)
        if sep and protocol in IM_PROPERTIES:
            _add(card, "X-" + protocol.upper(), value)
        else:
            _add(card, "IMPP", im)
    for adr in record.address:
        _add(card, "ADR", Address(
            street=adr.street or "", city=adr.locality or "",
            region=adr.region or "", code=adr.code or "",
            country=adr.country or ""),
            type=adr.type.upper() if adr.type else None)
    if record.notes:
        _add(card, "NOTE", record.notes)
    if record.gender:
        _add(card, "SEX", record.gender)
    if record.birthday:
        _add(card, "BDAY", _format_date(record.birthday), value="date")
    if record.anniversary:
        if apple:
            _add(card, "X-ABDATE", _format_date(record.anniversary),
                 group=APPLE_ITEM_GROUP, value="date")
            _add(card, "X-ABLABEL", APPLE_ANNIVERSARY_LABEL,
                 group=APPLE_ITEM_GROUP)
        else:
            _add(card, "ANNIVERSARY", _format_date(record.anniversary),
                 value="date")
    if record.categories:
        _add_preencoded(card, "CATEGORIES", ",".join(
            _escape_list_item(c) for c in record.categories))
    if record.freebusyurl:
        _add(card, "FBURL", record.freebusyurl)
    if record.photo:
        _add_preencoded(
            card, "PHOTO", base64.b64encode(record.photo).decode("ascii"),
            encoding="b")
    for (name, value) in record.custom:
        (group, sep, prop) = name.rpartition(".")
        _add(card, prop, value, group=group or None)
    if record.changed is not None:
        changed = record.changed
        if not isinstance(changed, datetime):
            changed = datetime(changed.year, changed.month, changed.day,
                               tzinfo=timezone.utc)
        _add(card, "REV", as_utc(changed).strftime("%Y-%m-%dT%H:%M:%SZ"))
    return card.serialize().encode("utf-8")
