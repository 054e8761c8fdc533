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

"""Validation of incoming object bodies.

Bodies are parsed once, before they reach a backend; the parsed form is
kept around so the backend can reuse it. When a backend stores an object
under a different name than the client asked for, the corrected name is
recorded here and used to fix up the Location header of the response.
"""

import logging
import posixpath
from typing import Optional
from urllib.parse import quote

from . import icalendar, vcard
from .davcommon import ParseError


def _as_bytes(data):
    if isinstance(data, str):
        return data.encode("utf-8")
    return data


class ValidationCoordinator:
    """Per-request cache of the last parsed object and pending redirect."""

    def __init__(self) -> None:
        self._parsed = None
        self._redirect = None

    def _remember(self, content_type, uid, data, parsed):
        self._parsed = (content_type, uid, _as_bytes(data), parsed)

    def validate_calendar(self, data, supported_components=None):
        """Parse and check a calendar object body.

        Returns: tuple with component name and UID
        :raise ParseError: if the body is not a single calendar object
        :raise UnsupportedComponent: if the component type is not allowed
        """
        self._parsed = None
        try:
            parsed = icalendar.parse_calendar(data)
            (component, uid) = icalendar.get_object_info(
                parsed, supported_components)
        except ParseError as exc:
            logging.warning("Rejecting calendar object: %s", exc.message)
            raise
        self._remember(icalendar.CONTENT_TYPE, uid, data, parsed)
        return component, uid

    def validate_vcard(self, data) -> str:
        """Parse and check a vCard body.

        Returns: UID of the contact
        :raise ParseError: if the body is not a valid vCard
        """
        self._parsed = None
        try:
            card = vcard.parse_vcard(data)
            uid = vcard.get_vcard_uid(card)
        except ParseError as exc:
            logging.warning("Rejecting vCard: %s", exc.message)
            raise
        self._remember(vcard.CONTENT_TYPE, uid, data, card)
        return uid

    def get_parsed(self, content_type, uid, data=None):
        """Return the cached parse result for an object, if any.

        When ``data`` is given, the cached result is only returned if it was
        parsed from that same body.
        """
        if self._parsed is None:
            return None
        (cached_type, cached_uid, cached_data, parsed) = self._parsed
        if cached_type != content_type or cached_uid != uid:
            return None
        if data is not None and _as_bytes(data) != cached_data:
            return None
        return parsed

    def set_redirect(self, name: str) -> None:
        self._redirect = name

    def pop_redirect(self) -> Optional[str]:
        (redirect, self._redirect) = (self._redirect, None)
        return redirect

    def decorate_location(self, location: str) -> str:
        """Point a Location path at the corrected object name, if any.

        The pending redirect is consumed.
        """
        redirect = self.pop_redirect()
        if redirect is None:
            return location
        (parent, _) = posixpath.split(location)
        return posixpath.join(parent, quote(redirect))

    def reset(self) -> None:
        self._parsed = None
        self._redirect = None
