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

"""Client detection based on the User-Agent header."""

import enum
import re
from typing import Optional


class ClientKind(enum.Enum):
    """Client families that need special treatment."""

    GENERIC = "generic"
    APPLE = "apple"
    THUNDERBIRD = "thunderbird"
    LIGHTNING = "lightning"
    IOS = "ios"

    @property
    def is_apple(self) -> bool:
        return self in (ClientKind.APPLE, ClientKind.IOS)

    @property
    def is_mozilla(self) -> bool:
        return self in (ClientKind.THUNDERBIRD, ClientKind.LIGHTNING)

    @classmethod
    def from_user_agent(cls, user_agent: Optional[str]) -> "ClientKind":
        if not user_agent:
            return cls.GENERIC
        for pattern, kind in _USER_AGENT_PATTERNS:
            if pattern.search(user_agent):
                return kind
        return cls.GENERIC


# Checked in order; Lightning also identifies as Thunderbird.
_USER_AGENT_PATTERNS = [
    (re.compile(r"Lightning/\d"), ClientKind.LIGHTNING),
    (re.compile(r"Thunderbird/\d"), ClientKind.THUNDERBIRD),
    (re.compile(r"iOS/\d|[Dd]ata[Aa]ccessd/\d"), ClientKind.IOS),
    (re.compile(r"iCal/\d|CalendarStore/\d|(Mac OS X/.+)?AddressBook/\d"),
     ClientKind.APPLE),
]
