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

"""Request-scoped state.

Everything that is cached while handling a request (folder listings,
the last parsed object body, a pending redirect) hangs off a
:class:`RequestContext`, which is created when a request comes in and
closed when it has been answered.
"""

from typing import Optional

from .identity import FolderResolver
from .useragent import ClientKind
from .validation import ValidationCoordinator


class RequestContext:
    """State for handling a single request.

    Args:
      user: Name of the authenticated user
      user_agent: User-Agent header of the request
      base_uri: Absolute URI the DAV tree is served under
      password: Password the user authenticated with, if known
    """

    def __init__(self, user: str, user_agent: Optional[str] = None,
                 base_uri: str = "", password: Optional[str] = None) -> None:
        self.user = user
        self.password = password
        self.base_uri = base_uri.rstrip("/")
        self.client = ClientKind.from_user_agent(user_agent)
        self.coordinator = ValidationCoordinator()
        self._resolvers = {}

    @property
    def principal_uri(self) -> str:
        return "principals/" + self.user

    def get_resolver(self, store, folder_types) -> FolderResolver:
        key = (id(store), tuple(folder_types))
        try:
            return self._resolvers[key]
        except KeyError:
            resolver = self._resolvers[key] = FolderResolver(
                store, folder_types)
            return resolver

    def close(self) -> None:
        self.coordinator.reset()
        self._resolvers.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
