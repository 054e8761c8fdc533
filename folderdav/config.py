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

"""Server configuration file."""

import configparser
import logging

_NOT_SET = object()

DEFAULT_LISTEN_ADDRESS = "localhost"
DEFAULT_PORT = 8080
DEFAULT_ROUTE_PREFIX = "/"
DEFAULT_FREEBUSY_TIMEOUT = 10


class ServerConfig(object):
    """Server configuration, backed by an INI file."""

    def __init__(self, cp=None):
        if cp is None:
            cp = configparser.ConfigParser(interpolation=None)
        self._configparser = cp

    @classmethod
    def from_file(cls, f):
        cp = configparser.ConfigParser(interpolation=None)
        cp.read_file(f)
        return cls(cp)

    def _get(self, section, key, default=_NOT_SET, getter=None):
        try:
            value = self._configparser[section][key]
        except KeyError:
            if default is _NOT_SET:
                raise
            return default
        if getter is None:
            return value
        return getter(section, key)

    def get(self, section, key, default=_NOT_SET):
        return self._get(section, key, default)

    def getint(self, section, key, default=_NOT_SET):
        return self._get(section, key, default, self._configparser.getint)

    def getfloat(self, section, key, default=_NOT_SET):
        return self._get(section, key, default, self._configparser.getfloat)

    def getboolean(self, section, key, default=_NOT_SET):
        return self._get(
            section, key, default, self._configparser.getboolean)

    def set(self, section, key, value):
        try:
            self._configparser.add_section(section)
        except configparser.DuplicateSectionError:
            pass
        self._configparser[section][key] = str(value)

    def get_listen_address(self):
        return self.get("server", "listen_address", DEFAULT_LISTEN_ADDRESS)

    def get_port(self):
        return self.getint("server", "port", DEFAULT_PORT)

    def get_route_prefix(self):
        return self.get("server", "route_prefix", DEFAULT_ROUTE_PREFIX)

    def get_default_user(self):
        return self.get("server", "default_user", None)

    def get_log_level(self):
        """Return the log level, as a logging module constant."""
        name = self.get("logging", "level", "INFO")
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"invalid log level {name!r}")
        return level

    def get_dump_requests(self):
        return self.getboolean("logging", "dump_requests", False)

    def get_freebusy_url(self):
        return self.get("freebusy", "url", None)

    def get_freebusy_timeout(self):
        return self.getfloat("freebusy", "timeout", DEFAULT_FREEBUSY_TIMEOUT)

    def get_freebusy_credentials(self):
        return (self.get("freebusy", "username", None),
                self.get("freebusy", "password", None))

    def get_smtp_host(self):
        return self.get("smtp", "host", None)

    def get_smtp_port(self):
        return self.getint("smtp", "port", 25)

    def get_smtp_sender(self):
        return self.get("smtp", "sender", None)

    def get_locks_directory(self):
        return self.get("locks", "directory", None)
