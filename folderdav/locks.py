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

"""WebDAV lock table kept in a file per user."""

import fcntl
import json
import logging
import os
import time

# Locks expire after 30 minutes.
LOCK_TIMEOUT = 1800

DEPTH_INFINITY = -1


class LockInfo:
    """A WebDAV lock."""

    _fields = ("token", "owner", "uri", "depth", "scope", "type", "timeout",
               "created")

    def __init__(self, token, owner="", uri=None, depth=DEPTH_INFINITY,
                 scope="exclusive", type="write", timeout=LOCK_TIMEOUT,
                 created=None):
        self.token = token
        self.owner = owner
        self.uri = uri
        self.depth = depth
        self.scope = scope
        self.type = type
        self.timeout = timeout
        self.created = created

    def expired(self, now) -> bool:
        return now > self.created + self.timeout

    def to_json(self) -> dict:
        return {name: getattr(self, name) for name in self._fields}

    @classmethod
    def from_json(cls, data):
        return cls(**{k: v for (k, v) in data.items() if k in cls._fields})

    def __eq__(self, other):
        return isinstance(other, LockInfo) and self.to_json() == other.to_json()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.token!r}, uri={self.uri!r})"


class FileLockBackend:
    """Lock table stored as JSON, one file per user.

    Args:
      directory: Directory to keep lock files in
      user: Name of the user the locks belong to
      clock: Callable returning the current time in seconds
    """

    def __init__(self, directory, user, clock=time.time) -> None:
        self.directory = directory
        self.user = user
        self.clock = clock

    @property
    def path(self) -> str:
        return os.path.join(
            self.directory, self.user.replace("@", "_"), "locks")

    def _load(self):
        try:
            with open(self.path) as f:
                fcntl.flock(f, fcntl.LOCK_SH)
                data = f.read()
        except FileNotFoundError:
            return []
        if not data:
            return []
        return [LockInfo.from_json(lock) for lock in json.loads(data)]

    def _save(self, locks) -> None:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, "a+") as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            f.seek(0)
            f.truncate()
            json.dump([lock.to_json() for lock in locks], f)

    def _load_current(self):
        """Load all locks, dropping the ones that have expired."""
        now = self.clock()
        locks = self._load()
        current = [lock for lock in locks if not lock.expired(now)]
        if len(current) != len(locks):
            logging.debug("Evicting %d expired locks for %s",
                          len(locks) - len(current), self.user)
            self._save(current)
        return current

    def get_locks(self, uri, return_child_locks=False):
        """Return the locks that apply to a resource.

        This includes locks on the resource itself, deep locks on its
        parents and, if requested, locks on its children.
        """
        logging.debug("get_locks(%r, %r)", uri, return_child_locks)
        ret = []
        for lock in self._load_current():
            if (lock.uri == uri
                    or (lock.depth != 0 and uri.startswith(lock.uri + "/"))
                    or (return_child_locks
                        and lock.uri.startswith(uri + "/"))):
                ret.append(lock)
        return ret

    def lock(self, uri, info: LockInfo) -> bool:
        logging.debug("lock(%r, %r)", uri, info)
        info.timeout = LOCK_TIMEOUT
        info.created = self.clock()
        info.uri = uri
        info.owner = (info.owner or "").strip()
        locks = [
            lock for lock in self._load_current()
            if lock.token != info.token]
        locks.append(info)
        self._save(locks)
        return True

    def unlock(self, uri, info: LockInfo) -> bool:
        logging.debug("unlock(%r, %r)", uri, info)
        locks = self._load_current()
        remaining = [lock for lock in locks if lock.token != info.token]
        if len(remaining) == len(locks):
            return False
        self._save(remaining)
        return True
