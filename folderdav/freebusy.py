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

"""Free/busy lookups.

Free/busy information for an address is fetched from a published feed if
one is known; otherwise, or if fetching fails, it is computed locally.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import aiohttp
from icalendar.cal import Calendar, FreeBusy
from icalendar.prop import vDDDTypes, vPeriod

from .icalendar import PRODID
from .store.records import KIND_EVENT, as_utc, recurrence_rule

STATUS_SUCCESS = "2.0;Success"
STATUS_NOT_FOUND = "3.7;Could not find principal"

DEFAULT_TIMEOUT = 10


class FreeBusyResponse:
    """Result of a free/busy lookup for a single address."""

    def __init__(self, href, status, calendar_data=None):
        self.href = href
        self.status = status
        self.calendar_data = calendar_data

    @property
    def found(self) -> bool:
        return self.calendar_data is not None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.href!r}, {self.status!r})"


class FreeBusyFetchError(Exception):
    """Fetching a published free/busy feed failed."""

    def __init__(self, url, reason) -> None:
        super().__init__(f"unable to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


def map_freebusy(record) -> str:
    if record.transparency == "TRANSPARENT":
        return "FREE"
    status = record.status or "CONFIRMED"
    if status == "CANCELLED":
        return "FREE"
    elif status == "TENTATIVE":
        return "BUSY-TENTATIVE"
    elif status.startswith("X-"):
        return status
    return "BUSY"


def _periods(record, start, end, overridden=()):
    """Yield the (start, end) periods of a record within a window.

    ``overridden`` lists recurrence ids of occurrences that are replaced
    by an exception and must not be reported for the master.
    """
    first = as_utc(record.start)
    duration = as_utc(record.end if record.end is not None
                      else record.start) - first
    if not record.rrule:
        yield from _clip([first], duration, start, end)
        return
    excluded = list(record.exdates) + list(overridden)
    excluded_times = {as_utc(d) for d in excluded if isinstance(d, datetime)}
    excluded_days = {d for d in excluded if not isinstance(d, datetime)}
    occurrences = []
    for occurrence in recurrence_rule(record.rrule, record.start):
        utc = as_utc(occurrence)
        if utc >= end:
            break
        if utc in excluded_times or occurrence.date() in excluded_days:
            continue
        occurrences.append(utc)
    yield from _clip(occurrences, duration, start, end)


def _clip(occurrences, duration, start, end):
    for occurrence in occurrences:
        if occurrence < end and occurrence + duration > start:
            yield occurrence, occurrence + duration


def compute_freebusy(records, start: datetime, end: datetime) -> bytes:
    """Compute a VFREEBUSY object from calendar records.

    Args:
      records: Iterable over CalendarRecord
      start: Start of the period
      end: End of the period
    Returns: iCalendar data
    """
    (start, end) = (as_utc(start), as_utc(end))
    ret = Calendar()
    ret["VERSION"] = "2.0"
    ret["PRODID"] = PRODID
    fb = FreeBusy()
    fb["DTSTAMP"] = vDDDTypes(datetime.now(timezone.utc))
    fb["DTSTART"] = vDDDTypes(start)
    fb["DTEND"] = vDDDTypes(end)
    periods = []
    for record in records:
        if record.kind != KIND_EVENT or record.start is None:
            continue
        kind = map_freebusy(record)
        if kind == "FREE":
            continue
        overridden = [
            e.recurrence_id for e in record.exceptions
            if e.recurrence_id is not None]
        for sub in [record] + list(record.exceptions):
            if sub.start is None:
                continue
            try:
                sub_periods = list(_periods(sub, start, end, overridden))
            except (ValueError, TypeError) as exc:
                logging.debug(
                    "Skipping %s for free/busy: %s", record.uid, exc)
                continue
            for period in sub_periods:
                vp = vPeriod(period)
                if kind != "BUSY":
                    vp.params["FBTYPE"] = kind
                periods.append(vp)
    if periods:
        fb["FREEBUSY"] = periods
    ret.add_component(fb)
    return ret.to_ical()


async def fetch_freebusy(url, timeout=DEFAULT_TIMEOUT, username=None,
                         password=None) -> bytes:
    """Fetch a published free/busy feed.

    A 401 response is retried once with the supplied credentials.

    :raise FreeBusyFetchError: if the feed could not be retrieved
    """
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as response:
                if (response.status == 401 and username is not None
                        and password is not None):
                    logging.debug("Retrying %s with credentials", url)
                    auth = aiohttp.BasicAuth(username, password)
                    async with session.get(url, auth=auth) as retried:
                        return await _read_feed(url, retried)
                return await _read_feed(url, response)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise FreeBusyFetchError(url, exc) from exc


async def _read_feed(url, response) -> bytes:
    if response.status != 200:
        raise FreeBusyFetchError(url, f"HTTP status {response.status}")
    data = await response.read()
    if b"BEGIN:VFREEBUSY" not in data:
        raise FreeBusyFetchError(url, "no VFREEBUSY in response")
    return data


async def get_freebusy(
        email: str, start: datetime, end: datetime,
        url_lookup: Callable[[str], Optional[str]],
        username: Optional[str] = None, password: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        local: Optional[Callable] = None) -> FreeBusyResponse:
    """Look up free/busy information for an address.

    Args:
      email: Address to look up
      start: Start of the period
      end: End of the period
      url_lookup: Callable returning the published feed URL for an address
      username: User name to authenticate with if the feed asks for it
      password: Password to authenticate with if the feed asks for it
      timeout: Timeout for fetching the feed, in seconds
      local: Optional callable (email, start, end) computing free/busy
        data locally; returns None if the address is unknown
    Returns: FreeBusyResponse
    """
    href = "mailto:" + email
    url = url_lookup(email)
    if url:
        try:
            data = await fetch_freebusy(url, timeout, username, password)
        except FreeBusyFetchError as exc:
            logging.warning("Free/busy lookup for %s failed: %s", email, exc)
        else:
            return FreeBusyResponse(href, STATUS_SUCCESS, data)
    if local is not None:
        data = local(email, start, end)
        if data is not None:
            return FreeBusyResponse(href, STATUS_SUCCESS, data)
    return FreeBusyResponse(href, STATUS_NOT_FOUND)
