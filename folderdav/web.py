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

"""Web server glue.

This exposes calendar and address book objects over plain HTTP methods
(GET, HEAD, PUT, DELETE and REPORT); property handling and the rest of
WebDAV are left to a full WebDAV engine in front of the backends.
"""

import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from urllib.parse import quote
from xml.etree import ElementTree as ET
from xml.etree.ElementTree import ParseError as XMLParseError

from aiohttp import web
from dateutil import parser as date_parser
from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring as xmlparse
from multidict import CIMultiDict

from . import __version__, freebusy
from .caldav import AttachmentContent, CalendarBackend
from .carddav import ContactsBackend
from .config import ServerConfig
from .context import RequestContext
from .davcommon import (
    CALDAV_NAMESPACE,
    CARDDAV_NAMESPACE,
    FolderDAVError,
    Forbidden,
    NotFound,
    ParseError,
    Unsupported,
    extract_strong_etag,
)
from .icalendar import CONTENT_TYPE, parse_calendar
from .locks import FileLockBackend
from .scheduling import IMipNotifier, SMTPDelivery, get_recipients
from .store import (
    DEFAULT_MIME_TYPE,
    FOLDER_TYPE_EVENT,
    MIMETYPES,
    NAMESPACE_PERSONAL,
    open_store,
)

WELLKNOWN_CALDAV_PATH = "/.well-known/caldav"
WELLKNOWN_CARDDAV_PATH = "/.well-known/carddav"
WELLKNOWN_DAV_PATHS = {WELLKNOWN_CALDAV_PATH, WELLKNOWN_CARDDAV_PATH}

CALENDAR_HOME = "calendars"
ADDRESSBOOK_HOME = "addressbooks"

REMOTE_USER_HEADER = "X-Remote-User"

CONTEXT_KEY = "folderdav.context"


class HTTPLocked(web.HTTPClientError):
    status_code = 423


class RedirectDavHandler:

    def __init__(self, dav_root: str) -> None:
        self._dav_root = dav_root

    async def __call__(self, request):
        raise web.HTTPFound(self._dav_root)


def _error_response(exc: FolderDAVError):
    return web.Response(status=exc.status, text=exc.message + "\n")


class FolderDAVApp:
    """HTTP front-end for the CalDAV and CardDAV backends.

    Args:
      store: FolderStore to serve
      default_user: User to act as when the request doesn't name one
      route_prefix: Path the application is served under
      freebusy_timeout: Timeout for fetching published free/busy feeds
      notifier: Optional IMipNotifier for scheduling messages
      locks_directory: Optional directory for the WebDAV lock table
    """

    def __init__(self, store, default_user=None, route_prefix="/",
                 freebusy_timeout=freebusy.DEFAULT_TIMEOUT,
                 freebusy_credentials=(None, None), notifier=None,
                 locks_directory=None):
        self.store = store
        self.default_user = default_user
        self.route_prefix = "/" + route_prefix.strip("/")
        self.freebusy_timeout = freebusy_timeout
        self.freebusy_credentials = freebusy_credentials
        self.notifier = notifier
        self.locks_directory = locks_directory

    @web.middleware
    async def context_middleware(self, request, handler):
        if request.path in WELLKNOWN_DAV_PATHS:
            return await handler(request)
        user = request.headers.get(REMOTE_USER_HEADER) or self.default_user
        if not user:
            raise web.HTTPUnauthorized(text="no user\n")
        base_uri = str(request.url.origin()) + self.route_prefix
        with RequestContext(
                user, request.headers.get("User-Agent"),
                base_uri=base_uri) as context:
            request[CONTEXT_KEY] = context
            try:
                return await handler(request)
            except FolderDAVError as exc:
                logging.debug("%s %s failed: %s", request.method,
                              request.path, exc.message)
                return _error_response(exc)

    def _context(self, request) -> RequestContext:
        context = request[CONTEXT_KEY]
        if request.match_info.get("user", context.user) != context.user:
            raise web.HTTPForbidden(text="not your collection\n")
        return context

    def _calendars(self, request):
        return CalendarBackend(self.store, self._context(request))

    def _contacts(self, request):
        return ContactsBackend(self.store, self._context(request))

    def get_locks(self, request):
        """Return the lock table of the current user, if there is one."""
        if self.locks_directory is None:
            return None
        return FileLockBackend(
            self.locks_directory, request[CONTEXT_KEY].user)

    def _check_locks(self, request):
        locks = self.get_locks(request)
        if locks is None:
            return
        held = locks.get_locks(request.path)
        if not held:
            return
        submitted = request.headers.get("If", "")
        if not any(lock.token in submitted for lock in held):
            raise HTTPLocked(text="resource is locked\n")

    @staticmethod
    def _object_response(obj):
        headers = CIMultiDict()
        if isinstance(obj, AttachmentContent):
            mimetype = obj.mimetype
            if not mimetype and obj.name:
                (mimetype, _) = MIMETYPES.guess_type(obj.name)
            headers["Content-Type"] = mimetype or DEFAULT_MIME_TYPE
            headers["Content-Disposition"] = 'inline; filename="%s"' % (
                quote(obj.name or "attachment"))
        else:
            headers["Content-Type"] = obj.content_type + "; charset=utf-8"
            headers["ETag"] = obj.etag
        return web.Response(status=200, headers=headers, body=obj.data)

    async def get_calendar_object(self, request):
        obj = self._calendars(request).get_calendar_object(
            request.match_info["collection"], request.match_info["object"])
        return self._object_response(obj)

    async def get_card(self, request):
        obj = self._contacts(request).get_card(
            request.match_info["collection"], request.match_info["object"])
        return self._object_response(obj)

    def _check_preconditions(self, request, current_etag):
        context = request[CONTEXT_KEY]
        if_none_match = request.headers.get("If-None-Match")
        if if_none_match == "*" and context.client.is_mozilla:
            # Thunderbird sends this on updates as well.
            if_none_match = None
        if if_none_match == "*" and current_etag is not None:
            raise web.HTTPPreconditionFailed(text="object exists\n")
        if_match = request.headers.get("If-Match")
        if if_match is not None and if_match != "*":
            wanted = [extract_strong_etag(e.strip())
                      for e in if_match.split(",")]
            if extract_strong_etag(current_etag) not in wanted:
                raise web.HTTPPreconditionFailed(text="etag mismatch\n")

    def _put_response(self, request, etag, created):
        context = request[CONTEXT_KEY]
        path = request.rel_url.raw_path
        headers = {"ETag": etag}
        location = context.coordinator.decorate_location(path)
        if location != path:
            headers["Location"] = str(request.url.origin()) + location
        return web.Response(status=201 if created else 204, headers=headers)

    async def put_calendar_object(self, request):
        backend = self._calendars(request)
        context = request[CONTEXT_KEY]
        (collection, name) = (
            request.match_info["collection"], request.match_info["object"])
        info = backend.get_calendar_by_name(collection)
        if info is None:
            raise NotFound(f"no such calendar: {collection}")
        self._check_locks(request)
        data = await request.read()
        context.coordinator.validate_calendar(data, info.components)
        try:
            current_etag = backend.get_calendar_object(collection, name).etag
        except NotFound:
            current_etag = None
        self._check_preconditions(request, current_etag)
        etag = backend.put_calendar_object(collection, name, data)
        return self._put_response(request, etag, current_etag is None)

    async def put_card(self, request):
        backend = self._contacts(request)
        context = request[CONTEXT_KEY]
        (collection, name) = (
            request.match_info["collection"], request.match_info["object"])
        if backend.get_address_book_by_name(collection) is None:
            raise NotFound(f"no such address book: {collection}")
        self._check_locks(request)
        data = await request.read()
        context.coordinator.validate_vcard(data)
        try:
            current_etag = backend.get_card(collection, name).etag
        except NotFound:
            current_etag = None
        self._check_preconditions(request, current_etag)
        etag = backend.put_card(collection, name, data)
        return self._put_response(request, etag, current_etag is None)

    async def delete_calendar_object(self, request):
        self._check_locks(request)
        self._calendars(request).delete_calendar_object(
            request.match_info["collection"], request.match_info["object"])
        return web.Response(status=204)

    async def delete_card(self, request):
        self._check_locks(request)
        self._contacts(request).delete_card(
            request.match_info["collection"], request.match_info["object"])
        return web.Response(status=204)

    async def delete_calendar(self, request):
        self._check_locks(request)
        self._calendars(request).delete_calendar(
            request.match_info["collection"])
        return web.Response(status=204)

    async def delete_address_book(self, request):
        self._check_locks(request)
        self._contacts(request).delete_address_book(
            request.match_info["collection"])
        return web.Response(status=204)

    @staticmethod
    def _multistatus(request, hrefs):
        ret = ET.Element("{DAV:}multistatus")
        for href in hrefs:
            response = ET.SubElement(ret, "{DAV:}response")
            ET.SubElement(response, "{DAV:}href").text = (
                request.rel_url.raw_path.rstrip("/") + "/" + quote(href))
            ET.SubElement(response, "{DAV:}status").text = "HTTP/1.1 200 OK"
        return web.Response(
            status=207, content_type="application/xml", charset="utf-8",
            body=ET.tostring(ret, encoding="utf-8"))

    @staticmethod
    async def _read_report(request, namespace, name):
        body = await request.read()
        try:
            root = xmlparse(body)
        except (XMLParseError, DefusedXmlException) as exc:
            raise ParseError("application/xml", str(exc)) from exc
        if root.tag != "{%s}%s" % (namespace, name):
            raise Unsupported(f"unsupported report {root.tag}")
        return root.find("{%s}filter" % namespace)

    async def calendar_query(self, request):
        filter_el = await self._read_report(
            request, CALDAV_NAMESPACE, "calendar-query")
        if filter_el is None:
            raise ParseError("application/xml", "missing filter")
        hrefs = self._calendars(request).calendar_query(
            request.match_info["collection"], filter_el)
        return self._multistatus(request, hrefs)

    async def address_book_query(self, request):
        filter_el = await self._read_report(
            request, CARDDAV_NAMESPACE, "addressbook-query")
        hrefs = self._contacts(request).address_book_query(
            request.match_info["collection"], filter_el)
        return self._multistatus(request, hrefs)

    async def post_outbox(self, request):
        self._context(request)
        if self.notifier is None:
            raise Forbidden("scheduling messages are not sent by this server")
        data = await request.read()
        calendar = parse_calendar(data).calendar
        (originator, recipients) = get_recipients(calendar)
        if originator is None or not recipients:
            raise ParseError(
                CONTENT_TYPE, "scheduling object without originator or "
                "recipients")
        delivered = self.notifier.notify(
            originator, recipients, calendar,
            request[CONTEXT_KEY].principal_uri)
        return web.json_response(
            {"recipients": len(recipients), "delivered": delivered},
            status=202)

    def _local_freebusy(self, request):
        context = request[CONTEXT_KEY]

        def local(email, start, end):
            if email.split("@")[0] != context.user.split("@")[0]:
                return None
            backend = CalendarBackend(self.store, context)
            records = []
            for folder in backend.resolver.list_all():
                if (folder.type == FOLDER_TYPE_EVENT
                        and folder.namespace == NAMESPACE_PERSONAL):
                    records.extend(folder.select([
                        ("dtstart", "<=", end), ("dtend", ">=", start)]))
            return freebusy.compute_freebusy(records, start, end)

        return local

    async def get_freebusy(self, request):
        context = request[CONTEXT_KEY]
        email = request.match_info["email"]
        try:
            start = date_parser.parse(request.query["start"])
        except KeyError:
            start = datetime.now(timezone.utc)
        except (ValueError, OverflowError):
            raise web.HTTPBadRequest(text="invalid start\n")
        try:
            end = date_parser.parse(request.query["end"])
        except KeyError:
            end = start + timedelta(days=60)
        except (ValueError, OverflowError):
            raise web.HTTPBadRequest(text="invalid end\n")
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        (username, password) = self.freebusy_credentials
        response = await freebusy.get_freebusy(
            email, start, end, self.store.get_freebusy_url,
            username=username or context.user,
            password=password or context.password,
            timeout=self.freebusy_timeout,
            local=self._local_freebusy(request))
        if not response.found:
            raise web.HTTPNotFound(text=response.status + "\n")
        return web.Response(
            status=200, content_type="text/calendar", charset="utf-8",
            body=response.calendar_data,
            headers={"X-Request-Status": response.status})

    def make_app(self, dump_requests=False) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application(middlewares=[self.context_middleware])
        if dump_requests:
            app.middlewares.insert(0, dump_requests_middleware)
        prefix = self.route_prefix.rstrip("/")
        for path in WELLKNOWN_DAV_PATHS:
            app.router.add_route(
                "*", path, RedirectDavHandler(prefix + "/"))
        obj = prefix + "/%s/{user}/{collection}/{object}"
        col = prefix + "/%s/{user}/{collection}/"
        for (home, get, put, delete, delete_col, report) in [
                (CALENDAR_HOME, self.get_calendar_object,
                 self.put_calendar_object, self.delete_calendar_object,
                 self.delete_calendar, self.calendar_query),
                (ADDRESSBOOK_HOME, self.get_card, self.put_card,
                 self.delete_card, self.delete_address_book,
                 self.address_book_query)]:
            app.router.add_get(obj % home, get)
            app.router.add_put(obj % home, put)
            app.router.add_delete(obj % home, delete)
            app.router.add_delete(col % home, delete_col)
            app.router.add_route("REPORT", col % home, report)
        app.router.add_get(prefix + "/freebusy/{email}", self.get_freebusy)
        app.router.add_post(prefix + "/outbox/{user}/", self.post_outbox)
        return app


@web.middleware
async def dump_requests_middleware(request, handler):
    logging.debug("%s %s (%s)", request.method, request.path_qs,
                  request.headers.get("User-Agent"))
    response = await handler(request)
    logging.debug("%s %s -> %d", request.method, request.path,
                  response.status)
    return response


def create_notifier(config):
    host = config.get_smtp_host()
    if host is None:
        return None
    sender = config.get_smtp_sender()
    if sender is None:
        logging.warning("No [smtp] sender configured; not sending iMIP")
        return None
    return IMipNotifier(SMTPDelivery(host, config.get_smtp_port()), sender)


def main(argv=None):
    import argparse

    if argv is None:
        argv = sys.argv

    parser = argparse.ArgumentParser(
        usage="%(prog)s [OPTIONS]", prog=argv[0])
    parser.add_argument(
        "--version", action="version",
        version="%(prog)s " + ".".join(map(str, __version__)))
    parser.add_argument(
        "-c", "--config", dest="config", default=None,
        help="Configuration file.")
    access_group = parser.add_argument_group(title="Access Options")
    access_group.add_argument(
        "-l", "--listen_address", dest="listen_address", default=None,
        help="Binding IP address. [localhost]")
    access_group.add_argument(
        "-p", "--port", dest="port", type=int, default=None,
        help="Port to listen on. [8080]")
    access_group.add_argument(
        "--route-prefix", default=None,
        help="Path to FolderDAV, when behind a reverse proxy. [/]")
    parser.add_argument(
        "--store", default="memory:",
        help="Folder store to serve. [%(default)s]")
    parser.add_argument(
        "--default-user", default=None,
        help="User to act as for requests without a remote user.")
    parser.add_argument(
        "--defaults", action="store_true",
        help="Create initial calendar, task list and address book.")
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log debug messages.")
    parser.add_argument(
        "--dump-requests", action="store_true",
        help="Log every request and its response status.")
    options = parser.parse_args(argv[1:])

    config = ServerConfig()
    if options.config is not None:
        with open(options.config) as f:
            config = ServerConfig.from_file(f)

    if options.verbose:
        level = logging.DEBUG
    else:
        level = config.get_log_level()
    logging.basicConfig(level=level)

    default_user = options.default_user or config.get_default_user()
    store = open_store(
        options.store, user=default_user or "user",
        freebusy_url=config.get_freebusy_url())
    if options.defaults:
        store.create_defaults()

    route_prefix = options.route_prefix or config.get_route_prefix()
    app = FolderDAVApp(
        store, default_user=default_user, route_prefix=route_prefix,
        freebusy_timeout=config.get_freebusy_timeout(),
        freebusy_credentials=config.get_freebusy_credentials(),
        notifier=create_notifier(config),
        locks_directory=config.get_locks_directory())
    if app.locks_directory is not None:
        os.makedirs(app.locks_directory, exist_ok=True)

    listen_address = options.listen_address or config.get_listen_address()
    port = options.port or config.get_port()
    logging.info("FolderDAV %s listening on %s:%s",
                 ".".join(map(str, __version__)), listen_address, port)
    web.run_app(
        app.make_app(
            dump_requests=options.dump_requests
            or config.get_dump_requests()),
        host=listen_address, port=port, print=None)


if __name__ == "__main__":
    sys.exit(main(sys.argv))
