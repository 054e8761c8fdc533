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

"""Scheduling messages sent by email (iMIP).

See https://tools.ietf.org/html/rfc6047
"""

import logging
import os
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid

import jinja2

from . import __version__
from .icalendar import COMPONENT_KINDS, parse_calendar

METHOD_REPLY = "REPLY"
METHOD_REQUEST = "REQUEST"
METHOD_CANCEL = "CANCEL"

SUBJECT_PREFIXES = {
    METHOD_REPLY: "Response for: ",
    METHOD_REQUEST: "Invitation for: ",
    METHOD_CANCEL: "Cancelled event: ",
}
DEFAULT_SUBJECT_PREFIX = "Calendar message: "

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")
jinja_env = jinja2.Environment(loader=jinja2.FileSystemLoader(TEMPLATES_DIR))


def get_subject(method, summary) -> str:
    """Return the subject line for a scheduling message."""
    prefix = SUBJECT_PREFIXES.get(
        (method or "").upper(), DEFAULT_SUBJECT_PREFIX)
    return prefix + (summary or "")


def strip_mailto(address: str) -> str:
    if address.lower().startswith("mailto:"):
        return address[len("mailto:"):]
    return address


def _main_component(calendar):
    for comp in calendar.subcomponents:
        if comp.name in COMPONENT_KINDS:
            return comp
    return None


def get_recipients(calendar):
    """Work out who a scheduling object is from and who it is for.

    Replies go from the (single) attendee to the organizer; everything
    else goes from the organizer to the attendees.

    Returns: tuple with originator and list of recipient addresses
    """
    comp = _main_component(calendar)
    if comp is None:
        return (None, [])
    method = str(calendar.get("METHOD", "")).upper()
    organizer = comp.get("ORGANIZER")
    attendees = comp.get("ATTENDEE", [])
    if not isinstance(attendees, list):
        attendees = [attendees]
    attendees = [str(attendee) for attendee in attendees]
    if organizer is not None:
        organizer = str(organizer)
    if method == METHOD_REPLY:
        if organizer is None or not attendees:
            return (None, [])
        return (attendees[0], [organizer])
    recipients = [
        attendee for attendee in attendees
        if organizer is None
        or strip_mailto(attendee).lower() != strip_mailto(organizer).lower()]
    return (organizer, recipients)


class IMipNotifier:
    """Composes and sends iTIP messages by email.

    Args:
      deliver: Callable (sender, recipient, message) that hands a message
        to the mail system
      sender: Address messages are sent from
      sender_name: Optional display name for the sender
    """

    template_name = "imip.txt"

    def __init__(self, deliver, sender, sender_name=None) -> None:
        self.deliver = deliver
        self.sender = sender
        self.sender_name = sender_name

    def compose(self, originator, recipients, calendar, principal):
        """Build one message per recipient.

        Args:
          originator: Calendar address of the organizer or attendee
          recipients: Calendar addresses to notify
          calendar: Scheduling object, as icalendar Calendar or bytes
          principal: Principal on whose behalf the message is sent
        Returns: list of (recipient, EmailMessage) tuples
        """
        if isinstance(calendar, (bytes, str)):
            calendar = parse_calendar(calendar).calendar
        method = str(calendar.get("METHOD", "")).upper()
        comp = _main_component(calendar)
        summary = str(comp.get("SUMMARY", "")) if comp is not None else ""
        subject = get_subject(method, summary)
        start = end = location = None
        if comp is not None:
            if "DTSTART" in comp:
                start = comp.decoded("DTSTART")
            if "DTEND" in comp:
                end = comp.decoded("DTEND")
            location = comp.get("LOCATION")
        template = jinja_env.get_template(self.template_name)
        body = template.render(
            method=method,
            summary=summary,
            sender=self.sender_name or self.sender,
            start=start,
            end=end,
            location=location,
            principal=principal,
            version=".".join(map(str, __version__)))
        ics = calendar.to_ical()
        messages = []
        for recipient in recipients:
            to = strip_mailto(recipient)
            message = EmailMessage()
            message["From"] = formataddr((self.sender_name or "", self.sender))
            message["To"] = to
            message["Reply-To"] = strip_mailto(originator)
            message["Date"] = formatdate(localtime=True)
            message["Message-ID"] = make_msgid()
            message["Subject"] = subject
            message["X-Sender"] = self.sender
            message["User-Agent"] = "FolderDAV/%s" % (
                ".".join(map(str, __version__)))
            message.set_content(body)
            message.add_attachment(
                ics, maintype="text", subtype="calendar",
                params={"method": method or "PUBLISH", "charset": "utf-8"},
                disposition="inline")
            messages.append((to, message))
        return messages

    def notify(self, originator, recipients, calendar, principal) -> int:
        """Send a scheduling object to each recipient.

        Failure to deliver to one recipient doesn't stop delivery to the
        others.

        Returns: number of messages delivered
        """
        logging.debug("Sending iTIP message from %s to %r", originator,
                      recipients)
        delivered = 0
        for (to, message) in self.compose(
                originator, recipients, calendar, principal):
            try:
                self.deliver(self.sender, to, message)
            except (OSError, smtplib.SMTPException) as exc:
                logging.error("Failed to send iTIP message to %s: %s", to, exc)
            else:
                delivered += 1
        return delivered


class SMTPDelivery:
    """Delivers messages through an SMTP server."""

    def __init__(self, host="localhost", port=25) -> None:
        self.host = host
        self.port = port

    def __call__(self, sender, recipient, message) -> None:
        with smtplib.SMTP(self.host, self.port) as smtp:
            smtp.send_message(message, from_addr=sender, to_addrs=[recipient])
