"""
Microsoft Graph Client
Free/busy lookup, event booking and mail sending for internal mailboxes
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from ..config import CALENDAR_TIMEOUT_SECONDS, GRAPH_API_BASE, MAIL_TIMEOUT_SECONDS
from .calendar_tokens import get_access_token_for

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A calendar or mail call failed as a whole (timeout, HTTP error, no token)"""


def _graph_datetime(value: datetime) -> Dict[str, str]:
    """Naive UTC datetime in Graph's dateTimeTimeZone shape"""
    return {"dateTime": value.replace(microsecond=0).isoformat(), "timeZone": "UTC"}


class GraphClient:
    """
    Thin async wrapper around the Graph endpoints the scheduler needs.
    Every call is made on behalf of an internal mailbox and carries a bounded timeout.
    """

    def __init__(
        self,
        db: Session,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        calendar_timeout: float = CALENDAR_TIMEOUT_SECONDS,
        mail_timeout: float = MAIL_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.transport = transport
        self.calendar_timeout = calendar_timeout
        self.mail_timeout = mail_timeout

    async def _token(self, mailbox: str) -> str:
        token = await get_access_token_for(self.db, mailbox, transport=self.transport)
        if not token:
            raise ProviderError(f"No valid calendar token for {mailbox}")
        return token

    async def _request(
        self, method: str, path: str, token: str, timeout: float, json: Optional[dict] = None
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.request(
                    method,
                    f"{GRAPH_API_BASE}{path}",
                    headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                    json=json,
                )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Graph request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Graph request failed: {method} {path}: {str(e)}") from e

        if response.status_code >= 400:
            logger.error(f"❌ Graph {method} {path} returned {response.status_code}: {response.text[:300]}")
            raise ProviderError(f"Graph {method} {path} returned {response.status_code}")
        return response

    async def get_schedule(
        self,
        mailbox: str,
        attendee_emails: List[str],
        window_start: datetime,
        window_end: datetime,
        interval_minutes: int,
    ) -> List[Dict[str, Any]]:
        """
        Call getSchedule and return the raw per-attendee schedule entries.
        Each entry carries scheduleId, availabilityView, scheduleItems and, on a
        per-attendee failure, an error object.
        """
        token = await self._token(mailbox)
        response = await self._request(
            "POST",
            "/me/calendar/getSchedule",
            token,
            self.calendar_timeout,
            json={
                "schedules": attendee_emails,
                "startTime": _graph_datetime(window_start),
                "endTime": _graph_datetime(window_end),
                "availabilityViewInterval": interval_minutes,
            },
        )
        return response.json().get("value", [])

    async def create_event(
        self,
        mailbox: str,
        title: str,
        start: datetime,
        end: datetime,
        attendees: List[Dict[str, Optional[str]]],
        is_online_meeting: bool = True,
        body: Optional[str] = None,
    ) -> Dict[str, Optional[str]]:
        """Book the confirmed meeting on the organizer's calendar; returns event_id and web_link"""
        token = await self._token(mailbox)
        event_data = {
            "subject": title,
            "start": _graph_datetime(start),
            "end": _graph_datetime(end),
            "attendees": [
                {
                    "emailAddress": {"address": a["email"], "name": a.get("name") or a["email"]},
                    "type": "required",
                }
                for a in attendees
            ],
            "isOnlineMeeting": is_online_meeting,
        }
        if is_online_meeting:
            event_data["onlineMeetingProvider"] = "teamsForBusiness"
        if body:
            event_data["body"] = {"contentType": "Text", "content": body}

        response = await self._request("POST", "/me/events", token, self.calendar_timeout, json=event_data)
        event = response.json()
        event_id = event.get("id")
        if not event_id:
            raise ProviderError("Graph event response did not include an id")

        logger.info(f"✅ Calendar event created: {event_id}")
        return {"event_id": event_id, "web_link": event.get("webLink")}

    async def send_mail(
        self,
        mailbox: str,
        to: List[Dict[str, Optional[str]]],
        subject: str,
        body: str,
        reply_to_message_id: Optional[str] = None,
        cc: Optional[List[Dict[str, Optional[str]]]] = None,
    ) -> Dict[str, Optional[str]]:
        """
        Send a plain-text message, threaded as a reply when reply_to_message_id is given.
        A draft is created first so the conversation id is known before sending.
        """
        token = await self._token(mailbox)

        def recipients(people):
            return [{"emailAddress": {"address": p["email"], "name": p.get("name") or p["email"]}} for p in people]

        message = {
            "subject": subject,
            "body": {"contentType": "Text", "content": body},
            "toRecipients": recipients(to),
        }
        if cc:
            message["ccRecipients"] = recipients(cc)

        if reply_to_message_id:
            draft_response = await self._request(
                "POST", f"/me/messages/{reply_to_message_id}/createReply", token, self.mail_timeout, json={}
            )
            draft = draft_response.json()
            await self._request("PATCH", f"/me/messages/{draft['id']}", token, self.mail_timeout, json=message)
        else:
            draft_response = await self._request("POST", "/me/messages", token, self.mail_timeout, json=message)
            draft = draft_response.json()

        await self._request("POST", f"/me/messages/{draft['id']}/send", token, self.mail_timeout)
        logger.info(f"📧 Sent '{subject}' from {mailbox} to {', '.join(p['email'] for p in to)}")
        return {"message_id": draft.get("id"), "conversation_id": draft.get("conversationId")}
