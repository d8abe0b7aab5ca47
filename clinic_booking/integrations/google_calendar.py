"""
Google Calendar gateway.

Creates events on the organization's calendar through the REST API and
refreshes the OAuth access token when it has expired (or the API answers
401). A refreshed token is handed back in the result, never written here.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

import httpx

from clinic_booking.core import config
from clinic_booking.core.errors import IntegrationFailure
from clinic_booking.integrations.base import CalendarEventResult, CalendarGateway, TokenRefreshed

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_MARGIN = timedelta(minutes=5)


class GoogleCalendarGateway(CalendarGateway):
    def __init__(
        self,
        access_token: str | None,
        refresh_token: str | None,
        token_expires_at: datetime | None = None,
        calendar_id: str | None = None,
        timezone_name: str = config.DEFAULT_TIMEZONE,
        client: httpx.Client | None = None,
    ):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.token_expires_at = token_expires_at
        self.calendar_id = calendar_id or "primary"
        self.timezone_name = timezone_name
        self._client = client or httpx.Client(timeout=config.GATEWAY_TIMEOUT_SECONDS)

    def create_meeting_event(self, summary, description, start, end, attendees) -> CalendarEventResult:
        event = self._build_event(summary, description, start, end, attendees)
        event["conferenceData"] = {
            "createRequest": {
                "requestId": f"meeting-{uuid.uuid4().hex}",
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
        return self._insert_event(event, {"conferenceDataVersion": 1, "sendUpdates": "all"})

    def create_in_person_event(self, summary, description, start, end, attendees) -> CalendarEventResult:
        event = self._build_event(summary, description, start, end, attendees)
        return self._insert_event(event, {"sendUpdates": "all"})

    def _build_event(self, summary, description, start, end, attendees) -> dict:
        return {
            "summary": summary,
            "description": description,
            "start": {"dateTime": start.isoformat(), "timeZone": self.timezone_name},
            "end": {"dateTime": end.isoformat(), "timeZone": self.timezone_name},
            "attendees": [{"email": email, "responseStatus": "needsAction"} for email in attendees],
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 30},
                ],
            },
            "guestsCanInviteOthers": False,
            "guestsCanModify": False,
        }

    def _insert_event(self, event: dict, params: dict) -> CalendarEventResult:
        token_refreshed = None
        if self._token_expired():
            token_refreshed = self._refresh_access_token()

        response = self._post_event(event, params)
        if response.status_code == 401 and token_refreshed is None:
            logger.info("Google Calendar rejected the access token, refreshing")
            token_refreshed = self._refresh_access_token()
            response = self._post_event(event, params)

        if response.status_code >= 400:
            raise IntegrationFailure(
                f"Google Calendar event creation failed with status {response.status_code}"
            )

        try:
            data = response.json()
            return CalendarEventResult(
                event_id=data["id"],
                meeting_link=data.get("hangoutLink"),
                html_link=data.get("htmlLink"),
                token_refreshed=token_refreshed,
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise IntegrationFailure(f"Google Calendar returned an unreadable event: {exc!r}") from exc

    def _post_event(self, event: dict, params: dict) -> httpx.Response:
        try:
            return self._client.post(
                f"{config.GOOGLE_CALENDAR_API}/calendars/{self.calendar_id}/events",
                params=params,
                json=event,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.HTTPError as exc:
            raise IntegrationFailure(f"Google Calendar request failed: {exc}") from exc

    def _token_expired(self) -> bool:
        if not self.access_token:
            return True
        if self.token_expires_at is None:
            return False
        expires_at = self.token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= datetime.now(timezone.utc) + TOKEN_EXPIRY_MARGIN

    def _refresh_access_token(self) -> TokenRefreshed:
        if not self.refresh_token:
            raise IntegrationFailure("Google Calendar access expired and no refresh token is stored.")

        try:
            response = self._client.post(
                config.GOOGLE_TOKEN_URL,
                data={
                    "client_id": config.GOOGLE_CLIENT_ID,
                    "client_secret": config.GOOGLE_CLIENT_SECRET,
                    "refresh_token": self.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as exc:
            raise IntegrationFailure(f"Google token refresh failed: {exc}") from exc

        if response.status_code != 200:
            raise IntegrationFailure(f"Google token refresh failed with status {response.status_code}")

        try:
            tokens = response.json()
            access_token = tokens.get("access_token")
            expires_in = int(tokens.get("expires_in", 3600))
        except (ValueError, TypeError, AttributeError) as exc:
            raise IntegrationFailure(f"Google token refresh returned an unreadable body: {exc!r}") from exc
        if not access_token:
            raise IntegrationFailure("Google token refresh returned no access token.")

        self.access_token = access_token
        self.token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        logger.info("Google Calendar token refreshed")
        return TokenRefreshed(access_token=access_token, expires_at=self.token_expires_at)


def build_calendar_gateway(organization) -> CalendarGateway | None:
    """Gateway for an organization, or None when it has no usable Google connection."""
    if not organization.google_integration_enabled:
        return None
    if not organization.google_access_token and not organization.google_refresh_token:
        return None
    return GoogleCalendarGateway(
        access_token=organization.google_access_token,
        refresh_token=organization.google_refresh_token,
        token_expires_at=organization.google_token_expires_at,
        calendar_id=organization.google_calendar_id,
        timezone_name=organization.timezone or config.DEFAULT_TIMEZONE,
    )
