"""Waitlist promotion emails sent through Resend."""

from __future__ import annotations

import html
import logging
import os
from dataclasses import dataclass
from urllib.parse import quote

import httpx
import resend

from . import errors

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TITLE = "Kandie Gang Event"
PROMOTION_SUBJECT = "A spot opened up for your event"

EVENT_TITLE_QUERY = """
query GetRideEventTitle($id: ID!) {
  rideEvent(id: $id, idType: DATABASE_ID) {
    title
  }
}
"""


@dataclass
class PromotionNotice:
    recipient: str
    event_title: str
    ride_level: str
    cancel_token: str


class PromotionNotifier:
    """Looks up event titles and emails riders promoted off a waitlist."""

    def __init__(self, timeout: float = 10.0) -> None:
        self.api_key = os.getenv("RESEND_API_KEY", "")
        self.from_email = os.getenv("RESEND_FROM_EMAIL", "Kandie Gang <hello@kandiegang.com>")
        self.site_url = os.getenv("SITE_URL", "https://kandiegang.com")
        self.graphql_url = os.getenv("WP_GRAPHQL_URL", "https://wp-origin.kandiegang.com/graphql")
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def fetch_event_title(self, event_id: int) -> str:
        """Return the CMS title for an event, or the generic title.

        Only transport failures raise; an error status or a payload without a
        title falls back to ``DEFAULT_EVENT_TITLE``.
        """

        body = {"query": EVENT_TITLE_QUERY, "variables": {"id": event_id}}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    self.graphql_url,
                    json=body,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise errors.UpstreamUnavailable(f"Event title lookup failed: {exc}") from exc

        if response.status_code >= 400:
            logger.info("Event title lookup for %s returned HTTP %s", event_id, response.status_code)
            return DEFAULT_EVENT_TITLE
        try:
            payload = response.json()
        except ValueError:
            return DEFAULT_EVENT_TITLE

        if not isinstance(payload, dict):
            return DEFAULT_EVENT_TITLE
        ride_event = (payload.get("data") or {}).get("rideEvent") or {}
        title = ride_event.get("title") if isinstance(ride_event, dict) else None
        if isinstance(title, str) and title.strip():
            return title.strip()
        return DEFAULT_EVENT_TITLE

    def cancel_url(self, token: str) -> str:
        return f"{self.site_url.rstrip('/')}/event/cancel?token={quote(token, safe='')}"

    def build_html(self, notice: PromotionNotice) -> str:
        title = html.escape(notice.event_title)
        level = html.escape(notice.ride_level)
        url = html.escape(self.cancel_url(notice.cancel_token))
        return (
            '<!DOCTYPE html><html><head><meta charset="utf-8">'
            '<meta name="viewport" content="width=device-width, initial-scale=1.0"></head>'
            '<body style="font-family: system-ui, -apple-system, sans-serif; line-height: 1.6; '
            'color: #1F2223; max-width: 560px; margin: 0 auto; padding: 24px;">'
            '<h1 style="font-size: 1.4rem; color: #46519C; font-weight: 600;">A spot opened up</h1>'
            "<p>You are now confirmed for:</p>"
            f"<p><strong>{title}</strong><br/>{level}</p>"
            '<p style="margin-top: 24px; font-size: 0.9rem; color: #5f6264;">'
            "Need to cancel? Use the link below.</p>"
            f'<p style="margin-top: 8px;"><a href="{url}" style="color: #46519C;">Cancel my spot</a></p>'
            "</body></html>"
        )

    def build_text(self, notice: PromotionNotice) -> str:
        return "\n".join(
            [
                "A spot opened up",
                "",
                "You are now confirmed for:",
                f"{notice.event_title} - {notice.ride_level}",
                "",
                "Need to cancel? Use this link:",
                self.cancel_url(notice.cancel_token),
            ]
        )

    def send(self, notice: PromotionNotice) -> bool:
        """Send the promotion email; returns ``False`` when email is not configured."""

        if not self.enabled:
            logger.info("RESEND_API_KEY is not set; skipping waitlist promotion email")
            return False

        resend.api_key = self.api_key
        params = {
            "from": self.from_email,
            "to": [notice.recipient],
            "subject": PROMOTION_SUBJECT,
            "html": self.build_html(notice),
            "text": self.build_text(notice),
        }
        try:
            resend.Emails.send(params)
        except Exception as exc:
            raise errors.UpstreamUnavailable(f"Promotion email failed: {exc}") from exc
        return True
