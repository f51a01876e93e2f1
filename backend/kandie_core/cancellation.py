from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from . import errors
from .notifications import PromotionNotice, PromotionNotifier
from .registration import Registration, parse_event_id, parse_ride_level
from .store import RegistrationStore

logger = logging.getLogger(__name__)

# Bounded retries when the chosen waitlist row changes between select and update.
MAX_PROMOTION_ATTEMPTS = 3


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_cancel_token() -> Tuple[str, str]:
    """Return a new cancel-link token and the hash that gets stored."""

    token = secrets.token_urlsafe(24)
    return token, hash_token(token)


@dataclass
class CancellationOutcome:
    cancelled: Registration
    promoted: Optional[Registration] = None
    notified: bool = False


class CancellationWorkflow:
    """Cancel a registration and hand a freed confirmed slot to the waitlist.

    Only a confirmed cancellation frees a slot, so only that path promotes.
    The promotion is not checked against capacity: the slot that was just
    released is the one being filled. Notification is best effort and its
    failures never undo the promotion.
    """

    def __init__(
        self,
        store: RegistrationStore | None = None,
        notifier: PromotionNotifier | None = None,
    ) -> None:
        self.store = store or RegistrationStore()
        self.notifier = notifier or PromotionNotifier()

    def cancel_registration(self, user_id: str, event_id: Any, ride_level: Any) -> CancellationOutcome:
        event_id = parse_event_id(event_id)
        ride_level = parse_ride_level(ride_level)
        if not user_id:
            raise errors.Unauthorized("Authenticated user id is required")
        self.store.require_configured()

        cancelled = self.store.cancel_active(event_id, ride_level, user_id)
        if cancelled is None:
            raise errors.NotFound("Registration not found or already cancelled")
        return self._after_cancel(cancelled)

    def cancel_by_token(self, token: Any) -> CancellationOutcome:
        token = token.strip() if isinstance(token, str) else ""
        if not token:
            raise errors.ValidationError("Missing cancellation token")
        self.store.require_configured()

        cancelled = self.store.cancel_by_token_hash(hash_token(token))
        if cancelled is None:
            raise errors.NotFound("Cancellation link is invalid or already used")
        return self._after_cancel(cancelled)

    def _after_cancel(self, cancelled: Registration) -> CancellationOutcome:
        outcome = CancellationOutcome(cancelled=cancelled)
        if cancelled.is_waitlist:
            return outcome

        try:
            promoted, token = self._promote_next(cancelled.event_id, cancelled.ride_level)
        except errors.Internal as exc:
            # The cancel is already committed; report it as done.
            logger.error(
                "Waitlist promotion for event %s (%s) failed after cancelling %s: %s",
                cancelled.event_id,
                cancelled.ride_level,
                cancelled.id,
                exc,
            )
            return outcome

        if promoted is None or token is None:
            return outcome
        outcome.promoted = promoted
        outcome.notified = self._notify(promoted, token)
        return outcome

    def _promote_next(self, event_id: int, ride_level: str) -> Tuple[Optional[Registration], Optional[str]]:
        for _ in range(MAX_PROMOTION_ATTEMPTS):
            candidate = self.store.next_waitlisted(event_id, ride_level)
            if candidate is None:
                return None, None

            token, token_hash = create_cancel_token()
            promoted = self.store.promote(candidate.id, token_hash)
            if promoted is not None:
                logger.info(
                    "Promoted registration %s off the waitlist for event %s (%s)",
                    promoted.id,
                    event_id,
                    ride_level,
                )
                return promoted, token
            logger.info("Waitlist candidate %s changed before promotion; trying the next one", candidate.id)

        logger.warning(
            "No waitlist promotion for event %s (%s) after %d attempts",
            event_id,
            ride_level,
            MAX_PROMOTION_ATTEMPTS,
        )
        return None, None

    def _notify(self, promoted: Registration, token: str) -> bool:
        if not self.notifier.enabled:
            logger.info("Email is not configured; promoted registration %s was not notified", promoted.id)
            return False

        try:
            recipient = promoted.email
            if not recipient and promoted.user_id:
                recipient = self.store.fetch_profile_email(promoted.user_id)
            if not recipient:
                logger.info("No email address on file for promoted registration %s", promoted.id)
                return False

            notice = PromotionNotice(
                recipient=recipient,
                event_title=self.notifier.fetch_event_title(promoted.event_id),
                ride_level=promoted.ride_level,
                cancel_token=token,
            )
            return self.notifier.send(notice)
        except (errors.UpstreamUnavailable, errors.Internal) as exc:
            logger.warning("Waitlist promotion email failed for registration %s: %s", promoted.id, exc)
            return False
