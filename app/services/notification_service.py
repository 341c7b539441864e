"""Notification service for booking emails.

Emails are sent through SendGrid. Sending is best-effort: failures are
logged and reported as ``False``, never raised, so a notification can not
block or undo a committed booking transition.
"""

import logging
from datetime import UTC, datetime
from html import escape
from typing import Any

import httpx

from app.config import settings
from app.models.booking import Booking
from app.services.pricing_service import format_cents

logger = logging.getLogger(__name__)


def describe_session(booking: Booking) -> str:
    """One-line summary of when and where a session happens."""
    start = booking.scheduled_start_at
    location = booking.location or {}
    place = ", ".join(part for part in (location.get("name"), location.get("address")) if part)
    when = f"{start:%A, %B %d, %Y at %H:%M} UTC ({booking.duration_minutes} min)"
    return f"{when} - {place}" if place else when


class NotificationService:
    """Service for sending booking lifecycle emails."""

    # Notification types
    BOOKING_REQUEST = "booking_request"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_DECLINED = "booking_declined"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_COMPLETED = "booking_completed"
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_EXPIRED = "payment_expired"
    PARTICIPANT_REQUEST = "participant_request"
    PARTICIPANT_ACCEPTED = "participant_accepted"
    PARTICIPANT_DECLINED = "participant_declined"
    HOLD_EXPIRED = "hold_expired"
    LESSON_CANCELLED = "lesson_cancelled"
    COACH_REVIEWED = "coach_reviewed"

    def __init__(self) -> None:
        """Initialize notification service."""
        self._http_client: httpx.AsyncClient | None = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    # ==================== EMAIL (SENDGRID) ====================

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str | None = None,
    ) -> bool:
        """Send an email via SendGrid.

        Args:
            to_email: Recipient email
            subject: Email subject
            html_content: HTML body
            text_content: Plain text body

        Returns:
            bool: True if sent successfully
        """
        if not settings.sendgrid_api_key:
            logger.info(f"Email disabled, not sending '{subject}' to {to_email}")
            return False

        headers = {
            "Authorization": f"Bearer {settings.sendgrid_api_key}",
            "Content-Type": "application/json",
        }
        content: list[dict[str, str]] = [{"type": "text/html", "value": html_content}]
        if text_content:
            content.insert(0, {"type": "text/plain", "value": text_content})
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {
                "email": settings.email_from_address,
                "name": settings.email_from_name,
            },
            "subject": subject,
            "content": content,
        }

        try:
            response = await self.http_client.post(
                "https://api.sendgrid.com/v3/mail/send",
                headers=headers,
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.error(f"Failed to send '{subject}' to {to_email}: {e}")
            return False

        if response.status_code not in (200, 202):
            logger.error(
                f"SendGrid rejected '{subject}' to {to_email}: "
                f"{response.status_code} {response.text[:200]}"
            )
            return False
        return True

    async def notify(
        self,
        to_email: str,
        notification_type: str,
        title: str,
        body: str,
        action_path: str | None = None,
    ) -> bool:
        """Render and send a single notification email."""
        action_url = f"{settings.app_base_url}{action_path}" if action_path else None
        html = self._generate_email_html(title, body, action_url)
        text = f"{title}\n\n{body}"
        if action_url:
            text = f"{text}\n\n{action_url}"
        sent = await self.send_email(to_email, title, html, text)
        logger.debug(f"Notification {notification_type} to {to_email}: sent={sent}")
        return sent

    def _generate_email_html(self, title: str, body: str, action_url: str | None) -> str:
        """Generate simple HTML email content."""
        button_html = ""
        if action_url:
            button_html = f"""
            <p style="margin-top: 24px;">
                <a href="{escape(action_url)}"
                   style="background-color: #0F766E; color: white; padding: 12px 24px;
                          text-decoration: none; border-radius: 6px; display: inline-block;">
                    View Booking
                </a>
            </p>
            """

        return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <meta name="viewport" content="width=device-width, initial-scale=1.0">
        </head>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
                     max-width: 600px; margin: 0 auto; padding: 20px; color: #333;">
            <div style="background-color: #f9fafb; border-radius: 8px; padding: 24px;">
                <h1 style="color: #111827; font-size: 24px; margin-bottom: 16px;">{escape(title)}</h1>
                <p style="color: #4b5563; font-size: 16px; line-height: 1.6;">{escape(body)}</p>
                {button_html}
            </div>
            <p style="color: #9ca3af; font-size: 12px; margin-top: 24px; text-align: center;">
                &copy; {datetime.now(UTC).year} {escape(settings.app_name)}
            </p>
        </body>
        </html>
        """

    # ==================== BOOKING NOTIFICATIONS ====================

    async def notify_booking_request(
        self, coach_email: str, requester_name: str, booking: Booking, amount_cents: int
    ) -> bool:
        return await self.notify(
            coach_email,
            self.BOOKING_REQUEST,
            "New Booking Request",
            f"{requester_name} requested a session on {describe_session(booking)} "
            f"for {format_cents(amount_cents)}. Please accept or decline.",
            f"/dashboard/bookings/{booking.id}",
        )

    async def notify_booking_accepted(self, client_email: str, coach_name: str, booking: Booking) -> bool:
        return await self.notify(
            client_email,
            self.BOOKING_ACCEPTED,
            "Booking Confirmed",
            f"{coach_name} accepted your session on {describe_session(booking)}. "
            "Your payment has been captured.",
            f"/dashboard/bookings/{booking.id}",
        )

    async def notify_booking_declined(
        self, client_email: str, coach_name: str, booking: Booking, reason: str | None
    ) -> bool:
        body = f"{coach_name} declined your session on {describe_session(booking)}. "
        if reason:
            body += f"Reason: {reason}. "
        body += "The hold on your card has been released."
        return await self.notify(client_email, self.BOOKING_DECLINED, "Booking Declined", body)

    async def notify_booking_cancelled(
        self, to_email: str, booking: Booking, refund_cents: int, cancelled_by_name: str
    ) -> bool:
        refund_text = (
            f"A refund of {format_cents(refund_cents)} is on its way."
            if refund_cents
            else "No refund applies to this cancellation."
        )
        return await self.notify(
            to_email,
            self.BOOKING_CANCELLED,
            "Booking Cancelled",
            f"The session on {describe_session(booking)} was cancelled by {cancelled_by_name}. "
            f"{refund_text}",
            f"/dashboard/bookings/{booking.id}",
        )

    async def notify_booking_completed(self, client_email: str, booking: Booking) -> bool:
        return await self.notify(
            client_email,
            self.BOOKING_COMPLETED,
            "Session Completed",
            f"Your session on {describe_session(booking)} has been marked complete. "
            "Leave a review to help other athletes.",
            f"/dashboard/bookings/{booking.id}",
        )

    async def notify_payment_reminder(
        self, client_email: str, booking: Booking, amount_cents: int, final: bool
    ) -> bool:
        window = (
            f"{settings.payment_final_reminder_minutes} minutes"
            if final
            else f"{settings.payment_reminder_hours} hours"
        )
        title = "Final Reminder: Complete Your Payment" if final else "Payment Reminder"
        return await self.notify(
            client_email,
            self.PAYMENT_REMINDER,
            title,
            f"Your booking for {describe_session(booking)} is held for you, but payment of "
            f"{format_cents(amount_cents)} must be completed within {window} "
            "or the booking will be cancelled.",
            f"/dashboard/bookings/{booking.id}/pay",
        )

    async def notify_payment_expired(self, to_email: str, booking: Booking) -> bool:
        return await self.notify(
            to_email,
            self.PAYMENT_EXPIRED,
            "Booking Cancelled - Payment Not Received",
            f"Payment for the session on {describe_session(booking)} was not received within "
            f"{settings.payment_window_hours} hours, so the booking has been cancelled.",
        )

    # ==================== GROUP LESSON NOTIFICATIONS ====================

    async def notify_participant_request(
        self, coach_email: str, participant_name: str, booking: Booking, lesson_title: str
    ) -> bool:
        return await self.notify(
            coach_email,
            self.PARTICIPANT_REQUEST,
            "New Participant Request",
            f"{participant_name} wants to join \"{lesson_title}\" on {describe_session(booking)}.",
            f"/dashboard/lessons/{booking.id}",
        )

    async def notify_participant_accepted(
        self, participant_email: str, booking: Booking, lesson_title: str
    ) -> bool:
        return await self.notify(
            participant_email,
            self.PARTICIPANT_ACCEPTED,
            "You're In!",
            f"Your spot in \"{lesson_title}\" on {describe_session(booking)} is confirmed "
            "and your payment has been captured.",
            f"/dashboard/bookings/{booking.id}",
        )

    async def notify_participant_declined(
        self, participant_email: str, booking: Booking, lesson_title: str
    ) -> bool:
        return await self.notify(
            participant_email,
            self.PARTICIPANT_DECLINED,
            "Lesson Request Declined",
            f"The coach declined your request to join \"{lesson_title}\". "
            "The hold on your card has been released.",
        )

    async def notify_hold_expired(
        self, participant_email: str, booking: Booking, lesson_title: str
    ) -> bool:
        return await self.notify(
            participant_email,
            self.HOLD_EXPIRED,
            "Lesson Request Expired",
            f"The coach did not respond to your request to join \"{lesson_title}\" in time. "
            "The hold on your card has been released.",
        )

    async def notify_lesson_cancelled(
        self, participant_email: str, booking: Booking, refund_cents: int
    ) -> bool:
        return await self.notify(
            participant_email,
            self.LESSON_CANCELLED,
            "Lesson Cancelled",
            f"The coach cancelled the session on {describe_session(booking)}. "
            + (f"You will be refunded {format_cents(refund_cents)}." if refund_cents else ""),
        )

    # ==================== ACCOUNT NOTIFICATIONS ====================

    async def notify_coach_reviewed(self, coach_email: str, approved: bool, notes: str | None) -> bool:
        if approved:
            title = "Your Coach Profile Is Approved"
            body = "You can now receive bookings. Finish payout setup to get paid."
        else:
            title = "Coach Application Update"
            body = "Your coach application was not approved."
            if notes:
                body += f" Notes: {notes}"
        return await self.notify(coach_email, self.COACH_REVIEWED, title, body, "/dashboard/coach")


# Singleton instance
notification_service = NotificationService()
