"""Emergency (SOS) alerts.

The alert is sent after a short countdown during which the patient can
cancel.  Once the countdown reaches zero the send begins and can no longer be
revoked; :meth:`SOSCountdown.cancel` then reports ``False``.
"""

from __future__ import annotations

import asyncio
import html
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

import structlog

from healthtracker.notifications_service import DeliveryResult, Notifier
from healthtracker.time_utils import isoformat_utc, utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EmergencyAlert:
    patient_name: str
    condition: str = "Emergency medical assistance needed"
    location: str = "Location unavailable"
    contact_number: Optional[str] = None
    raised_at: datetime = field(default_factory=utc_now)


def build_emergency_email(alert: EmergencyAlert) -> Tuple[str, str]:
    """Return ``(subject, html_body)`` for *alert*."""

    subject = f"MEDICAL EMERGENCY: {alert.patient_name}"
    body = (
        '<h1 style="color: #ff0000;">MEDICAL EMERGENCY ALERT</h1>'
        '<div style="font-size: 16px; margin: 20px 0;">'
        f"<p><strong>Patient:</strong> {html.escape(alert.patient_name)}</p>"
        f"<p><strong>Location:</strong> {html.escape(alert.location)}</p>"
        f"<p><strong>Condition:</strong> {html.escape(alert.condition)}</p>"
        f"<p><strong>Contact Number:</strong> {html.escape(alert.contact_number or 'Not provided')}</p>"
        f"<p><strong>Time:</strong> {isoformat_utc(alert.raised_at)}</p>"
        "</div>"
        '<p style="color: #ff0000; font-weight: bold;">'
        "This is an emergency alert. Please respond immediately.</p>"
    )
    return subject, body


async def send_emergency_alert(
    notifier: Notifier, recipient: str, alert: EmergencyAlert
) -> DeliveryResult:
    subject, body = build_emergency_email(alert)
    result = await asyncio.to_thread(notifier.send, recipient, subject, body)
    if result.ok:
        logger.info("sos_alert_sent", patient=alert.patient_name)
    else:
        logger.error("sos_alert_failed", patient=alert.patient_name, error=result.error)
    return result


class CountdownState(str, Enum):
    IDLE = "idle"
    COUNTING = "counting"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SOSCountdown:
    """Count down, then invoke *send* unless cancelled first."""

    def __init__(
        self,
        send: Callable[[], Awaitable[DeliveryResult]],
        *,
        seconds: int = 5,
        tick: float = 1.0,
        on_tick: Optional[Callable[[int], None]] = None,
    ) -> None:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        self._send = send
        self._seconds = seconds
        self._tick = tick
        self._on_tick = on_tick
        self._task: Optional[asyncio.Task] = None
        self.state = CountdownState.IDLE
        self.remaining = seconds

    @property
    def active(self) -> bool:
        return self.state in (CountdownState.COUNTING, CountdownState.SENDING)

    def start(self) -> asyncio.Task:
        if self.active:
            raise RuntimeError("SOS countdown already running")
        self.remaining = self._seconds
        self.state = CountdownState.COUNTING
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    def cancel(self) -> bool:
        """Abort the alert; only possible while still counting down."""

        if self.state is not CountdownState.COUNTING or self._task is None:
            return False
        self._task.cancel()
        self.state = CountdownState.CANCELLED
        logger.info("sos_countdown_cancelled", remaining=self.remaining)
        return True

    async def wait(self) -> Optional[DeliveryResult]:
        """Wait for the countdown to finish; ``None`` if it was cancelled."""

        if self._task is None:
            return None
        await asyncio.wait({self._task})
        if self._task.cancelled():
            return None
        return self._task.result()

    async def _run(self) -> DeliveryResult:
        while self.remaining > 0:
            await asyncio.sleep(self._tick)
            self.remaining -= 1
            if self._on_tick is not None:
                self._on_tick(self.remaining)
        self.state = CountdownState.SENDING
        result = await self._send()
        self.state = CountdownState.SENT if result.ok else CountdownState.FAILED
        return result


__all__ = [
    "CountdownState",
    "EmergencyAlert",
    "SOSCountdown",
    "build_emergency_email",
    "send_emergency_alert",
]
