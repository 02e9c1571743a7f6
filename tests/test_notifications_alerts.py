import asyncio
import smtplib
from datetime import datetime, timezone

import pytest

from healthtracker.alerts import (
    CountdownState,
    EmergencyAlert,
    SOSCountdown,
    build_emergency_email,
    send_emergency_alert,
)
from healthtracker.config import SmtpSettings
from healthtracker.notifications_service import DeliveryResult, EmailNotificationService


class _FakeSMTP:
    def __init__(self, error=None):
        self.error = error
        self.calls = []
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append('starttls')

    def login(self, username, password):
        self.calls.append(('login', username, password))

    def send_message(self, msg):
        if self.error is not None:
            raise self.error
        self.sent.append(msg)


class _RecordingNotifier:
    def __init__(self, ok=True):
        self.ok = ok
        self.messages = []

    def send(self, recipient, subject, body):
        self.messages.append((recipient, subject, body))
        return DeliveryResult(self.ok, recipient, subject, error=None if self.ok else 'smtp down')


SMTP = SmtpSettings(host='smtp.example.com', port=587, username='bot@example.com', password='pw')


def test_send_builds_html_message_and_uses_starttls():
    fake = _FakeSMTP()
    service = EmailNotificationService(SMTP, smtp_factory=lambda settings: fake)

    result = service.send('patient@example.com', 'Hello', '<p>Hi</p>')

    assert result.ok
    assert fake.calls == ['starttls', ('login', 'bot@example.com', 'pw')]
    msg = fake.sent[0]
    assert msg['To'] == 'patient@example.com'
    assert msg['From'] == 'bot@example.com'
    assert msg['Subject'] == 'Hello'
    assert msg.get_body(preferencelist=('html',)).get_content().strip() == '<p>Hi</p>'


def test_ssl_connection_skips_starttls():
    fake = _FakeSMTP()
    settings = SmtpSettings(host='smtp.example.com', port=465, username='u', password='p', use_ssl=True, sender='alerts@example.com')
    service = EmailNotificationService(settings, smtp_factory=lambda s: fake)

    assert service.send('x@example.com', 's', 'b').ok
    assert 'starttls' not in fake.calls
    assert fake.sent[0]['From'] == 'alerts@example.com'


def test_delivery_failure_is_reported_not_raised():
    fake = _FakeSMTP(error=smtplib.SMTPRecipientsRefused({'x@example.com': (550, b'no such user')}))
    service = EmailNotificationService(SMTP, smtp_factory=lambda s: fake)

    result = service.send('x@example.com', 'Subject', 'Body')

    assert not result.ok
    assert result.error


def test_connection_error_is_reported():
    def _refuse(settings):
        raise ConnectionRefusedError('refused')

    result = EmailNotificationService(SMTP, smtp_factory=_refuse).send('x@example.com', 's', 'b')
    assert not result.ok
    assert 'refused' in result.error


def test_unconfigured_smtp_fails_without_connecting():
    def _unexpected(settings):
        raise AssertionError('should not connect')

    service = EmailNotificationService(SmtpSettings(host=None, port=587, username=None, password=None), smtp_factory=_unexpected)
    result = service.send('x@example.com', 's', 'b')
    assert not result.ok
    assert result.error == 'Email service not configured'


@pytest.mark.asyncio
async def test_send_async_runs_in_thread():
    fake = _FakeSMTP()
    service = EmailNotificationService(SMTP, smtp_factory=lambda s: fake)
    result = await service.send_async('x@example.com', 's', 'b')
    assert result.ok
    assert len(fake.sent) == 1


def test_emergency_email_escapes_user_input():
    alert = EmergencyAlert(
        patient_name='Bob <script>',
        location='Main St & 5th',
        condition='Chest pain',
        raised_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )
    subject, body = build_emergency_email(alert)
    assert subject == 'MEDICAL EMERGENCY: Bob <script>'
    assert 'Bob &lt;script&gt;' in body
    assert 'Main St &amp; 5th' in body
    assert 'Not provided' in body
    assert '2024-05-01T12:00:00Z' in body


@pytest.mark.asyncio
async def test_send_emergency_alert_uses_notifier():
    notifier = _RecordingNotifier()
    result = await send_emergency_alert(notifier, 'er@example.com', EmergencyAlert(patient_name='Bob'))
    assert result.ok
    recipient, subject, _ = notifier.messages[0]
    assert recipient == 'er@example.com'
    assert subject == 'MEDICAL EMERGENCY: Bob'


@pytest.mark.asyncio
async def test_countdown_sends_when_it_reaches_zero():
    notifier = _RecordingNotifier()
    ticks = []

    async def _send():
        return await send_emergency_alert(notifier, 'er@example.com', EmergencyAlert(patient_name='Bob'))

    countdown = SOSCountdown(_send, seconds=3, tick=0.001, on_tick=ticks.append)
    countdown.start()
    result = await countdown.wait()

    assert result.ok
    assert ticks == [2, 1, 0]
    assert countdown.state is CountdownState.SENT
    assert len(notifier.messages) == 1


@pytest.mark.asyncio
async def test_countdown_can_be_cancelled_before_sending():
    sent = []

    async def _send():
        sent.append(True)
        return DeliveryResult(True, 'er@example.com', 'sos')

    countdown = SOSCountdown(_send, seconds=5, tick=0.05)
    countdown.start()
    await asyncio.sleep(0.01)

    assert countdown.cancel() is True
    assert await countdown.wait() is None
    assert countdown.state is CountdownState.CANCELLED
    assert sent == []


@pytest.mark.asyncio
async def test_cancel_has_no_effect_once_sending_started():
    release = asyncio.Event()

    async def _send():
        await release.wait()
        return DeliveryResult(True, 'er@example.com', 'sos')

    countdown = SOSCountdown(_send, seconds=0)
    countdown.start()
    for _ in range(10):
        if countdown.state is CountdownState.SENDING:
            break
        await asyncio.sleep(0)

    assert countdown.state is CountdownState.SENDING
    assert countdown.cancel() is False
    release.set()
    result = await countdown.wait()
    assert result.ok
    assert countdown.state is CountdownState.SENT


@pytest.mark.asyncio
async def test_failed_send_marks_countdown_failed():
    async def _send():
        return DeliveryResult(False, 'er@example.com', 'sos', error='smtp down')

    countdown = SOSCountdown(_send, seconds=0)
    countdown.start()
    result = await countdown.wait()
    assert not result.ok
    assert countdown.state is CountdownState.FAILED


@pytest.mark.asyncio
async def test_countdown_cannot_start_twice():
    async def _send():
        return DeliveryResult(True, 'er@example.com', 'sos')

    countdown = SOSCountdown(_send, seconds=5, tick=0.05)
    countdown.start()
    with pytest.raises(RuntimeError):
        countdown.start()
    countdown.cancel()
    await countdown.wait()


def test_countdown_rejects_negative_duration():
    async def _send():
        return DeliveryResult(True, 'er@example.com', 'sos')

    with pytest.raises(ValueError):
        SOSCountdown(_send, seconds=-1)
