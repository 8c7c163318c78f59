import smtplib
from datetime import datetime, timedelta, timezone
from email.errors import HeaderParseError

from sakalsense.config import Role
from sakalsense.service.email import (
    EmailResult,
    EmailService,
    EmailType,
    MailLog,
    MailStatus,
    OutboundEmail,
    redact_email,
    sanitize_email_address,
    validate_email_address,
)
from sakalsense.service.notifications import NotificationQueue, NotificationWorker
from sakalsense.storage.redis_cache import MemoryCache


class FlakyTransport:
    """Stands in for EmailService.send: fails ``failures`` times, then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self, email):
        self.calls += 1
        if self.calls <= self.failures:
            return EmailResult(success=False, error="421 try again later")
        return EmailResult(success=True, message_id="<ok@example.com>")


class RecordingSMTP:
    """Captures what would have been handed to the SMTP server."""

    sent = []

    def __init__(self, *args, **kwargs):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        return None

    def login(self, user, password):
        return None

    def sendmail(self, from_addr, to_addrs, msg):
        self.sent.append((from_addr, list(to_addrs), msg))


def _email(to="jane@example.com") -> OutboundEmail:
    return OutboundEmail(to=to, subject="Hello", html_body="<p>hi</p>", text_body="hi")


def test_address_helpers():
    assert validate_email_address("jane.doe+tag@example.co.in")
    assert not validate_email_address("jane@")
    assert not validate_email_address(None)
    assert sanitize_email_address(" Jane@Example.com\r\nBcc: x@y.z ") == "jane@example.combcc: x@y.z"
    assert redact_email("jane@example.com") == "ja***@example.com"
    assert redact_email("nonsense") == "redacted"


def test_dev_mode_send_logs_instead_of_sending(monkeypatch):
    def _no_smtp(*args, **kwargs):
        raise AssertionError("SMTP must not be used in dev mode")

    monkeypatch.setattr(smtplib, "SMTP", _no_smtp)
    service = EmailService(base_url="https://app.example.com/")

    result = service.send(_email())
    assert result.success
    assert result.message_id.startswith("dev-")
    assert not service.is_configured


def test_invalid_recipient_is_not_sent():
    result = EmailService().send(_email(to="not-an-address"))
    assert not result.success
    assert result.error == "Invalid recipient email address"


def test_smtp_failure_becomes_result(monkeypatch):
    class BrokenSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, "service not available")

    monkeypatch.setattr(smtplib, "SMTP", BrokenSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

    result = service.send(_email())
    assert not result.success
    assert result.error


def test_subject_line_breaks_cannot_add_headers(monkeypatch):
    monkeypatch.setattr(RecordingSMTP, "sent", [])
    monkeypatch.setattr(smtplib, "SMTP", RecordingSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    email = service.test_email("jane@example.com", "Hello\r\nBcc: victim@evil.com", "body")

    result = service.send(email)

    assert result.success
    [(_, recipients, payload)] = RecordingSMTP.sent
    assert recipients == ["jane@example.com"]
    assert not any(line.startswith("Bcc:") for line in payload.splitlines())
    assert service.build_message(email)["Subject"] == "Hello Bcc: victim@evil.com"


def test_message_build_error_becomes_result(monkeypatch):
    def _broken(email):
        raise HeaderParseError("header value appears to contain an embedded header")

    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    monkeypatch.setattr(service, "build_message", _broken)

    result = service.send(_email())
    assert not result.success
    assert result.error == "Message could not be built"


def test_composed_messages():
    service = EmailService(base_url="https://app.example.com/", from_name="SakalSense")

    reset = service.password_reset_email("jane@example.com", "Jane", "usr_abc")
    assert reset.email_type is EmailType.PASSWORD_RESET
    assert "https://app.example.com/reset-password?token=usr_abc" in reset.text_body

    otp = service.otp_email("jane@example.com", None, "482913")
    assert otp.subject == "Your Verification Code"
    assert "482913" in otp.text_body
    assert "10 minutes" in otp.text_body

    rejected = service.admin_rejected_email("jane@example.com", "Jane", None)
    assert "Reason:" not in rejected.text_body

    test_mail = service.test_email("ops@example.com", "Ping", "<b>body</b>")
    assert test_mail.email_type is EmailType.TEST
    assert "<b>body</b>" not in test_mail.html_body

    message = service.build_message(_email())
    assert message["To"] == "jane@example.com"
    assert message["Message-ID"]


async def test_worker_retries_with_backoff(monkeypatch):
    sleeps = []

    async def _sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr("sakalsense.service.notifications.asyncio.sleep", _sleep)
    service = EmailService()
    transport = FlakyTransport(failures=2)
    monkeypatch.setattr(service, "send", transport)
    log = MailLog(MemoryCache())
    worker = NotificationWorker(
        NotificationQueue(), service, log, max_attempts=3, initial_delay=1.0, backoff_multiplier=2.0
    )

    result = await worker.deliver(_email())

    assert result.success
    assert transport.calls == 3
    assert sleeps == [1.0, 2.0]
    [entry] = await log.recent()
    assert entry["status"] == MailStatus.SENT.value
    assert entry["retry_count"] == 2


async def test_worker_records_final_failure(monkeypatch):
    async def _sleep(delay):
        return None

    monkeypatch.setattr("sakalsense.service.notifications.asyncio.sleep", _sleep)
    service = EmailService()
    monkeypatch.setattr(service, "send", FlakyTransport(failures=10))
    log = MailLog(MemoryCache())
    worker = NotificationWorker(NotificationQueue(), service, log, max_attempts=3)

    result = await worker.deliver(_email())

    assert not result.success
    assert await log.stats() == {"total": 1, "sent": 0, "failed": 1}


async def test_worker_drains_queue_on_stop(monkeypatch):
    service = EmailService()
    transport = FlakyTransport(failures=0)
    monkeypatch.setattr(service, "send", transport)
    queue = NotificationQueue()
    worker = NotificationWorker(queue, service, MailLog(MemoryCache()))

    await worker.start()
    assert queue.enqueue(_email())
    assert queue.enqueue(_email("john@example.com"))
    await worker.stop()

    assert transport.calls == 2
    assert not worker.running


async def test_full_queue_refuses_new_mail():
    queue = NotificationQueue(maxsize=1)
    assert queue.enqueue(_email())
    assert not queue.enqueue(_email())
    assert len(queue.drain_nowait()) == 1
    assert queue.qsize() == 0


async def test_mail_log_recent_respects_limit():
    log = MailLog(MemoryCache())
    await log.record(_email("a@example.com"), MailStatus.SENT, duration_ms=5)
    await log.record(_email("b@example.com"), MailStatus.FAILED, duration_ms=5, error_message="boom")

    assert len(await log.recent(1)) == 1
    assert {entry["recipient"] for entry in await log.recent(50)} == {"a@example.com", "b@example.com"}
    assert await log.stats() == {"total": 2, "sent": 1, "failed": 1}


def test_send_test_mail_endpoint(client, runtime, seed_account):
    seed_account(Role.ADMINISTRATOR, "root@example.com", "RootPassword123!")
    login = client.post(
        "/v1/auth/administrator/login",
        json={"email": "root@example.com", "password": "RootPassword123!"},
    )
    assert login.status_code == 200

    response = client.post(
        "/v1/mail/test", json={"to": "ops@example.com", "subject": "Ping", "body": "Pong"}
    )
    assert response.status_code == 200
    assert response.json()["data"]["success"] is True

    stats = client.get("/v1/mail/stats").json()["data"]
    assert stats == {"total": 1, "sent": 1, "failed": 0}

def test_send_test_mail_rejects_multiline_subject(client, runtime, seed_account):
    seed_account(Role.ADMINISTRATOR, "root@example.com", "RootPassword123!")
    client.post(
        "/v1/auth/administrator/login",
        json={"email": "root@example.com", "password": "RootPassword123!"},
    )

    response = client.post(
        "/v1/mail/test",
        json={"to": "ops@example.com", "subject": "Hello\r\nBcc: victim@evil.com", "body": "Pong"},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"
    assert client.get("/v1/mail/stats").json()["data"]["total"] == 0


async def test_mail_log_reads_index_not_keyspace(monkeypatch):
    cache = MemoryCache()

    async def _no_scan(prefix):
        raise AssertionError("mail log must not scan the keyspace")

    monkeypatch.setattr(cache, "keys_with_prefix", _no_scan)
    log = MailLog(cache, index_size=3)
    for name in ("a", "b", "c", "d"):
        await log.record(_email(f"{name}@example.com"), MailStatus.SENT, duration_ms=1)

    recent = await log.recent(50)
    assert [entry["recipient"] for entry in recent] == ["d@example.com", "c@example.com", "b@example.com"]
    assert await log.stats() == {"total": 4, "sent": 4, "failed": 0}


async def test_mail_log_stats_cover_last_seven_days():
    now = [datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)]
    log = MailLog(MemoryCache(), clock=lambda: now[0])

    await log.record(_email(), MailStatus.FAILED, duration_ms=1, error_message="boom")
    now[0] += timedelta(days=3)
    await log.record(_email(), MailStatus.SENT, duration_ms=1)
    await log.record(_email(), MailStatus.PENDING, duration_ms=1)
    assert await log.stats() == {"total": 3, "sent": 1, "failed": 1}

    now[0] += timedelta(days=4)
    assert await log.stats() == {"total": 2, "sent": 1, "failed": 0}
