import smtplib

import pytest

import db
import mailer


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, context=None):
        self.host, self.port, self.timeout = host, port, timeout
        self.sent, self.logged_in, self.started_tls, self.closed = [], None, False, False
        FakeSMTP.instances.append(self)

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        self.sent.append(msg)

    def quit(self):
        self.closed = True

    def close(self):
        self.closed = True


@pytest.fixture
def mail(tmp_path, db_file, monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    return mailer.Mailer(str(tmp_path / "fernet.key"), db_file)


SETTINGS = {
    "service": "CUSTOM", "host": "mail.example.com", "port": 2525, "secure": False,
    "auth": {"user": "bot", "pass": "hunter22"}, "fromAddress": "bot@example.com",
    "replyTo": "ops@example.com",
}


def test_password_is_encrypted_at_rest(mail, db_file) -> None:
    mail.save_config(SETTINGS)
    stored = db.get_component(db_file, "SMTP")["componentConfig"]
    assert stored["auth"]["pass"] != "hunter22"
    assert mail.decrypt(stored["auth"]["pass"]) == "hunter22"
    assert mail.get_config_safe()["auth"] == {"user": "bot"}


def test_empty_password_keeps_existing(mail) -> None:
    mail.save_config(SETTINGS)
    mail.save_config({**SETTINGS, "host": "smtp2.example.com", "auth": {"user": "bot", "pass": ""}})
    assert mail.cfg["host"] == "smtp2.example.com"
    assert mail.decrypt(mail.cfg["auth"]["pass"]) == "hunter22"


def test_known_service_fills_host(mail) -> None:
    mail.save_config({"service": "gmail", "auth": {"user": "me", "pass": "pw"}, "fromAddress": "me@gmail.com"})
    assert (mail.cfg["host"], mail.cfg["port"], mail.cfg["secure"]) == ("smtp.gmail.com", 465, True)


@pytest.mark.parametrize("data", [
    None,
    {"service": "CARRIER_PIGEON"},
    {**SETTINGS, "fromAddress": ""},
    {**SETTINGS, "auth": {"user": "bot"}},
    {**SETTINGS, "port": "abc"},
    {**SETTINGS, "host": 5},
    {**SETTINGS, "auth": {"user": 7, "pass": "x"}},
    {**SETTINGS, "fromAddress": ["bot@example.com"]},
    {**SETTINGS, "replyTo": 1},
])
def test_invalid_settings(mail, data) -> None:
    with pytest.raises(mailer.MailerError):
        mail.save_config(data)


def test_send_email_records_success(mail) -> None:
    mail.save_config(SETTINGS)
    assert mail.send_email("someone@example.com", "Hello", "Body") is True

    smtp = FakeSMTP.instances[-1]
    assert (smtp.host, smtp.port, smtp.timeout) == ("mail.example.com", 2525, 10)
    assert smtp.started_tls and smtp.closed
    assert smtp.logged_in == ("bot", "hunter22")
    msg = smtp.sent[0]
    assert msg["To"] == "someone@example.com"
    assert msg["Reply-To"] == "ops@example.com"
    assert mail.cfg["testResult"]["success"] is True


def test_send_email_failure_is_recorded_and_raised(mail, monkeypatch) -> None:
    mail.save_config(SETTINGS)

    def refuse(self, user, password):
        raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    monkeypatch.setattr(FakeSMTP, "login", refuse)
    with pytest.raises(smtplib.SMTPAuthenticationError):
        mail.send_email("someone@example.com", "Hello", "Body")
    assert mail.cfg["testResult"]["success"] is False
    assert FakeSMTP.instances[-1].closed


def test_starttls_failure_closes_connection(mail, monkeypatch) -> None:
    mail.save_config(SETTINGS)

    def no_tls(self, context=None):
        raise smtplib.SMTPNotSupportedError("STARTTLS extension not supported by server.")

    monkeypatch.setattr(FakeSMTP, "starttls", no_tls)
    with pytest.raises(smtplib.SMTPNotSupportedError):
        mail.send_email("someone@example.com", "Hello", "Body")
    smtp = FakeSMTP.instances[-1]
    assert smtp.closed
    assert smtp.logged_in is None
    assert mail.cfg["testResult"]["success"] is False


def test_send_without_config(mail) -> None:
    with pytest.raises(mailer.MailerError):
        mail.send_email("a@b.io", "s", "m")
