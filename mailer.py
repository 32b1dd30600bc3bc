import os, ssl, smtplib, logging
from datetime import datetime, timezone
from email.mime.text import MIMEText
from cryptography.fernet import Fernet, InvalidToken

import db

COMPONENT = "SMTP"
SERVICES = {
    "GMAIL": ("smtp.gmail.com", 465, True),
    "OUTLOOK": ("smtp.office365.com", 587, False),
    "HOTMAIL": ("smtp-mail.outlook.com", 587, False),
    "YAHOO": ("smtp.mail.yahoo.com", 465, True),
    "CUSTOM": (None, 587, False),
}
DEFAULT_TIMEOUT_MS = 10000


class MailerError(Exception):
    pass


def _setting(value, name):
    """Empty string for a missing setting; MailerError for a non-string one."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise MailerError(f"{name} must be a string")
    return value


class Mailer:
    """SMTP settings store (password encrypted at rest) and sender."""

    def __init__(self, key_path, db_path):
        self.key_path = key_path
        self.db_path = db_path
        if not os.path.exists(key_path):
            with open(key_path, "wb") as f: f.write(Fernet.generate_key())
        with open(key_path, "rb") as f:
            self.key = f.read()

    def encrypt(self, text):
        return Fernet(self.key).encrypt(text.encode()).decode()

    def decrypt(self, enc):
        try:
            return Fernet(self.key).decrypt(enc.encode()).decode()
        except (InvalidToken, ValueError):
            return ""

    @property
    def cfg(self):
        record = db.get_component(self.db_path, COMPONENT)
        return record["componentConfig"] if record else {}

    def save_config(self, data):
        """
        Validate and store SMTP settings.

        An empty auth.pass keeps the stored password. Returns the safe view.

        Raises:
            MailerError: if a required setting is missing or malformed
        """
        if not isinstance(data, dict):
            raise MailerError("SMTP settings must be a JSON object")
        current = self.cfg
        service = str(data.get("service") or current.get("service") or "CUSTOM").upper()
        if service not in SERVICES:
            raise MailerError(f"Unknown service {service}; expected one of {', '.join(SERVICES)}")
        default_host, default_port, default_secure = SERVICES[service]

        auth = data.get("auth") if isinstance(data.get("auth"), dict) else {}
        host = _setting(data.get("host") or default_host, "host").strip()
        user = _setting(auth.get("user"), "auth.user").strip()
        password = _setting(auth.get("pass"), "auth.pass")
        from_address = _setting(data.get("fromAddress"), "fromAddress").strip()
        reply_to = _setting(data.get("replyTo"), "replyTo").strip() or None

        if not host or not user or not from_address:
            raise MailerError("host, auth.user and fromAddress are required")
        if not password and not current.get("auth", {}).get("pass"):
            raise MailerError("auth.pass is required")
        try:
            port = int(data.get("port") or default_port)
            timeout = int(data.get("timeout") or DEFAULT_TIMEOUT_MS)
        except (TypeError, ValueError):
            raise MailerError("port and timeout must be numbers")

        tls = data.get("tls") if isinstance(data.get("tls"), dict) else {}
        cfg = {
            "service": service,
            "host": host,
            "port": port,
            "secure": bool(data.get("secure", default_secure)),
            "auth": {
                "user": user,
                # If password is empty, keep the existing encrypted one
                "pass": self.encrypt(password) if password else current["auth"]["pass"],
            },
            "fromAddress": from_address,
            "replyTo": reply_to,
            "tls": {"rejectUnauthorized": bool(tls.get("rejectUnauthorized", True))},
            "timeout": timeout,
            "isDefault": True,
            "lastTested": current.get("lastTested"),
            "testResult": current.get("testResult"),
        }
        db.upsert_component(self.db_path, COMPONENT, cfg)
        logging.info("SMTP configuration updated (service=%s host=%s)", service, host)
        return self.get_config_safe()

    def get_config_safe(self):
        out = dict(self.cfg)
        if not out:
            return None
        out["auth"] = {"user": out.get("auth", {}).get("user")}
        return out

    def _connect(self, cfg):
        pw = self.decrypt(cfg["auth"]["pass"])
        ctx = ssl.create_default_context()
        if not cfg.get("tls", {}).get("rejectUnauthorized", True):
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        timeout = cfg.get("timeout", DEFAULT_TIMEOUT_MS) / 1000
        if cfg.get("secure"):
            s = smtplib.SMTP_SSL(cfg["host"], cfg["port"], timeout=timeout, context=ctx)
        else:
            s = smtplib.SMTP(cfg["host"], cfg["port"], timeout=timeout)
        try:
            if not cfg.get("secure"):
                s.starttls(context=ctx)
            s.login(cfg["auth"]["user"], pw)
        except (smtplib.SMTPException, OSError):
            s.close()
            raise
        return s

    def _record_result(self, cfg, success, message):
        now = datetime.now(timezone.utc).isoformat()
        cfg["lastTested"] = now
        cfg["testResult"] = {"success": success, "message": message, "timestamp": now}
        db.upsert_component(self.db_path, COMPONENT, cfg)

    def send_email(self, to, subject, body):
        """
        Send a plain-text message with the stored settings.

        Raises:
            MailerError: if SMTP is not configured
            smtplib.SMTPException, OSError: on delivery failure (after recording it)
        """
        cfg = self.cfg
        if not cfg or not cfg.get("host"):
            raise MailerError("No active SMTP configuration found")

        msg = MIMEText(body)
        msg["From"] = cfg["fromAddress"]
        msg["To"] = to
        msg["Subject"] = subject
        if cfg.get("replyTo"):
            msg["Reply-To"] = cfg["replyTo"]

        try:
            s = self._connect(cfg)
            try:
                s.send_message(msg)
            finally:
                s.quit()
        except (smtplib.SMTPException, OSError) as e:
            logging.warning("[Mailer] Send error: %s", e)
            self._record_result(cfg, False, str(e))
            raise
        self._record_result(cfg, True, "Email sent successfully")
        logging.info("Email sent to %s", to)
        return True
