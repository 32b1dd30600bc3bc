"""
Record shaping and input validation for the certificate and user stores.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import cert_checker

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8


def certificate_record(info: cert_checker.CertificateInfo) -> Dict[str, Any]:
    """
    Map a live certificate lookup onto the stored certificate document.

    Textual validity dates are parsed strictly; a date that cannot be read
    is stored as None rather than guessed.
    """
    valid_from = cert_checker.parse_cert_time(info.valid_from)
    valid_to = cert_checker.parse_cert_time(info.valid_to)
    return {
        "name": info.website,
        "issuer": info.issuer,
        "validFrom": valid_from.isoformat() if valid_from else None,
        "validTo": valid_to.isoformat() if valid_to else None,
        "serialNumber": info.serial_number,
        "subject": info.common_name,
        "organization": info.organization,
        "organizationalUnit": info.organizational_unit,
        "metadata": {
            "country": info.country,
            "state": info.state,
            "locality": info.locality,
            "alternativeNames": list(info.alternative_names),
            "fingerprint": info.fingerprint,
            "bits": info.bits,
        },
    }


def parse_date(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 date or datetime; naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def with_scheme(value: str) -> str:
    """Prefix 'https://' unless the value already names a scheme."""
    value = value.strip()
    return value if "://" in value else f"https://{value}"


def url_host(value: Any) -> Optional[str]:
    """
    Hostname of an http(s) URL, bracketed when it is an IPv6 literal.

    Returns None for another scheme, a missing host or a malformed port.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parts = urlsplit(value.strip())
        parts.port  # raises ValueError on a malformed port
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    host = parts.hostname
    return f"[{host}]" if ":" in host else host


def is_valid_url(value: Any) -> bool:
    return isinstance(value, str) and url_host(with_scheme(value)) is not None


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_RE.match(value))


def validate_certificate_input(data: Any) -> List[Dict[str, str]]:
    """Return a list of {field, message} problems; empty when the payload is acceptable."""
    if not isinstance(data, dict):
        return [{"field": "body", "message": "Request body must be a JSON object"}]

    errors = []
    manager = data.get("certManager") if isinstance(data.get("certManager"), dict) else {}
    website = manager.get("website")

    if not isinstance(website, str) or not website.strip():
        errors.append({"field": "certManager.website", "message": "Website is required in certManager"})
    elif not is_valid_url(website):
        errors.append({"field": "certManager.website", "message": "Website must be a valid URL"})

    valid_from = parse_date(data.get("validFrom"))
    valid_to = parse_date(data.get("validTo"))
    for name, raw, parsed in (("validFrom", data.get("validFrom"), valid_from),
                              ("validTo", data.get("validTo"), valid_to)):
        if raw not in (None, "") and parsed is None:
            errors.append({"field": name, "message": f"{name} must be an ISO-8601 date"})

    if valid_from and valid_to and valid_from > valid_to:
        errors.append({"field": "validDates", "message": "Valid from date must be before valid to date"})

    renewal = parse_date(manager.get("renewalDate"))
    if renewal and valid_to and renewal > valid_to:
        errors.append({"field": "certManager.renewalDate",
                       "message": "Renewal date cannot be after certificate expiry date"})
    return errors


def validate_user_input(data: Any, partial: bool = False) -> List[Dict[str, str]]:
    if not isinstance(data, dict):
        return [{"field": "body", "message": "Request body must be a JSON object"}]

    errors = []
    for name in ("firstName", "lastName", "email", "password"):
        value = data.get(name)
        if value is None and partial:
            continue
        if not isinstance(value, str) or not value.strip():
            errors.append({"field": name, "message": f"{name} is required"})

    if isinstance(data.get("email"), str) and data["email"].strip() and not is_valid_email(data["email"].strip()):
        errors.append({"field": "email", "message": "Email address is not valid"})
    password = data.get("password")
    if isinstance(password, str) and password.strip() and len(password) < MIN_PASSWORD_LENGTH:
        errors.append({"field": "password",
                       "message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"})
    prefs = data.get("notificationPreferences")
    if prefs is not None and (not isinstance(prefs, list) or not all(isinstance(p, str) for p in prefs)):
        errors.append({"field": "notificationPreferences", "message": "notificationPreferences must be a list of strings"})
    return errors


def safe_user(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    return {k: v for k, v in doc.items() if k not in ("password", "deleted")}
