#!/usr/bin/env python3
"""
Certificate Inspection Module

Opens a direct TLS connection to a host, retrieves the certificate the server
presents without chain validation, and normalizes its fields into a fixed
record shape with safe defaults for everything the certificate leaves out.

Author: Doug Hesseltine
Copyright: Technologist.services 2025
"""
from __future__ import annotations

import json
import logging
import math
import os
import re
import socket
import ssl
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.x509.oid import NameOID


DEFAULT_PORT = 443
DEFAULT_TIMEOUT = 5.0
HTTPS_PREFIX = "https://"
UNKNOWN = "Unknown"

# Distinguished-name attribute codes as the TLS layer reports them
DN_CODES = {
    NameOID.COUNTRY_NAME: "C",
    NameOID.STATE_OR_PROVINCE_NAME: "ST",
    NameOID.LOCALITY_NAME: "L",
    NameOID.ORGANIZATION_NAME: "O",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "OU",
    NameOID.COMMON_NAME: "CN",
}

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_BAD_HOST_CHARS = re.compile(r"[\s<>\"'`{}|\\^%]")


# --------------------------------------------------------------------
# Errors
# --------------------------------------------------------------------
class CheckError(Exception):
    """Base class for certificate retrieval failures."""

    kind = "CheckError"
    error_type = "unknown"

    def __init__(self, message: str, error_type: Optional[str] = None):
        super().__init__(message)
        if error_type:
            self.error_type = error_type


class InvalidInputError(CheckError):
    kind = "InvalidInput"
    error_type = "invalid_input"


class ConnectionFailedError(CheckError):
    kind = "ConnectionError"
    error_type = "network"


class CheckTimeoutError(CheckError):
    kind = "Timeout"
    error_type = "timeout"


class NoCertificateError(CheckError):
    kind = "NoCertificateFound"
    error_type = "no_certificate"


# --------------------------------------------------------------------
# Records
# --------------------------------------------------------------------
@dataclass
class RawPeerCertificate:
    """
    Certificate fields as surfaced by the TLS layer.

    Every field is optional and untrusted: the remote server controls the
    content, and unverified certificates are accepted on purpose.
    """

    subject: Optional[Mapping[str, Any]] = None
    issuer: Optional[Mapping[str, Any]] = None
    valid_from: Optional[str] = None
    valid_to: Optional[str] = None
    serial_number: Optional[str] = None
    fingerprint: Optional[str] = None
    fingerprint256: Optional[str] = None
    bits: Optional[Any] = None
    subjectaltname: Optional[str] = None

    def is_empty(self) -> bool:
        return all(value in (None, "", {}) for value in asdict(self).values())

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RawPeerCertificate":
        """Build from a loosely-typed mapping using the TLS library's key names."""
        def pick(*keys):
            for key in keys:
                if key in data:
                    return data[key]
            return None

        return cls(
            subject=pick("subject"),
            issuer=pick("issuer"),
            valid_from=pick("valid_from", "validFrom"),
            valid_to=pick("valid_to", "validTo"),
            serial_number=pick("serialNumber", "serial_number"),
            fingerprint=pick("fingerprint"),
            fingerprint256=pick("fingerprint256"),
            bits=pick("bits"),
            subjectaltname=pick("subjectaltname", "subjectAltName"),
        )

    @classmethod
    def from_der(cls, cert_der: bytes) -> "RawPeerCertificate":
        """
        Decode a DER certificate into the TLS layer's field shape.

        Raises:
            ValueError: if the bytes are not an X.509 certificate
        """
        cert = x509.load_der_x509_certificate(cert_der)
        return cls(
            subject=_dn_attrs(cert.subject),
            issuer=_dn_attrs(cert.issuer),
            valid_from=format_cert_time(cert.not_valid_before_utc),
            valid_to=format_cert_time(cert.not_valid_after_utc),
            serial_number=format(cert.serial_number, "X"),
            fingerprint=_colon_hex(cert.fingerprint(hashes.SHA1())),
            fingerprint256=_colon_hex(cert.fingerprint(hashes.SHA256())),
            bits=_key_bits(cert),
            subjectaltname=_san_string(cert),
        )


@dataclass
class CertificateInfo:
    """Normalized certificate record. No field is ever None."""

    website: str
    issuer: str = UNKNOWN
    issued_by: str = UNKNOWN
    valid_from: str = UNKNOWN
    valid_to: str = UNKNOWN
    serial_number: str = UNKNOWN
    country: str = ""
    state: str = ""
    locality: str = ""
    organization: str = ""
    organizational_unit: str = ""
    common_name: str = ""
    alternative_names: List[str] = field(default_factory=list)
    fingerprint: str = UNKNOWN
    bits: int = 0
    self_signed: bool = False
    tls_version: str = UNKNOWN
    chain: List["CertificateInfo"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "website": self.website,
            "issuer": self.issuer,
            "issuedBy": self.issued_by,
            "validFrom": self.valid_from,
            "validTo": self.valid_to,
            "serialNumber": self.serial_number,
            "country": self.country,
            "state": self.state,
            "locality": self.locality,
            "organization": self.organization,
            "organizationalUnit": self.organizational_unit,
            "commonName": self.common_name,
            "alternativeNames": list(self.alternative_names),
            "fingerprint": self.fingerprint,
            "bits": self.bits,
            "selfSigned": self.self_signed,
            "tlsVersion": self.tls_version,
            "chain": [c.to_dict() for c in self.chain],
        }


# --------------------------------------------------------------------
# Connector
# --------------------------------------------------------------------
def resolve_hostname(value: str) -> str:
    """
    Reduce a bare hostname or URL to the hostname to connect to.

    'https://' is prepended when missing; path, query, fragment, credentials
    and port are dropped.

    Raises:
        InvalidInputError: if no usable hostname can be parsed
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError("URL is required")

    value = value.strip()
    url = value if value.startswith(HTTPS_PREFIX) else HTTPS_PREFIX + value
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        parts.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise InvalidInputError(f"Invalid URL: {value} ({e})") from e

    if not hostname or _BAD_HOST_CHARS.search(hostname):
        raise InvalidInputError(f"Invalid URL: {value}")
    return hostname


def fetch_certificate(url: str,
                      timeout: float = DEFAULT_TIMEOUT,
                      port: int = DEFAULT_PORT,
                      include_chain: bool = False) -> CertificateInfo:
    """
    Perform one TLS handshake against the URL's host and return its certificate.

    Verification is disabled: self-signed, expired and otherwise untrusted
    certificates are returned like any other.

    Args:
        url: Bare hostname ('example.com') or URL ('https://example.com/path')
        timeout: Deadline in seconds covering connect and handshake
        port: Port to connect to (default: 443)
        include_chain: Also normalize the rest of the presented chain

    Raises:
        InvalidInputError, ConnectionFailedError, CheckTimeoutError,
        NoCertificateError
    """
    hostname = resolve_hostname(url)
    cert_der, chain_der, tls_version = _handshake(hostname, port, timeout)

    if not cert_der:
        raise NoCertificateError(f"No certificate found for {hostname}")

    try:
        raw = RawPeerCertificate.from_der(cert_der)
    except ValueError as e:
        raise NoCertificateError(f"Certificate from {hostname} could not be decoded: {e}") from e
    if raw.is_empty():
        raise NoCertificateError(f"No certificate found for {hostname}")

    if os.environ.get("CERTMAN_ENV") == "development":
        logging.debug("Certificate data for %s: %s", hostname, json.dumps(asdict(raw), indent=2))

    info = normalize(raw, hostname)
    info.tls_version = tls_version or UNKNOWN

    if include_chain:
        for der in chain_der[1:]:
            try:
                info.chain.append(normalize(RawPeerCertificate.from_der(der), hostname))
            except ValueError:
                logging.warning("Skipping undecodable chain certificate from %s", hostname)
    return info


def _handshake(hostname: str, port: int, timeout: float) -> Tuple[Optional[bytes], List[bytes], Optional[str]]:
    """Connect, complete the handshake and return (leaf DER, chain DER list, TLS version)."""
    # Observation only: untrusted certificates must still come back
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE

    deadline = time.monotonic() + timeout
    try:
        with _connect(hostname, port, deadline) as sock:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("deadline reached before handshake")
            sock.settimeout(remaining)
            # server_hostname sends SNI
            with ctx.wrap_socket(sock, server_hostname=hostname) as ssock:
                cert_der = ssock.getpeercert(binary_form=True)
                chain = _unverified_chain(ssock) or ([cert_der] if cert_der else [])
                return cert_der, chain, ssock.version()

    except socket.gaierror as e:
        raise ConnectionFailedError(f"DNS resolution failed: {e}", "dns") from e
    except socket.timeout as e:
        raise CheckTimeoutError(f"Certificate request to {hostname} timed out after {timeout}s") from e
    except ConnectionRefusedError as e:
        raise ConnectionFailedError(f"Connection refused: {e}", "refused") from e
    except ssl.SSLError as e:
        raise ConnectionFailedError(f"SSL error: {e}", "ssl") from e
    except OSError as e:
        raise ConnectionFailedError(f"Network error: {e}", "network") from e


def _connect(hostname: str, port: int, deadline: float) -> socket.socket:
    """
    Try each resolved address in turn, sharing one deadline across all attempts.

    Raises:
        socket.timeout: once the deadline has passed
        OSError: the last connect failure when every address fails
    """
    last_error: Optional[OSError] = None
    for family, socktype, proto, _, addr in socket.getaddrinfo(hostname, port, 0, socket.SOCK_STREAM):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise socket.timeout(f"deadline reached while connecting to {hostname}")
        sock = socket.socket(family, socktype, proto)
        sock.settimeout(remaining)
        try:
            sock.connect(addr)
            return sock
        except OSError as e:
            sock.close()
            last_error = e
    if last_error is None:
        raise OSError(f"No addresses found for {hostname}")
    raise last_error


def _unverified_chain(ssock: ssl.SSLSocket) -> List[bytes]:
    # Only available on Python 3.13+
    getter = getattr(ssock, "get_unverified_chain", None)
    if getter is None:
        return []
    return list(getter() or [])


# --------------------------------------------------------------------
# Normalizer
# --------------------------------------------------------------------
def normalize(raw: Union[RawPeerCertificate, Mapping[str, Any]], hostname: str) -> CertificateInfo:
    """
    Convert a raw certificate into a fully populated CertificateInfo.

    Total over any input shape: missing containers, missing attributes and
    wrongly-typed values all fall back to defaults. Issuer fields default to
    'Unknown', subject fields to ''.
    """
    if isinstance(raw, Mapping):
        raw = RawPeerCertificate.from_mapping(raw)

    issuer = raw.issuer if isinstance(raw.issuer, Mapping) else None
    subject = raw.subject if isinstance(raw.subject, Mapping) else None

    return CertificateInfo(
        website=hostname,
        issuer=_dn_value(issuer, "CN", UNKNOWN),
        issued_by=_dn_value(issuer, "O", UNKNOWN),
        valid_from=_text(raw.valid_from, UNKNOWN),
        valid_to=_text(raw.valid_to, UNKNOWN),
        serial_number=_text(raw.serial_number, UNKNOWN),
        country=_dn_value(subject, "C", ""),
        state=_dn_value(subject, "ST", ""),
        locality=_dn_value(subject, "L", ""),
        organization=_dn_value(subject, "O", ""),
        organizational_unit=_dn_value(subject, "OU", ""),
        common_name=_dn_value(subject, "CN", ""),
        alternative_names=parse_alt_names(raw.subjectaltname),
        fingerprint=_text(raw.fingerprint, UNKNOWN),
        bits=_bits(raw.bits),
        self_signed=bool(issuer) and bool(subject) and dict(issuer) == dict(subject),
    )


def parse_alt_names(value: Any) -> List[str]:
    """Split 'DNS:a.com, DNS:b.com' into ['a.com', 'b.com'], keeping order and duplicates."""
    if not isinstance(value, str) or not value:
        return []
    names = []
    for entry in value.split(","):
        entry = entry.strip()
        if entry.startswith("DNS:"):
            entry = entry[len("DNS:"):]
        names.append(entry)
    return names


def _dn_value(container: Optional[Mapping[str, Any]], code: str, default: str) -> str:
    if not container:
        return default
    value = container.get(code)
    if isinstance(value, (list, tuple)):
        value = next((v for v in value if isinstance(v, str) and v), None)
    return _text(value, default)


def _text(value: Any, default: str) -> str:
    return value if isinstance(value, str) and value else default


def _bits(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return max(0, int(value))


# --------------------------------------------------------------------
# X.509 helpers
# --------------------------------------------------------------------
def format_cert_time(dt: datetime) -> str:
    """Render a datetime the way OpenSSL prints certificate dates, e.g. 'Mar  4 00:00:00 2024 GMT'."""
    dt = dt.astimezone(timezone.utc)
    return f"{_MONTHS[dt.month - 1]} {dt.day:>2} {dt:%H:%M:%S} {dt.year} GMT"


def parse_cert_time(value: Any) -> Optional[datetime]:
    """
    Parse an OpenSSL-style certificate date into an aware UTC datetime.

    Returns None for 'Unknown' or anything not in exactly that format.
    """
    if not isinstance(value, str) or not value or value == UNKNOWN:
        return None
    try:
        return datetime.fromtimestamp(ssl.cert_time_to_seconds(value), tz=timezone.utc)
    except (ValueError, OverflowError):
        return None


def _dn_attrs(name: x509.Name) -> Dict[str, str]:
    attrs: Dict[str, str] = {}
    for attr in name:
        code = DN_CODES.get(attr.oid)
        if code and code not in attrs and isinstance(attr.value, str):
            attrs[code] = attr.value
    return attrs


def _colon_hex(digest: bytes) -> str:
    return ":".join(f"{b:02X}" for b in digest)


def _key_bits(cert: x509.Certificate) -> Optional[int]:
    try:
        key = cert.public_key()
    except (ValueError, UnsupportedAlgorithm):
        return None
    return key.key_size if isinstance(key, RSAPublicKey) else None


def _san_string(cert: x509.Certificate) -> Optional[str]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except (x509.ExtensionNotFound, ValueError):
        return None

    entries = []
    for name in ext.value:
        if isinstance(name, x509.DNSName):
            entries.append(f"DNS:{name.value}")
        elif isinstance(name, x509.IPAddress):
            entries.append(f"IP Address:{name.value}")
        elif isinstance(name, x509.RFC822Name):
            entries.append(f"email:{name.value}")
        elif isinstance(name, x509.UniformResourceIdentifier):
            entries.append(f"URI:{name.value}")
    return ", ".join(entries) or None


if __name__ == "__main__":
    # Simple CLI for local testing:
    #   python cert_checker.py technologist.services google.com
    import sys

    hosts = sys.argv[1:] or ["technologist.services", "google.com"]
    results = []
    for host in hosts:
        try:
            results.append(fetch_certificate(host).to_dict())
        except CheckError as e:
            results.append({"website": host, "error": str(e), "kind": e.kind})
    print(json.dumps(results, indent=2))
