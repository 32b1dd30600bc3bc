import datetime
import ipaddress
import socket
import ssl
import sys
import threading
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

# Put the repository root on sys.path so the top-level modules import.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def make_self_signed(tmp_path, common_name="localhost"):
    """Write a self-signed RSA certificate and key; return (cert_path, key_path)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
        x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "Ohio"),
        x509.NameAttribute(NameOID.LOCALITY_NAME, "Columbus"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(0x1A2B3C)
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.SubjectAlternativeName([
            x509.DNSName(common_name),
            x509.DNSName(f"www.{common_name}"),
            x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
        ]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_path = tmp_path / "server.crt"
    key_path = tmp_path / "server.key"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ))
    return cert_path, key_path, cert


@pytest.fixture
def tls_server(tmp_path):
    """A local TLS server presenting a self-signed certificate. Yields (port, certificate)."""
    cert_path, key_path, cert = make_self_signed(tmp_path)
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(str(cert_path), str(key_path))

    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listener.bind(("127.0.0.1", 0))
    listener.listen(5)
    listener.settimeout(0.2)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except (socket.timeout, OSError):
                continue
            conn.settimeout(5)
            try:
                with ctx.wrap_socket(conn, server_side=True) as tls:
                    tls.recv(1)
            except (ssl.SSLError, OSError):
                pass

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield listener.getsockname()[1], cert
    stop.set()
    thread.join(timeout=2)
    listener.close()


@pytest.fixture
def silent_server():
    """A TCP listener that never accepts, so a TLS handshake never completes."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(5)
    yield listener.getsockname()[1]
    listener.close()


@pytest.fixture
def closed_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def db_file(tmp_path):
    import db

    path = str(tmp_path / "certman.db")
    db.init_db(path)
    return path


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Flask test client with an isolated data dir and a logged-in user."""
    import app as certman_app

    monkeypatch.setitem(certman_app.app.config, "DB_PATH", str(tmp_path / "certman.db"))
    monkeypatch.setitem(certman_app.app.config, "MAIL_KEY_PATH", str(tmp_path / "fernet.key"))
    monkeypatch.setitem(certman_app.app.config, "TESTING", True)
    c = certman_app.app.test_client()

    resp = c.post("/api/v1/users", json={
        "firstName": "Ada", "lastName": "Admin",
        "email": "admin@example.com", "password": "s3cret-pass",
    })
    assert resp.status_code == 201
    resp = c.post("/api/v1/users/login", json={"email": "admin@example.com", "password": "s3cret-pass"})
    assert resp.status_code == 200
    return c
