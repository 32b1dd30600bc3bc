#!/usr/bin/env python3
import os
import logging
import secrets
import sqlite3
from functools import wraps
from datetime import datetime, timezone
from flask import Flask, jsonify, request, session
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash

# Import certificate checker module
import cert_checker
import db
import mailer
import records

# --------------------------------------------------------------------
# Flask setup
# --------------------------------------------------------------------
app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', secrets.token_hex(16))

DATA_DIR = os.environ.get("CERTMAN_DATA_DIR", "/data")
app.config.update(
    DB_PATH=os.path.join(DATA_DIR, "certman.db"),
    MAIL_KEY_PATH=os.path.join(DATA_DIR, "fernet.key"),
    LOG_PATH=os.path.join(DATA_DIR, "certman.log"),
    CHECK_TIMEOUT=float(os.environ.get("CERTMAN_CHECK_TIMEOUT", cert_checker.DEFAULT_TIMEOUT)),
    PORT=int(os.environ.get("CERTMAN_PORT", 8443)),
)

API = "/api/v1"
_initialized = set()


def db_path():
    """Database path for the current app config, creating tables on first use."""
    path = app.config["DB_PATH"]
    if path not in _initialized:
        db.init_db(path)
        _initialized.add(path)
    return path


def get_mailer():
    return mailer.Mailer(app.config["MAIL_KEY_PATH"], db_path())


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def error_response(status, error, details=None, **extra):
    body = {"error": error}
    if details is not None:
        body["details"] = details
    body.update(extra)
    return jsonify(body), status


def page_args():
    try:
        page = int(request.args.get("page", 1))
        limit = int(request.args.get("limit", 10))
    except ValueError:
        return 1, 10
    return max(page, 1), min(max(limit, 1), 100)


# --------------------------------------------------------------------
# Authentication
# --------------------------------------------------------------------
def login_required(f):
    """Decorator to require a logged-in user for API routes."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = session.get('user_id')
        if not user_id or not db.get_user(db_path(), user_id):
            return error_response(401, "Authentication required")
        return f(*args, **kwargs)
    return decorated_function


@app.errorhandler(HTTPException)
def http_error(e):
    return error_response(e.code, e.name, e.description)


# --------------------------------------------------------------------
# Health
# --------------------------------------------------------------------
@app.route("/health")
def health():
    return jsonify({"status": "OK"})


@app.route(f"{API}/alive")
@app.route(f"{API}/system/alive")
def alive():
    return jsonify({"status": "alive", "timestamp": now_iso()})


# --------------------------------------------------------------------
# Live certificate lookup
# --------------------------------------------------------------------
@app.route(f"{API}/certificates/info")
@login_required
def certificate_info():
    """Open a TLS connection to ?url= and return the presented certificate."""
    url = request.args.get("url", "").strip()
    if not url:
        return error_response(400, "URL parameter is required")

    host = records.url_host(url)
    if not host:
        return error_response(400, "Invalid URL format",
                              "URL must start with http:// or https:// and name a host with a valid port")

    include_chain = request.args.get("chain", "").lower() in ("1", "true", "yes")
    try:
        info = cert_checker.fetch_certificate(host, timeout=app.config["CHECK_TIMEOUT"],
                                              include_chain=include_chain)
    except cert_checker.InvalidInputError as e:
        return error_response(400, "Invalid URL format", str(e))
    except cert_checker.CheckError as e:
        logging.warning("Certificate lookup for %s failed: %s: %s", host, e.kind, e)
        return error_response(500, "Failed to fetch certificate information", str(e),
                              kind=e.kind, errorType=e.error_type)

    logging.info("Fetched certificate for %s (issuer=%s, expires %s)", info.website, info.issuer, info.valid_to)
    return jsonify(info.to_dict())


# --------------------------------------------------------------------
# Certificates
# --------------------------------------------------------------------
@app.route(f"{API}/certificates", methods=["POST"])
@login_required
def create_certificate():
    data = request.get_json(silent=True)
    errors = records.validate_certificate_input(data)
    if errors:
        return jsonify({"errors": errors}), 400
    cert = db.create_certificate(db_path(), data)
    logging.info("Created certificate %s for %s", cert["id"], data["certManager"]["website"])
    return jsonify(cert), 201


@app.route(f"{API}/certificates", methods=["GET"])
@login_required
def list_certificates():
    page, limit = page_args()
    return jsonify(db.list_certificates(db_path(), page, limit))


@app.route(f"{API}/certificates/search")
@login_required
def search_certificates():
    page, limit = page_args()
    return jsonify(db.search_certificates(db_path(), request.args, page, limit))


@app.route(f"{API}/certificates/expiring/<days>")
@login_required
def expiring_certificates(days):
    try:
        days = int(days)
    except ValueError:
        days = 30
    page, limit = page_args()
    return jsonify(db.expiring_certificates(db_path(), days, page, limit))


@app.route(f"{API}/certificates/bulk", methods=["POST"])
@login_required
def bulk_create_certificates():
    data = request.get_json(silent=True)
    if not isinstance(data, list):
        return error_response(400, "Request body must be an array of certificates")
    results = db.bulk_create_certificates(db_path(), data)
    logging.info("Bulk create: %d successful, %d failed", len(results["successful"]), len(results["failed"]))
    return jsonify(results), 201


@app.route(f"{API}/certificates/<cert_id>", methods=["GET"])
@login_required
def get_certificate(cert_id):
    cert = db.get_certificate(db_path(), cert_id)
    if not cert:
        return error_response(404, "Certificate not found")
    return jsonify(cert)


@app.route(f"{API}/certificates/<cert_id>", methods=["PUT"])
@login_required
def update_certificate(cert_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return error_response(400, "Failed to update certificate", "Request body must be a JSON object")
    cert = db.update_certificate(db_path(), cert_id, data)
    if not cert:
        return error_response(404, "Certificate not found")
    return jsonify(cert)


@app.route(f"{API}/certificates/<cert_id>", methods=["DELETE"])
@login_required
def delete_certificate(cert_id):
    if not db.delete_certificate(db_path(), cert_id):
        return error_response(404, "Certificate not found")
    logging.info("Deleted certificate %s", cert_id)
    return "", 204


@app.route(f"{API}/certificates/<cert_id>/refresh", methods=["POST"])
@login_required
def refresh_certificate(cert_id):
    """Re-read the live certificate for a stored record's website and update the record."""
    cert = db.get_certificate(db_path(), cert_id)
    if not cert:
        return error_response(404, "Certificate not found")

    website = (cert.get("certManager") or {}).get("website")
    host = records.url_host(records.with_scheme(website)) if isinstance(website, str) else None
    if not host:
        return error_response(400, "Invalid website", f"Cannot derive a hostname from {website!r}")
    try:
        info = cert_checker.fetch_certificate(host, timeout=app.config["CHECK_TIMEOUT"])
    except cert_checker.InvalidInputError as e:
        return error_response(400, "Invalid website", str(e))
    except cert_checker.CheckError as e:
        logging.warning("Refresh of %s (%s) failed: %s: %s", cert_id, website, e.kind, e)
        return error_response(500, "Failed to refresh certificate", str(e),
                              kind=e.kind, errorType=e.error_type)

    changes = records.certificate_record(info)
    changes["certLastQueried"] = now_iso()
    updated = db.update_certificate(db_path(), cert_id, changes)
    logging.info("Refreshed certificate %s from %s", cert_id, info.website)
    return jsonify(updated)


# --------------------------------------------------------------------
# Users
# --------------------------------------------------------------------
@app.route(f"{API}/users/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or {}
    email = data.get("email") or ""
    password = data.get("password") or ""
    if not email or not password:
        return error_response(400, "Email and password are required")

    user = db.find_user_by_email(db_path(), email)
    if not user or not user.get("isActive", True) or not check_password_hash(user["password"], password):
        logging.warning("Failed login for %s", email)
        return error_response(401, "Invalid credentials")

    session.clear()
    session['user_id'] = user["id"]
    logging.info("User %s logged in", user["email"])
    return jsonify({"user": records.safe_user(user)})


@app.route(f"{API}/users/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"success": True})


@app.route(f"{API}/users", methods=["POST"])
def create_user():
    # The first account can be created without a session
    if db.count_users(db_path()) > 0 and not session.get('user_id'):
        return error_response(401, "Authentication required")

    data = request.get_json(silent=True)
    errors = records.validate_user_input(data)
    if errors:
        return jsonify({"errors": errors}), 400

    doc = {
        "firstName": data["firstName"].strip(),
        "lastName": data["lastName"].strip(),
        "email": data["email"].strip(),
        "password": generate_password_hash(data["password"]),
        "notificationPreferences": data.get("notificationPreferences", []),
    }
    try:
        user = db.create_user(db_path(), doc)
    except sqlite3.IntegrityError:
        return error_response(409, "Email already registered")
    logging.info("Created user %s", user["email"])
    return jsonify(records.safe_user(user)), 201


@app.route(f"{API}/users", methods=["GET"])
@login_required
def list_users():
    page, limit = page_args()
    result = db.list_users(db_path(), page, limit)
    return jsonify({"users": [records.safe_user(u) for u in result["users"]], "total": result["total"]})


@app.route(f"{API}/users/search")
@login_required
def search_users():
    return jsonify([records.safe_user(u) for u in db.search_users(db_path(), request.args)])


@app.route(f"{API}/users/<user_id>", methods=["GET"])
@login_required
def get_user(user_id):
    user = db.get_user(db_path(), user_id)
    if not user:
        return error_response(404, "User not found")
    return jsonify(records.safe_user(user))


@app.route(f"{API}/users/<user_id>", methods=["PUT"])
@login_required
def update_user(user_id):
    data = request.get_json(silent=True)
    errors = records.validate_user_input(data, partial=True)
    if errors:
        return jsonify({"errors": errors}), 400

    allowed = ("firstName", "lastName", "email", "notificationPreferences", "isActive")
    changes = {k: data[k] for k in allowed if k in data}
    if data.get("password"):
        changes["password"] = generate_password_hash(data["password"])
    try:
        user = db.update_user(db_path(), user_id, changes)
    except sqlite3.IntegrityError:
        return error_response(409, "Email already registered")
    if not user:
        return error_response(404, "User not found")
    return jsonify(records.safe_user(user))


@app.route(f"{API}/users/<user_id>", methods=["DELETE"])
@login_required
def delete_user(user_id):
    if not db.delete_user(db_path(), user_id):
        return error_response(404, "User not found")
    logging.info("Deleted user %s", user_id)
    return "", 204


# ---------------------------------------------------------------------
# SMTP Configuration
# ---------------------------------------------------------------------
@app.route(f"{API}/system/smtp", methods=["GET"])
@login_required
def get_smtp_settings():
    config = get_mailer().get_config_safe()
    if not config:
        return error_response(404, "SMTP configuration not found")
    return jsonify({"success": True, "config": config})


@app.route(f"{API}/system/smtp", methods=["PUT"])
@login_required
def update_smtp_settings():
    try:
        config = get_mailer().save_config(request.get_json(silent=True))
    except mailer.MailerError as e:
        return error_response(400, "Invalid SMTP settings", str(e))
    return jsonify({"success": True, "message": "SMTP settings updated successfully", "config": config})


@app.route(f"{API}/system/email", methods=["POST"])
@login_required
def send_email():
    data = request.get_json(silent=True) or {}
    to, subject, message = data.get("to"), data.get("subject"), data.get("message")
    if not to or not subject or not message:
        return error_response(400, "Missing required fields", "to, subject, and message are required")
    if not records.is_valid_email(to):
        return error_response(400, "Invalid email format", "Recipient email address is not valid")

    try:
        get_mailer().send_email(to, subject, message)
    except Exception as e:
        logging.exception(f"Error sending email to {to}: {e}")
        return error_response(500, "Failed to send email", str(e))
    return jsonify({"success": True, "message": "Email sent successfully"})


# --------------------------------------------------------------------
# Main entrypoint  –  HTTPS server
# --------------------------------------------------------------------
if __name__ == "__main__":
    os.makedirs(DATA_DIR, exist_ok=True)
    logging.basicConfig(
        filename=app.config["LOG_PATH"],
        level=logging.DEBUG if os.environ.get("CERTMAN_ENV") == "development" else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    db_path()

    cert_path = os.path.join(DATA_DIR, "server.crt")
    key_path = os.path.join(DATA_DIR, "server.key")

    # Require existing cert/key (mounted from host)
    if not (os.path.exists(cert_path) and os.path.exists(key_path)):
        print(f"\n❌  TLS certificate/key not found in {DATA_DIR}/.")
        print("Please create them on host:\n"
              "  sudo openssl req -x509 -nodes -days 730 "
              "-newkey rsa:2048 "
              f"-keyout {key_path} "
              f"-out {cert_path} "
              "-subj '/CN=certman.local'\n")
        raise SystemExit(1)

    print(f"✅  Starting HTTPS server on port {app.config['PORT']} "
          f"using cert {cert_path}")
    app.run(host="0.0.0.0", port=app.config["PORT"],
            ssl_context=(cert_path, key_path))
