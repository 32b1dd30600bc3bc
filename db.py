import sqlite3, json, math, re, uuid
from datetime import datetime, timedelta, timezone

COLLECTIONS = ("certificates", "users")


def _now():
    return datetime.now(timezone.utc).isoformat()


def _connect(path):
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path):
    conn = _connect(path)
    c = conn.cursor()
    for table in COLLECTIONS:
        c.execute(f"""CREATE TABLE IF NOT EXISTS {table}(
            id TEXT PRIMARY KEY,
            doc TEXT NOT NULL,
            deleted INTEGER DEFAULT 0,
            created_at TEXT,
            updated_at TEXT
        )""")
    c.execute("CREATE TABLE IF NOT EXISTS user_emails(email TEXT PRIMARY KEY, user_id TEXT)")
    c.execute("""CREATE TABLE IF NOT EXISTS system_config(
        component TEXT PRIMARY KEY,
        doc TEXT NOT NULL,
        status TEXT DEFAULT 'active',
        last_updated TEXT
    )""")
    conn.commit()
    conn.close()


# --------------------------------------------------------------------
# Generic document helpers
# --------------------------------------------------------------------
def _load(row):
    doc = json.loads(row["doc"])
    doc["id"] = row["id"]
    doc["createdAt"] = row["created_at"]
    doc["updatedAt"] = row["updated_at"]
    return doc


def _insert(conn, table, doc):
    doc = {k: v for k, v in doc.items() if k not in ("id", "createdAt", "updatedAt")}
    doc_id = uuid.uuid4().hex
    now = _now()
    conn.execute(f"INSERT INTO {table}(id,doc,deleted,created_at,updated_at) VALUES(?,?,?,?,?)",
                 (doc_id, json.dumps(doc), int(bool(doc.get("deleted"))), now, now))
    return {**doc, "id": doc_id, "createdAt": now, "updatedAt": now}


def _get(path, table, doc_id):
    conn = _connect(path)
    row = conn.execute(f"SELECT * FROM {table} WHERE id=? AND deleted=0", (doc_id,)).fetchone()
    conn.close()
    return _load(row) if row else None


def _all(path, table):
    conn = _connect(path)
    rows = conn.execute(f"SELECT * FROM {table} WHERE deleted=0 ORDER BY created_at DESC, rowid DESC").fetchall()
    conn.close()
    return [_load(r) for r in rows]


def _update(path, table, doc_id, changes):
    conn = _connect(path)
    row = conn.execute(f"SELECT * FROM {table} WHERE id=? AND deleted=0", (doc_id,)).fetchone()
    if not row:
        conn.close()
        return None
    doc = json.loads(row["doc"])
    doc.update({k: v for k, v in changes.items() if k not in ("id", "createdAt", "updatedAt")})
    now = _now()
    conn.execute(f"UPDATE {table} SET doc=?, deleted=?, updated_at=? WHERE id=?",
                 (json.dumps(doc), int(bool(doc.get("deleted"))), now, doc_id))
    conn.commit()
    conn.close()
    return {**doc, "id": doc_id, "createdAt": row["created_at"], "updatedAt": now}


def _page(items, page, limit, key):
    page = max(int(page or 1), 1)
    limit = max(int(limit or 10), 1)
    start = (page - 1) * limit
    return {
        key: items[start:start + limit],
        "total": len(items),
        "page": page,
        "totalPages": math.ceil(len(items) / limit),
    }


def _matches(value, pattern):
    return isinstance(value, str) and re.search(re.escape(str(pattern)), value, re.IGNORECASE) is not None


# --------------------------------------------------------------------
# Certificates
# --------------------------------------------------------------------
def create_certificate(path, doc):
    doc = {**doc, "deleted": False}
    conn = _connect(path)
    saved = _insert(conn, "certificates", doc)
    conn.commit(); conn.close()
    return saved


def bulk_create_certificates(path, docs):
    """Create each certificate independently; failures never abort the batch."""
    results = {"successful": [], "failed": []}
    for doc in docs:
        if not isinstance(doc, dict) or not (doc.get("certManager") or {}).get("website"):
            results["failed"].append({"data": doc, "error": "Missing required certManager.website"})
            continue
        try:
            results["successful"].append(create_certificate(path, doc))
        except (sqlite3.Error, TypeError, ValueError) as e:
            results["failed"].append({"data": doc, "error": str(e)})
    return results


def list_certificates(path, page=1, limit=10):
    return _page(_all(path, "certificates"), page, limit, "certificates")


def get_certificate(path, cert_id):
    return _get(path, "certificates", cert_id)


def update_certificate(path, cert_id, changes):
    return _update(path, "certificates", cert_id, changes)


def delete_certificate(path, cert_id):
    """Soft delete: the record stays but is hidden from every query."""
    return _update(path, "certificates", cert_id, {"deleted": True})


def search_certificates(path, query, page=1, limit=10):
    fields = {
        "name": lambda d: d.get("name"),
        "issuer": lambda d: d.get("issuer"),
        "organization": lambda d: d.get("organization"),
        "website": lambda d: (d.get("certManager") or {}).get("website"),
        "responsiblePerson": lambda d: (d.get("certManager") or {}).get("responsiblePerson"),
    }
    items = _all(path, "certificates")
    for name, getter in fields.items():
        if query.get(name):
            items = [d for d in items if _matches(getter(d), query[name])]
    return _page(items, page, limit, "certificates")


def expiring_certificates(path, days, page=1, limit=10, now=None):
    """Certificates whose validTo falls between now and now + days, soonest first."""
    now = now or datetime.now(timezone.utc)
    threshold = now + timedelta(days=days)
    items = []
    for doc in _all(path, "certificates"):
        valid_to = _parse_iso(doc.get("validTo"))
        if valid_to and now <= valid_to <= threshold:
            items.append((valid_to, doc))
    items.sort(key=lambda pair: pair[0])
    return _page([doc for _, doc in items], page, limit, "certificates")


def _parse_iso(value):
    if not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# --------------------------------------------------------------------
# Users
# --------------------------------------------------------------------
def create_user(path, doc):
    """
    Insert a user document.

    Raises:
        sqlite3.IntegrityError: if the email is already registered
    """
    doc = {**doc, "email": doc["email"].strip().lower(), "isActive": doc.get("isActive", True), "isDeleted": False}
    conn = _connect(path)
    try:
        saved = _insert(conn, "users", doc)
        conn.execute("INSERT INTO user_emails(email,user_id) VALUES(?,?)", (doc["email"], saved["id"]))
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise
    finally:
        conn.close()
    return saved


def list_users(path, page=1, limit=10):
    return _page(_all(path, "users"), page, limit, "users")


def get_user(path, user_id):
    return _get(path, "users", user_id)


def find_user_by_email(path, email):
    conn = _connect(path)
    row = conn.execute("SELECT user_id FROM user_emails WHERE email=?", ((email or "").strip().lower(),)).fetchone()
    conn.close()
    return get_user(path, row["user_id"]) if row else None


def count_users(path):
    conn = _connect(path)
    n = conn.execute("SELECT COUNT(*) FROM users WHERE deleted=0").fetchone()[0]
    conn.close()
    return n


def update_user(path, user_id, changes):
    if not get_user(path, user_id):
        return None
    changes = dict(changes)
    if "email" in changes:
        email = changes["email"].strip().lower()
        changes["email"] = email
        conn = _connect(path)
        try:
            conn.execute("DELETE FROM user_emails WHERE user_id=?", (user_id,))
            conn.execute("INSERT INTO user_emails(email,user_id) VALUES(?,?)", (email, user_id))
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        finally:
            conn.close()
    return _update(path, "users", user_id, changes)


def delete_user(path, user_id):
    user = _update(path, "users", user_id, {"deleted": True, "isDeleted": True, "isActive": False})
    if user:
        conn = _connect(path)
        conn.execute("DELETE FROM user_emails WHERE user_id=?", (user_id,))
        conn.commit(); conn.close()
    return user is not None


def search_users(path, query):
    items = _all(path, "users")
    for name in ("firstName", "lastName", "email"):
        if query.get(name):
            items = [d for d in items if _matches(d.get(name), query[name])]
    return items


# --------------------------------------------------------------------
# System configuration
# --------------------------------------------------------------------
def get_component(path, component):
    conn = _connect(path)
    row = conn.execute("SELECT * FROM system_config WHERE component=?", (component,)).fetchone()
    conn.close()
    if not row:
        return None
    return {
        "systemComponent": row["component"],
        "componentConfig": json.loads(row["doc"]),
        "status": row["status"],
        "lastUpdated": row["last_updated"],
    }


def upsert_component(path, component, config, status="active"):
    conn = _connect(path)
    conn.execute("""INSERT INTO system_config(component,doc,status,last_updated) VALUES(?,?,?,?)
                    ON CONFLICT(component) DO UPDATE SET doc=excluded.doc, status=excluded.status,
                    last_updated=excluded.last_updated""",
                 (component, json.dumps(config), status, _now()))
    conn.commit(); conn.close()
    return get_component(path, component)
