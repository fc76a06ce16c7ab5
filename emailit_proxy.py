#!/usr/bin/env python3
import os
import re
import json
import logging
import threading
import uuid
from pathlib import Path
from datetime import datetime, timezone
from email.utils import formataddr
from typing import List, Dict, Any, Optional
from urllib.parse import quote, urlencode
from urllib.request import Request as UrlRequest, urlopen
from urllib.error import URLError, HTTPError

from fastapi import FastAPI, Body, Depends, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware

logger = logging.getLogger("emailit_proxy")

# ----------------------------
# Config (ENV)
# ----------------------------
EMAILIT_API_BASE = os.getenv("EMAILIT_API_BASE", "https://api.emailit.com/v1").rstrip("/")
ACCOUNTS_FILE = Path(os.getenv("ACCOUNTS_FILE", str(Path(__file__).resolve().parent / "accounts.json")))
API_TOKEN = os.getenv("API_TOKEN", "")  # required unless ALLOW_NO_AUTH=1
ALLOW_NO_AUTH = os.getenv("ALLOW_NO_AUTH", "0") == "1"


def _env_float(name: str, default: float) -> float:
    try:
        return float((os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


EMAILIT_TIMEOUT_S = _env_float("EMAILIT_TIMEOUT_S", 30.0)

# CORS (for browser access)
# Examples:
#   CORS_ORIGINS="https://dashboard.example.com"
#   CORS_ORIGINS="*"
CORS_ORIGINS_RAW = os.getenv("CORS_ORIGINS", "*").strip()
CORS_ORIGINS = (
    ["*"] if CORS_ORIGINS_RAW == "*" else [o.strip() for o in CORS_ORIGINS_RAW.split(",") if o.strip()]
)

HTML_FALLBACK_TEXT = "Please view this email in an HTML compatible email client."

# Dashboard status filter -> Emailit event type
LOG_STATUS_FILTERS = {
    "delivered": "email.delivery.sent",
    "failed": "email.delivery.hardfail",
    "opened": "email.loaded",
    "clicked": "email.link.clicked",
}

# ----------------------------
# App
# ----------------------------
app = FastAPI(title="Emailit Proxy API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

_ACCOUNTS_LOCK = threading.Lock()


def require_token(request: Request):
    """
    Bearer token auth:
      - Header: Authorization: Bearer <token>
      - Or query param: ?token=<token>
    """
    if ALLOW_NO_AUTH:
        return

    if not API_TOKEN:
        raise HTTPException(status_code=500, detail="Server misconfig: API_TOKEN is not set")

    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        token = auth.split(" ", 1)[1].strip()
    else:
        token = request.query_params.get("token", "").strip()

    if token != API_TOKEN:
        raise HTTPException(status_code=401, detail="Unauthorized")


# ----------------------------
# Account store (JSON file)
# ----------------------------
def _read_accounts() -> List[Dict[str, Any]]:
    path = Path(ACCOUNTS_FILE)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("[]", encoding="utf-8")
        return []
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.error("accounts file is not valid JSON: %s", path)
        raise HTTPException(status_code=500, detail={"error": "DB Error"})
    return data if isinstance(data, list) else []


def _write_accounts(accounts: List[Dict[str, Any]]) -> None:
    path = Path(ACCOUNTS_FILE)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(accounts, indent=2), encoding="utf-8")
    tmp.replace(path)


def _find_account(account_id: str) -> Optional[Dict[str, Any]]:
    with _ACCOUNTS_LOCK:
        for acc in _read_accounts():
            if str(acc.get("id") or "") == account_id:
                return acc
    return None


def _require_account(account_id: str) -> Dict[str, Any]:
    acc = _find_account(account_id)
    if not acc:
        raise HTTPException(status_code=404, detail={"error": "Account not found"})
    return acc


# ----------------------------
# Emailit upstream
# ----------------------------
def _decode(raw: bytes) -> Any:
    text = (raw or b"").decode("utf-8", errors="replace")
    if not text.strip():
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {"raw": text[:2000]}


def _emailit_request(
    method: str,
    path: str,
    secret_key: str,
    *,
    payload: Optional[dict] = None,
    params: Optional[dict] = None,
    error: str = "Upstream request failed",
) -> Any:
    """Call the Emailit API and return the decoded JSON body.

    Upstream HTTP errors keep their status code; connection errors map to 502.
    """
    url = f"{EMAILIT_API_BASE}{path}"
    if params:
        url = f"{url}?{urlencode(params)}"
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = UrlRequest(
        url,
        data=data,
        method=method,
        headers={
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        },
    )

    try:
        with urlopen(req, timeout=EMAILIT_TIMEOUT_S) as resp:
            return _decode(resp.read())
    except HTTPError as e:
        body = _decode(e.read() or b"")
        logger.warning("emailit %s %s -> HTTP %s: %s", method, path, e.code, body)
        raise HTTPException(status_code=int(e.code or 502), detail={"error": error, "details": body})
    except URLError as e:
        logger.warning("emailit %s %s connection error: %s", method, path, e.reason)
        raise HTTPException(status_code=502, detail={"error": error, "details": {"reason": str(e.reason)}})


def wrap_html(content: str) -> str:
    if not content.strip().lower().startswith("<html") and "<body" not in content:
        return f"<!DOCTYPE html><html><body>{content}</body></html>"
    return content


def html_to_text(content: str) -> str:
    text = re.sub(r"<[^>]*>?", " ", str(content or "")).strip()
    return text or HTML_FALLBACK_TEXT


def _sender(payload: Dict[str, Any]) -> str:
    sender = str(payload.get("from") or "").strip()
    if sender:
        return sender
    email = str(payload.get("fromEmail") or "").strip()
    if not email:
        return ""
    name = str(payload.get("fromName") or "").strip()
    return formataddr((name, email)) if name else email


def _event_status(event_type: str) -> str:
    t = event_type or ""
    if "sent" in t:
        return "delivered"
    if "fail" in t or "bounce" in t or "error" in t:
        return "failed"
    if "loaded" in t or "open" in t:
        return "opened"
    if "click" in t:
        return "clicked"
    if "held" in t or "spam" in t:
        return "spam"
    return "processing"


def normalize_event(event: Dict[str, Any]) -> Dict[str, Any]:
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}
    email = obj.get("email") if isinstance(obj.get("email"), dict) else {}
    event_type = str(event.get("type") or "")
    status = _event_status(event_type)
    return {
        "id": event.get("id"),
        "type": event_type,
        "to": email.get("to") or "Unknown",
        "from": email.get("from") or "Unknown",
        "subject": email.get("subject") or "No Subject",
        "status": status,
        "detailedStatus": event_type.replace("email.", "", 1).replace("delivery.", "", 1),
        "sentAt": event.get("created_at") or datetime.now(timezone.utc).isoformat(),
        "errorMessage": (data.get("details") or event_type) if status == "failed" else None,
    }


def _pagination(upstream: Dict[str, Any], page: int, limit: int, count: int) -> Dict[str, Any]:
    meta = upstream.get("meta") if isinstance(upstream.get("meta"), dict) else {}
    total = meta.get("total")
    total_pages = meta.get("last_page") or meta.get("total_pages")
    if total is not None and total_pages:
        has_more = page < int(total_pages)
    else:
        has_more = count >= limit
        total = (page - 1) * limit + count
        total_pages = page + 1 if has_more else page
    return {
        "page": page,
        "limit": limit,
        "total": int(total),
        "totalPages": int(total_pages),
        "hasMore": bool(has_more),
    }


@app.get("/health")
def health():
    return {
        "ok": True,
        "accounts_file": str(ACCOUNTS_FILE),
        "upstream": EMAILIT_API_BASE,
        "server_time_utc": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/")
def root():
    return {
        "ok": True,
        "service": "Emailit Proxy API",
        "version": "1.0.0",
        "endpoints": {
            "health": "/health",
            "accounts": "/api/accounts",
            "check_status": "/api/check-status",
            "send_email": "/api/send-email",
            "track_event": "/api/track-event",
            "email_log": "/api/email/log?accountId=...",
        },
    }


# ----------------------------
# Accounts
# ----------------------------
@app.get("/api/accounts")
def list_accounts(_: None = Depends(require_token)):
    with _ACCOUNTS_LOCK:
        return _read_accounts()


@app.get("/api/accounts/{account_id}")
def get_account(account_id: str, _: None = Depends(require_token)):
    return _require_account(account_id)


@app.post("/api/accounts", status_code=201)
def create_account(payload: Dict[str, Any] = Body(...), _: None = Depends(require_token)):
    if not str(payload.get("secretKey") or "").strip():
        raise HTTPException(status_code=400, detail={"error": "Missing secretKey"})
    account = dict(payload)
    if not str(account.get("id") or "").strip():
        account["id"] = uuid.uuid4().hex
    with _ACCOUNTS_LOCK:
        accounts = _read_accounts()
        if any(str(a.get("id") or "") == account["id"] for a in accounts):
            raise HTTPException(status_code=409, detail={"error": "Account id already exists"})
        accounts.append(account)
        _write_accounts(accounts)
    return account


@app.put("/api/accounts/{account_id}")
def update_account(account_id: str, payload: Dict[str, Any] = Body(...), _: None = Depends(require_token)):
    updated: Dict[str, Any] = {}
    with _ACCOUNTS_LOCK:
        accounts = _read_accounts()
        for i, acc in enumerate(accounts):
            if str(acc.get("id") or "") == account_id:
                updated = {**acc, **payload, "id": account_id}
                accounts[i] = updated
        if updated:
            _write_accounts(accounts)
    return updated


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(account_id: str, _: None = Depends(require_token)):
    with _ACCOUNTS_LOCK:
        accounts = _read_accounts()
        kept = [a for a in accounts if str(a.get("id") or "") != account_id]
        if len(kept) != len(accounts):
            _write_accounts(kept)
    return Response(status_code=204)


# ----------------------------
# Emailit operations
# ----------------------------
@app.post("/api/check-status")
def check_status(payload: Dict[str, Any] = Body(...), _: None = Depends(require_token)):
    secret_key = str(payload.get("secretKey") or "").strip()
    if not secret_key:
        raise HTTPException(status_code=400, detail={"message": "Missing Secret Key"})
    try:
        data = _emailit_request("GET", "/sending-domains", secret_key, error="Authentication Failed")
    except HTTPException:
        raise HTTPException(status_code=401, detail={"success": False, "message": "Authentication Failed"})
    return {"success": True, "message": "Connected to Emailit (v1).", "data": data}


@app.post("/api/send-email")
def send_email(payload: Dict[str, Any] = Body(...), _: None = Depends(require_token)):
    account_id = str(payload.get("accountId") or "").strip()
    to = str(payload.get("to") or "").strip()
    subject = str(payload.get("subject") or "")
    content = str(payload.get("content") or "")
    if not account_id or not to or not subject or not content:
        raise HTTPException(status_code=400, detail={"error": "Missing parameters"})

    account = _require_account(account_id)
    body = {
        "to": to,
        "subject": subject,
        "html": wrap_html(content),
        "text": html_to_text(content),
    }
    sender = _sender(payload)
    if sender:
        body["from"] = sender

    return _emailit_request(
        "POST", "/emails", str(account.get("secretKey") or ""), payload=body, error="Failed to send email"
    )


@app.post("/api/track-event")
def track_event(payload: Dict[str, Any] = Body(...), _: None = Depends(require_token)):
    account_id = str(payload.get("accountId") or "").strip()
    audience_id = str(payload.get("event") or "").strip()
    email = str(payload.get("email") or "").strip()
    if not account_id or not audience_id or not email:
        raise HTTPException(status_code=400, detail={"error": "Missing parameters"})

    custom_fields = payload.get("data") or {}
    if not isinstance(custom_fields, dict):
        raise HTTPException(status_code=400, detail={"error": "data must be a JSON object"})

    account = _require_account(account_id)
    return _emailit_request(
        "POST",
        f"/audiences/{quote(audience_id, safe='')}/subscribers",
        str(account.get("secretKey") or ""),
        payload={"email": email, "custom_fields": custom_fields},
        error="Failed to add subscriber",
    )


@app.get("/api/email/log")
def email_log(
    accountId: str = "",
    limit: int = 25,
    page: int = 1,
    status: str = "",
    _: None = Depends(require_token),
):
    limit = max(1, min(int(limit), 100))
    page = max(1, int(page))
    account = _require_account(accountId.strip())

    params: Dict[str, Any] = {"per_page": limit, "page": page}
    event_type = LOG_STATUS_FILTERS.get(status)
    if event_type:
        params["filter[type]"] = event_type

    try:
        upstream = _emailit_request(
            "GET", "/events", str(account.get("secretKey") or ""), params=params, error="Failed to fetch logs"
        )
    except HTTPException as e:
        if e.status_code == 401:
            raise HTTPException(status_code=401, detail={"error": "Unauthorized: Please check API Key permissions."})
        raise

    if not isinstance(upstream, dict):
        upstream = {}
    events = upstream.get("data") if isinstance(upstream.get("data"), list) else []
    logs = [normalize_event(ev) for ev in events if isinstance(ev, dict)]
    return {
        "success": True,
        "data": logs,
        "pagination": _pagination(upstream, page, limit, len(logs)),
    }


if __name__ == "__main__":
    # Run: python3 emailit_proxy.py
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    host = os.getenv("BIND_ADDR", "0.0.0.0")
    port = int(os.getenv("PORT", "3008"))
    uvicorn.run("emailit_proxy:app", host=host, port=port, reload=False)
