import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen


@dataclass
class ProviderResult:
    ok: bool
    body: Any = field(default_factory=dict)
    status_code: int = 0

    def error_message(self) -> str:
        """Best-effort one-line description of a failed call."""
        b = self.body
        if isinstance(b, dict):
            detail = b.get("detail")
            if isinstance(detail, dict):
                return str(detail.get("error") or detail)
            if detail:
                return str(detail)
            if b.get("error"):
                return str(b.get("error"))
            if b.get("message"):
                return str(b.get("message"))
        return str(b)[:300] if b else f"HTTP {self.status_code}"


def _decode_body(raw: bytes) -> Any:
    text = (raw or b"").decode("utf-8", errors="replace")
    if not text.strip():
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {"raw": text[:2000]}


class ProxyClient:
    """HTTP client for the Emailit proxy.

    Every call resolves to a ProviderResult:
    - 2xx          -> ok=True,  body=<proxy JSON>
    - non-2xx      -> ok=False, body=<proxy JSON error body>
    - network/other-> ok=False, body={"error": <message>}
    """

    def __init__(self, base_url: str, *, token: str = "", timeout_s: Optional[float] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.token = (token or "").strip()
        self.timeout_s = timeout_s

    def _headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            h["Authorization"] = f"Bearer {self.token}"
        return h

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> ProviderResult:
        url = f"{self.base_url}{path}"
        if params:
            clean = {k: v for k, v in params.items() if v is not None and v != ""}
            if clean:
                url = f"{url}?{urlencode(clean)}"
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = Request(url, data=data, method=method, headers=self._headers())
        try:
            if self.timeout_s:
                resp_ctx = urlopen(req, timeout=self.timeout_s)
            else:
                resp_ctx = urlopen(req)
            with resp_ctx as resp:
                status = int(getattr(resp, "status", 200) or 200)
                return ProviderResult(ok=True, body=_decode_body(resp.read()), status_code=status)
        except HTTPError as e:
            try:
                raw = e.read()
            except Exception:
                raw = b""
            body = _decode_body(raw)
            if not body:
                body = {"error": f"HTTP {e.code}"}
            return ProviderResult(ok=False, body=body, status_code=int(e.code or 0))
        except URLError as e:
            return ProviderResult(ok=False, body={"error": f"Network Error: {e.reason}"})
        except Exception as e:
            return ProviderResult(ok=False, body={"error": str(e) or "Network Error"})

    # ----------------------------
    # Per-recipient operations
    # ----------------------------
    def send_email(
        self,
        account_id: str,
        recipient: str,
        subject: str,
        html_content: str,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
    ) -> ProviderResult:
        payload = {
            "accountId": account_id,
            "to": recipient,
            "subject": subject,
            "content": html_content,
        }
        if from_email:
            payload["fromEmail"] = from_email
        if from_name:
            payload["fromName"] = from_name
        return self._request("POST", "/api/send-email", payload=payload)

    def add_to_audience(
        self,
        account_id: str,
        audience_id: str,
        recipient: str,
        custom_fields: Optional[dict] = None,
    ) -> ProviderResult:
        return self._request(
            "POST",
            "/api/track-event",
            payload={
                "accountId": account_id,
                "event": audience_id,
                "email": recipient,
                "data": custom_fields or {},
            },
        )

    # ----------------------------
    # Accounts / status / logs
    # ----------------------------
    def check_status(self, secret_key: str) -> ProviderResult:
        return self._request("POST", "/api/check-status", payload={"secretKey": secret_key})

    def fetch_logs(self, account_id: str, *, limit: int = 25, page: int = 1, status: str = "") -> ProviderResult:
        params = {"accountId": account_id, "limit": limit, "page": page}
        if status and status != "all":
            params["status"] = status
        return self._request("GET", "/api/email/log", params=params)

    def list_accounts(self) -> ProviderResult:
        return self._request("GET", "/api/accounts")

    def get_account(self, account_id: str) -> ProviderResult:
        return self._request("GET", f"/api/accounts/{quote(account_id, safe='')}")

    def create_account(self, account: dict) -> ProviderResult:
        return self._request("POST", "/api/accounts", payload=account)

    def update_account(self, account_id: str, updates: dict) -> ProviderResult:
        return self._request("PUT", f"/api/accounts/{quote(account_id, safe='')}", payload=updates)

    def delete_account(self, account_id: str) -> ProviderResult:
        return self._request("DELETE", f"/api/accounts/{quote(account_id, safe='')}")
