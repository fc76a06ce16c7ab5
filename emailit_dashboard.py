import os
import math
import threading
from typing import Any, Dict, Optional, Tuple

from flask import Flask, request, jsonify, render_template_string, make_response
from markupsafe import Markup, escape

from bulk_jobs import (
    AddToAudienceOperation,
    BulkJobController,
    ElapsedTicker,
    JobActiveError,
    JobStore,
    SendEmailOperation,
    ValidationError,
    now_iso,
)
from emailit_client import ProviderResult, ProxyClient


def _env_int(name: str, default: int) -> int:
    try:
        return int((os.getenv(name, str(default)) or str(default)).strip())
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float((os.getenv(name, str(default)) or str(default)).strip())
    except Exception:
        return default


# =========================
# Config (ENV)
# =========================
PROXY_BASE_URL = (os.getenv("PROXY_BASE_URL", "http://127.0.0.1:3008") or "").strip()
PROXY_API_TOKEN = (os.getenv("PROXY_API_TOKEN", "") or "").strip()
PROXY_TIMEOUT_S = _env_float("PROXY_TIMEOUT_S", 30.0)

JOB_TICK_S = _env_float("JOB_TICK_S", 1.0)  # one countdown step
JOB_POLL_S = _env_float("JOB_POLL_S", 0.5)  # pause poll interval
ELAPSED_TICK_S = _env_float("ELAPSED_TICK_S", 1.0)
ELAPSED_TICKER_ENABLED = (os.getenv("ELAPSED_TICKER_ENABLED", "1") or "1").strip() == "1"

RESULTS_PAGE_SIZE_MAX = 200
RESULT_FILTERS = ("all", "success", "error")

app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "change-me")

# =========================
# Jobs (in-memory)
# =========================
PROXY = ProxyClient(PROXY_BASE_URL, token=PROXY_API_TOKEN, timeout_s=PROXY_TIMEOUT_S)

SEND_OPERATION = SendEmailOperation(PROXY)
AUDIENCE_OPERATION = AddToAudienceOperation(PROXY)

SEND_JOBS = JobStore(default_payload=SEND_OPERATION.default_payload())
AUDIENCE_JOBS = JobStore(default_payload=AUDIENCE_OPERATION.default_payload())

CONTROLLERS: Dict[str, BulkJobController] = {
    "send": BulkJobController(SEND_JOBS, SEND_OPERATION, tick_s=JOB_TICK_S, poll_s=JOB_POLL_S),
    "audience": BulkJobController(AUDIENCE_JOBS, AUDIENCE_OPERATION, tick_s=JOB_TICK_S, poll_s=JOB_POLL_S),
}

ELAPSED_TICKER = ElapsedTicker([SEND_JOBS, AUDIENCE_JOBS], interval_s=ELAPSED_TICK_S)
_ELAPSED_TICKER_STARTED = False
_ELAPSED_TICKER_LOCK = threading.Lock()


def set_adapter(adapter) -> None:
    """Point the dashboard and both bulk operations at another Provider Adapter."""
    global PROXY
    PROXY = adapter
    SEND_OPERATION.adapter = adapter
    AUDIENCE_OPERATION.adapter = adapter


def start_elapsed_ticker_if_needed():
    global _ELAPSED_TICKER_STARTED
    if not ELAPSED_TICKER_ENABLED:
        return
    with _ELAPSED_TICKER_LOCK:
        if _ELAPSED_TICKER_STARTED:
            return
        ELAPSED_TICKER.start()
        _ELAPSED_TICKER_STARTED = True


# Start the shared elapsed-time ticker unless disabled.
start_elapsed_ticker_if_needed()


# =========================
# Helpers
# =========================
def _relay(res: ProviderResult, ok_status: int = 200):
    if res.ok:
        return jsonify(res.body), (res.status_code or ok_status)
    return jsonify({"ok": False, "error": res.error_message(), "details": res.body}), (res.status_code or 502)


def _controller(kind: str) -> Optional[BulkJobController]:
    return CONTROLLERS.get((kind or "").strip().lower())


def _account_credentials(account_id: str) -> Tuple[Optional[dict], Optional[Tuple[Any, int]]]:
    res = PROXY.get_account(account_id)
    if res.ok and isinstance(res.body, dict) and res.body.get("id"):
        return res.body, None
    if res.ok or res.status_code == 404:
        return None, (jsonify({"ok": False, "error": "account not found"}), 404)
    return None, (jsonify({"ok": False, "error": res.error_message()}), res.status_code or 502)


def _result_filter() -> str:
    flt = str(request.args.get("filter") or "all").strip().lower()
    return flt if flt in RESULT_FILTERS else "all"


def _filter_results(rows, flt: str):
    if flt == "all":
        return list(rows or [])
    return [r for r in (rows or []) if r.get("status") == flt]


def _fmt_elapsed(seconds: int) -> str:
    seconds = max(0, int(seconds or 0))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}" if h else f"{m:02d}:{s:02d}"


# =========================
# Pages
# =========================
BASE_HTML = r"""
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width,initial-scale=1" />
  <title>{{title}}</title>
  <style>
    :root{
      --bg:#0b1020; --card: rgba(255,255,255,.06); --border: rgba(255,255,255,.14);
      --text:#fff; --muted: rgba(255,255,255,.65);
      --good:#35e49a; --bad:#ff5e73; --warn:#ffc14d; --accent:#7aa7ff;
    }
    body{font-family:system-ui; margin:0; background:var(--bg); color:var(--text);}
    .wrap{max-width: 1100px; margin: 0 auto; padding: 18px 14px;}
    a{color:var(--accent); text-decoration:none}
    .card{background:var(--card); border:1px solid var(--border); border-radius:14px; padding:14px; margin-bottom:12px;}
    .muted{color:var(--muted)}
    .row{display:flex; gap:12px; flex-wrap:wrap; align-items:center}
    code{background:rgba(255,255,255,.08); padding:2px 6px; border-radius:8px;}
    .bar{height: 12px; background: rgba(255,255,255,.10); border:1px solid rgba(255,255,255,.14); border-radius:999px; overflow:hidden;}
    .bar > div{height:100%; width:0%; background: rgba(122,167,255,.65);}
    table{width:100%; border-collapse:collapse; font-size: 13px;}
    th,td{padding:8px; border-bottom:1px solid rgba(255,255,255,.10); text-align:left; vertical-align:top}
    .ok{color:var(--good); font-weight:800}
    .no{color:var(--bad); font-weight:800}
    .pill{padding:6px 10px; border-radius:999px; border:1px solid rgba(255,255,255,.14); background:rgba(255,255,255,.06);}
    input, textarea, select{width:100%; box-sizing:border-box; background:rgba(255,255,255,.06); color:var(--text);
      border:1px solid var(--border); border-radius:10px; padding:8px; font:inherit;}
    textarea{min-height:120px}
    label{display:block; margin:8px 0 4px; color:var(--muted); font-size:13px}
    pre{white-space:pre-wrap; margin:0; font-size:12px}
    .nav{display:flex; gap:10px; flex-wrap:wrap; align-items:center; margin-top:8px}
    .nav a, button{
      display:inline-flex; align-items:center; gap:8px;
      padding:8px 10px;
      border:1px solid rgba(255,255,255,.14);
      background: rgba(255,255,255,.06);
      border-radius: 12px;
      cursor:pointer;
      font: inherit;
      color: rgba(255,255,255,.92);
    }
    button.primary{ background: rgba(122,167,255,.14); font-weight:800; }
    button:disabled{opacity:.55; cursor:not-allowed}
  </style>
</head>
<body>
  <div class="wrap">
    <h2 style="margin:0">Emailit Dashboard</h2>
    <div class="nav">
      <a href="/">Bulk Send</a>
      <a href="/audience">Audience</a>
      <a href="/send">Single Send</a>
      <a href="/analytics">Analytics</a>
    </div>
    <div class="card" style="margin-top:12px">
      <div class="row">
        <label for="account" style="margin:0">Account</label>
        <select id="account" style="max-width:360px"></select>
        <span id="accountStatus" class="pill muted">-</span>
        <button id="checkBtn" type="button">Check</button>
        <button id="addAccountBtn" type="button">Add</button>
        <button id="editAccountBtn" type="button">Edit</button>
        <button id="deleteAccountBtn" type="button">Delete</button>
      </div>
      <form id="accountForm" style="display:none; margin-top:10px" onsubmit="return false;">
        <div class="row">
          <div style="flex:1"><label for="accountName">Name</label><input id="accountName" /></div>
          <div style="flex:1"><label for="accountSecret">Secret key</label><input id="accountSecret" type="password" /></div>
        </div>
        <div class="row" style="margin-top:10px">
          <button id="saveAccountBtn" class="primary" type="button">Save</button>
          <button id="cancelAccountBtn" type="button">Cancel</button>
          <span id="accountMsg" class="no"></span>
        </div>
      </form>
    </div>
    {{content}}
  </div>
  <script>
    async function api(url, opts){
      const r = await fetch(url, Object.assign({headers: {"Content-Type": "application/json"}}, opts || {}));
      let body = {};
      try { body = await r.json(); } catch(e) {}
      return {ok: r.ok, status: r.status, body: body};
    }
    function currentAccount(){ return document.getElementById("account").value; }
    async function loadAccounts(selectId){
      const r = await api("/api/accounts");
      const sel = document.getElementById("account");
      sel.innerHTML = "";
      (Array.isArray(r.body) ? r.body : []).forEach(a => {
        const o = document.createElement("option");
        o.value = a.id; o.textContent = a.name || a.id; o.dataset.status = a.status || "unknown";
        sel.appendChild(o);
      });
      if (selectId) sel.value = selectId;
      showAccountStatus();
      if (window.onAccountChange) window.onAccountChange();
    }
    function showAccountStatus(){
      const sel = document.getElementById("account");
      const o = sel.options[sel.selectedIndex];
      document.getElementById("accountStatus").textContent = o ? (o.dataset.status || "unknown") : "no accounts";
    }
    document.getElementById("account").addEventListener("change", () => {
      showAccountStatus();
      if (window.onAccountChange) window.onAccountChange();
    });
    document.getElementById("checkBtn").addEventListener("click", async () => {
      const id = currentAccount(); if (!id) return;
      const r = await api(`/api/accounts/${encodeURIComponent(id)}/check`, {method: "POST"});
      const sel = document.getElementById("account");
      sel.options[sel.selectedIndex].dataset.status = (r.body && r.body.status) || "disconnected";
      showAccountStatus();
    });

    let accountFormMode = "add";
    function openAccountForm(mode){
      accountFormMode = mode;
      const sel = document.getElementById("account");
      const o = sel.options[sel.selectedIndex];
      document.getElementById("accountName").value = (mode === "edit" && o) ? o.textContent : "";
      document.getElementById("accountSecret").value = "";
      document.getElementById("accountSecret").placeholder = mode === "edit" ? "leave empty to keep the current key" : "";
      document.getElementById("accountMsg").textContent = "";
      document.getElementById("accountForm").style.display = "block";
    }
    document.getElementById("addAccountBtn").addEventListener("click", () => openAccountForm("add"));
    document.getElementById("editAccountBtn").addEventListener("click", () => { if (currentAccount()) openAccountForm("edit"); });
    document.getElementById("cancelAccountBtn").addEventListener("click", () => {
      document.getElementById("accountForm").style.display = "none";
    });
    document.getElementById("saveAccountBtn").addEventListener("click", async () => {
      const name = document.getElementById("accountName").value.trim();
      const secretKey = document.getElementById("accountSecret").value.trim();
      const body = {name: name};
      if (secretKey) body.secretKey = secretKey;
      let r;
      if (accountFormMode === "edit") {
        r = await api(`/api/accounts/${encodeURIComponent(currentAccount())}`, {method: "PUT", body: JSON.stringify(body)});
      } else {
        r = await api("/api/accounts", {method: "POST", body: JSON.stringify(body)});
      }
      if (!r.ok){ document.getElementById("accountMsg").textContent = r.body.error || "save failed"; return; }
      document.getElementById("accountForm").style.display = "none";
      const id = (r.body && r.body.id) || currentAccount();
      await loadAccounts(id);
      if (secretKey) document.getElementById("checkBtn").click();
    });
    document.getElementById("deleteAccountBtn").addEventListener("click", async () => {
      const id = currentAccount(); if (!id) return;
      if (!confirm("Delete this account?")) return;
      await api(`/api/accounts/${encodeURIComponent(id)}`, {method: "DELETE"});
      loadAccounts();
    });
  </script>
  {{script}}
</body>
</html>
"""

JOB_SCRIPT = r"""
<script>
  const KIND = "{{kind}}";
  let resultsPage = 1;
  let editing = false;
  function jobUrl(suffix){ return `/api/jobs/${KIND}/${encodeURIComponent(currentAccount())}${suffix || ""}`; }
  function readInputs(){
    const payload = {};
    document.querySelectorAll("[data-payload]").forEach(el => { payload[el.dataset.payload] = el.value; });
    return {
      recipients_raw: document.getElementById("recipients").value,
      delay_seconds: document.getElementById("delay").value,
      payload: payload,
    };
  }
  function fillInputs(j){
    if (editing) return;
    document.getElementById("recipients").value = j.recipients_raw || "";
    document.getElementById("delay").value = j.delay_seconds;
    document.querySelectorAll("[data-payload]").forEach(el => { el.value = (j.payload || {})[el.dataset.payload] || ""; });
  }
  async function saveInputs(){
    const r = await api(jobUrl("/inputs"), {method: "POST", body: JSON.stringify(readInputs())});
    if (!r.ok) document.getElementById("msg").textContent = r.body.error || "save failed";
    return r.ok;
  }
  function render(j){
    fillInputs(j);
    const active = j.active;
    document.querySelectorAll(".input").forEach(el => el.disabled = active);
    document.getElementById("startBtn").disabled = active;
    document.getElementById("pauseBtn").disabled = !active;
    document.getElementById("pauseBtn").textContent = j.status === "paused" ? "Resume" : "Pause";
    document.getElementById("stopBtn").disabled = !active;
    document.getElementById("status").textContent = j.status + (j.status === "waiting" ? ` (next in ${j.countdown_seconds}s)` : "");
    document.getElementById("elapsed").textContent = j.elapsed;
    document.getElementById("counts").textContent = `${j.progress.current}/${j.progress.total} | ok ${j.stats.success} | fail ${j.stats.fail}`;
    const pct = j.progress.total ? (100 * j.progress.current / j.progress.total) : 0;
    document.getElementById("bar").style.width = pct.toFixed(1) + "%";
    const tb = document.getElementById("results");
    tb.innerHTML = "";
    (j.results || []).forEach(r => {
      const tr = document.createElement("tr");
      const cls = r.status === "success" ? "ok" : "no";
      tr.innerHTML = `<td>${r.id}</td><td></td><td class="${cls}">${r.status}</td><td><pre></pre></td>`;
      tr.children[1].textContent = r.recipient;
      tr.querySelector("pre").textContent = r.response;
      tb.appendChild(tr);
    });
    document.getElementById("pageInfo").textContent = `page ${j.results_page}/${j.results_total_pages} (${j.results_total})`;
    document.getElementById("logs").textContent = (j.logs || []).slice(-30).map(l => `${l.ts} ${l.level} ${l.message}`).join("\n");
  }
  async function refresh(){
    if (!currentAccount()) return;
    const flt = document.getElementById("filter").value;
    const r = await api(jobUrl(`?results_page=${resultsPage}&filter=${flt}`));
    if (r.ok) render(r.body);
  }
  window.onAccountChange = () => { editing = false; resultsPage = 1; refresh(); };
  document.querySelectorAll(".input").forEach(el => el.addEventListener("input", () => { editing = true; }));
  document.getElementById("startBtn").addEventListener("click", async () => {
    document.getElementById("msg").textContent = "";
    if (!(await saveInputs())) return;
    editing = false;
    const r = await api(jobUrl("/start"), {method: "POST"});
    if (!r.ok) document.getElementById("msg").textContent = r.body.error || "start failed";
    refresh();
  });
  document.getElementById("pauseBtn").addEventListener("click", async () => {
    const action = document.getElementById("pauseBtn").textContent === "Resume" ? "resume" : "pause";
    await api(jobUrl("/control"), {method: "POST", body: JSON.stringify({action: action})});
    refresh();
  });
  document.getElementById("stopBtn").addEventListener("click", async () => {
    await api(jobUrl("/control"), {method: "POST", body: JSON.stringify({action: "stop"})});
    refresh();
  });
  document.getElementById("filter").addEventListener("change", () => { resultsPage = 1; refresh(); });
  document.getElementById("prevBtn").addEventListener("click", () => { resultsPage = Math.max(1, resultsPage - 1); refresh(); });
  document.getElementById("nextBtn").addEventListener("click", () => { resultsPage += 1; refresh(); });
  document.getElementById("exportBtn").addEventListener("click", () => {
    window.location = jobUrl(`/export?filter=${document.getElementById("filter").value}`);
  });
  loadAccounts();
  setInterval(refresh, 1000);
</script>
"""

ANALYTICS_SCRIPT = r"""
<script>
  let logPage = 1;
  async function refresh(){
    if (!currentAccount()) return;
    const st = document.getElementById("logStatus").value;
    const r = await api(`/api/analytics/logs?accountId=${encodeURIComponent(currentAccount())}&page=${logPage}&status=${st}`);
    const tb = document.getElementById("logRows");
    tb.innerHTML = "";
    if (!r.ok){ document.getElementById("msg").textContent = r.body.error || "failed to load logs"; return; }
    document.getElementById("msg").textContent = "";
    const s = r.body.summary || {};
    ["delivered","failed","opened","clicked","issues"].forEach(k => { document.getElementById("s_" + k).textContent = s[k] || 0; });
    (r.body.data || []).forEach(l => {
      const tr = document.createElement("tr");
      tr.innerHTML = "<td></td><td></td><td></td><td></td><td></td>";
      [l.sentAt, l.to, l.subject, l.detailedStatus, l.errorMessage || ""].forEach((v, i) => { tr.children[i].textContent = v; });
      tb.appendChild(tr);
    });
    const p = r.body.pagination || {};
    document.getElementById("pageInfo").textContent = `page ${p.page || logPage}`;
    document.getElementById("nextBtn").disabled = !p.hasMore;
  }
  window.onAccountChange = () => { logPage = 1; refresh(); };
  document.getElementById("logStatus").addEventListener("change", () => { logPage = 1; refresh(); });
  document.getElementById("prevBtn").addEventListener("click", () => { logPage = Math.max(1, logPage - 1); refresh(); });
  document.getElementById("nextBtn").addEventListener("click", () => { logPage += 1; refresh(); });
  document.getElementById("exportLogsBtn").addEventListener("click", () => {
    if (!currentAccount()) return;
    const st = document.getElementById("logStatus").value;
    window.location = `/api/analytics/logs/export?accountId=${encodeURIComponent(currentAccount())}&page=${logPage}&status=${st}`;
  });
  loadAccounts();
</script>
"""


SINGLE_SEND_SCRIPT = r"""
<script>
  document.getElementById("sendBtn").addEventListener("click", async () => {
    const msg = document.getElementById("msg");
    msg.className = "no"; msg.textContent = "";
    const body = {accountId: currentAccount()};
    ["to", "subject", "content", "from_email", "from_name"].forEach(k => { body[k] = document.getElementById(k).value; });
    if (!body.accountId || !body.to.trim() || !body.subject.trim() || !body.content.trim()) {
      msg.textContent = "Please fill in To, Subject, and Content.";
      return;
    }
    const btn = document.getElementById("sendBtn");
    btn.disabled = true;
    const r = await api("/api/send", {method: "POST", body: JSON.stringify(body)});
    btn.disabled = false;
    if (!r.ok) { msg.textContent = r.body.error || "Failed to send"; return; }
    msg.className = "ok";
    msg.textContent = `Successfully sent to ${body.to}`;
    document.getElementById("response").textContent = JSON.stringify(r.body.response, null, 2);
  });
  loadAccounts();
</script>
"""


def _job_page_content(title: str, payload_fields: str) -> str:
    return f"""
    <div class="card">
      <h3 style="margin-top:0">{escape(title)}</h3>
      {payload_fields}
      <label for="recipients">Recipients (one per line)</label>
      <textarea id="recipients" class="input"></textarea>
      <label for="delay">Delay between recipients (seconds)</label>
      <input id="delay" class="input" type="number" min="0" value="1" style="max-width:120px" />
      <div class="row" style="margin-top:12px">
        <button id="startBtn" class="primary" type="button">Start</button>
        <button id="pauseBtn" type="button" disabled>Pause</button>
        <button id="stopBtn" type="button" disabled>Stop</button>
        <span id="msg" class="no"></span>
      </div>
    </div>
    <div class="card">
      <div class="row" style="justify-content:space-between">
        <div>Status: <b id="status">idle</b></div>
        <div>Elapsed: <code id="elapsed">00:00</code></div>
        <div id="counts" class="muted"></div>
      </div>
      <div class="bar" style="margin-top:10px"><div id="bar"></div></div>
    </div>
    <div class="card">
      <div class="row">
        <select id="filter" style="max-width:160px">
          <option value="all">All</option><option value="success">Success</option><option value="error">Error</option>
        </select>
        <button id="prevBtn" type="button">Prev</button>
        <button id="nextBtn" type="button">Next</button>
        <span id="pageInfo" class="muted"></span>
        <button id="exportBtn" type="button">Export</button>
      </div>
      <table style="margin-top:10px">
        <thead><tr><th>#</th><th>Recipient</th><th>Status</th><th>Response</th></tr></thead>
        <tbody id="results"></tbody>
      </table>
    </div>
    <div class="card"><b>Log</b><pre id="logs" class="muted"></pre></div>
    """


def _render_job_page(kind: str, title: str, payload_fields: str):
    content = _job_page_content(title, payload_fields)
    script = render_template_string(JOB_SCRIPT, kind=kind)
    return render_template_string(BASE_HTML, title=title, content=Markup(content), script=Markup(script))


@app.get("/")
def send_page():
    fields = """
      <label for="subject">Subject</label>
      <input id="subject" class="input" data-payload="subject" />
      <div class="row">
        <div style="flex:1"><label for="from_email">From email</label><input id="from_email" class="input" data-payload="from_email" /></div>
        <div style="flex:1"><label for="from_name">From name</label><input id="from_name" class="input" data-payload="from_name" /></div>
      </div>
      <label for="content">HTML content</label>
      <textarea id="content" class="input" data-payload="content"></textarea>
    """
    return _render_job_page("send", "Bulk Send", fields)


@app.get("/audience")
def audience_page():
    fields = """
      <label for="audience_id">Audience ID</label>
      <input id="audience_id" class="input" data-payload="audience_id" />
      <label for="custom_fields">Custom fields (JSON object)</label>
      <textarea id="custom_fields" class="input" data-payload="custom_fields" style="min-height:60px"></textarea>
    """
    return _render_job_page("audience", "Add to Audience", fields)


@app.get("/send")
def single_send_page():
    content = """
    <div class="card">
      <h3 style="margin-top:0">Single Send</h3>
      <label for="to">To</label>
      <input id="to" type="email" />
      <label for="subject">Subject</label>
      <input id="subject" />
      <div class="row">
        <div style="flex:1"><label for="from_email">From email</label><input id="from_email" /></div>
        <div style="flex:1"><label for="from_name">From name</label><input id="from_name" /></div>
      </div>
      <label for="content">HTML content</label>
      <textarea id="content"></textarea>
      <div class="row" style="margin-top:12px">
        <button id="sendBtn" class="primary" type="button">Send Email</button>
        <span id="msg" class="no"></span>
      </div>
    </div>
    <div class="card"><b>Response</b><pre id="response" class="muted"></pre></div>
    """
    return render_template_string(
        BASE_HTML, title="Single Send", content=Markup(content), script=Markup(SINGLE_SEND_SCRIPT)
    )


@app.get("/analytics")
def analytics_page():
    stats = "".join(
        f'<div class="card" style="flex:1; margin:0"><div class="muted">{escape(label)}</div>'
        f'<h3 style="margin:4px 0 0" id="s_{key}">0</h3></div>'
        for key, label in (
            ("delivered", "Delivered"),
            ("failed", "Failed"),
            ("opened", "Opened"),
            ("clicked", "Clicked"),
            ("issues", "Issues"),
        )
    )
    content = f"""
    <div class="row" style="margin-bottom:12px">{stats}</div>
    <div class="card">
      <div class="row">
        <select id="logStatus" style="max-width:180px">
          <option value="all">All</option><option value="delivered">Delivered</option>
          <option value="failed">Failed</option><option value="opened">Opened</option>
          <option value="clicked">Clicked</option>
        </select>
        <button id="prevBtn" type="button">Prev</button>
        <button id="nextBtn" type="button">Next</button>
        <button id="exportLogsBtn" type="button">Export</button>
        <span id="pageInfo" class="muted"></span>
        <span id="msg" class="no"></span>
      </div>
      <table style="margin-top:10px">
        <thead><tr><th>Sent</th><th>To</th><th>Subject</th><th>Event</th><th>Error</th></tr></thead>
        <tbody id="logRows"></tbody>
      </table>
    </div>
    """
    return render_template_string(
        BASE_HTML, title="Analytics", content=Markup(content), script=Markup(ANALYTICS_SCRIPT)
    )


# =========================
# Job API
# =========================
@app.get("/api/jobs/<kind>/<account_id>")
def api_job(kind: str, account_id: str):
    ctl = _controller(kind)
    if not ctl:
        return jsonify({"ok": False, "error": "unknown job kind"}), 404
    try:
        results_page = max(1, int(request.args.get("results_page") or 1))
    except Exception:
        results_page = 1
    try:
        requested_page_size = int(request.args.get("results_page_size") or 100)
    except Exception:
        requested_page_size = 100
    results_page_size = max(1, min(RESULTS_PAGE_SIZE_MAX, requested_page_size))
    flt = _result_filter()

    job = ctl.store.get(account_id)
    rows = _filter_results(job.results, flt)
    results_total = len(rows)
    results_total_pages = max(1, math.ceil(results_total / results_page_size))
    results_page = min(results_page, results_total_pages)
    start_idx = (results_page - 1) * results_page_size

    return jsonify(
        {
            "ok": True,
            "kind": ctl.kind,
            "account_id": account_id,
            "recipients_raw": job.recipients_raw,
            "payload": job.payload,
            "delay_seconds": job.delay_seconds,
            "status": job.status,
            "active": job.active,
            "progress": job.progress,
            "stats": job.stats,
            "elapsed_seconds": job.elapsed_seconds,
            "elapsed": _fmt_elapsed(job.elapsed_seconds),
            "countdown_seconds": job.countdown_seconds,
            "started_at": job.started_at,
            "updated_at": job.updated_at,
            "logs": [l.__dict__ for l in job.logs[-200:]],
            "results": rows[start_idx:start_idx + results_page_size],
            "results_page": results_page,
            "results_page_size": results_page_size,
            "results_total": results_total,
            "results_total_pages": results_total_pages,
            "filter": flt,
        }
    )


@app.post("/api/jobs/<kind>/<account_id>/inputs")
def api_job_inputs(kind: str, account_id: str):
    ctl = _controller(kind)
    if not ctl:
        return jsonify({"ok": False, "error": "unknown job kind"}), 404
    payload = request.get_json(silent=True) or {}
    fields = {k: payload[k] for k in ("recipients_raw", "payload", "delay_seconds") if k in payload}
    if "payload" in fields and not isinstance(fields["payload"], dict):
        return jsonify({"ok": False, "error": "payload must be an object"}), 400
    if "recipients_raw" in fields:
        fields["recipients_raw"] = str(fields["recipients_raw"] or "")
    try:
        job = ctl.update_inputs(account_id, **fields)
    except JobActiveError as e:
        return jsonify({"ok": False, "error": str(e)}), 409
    except ValidationError as e:
        return jsonify({"ok": False, "error": str(e)}), 400
    return jsonify({"ok": True, "status": job.status, "delay_seconds": job.delay_seconds})


@app.post("/api/jobs/<kind>/<account_id>/start")
def api_job_start(kind: str, account_id: str):
    ctl = _controller(kind)
    if not ctl:
        return jsonify({"ok": False, "error": "unknown job kind"}), 404

    credentials, err = _account_credentials(account_id)
    if err:
        return err

    try:
        token = ctl.start(account_id, credentials)
    except ValidationError as e:
        return jsonify({"ok": False, "error": str(e)}), 400
    except JobActiveError as e:
        return jsonify({"ok": False, "error": str(e)}), 409

    job = ctl.store.get(account_id)
    return jsonify({"ok": True, "status": job.status, "total": job.progress.get("total", 0), "generation": token.generation})


@app.post("/api/jobs/<kind>/<account_id>/control")
def api_job_control(kind: str, account_id: str):
    """Pause/Resume/Stop a running job."""
    ctl = _controller(kind)
    if not ctl:
        return jsonify({"ok": False, "error": "unknown job kind"}), 404
    payload = request.get_json(silent=True) or request.form or {}
    action = str(payload.get("action") or "").strip().lower()

    actions = {"pause": ctl.pause, "resume": ctl.resume, "unpause": ctl.resume, "stop": ctl.stop}
    fn = actions.get(action)
    if not fn:
        return jsonify({"ok": False, "error": "invalid action"}), 400
    changed = fn(account_id)
    return jsonify({"ok": True, "changed": changed, "status": ctl.store.get(account_id).status})


@app.get("/api/jobs/<kind>/<account_id>/export")
def api_job_export(kind: str, account_id: str):
    ctl = _controller(kind)
    if not ctl:
        return jsonify({"ok": False, "error": "unknown job kind"}), 404
    flt = _result_filter()
    rows = _filter_results(ctl.store.get(account_id).results, flt)
    if not rows:
        return jsonify({"ok": False, "error": "no results to export"}), 404

    body = "\n".join(f"{r.get('recipient')},{r.get('status')}" for r in rows).encode("utf-8")
    resp = make_response(body)
    resp.headers["Content-Type"] = "text/plain; charset=utf-8"
    resp.headers["Content-Disposition"] = f'attachment; filename="{ctl.kind}-results-{flt}.txt"'
    return resp


# =========================
# Accounts
# =========================
@app.get("/api/accounts")
def api_accounts():
    return _relay(PROXY.list_accounts())


@app.post("/api/accounts")
def api_accounts_create():
    payload = request.get_json(silent=True) or {}
    if not str(payload.get("secretKey") or "").strip():
        return jsonify({"ok": False, "error": "secretKey is required"}), 400
    account = dict(payload)
    account.setdefault("status", "unknown")
    return _relay(PROXY.create_account(account), ok_status=201)


@app.put("/api/accounts/<account_id>")
def api_accounts_update(account_id: str):
    payload = request.get_json(silent=True) or {}
    return _relay(PROXY.update_account(account_id, payload))


@app.delete("/api/accounts/<account_id>")
def api_accounts_delete(account_id: str):
    res = PROXY.delete_account(account_id)
    if res.ok:
        return "", 204
    return _relay(res)


@app.post("/api/accounts/<account_id>/check")
def api_accounts_check(account_id: str):
    """Verify an account's secret key against the provider and store the outcome."""
    account, err = _account_credentials(account_id)
    if err:
        return err

    res = PROXY.check_status(str(account.get("secretKey") or ""))
    updates: Dict[str, Any] = {"lastChecked": now_iso()}
    if res.ok:
        updates["status"] = "connected"
        updates["lastResponse"] = res.body
        updates["lastError"] = None
    else:
        updates["status"] = "disconnected"
        updates["lastError"] = res.body

    saved = PROXY.update_account(account_id, updates)
    return jsonify(
        {
            "ok": res.ok,
            "status": updates["status"],
            "message": res.body.get("message", "") if isinstance(res.body, dict) else "",
            "account": saved.body if saved.ok else {**account, **updates},
        }
    )


# =========================
# Single send + analytics
# =========================
@app.post("/api/send")
def api_send():
    payload = request.get_json(silent=True) or {}
    account_id = str(payload.get("accountId") or "").strip()
    to = str(payload.get("to") or "").strip()
    subject = str(payload.get("subject") or "")
    content = str(payload.get("content") or "")
    if not account_id or not to or not subject.strip() or not content.strip():
        return jsonify({"ok": False, "error": "accountId, to, subject and content are required"}), 400

    res = PROXY.send_email(
        account_id,
        to,
        subject,
        content,
        from_email=str(payload.get("from_email") or "").strip() or None,
        from_name=str(payload.get("from_name") or "").strip() or None,
    )
    if not res.ok:
        return _relay(res)
    return jsonify({"ok": True, "response": res.body})


def summarize_logs(logs) -> Dict[str, int]:
    statuses = [str((l or {}).get("status") or "") for l in (logs or [])]
    return {
        "delivered": statuses.count("delivered"),
        "failed": statuses.count("failed"),
        "opened": statuses.count("opened"),
        "clicked": statuses.count("clicked"),
        "issues": statuses.count("spam") + statuses.count("delayed"),
    }


def _fetch_log_page():
    """Fetch one page of provider logs for the request's accountId/page/limit/status."""
    account_id = str(request.args.get("accountId") or "").strip()
    if not account_id:
        return None, (jsonify({"ok": False, "error": "accountId is required"}), 400)
    try:
        page = max(1, int(request.args.get("page") or 1))
    except Exception:
        page = 1
    try:
        limit = max(1, min(100, int(request.args.get("limit") or 25)))
    except Exception:
        limit = 25
    status = str(request.args.get("status") or "").strip().lower()

    res = PROXY.fetch_logs(account_id, limit=limit, page=page, status=status)
    if not res.ok:
        return None, _relay(res)
    body = res.body if isinstance(res.body, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), list) else []
    return {"data": data, "pagination": body.get("pagination") or {"page": page, "limit": limit}}, None


@app.get("/api/analytics/logs")
def api_analytics_logs():
    out, err = _fetch_log_page()
    if err:
        return err
    return jsonify({"ok": True, "data": out["data"], "pagination": out["pagination"], "summary": summarize_logs(out["data"])})


@app.get("/api/analytics/logs/export")
def api_analytics_logs_export():
    out, err = _fetch_log_page()
    if err:
        return err
    rows = [l for l in out["data"] if isinstance(l, dict)]
    if not rows:
        return jsonify({"ok": False, "error": "no logs to export"}), 404

    body = "\n".join(f"{l.get('sentAt')},{l.get('to')},{l.get('detailedStatus')}" for l in rows).encode("utf-8")
    resp = make_response(body)
    resp.headers["Content-Type"] = "text/plain; charset=utf-8"
    resp.headers["Content-Disposition"] = f'attachment; filename="email-logs-{now_iso()[:10]}.txt"'
    return resp


if __name__ == "__main__":
    # For local use. In production, use a real WSGI server (gunicorn/waitress).
    app.run(
        host=(os.getenv("DASHBOARD_HOST", "0.0.0.0") or "0.0.0.0").strip(),
        port=_env_int("DASHBOARD_PORT", 5001),
        debug=False,
    )
