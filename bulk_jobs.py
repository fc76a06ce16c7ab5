import json
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from itertools import count
from typing import Any, Callable, Dict, Iterable, List, Optional

from emailit_client import ProviderResult

ACTIVE_STATUSES = frozenset({"processing", "paused", "waiting"})
# Statuses that accumulate elapsed time
TICKING_STATUSES = frozenset({"processing", "waiting"})
INPUT_FIELDS = frozenset({"recipients_raw", "payload", "delay_seconds"})
MAX_JOB_LOGS = 500


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class BulkJobError(Exception):
    """Base class for errors raised by the bulk job runner."""


class ValidationError(BulkJobError):
    """Job inputs are not runnable. Raised before any state is touched."""


class JobActiveError(BulkJobError):
    """The account already has a run in processing/paused/waiting."""


def parse_recipients(text: str) -> List[str]:
    """Split a textarea input by NEW LINE.

    - Trims every line.
    - Drops blank / whitespace-only lines.
    - Keeps the original order (it is the processing order).
    """
    if not text:
        return []
    out: List[str] = []
    for line in str(text).splitlines():
        s = (line or "").strip()
        if s:
            out.append(s)
    return out


def coerce_delay(value: Any) -> int:
    try:
        delay = int(str(value).strip() or 0)
    except (TypeError, ValueError) as e:
        raise ValidationError("invalid delay") from e
    if delay < 0:
        raise ValidationError("invalid delay")
    return delay


# =========================
# Job Model (in-memory)
# =========================
@dataclass
class JobLog:
    ts: str
    level: str
    message: str


@dataclass
class Job:
    # Inputs (frozen while a run is active)
    recipients_raw: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    delay_seconds: int = 1

    status: str = "idle"  # idle | processing | paused | waiting | completed | stopped
    progress: Dict[str, int] = field(default_factory=lambda: {"current": 0, "total": 0})
    results: List[dict] = field(default_factory=list)  # newest first: {id, recipient, status, response, ts}
    stats: Dict[str, int] = field(default_factory=lambda: {"success": 0, "fail": 0})
    elapsed_seconds: int = 0
    countdown_seconds: int = 0

    started_at: str = ""
    updated_at: str = ""
    logs: List[JobLog] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class JobStore:
    """Account id -> Job mapping.

    Snapshots returned by get() share nested containers with the stored record;
    writers always build new dict/list objects instead of mutating them.
    """

    def __init__(self, *, default_payload: Optional[dict] = None, default_delay: int = 1):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._default_payload = dict(default_payload or {})
        self._default_delay = default_delay

    def _default(self) -> Job:
        return Job(payload=dict(self._default_payload), delay_seconds=self._default_delay)

    def _merge_locked(self, account_id: str, fields: dict) -> Job:
        cur = self._jobs.get(account_id) or self._default()
        job = replace(cur, **fields)
        if "updated_at" not in fields:
            job.updated_at = now_iso()
        self._jobs[account_id] = job
        return job

    def get(self, account_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(account_id)
            return replace(job) if job else self._default()

    def merge(self, account_id: str, **fields: Any) -> Job:
        with self._lock:
            return replace(self._merge_locked(account_id, fields))

    def update(self, account_id: str, fn: Callable[[Job], dict]) -> Job:
        """Read-modify-write: fn gets the current Job and returns the fields to merge."""
        with self._lock:
            cur = self._jobs.get(account_id) or self._default()
            return replace(self._merge_locked(account_id, dict(fn(cur) or {})))

    def append_log(self, account_id: str, level: str, message: str) -> None:
        with self._lock:
            cur = self._jobs.get(account_id) or self._default()
            logs = list(cur.logs)
            logs.append(JobLog(ts=now_iso(), level=level, message=message))
            if len(logs) > MAX_JOB_LOGS:
                logs = logs[-MAX_JOB_LOGS:]
            self._merge_locked(account_id, {"logs": logs})

    def account_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs.keys())

    def tick_elapsed(self) -> int:
        """Add one second to every job in processing/waiting. Returns how many ticked."""
        n = 0
        with self._lock:
            for account_id, job in list(self._jobs.items()):
                if job.status in TICKING_STATUSES:
                    self._jobs[account_id] = replace(job, elapsed_seconds=int(job.elapsed_seconds) + 1)
                    n += 1
        return n

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()


# =========================
# Per-recipient operations
# =========================
class RecipientOperation:
    kind = ""
    label = "Bulk job"

    def default_payload(self) -> dict:
        return {}

    def prepare(self, payload: dict) -> dict:
        """Validate the job payload and return what __call__ needs."""
        return dict(payload or {})

    def __call__(self, account_id: str, recipient: str, prepared: dict) -> ProviderResult:
        raise NotImplementedError


class SendEmailOperation(RecipientOperation):
    kind = "send"
    label = "Bulk send"

    def __init__(self, adapter):
        self.adapter = adapter

    def default_payload(self) -> dict:
        return {"subject": "", "content": "", "from_email": "", "from_name": ""}

    def prepare(self, payload: dict) -> dict:
        subject = str(payload.get("subject") or "")
        content = str(payload.get("content") or "")
        if not subject.strip() or not content.strip():
            raise ValidationError("missing subject or content")
        return {
            "subject": subject,
            "content": content,
            "from_email": str(payload.get("from_email") or "").strip() or None,
            "from_name": str(payload.get("from_name") or "").strip() or None,
        }

    def __call__(self, account_id: str, recipient: str, prepared: dict) -> ProviderResult:
        return self.adapter.send_email(
            account_id,
            recipient,
            prepared["subject"],
            prepared["content"],
            from_email=prepared.get("from_email"),
            from_name=prepared.get("from_name"),
        )


class AddToAudienceOperation(RecipientOperation):
    kind = "audience"
    label = "Audience tracking"

    def __init__(self, adapter):
        self.adapter = adapter

    def default_payload(self) -> dict:
        return {"audience_id": "", "custom_fields": "{}"}

    def prepare(self, payload: dict) -> dict:
        audience_id = str(payload.get("audience_id") or "").strip()
        if not audience_id:
            raise ValidationError("missing audience id")

        raw = payload.get("custom_fields")
        if isinstance(raw, dict):
            custom_fields = dict(raw)
        else:
            text = str(raw or "").strip()
            if not text:
                custom_fields = {}
            else:
                try:
                    custom_fields = json.loads(text)
                except json.JSONDecodeError as e:
                    raise ValidationError("invalid payload") from e
                if not isinstance(custom_fields, dict):
                    raise ValidationError("invalid payload")
        return {"audience_id": audience_id, "custom_fields": custom_fields}

    def __call__(self, account_id: str, recipient: str, prepared: dict) -> ProviderResult:
        return self.adapter.add_to_audience(
            account_id,
            prepared["audience_id"],
            recipient,
            prepared["custom_fields"],
        )


# =========================
# Run control + controller
# =========================
@dataclass
class RunToken:
    generation: int
    paused: bool = False
    stopped: bool = False
    active: bool = True  # False once the run loop has exited


class BulkJobController:
    """Drives one account's recipient list through an operation, one at a time.

    Each start() registers a RunToken with a new generation. The run loop
    checks the token at every suspension point (pause poll, countdown tick,
    provider call) and only writes state while its generation is still the
    current one for the account.

    Lock order: controller lock, then store lock.
    """

    def __init__(
        self,
        store: JobStore,
        operation: RecipientOperation,
        *,
        tick_s: float = 1.0,
        poll_s: float = 0.5,
    ):
        self.store = store
        self.operation = operation
        self.tick_s = max(0.0, float(tick_s))
        self.poll_s = max(0.001, float(poll_s))
        self._lock = threading.Lock()
        self._tokens: Dict[str, RunToken] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._generations = count(1)

    @property
    def kind(self) -> str:
        return self.operation.kind

    def token(self, account_id: str) -> Optional[RunToken]:
        with self._lock:
            return self._tokens.get(account_id)

    def _is_current(self, account_id: str, token: RunToken) -> bool:
        cur = self._tokens.get(account_id)
        return cur is not None and cur.generation == token.generation

    # ----------------------------
    # Inputs
    # ----------------------------
    def update_inputs(self, account_id: str, **fields: Any) -> Job:
        unknown = set(fields) - INPUT_FIELDS
        if unknown:
            raise TypeError(f"not an input field: {', '.join(sorted(unknown))}")
        if "delay_seconds" in fields:
            fields["delay_seconds"] = coerce_delay(fields["delay_seconds"])
        if "payload" in fields:
            payload = dict(self.store.get(account_id).payload)
            payload.update(fields["payload"] or {})
            fields["payload"] = payload
        with self._lock:
            if self.store.get(account_id).active:
                raise JobActiveError("job is running; stop it before editing its inputs")
            return self.store.merge(account_id, **fields)

    # ----------------------------
    # Commands
    # ----------------------------
    def start(self, account_id: str, credentials: Optional[dict] = None) -> RunToken:
        with self._lock:
            job = self.store.get(account_id)
            if job.active:
                raise JobActiveError(f"job already {job.status} for this account")

            recipients = parse_recipients(job.recipients_raw)
            if not recipients:
                raise ValidationError("no recipients")
            prepared = self.operation.prepare(job.payload or {})
            delay = coerce_delay(job.delay_seconds)

            token = RunToken(generation=next(self._generations))
            self._tokens[account_id] = token
            self.store.merge(
                account_id,
                status="processing",
                results=[],
                stats={"success": 0, "fail": 0},
                progress={"current": 0, "total": len(recipients)},
                elapsed_seconds=0,
                countdown_seconds=0,
                started_at=now_iso(),
                logs=[],
            )
            name = str((credentials or {}).get("name") or account_id)
            self.store.append_log(
                account_id,
                "INFO",
                f"{self.operation.label} started for {name}: total={len(recipients)} delay={delay}s",
            )

            t = threading.Thread(
                target=self._run,
                args=(account_id, token, recipients, prepared, delay),
                name=f"{self.kind}-job-{account_id}",
                daemon=True,
            )
            self._threads[account_id] = t
            t.start()
        return token

    def pause(self, account_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(account_id)
            if not token or not token.active or token.stopped:
                return False
            token.paused = True
            self.store.merge(account_id, status="paused")
            self.store.append_log(account_id, "WARN", "Paused by user")
            return True

    def resume(self, account_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(account_id)
            if not token or not token.active or token.stopped or not token.paused:
                return False
            token.paused = False
            self.store.merge(account_id, status="processing")
            self.store.append_log(account_id, "INFO", "Resumed by user")
            return True

    def stop(self, account_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(account_id)
            if not token or not token.active or token.stopped:
                return False
            token.stopped = True
            token.paused = False
            self.store.merge(account_id, status="stopped", countdown_seconds=0)
            self.store.append_log(account_id, "WARN", "Stopped by user")
            return True

    def wait(self, account_id: str, timeout: Optional[float] = None) -> bool:
        """Join the current run thread. True when no run is left alive."""
        with self._lock:
            t = self._threads.get(account_id)
        if t is None:
            return True
        t.join(timeout)
        return not t.is_alive()

    # ----------------------------
    # Guarded writes
    # ----------------------------
    def _write(self, account_id: str, token: RunToken, **fields: Any) -> bool:
        with self._lock:
            if not self._is_current(account_id, token):
                return False
            st = fields.get("status")
            if st in ACTIVE_STATUSES:
                if token.stopped:
                    fields["status"] = "stopped"
                elif token.paused:
                    fields["status"] = "paused"
            self.store.merge(account_id, **fields)
            return True

    def _log(self, account_id: str, token: RunToken, level: str, message: str) -> None:
        with self._lock:
            if self._is_current(account_id, token):
                self.store.append_log(account_id, level, message)

    # ----------------------------
    # Suspension points
    # ----------------------------
    def _wait_ready(self, token: RunToken) -> bool:
        """Wait while paused. Return False if stop requested."""
        while token.paused:
            if token.stopped:
                return False
            time.sleep(self.poll_s)
        return not token.stopped

    def _sleep_checked(self, account_id: str, token: RunToken, seconds: float) -> bool:
        """Sleep in small steps so pause/stop works mid-tick.

        Time spent paused does not count against the tick.
        """
        end = time.monotonic() + max(0.0, seconds)
        while True:
            if token.stopped:
                return False
            if token.paused:
                paused_at = time.monotonic()
                if not self._wait_ready(token):
                    return False
                end += time.monotonic() - paused_at
                self._write(account_id, token, status="waiting")
            left = end - time.monotonic()
            if left <= 0:
                return True
            time.sleep(min(self.poll_s, left))

    def _countdown(self, account_id: str, token: RunToken, delay: int) -> bool:
        remaining = delay
        self._write(account_id, token, status="waiting", countdown_seconds=remaining)
        while remaining > 0:
            if not self._sleep_checked(account_id, token, self.tick_s):
                return False
            remaining -= 1
            self._write(account_id, token, countdown_seconds=remaining)
        self._write(account_id, token, status="processing", countdown_seconds=0)
        return True

    # ----------------------------
    # Run loop
    # ----------------------------
    def _invoke(self, account_id: str, recipient: str, prepared: dict) -> ProviderResult:
        try:
            result = self.operation(account_id, recipient, prepared)
        except Exception as e:
            return ProviderResult(ok=False, body={"error": str(e) or "Network Error"})
        if not isinstance(result, ProviderResult):
            return ProviderResult(ok=False, body={"error": "invalid provider result"})
        return result

    def _record(self, account_id: str, token: RunToken, index: int, recipient: str, result: ProviderResult) -> bool:
        status = "success" if result.ok else "error"
        body = result.body
        if body is None or body == "":
            body = {} if result.ok else {"error": "Unknown error"}
        entry = {
            "id": index + 1,
            "recipient": recipient,
            "status": status,
            "response": json.dumps(body, indent=2, default=str),
            "ts": now_iso(),
        }

        def apply(job: Job) -> dict:
            stats = dict(job.stats)
            key = "success" if result.ok else "fail"
            stats[key] = int(stats.get(key, 0)) + 1
            return {
                "stats": stats,
                "progress": {"current": index + 1, "total": int(job.progress.get("total", 0))},
                "results": [entry] + list(job.results),
            }

        with self._lock:
            if not self._is_current(account_id, token):
                return False
            self.store.update(account_id, apply)
            if not result.ok:
                self.store.append_log(account_id, "ERROR", f"#{index + 1} {recipient}: {result.error_message()}")
            return True

    def _halted(self, account_id: str, token: RunToken) -> bool:
        if token.stopped:
            return True
        with self._lock:
            return not self._is_current(account_id, token)

    def _finish(self, account_id: str, token: RunToken) -> None:
        with self._lock:
            token.active = False
            if self._threads.get(account_id) is threading.current_thread():
                self._threads.pop(account_id, None)
            if not self._is_current(account_id, token):
                return
            job = self.store.get(account_id)
            if token.stopped:
                self.store.merge(account_id, status="stopped", countdown_seconds=0)
                self.store.append_log(
                    account_id,
                    "WARN",
                    f"Job stopped at {job.progress.get('current', 0)}/{job.progress.get('total', 0)}",
                )
            else:
                self.store.merge(account_id, status="completed", countdown_seconds=0)
                self.store.append_log(
                    account_id,
                    "INFO",
                    f"Job completed: success={job.stats.get('success', 0)} fail={job.stats.get('fail', 0)}",
                )

    def _run(self, account_id: str, token: RunToken, recipients: List[str], prepared: dict, delay: int) -> None:
        try:
            for i, recipient in enumerate(recipients):
                if self._halted(account_id, token):
                    break
                if not self._wait_ready(token):
                    break
                if i > 0 and delay > 0:
                    if not self._countdown(account_id, token, delay):
                        break
                if self._halted(account_id, token):
                    break

                result = self._invoke(account_id, recipient, prepared)
                self._record(account_id, token, i, recipient, result)
        except Exception as e:
            token.stopped = True
            self._log(account_id, token, "ERROR", f"Run aborted: {e}")
        finally:
            self._finish(account_id, token)


# =========================
# Elapsed-time ticker
# =========================
class ElapsedTicker:
    """One background thread adding a second of elapsed time to active jobs."""

    def __init__(self, stores: Iterable[JobStore], *, interval_s: float = 1.0):
        self.stores = list(stores)
        self.interval_s = max(0.01, float(interval_s))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive()

    def tick(self) -> int:
        return sum(store.tick_elapsed() for store in self.stores)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.tick()

    def start(self) -> bool:
        with self._lock:
            if self.running:
                return False
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="elapsed-ticker", daemon=True)
            self._thread.start()
            return True

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            t = self._thread
            self._stop.set()
        if t is not None:
            t.join(timeout)
