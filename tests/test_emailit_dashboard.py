import os
import threading
import time
import unittest

os.environ.setdefault("ELAPSED_TICKER_ENABLED", "0")

import emailit_dashboard as dash
from emailit_client import ProviderResult


def wait_until(pred, timeout=5.0, step=0.005):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if pred():
            return True
        time.sleep(step)
    return False


class FakeProxy:
    def __init__(self):
        self.accounts = {"acc-1": {"id": "acc-1", "name": "Main", "secretKey": "em_secret"}}
        self.sent = []
        self.fail_for = set()
        self.gate = None
        self.check_ok = True
        self.log_calls = []
        self.logs = [
            {"id": "1", "status": "delivered", "sentAt": "2024-05-01T10:00:00Z", "to": "a@x.com", "detailedStatus": "delivered"},
            {"id": "2", "status": "delivered", "sentAt": "2024-05-01T10:01:00Z", "to": "b@x.com", "detailedStatus": "delivered"},
            {"id": "3", "status": "failed", "sentAt": "2024-05-01T10:02:00Z", "to": "c@x.com", "detailedStatus": "bounced"},
            {"id": "4", "status": "opened", "sentAt": "2024-05-01T10:03:00Z", "to": "d@x.com", "detailedStatus": "opened"},
            {"id": "5", "status": "spam", "sentAt": "2024-05-01T10:04:00Z", "to": "e@x.com", "detailedStatus": "complained"},
        ]

    def _deliver(self, recipient, extra):
        self.sent.append((recipient, extra))
        if self.gate is not None:
            self.gate.wait(5)
        if recipient in self.fail_for:
            return ProviderResult(ok=False, body={"detail": {"error": "Failed to send email"}}, status_code=422)
        return ProviderResult(ok=True, body={"id": f"em_{len(self.sent)}"}, status_code=200)

    def send_email(self, account_id, recipient, subject, html_content, from_email=None, from_name=None):
        return self._deliver(recipient, {"subject": subject, "from_email": from_email})

    def add_to_audience(self, account_id, audience_id, recipient, custom_fields=None):
        return self._deliver(recipient, {"audience_id": audience_id, "custom_fields": custom_fields})

    def get_account(self, account_id):
        acc = self.accounts.get(account_id)
        if not acc:
            return ProviderResult(ok=False, body={"detail": {"error": "Account not found"}}, status_code=404)
        return ProviderResult(ok=True, body=dict(acc), status_code=200)

    def list_accounts(self):
        return ProviderResult(ok=True, body=list(self.accounts.values()), status_code=200)

    def create_account(self, account):
        acc = dict(account)
        acc.setdefault("id", f"acc-{len(self.accounts) + 1}")
        self.accounts[acc["id"]] = acc
        return ProviderResult(ok=True, body=acc, status_code=201)

    def update_account(self, account_id, updates):
        if account_id not in self.accounts:
            return ProviderResult(ok=True, body={}, status_code=200)
        self.accounts[account_id] = {**self.accounts[account_id], **updates}
        return ProviderResult(ok=True, body=dict(self.accounts[account_id]), status_code=200)

    def delete_account(self, account_id):
        self.accounts.pop(account_id, None)
        return ProviderResult(ok=True, body={}, status_code=204)

    def check_status(self, secret_key):
        if self.check_ok:
            return ProviderResult(ok=True, body={"success": True, "message": "Connected to Emailit (v1)."}, status_code=200)
        return ProviderResult(
            ok=False, body={"detail": {"success": False, "message": "Authentication Failed"}}, status_code=401
        )

    def fetch_logs(self, account_id, *, limit=25, page=1, status=""):
        self.log_calls.append((account_id, limit, page, status))
        return ProviderResult(
            ok=True,
            body={"success": True, "data": list(self.logs), "pagination": {"page": page, "limit": limit, "hasMore": False}},
            status_code=200,
        )


class DashboardTestCase(unittest.TestCase):
    def setUp(self):
        self._saved_proxy = dash.PROXY
        self.proxy = FakeProxy()
        dash.set_adapter(self.proxy)
        for ctl in dash.CONTROLLERS.values():
            ctl.tick_s = 0.01
            ctl.poll_s = 0.005
            ctl.store.clear()
        self.client = dash.app.test_client()

    def tearDown(self):
        if self.proxy.gate is not None:
            self.proxy.gate.set()
        for ctl in dash.CONTROLLERS.values():
            ctl.stop("acc-1")
            ctl.wait("acc-1", timeout=5)
        dash.set_adapter(self._saved_proxy)

    def set_inputs(self, kind="send", recipients="a@x.com\nb@x.com\nc@x.com", delay=0, payload=None):
        if payload is None:
            payload = {"subject": "Hello", "content": "<p>Hi</p>"}
        r = self.client.post(
            f"/api/jobs/{kind}/acc-1/inputs",
            json={"recipients_raw": recipients, "delay_seconds": delay, "payload": payload},
        )
        self.assertEqual(r.status_code, 200, r.get_json())

    def start_and_finish(self, kind="send"):
        r = self.client.post(f"/api/jobs/{kind}/acc-1/start")
        self.assertEqual(r.status_code, 200, r.get_json())
        self.assertTrue(dash.CONTROLLERS[kind].wait("acc-1", timeout=5))
        return self.client.get(f"/api/jobs/{kind}/acc-1").get_json()


class PageTests(DashboardTestCase):
    def test_pages_render(self):
        for path, marker in (("/", b"Bulk Send"), ("/audience", b"Add to Audience"), ("/analytics", b"Delivered")):
            r = self.client.get(path)
            self.assertEqual(r.status_code, 200)
            self.assertIn(marker, r.data)
        self.assertIn(b'const KIND = "audience"', self.client.get("/audience").data)

    def test_single_send_page(self):
        r = self.client.get("/send")
        self.assertEqual(r.status_code, 200)
        self.assertIn(b"Single Send", r.data)
        self.assertIn(b'id="sendBtn"', r.data)
        self.assertIn(b"/api/send", r.data)

    def test_account_controls_on_every_page(self):
        for path in ("/", "/audience", "/send", "/analytics"):
            data = self.client.get(path).data
            for marker in (b'id="addAccountBtn"', b'id="editAccountBtn"', b'id="deleteAccountBtn"', b'id="accountForm"'):
                self.assertIn(marker, data, path)

    def test_analytics_page_has_export(self):
        data = self.client.get("/analytics").data
        self.assertIn(b'id="exportLogsBtn"', data)
        self.assertIn(b"/api/analytics/logs/export", data)

    def test_job_page_shows_server_elapsed(self):
        self.assertIn(b"j.elapsed", self.client.get("/").data)


class JobApiTests(DashboardTestCase):
    def test_default_snapshot_and_unknown_kind(self):
        j = self.client.get("/api/jobs/send/acc-1").get_json()
        self.assertEqual(j["status"], "idle")
        self.assertEqual(j["delay_seconds"], 1)
        self.assertEqual(j["results"], [])
        self.assertFalse(j["active"])
        self.assertEqual(self.client.get("/api/jobs/bogus/acc-1").status_code, 404)

    def test_full_run_with_pagination_and_filter(self):
        self.proxy.fail_for.add("b@x.com")
        self.set_inputs()
        j = self.start_and_finish()
        self.assertEqual(j["status"], "completed")
        self.assertEqual(j["stats"], {"success": 2, "fail": 1})
        self.assertEqual(j["progress"], {"current": 3, "total": 3})
        self.assertTrue(any("completed" in l["message"] for l in j["logs"]))

        page = self.client.get("/api/jobs/send/acc-1?results_page=2&results_page_size=2").get_json()
        self.assertEqual(page["results_total_pages"], 2)
        self.assertEqual([r["recipient"] for r in page["results"]], ["a@x.com"])

        errors = self.client.get("/api/jobs/send/acc-1?filter=error").get_json()
        self.assertEqual([r["id"] for r in errors["results"]], [2])
        self.assertEqual(errors["filter"], "error")

        capped = self.client.get("/api/jobs/send/acc-1?results_page_size=5000").get_json()
        self.assertEqual(capped["results_page_size"], dash.RESULTS_PAGE_SIZE_MAX)

    def test_elapsed_includes_hours(self):
        dash.CONTROLLERS["send"].store.merge("acc-1", elapsed_seconds=3725)
        self.assertEqual(self.client.get("/api/jobs/send/acc-1").get_json()["elapsed"], "01:02:05")
        dash.CONTROLLERS["send"].store.merge("acc-1", elapsed_seconds=65)
        self.assertEqual(self.client.get("/api/jobs/send/acc-1").get_json()["elapsed"], "01:05")

    def test_start_errors(self):
        r = self.client.post("/api/jobs/send/missing/start")
        self.assertEqual(r.status_code, 404)

        self.set_inputs(recipients="\n  \n")
        r = self.client.post("/api/jobs/send/acc-1/start")
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.get_json()["error"], "no recipients")

        self.set_inputs(kind="audience", payload={"audience_id": "aud_1", "custom_fields": "{oops"})
        r = self.client.post("/api/jobs/audience/acc-1/start")
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.get_json()["error"], "invalid payload")
        self.assertEqual(self.proxy.sent, [])

    def test_inputs_rejected_while_active(self):
        self.proxy.gate = threading.Event()
        self.set_inputs()
        self.assertEqual(self.client.post("/api/jobs/send/acc-1/start").status_code, 200)

        r = self.client.post("/api/jobs/send/acc-1/inputs", json={"recipients_raw": "z@x.com"})
        self.assertEqual(r.status_code, 409)
        self.assertEqual(self.client.post("/api/jobs/send/acc-1/start").status_code, 409)

        bad = self.client.post("/api/jobs/send/acc-1/control", json={"action": "explode"})
        self.assertEqual(bad.status_code, 400)

        self.assertTrue(wait_until(lambda: [s[0] for s in self.proxy.sent] == ["a@x.com"]))
        r = self.client.post("/api/jobs/send/acc-1/control", json={"action": "stop"})
        self.assertEqual(r.get_json(), {"ok": True, "changed": True, "status": "stopped"})
        self.proxy.gate.set()
        self.assertTrue(dash.CONTROLLERS["send"].wait("acc-1", timeout=5))
        j = self.client.get("/api/jobs/send/acc-1").get_json()
        self.assertEqual(j["status"], "stopped")
        self.assertEqual(j["progress"]["current"], 1)

    def test_pause_and_resume(self):
        self.set_inputs(delay=50)
        self.client.post("/api/jobs/send/acc-1/start")
        end = time.monotonic() + 5
        while time.monotonic() < end and self.client.get("/api/jobs/send/acc-1").get_json()["status"] != "waiting":
            time.sleep(0.01)

        r = self.client.post("/api/jobs/send/acc-1/control", json={"action": "pause"})
        self.assertEqual(r.get_json()["status"], "paused")
        r = self.client.post("/api/jobs/send/acc-1/control", json={"action": "resume"})
        self.assertTrue(r.get_json()["changed"])
        r = self.client.post("/api/jobs/send/acc-1/control", json={"action": "stop"})
        self.assertEqual(r.get_json()["status"], "stopped")
        self.assertEqual(len(self.proxy.sent), 1)

    def test_audience_run(self):
        self.set_inputs(kind="audience", recipients="a@x.com", payload={"audience_id": "aud_9", "custom_fields": '{"k": 1}'})
        j = self.start_and_finish(kind="audience")
        self.assertEqual(j["status"], "completed")
        self.assertEqual(self.proxy.sent, [("a@x.com", {"audience_id": "aud_9", "custom_fields": {"k": 1}})])
        # send job for the same account is independent
        self.assertEqual(self.client.get("/api/jobs/send/acc-1").get_json()["status"], "idle")

    def test_export(self):
        self.assertEqual(self.client.get("/api/jobs/send/acc-1/export").status_code, 404)

        self.proxy.fail_for.add("b@x.com")
        self.set_inputs()
        self.start_and_finish()

        r = self.client.get("/api/jobs/send/acc-1/export")
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.headers["Content-Type"].startswith("text/plain"))
        self.assertIn("attachment", r.headers["Content-Disposition"])
        self.assertEqual(r.data.decode("utf-8"), "c@x.com,success\nb@x.com,error\na@x.com,success")

        r = self.client.get("/api/jobs/send/acc-1/export?filter=error")
        self.assertEqual(r.data.decode("utf-8"), "b@x.com,error")


class AccountApiTests(DashboardTestCase):
    def test_list_create_delete(self):
        self.assertEqual(len(self.client.get("/api/accounts").get_json()), 1)

        r = self.client.post("/api/accounts", json={"name": "No key"})
        self.assertEqual(r.status_code, 400)

        r = self.client.post("/api/accounts", json={"id": "acc-2", "name": "Second", "secretKey": "k2"})
        self.assertEqual(r.status_code, 201)
        self.assertEqual(r.get_json()["status"], "unknown")

        r = self.client.put("/api/accounts/acc-2", json={"name": "Renamed"})
        self.assertEqual(r.get_json()["name"], "Renamed")

        self.assertEqual(self.client.delete("/api/accounts/acc-2").status_code, 204)
        self.assertNotIn("acc-2", self.proxy.accounts)

    def test_check_marks_connected(self):
        r = self.client.post("/api/accounts/acc-1/check")
        out = r.get_json()
        self.assertTrue(out["ok"])
        self.assertEqual(out["status"], "connected")
        acc = self.proxy.accounts["acc-1"]
        self.assertEqual(acc["status"], "connected")
        self.assertTrue(acc["lastChecked"])
        self.assertIsNone(acc["lastError"])

    def test_check_marks_disconnected(self):
        self.proxy.check_ok = False
        out = self.client.post("/api/accounts/acc-1/check").get_json()
        self.assertFalse(out["ok"])
        self.assertEqual(out["status"], "disconnected")
        self.assertEqual(self.proxy.accounts["acc-1"]["lastError"]["detail"]["message"], "Authentication Failed")

    def test_check_unknown_account(self):
        self.assertEqual(self.client.post("/api/accounts/nope/check").status_code, 404)


class SendAndAnalyticsTests(DashboardTestCase):
    def test_single_send(self):
        r = self.client.post("/api/send", json={"accountId": "acc-1", "to": "a@x.com"})
        self.assertEqual(r.status_code, 400)

        r = self.client.post(
            "/api/send",
            json={"accountId": "acc-1", "to": "a@x.com", "subject": "S", "content": "C", "from_email": "me@x.com"},
        )
        self.assertEqual(r.status_code, 200)
        self.assertEqual(self.proxy.sent, [("a@x.com", {"subject": "S", "from_email": "me@x.com"})])

    def test_single_send_failure_is_relayed(self):
        self.proxy.fail_for.add("bad@x.com")
        r = self.client.post("/api/send", json={"accountId": "acc-1", "to": "bad@x.com", "subject": "S", "content": "C"})
        self.assertEqual(r.status_code, 422)
        self.assertEqual(r.get_json()["error"], "Failed to send email")

    def test_logs_with_summary(self):
        self.assertEqual(self.client.get("/api/analytics/logs").status_code, 400)
        out = self.client.get("/api/analytics/logs?accountId=acc-1&status=delivered&page=2").get_json()
        self.assertEqual(out["summary"], {"delivered": 2, "failed": 1, "opened": 1, "clicked": 0, "issues": 1})
        self.assertEqual(self.proxy.log_calls, [("acc-1", 25, 2, "delivered")])
        self.assertEqual(len(out["data"]), 5)

    def test_logs_export(self):
        self.assertEqual(self.client.get("/api/analytics/logs/export").status_code, 400)

        r = self.client.get("/api/analytics/logs/export?accountId=acc-1&page=3&status=Failed")
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.headers["Content-Type"].startswith("text/plain"))
        self.assertRegex(r.headers["Content-Disposition"], r'attachment; filename="email-logs-\d{4}-\d{2}-\d{2}\.txt"')
        lines = r.data.decode("utf-8").split("\n")
        self.assertEqual(len(lines), 5)
        self.assertEqual(lines[0], "2024-05-01T10:00:00Z,a@x.com,delivered")
        self.assertEqual(lines[2], "2024-05-01T10:02:00Z,c@x.com,bounced")
        self.assertEqual(self.proxy.log_calls, [("acc-1", 25, 3, "failed")])

    def test_logs_export_empty(self):
        self.proxy.logs = []
        r = self.client.get("/api/analytics/logs/export?accountId=acc-1")
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.get_json()["error"], "no logs to export")


if __name__ == "__main__":
    unittest.main()
