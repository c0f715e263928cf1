import unittest

try:
    from fastapi import FastAPI
    from fastapi.testclient import TestClient

    from agents.timesheet_agent.errors import RunAlreadyActiveError, TimesheetAgentError, WorkerStartError
    from agents.timesheet_agent.models import Checkpoint, Credentials
    from routers.timesheet_agent import create_timesheet_router

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    DEPS_AVAILABLE = False


START_BODY = {
    "credentials": {"email": "me@example.invalid", "password": "pw"},
    "rows": [{"account": "ACC", "project": "PRJ"}],
    "time_slots": [{"start_time": "08:00", "end_time": "12:00"}],
    "mappings": {"ACC": "Account A"},
}


class _FakeTimesheetService:
    def __init__(self) -> None:
        self.start_error = None
        self.last_start = None
        self.last_plan = None
        self.checkpoints = {}
        self.stored = None

    def start(self, request):
        self.last_start = request
        if self.start_error is not None:
            raise self.start_error
        return {"ok": True, "run_id": "run-1"}

    def stop(self):
        return {"ok": True, "running": False}

    def validate(self, rows, mappings, time_slots):
        self.last_plan = (rows, mappings, time_slots)
        return {"isValid": True, "errors": [], "warnings": [], "suggestions": []}

    def dry_run(self, rows, mappings, time_slots, config=None):
        self.last_plan = (rows, mappings, time_slots)
        return {"plannedSteps": [], "estimatedDuration": 30, "warnings": []}

    def get_events(self, after=0, limit=200):
        return {"events": [{"seq": after + 1}], "last_seq": after + 1}

    def load_checkpoint(self, run_id):
        return self.checkpoints.get(run_id)

    def clear_checkpoint(self, run_id):
        raise RunAlreadyActiveError("run-1")

    def load_credentials(self):
        return self.stored


@unittest.skipUnless(DEPS_AVAILABLE, "fastapi is not installed in this environment")
class TimesheetRouterTests(unittest.TestCase):
    def _build_client(self, missing=()):
        service = _FakeTimesheetService()
        app = FastAPI()
        app.include_router(
            create_timesheet_router(
                service=service,
                job_secret="top-secret",
                missing_config_fn=lambda: list(missing),
            )
        )
        return TestClient(app), service

    def test_requires_secret(self) -> None:
        client, service = self._build_client()
        response = client.post("/timesheet-agent/start", json=START_BODY)
        self.assertEqual(response.status_code, 401)
        self.assertIsNone(service.last_start)

    def test_start_normalizes_mapping_shorthand(self) -> None:
        client, service = self._build_client()
        response = client.post("/timesheet-agent/start?secret=top-secret", json=START_BODY)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["run_id"], "run-1")
        self.assertEqual(service.last_start.mappings["ACC"].account, "Account A")

    def test_start_error_mapping(self) -> None:
        cases = [
            (RunAlreadyActiveError("run-0"), 409),
            (WorkerStartError("spawn failed"), 503),
            (TimesheetAgentError("No credentials provided and none are stored"), 400),
        ]
        for error, status_code in cases:
            client, service = self._build_client()
            service.start_error = error
            response = client.post("/timesheet-agent/start?secret=top-secret", json=START_BODY)
            self.assertEqual(response.status_code, status_code, msg=str(error))

    def test_start_requires_login_url_when_unconfigured(self) -> None:
        client, service = self._build_client(missing=["replicon_login_url"])
        response = client.post("/timesheet-agent/start?secret=top-secret", json=START_BODY)
        self.assertEqual(response.status_code, 400)
        self.assertIn("replicon_login_url", response.json()["detail"])
        self.assertIsNone(service.last_start)

        body = {**START_BODY, "config": {"login_url": "https://login.example.invalid"}}
        response = client.post("/timesheet-agent/start?secret=top-secret", json=body)
        self.assertEqual(response.status_code, 200)

    def test_validate_and_dry_run(self) -> None:
        client, service = self._build_client()
        body = {key: START_BODY[key] for key in ("rows", "time_slots", "mappings")}
        response = client.post("/timesheet-agent/validate", json=body, headers={"x-job-secret": "top-secret"})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["result"]["isValid"])
        self.assertEqual(service.last_plan[1]["ACC"].account, "Account A")

        response = client.post("/timesheet-agent/dry-run", json=body, headers={"x-job-secret": "top-secret"})
        self.assertEqual(response.json()["result"]["estimatedDuration"], 30)

    def test_events_forward_cursor(self) -> None:
        client, _ = self._build_client()
        response = client.get("/timesheet-agent/events?after=7&secret=top-secret")
        self.assertEqual(response.json()["last_seq"], 8)

    def test_checkpoint_lookup_and_active_run_conflict(self) -> None:
        client, service = self._build_client()
        response = client.get("/timesheet-agent/checkpoints/missing?secret=top-secret")
        self.assertEqual(response.status_code, 404)

        service.checkpoints["r1"] = Checkpoint(run_id="r1", total_rows=2, processed_rows=[0])
        response = client.get("/timesheet-agent/checkpoints/r1?secret=top-secret")
        self.assertEqual(response.json()["checkpoint"]["processed_rows"], [0])

        response = client.delete("/timesheet-agent/checkpoints/r1?secret=top-secret")
        self.assertEqual(response.status_code, 409)

    def test_checkpoint_with_rows_outside_the_run_is_unprocessable(self) -> None:
        client, _ = self._build_client()
        response = client.post(
            "/timesheet-agent/checkpoints?secret=top-secret",
            json={"run_id": "r1", "total_rows": 3, "processed_rows": [5, 6, -1]},
        )
        self.assertEqual(response.status_code, 422)

    def test_credentials_never_expose_password(self) -> None:
        client, service = self._build_client()
        self.assertFalse(client.get("/timesheet-agent/credentials?secret=top-secret").json()["stored"])
        service.stored = Credentials(email="me@example.invalid", password="pw", remember_me=True)
        payload = client.get("/timesheet-agent/credentials?secret=top-secret").json()
        self.assertEqual(payload["email"], "me@example.invalid")
        self.assertNotIn("password", payload)


if __name__ == "__main__":
    unittest.main()
