"""Tests for the event schema and HTTP routes."""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from podclip.api import routes
from podclip.api.schemas import ClipWorkflowEvent
from podclip.db.database import get_db
from podclip.models.clip import clip_entity_id
from podclip.workers.clip_workflow import ClipWorkflow
from podclip.workers.workflow_runner import WorkflowRunner

EVENT = {
    "tenantId": "t1",
    "episodeId": "ep1",
    "clipId": "clip-1",
    "segments": [
        {"startTime": "00:02:00", "endTime": "00:02:30", "order": 2, "speaker": "Bob"},
        {"startTime": "00:00:10", "endTime": "00:00:40", "order": 1, "speaker": "Alice"},
    ],
}


class TestClipWorkflowEvent:
    """Tests for boundary validation."""

    def test_valid_event_is_sorted_by_order(self):
        workflow_input = ClipWorkflowEvent.model_validate(EVENT).to_workflow_input()

        assert [s.order for s in workflow_input.segments] == [1, 2]
        assert workflow_input.segments[0].start == 10.0
        assert workflow_input.segments[1].speaker == "Bob"
        assert workflow_input.entity_id == "t1#ep1#clip-1"

    def test_numeric_times(self):
        event = ClipWorkflowEvent.model_validate({
            **EVENT,
            "segments": [{"startTime": 5, "endTime": 7.5, "order": 1}],
        })
        assert event.to_workflow_input().segments[0].duration == 2.5

    @pytest.mark.parametrize("segments", [
        [],
        [{"startTime": "00:00:10", "endTime": "00:00:05", "order": 1}],
        [{"startTime": "bad", "endTime": "00:00:05", "order": 1}],
        [{"startTime": "00:00:01", "endTime": "00:00:05", "order": 0}],
        [
            {"startTime": "00:00:01", "endTime": "00:00:05", "order": 1},
            {"startTime": "00:00:06", "endTime": "00:00:09", "order": 1},
        ],
        [{"endTime": "00:00:05", "order": 1}],
    ])
    def test_invalid_segments(self, segments):
        with pytest.raises(ValidationError):
            ClipWorkflowEvent.model_validate({**EVENT, "segments": segments})

    def test_ids_required(self):
        with pytest.raises(ValidationError):
            ClipWorkflowEvent.model_validate({**EVENT, "clipId": ""})

    @pytest.mark.parametrize("field", ["tenantId", "episodeId", "clipId", "trackName"])
    @pytest.mark.parametrize("value", ["a#b", "a/b", "a b"])
    def test_ids_must_be_plain_names(self, field, value):
        with pytest.raises(ValidationError):
            ClipWorkflowEvent.model_validate({**EVENT, field: value})


class _QueueOnlyRunner(WorkflowRunner):
    """Records started runs instead of executing them."""

    def __init__(self, session_maker, active=()):
        super().__init__(
            workflow_factory=lambda: ClipWorkflow(None, None, session_maker=session_maker),
            session_maker=session_maker,
        )
        self.active = set(active)
        self.executed = []

    def is_running(self, entity_id):
        return entity_id in self.active or super().is_running(entity_id)

    async def _run_workflow(self, run_id, workflow_input):
        self.executed.append(run_id)


@pytest.fixture
def make_client(session_maker):
    def _make(runner):
        app = FastAPI()
        app.include_router(routes.router, prefix="/api")

        async def _get_db():
            async with session_maker() as session:
                yield session

        app.dependency_overrides[get_db] = _get_db
        app.dependency_overrides[routes.get_runner] = lambda: runner
        return TestClient(app)

    return _make


class TestRoutes:
    """Tests for the HTTP surface."""

    def test_health(self, make_client, session_maker):
        client = make_client(_QueueOnlyRunner(session_maker))
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] in ("healthy", "degraded")
        assert response.json()["storage_backend"] == "local"

    def test_start_workflow(self, make_client, session_maker):
        client = make_client(_QueueOnlyRunner(session_maker))

        response = client.post("/api/workflows/clips", json=EVENT)

        assert response.status_code == 202
        run = response.json()
        assert run["status"] == "pending"
        assert run["attempt"] == 1

        fetched = client.get(f"/api/runs/{run['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == run["id"]

        clip = client.get("/api/episodes/ep1/clips/clip-1", params={"tenantId": "t1"}).json()
        assert clip["status"] == "pending"
        assert [e["status"] for e in clip["status_history"]] == ["pending"]
        assert [s["order"] for s in clip["segments"]] == [1, 2]

    def test_start_workflow_invalid_event(self, make_client, session_maker):
        client = make_client(_QueueOnlyRunner(session_maker))

        response = client.post("/api/workflows/clips", json={**EVENT, "segments": []})

        assert response.status_code == 422

    def test_active_run_conflicts(self, make_client, session_maker):
        runner = _QueueOnlyRunner(session_maker, active={clip_entity_id("t1", "ep1", "clip-1")})
        client = make_client(runner)

        response = client.post("/api/workflows/clips", json=EVENT)

        assert response.status_code == 409

    def test_unknown_clip_and_run(self, make_client, session_maker):
        client = make_client(_QueueOnlyRunner(session_maker))

        assert client.get("/api/episodes/ep1/clips/nope", params={"tenantId": "t1"}).status_code == 404
        assert client.get("/api/runs/999").status_code == 404

    def test_clip_generation_starts_pending_clips(self, make_client, session_maker):
        client = make_client(_QueueOnlyRunner(session_maker))
        for clip_id in ("clip-a", "clip-b"):
            assert client.post("/api/clips", json={**EVENT, "clipId": clip_id}).status_code == 201

        response = client.post("/api/episodes/ep1/clip-generation", json={"tenantId": "t1"})

        assert response.status_code == 200
        summary = response.json()
        assert summary["total"] == 2
        assert summary["started"] == 2
        assert summary["failed"] == 0
        assert {e["clipId"] for e in summary["executions"]} == {"clip-a", "clip-b"}

    def test_clip_generation_reports_failures(self, make_client, session_maker):
        runner = _QueueOnlyRunner(session_maker, active={clip_entity_id("t1", "ep1", "clip-a")})
        client = make_client(runner)
        for clip_id in ("clip-a", "clip-b"):
            client.post("/api/clips", json={**EVENT, "clipId": clip_id})

        summary = client.post("/api/episodes/ep1/clip-generation", json={"tenantId": "t1"}).json()

        assert summary["started"] == 1
        assert summary["failed"] == 1
        failed = [e for e in summary["executions"] if e["status"] == "failed"]
        assert failed[0]["clipId"] == "clip-a"

    def test_clip_generation_without_clips(self, make_client, session_maker):
        client = make_client(_QueueOnlyRunner(session_maker))

        summary = client.post("/api/episodes/ep-empty/clip-generation", json={"tenantId": "t1"}).json()

        assert summary == {"total": 0, "started": 0, "failed": 0, "executions": []}

    def test_register_track(self, make_client, session_maker):
        client = make_client(_QueueOnlyRunner(session_maker))

        response = client.post(
            "/api/episodes/ep1/tracks",
            json={"tenantId": "t1", "trackName": "cam-a", "speakers": ["Alice"]},
        )

        assert response.status_code == 200
        assert response.json()["track_name"] == "cam-a"
        assert response.json()["speakers"] == ["Alice"]

    def test_register_clip_keeps_track(self, make_client, session_maker):
        client = make_client(_QueueOnlyRunner(session_maker))

        response = client.post("/api/clips", json={**EVENT, "trackName": "guest-cam"})

        assert response.status_code == 201
        assert response.json()["track_name"] == "guest-cam"
        clip = client.get("/api/episodes/ep1/clips/clip-1", params={"tenantId": "t1"}).json()
        assert clip["track_name"] == "guest-cam"

    def test_separator_in_path_ids_rejected(self, make_client, session_maker):
        client = make_client(_QueueOnlyRunner(session_maker))

        response = client.get("/api/episodes/ep1/clips/clip-1", params={"tenantId": "t1#ep1"})

        assert response.status_code == 422
