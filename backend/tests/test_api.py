"""
HTTP API tests. The app runs in-process through httpx's ASGI transport with
the store, run manager and reasoning client swapped for test instances.
"""
import asyncio
import json

import pytest
from httpx import ASGITransport, AsyncClient

from casefusion.api.dependencies import get_reasoning_client, get_run_manager, get_store
from casefusion.config import settings
from casefusion.main import app
from casefusion.services.analysis_runs import AnalysisRunManager


def _sse_events(body: str):
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


@pytest.fixture
def runs(make_orchestrator):
    async def pipeline(case_id, bus):
        return await make_orchestrator(case_id, bus).run()
    return AnalysisRunManager(pipeline, queue_size=100)


@pytest.fixture
async def client(store, runs, fake_client, uploads_dir, monkeypatch):
    monkeypatch.setattr(settings, "uploads_dir", uploads_dir)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_run_manager] = lambda: runs
    app.dependency_overrides[get_reasoning_client] = lambda: fake_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    await runs.shutdown()
    app.dependency_overrides.clear()


async def _create_case(client, name="Warehouse fire"):
    response = await client.post("/cases", json={"name": name, "description": "Night of 3 March"})
    assert response.status_code == 201
    return response.json()


async def _upload(client, case_id, filename="photo.jpg", content=b"\xff\xd8jpeg", mime="image/jpeg"):
    return await client.post(
        f"/cases/{case_id}/evidence",
        files={"file": (filename, content, mime)},
    )


class TestCases:

    async def test_create_and_fetch_case(self, client):
        case = await _create_case(client)

        assert case["status"] == "pending"
        assert "createdAt" in case

        response = await client.get(f"/cases/{case['id']}")
        assert response.status_code == 200
        assert response.json()["name"] == "Warehouse fire"

        listed = await client.get("/cases")
        assert [c["id"] for c in listed.json()] == [case["id"]]

    async def test_blank_name_is_rejected(self, client):
        response = await client.post("/cases", json={"name": "   "})
        assert response.status_code == 422

    async def test_unknown_case_is_404(self, client):
        response = await client.get("/cases/does-not-exist")
        assert response.status_code == 404

    async def test_request_id_is_echoed(self, client):
        response = await client.get("/cases", headers={"X-Request-ID": "req_test123"})
        assert response.headers["X-Request-ID"] == "req_test123"


class TestEvidence:

    async def test_upload_classifies_by_mime(self, client):
        case = await _create_case(client)

        image = await _upload(client, case["id"])
        report = await _upload(client, case["id"], "report.pdf", b"%PDF-1.4", "application/pdf")

        assert image.status_code == 201
        assert image.json()["type"] == "image"
        assert image.json()["storageUrl"].startswith(f"/uploads/{case['id']}/")
        assert report.json()["type"] == "document"

        listed = await client.get(f"/cases/{case['id']}/evidence")
        assert [e["originalFilename"] for e in listed.json()] == ["photo.jpg", "report.pdf"]

    async def test_empty_upload_is_rejected(self, client):
        case = await _create_case(client)

        response = await _upload(client, case["id"], content=b"")

        assert response.status_code == 400

    async def test_upload_to_unknown_case_is_404(self, client):
        response = await _upload(client, "missing-case")
        assert response.status_code == 404

    async def test_frames_for_unknown_evidence_is_404(self, client):
        case = await _create_case(client)

        response = await client.get(f"/cases/{case['id']}/evidence/nope/frames")

        assert response.status_code == 404


class TestAnalysis:

    async def test_analyze_runs_in_background(self, client, runs):
        case = await _create_case(client)
        for name in ("a.jpg", "b.jpg", "c.jpg"):
            await _upload(client, case["id"], name)

        response = await client.post(f"/cases/{case['id']}/analyze")
        assert response.status_code == 202
        assert response.json() == {"message": "Analysis started", "caseId": case["id"]}

        await runs.wait(case["id"])

        analysis = await client.get(f"/cases/{case['id']}/analysis")
        assert analysis.status_code == 200
        body = analysis.json()
        assert body["caseId"] == case["id"]
        assert len(body["timeline"]) == 2
        assert len(body["heatmap"]["segments"]) == 10
        assert body["scenarios"][0]["name"] == "Scenario B: Break-in"

        fetched = await client.get(f"/cases/{case['id']}")
        assert fetched.json()["status"] == "completed"

    async def test_analysis_missing_before_first_run(self, client):
        case = await _create_case(client)

        response = await client.get(f"/cases/{case['id']}/analysis")

        assert response.status_code == 404

    async def test_second_start_conflicts_while_running(self, client):
        release = asyncio.Event()

        async def blocking_pipeline(case_id, bus):
            await release.wait()

        blocking = AnalysisRunManager(blocking_pipeline)
        app.dependency_overrides[get_run_manager] = lambda: blocking
        case = await _create_case(client)

        first = await client.post(f"/cases/{case['id']}/analyze")
        second = await client.post(f"/cases/{case['id']}/analyze")
        during = await client.get(f"/cases/{case['id']}/analysis")

        assert first.status_code == 202
        assert second.status_code == 409
        assert during.status_code == 404

        release.set()
        await blocking.wait(case["id"])

    async def test_stream_reports_progress_until_complete(self, client):
        case = await _create_case(client)
        await _upload(client, case["id"], "a.jpg")
        await _upload(client, case["id"], "b.jpg")

        response = await client.get(f"/cases/{case['id']}/analyze/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(response.text)
        assert events[0] == {"type": "connected"}
        assert events[-1] == {"type": "complete"}

        progress = [e for e in events if "progress" in e]
        values = [e["progress"] for e in progress]
        assert values == sorted(values)
        assert progress[-1]["status"] == "completed"
        assert progress[-1]["stepNumber"] == 7
        assert progress[-1]["totalSteps"] == 7

    async def test_stream_for_case_without_evidence_ends_with_error(self, client):
        case = await _create_case(client)

        response = await client.get(f"/cases/{case['id']}/analyze/stream")

        events = _sse_events(response.text)
        assert events[0] == {"type": "connected"}
        assert events[-2]["status"] == "error"
        assert events[-1]["type"] == "error"
        assert events[-1]["step"] == "Analysis failed"
        assert events[-1]["error"] == "No evidence found for case"

        fetched = await client.get(f"/cases/{case['id']}")
        assert fetched.json()["status"] == "error"


class TestChat:

    async def test_chat_requires_analysis(self, client):
        case = await _create_case(client)

        response = await client.post(f"/cases/{case['id']}/chat", json={"question": "When did it start?"})

        assert response.status_code == 404

    async def test_chat_answers_after_analysis(self, client, runs, fake_client):
        case = await _create_case(client)
        await _upload(client, case["id"])
        await client.post(f"/cases/{case['id']}/analyze")
        await runs.wait(case["id"])

        response = await client.post(f"/cases/{case['id']}/chat", json={"question": "When did the glass break?"})

        assert response.status_code == 200
        assert response.json() == {"answer": "The window broke at 5s.", "reasoning": "Timeline event 2."}
        assert ("chat", "When did the glass break?") in fake_client.calls


class TestHealth:

    async def test_health_reports_components(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["database"] is True
        assert body["reasoning_model"] is True
