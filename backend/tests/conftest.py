"""
Shared fixtures: a real SQLite store in a temp directory and in-memory fakes
for the reasoning model, image generation and frame extraction.
"""
import os
import uuid
from typing import Dict, List, Optional

import pytest

from casefusion.models.schemas import (
    ChatAnswerResponse,
    ContradictionResponse,
    EvidenceSummaryResponse,
    FrameEvidence,
    FusionResponse,
    FusionTimelineEntry,
    ReconstructionImage,
    ScenarioEntry,
    ScenarioResponse,
)
from casefusion.pipeline.orchestrator import AnalysisOrchestrator
from casefusion.services.database import DatabaseService
from casefusion.services.evidence_processor import EvidenceProcessor
from casefusion.services.file_storage import case_directory, save_upload, storage_url_for
from casefusion.services.progress_bus import ProgressBus


class FakeReasoningClient:
    """Scriptable stand-in for ReasoningClient."""

    def __init__(self):
        self.available = True
        self.summary_errors: Dict[str, Exception] = {}
        self.transcript = "Speaker 1: I heard a loud crash around nine."
        self.transcribe_error: Optional[Exception] = None
        self.fuse_error: Optional[Exception] = None
        self.fuse_response = FusionResponse(
            timeline=[
                FusionTimelineEntry(label="Person enters room", description="A person walks in.",
                                    start_time=0, end_time=5, confidence=0.9,
                                    supporting_evidence_ids=["Evidence 1"]),
                FusionTimelineEntry(label="Glass breaks", description="A window is broken.",
                                    start_time=5, end_time=10, confidence=0.6,
                                    supporting_evidence_ids=["Evidence 2", "Evidence 3"]),
            ],
            world_model="A small apartment with a broken window.",
            reasoning="Combined the image summaries.",
        )
        self.contradiction_error: Optional[Exception] = None
        self.contradiction_response = ContradictionResponse(contradictions=[], reasoning="No conflicts.")
        self.scenario_error: Optional[Exception] = None
        self.scenario_response = ScenarioResponse(
            scenarios=[
                ScenarioEntry(name="Scenario A: Accident", likelihood=0.4, narrative="A ball hit the window.",
                              supporting_evidence_ids=["Evidence 1"]),
                ScenarioEntry(name="Scenario B: Break-in", likelihood=0.7, narrative="Someone forced entry.",
                              supporting_evidence_ids=["Evidence 2"]),
                ScenarioEntry(name="Scenario C: Storm", likelihood=0.4, narrative="Wind broke the glass."),
            ],
            reasoning="Three explanations fit the timeline.",
        )
        self.chat_response = ChatAnswerResponse(answer="The window broke at 5s.", reasoning="Timeline event 2.")
        self.calls: List[tuple] = []
        self.fuse_inputs: List[list] = []
        self.statements: List[list] = []

    async def summarize(self, item, data=None, text=None, mime_type="image/jpeg", filename=None):
        self.calls.append(("summarize", item.original_filename))
        error = self.summary_errors.get(item.original_filename)
        if error is not None:
            raise error
        if text is not None:
            return EvidenceSummaryResponse(summary=f"Statement in {item.original_filename}: {text[:40]}",
                                           tags=["statement"])
        return EvidenceSummaryResponse(summary=f"Scene shown in {item.original_filename}.",
                                       tags=["room", item.original_filename])

    async def transcribe(self, audio, mime_type):
        self.calls.append(("transcribe", mime_type))
        if self.transcribe_error is not None:
            raise self.transcribe_error
        return self.transcript

    async def fuse(self, digests, problem_statement=None):
        self.calls.append(("fuse", len(digests)))
        self.fuse_inputs.append(list(digests))
        if self.fuse_error is not None:
            raise self.fuse_error
        return self.fuse_response

    async def detect_contradictions(self, timeline, digests, statements):
        self.calls.append(("detect_contradictions", len(statements)))
        self.statements.append(list(statements))
        if self.contradiction_error is not None:
            raise self.contradiction_error
        return self.contradiction_response

    async def generate_scenarios(self, world_model, timeline, contradictions):
        self.calls.append(("generate_scenarios", len(contradictions)))
        if self.scenario_error is not None:
            raise self.scenario_error
        return self.scenario_response

    async def chat(self, question, analysis, digests):
        self.calls.append(("chat", question))
        return self.chat_response


class FakeImageService:
    def __init__(self):
        self.requests: List[tuple] = []

    async def render_reconstruction(self, case_id, scenario, viewpoint, kind="most_likely"):
        self.requests.append((scenario.id, viewpoint, kind))
        return ReconstructionImage(
            id=str(uuid.uuid4()),
            case_id=case_id,
            scenario_id=scenario.id,
            viewpoint=viewpoint,
            type=kind,
            storage_url=f"/uploads/{case_id}/reconstructions/{scenario.id}.png",
            description=f"[Placeholder] {viewpoint} view - {scenario.name}.",
        )


class FakeFrameExtractor:
    """Writes ``frame_count`` small jpg files instead of running ffmpeg."""

    def __init__(self, uploads_dir: str, frame_count: int = 5):
        self.uploads_dir = uploads_dir
        self.frame_count = frame_count
        self.error: Optional[Exception] = None

    async def extract_frames(self, video_path, case_id, evidence_id, interval_seconds=1):
        if self.error is not None:
            raise self.error
        frames_dir = case_directory(case_id, "frames", evidence_id, uploads_dir=self.uploads_dir)
        frames = []
        for i in range(self.frame_count):
            frame_id = str(uuid.uuid4())
            path = os.path.join(frames_dir, f"{frame_id}.jpg")
            with open(path, "wb") as f:
                f.write(b"\xff\xd8\xff\xe0fake-jpeg")
            frames.append(FrameEvidence(
                id=frame_id,
                parent_evidence_id=evidence_id,
                time_seconds=float(i * interval_seconds),
                storage_url=storage_url_for(path, self.uploads_dir),
            ))
        return frames


@pytest.fixture
def uploads_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return str(path)


@pytest.fixture
async def store(tmp_path):
    db = DatabaseService(str(tmp_path / "casefusion-test.db"))
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def fake_client():
    return FakeReasoningClient()


@pytest.fixture
def fake_images():
    return FakeImageService()


@pytest.fixture
def fake_extractor(uploads_dir):
    return FakeFrameExtractor(uploads_dir)


@pytest.fixture
def processor(store, fake_client, fake_extractor, uploads_dir):
    return EvidenceProcessor(
        store,
        fake_client,
        fake_extractor,
        uploads_dir=uploads_dir,
        frame_delay_seconds=0,
    )


@pytest.fixture
def make_orchestrator(store, processor, fake_client, fake_images):
    def _make(case_id: str, bus: Optional[ProgressBus] = None) -> AnalysisOrchestrator:
        return AnalysisOrchestrator(
            case_id,
            store=store,
            processor=processor,
            client=fake_client,
            image_service=fake_images,
            bus=bus,
            item_delay_seconds=0,
            reconstruction_delay_seconds=0,
        )
    return _make


@pytest.fixture
def add_evidence(store, uploads_dir):
    """Store a file under the uploads dir and register it as evidence."""
    async def _add(case_id: str, evidence_type: str, filename: str, content: bytes = b"data"):
        storage_url = save_upload(case_id, filename, content, uploads_dir=uploads_dir)
        return await store.create_evidence(case_id, evidence_type, filename, storage_url)
    return _add

