import logging
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.responses import StreamingResponse

from casefusion.api.dependencies import get_chat_service, get_run_manager, get_store
from casefusion.api.streaming import progress_event_stream
from casefusion.config import settings
from casefusion.errors import (
    AnalysisAlreadyRunningError,
    AnalysisNotFoundError,
    ModelOutputError,
    ModelUnavailableError,
)
from casefusion.models.schemas import (
    AnalysisStartResponse,
    Case,
    CaseAnalysis,
    CaseCreate,
    ChatRequest,
    ChatResponse,
    EvidenceItem,
    FrameEvidence,
)
from casefusion.services.analysis_runs import AnalysisRunManager
from casefusion.services.chat_service import ChatService
from casefusion.services.database import DatabaseService
from casefusion.services.file_storage import evidence_type_for_mime, save_upload

logger = logging.getLogger(__name__)

router = APIRouter()


async def _require_case(store: DatabaseService, case_id: str) -> Case:
    case = await store.get_case(case_id)
    if not case:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Case not found")
    return case


# ── Cases ─────────────────────────────────────────────────


@router.post("/cases", response_model=Case, status_code=status.HTTP_201_CREATED)
async def create_case(case_data: CaseCreate, store: DatabaseService = Depends(get_store)):
    """Create a new case."""
    case = await store.create_case(case_data.name, case_data.description)
    logger.info(f"Created case {case.id}: {case.name}")
    return case


@router.get("/cases", response_model=List[Case])
async def list_cases(limit: int = 50, store: DatabaseService = Depends(get_store)):
    return await store.list_cases(limit=max(1, min(limit, 200)))


@router.get("/cases/{case_id}", response_model=Case)
async def get_case(case_id: str, store: DatabaseService = Depends(get_store)):
    return await _require_case(store, case_id)


# ── Evidence ──────────────────────────────────────────────


@router.post(
    "/cases/{case_id}/evidence",
    response_model=EvidenceItem,
    status_code=status.HTTP_201_CREATED,
)
async def upload_evidence(
    case_id: str,
    file: UploadFile = File(...),
    store: DatabaseService = Depends(get_store),
):
    """Upload one evidence file. The evidence type is derived from its MIME type."""
    await _require_case(store, case_id)

    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
    max_bytes = settings.max_upload_size_mb * 1024 * 1024
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {settings.max_upload_size_mb}MB upload limit",
        )

    filename = file.filename or "upload"
    evidence_type = evidence_type_for_mime(file.content_type)
    storage_url = save_upload(case_id, filename, content)
    item = await store.create_evidence(case_id, evidence_type, filename, storage_url)
    logger.info(f"Uploaded {evidence_type} evidence {item.id} ({filename}) to case {case_id}")
    return item


@router.get("/cases/{case_id}/evidence", response_model=List[EvidenceItem])
async def list_evidence(case_id: str, store: DatabaseService = Depends(get_store)):
    await _require_case(store, case_id)
    return await store.get_evidence_by_case(case_id)


@router.get("/cases/{case_id}/evidence/{evidence_id}/frames", response_model=List[FrameEvidence])
async def list_frames(case_id: str, evidence_id: str, store: DatabaseService = Depends(get_store)):
    """Frames extracted from a video evidence item, in time order."""
    item = await store.get_evidence(evidence_id)
    if not item or item.case_id != case_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Evidence not found")
    return await store.get_frames_by_evidence(evidence_id)


# ── Analysis ──────────────────────────────────────────────


@router.post(
    "/cases/{case_id}/analyze",
    response_model=AnalysisStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_analysis(
    case_id: str,
    store: DatabaseService = Depends(get_store),
    runs: AnalysisRunManager = Depends(get_run_manager),
):
    """Start the analysis pipeline in the background."""
    await _require_case(store, case_id)
    if runs.is_running(case_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Analysis already running for this case")

    await store.set_case_status(case_id, "running")
    try:
        runs.start_new(case_id)
    except AnalysisAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return AnalysisStartResponse(message="Analysis started", case_id=case_id)


@router.get("/cases/{case_id}/analyze/stream")
async def stream_analysis(
    case_id: str,
    request: Request,
    store: DatabaseService = Depends(get_store),
    runs: AnalysisRunManager = Depends(get_run_manager),
):
    """Stream progress of the active run, starting one when none is active."""
    await _require_case(store, case_id)

    run = runs.get(case_id)
    if run is None:
        await store.set_case_status(case_id, "running")
        run = runs.start(case_id)
    subscription = run.bus.subscribe()

    return StreamingResponse(
        progress_event_stream(request, run.bus, subscription),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/cases/{case_id}/analysis", response_model=CaseAnalysis)
async def get_analysis(
    case_id: str,
    store: DatabaseService = Depends(get_store),
    runs: AnalysisRunManager = Depends(get_run_manager),
):
    await _require_case(store, case_id)
    if runs.is_running(case_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Analysis in progress")
    analysis = await store.get_analysis(case_id)
    if not analysis:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Analysis not found")
    return analysis


# ── Chat ──────────────────────────────────────────────────


@router.post("/cases/{case_id}/chat", response_model=ChatResponse)
async def chat_with_case(
    case_id: str,
    chat_request: ChatRequest,
    store: DatabaseService = Depends(get_store),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Answer a question using the case analysis and evidence summaries."""
    await _require_case(store, case_id)
    try:
        return await chat_service.chat(case_id, chat_request.question)
    except AnalysisNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Case analysis not found")
    except ModelUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except ModelOutputError as e:
        logger.error(f"Chat response for case {case_id} could not be decoded: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to process chat")
