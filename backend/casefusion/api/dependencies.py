"""FastAPI dependencies and the wiring of the analysis pipeline."""
from typing import Optional

from fastapi import Depends

from casefusion.agents.reasoning_client import ReasoningClient, reasoning_client
from casefusion.config import settings
from casefusion.pipeline.orchestrator import AnalysisOrchestrator
from casefusion.services.analysis_runs import AnalysisRunManager
from casefusion.services.chat_service import ChatService
from casefusion.services.database import DatabaseService, get_database
from casefusion.services.evidence_processor import EvidenceProcessor
from casefusion.services.frame_extractor import frame_extractor
from casefusion.services.progress_bus import ProgressBus
from casefusion.services.reconstruction_images import reconstruction_image_service

_run_manager: Optional[AnalysisRunManager] = None


def build_orchestrator(case_id: str, bus: Optional[ProgressBus] = None) -> AnalysisOrchestrator:
    store = get_database()
    processor = EvidenceProcessor(store, reasoning_client, frame_extractor)
    return AnalysisOrchestrator(
        case_id,
        store=store,
        processor=processor,
        client=reasoning_client,
        image_service=reconstruction_image_service,
        bus=bus,
    )


async def run_case_analysis(case_id: str, bus: ProgressBus):
    return await build_orchestrator(case_id, bus).run()


def get_store() -> DatabaseService:
    return get_database()


def get_reasoning_client() -> ReasoningClient:
    return reasoning_client


def get_chat_service(
    store: DatabaseService = Depends(get_store),
    client: ReasoningClient = Depends(get_reasoning_client),
) -> ChatService:
    return ChatService(store, client)


def get_run_manager() -> AnalysisRunManager:
    global _run_manager
    if _run_manager is None:
        _run_manager = AnalysisRunManager(run_case_analysis, queue_size=settings.sse_queue_size)
    return _run_manager
