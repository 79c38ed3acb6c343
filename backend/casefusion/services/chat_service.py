"""Question answering over a case's persisted analysis."""
import logging

from casefusion.errors import AnalysisNotFoundError
from casefusion.models.digest import EvidenceDigest
from casefusion.models.schemas import ChatResponse

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(self, store, client):
        self.store = store
        self.client = client

    async def chat(self, case_id: str, question: str) -> ChatResponse:
        analysis = await self.store.get_analysis(case_id)
        if analysis is None:
            raise AnalysisNotFoundError(f"No completed analysis for case {case_id}")

        evidence = await self.store.get_evidence_by_case(case_id)
        digests = [
            EvidenceDigest(
                evidence=e,
                summary=e.derived.summary if e.derived and e.derived.summary else "No summary available",
                tags=list(e.derived.tags) if e.derived else [],
            )
            for e in evidence
        ]

        result = await self.client.chat(question, analysis, digests)
        logger.info(f"Answered chat question for case {case_id} ({len(question)} chars)")
        return ChatResponse(
            answer=result.answer,
            reasoning=result.reasoning or "Answer based on the case analysis and evidence summaries.",
        )
