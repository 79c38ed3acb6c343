"""Contradiction stage. Failures degrade to an empty contradiction list."""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from casefusion.models.digest import EvidenceDigest
from casefusion.models.schemas import Contradiction, EvidenceItem, TimelineEvent
from casefusion.pipeline.evidence_refs import resolve_evidence_refs

logger = logging.getLogger(__name__)


@dataclass
class ContradictionResult:
    contradictions: List[Contradiction] = field(default_factory=list)
    reasoning: str = ""


def witness_statements(evidence: Iterable[EvidenceItem]) -> List[str]:
    """Summaries of successfully processed text evidence, in evidence order."""
    return [
        item.derived.summary
        for item in evidence
        if item.type == "text" and item.derived is not None and item.derived.is_healthy
    ]


async def detect_contradictions(
    client,
    case_id: str,
    timeline: Sequence[TimelineEvent],
    digests: Sequence[EvidenceDigest],
    statements: Sequence[str],
) -> ContradictionResult:
    try:
        response = await client.detect_contradictions(timeline, digests, statements)
    except Exception as e:
        logger.warning(f"Contradiction detection failed, continuing without contradictions: {e}")
        return ContradictionResult(reasoning="Failed to analyze contradictions.")

    contradictions = [
        Contradiction(
            id=str(uuid.uuid4()),
            case_id=case_id,
            description=entry.description,
            involved_evidence_ids=resolve_evidence_refs(entry.involved_evidence_ids, digests),
            involved_witnesses=list(entry.involved_witnesses),
            severity=entry.severity,
        )
        for entry in response.contradictions
    ]
    logger.info(f"Detected {len(contradictions)} contradictions for case {case_id}")
    return ContradictionResult(
        contradictions=contradictions,
        reasoning=response.reasoning or "Analyzed for contradictions.",
    )
