"""
Fusion stage: collects per-item summaries and fuses them into a world model
and an initial timeline.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from casefusion.errors import FusionError, ModelOutputError, NoEvidenceError
from casefusion.models.digest import EvidenceDigest
from casefusion.models.schemas import EvidenceDerived, EvidenceItem, TimelineEvent
from casefusion.pipeline.evidence_refs import resolve_evidence_refs

logger = logging.getLogger(__name__)

FALLBACK_EVENT_LABEL = "Evidence Collected"


@dataclass
class FusionResult:
    timeline: List[TimelineEvent] = field(default_factory=list)
    world_model: str = ""
    reasoning: Optional[str] = None
    fallback: bool = False


def fallback_summary(item: EvidenceItem, derived: Optional[EvidenceDerived]) -> str:
    """Type specific boilerplate used when an item has no usable summary."""
    if item.type == "video":
        return f"Video file: {item.original_filename} - processing may have failed."
    if item.type == "audio":
        if derived and derived.transcript:
            return f"Audio transcript: {derived.transcript[:300]}..."
        return f"Audio file: {item.original_filename} - transcription may have failed."
    if item.type in ("text", "document"):
        return f"Text document: {item.original_filename} - content analysis may have failed."
    return f"{item.type} file: {item.original_filename} - analysis incomplete."


async def collect_digests(case_id: str, store, processor) -> List[EvidenceDigest]:
    """Build the fusion input from the case's current evidence.

    Items whose derived block is missing or marked as an error get one
    re-processing attempt (unless marked unrecoverable); if that still fails
    a fallback summary is substituted so fusion always receives every item.
    """
    digests: List[EvidenceDigest] = []
    for item in await store.get_evidence_by_case(case_id):
        derived = item.derived

        if derived is None or not derived.is_healthy:
            if derived is not None and not derived.recoverable:
                logger.warning(f"Evidence {item.original_filename} is unrecoverable, skipping retry")
            else:
                logger.info(f"Retrying processing for {item.original_filename}")
                derived = (await processor.process(item)).derived

        fallback = derived is None or not derived.is_healthy
        if fallback:
            summary = fallback_summary(item, derived)
            logger.warning(f"Using fallback summary for {item.original_filename}")
        else:
            summary = derived.summary
        tags = list(derived.tags) if derived else []

        if item.type == "video":
            try:
                frames = await store.get_frames_by_evidence(item.id)
            except Exception as e:
                logger.warning(f"Could not load frames for video {item.id}: {e}")
                frames = []
            if frames:
                summary += f" [{len(frames)} frames extracted and analyzed]"
                tags.append(f"{len(frames)} video frames")

        if item.type == "audio" and derived and derived.transcript:
            tags.append("transcribed")

        digests.append(EvidenceDigest(
            evidence=item.model_copy(update={"derived": derived}),
            summary=summary,
            tags=tags or [item.type],
            fallback=fallback,
        ))

    logger.info(f"Collected {len(digests)} evidence summaries for case {case_id}")
    return digests


def _fallback_fusion(case_id: str, digests: Sequence[EvidenceDigest], text: str,
                     world_model: Optional[str] = None) -> FusionResult:
    description = text[:200] if text else f"Evidence from {len(digests)} item(s) was collected for analysis."
    event = TimelineEvent(
        id=str(uuid.uuid4()),
        case_id=case_id,
        label=FALLBACK_EVENT_LABEL,
        description=description,
        start_time=0,
        end_time=10,
        confidence=0.7,
        supporting_evidence_ids=[d.evidence.id for d in digests],
    )
    return FusionResult(
        timeline=[event],
        world_model=world_model or text[:500] or description,
        reasoning="Processed evidence fusion (fallback mode).",
        fallback=True,
    )


async def run_fusion(client, case_id: str, digests: Sequence[EvidenceDigest]) -> FusionResult:
    """Fuse all digests into a world model and timeline.

    Raises NoEvidenceError when there is nothing to fuse and FusionError when
    the fusion call itself fails. An undecodable response or an empty
    timeline degrades to a single fallback event.
    """
    if not digests:
        raise NoEvidenceError("No evidence items found for analysis")

    try:
        response = await client.fuse(digests)
    except ModelOutputError as e:
        logger.warning(f"Fusion response could not be decoded, using fallback timeline: {e}")
        return _fallback_fusion(case_id, digests, e.raw_text or "")
    except NoEvidenceError:
        raise
    except Exception as e:
        raise FusionError(f"Failed to fuse evidence: {e}") from e

    timeline = [
        TimelineEvent(
            id=str(uuid.uuid4()),
            case_id=case_id,
            label=entry.label,
            description=entry.description,
            start_time=entry.start_time,
            end_time=entry.end_time,
            confidence=entry.confidence,
            supporting_evidence_ids=resolve_evidence_refs(entry.supporting_evidence_ids, digests),
        )
        for entry in response.timeline
    ]
    if not timeline:
        logger.warning("Fusion returned an empty timeline, using fallback event")
        return _fallback_fusion(case_id, digests, "", world_model=response.world_model)

    return FusionResult(
        timeline=timeline,
        world_model=response.world_model or "Analysis complete but world model description unavailable.",
        reasoning=response.reasoning or "Fused evidence into unified timeline.",
    )
