"""Assembly stage: builds, persists and publishes the final CaseAnalysis."""
import logging
from typing import List, Optional, Sequence, Set

from casefusion.models.digest import EvidenceDigest
from casefusion.models.schemas import (
    AnalysisReasoning,
    CaseAnalysis,
    Contradiction,
    EvidenceSummary,
    Heatmap,
    HeatmapSegment,
    ReconstructionImage,
    Scenario,
    TimelineEvent,
)
from casefusion.pipeline.scenarios import sort_scenarios_for_display

logger = logging.getLogger(__name__)

NEUTRAL_CONFIDENCE = 0.5
CONTRADICTION_WEIGHT = 0.2


def _event_time(event: TimelineEvent) -> float:
    return event.end_time or event.start_time or 0.0


def build_heatmap(
    timeline: Sequence[TimelineEvent],
    contradictions: Sequence[Contradiction],
    segment_count: int = 10,
) -> Heatmap:
    """Partition ``[0, max event time]`` into ``segment_count`` equal segments.

    confidence: mean confidence of events starting in ``[start, end)``, or 0.5.
    contradiction_score: 0.2 per contradiction linked to the segment, capped
    at 1.0. A contradiction is linked to a segment when it shares evidence
    with one of the segment's events; a contradiction that shares evidence
    with no timeline event counts toward every segment.
    """
    max_time = max((_event_time(e) for e in timeline), default=0.0)
    timeline_evidence: Set[str] = {eid for e in timeline for eid in e.supporting_evidence_ids}
    unanchored = sum(
        1 for c in contradictions
        if not timeline_evidence.intersection(c.involved_evidence_ids)
    )

    segments: List[HeatmapSegment] = []
    for i in range(segment_count):
        start = max_time * i / segment_count
        end = max_time * (i + 1) / segment_count
        events = [e for e in timeline if start <= e.sort_time < end]

        if events:
            confidence = sum(e.confidence for e in events) / len(events)
        else:
            confidence = NEUTRAL_CONFIDENCE

        segment_evidence = {eid for e in events for eid in e.supporting_evidence_ids}
        linked = sum(
            1 for c in contradictions
            if segment_evidence.intersection(c.involved_evidence_ids)
        )
        segments.append(HeatmapSegment(
            start_time=start,
            end_time=end,
            confidence=min(1.0, max(0.0, confidence)),
            contradiction_score=min(1.0, CONTRADICTION_WEIGHT * (linked + unanchored)),
        ))
    return Heatmap(segments=segments)


def build_analysis(
    case_id: str,
    digests: Sequence[EvidenceDigest],
    timeline: Sequence[TimelineEvent],
    world_model: str,
    contradictions: Sequence[Contradiction],
    scenarios: Sequence[Scenario],
    reconstructions: Sequence[ReconstructionImage],
    fusion_reasoning: Optional[str] = None,
    contradiction_reasoning: Optional[str] = None,
    scenario_reasoning: Optional[str] = None,
    heatmap_segments: int = 10,
) -> CaseAnalysis:
    return CaseAnalysis(
        case_id=case_id,
        status="completed",
        timeline=list(timeline),
        contradictions=list(contradictions),
        scenarios=sort_scenarios_for_display(scenarios),
        missing_evidence_suggestions=[],
        global_summary=world_model,
        heatmap=build_heatmap(timeline, contradictions, heatmap_segments),
        reasoning=AnalysisReasoning(
            fusion=fusion_reasoning or "Fused evidence into unified world model.",
            contradictions=contradiction_reasoning or "Analyzed for inconsistencies.",
            scenarios=scenario_reasoning or "Generated plausible scenarios.",
        ),
        evidence_summaries=[
            EvidenceSummary(
                evidence_id=d.evidence.id,
                summary=d.summary,
                tags=list(d.tags),
                processed=not d.fallback,
            )
            for d in digests
        ],
        reconstructions=list(reconstructions),
    )


async def persist_analysis(store, analysis: CaseAnalysis) -> None:
    """Overwrite the case's analysis and mark the case completed."""
    await store.save_completed_analysis(analysis.case_id, analysis)
    logger.info(
        f"Analysis stored for case {analysis.case_id}: "
        f"{len(analysis.timeline)} events, {len(analysis.scenarios)} scenarios, "
        f"{len(analysis.contradictions)} contradictions"
    )
