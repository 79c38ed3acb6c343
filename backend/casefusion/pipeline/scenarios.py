"""Scenario stage. Failures degrade to an empty scenario list."""
import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Sequence

from casefusion.models.digest import EvidenceDigest
from casefusion.models.schemas import Contradiction, Scenario, TimelineEvent
from casefusion.pipeline.evidence_refs import resolve_evidence_refs

logger = logging.getLogger(__name__)


@dataclass
class ScenarioResult:
    scenarios: List[Scenario] = field(default_factory=list)
    reasoning: str = ""


def sort_scenarios_for_display(scenarios: Sequence[Scenario]) -> List[Scenario]:
    """Likelihood descending; ties keep their original order."""
    return sorted(scenarios, key=lambda s: -s.likelihood)


async def generate_scenarios(
    client,
    case_id: str,
    world_model: str,
    timeline: Sequence[TimelineEvent],
    contradictions: Sequence[Contradiction],
    digests: Sequence[EvidenceDigest],
) -> ScenarioResult:
    """Generate competing scenarios.

    Likelihoods are kept as independent scores; they are clamped to [0, 1]
    but never normalized across scenarios.
    """
    try:
        response = await client.generate_scenarios(world_model, timeline, contradictions)
    except Exception as e:
        logger.warning(f"Scenario generation failed, continuing without scenarios: {e}")
        return ScenarioResult(reasoning="Failed to generate scenarios.")

    scenarios = [
        Scenario(
            id=str(uuid.uuid4()),
            case_id=case_id,
            name=entry.name,
            likelihood=entry.likelihood,
            narrative=entry.narrative,
            reasoning=entry.scenario_reasoning or "Scenario derived from evidence analysis.",
            key_findings=list(entry.key_findings),
            supporting_evidence_ids=resolve_evidence_refs(entry.supporting_evidence_ids, digests),
            supporting_evidence=list(entry.supporting_evidence),
            conflicting_evidence_ids=resolve_evidence_refs(entry.conflicting_evidence_ids, digests),
            conflicting_evidence=list(entry.conflicting_evidence),
        )
        for entry in response.scenarios
    ]
    logger.info(f"Generated {len(scenarios)} scenarios for case {case_id}")
    return ScenarioResult(
        scenarios=scenarios,
        reasoning=response.reasoning or "Generated scenarios.",
    )
