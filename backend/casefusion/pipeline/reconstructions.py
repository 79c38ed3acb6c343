"""Reconstruction stage: one image per top ranked scenario."""
import asyncio
import logging
from typing import List, Sequence

from casefusion.models.schemas import ReconstructionImage, Scenario
from casefusion.pipeline.scenarios import sort_scenarios_for_display

logger = logging.getLogger(__name__)


async def render_reconstructions(
    image_service,
    case_id: str,
    scenarios: Sequence[Scenario],
    top_n: int = 2,
    viewpoint: str = "from doorway",
    delay_seconds: float = 0.0,
) -> List[ReconstructionImage]:
    """Request a ``most_likely`` reconstruction for each of the top scenarios.

    The image service always returns an artifact (a placeholder at worst), and
    the artifact id is appended to the scenario's ``reconstruction_image_ids``.
    """
    top = sort_scenarios_for_display(scenarios)[:top_n]
    reconstructions: List[ReconstructionImage] = []
    for i, scenario in enumerate(top):
        try:
            recon = await image_service.render_reconstruction(case_id, scenario, viewpoint, "most_likely")
        except Exception as e:
            logger.error(f"Reconstruction request failed for scenario '{scenario.name}': {e}")
            continue
        scenario.reconstruction_image_ids.append(recon.id)
        reconstructions.append(recon)

        if i < len(top) - 1 and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)

    logger.info(f"Rendered {len(reconstructions)} reconstructions for case {case_id}")
    return reconstructions
