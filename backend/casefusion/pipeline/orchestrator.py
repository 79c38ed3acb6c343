"""
Case analysis orchestrator.

Runs the pipeline for one case as a forward-only state machine:

    Idle -> Preparing -> ProcessingEvidence -> Fusing -> DetectingContradictions
         -> AnalyzingShadows -> GeneratingScenarios -> RenderingReconstructions
         -> Finalizing -> Completed

Any exception between Preparing and Finalizing moves the machine to Failed,
marks the case as ``error`` and publishes a terminal error event. Nothing is
persisted for a failed run.
"""
import asyncio
import json
import logging
from enum import Enum
from typing import List, Optional

from casefusion.config import settings
from casefusion.errors import NoEvidenceError
from casefusion.models.schemas import AnalysisProgress, CaseAnalysis, EvidenceItem, ProgressStatus
from casefusion.pipeline.assembly import build_analysis, persist_analysis
from casefusion.pipeline.contradictions import detect_contradictions, witness_statements
from casefusion.pipeline.fusion import collect_digests, run_fusion
from casefusion.pipeline.reconstructions import render_reconstructions
from casefusion.pipeline.scenarios import generate_scenarios
from casefusion.services.progress_bus import ProgressBus

logger = logging.getLogger(__name__)

TOTAL_STEPS = 7
EVIDENCE_PROGRESS_SPAN = 15


class OrchestratorState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    PROCESSING_EVIDENCE = "processing_evidence"
    FUSING = "fusing"
    DETECTING_CONTRADICTIONS = "detecting_contradictions"
    ANALYZING_SHADOWS = "analyzing_shadows"
    GENERATING_SCENARIOS = "generating_scenarios"
    RENDERING_RECONSTRUCTIONS = "rendering_reconstructions"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


_STATE_ORDER = list(OrchestratorState)
_TERMINAL_STATES = (OrchestratorState.COMPLETED, OrchestratorState.FAILED)


class InvalidTransitionError(RuntimeError):
    pass


class AnalysisOrchestrator:
    """Drives one analysis run for one case. Instances are single use."""

    def __init__(
        self,
        case_id: str,
        store,
        processor,
        client,
        image_service,
        bus: Optional[ProgressBus] = None,
        item_delay_seconds: Optional[float] = None,
        reconstruction_delay_seconds: Optional[float] = None,
        reconstruction_top_n: Optional[int] = None,
        reconstruction_viewpoint: Optional[str] = None,
        heatmap_segments: Optional[int] = None,
    ):
        self.case_id = case_id
        self.store = store
        self.processor = processor
        self.client = client
        self.image_service = image_service
        self.bus = bus
        self.item_delay_seconds = (
            item_delay_seconds if item_delay_seconds is not None
            else settings.evidence_item_delay_seconds
        )
        self.reconstruction_delay_seconds = (
            reconstruction_delay_seconds if reconstruction_delay_seconds is not None
            else settings.reconstruction_delay_seconds
        )
        self.reconstruction_top_n = reconstruction_top_n or settings.reconstruction_top_n
        self.reconstruction_viewpoint = reconstruction_viewpoint or settings.reconstruction_viewpoint
        self.heatmap_segments = heatmap_segments or settings.heatmap_segments

        self.state = OrchestratorState.IDLE
        self.history: List[OrchestratorState] = [self.state]
        self._progress = 0

    # ------------------------------------------------------------------
    # State & progress
    # ------------------------------------------------------------------

    def _log_structured(self, event: str, **kwargs):
        entry = {"event": event, "case_id": self.case_id, **kwargs}
        logger.info(json.dumps(entry, default=str))

    def _transition(self, new_state: OrchestratorState):
        if self.state in _TERMINAL_STATES:
            raise InvalidTransitionError(f"Run already finished in state {self.state.value}")
        if new_state is not OrchestratorState.FAILED and (
            _STATE_ORDER.index(new_state) <= _STATE_ORDER.index(self.state)
        ):
            raise InvalidTransitionError(f"Cannot move from {self.state.value} to {new_state.value}")
        self._log_structured("state_transition", from_state=self.state.value, to_state=new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def _emit(
        self,
        step: str,
        progress: int,
        reasoning: Optional[str] = None,
        step_number: Optional[int] = None,
        current_item: Optional[str] = None,
        status: ProgressStatus = "running",
    ):
        self._progress = max(self._progress, progress)
        event = AnalysisProgress(
            step=step,
            progress=self._progress,
            reasoning=reasoning,
            current_item=current_item,
            status=status,
            step_number=step_number,
            total_steps=TOTAL_STEPS,
        )
        if self.bus is not None:
            self.bus.publish(event)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> CaseAnalysis:
        if self.state is not OrchestratorState.IDLE:
            raise InvalidTransitionError("Orchestrator instances are single use")

        try:
            return await self._run()
        except Exception as e:
            self._transition(OrchestratorState.FAILED)
            message = str(e) or e.__class__.__name__
            self._log_structured("analysis_failed", error=message, error_type=e.__class__.__name__)
            self._emit("Analysis failed", self._progress, reasoning=f"Analysis failed: {message}", status="error")
            try:
                await self.store.set_case_status(self.case_id, "error")
            except Exception as status_error:
                logger.error(f"Failed to mark case {self.case_id} as error: {status_error}")
            raise

    async def _run(self) -> CaseAnalysis:
        self._transition(OrchestratorState.PREPARING)
        self._emit("Preparing evidence", 0,
                   "Collecting and processing uploaded evidence files...", step_number=0)
        await self.store.set_case_status(self.case_id, "running")
        evidence = await self.store.get_evidence_by_case(self.case_id)
        if not evidence:
            raise NoEvidenceError("No evidence found for case")

        self._transition(OrchestratorState.PROCESSING_EVIDENCE)
        await self._process_evidence(evidence)

        self._transition(OrchestratorState.FUSING)
        self._emit("Collecting summaries", 16,
                   "Collecting all individual evidence summaries for fusion...", step_number=1)
        digests = await collect_digests(self.case_id, self.store, self.processor)

        self._emit("Fusing evidence", 30,
                   f"Combining {len(digests)} evidence items into a unified world model...", step_number=2)
        fusion = await run_fusion(self.client, self.case_id, digests)
        self._emit("Fusing evidence", 40,
                   fusion.reasoning or f"Built timeline with {len(fusion.timeline)} events.", step_number=2)

        self._transition(OrchestratorState.DETECTING_CONTRADICTIONS)
        self._emit("Detecting contradictions", 50,
                   "Analyzing testimonies and evidence for inconsistencies...", step_number=3)
        statements = witness_statements(d.evidence for d in digests)
        contradiction_result = await detect_contradictions(
            self.client, self.case_id, fusion.timeline, digests, statements
        )
        self._emit("Detecting contradictions", 60, contradiction_result.reasoning, step_number=3)

        # Reserved stage: announced in the progress sequence, performs no analysis yet.
        self._transition(OrchestratorState.ANALYZING_SHADOWS)
        self._emit("Analyzing shadows and reflections", 65,
                   "Examining visual evidence for off-camera inference...", step_number=4)

        self._transition(OrchestratorState.GENERATING_SCENARIOS)
        self._emit("Generating scenarios", 70,
                   "Creating multiple plausible explanations...", step_number=5)
        scenario_result = await generate_scenarios(
            self.client, self.case_id, fusion.world_model, fusion.timeline,
            contradiction_result.contradictions, digests,
        )
        self._emit("Generating scenarios", 80, scenario_result.reasoning, step_number=5)

        self._transition(OrchestratorState.RENDERING_RECONSTRUCTIONS)
        self._emit("Rendering reconstructions", 85,
                   "Generating scene reconstructions...", step_number=6)
        reconstructions = await render_reconstructions(
            self.image_service,
            self.case_id,
            scenario_result.scenarios,
            top_n=self.reconstruction_top_n,
            viewpoint=self.reconstruction_viewpoint,
            delay_seconds=self.reconstruction_delay_seconds,
        )
        self._emit("Rendering reconstructions", 95,
                   f"Completed {len(reconstructions)} scene reconstructions.", step_number=6)

        self._transition(OrchestratorState.FINALIZING)
        self._emit("Finalizing analysis", 98, "Assembling final case analysis...", step_number=7)
        analysis = build_analysis(
            case_id=self.case_id,
            digests=digests,
            timeline=fusion.timeline,
            world_model=fusion.world_model,
            contradictions=contradiction_result.contradictions,
            scenarios=scenario_result.scenarios,
            reconstructions=reconstructions,
            fusion_reasoning=fusion.reasoning,
            contradiction_reasoning=contradiction_result.reasoning,
            scenario_reasoning=scenario_result.reasoning,
            heatmap_segments=self.heatmap_segments,
        )
        await persist_analysis(self.store, analysis)

        self._transition(OrchestratorState.COMPLETED)
        self._log_structured(
            "analysis_completed",
            timeline_events=len(analysis.timeline),
            contradictions=len(analysis.contradictions),
            scenarios=len(analysis.scenarios),
            reconstructions=len(analysis.reconstructions),
        )
        self._emit("Analysis complete", 100, "Case analysis completed successfully.",
                   step_number=7, status="completed")
        return analysis

    async def _process_evidence(self, evidence: List[EvidenceItem]):
        """Process items one at a time; a failing item never stops the loop."""
        total = len(evidence)
        for i, item in enumerate(evidence):
            before = (i * EVIDENCE_PROGRESS_SPAN) // total
            after = ((i + 1) * EVIDENCE_PROGRESS_SPAN) // total
            self._emit(
                "Processing evidence", before,
                f"Starting analysis of {item.type}: {item.original_filename} ({i + 1}/{total})...",
                step_number=0, current_item=item.original_filename,
            )

            try:
                result = await self.processor.process(item)
            except Exception as e:
                logger.error(f"Error processing evidence {item.id}: {e}")
                self._emit("Processing evidence", after,
                           f"Error processing {item.original_filename}: {e}",
                           step_number=0, current_item=item.original_filename)
            else:
                if result.ok:
                    reasoning = (
                        f"Completed {item.type}: {item.original_filename}\n"
                        f"Summary: {result.derived.summary[:150]}..."
                    )
                else:
                    reasoning = (
                        f"Processed {item.type}: {item.original_filename} with errors: "
                        f"{result.derived.error or 'summary not available'}"
                    )
                self._emit("Processing evidence", after, reasoning,
                           step_number=0, current_item=item.original_filename)
                if item.type == "video" and result.frames:
                    self._emit(
                        "Processing evidence", after,
                        f"Extracted {len(result.frames)} frames from video, "
                        f"analyzed {result.derived.analyzed_frame_count or 0} key frames.",
                        step_number=0, current_item=item.original_filename,
                    )

            if self.item_delay_seconds > 0:
                await asyncio.sleep(self.item_delay_seconds)

        logger.info(f"Completed processing all {total} evidence items for case {self.case_id}")
