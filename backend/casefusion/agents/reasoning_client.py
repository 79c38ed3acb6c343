"""
Client for the multimodal reasoning model.

Structured calls request JSON constrained by a pydantic response schema and
decode it strictly; a response that does not validate raises
ModelOutputError so each pipeline stage can apply its own degradation policy.
"""
import asyncio
import json
import logging
from typing import Optional, Sequence, Type, TypeVar

from google import genai
from google.genai import types
from pydantic import BaseModel, ValidationError

from casefusion.config import settings
from casefusion.errors import ModelOutputError, ModelUnavailableError, NoEvidenceError
from casefusion.models.digest import EvidenceDigest
from casefusion.models.schemas import (
    CaseAnalysis,
    ChatAnswerResponse,
    Contradiction,
    ContradictionResponse,
    EvidenceItem,
    EvidenceSummaryResponse,
    FusionResponse,
    ScenarioResponse,
    TimelineEvent,
)
from casefusion.services.retry_utils import retry_with_backoff
from casefusion.agents.prompts import (
    CHAT_PROMPT,
    DETECT_CONTRADICTIONS_PROMPT,
    FUSE_EVIDENCE_PROMPT,
    GENERATE_SCENARIOS_PROMPT,
    NO_CONTENT_BLOCK,
    SUMMARIZE_EVIDENCE_PROMPT,
    TEXT_CONTENT_BLOCK,
    TRANSCRIBE_AUDIO_PROMPT,
    VISUAL_CONTENT_BLOCK,
)

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def evidence_label(index: int) -> str:
    """Label used for the evidence item at ``index`` in every prompt."""
    return f"Evidence {index + 1}"


def decode_model_output(text: Optional[str], schema: Type[SchemaT]) -> SchemaT:
    """Strictly decode a JSON model response into ``schema``."""
    if not text or not text.strip():
        raise ModelOutputError(f"Empty response for {schema.__name__}")
    try:
        return schema.model_validate_json(text)
    except ValidationError as e:
        raise ModelOutputError(
            f"Response does not match {schema.__name__}: {e.error_count()} validation error(s)",
            raw_text=text,
        ) from e


def _format_digests(digests: Sequence[EvidenceDigest]) -> str:
    return "\n\n".join(
        f"{evidence_label(i)} ({d.evidence.type}, filename: {d.evidence.original_filename}): "
        f"{d.summary or 'No summary available'}\n"
        f"Tags: {', '.join(d.tags) if d.tags else 'None'}"
        for i, d in enumerate(digests)
    )


def _timeline_json(timeline: Sequence[TimelineEvent]) -> str:
    return json.dumps(
        [e.model_dump(mode="json", exclude={"case_id", "id"}) for e in timeline],
        indent=2,
    )


class ReasoningClient:
    """Capability-typed wrapper around the Gemini reasoning model."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 max_retries: Optional[int] = None):
        self.client = None
        self.model = model or settings.reasoning_model
        self.max_retries = max_retries or settings.model_max_retries
        self._initialize(api_key if api_key is not None else settings.google_api_key)

    def _initialize(self, api_key: str):
        try:
            if api_key:
                self.client = genai.Client(api_key=api_key)
                logger.info(f"Reasoning client initialized with model {self.model}")
            else:
                logger.warning("GOOGLE_API_KEY not set, reasoning client not initialized")
        except Exception as e:
            logger.error(f"Failed to initialize reasoning client: {e}")
            self.client = None

    @property
    def available(self) -> bool:
        return self.client is not None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _generate(self, contents, schema: Optional[Type[BaseModel]] = None,
                        temperature: float = 0.2, label: str = "generate") -> str:
        if not self.client:
            raise ModelUnavailableError("Reasoning model is not configured (GOOGLE_API_KEY missing)")

        config_kwargs = {"temperature": temperature}
        if schema is not None:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_schema"] = schema

        async def _call():
            return await asyncio.to_thread(
                self.client.models.generate_content,
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(**config_kwargs),
            )

        response = await retry_with_backoff(_call, max_retries=self.max_retries, label=label)
        return response.text or ""

    async def _generate_structured(self, contents, schema: Type[SchemaT],
                                   temperature: float = 0.2, label: str = "generate") -> SchemaT:
        text = await self._generate(contents, schema=schema, temperature=temperature, label=label)
        return decode_model_output(text, schema)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def summarize(
        self,
        item: EvidenceItem,
        data: Optional[bytes] = None,
        text: Optional[str] = None,
        mime_type: str = "image/jpeg",
        filename: Optional[str] = None,
    ) -> EvidenceSummaryResponse:
        """Summarize one evidence item from its bytes (visual) or text content."""
        if data is not None:
            content_block = VISUAL_CONTENT_BLOCK
        elif text is not None:
            content_block = TEXT_CONTENT_BLOCK.format(char_count=len(text), text=text)
        else:
            content_block = NO_CONTENT_BLOCK

        prompt = SUMMARIZE_EVIDENCE_PROMPT.format(
            evidence_type=item.type,
            filename=filename or item.original_filename,
            content_block=content_block,
        )
        contents = [prompt, types.Part.from_bytes(data=data, mime_type=mime_type)] if data is not None else prompt
        return await self._generate_structured(contents, EvidenceSummaryResponse, label="summarize")

    async def transcribe(self, audio: bytes, mime_type: str) -> str:
        contents = [TRANSCRIBE_AUDIO_PROMPT, types.Part.from_bytes(data=audio, mime_type=mime_type)]
        transcript = (await self._generate(contents, temperature=0.0, label="transcribe")).strip()
        if not transcript:
            raise ModelOutputError("Transcription returned no text")
        logger.info(f"Transcription received ({len(transcript)} characters)")
        return transcript

    async def fuse(self, digests: Sequence[EvidenceDigest],
                   problem_statement: Optional[str] = None) -> FusionResponse:
        if not digests:
            raise NoEvidenceError("No evidence summaries provided for fusion")
        prompt = FUSE_EVIDENCE_PROMPT.format(
            summaries=_format_digests(digests),
            problem_statement=(
                f"Problem statement: {problem_statement}" if problem_statement
                else "Analyze the scene and events based on the evidence."
            ),
        )
        return await self._generate_structured(prompt, FusionResponse, label="fuse")

    async def detect_contradictions(
        self,
        timeline: Sequence[TimelineEvent],
        digests: Sequence[EvidenceDigest],
        statements: Sequence[str],
    ) -> ContradictionResponse:
        prompt = DETECT_CONTRADICTIONS_PROMPT.format(
            timeline=_timeline_json(timeline),
            evidence="\n".join(f"{evidence_label(i)}. {d.summary}" for i, d in enumerate(digests)),
            statements="\n".join(f"Witness {i + 1}: {s}" for i, s in enumerate(statements)) or "None",
        )
        return await self._generate_structured(prompt, ContradictionResponse, label="contradictions")

    async def generate_scenarios(
        self,
        world_model: str,
        timeline: Sequence[TimelineEvent],
        contradictions: Sequence[Contradiction],
    ) -> ScenarioResponse:
        prompt = GENERATE_SCENARIOS_PROMPT.format(
            world_model=world_model,
            timeline=_timeline_json(timeline),
            contradictions=json.dumps(
                [c.model_dump(mode="json", exclude={"case_id", "id"}) for c in contradictions],
                indent=2,
            ),
        )
        return await self._generate_structured(prompt, ScenarioResponse, temperature=0.4, label="scenarios")

    async def chat(self, question: str, analysis: Optional[CaseAnalysis],
                   digests: Sequence[EvidenceDigest]) -> ChatAnswerResponse:
        prompt = CHAT_PROMPT.format(
            analysis=analysis.model_dump_json(by_alias=True, indent=2) if analysis else "No analysis has been run yet.",
            evidence="\n".join(f"{evidence_label(i)}. {d.summary}" for i, d in enumerate(digests)) or "None",
            question=question,
        )
        return await self._generate_structured(prompt, ChatAnswerResponse, temperature=0.3, label="chat")


reasoning_client = ReasoningClient()
