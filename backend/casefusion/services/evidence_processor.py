"""
Per-item evidence processing.

Normalizes one evidence item of any media type into a summary plus tags and
writes the result back to the evidence store. ``EvidenceProcessor.process``
never raises: failures become a ``derived`` block with ``status="error"``.
"""
import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, TypeVar

from casefusion.config import settings
from casefusion.errors import FrameExtractionError, ModelOutputError
from casefusion.models.schemas import (
    EvidenceDerived,
    EvidenceItem,
    EvidenceSummaryResponse,
    FrameDerived,
    FrameEvidence,
)
from casefusion.services.file_storage import audio_mime_for, image_mime_for, resolve_storage_url

logger = logging.getLogger(__name__)

FrameT = TypeVar("FrameT")

# (summary prefix, tags) used when processing an item of a given type fails
_FAILURE_LABELS = {
    "video": ("Video processing failed", ["video", "processing-error"]),
    "audio": ("Audio transcription failed", ["audio", "transcription-error"]),
    "text": ("Text file processing failed", ["text", "processing-error"]),
    "document": ("Text file processing failed", ["document", "processing-error"]),
    "image": ("Image analysis failed", ["image", "analysis-error"]),
}


def select_key_frames(frames: Sequence[FrameT], max_frames: int) -> List[FrameT]:
    """Evenly spaced subset of ``frames`` that always keeps the first and last frame.

    Slots between the endpoints are spaced ``len(frames) // max_frames`` apart,
    so the result is never longer than ``max_frames`` and keeps input order.
    """
    n = len(frames)
    if n <= max_frames:
        return list(frames)
    if max_frames <= 1:
        return [frames[0]]

    step = max(1, n // max_frames)
    result = [frames[0]]
    for i in range(step, n - 1, step):
        if len(result) < max_frames - 1:
            result.append(frames[i])
    result.append(frames[-1])
    return result


def read_text_content(path: str) -> str:
    """Read a text file as UTF-8, falling back to latin-1."""
    with open(path, "rb") as f:
        raw = f.read()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning(f"UTF-8 decode failed for {path}, falling back to latin-1")
        return raw.decode("latin-1")


def truncate_text(text: str, max_chars: int) -> Tuple[str, bool]:
    if len(text) <= max_chars:
        return text, False
    return (
        text[:max_chars] + f"\n\n[... truncated from {len(text)} to {max_chars} characters ...]",
        True,
    )


def _format_seconds(value: float) -> str:
    return f"{value:g}"


def _require_summary(result: EvidenceSummaryResponse) -> EvidenceSummaryResponse:
    if not result.summary or not result.summary.strip():
        raise ModelOutputError("Model returned an empty summary")
    return result


@dataclass
class ProcessResult:
    """Outcome of processing one evidence item."""
    derived: EvidenceDerived
    frames: List[FrameEvidence] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.derived.status == "ok"


class EvidenceProcessor:
    """Dispatches evidence items to a media-type specific strategy."""

    def __init__(
        self,
        store,
        client,
        frame_extractor,
        uploads_dir: Optional[str] = None,
        frame_interval_seconds: Optional[int] = None,
        downsample_threshold: Optional[int] = None,
        max_analyzed_frames: Optional[int] = None,
        frame_delay_seconds: Optional[float] = None,
        max_text_chars: Optional[int] = None,
    ):
        self.store = store
        self.client = client
        self.frame_extractor = frame_extractor
        self.uploads_dir = uploads_dir
        self.frame_interval_seconds = frame_interval_seconds or settings.frame_interval_seconds
        self.downsample_threshold = (
            downsample_threshold if downsample_threshold is not None
            else settings.frame_downsample_threshold
        )
        self.max_analyzed_frames = max_analyzed_frames or settings.max_analyzed_frames
        self.frame_delay_seconds = (
            frame_delay_seconds if frame_delay_seconds is not None
            else settings.frame_analysis_delay_seconds
        )
        self.max_text_chars = max_text_chars or settings.max_text_chars

    def _log_structured(self, event: str, item: EvidenceItem, **kwargs):
        entry = {"event": event, "case_id": item.case_id, "evidence_id": item.id, **kwargs}
        logger.info(json.dumps(entry, default=str))

    def resolve_path(self, item: EvidenceItem) -> Optional[str]:
        try:
            return resolve_storage_url(item.storage_url, self.uploads_dir)
        except ValueError as e:
            logger.warning(f"Evidence {item.id} has an invalid storage URL: {e}")
            return None

    async def process(self, item: EvidenceItem, file_path: Optional[str] = None) -> ProcessResult:
        """Process one item and persist its ``derived`` block."""
        path = file_path or self.resolve_path(item)
        self._log_structured("evidence_processing_started", item, type=item.type,
                             filename=item.original_filename)

        if not path or not os.path.isfile(path):
            result = ProcessResult(derived=EvidenceDerived(
                status="error",
                recoverable=False,
                error=f"File not found: {path or item.storage_url}",
                summary=f"Processing failed: file not found ({item.original_filename})",
                tags=["error", "file-not-found"],
            ))
        else:
            try:
                if item.type == "video":
                    result = await self._process_video(item, path)
                elif item.type == "audio":
                    result = await self._process_audio(item, path)
                elif item.type in ("text", "document"):
                    result = await self._process_text(item, path)
                else:
                    result = await self._process_image(item, path)
            except Exception as e:
                logger.error(f"Error processing {item.type} evidence {item.original_filename}: {e}")
                prefix, tags = _FAILURE_LABELS.get(item.type, ("Processing failed", [item.type, "processing-error"]))
                result = ProcessResult(derived=EvidenceDerived(
                    status="error",
                    error=str(e),
                    summary=f"{prefix}: {e}",
                    tags=list(tags),
                ))

        try:
            await self.store.save_evidence_derived(item.id, result.derived)
        except Exception as e:
            logger.error(f"Failed to save derived data for evidence {item.id}: {e}")

        self._log_structured(
            "evidence_processing_finished", item,
            status=result.derived.status,
            recoverable=result.derived.recoverable,
            error=result.derived.error,
        )
        return result

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _process_video(self, item: EvidenceItem, path: str) -> ProcessResult:
        frames = await self.frame_extractor.extract_frames(
            path, item.case_id, item.id, self.frame_interval_seconds
        )
        if not frames:
            raise FrameExtractionError("No frames extracted from video")

        await self.store.delete_frames(item.id)
        await self.store.save_frames(frames)

        if len(frames) > self.downsample_threshold:
            to_analyze = select_key_frames(frames, self.max_analyzed_frames)
        else:
            to_analyze = list(frames)
        logger.info(f"Analyzing {len(to_analyze)} of {len(frames)} frames from {item.original_filename}")

        descriptions: List[str] = []
        tags: List[str] = []
        analyzed = 0
        for i, frame in enumerate(to_analyze):
            description, frame_tags, ok = await self._analyze_frame(item, frame)
            descriptions.append(description)
            for tag in frame_tags:
                if tag not in tags:
                    tags.append(tag)
            if ok:
                analyzed += 1
            if i < len(to_analyze) - 1 and self.frame_delay_seconds > 0:
                await asyncio.sleep(self.frame_delay_seconds)

        duration = len(frames) * self.frame_interval_seconds
        summary = (
            f"VIDEO ANALYSIS: {item.original_filename}\n"
            f"Duration: {duration} seconds ({len(to_analyze)} of {len(frames)} frames analyzed)\n\n"
            f"FRAME-BY-FRAME ANALYSIS:\n" + "\n\n".join(descriptions)
        )
        derived = EvidenceDerived(
            summary=summary,
            tags=tags,
            frame_ids=[f.id for f in frames],
            frame_count=len(frames),
            analyzed_frame_count=len(to_analyze),
        )
        if analyzed == 0:
            derived.status = "error"
            derived.error = "No frame could be analyzed"
        return ProcessResult(derived=derived, frames=list(frames))

    async def _analyze_frame(self, item: EvidenceItem, frame: FrameEvidence) -> Tuple[str, List[str], bool]:
        at = _format_seconds(frame.time_seconds)
        try:
            frame_path = resolve_storage_url(frame.storage_url, self.uploads_dir)
            with open(frame_path, "rb") as f:
                data = f.read()
            frame_item = item.model_copy(update={"type": "image", "original_filename": f"frame_{at}s.jpg"})
            result = _require_summary(await self.client.summarize(frame_item, data=data, mime_type="image/jpeg"))
            await self.store.save_frame_derived(frame.id, FrameDerived(summary=result.summary, tags=result.tags))
            return f"[{at}s] {result.summary}", list(result.tags), True
        except Exception as e:
            logger.warning(f"Frame analysis failed at {at}s of {item.original_filename}: {e}")
            try:
                await self.store.save_frame_derived(frame.id, FrameDerived(status="error"))
            except Exception as save_error:
                logger.error(f"Failed to save frame derived data for {frame.id}: {save_error}")
            return f"Frame at {at}s: [analysis failed]", [], False

    async def _process_audio(self, item: EvidenceItem, path: str) -> ProcessResult:
        with open(path, "rb") as f:
            audio = f.read()
        mime_type = audio_mime_for(item.original_filename)
        logger.info(f"Transcribing {item.original_filename} ({len(audio)} bytes, {mime_type})")
        transcript = await self.client.transcribe(audio, mime_type)
        return ProcessResult(derived=EvidenceDerived(
            summary=f"AUDIO TRANSCRIPT: {item.original_filename}\n\n{transcript}",
            tags=["audio", "transcript"],
            transcript=transcript,
        ))

    async def _process_text(self, item: EvidenceItem, path: str) -> ProcessResult:
        text = read_text_content(path)
        if not text.strip():
            raise ValueError("File is empty or unreadable")
        content, truncated = truncate_text(text, self.max_text_chars)
        if truncated:
            logger.info(f"Truncated {item.original_filename} from {len(text)} to {self.max_text_chars} characters")
        result = _require_summary(await self.client.summarize(item, text=content))
        return ProcessResult(derived=EvidenceDerived(
            summary=result.summary,
            tags=list(result.tags),
            full_text=content,
            char_count=len(content),
            truncated=truncated,
        ))

    async def _process_image(self, item: EvidenceItem, path: str) -> ProcessResult:
        with open(path, "rb") as f:
            data = f.read()
        result = _require_summary(
            await self.client.summarize(item, data=data, mime_type=image_mime_for(item.original_filename))
        )
        return ProcessResult(derived=EvidenceDerived(summary=result.summary, tags=list(result.tags)))
