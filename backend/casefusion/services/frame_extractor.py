"""Video frame sampling through the ffmpeg / ffprobe command line tools."""
import asyncio
import logging
import os
import shutil
import uuid
from typing import List, Optional

from casefusion.errors import FrameExtractionError
from casefusion.models.schemas import FrameEvidence
from casefusion.services.file_storage import case_directory, storage_url_for

logger = logging.getLogger(__name__)


class FrameExtractor:
    """Extracts still frames at a fixed interval from a video file."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe",
                 uploads_dir: Optional[str] = None):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.uploads_dir = uploads_dir

    async def _run(self, *args: str) -> str:
        if shutil.which(args[0]) is None:
            raise FrameExtractionError(f"{args[0]} is not installed")
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise FrameExtractionError(
                f"{args[0]} exited with code {proc.returncode}: "
                f"{stderr.decode('utf-8', errors='replace')[-300:]}"
            )
        return stdout.decode("utf-8", errors="replace")

    async def probe_duration(self, video_path: str) -> float:
        output = await self._run(
            self.ffprobe_bin, "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            video_path,
        )
        try:
            return float(output.strip() or 0)
        except ValueError:
            return 0.0

    async def extract_frames(
        self,
        video_path: str,
        case_id: str,
        evidence_id: str,
        interval_seconds: int = 1,
    ) -> List[FrameEvidence]:
        """Sample one frame every ``interval_seconds``.

        Frames are returned in ascending ``time_seconds`` order; the timestamp
        of frame ``i`` is ``i * interval_seconds``.
        """
        duration = await self.probe_duration(video_path)
        if duration <= 0:
            raise FrameExtractionError("Could not determine video duration")

        # Drop frames left by an earlier extraction.
        frames_dir = case_directory(case_id, "frames", evidence_id, uploads_dir=self.uploads_dir)
        shutil.rmtree(frames_dir)
        os.makedirs(frames_dir)

        await self._run(
            self.ffmpeg_bin, "-y", "-i", video_path,
            "-vf", f"fps=1/{interval_seconds}",
            "-q:v", "2",
            os.path.join(frames_dir, "frame_%05d.jpg"),
        )

        frame_files = sorted(
            f for f in os.listdir(frames_dir)
            if f.startswith("frame_") and f.endswith(".jpg")
        )
        frames: List[FrameEvidence] = []
        for index, frame_file in enumerate(frame_files):
            frame_id = str(uuid.uuid4())
            final_path = os.path.join(frames_dir, f"{frame_id}.jpg")
            os.replace(os.path.join(frames_dir, frame_file), final_path)
            frames.append(FrameEvidence(
                id=frame_id,
                parent_evidence_id=evidence_id,
                time_seconds=float(index * interval_seconds),
                storage_url=storage_url_for(final_path, self.uploads_dir),
            ))

        logger.info(f"Extracted {len(frames)} frames ({duration:.1f}s video) from {video_path}")
        return frames


frame_extractor = FrameExtractor()
