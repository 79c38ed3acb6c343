"""
Reconstruction image generation.

Walks the configured Gemini image model chain, then Imagen, and finally
renders a local placeholder card with Pillow. ``render_reconstruction`` never
raises: callers always get an artifact back.
"""
import asyncio
import io
import logging
import os
import re
import uuid
from typing import List, Optional, Tuple

from google import genai
from google.genai import types
from PIL import Image, ImageDraw, ImageFont

from casefusion.config import settings
from casefusion.models.schemas import ReconstructionImage, ReconstructionKind, Scenario
from casefusion.services.file_storage import case_directory, storage_url_for

logger = logging.getLogger(__name__)

# Ordered substitutions that keep image prompts inside provider content policies.
NEUTRAL_VOCABULARY: List[Tuple[str, str]] = [
    (r"crime|forensic|investigation|incident|evidence", "scene"),
    (r"blood|gore|violence|death|injury|wound", "red paint spill"),
    (r"body|corpse|victim|suspect", "mannequin"),
    (r"weapon|gun|knife", "prop object"),
]

MAX_NARRATIVE_CHARS = 500


def sanitize_narrative(text: str) -> str:
    """Replace violent and forensic vocabulary with neutral wording."""
    for pattern, replacement in NEUTRAL_VOCABULARY:
        text = re.sub(pattern, replacement, text or "", flags=re.IGNORECASE)
    return text[:MAX_NARRATIVE_CHARS]


def build_reconstruction_prompt(scenario: Scenario, viewpoint: str) -> str:
    return (
        "Generate a photorealistic architectural interior photograph.\n\n"
        "Scene: A modern urban interior space with the following elements:\n"
        f"{sanitize_narrative(scenario.narrative)}\n\n"
        f"View: {viewpoint} perspective\n"
        "Style: Professional architectural photography, wide-angle lens, natural daylight, "
        "high dynamic range, sharp focus throughout\n"
        "Quality: high resolution, photorealistic, professional documentation style\n\n"
        "Important: This is for architectural visualization and training purposes only."
    )


def _get_font(size: int) -> ImageFont.FreeTypeFont:
    """Try to load a TrueType font, fall back to default."""
    font_paths = [
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
    ]
    for fp in font_paths:
        try:
            return ImageFont.truetype(fp, size)
        except (OSError, IOError):
            continue
    return ImageFont.load_default()


def _wrap_text(text: str, max_chars: int) -> List[str]:
    lines: List[str] = []
    line = ""
    for word in (text or "").split():
        if len(line) + len(word) + 1 > max_chars:
            lines.append(line.strip())
            line = word + " "
        else:
            line += word + " "
    if line.strip():
        lines.append(line.strip())
    return lines


def _extract_inline_image(response) -> Optional[Tuple[bytes, str]]:
    candidates = getattr(response, "candidates", None) or []
    for candidate in candidates:
        content = getattr(candidate, "content", None)
        parts = getattr(content, "parts", None) or []
        for part in parts:
            inline_data = getattr(part, "inline_data", None)
            if inline_data and getattr(inline_data, "data", None):
                mime_type = str(getattr(inline_data, "mime_type", "") or "")
                if mime_type.startswith("image/"):
                    return inline_data.data, mime_type
    return None


class ReconstructionImageService:
    """Generates scenario reconstruction images."""

    def __init__(self, api_key: Optional[str] = None, image_models: Optional[List[str]] = None,
                 imagen_model: Optional[str] = None, uploads_dir: Optional[str] = None):
        self.client = None
        self.image_models = list(image_models if image_models is not None else settings.image_models)
        self.imagen_model = imagen_model if imagen_model is not None else settings.imagen_model
        self.uploads_dir = uploads_dir
        self._initialize(api_key if api_key is not None else settings.google_api_key)

    def _initialize(self, api_key: str):
        try:
            if api_key:
                self.client = genai.Client(api_key=api_key)
                logger.info(f"Reconstruction image service initialized with {len(self.image_models)} image model(s)")
            else:
                logger.warning("GOOGLE_API_KEY not set, reconstructions will use placeholders")
        except Exception as e:
            logger.error(f"Failed to initialize image client: {e}")
            self.client = None

    async def render_reconstruction(
        self,
        case_id: str,
        scenario: Scenario,
        viewpoint: str,
        kind: ReconstructionKind = "most_likely",
    ) -> ReconstructionImage:
        image_id = str(uuid.uuid4())
        prompt = build_reconstruction_prompt(scenario, viewpoint)

        try:
            generated = await self._generate(prompt)
            if generated:
                image_bytes, ext = generated
                path = self._save(case_id, image_id, image_bytes, ext)
                logger.info(f"Generated reconstruction {image_id} for scenario '{scenario.name}'")
                return ReconstructionImage(
                    id=image_id,
                    case_id=case_id,
                    scenario_id=scenario.id,
                    viewpoint=viewpoint,
                    type=kind,
                    storage_url=storage_url_for(path, self.uploads_dir),
                    description=f"AI-generated reconstruction: {viewpoint} view of {scenario.name}",
                )
        except Exception as e:
            logger.error(f"Reconstruction generation failed for scenario '{scenario.name}': {e}")

        return self._placeholder(case_id, image_id, scenario, viewpoint, kind)

    async def _generate(self, prompt: str) -> Optional[Tuple[bytes, str]]:
        if not self.client:
            return None

        for model in self.image_models:
            try:
                response = await asyncio.to_thread(
                    self.client.models.generate_content,
                    model=model,
                    contents=prompt,
                    config=types.GenerateContentConfig(response_modalities=["TEXT", "IMAGE"]),
                )
                image = _extract_inline_image(response)
                if image:
                    data, mime_type = image
                    return data, "png" if "png" in mime_type else "jpg"
                logger.warning(f"Image model {model} returned no image data")
            except Exception as e:
                logger.warning(f"Image model {model} failed: {e}")

        if self.imagen_model:
            try:
                result = await asyncio.to_thread(
                    self.client.models.generate_images,
                    model=self.imagen_model,
                    prompt=prompt,
                    config=types.GenerateImagesConfig(number_of_images=1, aspect_ratio="16:9"),
                )
                if result.generated_images:
                    image_bytes = result.generated_images[0].image.image_bytes
                    if image_bytes:
                        return image_bytes, "png"
            except Exception as e:
                logger.warning(f"Imagen model {self.imagen_model} failed: {e}")

        logger.warning("All image models exhausted, falling back to placeholder")
        return None

    def _save(self, case_id: str, image_id: str, image_bytes: bytes, ext: str) -> str:
        recon_dir = case_directory(case_id, "reconstructions", uploads_dir=self.uploads_dir)
        path = os.path.join(recon_dir, f"{image_id}.{ext}")
        with open(path, "wb") as f:
            f.write(image_bytes)
        return path

    def _placeholder(self, case_id: str, image_id: str, scenario: Scenario,
                     viewpoint: str, kind: ReconstructionKind) -> ReconstructionImage:
        storage_url = ""
        try:
            card = self._render_card(scenario, viewpoint)
            buf = io.BytesIO()
            card.save(buf, format="PNG")
            path = self._save(case_id, image_id, buf.getvalue(), "png")
            storage_url = storage_url_for(path, self.uploads_dir)
        except Exception as e:
            logger.error(f"Placeholder rendering failed for scenario '{scenario.name}': {e}")

        return ReconstructionImage(
            id=image_id,
            case_id=case_id,
            scenario_id=scenario.id,
            viewpoint=viewpoint,
            type=kind,
            storage_url=storage_url,
            description=f"[Placeholder] {viewpoint} view - {scenario.name}. Image generation unavailable.",
        )

    def _render_card(self, scenario: Scenario, viewpoint: str) -> Image.Image:
        W, H = 1280, 720
        img = Image.new("RGB", (W, H), (18, 22, 30))
        draw = ImageDraw.Draw(img)

        font_title = _get_font(28)
        font_label = _get_font(18)
        font_body = _get_font(15)

        draw.rectangle([(0, 0), (W, 64)], fill=(12, 14, 20))
        draw.text((20, 18), "SCENE RECONSTRUCTION (PLACEHOLDER)", fill=(0, 212, 255), font=font_title)

        draw.text((20, 90), scenario.name, fill=(230, 235, 245), font=font_label)
        draw.text(
            (20, 120),
            f"Viewpoint: {viewpoint}    Likelihood: {scenario.likelihood:.0%}",
            fill=(140, 150, 170),
            font=font_body,
        )

        for i, line in enumerate(_wrap_text(sanitize_narrative(scenario.narrative), 120)[:20]):
            draw.text((20, 170 + i * 24), line, fill=(180, 190, 210), font=font_body)

        draw.rectangle([(0, 0), (W - 1, H - 1)], outline=(0, 212, 255), width=2)
        return img

    def health_check(self) -> bool:
        return self.client is not None


reconstruction_image_service = ReconstructionImageService()
