"""
Tests for reconstruction prompts, the image model fallback chain and
placeholder rendering.
"""
import os
from types import SimpleNamespace

from PIL import Image

from casefusion.models.schemas import Scenario
from casefusion.services.file_storage import resolve_storage_url
from casefusion.services.reconstruction_images import (
    ReconstructionImageService,
    build_reconstruction_prompt,
    sanitize_narrative,
)


def _scenario(narrative="The suspect broke the window with a knife."):
    return Scenario(id="sc-1", case_id="case-1", name="Scenario B: Break-in",
                    likelihood=0.7, narrative=narrative)


class FakeImageModels:
    def __init__(self, inline_image=None, fail_models=(), imagen_bytes=None):
        self.inline_image = inline_image
        self.fail_models = set(fail_models)
        self.imagen_bytes = imagen_bytes
        self.calls = []

    def generate_content(self, model, contents, config):
        self.calls.append(model)
        if model in self.fail_models:
            raise RuntimeError(f"{model} is not available")
        parts = []
        if self.inline_image:
            parts.append(SimpleNamespace(inline_data=SimpleNamespace(data=self.inline_image, mime_type="image/png")))
        return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])

    def generate_images(self, model, prompt, config):
        self.calls.append(model)
        images = []
        if self.imagen_bytes:
            images.append(SimpleNamespace(image=SimpleNamespace(image_bytes=self.imagen_bytes)))
        return SimpleNamespace(generated_images=images)


def _service(uploads_dir, models=None, image_models=("model-a", "model-b")):
    service = ReconstructionImageService(api_key="", image_models=list(image_models),
                                         imagen_model="imagen-test", uploads_dir=uploads_dir)
    if models is not None:
        service.client = SimpleNamespace(models=models)
    return service


class TestPrompt:

    def test_sensitive_vocabulary_is_neutralized(self):
        text = sanitize_narrative("The suspect left blood near the weapon during the incident.")

        assert text == "The mannequin left red paint spill near the prop object during the scene."

    def test_narrative_is_truncated(self):
        assert len(sanitize_narrative("window " * 200)) == 500

    def test_prompt_includes_viewpoint_and_sanitized_narrative(self):
        prompt = build_reconstruction_prompt(_scenario(), "from doorway")

        assert "View: from doorway perspective" in prompt
        assert "mannequin" in prompt
        assert "knife" not in prompt


class TestRenderReconstruction:

    async def test_without_client_a_placeholder_is_written(self, uploads_dir):
        service = _service(uploads_dir)

        recon = await service.render_reconstruction("case-1", _scenario(), "from doorway")

        assert recon.description.startswith("[Placeholder] from doorway view - Scenario B: Break-in.")
        assert recon.scenario_id == "sc-1"
        assert recon.type == "most_likely"
        path = resolve_storage_url(recon.storage_url, uploads_dir)
        assert os.path.exists(path)
        with Image.open(path) as img:
            assert img.size == (1280, 720)

    async def test_first_model_with_image_wins(self, uploads_dir):
        models = FakeImageModels(inline_image=b"\x89PNG\r\n\x1a\nfake", fail_models={"model-a"})
        service = _service(uploads_dir, models)

        recon = await service.render_reconstruction("case-1", _scenario(), "from doorway")

        assert models.calls == ["model-a", "model-b"]
        assert recon.description == "AI-generated reconstruction: from doorway view of Scenario B: Break-in"
        assert recon.storage_url.endswith(".png")
        with open(resolve_storage_url(recon.storage_url, uploads_dir), "rb") as f:
            assert f.read() == b"\x89PNG\r\n\x1a\nfake"

    async def test_imagen_is_tried_after_image_models(self, uploads_dir):
        models = FakeImageModels(imagen_bytes=b"imagen-bytes")
        service = _service(uploads_dir, models)

        recon = await service.render_reconstruction("case-1", _scenario(), "from doorway", "alternative")

        assert models.calls == ["model-a", "model-b", "imagen-test"]
        assert recon.type == "alternative"
        assert recon.description.startswith("AI-generated reconstruction")

    async def test_exhausted_chain_falls_back_to_placeholder(self, uploads_dir):
        models = FakeImageModels(fail_models={"model-a", "model-b"})
        service = _service(uploads_dir, models)

        recon = await service.render_reconstruction("case-1", _scenario(), "from doorway")

        assert recon.description.endswith("Image generation unavailable.")
        assert recon.storage_url.startswith("/uploads/case-1/reconstructions/")
