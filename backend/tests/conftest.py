"""
Test fixtures and configuration for pytest.
"""

import os
import random
import sys
from io import BytesIO
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings
from services.gemini_orchestrator import GeminiOrchestrator
from services.image_validation import to_data_url
from services.storage import InMemoryDocumentStore, TryOnRepository
from services.tryon_pipeline import TryOnPipeline
from services.usage_tracker import UsageTracker

TEST_API_KEY = "test-api-key-0123456789"


# ============== Image helpers ==============


def make_image_bytes(
    width: int = 64,
    height: int = 64,
    color=(200, 40, 40),
    fmt: str = "PNG",
    mode: str = "RGB",
) -> bytes:
    image = Image.new(mode, (width, height), color)
    buffer = BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def make_data_url(width: int = 64, height: int = 64, color=(200, 40, 40), fmt: str = "PNG") -> str:
    mime_type = "image/png" if fmt == "PNG" else "image/jpeg"
    return to_data_url(make_image_bytes(width, height, color, fmt), mime_type)


# ============== Fake Gemini client ==============


def text_response(text: str) -> SimpleNamespace:
    return SimpleNamespace(parts=[SimpleNamespace(text=text, inline_data=None)])


def image_response(data: bytes, mime_type: str = "image/png", text: str = "") -> SimpleNamespace:
    parts = [SimpleNamespace(text=None, inline_data=SimpleNamespace(mime_type=mime_type, data=data))]
    if text:
        parts.insert(0, SimpleNamespace(text=text, inline_data=None))
    return SimpleNamespace(parts=parts)


_PROMPT_PREFIXES = {
    "Analyze this image and detect": "detect",
    "Generate ONE photorealistic": "generate",
    "You are reviewing a virtual try-on": "analyze",
    "Edit this virtual try-on": "refine",
    "Assess whether this": "safety",
    "Hello, can you confirm": "connection",
}


def _stage_for(contents) -> str:
    prompt = contents[0] if contents and isinstance(contents[0], str) else ""
    for prefix, stage in _PROMPT_PREFIXES.items():
        if prompt.startswith(prefix):
            return stage
    return "unknown"


class FakeModels:
    def __init__(self, client: "FakeGeminiClient"):
        self._client = client

    def generate_content(self, *, model, contents, config=None):
        stage = _stage_for(contents)
        self._client.calls.append(SimpleNamespace(stage=stage, model=model, contents=contents, config=config))
        handler = self._client.handlers.get(stage)
        if isinstance(handler, list):
            handler = handler.pop(0) if handler else None
        if handler is None:
            raise AssertionError(f"Unexpected Gemini call for stage {stage!r}")
        if isinstance(handler, BaseException):
            raise handler
        if callable(handler):
            return handler(contents)
        return handler


class FakeGeminiClient:
    """Routes generate_content calls to per-stage canned responses by prompt prefix."""

    def __init__(self, **handlers):
        self.handlers = dict(handlers)
        self.calls = []
        self.models = FakeModels(self)

    def stages(self) -> list[str]:
        return [call.stage for call in self.calls]


SAFE_VERDICT = '{"safe": true, "concerns": [], "recommendation": "proceed"}'
REJECT_VERDICT = '{"safe": false, "concerns": ["explicit content"], "recommendation": "reject"}'
ANALYSIS_JSON = """```json
{
  "description": "The jacket sits well on the shoulders.",
  "fit_analysis": {"size_compatibility": "good", "body_type_match": "excellent", "pose_compatibility": "good"},
  "visual_result": {"realism": "high", "lighting_match": "consistent", "fabric_draping": "natural"},
  "styling_assessment": {"color_harmony": "warm", "style_match": "casual", "occasion": "everyday"},
  "recommendations": [],
  "confidence_score": 0.9,
  "safety_assessment": "appropriate"
}
```"""
DETECTION_JSON = """{
  "items": [
    {"category": "tops", "type": "jacket", "color": "red", "style": "casual", "confidence": 0.92,
     "boundingBox": {"x": 10, "y": 10, "width": 40, "height": 40}, "features": ["zip"]}
  ],
  "background": "plain",
  "lighting": "studio",
  "quality": "high"
}"""


# ============== Fixtures ==============


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        GOOGLE_API_KEY=TEST_API_KEY,
        STORAGE_BACKEND="memory",
        STORAGE_DIR=str(tmp_path / "storage"),
        RESULT_HISTORY_LIMIT=50,
        API_TIMEOUT_SECONDS=5,
    )


@pytest.fixture
def repository() -> TryOnRepository:
    return TryOnRepository(InMemoryDocumentStore(), history_limit=50)


@pytest.fixture
def usage_tracker(repository) -> UsageTracker:
    return UsageTracker(repository)


@pytest.fixture
def generated_png() -> bytes:
    return make_image_bytes(96, 128, (30, 120, 200))


@pytest.fixture
def fake_client(generated_png) -> FakeGeminiClient:
    """Client that answers every stage successfully."""
    return FakeGeminiClient(
        safety=lambda contents: text_response(SAFE_VERDICT),
        detect=lambda contents: text_response(DETECTION_JSON),
        generate=lambda contents: image_response(generated_png, text="Here is the try-on."),
        analyze=lambda contents: text_response(ANALYSIS_JSON),
        refine=lambda contents: image_response(make_image_bytes(96, 128, (10, 200, 10))),
        connection=lambda contents: text_response("Yes, the connection works."),
    )


@pytest.fixture
def orchestrator(fake_client, test_settings) -> GeminiOrchestrator:
    return GeminiOrchestrator(fake_client, test_settings)


@pytest.fixture
def pipeline(orchestrator, repository, usage_tracker, test_settings) -> TryOnPipeline:
    return TryOnPipeline(
        orchestrator, repository, usage_tracker, test_settings, rng=random.Random(7)
    )


@pytest_asyncio.fixture
async def subject_photo(pipeline):
    return await pipeline.register_photo(make_data_url(80, 120, (220, 180, 150)), filename="me.png")


@pytest_asyncio.fixture
async def client(pipeline, test_settings) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against an app wired to the test pipeline."""
    from main import create_app

    app = create_app(test_settings)
    app.state.pipeline = pipeline
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
