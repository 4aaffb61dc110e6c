from __future__ import annotations

import httpx
import pytest

from diagram_pipeline.cache.service import ContentCache
from diagram_pipeline.cache.store import InMemoryCacheStore
from diagram_pipeline.formats import catalog
from diagram_pipeline.formats.contracts import GenerationFailedError
from diagram_pipeline.formats.orchestrator import FormatOrchestrator
from diagram_pipeline.formats.validators import validate_jpeg, validate_pdf, validate_png, validate_svg, validate_webp
from diagram_pipeline.render.client import RenderClient

SOURCE = "@startuml\nAlice -> Bob: hello\n@enduml"


def _orchestrator(fake_renderer, *, cache: ContentCache | None = None, max_content_bytes: int = 100000) -> FormatOrchestrator:
  client = RenderClient(base_url="http://renderer.test", timeout_seconds=5, max_content_bytes=max_content_bytes, transport=fake_renderer.transport())
  return FormatOrchestrator(render_client=client, cache=cache)


def test_support_table_covers_derived_raster_formats() -> None:
  assert catalog.is_supported("plantuml", "pdf")
  assert catalog.is_supported("mermaid", "webp")
  assert catalog.is_supported("ditaa", "jpg")
  assert not catalog.is_supported("ditaa", "pdf")
  assert not catalog.is_supported("plantuml", "gif")
  assert not catalog.is_supported("unknown-kind", "png")
  assert catalog.supported_formats("bpmn") == ("png", "svg", "jpeg", "webp")


@pytest.mark.parametrize(
  ("use_case", "diagram_kind", "expected"),
  [("web", "plantuml", "webp"), ("print", "plantuml", "pdf"), ("print", "ditaa", "png"), ("documentation", "mermaid", "svg"), ("thumbnail", "graphviz", "jpeg"), ("nonsense", "plantuml", "png")],
)
def test_recommend(use_case: str, diagram_kind: str, expected: str) -> None:
  assert catalog.recommend(use_case, diagram_kind) == expected


def test_optimization_options_by_quality() -> None:
  assert catalog.optimization_options("jpeg", "high")["quality"] == 95
  assert catalog.optimization_options("webp", "high")["lossless"] is True
  assert catalog.optimization_options("png", "fast")["compress_level"] == 3
  assert catalog.optimization_options("svg") == {}


def test_validators(png_bytes: bytes) -> None:
  assert validate_png(png_bytes)
  assert not validate_png(b"GIF89a")
  assert validate_svg(b"<svg></svg>")
  assert not validate_svg(b"<html></html>")
  assert validate_pdf(b"%PDF-1.7")
  assert validate_jpeg(b"\xff\xd8\xff\xe0rest")
  assert validate_webp(b"RIFF\x00\x00\x00\x00WEBPVP8 ")
  assert not validate_webp(b"RIFF\x00\x00\x00\x00WAVE")


@pytest.mark.anyio
async def test_generate_png_then_serves_from_cache(fake_renderer) -> None:
  orchestrator = _orchestrator(fake_renderer, cache=ContentCache(InMemoryCacheStore()))

  first = await orchestrator.generate(SOURCE, "plantuml", "png")
  second = await orchestrator.generate(SOURCE + "\n", "plantuml", "png")

  assert first.success and not first.cached
  assert first.metadata["cache_stored"] is True
  assert validate_png(first.data)
  assert second.success and second.cached
  assert second.data == first.data
  assert second.mime_type == "image/png"
  assert len(fake_renderer.calls) == 1
  assert fake_renderer.calls[0] == ("/plantuml/png", SOURCE)


@pytest.mark.anyio
async def test_generate_jpeg_converts_png_output(fake_renderer) -> None:
  orchestrator = _orchestrator(fake_renderer)
  result = await orchestrator.generate(SOURCE, "plantuml", "jpeg", {"quality": 70})

  assert result.success
  assert result.mime_type == "image/jpeg"
  assert validate_jpeg(result.data)
  assert fake_renderer.calls[0][0] == "/plantuml/png"


@pytest.mark.anyio
async def test_generate_webp_without_compression(fake_renderer) -> None:
  orchestrator = _orchestrator(fake_renderer)
  result = await orchestrator.generate(SOURCE, "mermaid", "webp", {"compress": False})
  assert result.success
  assert validate_webp(result.data)


@pytest.mark.anyio
async def test_unsupported_format_fails_without_rendering(fake_renderer) -> None:
  orchestrator = _orchestrator(fake_renderer)
  result = await orchestrator.generate(SOURCE, "ditaa", "pdf")

  assert not result.success
  assert result.error.kind == "unsupported_format"
  assert result.error.retryable is False
  assert fake_renderer.calls == []


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("format", "options"),
  [("jpeg", {"quality": "high"}), ("jpeg", {"quality": 0}), ("webp", {"quality": True}), ("webp", {"lossless": "yes"}), ("png", {"compression_level": "max"}), ("jpeg", {"progressive": 1})],
)
async def test_invalid_options_fail_without_rendering(fake_renderer, format: str, options: dict) -> None:
  orchestrator = _orchestrator(fake_renderer)
  result = await orchestrator.generate(SOURCE, "plantuml", format, options)

  assert result.success is False
  assert result.error.kind == "invalid_options"
  assert result.error.retryable is False
  assert fake_renderer.calls == []


@pytest.mark.anyio
async def test_oversized_content_is_a_client_error(fake_renderer) -> None:
  orchestrator = _orchestrator(fake_renderer, max_content_bytes=10)
  result = await orchestrator.generate(SOURCE, "plantuml", "png")
  assert result.error.kind == "content_too_large"
  assert fake_renderer.calls == []


@pytest.mark.anyio
async def test_invalid_renderer_output_is_retryable(fake_renderer) -> None:
  fake_renderer.overrides["/plantuml/png"] = lambda request: httpx.Response(200, content=b"<html>oops</html>")
  orchestrator = _orchestrator(fake_renderer)
  result = await orchestrator.generate(SOURCE, "plantuml", "png")

  assert not result.success
  assert result.error.kind == "validation_error"
  assert result.error.retryable is True


@pytest.mark.anyio
@pytest.mark.parametrize(("status_code", "kind", "retryable"), [(400, "client_error", False), (503, "transport_error", True)])
async def test_renderer_status_classification(fake_renderer, status_code: int, kind: str, retryable: bool) -> None:
  fake_renderer.overrides["/plantuml/svg"] = lambda request: httpx.Response(status_code, text="nope")
  orchestrator = _orchestrator(fake_renderer)
  result = await orchestrator.generate(SOURCE, "plantuml", "svg")

  assert result.error.kind == kind
  assert result.error.retryable is retryable
  with pytest.raises(GenerationFailedError) as excinfo:
    result.raise_for_error()
  assert excinfo.value.retryable is retryable


@pytest.mark.anyio
async def test_renderer_unreachable_is_transport_error(fake_renderer) -> None:
  def _refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  fake_renderer.overrides["/plantuml/png"] = _refuse
  orchestrator = _orchestrator(fake_renderer)
  result = await orchestrator.generate(SOURCE, "plantuml", "png")
  assert result.error.kind == "transport_error"
  assert result.error.retryable is True


@pytest.mark.anyio
async def test_checkpoint_runs_only_on_cache_miss(fake_renderer) -> None:
  orchestrator = _orchestrator(fake_renderer, cache=ContentCache(InMemoryCacheStore()))
  stages: list[str] = []

  async def _checkpoint(stage: str) -> None:
    stages.append(stage)

  await orchestrator.generate(SOURCE, "plantuml", "svg", checkpoint=_checkpoint)
  await orchestrator.generate(SOURCE, "plantuml", "svg", checkpoint=_checkpoint)
  assert stages == ["cache_miss"]


@pytest.mark.anyio
async def test_generate_batch_partial_failure_preserves_order(fake_renderer) -> None:
  orchestrator = _orchestrator(fake_renderer)
  formats = ["png", "svg", "pdf", "webp", "tiff"]

  batch = await orchestrator.generate_batch("+----+\n| ok |\n+----+", "ditaa", formats)

  assert [result.format for result in batch.results] == formats
  assert batch.total == 5
  assert batch.succeeded == 3
  assert batch.failed == 2
  assert set(batch.errors) == {"pdf", "tiff"}
  assert [result.success for result in batch.results] == [True, True, False, True, False]


@pytest.mark.anyio
async def test_generate_batch_keeps_errors_for_repeated_formats(fake_renderer) -> None:
  orchestrator = _orchestrator(fake_renderer)

  batch = await orchestrator.generate_batch("+----+\n| ok |\n+----+", "ditaa", ["pdf", "PDF", "tiff", "png"])

  assert batch.failed == 3
  assert set(batch.errors) == {"pdf", "pdf#1", "tiff"}
  assert batch.errors["pdf#1"] == "Format pdf not supported for diagram type ditaa"
