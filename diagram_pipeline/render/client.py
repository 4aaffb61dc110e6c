"""HTTP client for the external diagram renderer (Kroki-compatible API)."""

from __future__ import annotations

import logging

import httpx

from diagram_pipeline.core.errors import ClientError, OutputValidationError, TransportError

logger = logging.getLogger(__name__)

USER_AGENT = "diagram-pipeline/0.1"


class RenderTransportError(TransportError):
  """Renderer unreachable, timed out, or answered 5xx."""

  def __init__(self, message: str, *, status_code: int | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class RenderRejectedError(ClientError):
  """Renderer refused the content (4xx), typically a syntax error in the diagram source."""

  def __init__(self, message: str, *, status_code: int) -> None:
    super().__init__(message)
    self.status_code = status_code


class ContentTooLargeError(ClientError):
  """Diagram source exceeds the per-request byte ceiling."""

  kind = "content_too_large"


class RenderResponseTooLargeError(OutputValidationError):
  """Renderer output exceeded the size ceiling for the requested format."""


class RenderClient:
  """Stateless wrapper around the renderer: (content, kind, endpoint) -> bytes."""

  def __init__(self, *, base_url: str, timeout_seconds: float, max_content_bytes: int, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._base_url = base_url.rstrip("/")
    self._timeout_seconds = timeout_seconds
    self._max_content_bytes = max_content_bytes
    # Never trust environment proxy variables for renderer calls.
    self._client = httpx.AsyncClient(base_url=self._base_url, timeout=timeout_seconds, transport=transport, trust_env=False, headers={"User-Agent": USER_AGENT})

  @property
  def max_content_bytes(self) -> int:
    return self._max_content_bytes

  def check_content_size(self, content: str) -> int:
    """Raise ContentTooLargeError when content exceeds the byte ceiling; return the encoded size."""
    size = len(content.encode("utf-8"))
    if size > self._max_content_bytes:
      raise ContentTooLargeError(f"Content is {size} bytes; the limit is {self._max_content_bytes} bytes.")
    return size

  async def render(self, content: str, diagram_kind: str, endpoint: str, *, accept: str, max_response_bytes: int | None = None) -> bytes:
    """POST the diagram source and return the raw rendered bytes."""
    self.check_content_size(content)
    path = f"/{diagram_kind}/{endpoint}"
    headers = {"Content-Type": "text/plain", "Accept": accept}

    try:
      async with self._client.stream("POST", path, content=content.encode("utf-8"), headers=headers) as response:
        if response.status_code >= 500:
          raise RenderTransportError(f"Renderer returned status {response.status_code}", status_code=response.status_code)

        if response.status_code != 200:
          body = (await response.aread())[:512].decode("utf-8", errors="replace")
          logger.info("Renderer rejected content kind=%s endpoint=%s status=%s body=%s", diagram_kind, endpoint, response.status_code, body)
          raise RenderRejectedError(f"Renderer returned status {response.status_code}", status_code=response.status_code)

        # Stream the body so an oversized artifact is cut off instead of buffered whole.
        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
          received += len(chunk)
          if max_response_bytes is not None and received > max_response_bytes:
            raise RenderResponseTooLargeError(f"Renderer output exceeded {max_response_bytes} bytes")
          chunks.append(chunk)
        return b"".join(chunks)

    except httpx.TimeoutException as exc:
      raise RenderTransportError(f"Renderer timed out after {self._timeout_seconds}s") from exc
    except httpx.TransportError as exc:
      raise RenderTransportError(f"Renderer unreachable: {exc}") from exc

  async def aclose(self) -> None:
    await self._client.aclose()
