import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("entrypoint")


def main() -> None:
  """Launch the API and in-process workers; tables are created on startup."""
  host = os.getenv("DIAGRAM_HOST", "0.0.0.0")
  port = os.getenv("DIAGRAM_PORT", "8000")
  logger.info("Starting diagram pipeline on %s:%s", host, port)
  # Replace the current process so uvicorn receives SIGTERM directly.
  args = ["uvicorn", "diagram_pipeline.main:app", "--host", host, "--port", port, "--no-server-header"]
  os.execvp("uvicorn", args)


if __name__ == "__main__":
  main()
