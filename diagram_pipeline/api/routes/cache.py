from fastapi import APIRouter, Depends

from diagram_pipeline.api.deps import get_cache
from diagram_pipeline.cache.service import ContentCache

router = APIRouter()


@router.get("/stats")
async def get_cache_stats(cache: ContentCache = Depends(get_cache)) -> dict:  # noqa: B008
  """Return hit/miss counters for the content cache."""
  return cache.stats()
