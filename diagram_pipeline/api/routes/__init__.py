from . import cache, formats, jobs, webhooks

__all__ = ["cache", "formats", "jobs", "webhooks"]
