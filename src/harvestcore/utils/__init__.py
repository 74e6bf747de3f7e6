"""Utility modules for harvestcore."""

from .atomic import atomic_write_json, atomic_write_text
from .slugify import slugify, slugify_job_id

__all__ = ["atomic_write_json", "atomic_write_text", "slugify", "slugify_job_id"]
