"""Build orchestration module.

This module handles:
- Cache key computation for toolchain, dependency and output layers
- The content-addressed, single-flight build cache
- Running the application toolchain per variant
- Parallel job scheduling with per-job deadlines
"""

from variant_release.builds.cache import CacheEntry, CacheManager
from variant_release.builds.scheduler import BuildJob, BuildScheduler, ScheduleResult

__all__ = [
    "BuildJob",
    "BuildScheduler",
    "CacheEntry",
    "CacheManager",
    "ScheduleResult",
]

# Access submodules via variant_release.builds.cache_key,
# variant_release.builds.runner, etc.
