"""Build orchestration module.

This module handles:
- Config composition per target
- Single-target containerized builds
- Bounded-concurrency scheduling with per-target failure isolation
- Run orchestration and run history
"""

from buildabox.builds.models import BuildRun, TargetRecord

__all__ = ["BuildRun", "TargetRecord"]

# Lazy imports for submodules to avoid circular imports
# Access via buildabox.builds.scheduler, buildabox.builds.service, etc.
