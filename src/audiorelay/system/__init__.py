"""System domain package.

This package contains system-level components:
- PathResolver: Path resolution from environment variables
"""

from audiorelay.system.path_resolver import PathResolver

__all__ = ["PathResolver"]
