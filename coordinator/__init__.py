"""
Coordinator - job lifecycle and escrow settlement for a compute marketplace.
"""

from .config import CoordinatorConfig
from .jobs import JobService

try:
    from importlib.metadata import version

    __version__ = version("compute-coordinator")
except Exception:
    __version__ = "0.0.0"

__all__ = ["CoordinatorConfig", "JobService"]
