"""
DemBot data acquisition core.

Caches, batches and session-pools the expensive page fetches behind the
bot's profile and race commands.
"""

from dembot.service import AcquisitionReport, AcquisitionService

__version__ = "0.1.0"

__all__ = [
    "AcquisitionService",
    "AcquisitionReport",
    "__version__",
]
