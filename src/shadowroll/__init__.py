"""
Shadowroll - table-driven talent, boon and spell progression for Shadowdark characters.
"""

from .config import ResolverConfig
from .documents import (
    CachingFetcher,
    ClassProfile,
    DocumentFetcher,
    HttpDocumentFetcher,
    InMemoryDocumentStore,
    load_pack_directory,
)
from .exceptions import *
from .models import *
from .orchestrator import ProgressionRun, start_character_generation, start_level_up
from .requirements import Requirements, RunState, calculate_requirements
from .resolver import TableResolver

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("shadowroll")
except Exception:
    __version__ = "0.1.0"  # Fallback if metadata unavailable
__all__ = [
    "ResolverConfig",
    "ProgressionRun",
    "TableResolver",
    "Requirements",
    "RunState",
    "calculate_requirements",
    "start_level_up",
    "start_character_generation",
    "DocumentFetcher",
    "InMemoryDocumentStore",
    "HttpDocumentFetcher",
    "CachingFetcher",
    "ClassProfile",
    "load_pack_directory",
]
