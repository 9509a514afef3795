"""Documentation research pipeline: crawl reference docs into a validated knowledge bundle."""

from .config import settings
from .exceptions import BundleIncompleteError, DocsResearchError, FatalConfigError
from .pipeline import PipelineOutcome, run_pipeline
from .server import main, serve

__all__ = [
    "main",
    "serve",
    "settings",
    "run_pipeline",
    "PipelineOutcome",
    "DocsResearchError",
    "FatalConfigError",
    "BundleIncompleteError",
]
