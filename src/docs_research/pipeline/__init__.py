"""Research pipeline stages and the state machine that drives them."""

from .aggregator import Aggregator
from .cache import ContentCache
from .extractor import Extractor
from .fetcher import Fetcher
from .machine import EXIT_COMPLETE, EXIT_FATAL, EXIT_INCOMPLETE, PipelineMachine, PipelineOutcome, run_pipeline
from .resolver import SourceCatalog, TargetResolver
from .validator import CompletenessValidator
from .writer import BundleWriter, load_summary, require_complete

__all__ = [
    "Aggregator",
    "BundleWriter",
    "CompletenessValidator",
    "ContentCache",
    "EXIT_COMPLETE",
    "EXIT_FATAL",
    "EXIT_INCOMPLETE",
    "Extractor",
    "Fetcher",
    "PipelineMachine",
    "PipelineOutcome",
    "SourceCatalog",
    "TargetResolver",
    "load_summary",
    "require_complete",
    "run_pipeline",
]
