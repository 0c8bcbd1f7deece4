"""Public interface for the ``hybrid_categorizer`` package.

This module exposes the entrypoints and the main engine types as the stable
import surface. There is no runtime logic here, only symbol re-exports.
"""

from .api import batch_run, evaluation_run
from .config import DEFAULT_CONFIDENCE_THRESHOLD, EngineConfig, load_config
from .dispatch import Dispatch, HybridDispatcher
from .errors import (
    AuditWriteError,
    CategorizerError,
    FallbackExhausted,
    GuardrailViolation,
    ProgrammingError,
    ProviderError,
    RateLimitError,
    ValidationError,
)
from .evaluation import EvaluationOptions, EvaluationReport, LabTransaction, run_evaluation
from .metrics import Metrics, compute_metrics
from .model_client import ModelClient
from .models import (
    BatchRunReport,
    BatchRunRequest,
    CategorizationResult,
    Decision,
    OrgResult,
    RejectedRow,
    Signal,
    Transaction,
)
from .orchestrator import run_batches
from .outcomes import Fallback, Fatal, Ok
from .taxonomy import Category, TaxonomyRegistry, default_registry

__all__ = [
    # API
    "batch_run",
    "evaluation_run",
    "run_batches",
    "run_evaluation",
    "compute_metrics",
    # Engine
    "DEFAULT_CONFIDENCE_THRESHOLD",
    "EngineConfig",
    "load_config",
    "HybridDispatcher",
    "Dispatch",
    "ModelClient",
    "TaxonomyRegistry",
    "Category",
    "default_registry",
    # Models / types
    "Transaction",
    "Signal",
    "CategorizationResult",
    "Decision",
    "BatchRunRequest",
    "BatchRunReport",
    "OrgResult",
    "RejectedRow",
    "EvaluationOptions",
    "EvaluationReport",
    "LabTransaction",
    "Metrics",
    "Ok",
    "Fallback",
    "Fatal",
    # Errors
    "CategorizerError",
    "ValidationError",
    "RateLimitError",
    "ProviderError",
    "GuardrailViolation",
    "AuditWriteError",
    "FallbackExhausted",
    "ProgrammingError",
]
