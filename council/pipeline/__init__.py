"""Pipeline execution engine for Council.

This package provides:
- Pipeline schema definitions (schema.py)
- Pipeline loader and registry (loader.py)
- Step executor with retry and error normalization (executor.py)
- Phase runner and output consolidation (phase.py)
- Run controller and delivery modes (controller.py)
- Gavel (human checkpoint) coordination (gavel.py)
- Side-effect-free preview execution (preview.py)
"""

from council.pipeline.schema import (
    ActionDefinition,
    ActionKind,
    AgentDefinition,
    ExecutionMode,
    GavelConfig,
    GenerationConfig,
    PhaseDefinition,
    PipelineDefinition,
)
from council.pipeline.errors import (
    ErrorType,
    PipelineError,
    PipelineValidationError,
    StoreError,
)
from council.pipeline.state import (
    DeliveryMode,
    ExecutionContext,
    RunOptions,
    RunResult,
    RunState,
    RunStatus,
    StepResult,
)
from council.pipeline.interfaces import (
    GenerationResult,
    InMemoryStore,
    StoreRetrievalService,
    TokenPromptResolver,
)
from council.pipeline.loader import (
    PipelineLoader,
    PipelineRegistry,
)
from council.pipeline.executor import StepExecutor
from council.pipeline.phase import PhaseRunner
from council.pipeline.gavel import GavelCoordinator
from council.pipeline.controller import RunController
from council.pipeline.preview import PreviewEngine, PreviewResult

__all__ = [
    "ActionDefinition",
    "ActionKind",
    "AgentDefinition",
    "ExecutionMode",
    "GavelConfig",
    "GenerationConfig",
    "PhaseDefinition",
    "PipelineDefinition",
    "ErrorType",
    "PipelineError",
    "PipelineValidationError",
    "StoreError",
    "DeliveryMode",
    "ExecutionContext",
    "RunOptions",
    "RunResult",
    "RunState",
    "RunStatus",
    "StepResult",
    "GenerationResult",
    "InMemoryStore",
    "StoreRetrievalService",
    "TokenPromptResolver",
    "PipelineLoader",
    "PipelineRegistry",
    "StepExecutor",
    "PhaseRunner",
    "GavelCoordinator",
    "RunController",
    "PreviewEngine",
    "PreviewResult",
]
