"""Pipeline schema definitions using Pydantic for validation.

This module defines the structure of Council pipelines, including:
- Pipeline, phase and action definitions
- Agent definitions and generation parameters
- Input sources, prompt authoring modes and output targets
- Gavel (human checkpoint) configuration
"""

from enum import Enum
from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field, field_validator, model_validator


class ActionKind(str, Enum):
    """Type of pipeline action."""
    STANDARD = "standard"                      # One or more agents answer a prompt
    CRUD_PIPELINE = "crud_pipeline"            # Create/read/update/delete on a store
    RAG_PIPELINE = "rag_pipeline"              # Retrieval over stores
    DELIBERATIVE_RAG = "deliberative_rag"      # Retrieval answering a participant question
    USER_GAVEL = "user_gavel"                  # Human approval checkpoint
    SYSTEM = "system"                          # Token replacement or pass-through
    CHARACTER_WORKSHOP = "character_workshop"  # Characters respond in turn


# Kinds whose handler calls the inference client
AGENT_KINDS = {ActionKind.STANDARD, ActionKind.CHARACTER_WORKSHOP}


class InputSourceType(str, Enum):
    """Where an action reads its input from."""
    PIPELINE_INPUT = "pipeline_input"
    PREVIOUS_STEP = "previous_step"
    STORE_DATA = "store_data"
    STEP_PROMPT = "step_prompt"
    CUSTOM = "custom"
    PHASE_INPUT = "phase_input"
    VARIABLE = "variable"


class PromptMode(str, Enum):
    """Prompt authoring mode."""
    TEXT = "text"                        # Free text with {{tokens}}
    PRESET = "preset"                    # Named preset lookup
    STACK = "stack"                      # Ordered fragments
    INLINE_TEMPLATE = "inline_template"  # Legacy single template field


class FragmentType(str, Enum):
    """Fragment types for stack-mode prompts."""
    TEXT = "text"
    TOKEN = "token"
    CONDITIONAL = "conditional"


class OutputShape(str, Enum):
    """Declared shape of an action's output."""
    TEXT = "text"
    JSON = "json"
    ARRAY = "array"


class OutputTargetType(str, Enum):
    """Destination of an action's parsed output."""
    NEXT_STEP = "next_step"
    VARIABLE = "variable"
    STORE = "store"


class ExecutionMode(str, Enum):
    """Orchestration mode for multi-participant actions."""
    SEQUENTIAL = "sequential"    # Each participant sees the prior response
    PARALLEL = "parallel"        # All participants at once, merged after settling
    ROUND_ROBIN = "round_robin"  # Sequential with a growing transcript
    CONSENSUS = "consensus"      # Parallel, then a synthesizer


class ConsolidationPolicy(str, Enum):
    """How a phase's action outputs become the phase output."""
    LAST_ACTION = "last_action"
    MERGE = "merge"
    DESIGNATED = "designated"


class CrudOperation(str, Enum):
    """Operations for crud_pipeline actions."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class GenerationConfig(BaseModel):
    """Generation parameters passed to the inference client."""
    model: str = Field(..., description="Model name understood by the inference client")
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(1024, gt=0)
    top_p: float = Field(1.0, gt=0.0, le=1.0)


class AgentDefinition(BaseModel):
    """An agent: a system prompt plus generation parameters."""
    id: str = Field(..., description="Unique agent identifier")
    name: Optional[str] = Field(None, description="Display name (defaults to id)")
    system_prompt: str = Field("", description="System prompt prepended to every request")
    prompt_template: Optional[str] = Field(None, description="Fallback template when the action has no prompt")
    generation: Optional[GenerationConfig] = Field(None, description="Generation parameters")

    @property
    def display_name(self) -> str:
        return self.name or self.id


class InputSource(BaseModel):
    """Input source of an action.

    Examples:
        input_source: previous_step

        input_source:
          type: store_data
          store_id: characters
    """
    type: InputSourceType = Field(InputSourceType.PREVIOUS_STEP)
    store_id: Optional[str] = Field(None, description="Store to snapshot (type=store_data)")
    variable: Optional[str] = Field(None, description="Run variable name (type=variable)")
    value: Optional[Any] = Field(None, description="Literal value (type=custom)")

    @model_validator(mode='after')
    def validate_source(self):
        if self.type == InputSourceType.STORE_DATA and not self.store_id:
            raise ValueError("Input source 'store_data' must have 'store_id'")
        if self.type == InputSourceType.VARIABLE and not self.variable:
            raise ValueError("Input source 'variable' must have 'variable'")
        return self


class PromptFragment(BaseModel):
    """One fragment of a stack-mode prompt."""
    type: FragmentType = Field(FragmentType.TEXT)
    text: Optional[str] = Field(None, description="Literal text (may contain tokens)")
    token: Optional[str] = Field(None, description="Context path for token fragments")
    condition: Optional[str] = Field(None, description="Context path tested for truthiness")
    fragments: List["PromptFragment"] = Field(default_factory=list, description="Used when condition holds")
    else_fragments: List["PromptFragment"] = Field(default_factory=list, description="Used otherwise")


class PromptConfig(BaseModel):
    """Prompt authoring configuration for an action."""
    mode: PromptMode = Field(PromptMode.TEXT)
    text: Optional[str] = Field(None, description="Template text (mode=text)")
    preset: Optional[str] = Field(None, description="Preset name (mode=preset)")
    stack: List[PromptFragment] = Field(default_factory=list, description="Fragments (mode=stack)")
    inline_template: Optional[str] = Field(None, description="Legacy template field")
    separator: str = Field("\n", description="Joiner for stack fragments")

    @property
    def is_empty(self) -> bool:
        return not (self.text or self.preset or self.stack or self.inline_template)


class OutputTarget(BaseModel):
    """Where an action's parsed output goes."""
    type: OutputTargetType = Field(OutputTargetType.NEXT_STEP)
    shape: OutputShape = Field(OutputShape.TEXT)
    variable: Optional[str] = Field(None, description="Run variable name (type=variable)")
    store_id: Optional[str] = Field(None, description="Store to write (type=store)")
    key: Optional[str] = Field(None, description="Store key template; omitted for singleton stores")
    export: bool = Field(False, description="Also publish into run globals")
    export_as: Optional[str] = Field(None, description="Global name (defaults to the action id)")

    @model_validator(mode='after')
    def validate_target(self):
        if self.type == OutputTargetType.VARIABLE and not self.variable:
            raise ValueError("Output target 'variable' must have 'variable'")
        if self.type == OutputTargetType.STORE and not self.store_id:
            raise ValueError("Output target 'store' must have 'store_id'")
        return self


class RetryPolicy(BaseModel):
    """Per-action retry policy. Attempts are capped at three."""
    enabled: bool = Field(True)
    max_attempts: int = Field(3, ge=1, le=3)


class GavelConfig(BaseModel):
    """Configuration of a human approval checkpoint."""
    prompt: str = Field("Review the output before the pipeline continues.")
    editable_fields: List[str] = Field(default_factory=lambda: ["output"])
    can_skip: bool = Field(True)
    timeout_ms: Optional[int] = Field(None, gt=0)


class CrudConfig(BaseModel):
    """Store operation performed by a crud_pipeline action."""
    operation: CrudOperation
    store_id: str
    key: Optional[str] = Field(None, description="Entry key template")


class RagConfig(BaseModel):
    """Retrieval performed by rag_pipeline and deliberative_rag actions."""
    retrieval_pipeline_id: Optional[str] = Field(None, description="Retrieval pipeline (defaults to the stores)")
    store_ids: List[str] = Field(default_factory=list)
    query: Optional[str] = Field(None, description="Query template (defaults to the action input)")
    limit: int = Field(5, gt=0)


class ActionDefinition(BaseModel):
    """A single action in a phase.

    Each action resolves its input, resolves a prompt, optionally calls an
    agent and routes its parsed output to one destination.
    """
    id: str = Field(..., description="Action identifier, unique within the pipeline")
    name: Optional[str] = Field(None)
    kind: ActionKind = Field(ActionKind.STANDARD)

    input_source: InputSource = Field(default_factory=InputSource)
    prompt: PromptConfig = Field(default_factory=PromptConfig)
    output: OutputTarget = Field(default_factory=OutputTarget)
    execution_mode: ExecutionMode = Field(ExecutionMode.SEQUENTIAL)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout: float = Field(60.0, gt=0, description="Invocation timeout in seconds")

    agent_id: Optional[str] = Field(None)
    participants: List[str] = Field(default_factory=list, description="Agent IDs taking part")
    synthesizer_id: Optional[str] = Field(None, description="Consensus synthesizer (defaults to first participant)")

    crud: Optional[CrudConfig] = Field(None)
    rag: Optional[RagConfig] = Field(None)
    gavel: Optional[GavelConfig] = Field(None, description="Checkpoint config (kind=user_gavel)")
    review: Optional[GavelConfig] = Field(None, description="Checkpoint after any action's output is parsed")

    @field_validator('input_source', mode='before')
    @classmethod
    def coerce_input_source(cls, value):
        if isinstance(value, str):
            return {"type": value}
        return value

    @field_validator('prompt', mode='before')
    @classmethod
    def coerce_prompt(cls, value):
        if value is None:
            return {}
        if isinstance(value, str):
            return {"mode": "text", "text": value}
        return value

    @model_validator(mode='after')
    def validate_action_kind(self):
        """Validate action has required fields for its kind."""
        if self.kind == ActionKind.CRUD_PIPELINE and not self.crud:
            raise ValueError(f"Action '{self.id}' with kind='crud_pipeline' must have 'crud' field")

        if self.kind in (ActionKind.RAG_PIPELINE, ActionKind.DELIBERATIVE_RAG) and not self.rag:
            raise ValueError(f"Action '{self.id}' with kind='{self.kind.value}' must have 'rag' field")

        if self.kind == ActionKind.STANDARD and not (self.agent_id or self.participants):
            raise ValueError(f"Action '{self.id}' with kind='standard' must have 'agent_id' or 'participants'")

        if self.kind == ActionKind.CHARACTER_WORKSHOP and not self.participants:
            raise ValueError(f"Action '{self.id}' with kind='character_workshop' must have 'participants'")

        if self.kind == ActionKind.USER_GAVEL and self.gavel is None:
            self.gavel = GavelConfig()

        if self.synthesizer_id and self.synthesizer_id not in self.participants:
            raise ValueError(f"Action '{self.id}': synthesizer '{self.synthesizer_id}' is not a participant")

        return self

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def agent_ids(self) -> List[str]:
        """Agents this action calls, in declaration order."""
        if self.participants:
            return list(self.participants)
        return [self.agent_id] if self.agent_id else []


class PhaseDefinition(BaseModel):
    """An ordered group of actions."""
    id: str = Field(..., description="Phase identifier")
    name: Optional[str] = Field(None)
    actions: List[ActionDefinition] = Field(default_factory=list, description="Actions run in order")
    consolidation: ConsolidationPolicy = Field(ConsolidationPolicy.LAST_ACTION)
    designated_action_id: Optional[str] = Field(None)
    continue_on_error: bool = Field(False)
    gavel: Optional[GavelConfig] = Field(None, description="Checkpoint on the consolidated output")
    export_as: Optional[str] = Field(None, description="Publish the phase output into run globals")

    @model_validator(mode='before')
    @classmethod
    def reject_steps_field(cls, data):
        if isinstance(data, dict) and "steps" in data:
            raise ValueError(
                f"Phase '{data.get('id', '?')}' defines 'steps'; the action list field is 'actions'"
            )
        return data

    @model_validator(mode='after')
    def validate_consolidation(self):
        ids = [action.id for action in self.actions]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Phase '{self.id}': action IDs must be unique")
        if self.consolidation == ConsolidationPolicy.DESIGNATED:
            if not self.designated_action_id:
                raise ValueError(f"Phase '{self.id}' with consolidation='designated' must have 'designated_action_id'")
            if self.designated_action_id not in ids:
                raise ValueError(
                    f"Phase '{self.id}' designates unknown action '{self.designated_action_id}'"
                )
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.id


class PipelineDefinition(BaseModel):
    """Complete pipeline definition.

    Read-only to the engine: the controller copies it when a run starts.
    """
    id: str = Field(..., description="Pipeline identifier")
    name: Optional[str] = Field(None)
    version: str = Field("1.0")
    description: Optional[str] = Field(None)
    phases: List[PhaseDefinition] = Field(..., description="Ordered list of phases")
    globals: Dict[str, Any] = Field(default_factory=dict, description="Initial run globals")
    agents: List[AgentDefinition] = Field(default_factory=list, description="Pipeline-local agents")

    # Metadata
    author: Optional[str] = Field(None)
    tags: Optional[List[str]] = Field(None)
    is_preset: bool = Field(False)

    @model_validator(mode='before')
    @classmethod
    def reject_steps_field(cls, data):
        if isinstance(data, dict) and "steps" in data:
            raise ValueError("Pipelines define 'phases' with 'actions'; a top-level 'steps' list is not supported")
        return data

    @field_validator('phases')
    @classmethod
    def validate_phases(cls, phases: List[PhaseDefinition]):
        """Validate phase list is non-empty with unique IDs and at least one action."""
        if not phases:
            raise ValueError("Pipeline must have at least one phase")

        phase_ids = [phase.id for phase in phases]
        if len(phase_ids) != len(set(phase_ids)):
            raise ValueError("Phase IDs must be unique")

        if sum(len(phase.actions) for phase in phases) == 0:
            raise ValueError("Pipeline must have at least one action")

        action_ids = [action.id for phase in phases for action in phase.actions]
        if len(action_ids) != len(set(action_ids)):
            raise ValueError("Action IDs must be unique across the pipeline")

        return phases

    @property
    def total_actions(self) -> int:
        return sum(len(phase.actions) for phase in self.phases)

    def get_action(self, action_id: str) -> Optional[ActionDefinition]:
        for phase in self.phases:
            for action in phase.actions:
                if action.id == action_id:
                    return action
        return None


# Update forward references for recursive models
PromptFragment.model_rebuild()
