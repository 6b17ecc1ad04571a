"""Pipeline loader and validator.

Loads pipeline definitions from YAML files, validates them,
and provides access to preset and custom pipelines.
"""

import logging
import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import ValidationError

from council.pipeline.schema import (
    AGENT_KINDS,
    ActionKind,
    AgentDefinition,
    InputSourceType,
    OutputTargetType,
    PipelineDefinition,
)

logger = logging.getLogger(__name__)

ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

DEFAULT_PIPELINES_DIR = Path(__file__).parent.parent.parent / "config" / "pipelines"


def resolve_env_vars(value: Any) -> Any:
    """Resolve ``${VAR}`` and ``${VAR:-default}`` references in config values."""
    if isinstance(value, str):
        def replace(match):
            var_name, default = match.group(1), match.group(2)
            if var_name in os.environ:
                return os.environ[var_name]
            return default if default is not None else match.group(0)
        return ENV_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    return value


class PipelineLoader:
    """Load and validate pipeline definitions."""

    def __init__(self, pipelines_dir: Optional[Path] = None, agents: Optional[Dict[str, AgentDefinition]] = None):
        """
        Initialize pipeline loader.

        Args:
            pipelines_dir: Directory holding preset YAML files
            agents: Known agents, for validating agent references
        """
        self.pipelines_dir = Path(pipelines_dir) if pipelines_dir else DEFAULT_PIPELINES_DIR
        self.agents = dict(agents or {})
        self._preset_cache: Dict[str, PipelineDefinition] = {}

    def load_from_yaml(self, yaml_path: Path) -> PipelineDefinition:
        """
        Load pipeline from YAML file.

        Args:
            yaml_path: Path to YAML file

        Returns:
            Validated PipelineDefinition

        Raises:
            FileNotFoundError: If file doesn't exist
            ValidationError: If pipeline is invalid
            ValueError: If the pipeline references unknown agents
            yaml.YAMLError: If YAML is malformed
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Pipeline file not found: {yaml_path}")

        with open(yaml_path, 'r', encoding='utf-8') as f:
            raw_config = yaml.safe_load(f) or {}

        try:
            return self.load_from_dict(raw_config)
        except ValidationError:
            logger.error(f"Invalid pipeline configuration in {yaml_path}")
            raise

    def load_preset(self, preset_name: str) -> PipelineDefinition:
        """
        Load a preset pipeline by name.

        Args:
            preset_name: File stem of the preset under the pipelines directory

        Returns:
            PipelineDefinition

        Raises:
            FileNotFoundError: If preset doesn't exist
        """
        if preset_name in self._preset_cache:
            return self._preset_cache[preset_name]

        preset_path = self.pipelines_dir / f"{preset_name}.yaml"
        pipeline = self.load_from_yaml(preset_path)
        pipeline.is_preset = True

        self._preset_cache[preset_name] = pipeline
        return pipeline

    def list_presets(self) -> List[str]:
        """
        List available preset pipelines.

        Returns:
            List of preset names
        """
        if not self.pipelines_dir.exists():
            return []
        return sorted(yaml_file.stem for yaml_file in self.pipelines_dir.glob("*.yaml"))

    def load_from_dict(self, config_dict: Dict) -> PipelineDefinition:
        """
        Load pipeline from dictionary (for API requests).

        Args:
            config_dict: Pipeline definition as dict

        Returns:
            Validated PipelineDefinition

        Raises:
            ValidationError: If pipeline is invalid
            ValueError: If the pipeline references unknown agents
        """
        pipeline = PipelineDefinition(**resolve_env_vars(config_dict))
        self._validate_agent_references(pipeline)
        return pipeline

    def _validate_agent_references(self, pipeline: PipelineDefinition):
        """
        Validate that agent references resolve, when agents are known.

        Raises:
            ValueError: If an agent doesn't exist
        """
        known = set(self.agents) | {agent.id for agent in pipeline.agents}
        if not known:
            return

        for phase in pipeline.phases:
            for action in phase.actions:
                for agent_id in action.agent_ids:
                    if agent_id not in known:
                        raise ValueError(f"Action '{action.id}': agent '{agent_id}' not found")

    def validate_pipeline(self, pipeline: PipelineDefinition) -> List[str]:
        """
        Validate pipeline and return list of warnings/issues.

        Args:
            pipeline: Pipeline to validate

        Returns:
            List of warning messages (empty if no issues)
        """
        warnings = []
        agents = dict(self.agents)
        agents.update({agent.id: agent for agent in pipeline.agents})

        for phase in pipeline.phases:
            if not phase.actions:
                warnings.append(f"Phase '{phase.id}' has no actions")

            if phase.consolidation.value == "merge" and not any(a.output.export for a in phase.actions):
                warnings.append(f"Phase '{phase.id}' merges outputs but no action exports one")

            for index, action in enumerate(phase.actions):
                if (
                    index == 0
                    and action.input_source.type == InputSourceType.PREVIOUS_STEP
                    and phase is pipeline.phases[0]
                ):
                    warnings.append(
                        f"Action '{action.id}' reads previous_step but is first; it receives the run input"
                    )

                if action.kind in AGENT_KINDS:
                    for agent_id in action.agent_ids:
                        agent = agents.get(agent_id)
                        if agent is not None and agent.generation is None:
                            warnings.append(f"Agent '{agent_id}' used by '{action.id}' has no generation config")

                if action.kind == ActionKind.SYSTEM and action.prompt.is_empty:
                    warnings.append(f"System action '{action.id}' has no template and passes its input through")

                if action.output.type == OutputTargetType.STORE and action.kind == ActionKind.USER_GAVEL:
                    warnings.append(f"Gavel action '{action.id}' writes its reviewed output to a store")

        return warnings


class PipelineRegistry:
    """Registry for managing preset and custom pipelines."""

    def __init__(self, loader: Optional[PipelineLoader] = None):
        """
        Initialize pipeline registry.

        Args:
            loader: Optional PipelineLoader instance
        """
        self.loader = loader or PipelineLoader()
        self._custom_pipelines: Dict[str, PipelineDefinition] = {}

    def get_pipeline(self, pipeline_id: str) -> Optional[PipelineDefinition]:
        """
        Get pipeline by id, looking at custom pipelines before presets.

        Returns:
            PipelineDefinition or None if not found
        """
        if pipeline_id in self._custom_pipelines:
            return self._custom_pipelines[pipeline_id]
        try:
            return self.loader.load_preset(pipeline_id)
        except FileNotFoundError:
            return None

    def register_custom(self, pipeline: PipelineDefinition) -> PipelineDefinition:
        """
        Register a custom pipeline under its id.

        Args:
            pipeline: PipelineDefinition instance, or a dict to validate
        """
        if isinstance(pipeline, dict):
            pipeline = self.loader.load_from_dict(pipeline)
        pipeline.is_preset = False
        self._custom_pipelines[pipeline.id] = pipeline
        return pipeline

    def unregister(self, pipeline_id: str) -> bool:
        return self._custom_pipelines.pop(pipeline_id, None) is not None

    def list_all(self) -> Dict[str, List[str]]:
        """
        List all available pipelines.

        Returns:
            Dict with 'presets' and 'custom' keys containing pipeline ids
        """
        return {
            "presets": self.loader.list_presets(),
            "custom": list(self._custom_pipelines.keys()),
        }
