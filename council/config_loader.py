"""YAML configuration loader for engine settings and agents."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from council.pipeline.loader import resolve_env_vars
from council.pipeline.schema import AgentDefinition

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_CONFIG = Path(__file__).parent.parent / "config" / "engine.yaml"


class ConfigLoader:
    """Load and parse engine YAML configuration with environment variable support."""

    @classmethod
    def load_yaml(cls, config_path: Path) -> Dict[str, Any]:
        """
        Load YAML configuration file with environment variable resolution.

        Supports ``${ENV_VAR}`` and ``${ENV_VAR:-default}`` syntax.

        Args:
            config_path: Path to YAML file

        Returns:
            Parsed configuration dict
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            raw_config = yaml.safe_load(f) or {}

        return resolve_env_vars(raw_config)

    @classmethod
    def load_engine_config(cls, config_path: Optional[Path] = None) -> Dict[str, Any]:
        """
        Load engine configuration.

        Expected format:
        ```yaml
        agents:
          - id: analyst
            name: Analyst
            system_prompt: "You are a careful analyst."
            generation:
              model: llama3.1:8b
              temperature: 0.3

        prompt_presets:
          summarize: "Summarize the following:\\n\\n{{input}}"

        retrieval_pipelines:
          knowledge: [facts, notes]

        stores:
          facts:
            sky: {text: "The sky is blue."}

        injection_mappings:
          world_context: knowledge
        ```

        Args:
            config_path: Path to engine YAML file

        Returns:
            Dict with 'agents' (AgentDefinition by id), 'prompt_presets',
            'retrieval_pipelines', 'stores' and 'injection_mappings'
        """
        config = cls.load_yaml(config_path or DEFAULT_ENGINE_CONFIG)

        agents = cls._parse_agents(config.get('agents', []))
        presets = config.get('prompt_presets', {}) or {}
        retrieval = config.get('retrieval_pipelines', {}) or {}
        stores = config.get('stores', {}) or {}
        mappings = config.get('injection_mappings', {}) or {}

        cls._validate_engine_config(retrieval, mappings)
        logger.info(
            f"Loaded engine config: {len(agents)} agents, {len(presets)} prompt presets, "
            f"{len(retrieval)} retrieval pipelines"
        )

        return {
            'agents': agents,
            'prompt_presets': presets,
            'retrieval_pipelines': retrieval,
            'stores': stores,
            'injection_mappings': mappings,
        }

    @classmethod
    def _parse_agents(cls, raw_agents: List[Dict[str, Any]]) -> Dict[str, AgentDefinition]:
        agents: Dict[str, AgentDefinition] = {}
        for raw in raw_agents:
            agent = AgentDefinition(**raw)
            if agent.id in agents:
                raise ValueError(f"Duplicate agent id '{agent.id}'")
            agents[agent.id] = agent
        return agents

    @classmethod
    def _validate_engine_config(cls, retrieval: Dict[str, Any], mappings: Dict[str, Any]):
        """Validate that injection mappings reference known retrieval pipelines."""
        for pipeline_id, store_ids in retrieval.items():
            if not isinstance(store_ids, list):
                raise ValueError(f"Retrieval pipeline '{pipeline_id}' must list its store ids")

        for token, pipeline_id in mappings.items():
            if pipeline_id not in retrieval:
                raise ValueError(
                    f"Injection token '{token}' references unknown retrieval pipeline '{pipeline_id}'"
                )
