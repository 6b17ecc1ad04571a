import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, jsonify

from council.api import runs_bp
from council.config import Config
from council.config_loader import ConfigLoader
from council.events import EventBus
from council.pipeline.controller import RunController
from council.pipeline.interfaces import InferenceClient, InMemoryStore, StoreRetrievalService
from council.pipeline.loader import PipelineLoader, PipelineRegistry
from council.pipeline.preview import PreviewEngine
from council.pipeline.state import DeliveryMode
from council.services.engine_host import EngineHost
from council.sse import SSEManager
from council.utils.retry import RetryConfig

logger = logging.getLogger(__name__)


def create_inference_client(config: Dict[str, Any]) -> InferenceClient:
    """Build the inference client named by ``INFERENCE_PROVIDER``."""
    provider = (config.get("INFERENCE_PROVIDER") or "ollama").lower()
    if provider == "openai":
        from council.providers.openai_client import OpenAIInferenceClient
        return OpenAIInferenceClient(api_key=config.get("OPENAI_API_KEY") or None)
    if provider == "ollama":
        from council.providers.ollama_client import OllamaInferenceClient
        return OllamaInferenceClient(base_url=config["OLLAMA_BASE_URL"], default_model=config["OLLAMA_MODEL"])
    raise ValueError(f"Unknown inference provider: {provider}")


def create_engine(config: Dict[str, Any], inference_client: Optional[InferenceClient] = None) -> Dict[str, Any]:
    """Wire the controller, preview engine, SSE relay and engine host from app config."""
    engine_path = Path(config["ENGINE_CONFIG"])
    if engine_path.exists():
        engine_config = ConfigLoader.load_engine_config(engine_path)
    else:
        logger.warning(f"Engine config {engine_path} not found; starting without agents")
        engine_config = {
            "agents": {}, "prompt_presets": {}, "retrieval_pipelines": {}, "stores": {}, "injection_mappings": {},
        }

    agents = engine_config["agents"]
    store = InMemoryStore(initial=engine_config["stores"])
    event_bus = EventBus()

    controller = RunController(
        inference_client=inference_client or create_inference_client(config),
        registry=PipelineRegistry(PipelineLoader(Path(config["PIPELINES_DIR"]), agents)),
        store=store,
        retrieval=StoreRetrievalService(store, engine_config["retrieval_pipelines"]),
        agents=agents,
        prompt_presets=engine_config["prompt_presets"],
        event_bus=event_bus,
        retry_config=RetryConfig(base_delay=float(config["RETRY_BASE_DELAY"])),
        history_limit=int(config["HISTORY_LIMIT"]),
        default_mode=DeliveryMode(config["DEFAULT_MODE"]),
    )
    if engine_config["injection_mappings"]:
        controller.configure_injection_mappings(engine_config["injection_mappings"])

    sse = SSEManager()
    sse.attach(event_bus)

    return {
        "controller": controller,
        "preview": PreviewEngine(controller),
        "sse": sse,
        "host": EngineHost().start(),
    }


def create_app(config_overrides: Optional[Dict[str, Any]] = None, inference_client: Optional[InferenceClient] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.extensions["council"] = create_engine(app.config, inference_client)
    app.register_blueprint(runs_bp)

    @app.route("/health")
    def health() -> Any:
        controller = app.extensions["council"]["controller"]
        return jsonify({"status": "ok", "mode": controller.mode.value})

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(debug=True, host="0.0.0.0", port=int(os.environ.get("PORT", 7766)))
