import os
from typing import Any


class Config:
    SECRET_KEY: str = (
        os.environ.get("SECRET_KEY") or "council-secret-key-change-in-production"
    )

    OLLAMA_BASE_URL: str = os.environ.get("OLLAMA_BASE_URL") or "http://localhost:11434"
    OLLAMA_MODEL: str = os.environ.get("OLLAMA_MODEL") or "llama3.1:8b"
    OPENAI_API_KEY: str = os.environ.get("OPENAI_API_KEY") or ""

    # "ollama" or "openai"
    INFERENCE_PROVIDER: str = os.environ.get("COUNCIL_INFERENCE_PROVIDER") or "ollama"

    PIPELINES_DIR: str = os.environ.get("COUNCIL_PIPELINES_DIR") or os.path.join(
        os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "pipelines"
    )
    ENGINE_CONFIG: str = os.environ.get("COUNCIL_ENGINE_CONFIG") or os.path.join(
        os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "engine.yaml"
    )

    RETRY_BASE_DELAY: float = float(os.environ.get("COUNCIL_RETRY_BASE_DELAY") or 1.0)
    HISTORY_LIMIT: int = int(os.environ.get("COUNCIL_HISTORY_LIMIT") or 10)
    DEFAULT_MODE: str = os.environ.get("COUNCIL_DEFAULT_MODE") or "synthesis"
    DEBUG_RUNS: bool = (os.environ.get("COUNCIL_DEBUG_RUNS") or "").lower() in {"1", "true", "yes"}

    @staticmethod
    def init_app(app: Any) -> None:
        os.makedirs(Config.PIPELINES_DIR, exist_ok=True)
