"""Services hosting the engine inside the web application."""

from council.services.engine_host import EngineHost

__all__ = ["EngineHost"]
