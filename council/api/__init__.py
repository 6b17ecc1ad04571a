"""HTTP API blueprints."""

from council.api.routes_runs import runs_bp

__all__ = ["runs_bp"]
