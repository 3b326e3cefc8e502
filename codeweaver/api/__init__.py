"""HTTP surface for Codeweaver"""

from .routes import router, set_orchestrator, get_orchestrator

__all__ = ["router", "set_orchestrator", "get_orchestrator"]
