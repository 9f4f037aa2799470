from .orchestrator import LoginOrchestrator

__all__ = ["LoginOrchestrator"]
