from .agent import WorkerAgent

__all__ = ["WorkerAgent"]
