from . import generation, worker

__all__ = ["generation", "worker"]
