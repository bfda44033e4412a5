from __future__ import annotations

from typing import Any, Dict, List, Optional


class PipelineFailure(Exception):
    def __init__(
        self,
        message: str,
        timeline: Optional[List[Dict[str, Any]]] = None,
        failures: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message)
        self.timeline = timeline or []
        self.failures = failures or []


class CapabilityFailure(PipelineFailure):
    """An external collaborator (graph, embeddings, completions, search) could not be reached."""

    def __init__(self, capability: str, message: str, **kwargs: Any) -> None:
        super().__init__(f"{capability}: {message}", **kwargs)
        self.capability = capability


class DeadlineExceeded(PipelineFailure):
    pass


__all__ = ["PipelineFailure", "CapabilityFailure", "DeadlineExceeded"]
