"""Backend factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LoomworkConfig, load_config
from .base import BackendJob, BaseBackend, JobHandle, JobState, PollResult
from .inmemory import InMemoryBackend, ScriptedJob
from .local import LocalBackend


def get_backend(
    backend: Optional[str] = None, config: Optional[LoomworkConfig] = None
) -> BaseBackend:
    """Factory function to get the configured backend."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("LOOMWORK_BACKEND")
        or config.backend.default
    ).lower()

    if backend == "local":
        return LocalBackend(root=config.backend.local.root)
    elif backend == "inmemory":
        return InMemoryBackend()
    elif backend == "sge":
        from .sge import SgeBackend

        sge_conf = config.backend.sge
        return SgeBackend(root=sge_conf.root, queue=sge_conf.queue)
    else:
        raise ValueError(f"Unsupported backend: {backend}")


__all__ = [
    "BackendJob",
    "BaseBackend",
    "InMemoryBackend",
    "JobHandle",
    "JobState",
    "LocalBackend",
    "PollResult",
    "ScriptedJob",
    "get_backend",
]
