"""Generation backend implementations."""

from gen_batch.orchestrator.backend.base import (
    AttemptResult,
    GenerationBackend,
    PostProcessResult,
    PostProcessStep,
)
from gen_batch.orchestrator.backend.command_backend import BackendRunError, CommandBackend
from gen_batch.orchestrator.backend.scripted import OutcomeScript, ScriptedBackend

__all__ = [
    "AttemptResult",
    "BackendRunError",
    "CommandBackend",
    "GenerationBackend",
    "OutcomeScript",
    "PostProcessResult",
    "PostProcessStep",
    "ScriptedBackend",
]
