"""Member backend implementations."""

from agent_council.orchestrator.backend.base import (
    MemberBackend,
    MemberRunRequest,
    MemberRunResult,
)
from agent_council.orchestrator.backend.cli_backend import (
    BackendRunError,
    CliAgentBackend,
    split_command,
)

__all__ = [
    "BackendRunError",
    "CliAgentBackend",
    "MemberBackend",
    "MemberRunRequest",
    "MemberRunResult",
    "split_command",
]
