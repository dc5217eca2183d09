"""Build/publish adapters: thin wrappers around one external tool each.

Adapters never raise for tool failures; they return an AdapterResult with
the captured output so the orchestrator can record it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..process import CommandResult


@dataclass
class AdapterResult:
    """Outcome of one adapter call."""

    success: bool
    output: str = ''
    artifact_ref: Optional[str] = None

    @classmethod
    def failed(cls, output: str) -> AdapterResult:
        return cls(success=False, output=output)

    @classmethod
    def from_command(cls, result: CommandResult, artifact_ref: Optional[str] = None) -> AdapterResult:
        return cls(success=result.success, output=result.stdout, artifact_ref=artifact_ref)


def join_output(*parts: str) -> str:
    return '\n'.join(p.rstrip() for p in parts if p and p.strip())
