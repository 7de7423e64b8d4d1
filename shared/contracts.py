"""
Collaborator contracts consumed by the orchestrator.

Intent extraction and rule-based compilation live outside this package;
only their call shape matters here. Implementations may be sync or async.
"""

from __future__ import annotations

from typing import Awaitable, Protocol

from shared.models import CompileContext, CompileResult, IntentSpec, ParseContext


class IntentParser(Protocol):
    """Turns free text plus sensed context into a structured intent."""

    def parse(self, context: ParseContext) -> IntentSpec | Awaitable[IntentSpec]:
        ...


class SpecCompiler(Protocol):
    """Turns a structured intent into an ordered, dependency-annotated plan."""

    def compile(self, intent_spec: IntentSpec, compile_context: CompileContext) -> CompileResult:
        ...
