"""
CLI Entry Adapter.

Responsibility:
- Receive user input from terminal
- Normalize to the ParseContext / risk-context contracts
- NO intent parsing, NO planning, NO tool access
"""

import uuid

from shared.models import ConversationTurn, ParseContext


class CLIAdapter:
    """Command-line entry adapter."""

    def __init__(self, session_id: str | None = None, user_id: str | None = None):
        self.session_id = session_id or str(uuid.uuid4())[:8]
        self.user_id = user_id or "cli"
        self.history: list[ConversationTurn] = []

    def read_input(self, raw_input: str) -> ParseContext:
        """Normalize raw CLI input to a ParseContext and remember it as a user turn."""
        text = raw_input.strip()
        context = ParseContext(
            user_message=text,
            conversation_history=list(self.history),
            session_id=self.session_id,
            user_id=self.user_id,
        )
        self.history.append(ConversationTurn(role="user", content=text))
        return context

    def risk_context(self, raw_input: str | None, estimated_rows: int | None = None) -> dict:
        context: dict = {"user_input": (raw_input or "").strip()}
        if estimated_rows is not None:
            context["estimated_rows"] = estimated_rows
        return context
