"""Prompt templates for LLM-driven message tagging."""

from __future__ import annotations

from textwrap import dedent

from ..core.models import PersistedMessage

MAX_BODY_CHARS = 4000


def build_analysis_prompt(message: PersistedMessage) -> str:
    """Compose a JSON-only tagging prompt for ``message``."""
    to_line = ", ".join(message.to) if message.to else "(none)"
    subject = message.subject or "(no subject)"
    sender = message.sender or "(unknown sender)"
    body_text = (message.body_text or "")[:MAX_BODY_CHARS]

    prompt = f"""
    You are an assistant that triages incoming email.
    Respond strictly with JSON using this schema:
    {{
      "priority": integer,  # 0 (ignorable) to 10 (drop everything)
      "urgent": boolean,  # true only when a response is needed today
      "category": string,  # one of general, meeting, finance, project,
                           # newsletter, notification, personal
      "action_items": [string, ...]  # zero or more actions for the recipient
    }}

    Do not include any additional keys or prose outside the JSON object.

    Subject: {subject}
    From: {sender}
    To: {to_line}

    Email body:
    {body_text}
    """

    return dedent(prompt).strip()


__all__ = ["build_analysis_prompt"]
