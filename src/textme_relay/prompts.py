"""Message texts and the context prompt sent to the agent."""

from __future__ import annotations

from typing import Sequence

from textme_relay.models import ConversationRecord

# Keep in sync with the command table in commands.py.
HELP_MESSAGE = """\
Commands:
• help / ? - This message
• status - Current status & directory
• queue - View queued messages
• history - Recent messages & outcomes
• history N - Expand item N details
• dirs / projects - List recent directories
• home - Go to home directory
• reset / fresh - Home + clear chat history
• cd <path> - Change directory
• interrupt / stop - Stop current task
• yes / no - Approval responses

Everything else goes to Claude."""

RATE_LIMITED_MESSAGE = "⚠️ Rate limit exceeded. Please wait before sending more messages."
NOT_ALLOWED_MESSAGE = "This number is not authorized to use this relay."
ROLE_LABELS = {"user": "User", "agent": "Claude"}


def build_context_prompt(directory: str, history: Sequence[ConversationRecord], message: str) -> str:
    """Compose the agent prompt for one turn.

    ``history`` is the recent conversation, oldest first, and already ends with
    the current turn, which is left out of the "Recent conversation" block.
    """
    prompt = f"[Session: {directory}]\n"
    if len(history) > 1:
        prompt += "\nRecent conversation:\n"
        for record in history[:-1]:
            prompt += f"{ROLE_LABELS[record.role]}: {record.text}\n\n"
        prompt += "---\n"
    return f"{prompt}Current request:\n{message}"
