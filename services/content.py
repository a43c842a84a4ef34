"""Helpers for reading text out of LangChain message content."""
from typing import Any


def content_text(content: Any) -> str:
    """Flatten message content (a string or a list of content blocks) to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)
