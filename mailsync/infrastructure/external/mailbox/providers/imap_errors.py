"""IMAP command failures.

aioimaplib returns NO/BAD as a normal Response instead of raising; the
generic adapter turns those into ImapCommandError so the error classifier
sees a raw, typed failure.
"""

from typing import Any


class ImapCommandError(Exception):
    """An IMAP command completed with NO, BAD or BYE."""

    def __init__(self, command: str, result: str, text: str) -> None:
        self.command = command.upper()
        self.result = result.upper()
        self.text = text
        super().__init__(f"IMAP {self.command} failed: {self.result} {text}".strip())


def response_text(lines: list[Any]) -> str:
    """Join the decodable text lines of an aioimaplib response."""
    parts = []
    for line in lines or []:
        if isinstance(line, (bytes, bytearray)):
            parts.append(bytes(line).decode("utf-8", errors="replace"))
        else:
            parts.append(str(line))
    return " ".join(p.strip() for p in parts if p and p.strip())


def check_imap_response(command: str, response: Any) -> Any:
    """Return response when OK; raise ImapCommandError otherwise."""
    if response.result != "OK":
        raise ImapCommandError(command, response.result, response_text(response.lines))
    return response
