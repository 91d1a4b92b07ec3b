"""Server-sent event formatting."""

from __future__ import annotations

import json
from typing import Any, Optional


def format_sse(data: Any, event: Optional[str] = None) -> str:
    """
    Format one server-sent event.

    Args:
        data: JSON-serializable payload.
        event: Optional event name.

    Returns:
        The event text, terminated by a blank line.
    """
    lines = []
    if event:
        lines.append(f'event: {event}')
    payload = json.dumps(data, default=str)
    for line in payload.splitlines() or ['']:
        lines.append(f'data: {line}')
    return '\n'.join(lines) + '\n\n'
