"""GRBL line codec.

Outbound commands are single lines terminated by ``\\n``. Inbound lines are
classified by prefix:

    ok            -> acknowledgement (success)
    error:<int>   -> acknowledgement (failure, numeric code)
    ALARM:<int>   -> asynchronous fault
    <...>         -> status report
    [...]         -> setting / feedback line
    anything else -> informational (banner, echo, etc.)
"""

from __future__ import annotations

import re

from . import constants
from .core.errors import LineParseError
from .core.models import Response, ResponseType

_ERROR_RE = re.compile(r"^error:(\d+)")
_ALARM_RE = re.compile(r"^ALARM:(\d+)")


def encode_line(payload: str) -> bytes:
    """Encode a command payload for the wire."""

    line = payload.strip()
    if "\n" in line or "\r" in line:
        raise ValueError(f"Command payload must be a single line: {payload!r}")
    return (line + constants.LINE_TERMINATOR).encode("ascii", errors="replace")


def classify_line(line: str) -> Response:
    """Classify one inbound line.

    Raises:
        LineParseError: If an ``error:`` or ``ALARM:`` line carries no numeric
            code.
    """

    clean = line.strip()

    if clean.startswith("ok"):
        return Response(ResponseType.OK, clean)

    if clean.startswith("error:"):
        match = _ERROR_RE.match(clean)
        if match is None:
            raise LineParseError(clean, "Malformed error reply")
        return Response(ResponseType.ERROR, clean, code=int(match.group(1)))

    if clean.startswith("ALARM:"):
        match = _ALARM_RE.match(clean)
        if match is None:
            raise LineParseError(clean, "Malformed alarm report")
        return Response(ResponseType.ALARM, clean, code=int(match.group(1)))

    if clean.startswith("<") and clean.endswith(">"):
        return Response(ResponseType.STATUS, clean)

    if clean.startswith("[") and clean.endswith("]"):
        return Response(ResponseType.SETTING, clean)

    return Response(ResponseType.INFO, clean)
