"""
Opaque pagination cursors.

A cursor is the base64 encoding of a compact JSON object:

    {"offset":100,"keywords":"logo"}

Clients treat it as opaque and pass it back to continue a listing walk.
Decoding never fails: a corrupted or forged cursor restarts the walk from the
beginning instead of failing the request.
"""

import base64
import binascii
import json
from typing import NamedTuple


class Cursor(NamedTuple):
    offset: int = 0
    keywords: str = ""


def encode(offset: int, keywords: str) -> str:
    payload = json.dumps({"offset": offset, "keywords": keywords}, separators=(",", ":"))
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode(cursor: str | None) -> Cursor:
    """Decode a cursor into (offset, keywords), falling back to (0, "")."""
    if not cursor:
        return Cursor()

    try:
        raw = base64.b64decode(cursor, validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError):
        # ValueError covers UnicodeDecodeError and JSONDecodeError
        return Cursor()

    if not isinstance(data, dict):
        return Cursor()

    offset = data.get("offset", 0)
    keywords = data.get("keywords", "")

    # bool is a subclass of int but never a valid offset
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        return Cursor()
    if not isinstance(keywords, str):
        return Cursor()

    return Cursor(offset=offset, keywords=keywords)
