"""ID helpers."""

from __future__ import annotations

import uuid

DOCUMENT = "doc"
CHUNK = "chk"
MESSAGE = "msg"
DETECTION = "pii"
CONSENT = "cns"


def new_id(prefix: str | None = None) -> str:
    """Return a random hex identifier, e.g. ``doc_3f2a...`` for ``prefix="doc"``."""
    base = uuid.uuid4().hex
    return f"{prefix}_{base}" if prefix else base
