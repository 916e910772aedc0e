from __future__ import annotations

import hashlib
import json
import re
from typing import Any

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def dumps_compact(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def escape_glob(value: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", value)


def doc_id_from_text(value: str) -> str:
    normalized = value.strip().replace("/", "_")
    if not normalized:
        raise ValueError("Document id source must not be empty.")

    if len(normalized) <= 128:
        return normalized

    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
    return f"{normalized[:96]}-{digest}"
