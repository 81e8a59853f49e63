from __future__ import annotations
from pathlib import Path
import json
import os
import secrets
import tempfile
import time
from typing import Any, Optional, Union
from datetime import datetime, date, timezone
from enum import Enum


def _safe_default(o: Any):
    """JSON fallback for pydantic models, enums, sets and datetimes."""
    if hasattr(o, "model_dump") and callable(getattr(o, "model_dump")):
        return o.model_dump(mode="json")
    if isinstance(o, Path):
        return str(o)
    if isinstance(o, (set, frozenset)):
        return sorted(o)
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    if isinstance(o, Enum):
        return o.value
    return str(o)


def write_json_atomic(path: Path, obj: Any) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(obj, indent=2, ensure_ascii=False, default=_safe_default)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=str(path.parent), prefix=".tmp_", suffix=".json") as tmp:
        tmp.write(data)
        tmp_path = Path(tmp.name)
    os.replace(tmp_path, path)


def write_raw_response(directory: Union[str, Path], stage: str, text: str,
                       attempt: Optional[int] = None) -> Path:
    """Keep an unparsed model response on disk for later inspection."""
    stamp = time.strftime("%Y%m%d-%H%M%S")
    suffix = f"_{attempt}" if attempt is not None else ""
    path = Path(directory) / f"{stamp}_{stage}{suffix}_{secrets.token_hex(3)}.json"
    write_json_atomic(path, {"stage": stage, "attempt": attempt, "timestamp": datetime.now(timezone.utc), "response": text})
    return path
