# turn_pipeline/adapters/persistence.py
from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Tuple, Union

from pydantic import BaseModel

JsonObj = Dict[str, Any]
PathLike = Union[str, Path]

STATE_LOG_PATH = Path("artifacts/conversation_state.jsonl")
DIAGNOSTICS_LOG_PATH = Path("artifacts/turn_diagnostics.jsonl")


def _to_jsonable(x: Any) -> Any:
    if x is None:
        return None
    if isinstance(x, BaseModel):
        return x.model_dump(mode="json")
    if is_dataclass(x) and not isinstance(x, type):
        return _to_jsonable(asdict(x))
    if isinstance(x, Enum):
        return x.value
    if isinstance(x, dict):
        return {str(k.value if isinstance(k, Enum) else k): _to_jsonable(v) for k, v in x.items()}
    if isinstance(x, (list, tuple, frozenset, set)):
        return [_to_jsonable(v) for v in x]
    return x


def append_jsonl(path: PathLike, record: Any) -> JsonObj:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    next_offset = 1
    if p.exists():
        next_offset = len(p.read_text(encoding="utf-8").splitlines()) + 1

    # enforce "one JSON object per line"
    line = json.dumps(_to_jsonable(record), ensure_ascii=False)
    with p.open("a", encoding="utf-8") as f:
        f.write(line + "\n")
    return {"kind": "jsonl", "ref": f"{p.name}@{next_offset}"}


def read_jsonl(path: PathLike) -> Iterator[Tuple[JsonObj, JsonObj]]:
    """
    Yields (meta, obj) for each JSON object line.
    - meta includes line number and source path.
    - obj is the parsed dict.
    """
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            s = line.strip()
            if not s:
                continue
            obj = json.loads(s)
            if not isinstance(obj, dict):
                raise ValueError(f"Expected JSON object on line {lineno}, got {type(obj).__name__}")
            meta: JsonObj = {"path": str(p), "lineno": lineno}
            yield meta, obj


__all__ = ["DIAGNOSTICS_LOG_PATH", "STATE_LOG_PATH", "JsonObj", "PathLike", "append_jsonl", "read_jsonl"]
