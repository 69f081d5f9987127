import json
import os
from pathlib import Path
from typing import Any


def load_json(path: str | Path) -> Any | None:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError:
        return None


def canonical_dumps(data: Any, *, indent: int | None = None) -> str:
    return json.dumps(data, indent=indent, sort_keys=True, ensure_ascii=False, default=str)


def atomic_write_json(path: str | Path, data: Any) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(f"{target.suffix}.tmp")
    payload = canonical_dumps(data, indent=2)
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(payload)
    os.replace(tmp_path, target)
