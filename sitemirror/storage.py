import json
import os
from pathlib import Path

from .errors import PersistenceError


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def local_file(output_root: Path, local_path: str) -> Path:
    return output_root.joinpath(*[seg for seg in local_path.split("/") if seg])


def write_file(output_root: Path, local_path: str, data: bytes) -> Path:
    p = local_file(output_root, local_path)
    ensure_parent_dir(p)
    p.write_bytes(data)
    return p


def atomic_write_json(path: Path, data: dict) -> None:
    try:
        ensure_parent_dir(path)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        raise PersistenceError(f"cannot write {path}: {e}") from e
