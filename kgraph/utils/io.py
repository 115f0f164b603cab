"""File IO helpers."""
from __future__ import annotations

import dataclasses
import json
import pathlib
from datetime import date, datetime
from enum import Enum
from typing import Any

from .logging import get_logger

LOGGER = get_logger(__name__)


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into plain JSON values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(item) for item in value]
    return value


def write_json(path: str | pathlib.Path, payload: Any) -> None:
    """Write a JSON document to disk."""
    data_path = pathlib.Path(path)
    data_path.parent.mkdir(parents=True, exist_ok=True)
    with data_path.open("w", encoding="utf-8") as handle:
        json.dump(to_jsonable(payload), handle, ensure_ascii=False, indent=2)
    LOGGER.info("Wrote JSON document to %s", data_path)


def read_json(path: str | pathlib.Path) -> Any:
    """Read a JSON document from disk."""
    data_path = pathlib.Path(path)
    if not data_path.exists():
        raise FileNotFoundError(f"JSON file not found: {data_path}")
    with data_path.open("r", encoding="utf-8") as handle:
        return json.load(handle)
