"""JSON/YAML files for jetflow configurations and single histograms."""

from __future__ import annotations

import importlib.util
import json
from pathlib import Path
from typing import Any, Dict, Union

from jetflow.analysis.flow import PointSeries
from jetflow.core.histogram import Histogram1D, Histogram2D

PathLike = Union[str, Path]

YAML_SUFFIXES = {".yml", ".yaml"}


def _yaml(action: str):
    if importlib.util.find_spec("yaml") is None:
        raise ImportError(f"PyYAML is required to {action} YAML artifacts.")
    import yaml

    return yaml


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in YAML_SUFFIXES


def write_artifact(path: PathLike, payload: Dict[str, Any]) -> None:
    """Write ``payload`` as YAML for .yml/.yaml files, JSON otherwise."""
    path = Path(path)
    if _is_yaml(path):
        text = _yaml("write").safe_dump(payload, sort_keys=False)
    else:
        text = json.dumps(payload, indent=2)
    path.write_text(text, encoding="utf-8")


def read_artifact(path: PathLike) -> Dict[str, Any]:
    """Read a JSON or YAML mapping; an empty YAML file gives ``{}``."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if _is_yaml(path):
        return _yaml("read").safe_load(text) or {}
    return json.loads(text)


_KINDS = {
    "Histogram1D": Histogram1D,
    "Histogram2D": Histogram2D,
    "PointSeries": PointSeries,
}


def object_from_dict(data: Dict[str, Any]):
    """Rebuild a histogram or point series from its ``to_dict`` form."""
    kind = data.get("kind")
    if kind not in _KINDS:
        raise ValueError(f"Unknown artifact kind: {kind!r}")
    return _KINDS[kind].from_dict(data)


def write_histogram_file(path: PathLike, obj) -> Dict[str, Any]:
    payload = obj.to_dict()
    write_artifact(path, payload)
    return payload


def read_histogram_file(path: PathLike):
    return object_from_dict(read_artifact(path))
