"""
HDF5 persistence for jetflow inputs and results.

Two containers are provided:

- InputCollection: named input histograms, loaded from or saved to one
  HDF5 file (one group per histogram).
- ArtifactTree: the hierarchical output of unfolding runs, laid out as
  ``/<run label>/<group>/<artifact>`` with run-level artifacts directly
  under the run label.

Histograms and point series are stored as groups of datasets, flat
records (dicts of scalars and strings) as group attributes, and plain
arrays as datasets. The ``kind`` attribute marks every stored artifact.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import h5py
import numpy as np

from jetflow.analysis.flow import ConstantFit, PointSeries
from jetflow.core.errors import ConfigurationError
from jetflow.core.histogram import Histogram1D, Histogram2D

logger = logging.getLogger(__name__)

KIND_ATTR = "kind"

ArtifactKey = Tuple[Optional[str], str]


# =============================================================================
# Object <-> HDF5 node conversion
# =============================================================================

def _decode(value):
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, np.generic):
        return value.item()
    return value


def write_object(parent: h5py.Group, name: str, obj: Any) -> None:
    """Store ``obj`` under ``parent[name]``, replacing an existing node."""
    if name in parent:
        del parent[name]
    if isinstance(obj, Histogram1D):
        group = parent.create_group(name)
        group.attrs[KIND_ATTR] = "Histogram1D"
        group.attrs["name"] = obj.name
        group.attrs["title"] = obj.title
        group.attrs["entries"] = obj.entries
        group.create_dataset("edges", data=obj.edges)
        group.create_dataset("contents", data=obj.contents)
        group.create_dataset("variances", data=obj.variances)
    elif isinstance(obj, Histogram2D):
        group = parent.create_group(name)
        group.attrs[KIND_ATTR] = "Histogram2D"
        group.attrs["name"] = obj.name
        group.attrs["title"] = obj.title
        group.create_dataset("x_edges", data=obj.x_edges)
        group.create_dataset("y_edges", data=obj.y_edges)
        group.create_dataset("contents", data=obj.contents)
        group.create_dataset("variances", data=obj.variances)
    elif isinstance(obj, PointSeries):
        group = parent.create_group(name)
        group.attrs[KIND_ATTR] = "PointSeries"
        group.attrs["name"] = obj.name
        for field_name in ("x", "y", "x_err", "y_err"):
            group.create_dataset(field_name, data=getattr(obj, field_name))
        if obj.fit is not None:
            group.attrs["fit_value"] = obj.fit.value
            group.attrs["fit_error"] = obj.fit.error
            group.attrs["fit_chi2"] = obj.fit.chi2
            group.attrs["fit_ndf"] = obj.fit.ndf
            group.attrs["fit_range"] = np.asarray(obj.fit.fit_range, dtype=float)
    elif isinstance(obj, dict):
        group = parent.create_group(name)
        group.attrs[KIND_ATTR] = "record"
        for key, value in obj.items():
            if value is None:
                continue
            group.attrs[key] = value
    elif isinstance(obj, np.ndarray):
        dataset = parent.create_dataset(name, data=obj)
        dataset.attrs[KIND_ATTR] = "array"
    else:
        raise TypeError(f"Cannot store object of type {type(obj).__name__} as {name!r}")


def read_object(node: Union[h5py.Group, h5py.Dataset]) -> Any:
    """Rebuild the object stored in ``node`` by :func:`write_object`."""
    kind = _decode(node.attrs.get(KIND_ATTR))
    if kind == "Histogram1D":
        return Histogram1D(
            edges=node["edges"][()],
            contents=node["contents"][()],
            variances=node["variances"][()],
            name=_decode(node.attrs.get("name", "")),
            title=_decode(node.attrs.get("title", "")),
            entries=float(node.attrs.get("entries", 0.0)),
        )
    if kind == "Histogram2D":
        return Histogram2D(
            x_edges=node["x_edges"][()],
            y_edges=node["y_edges"][()],
            contents=node["contents"][()],
            variances=node["variances"][()],
            name=_decode(node.attrs.get("name", "")),
            title=_decode(node.attrs.get("title", "")),
        )
    if kind == "PointSeries":
        fit = None
        if "fit_value" in node.attrs:
            low, high = node.attrs["fit_range"]
            fit = ConstantFit(
                value=float(node.attrs["fit_value"]),
                error=float(node.attrs["fit_error"]),
                chi2=float(node.attrs["fit_chi2"]),
                ndf=int(node.attrs["fit_ndf"]),
                fit_range=(float(low), float(high)),
            )
        return PointSeries(
            x=node["x"][()],
            y=node["y"][()],
            x_err=node["x_err"][()],
            y_err=node["y_err"][()],
            name=_decode(node.attrs.get("name", "")),
            fit=fit,
        )
    if kind == "record":
        return {key: _decode(value) for key, value in node.attrs.items() if key != KIND_ATTR}
    if kind == "array":
        return node[()]
    raise ValueError(f"Node {node.name} holds no jetflow artifact")


# =============================================================================
# Inputs
# =============================================================================

class InputCollection:
    """
    Named input histograms of an unfolding run.

    Mirrors the list of histograms produced by the upstream jet task: a
    (angle, pt) jet spectrum, a (angle, delta-pt) distribution and a rho
    histogram per centrality bin, plus the detector response.
    """

    def __init__(self, objects: Optional[Dict[str, Any]] = None):
        self._objects: Dict[str, Any] = dict(objects or {})

    def __contains__(self, name: str) -> bool:
        return name in self._objects

    def __iter__(self) -> Iterator[str]:
        return iter(self._objects)

    def __len__(self) -> int:
        return len(self._objects)

    def __getitem__(self, name: str):
        return self.get(name)

    def add(self, obj, name: Optional[str] = None) -> None:
        key = name or obj.name
        if not key:
            raise ValueError("Input objects need a name.")
        self._objects[key] = obj

    def get(self, name: str):
        """Object stored under ``name``; ConfigurationError when absent."""
        try:
            return self._objects[name]
        except KeyError:
            raise ConfigurationError(f"Input {name!r} not found in input collection") from None

    def names(self) -> List[str]:
        return sorted(self._objects)

    @classmethod
    def load(cls, path: Path) -> "InputCollection":
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Input file not found: {path}")
        objects: Dict[str, Any] = {}
        with h5py.File(path, "r") as handle:
            for name, node in handle.items():
                if KIND_ATTR not in node.attrs:
                    logger.debug("Skipping %s in %s: not a jetflow object", name, path)
                    continue
                objects[name] = read_object(node)
        logger.info("Loaded %d input objects from %s", len(objects), path)
        return cls(objects)

    def save(self, path: Path) -> None:
        with h5py.File(Path(path), "w") as handle:
            for name, obj in self._objects.items():
                write_object(handle, name, obj)


# =============================================================================
# Output tree
# =============================================================================

class ArtifactTree:
    """
    Output file of one or more unfolding runs.

    Every artifact is keyed by (run label, group, artifact name); ``group``
    is None for run-level artifacts. Writing the same key twice replaces
    the previous artifact; a whole run is only replaced on request.

    Examples
    --------
    >>> with ArtifactTree("results.h5") as tree:
    ...     tree.write("chi2_beta0.1", "UnfoldedSpectrum_in", unfolded, group="InPlane")
    """

    def __init__(self, path: Union[str, Path], mode: str = "a"):
        self.path = Path(path)
        self._file = h5py.File(self.path, mode)

    def __enter__(self) -> "ArtifactTree":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._file.id.valid:
            self._file.close()

    @staticmethod
    def _group_path(label: str, group: Optional[str]) -> str:
        if not label:
            raise ValueError("Run label must not be empty.")
        return label if group is None else f"{label}/{group}"

    def write(self, label: str, name: str, obj: Any, group: Optional[str] = None) -> None:
        parent = self._file.require_group(self._group_path(label, group))
        write_object(parent, name, obj)

    def has_run(self, label: str) -> bool:
        return self._group_path(label, None) in self._file

    def write_many(self, label: str, artifacts: Dict[ArtifactKey, Any], overwrite: bool = False) -> None:
        """
        Write a mapping of (group, name) -> object as one run.

        An existing run under ``label`` raises ConfigurationError, or is
        removed first with ``overwrite=True`` so no stale artifacts remain.
        """
        if self.has_run(label):
            if not overwrite:
                raise ConfigurationError(f"Run {label!r} already in {self.path}")
            logger.warning("Replacing run %s in %s", label, self.path)
            del self._file[label]
        for (group, name), obj in artifacts.items():
            self.write(label, name, obj, group=group)
        logger.debug("Wrote %d artifacts under %s", len(artifacts), label)

    def read(self, label: str, name: str, group: Optional[str] = None) -> Any:
        path = f"{self._group_path(label, group)}/{name}"
        if path not in self._file:
            raise KeyError(path)
        return read_object(self._file[path])

    def __contains__(self, key: Tuple[str, Optional[str], str]) -> bool:
        label, group, name = key
        return f"{self._group_path(label, group)}/{name}" in self._file

    def labels(self) -> List[str]:
        return sorted(self._file.keys())

    def listing(self) -> List[Tuple[str, str]]:
        """(path, kind) of every stored artifact, in file order."""
        entries: List[Tuple[str, str]] = []

        def visit(name, node):
            kind = node.attrs.get(KIND_ATTR)
            if kind is not None:
                entries.append((name, _decode(kind)))

        self._file.visititems(visit)
        return entries
