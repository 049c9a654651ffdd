"""jetflow I/O: JSON/YAML artifacts and HDF5 input/output files."""

from jetflow.io.artifacts import (
    object_from_dict,
    read_artifact,
    read_histogram_file,
    write_artifact,
    write_histogram_file,
)
from jetflow.io.hdf5 import ArtifactTree, InputCollection, read_object, write_object

__all__ = [
    "ArtifactTree",
    "InputCollection",
    "object_from_dict",
    "read_artifact",
    "read_histogram_file",
    "read_object",
    "write_artifact",
    "write_histogram_file",
    "write_object",
]
