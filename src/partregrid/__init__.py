from .catalog import PartitionCatalog
from .context import ExecutionContext, SerialCommunicator, abort_on_error
from .exceptions import (
    IndexOutOfRange,
    MalformedHotstartFile,
    MalformedInputFile,
    MalformedMeshFile,
    MalformedPartitionFile,
    NotFound,
    PartitionMismatch,
    PartRegridError,
    RegridFailed,
)
from .gather import CrossRankConsolidator
from .hotstart import HotstartCodec, HotstartRecord, record_layout
from .mesh import MeshPartition, PartitionedMeshDirectory, read_mesh_file, read_partition_table
from .regridder import (
    DualPathRegridder,
    ESMPyInterpolator,
    ScipyMeshInterpolator,
    WeightsOperator,
)
from .workflow import regrid_hotstart

__all__ = [
    "PartitionCatalog",
    "ExecutionContext",
    "SerialCommunicator",
    "abort_on_error",
    "MeshPartition",
    "PartitionedMeshDirectory",
    "read_mesh_file",
    "read_partition_table",
    "CrossRankConsolidator",
    "DualPathRegridder",
    "ESMPyInterpolator",
    "ScipyMeshInterpolator",
    "WeightsOperator",
    "HotstartCodec",
    "HotstartRecord",
    "record_layout",
    "regrid_hotstart",
    "PartRegridError",
    "MalformedInputFile",
    "MalformedPartitionFile",
    "MalformedMeshFile",
    "MalformedHotstartFile",
    "PartitionMismatch",
    "NotFound",
    "IndexOutOfRange",
    "RegridFailed",
]
