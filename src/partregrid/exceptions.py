from __future__ import annotations


class PartRegridError(Exception):
    """Base class for every error raised by partregrid."""


class MalformedInputFile(PartRegridError, ValueError):
    """
    An input file has the wrong number of records or a record cannot be parsed.

    Fatal for the rank that reads it.
    """


class PartitionMismatch(PartRegridError, ValueError):
    """
    The partition catalog disagrees with another source of ownership.

    Continuing would attribute node values to the wrong rank.
    """


class MalformedPartitionFile(MalformedInputFile, PartitionMismatch):
    """The partition catalog cannot be read or has the wrong entry count."""


class MalformedMeshFile(MalformedInputFile):
    """A per-rank mesh or partition table is truncated or inconsistent."""


class MalformedHotstartFile(MalformedInputFile):
    """A binary hotstart file ends before its declared layout does."""


class NotFound(PartRegridError, KeyError):
    """A global node ID lies outside the catalog."""


class IndexOutOfRange(PartRegridError, IndexError):
    """Element connectivity references a node that is not present."""


class RegridFailed(PartRegridError, RuntimeError):
    """The interpolation backend failed to build or apply an operator."""
