from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING, Any, NamedTuple, Optional, Union

import numpy as np
import xarray as xr

from partregrid.exceptions import MalformedHotstartFile
from partregrid.utils import update_history

if TYPE_CHECKING:
    from partregrid.mesh import MeshPartition

# imhs value that switches on the wetting/drying coefficient array
WETTING_COEFFICIENT_FLAG = 10
RECORD_SIZE = 8


class LayoutEntry(NamedTuple):
    """One field of the hotstart layout."""

    name: str
    kind: str  # 'int' or 'float'
    extent: str  # 'scalar', 'node' or 'element'


HEADER_LAYOUT = (
    LayoutEntry("format_version", "int", "scalar"),
    LayoutEntry("imhs", "int", "scalar"),
    LayoutEntry("time", "float", "scalar"),
    LayoutEntry("iths", "int", "scalar"),
    LayoutEntry("np_global", "int", "scalar"),
    LayoutEntry("ne_global", "int", "scalar"),
    LayoutEntry("np_active", "int", "scalar"),
    LayoutEntry("ne_active", "int", "scalar"),
)

NODAL_FLOAT_FIELDS = ("eta1", "eta2", "eta_disc", "uu2", "vv2")
WETTING_COEFFICIENT_FIELD = "ch1"

CONTROL_FIELDS = (
    "iestp",
    "nscoue",
    "ivstp",
    "nscouv",
    "icstp",
    "nscouc",
    "ipstp",
    "iwstp",
    "nscoum",
    "igep",
    "nscouge",
    "igvp",
    "nscougv",
    "igcp",
    "nscougc",
    "igpp",
    "igwp",
    "nscougw",
)


def includes_wetting_coefficient(imhs: int) -> bool:
    """Whether a record with this flag carries the ``ch1`` array."""
    return int(imhs) == WETTING_COEFFICIENT_FLAG


def record_layout(imhs: int) -> tuple[LayoutEntry, ...]:
    """
    Full positional layout of a hotstart record for a given format flag.

    Readers and writers both derive their field order from here, so the
    conditional ``ch1`` block cannot be included on one side only.
    """
    body = [LayoutEntry(name, "float", "node") for name in NODAL_FLOAT_FIELDS]
    if includes_wetting_coefficient(imhs):
        body.append(LayoutEntry(WETTING_COEFFICIENT_FIELD, "float", "node"))
    body.append(LayoutEntry("nnodecode", "int", "node"))
    body.append(LayoutEntry("noff", "int", "element"))
    body.extend(LayoutEntry(name, "int", "scalar") for name in CONTROL_FIELDS)
    return HEADER_LAYOUT + tuple(body)


def _zeros() -> np.ndarray:
    return np.zeros(0)


def _int_zeros() -> np.ndarray:
    return np.zeros(0, dtype=np.int64)


@dataclass
class HotstartRecord:
    """
    Simulation state persisted in a hotstart file.

    Node arrays are sized to the present nodes of a partition (or the global
    node count for a consolidated record); ``noff`` is sized to elements.
    ``ch1`` is meaningful only when ``imhs == 10``.
    """

    format_version: int = 0
    imhs: int = 0
    time: float = 0.0
    iths: int = 0
    np_global: int = 0
    ne_global: int = 0
    np_active: int = 0
    ne_active: int = 0
    eta1: np.ndarray = field(default_factory=_zeros)
    eta2: np.ndarray = field(default_factory=_zeros)
    eta_disc: np.ndarray = field(default_factory=_zeros)
    uu2: np.ndarray = field(default_factory=_zeros)
    vv2: np.ndarray = field(default_factory=_zeros)
    ch1: Optional[np.ndarray] = None
    nnodecode: np.ndarray = field(default_factory=_int_zeros)
    noff: np.ndarray = field(default_factory=_int_zeros)
    iestp: int = 0
    nscoue: int = 0
    ivstp: int = 0
    nscouv: int = 0
    icstp: int = 0
    nscouc: int = 0
    ipstp: int = 0
    iwstp: int = 0
    nscoum: int = 0
    igep: int = 0
    nscouge: int = 0
    igvp: int = 0
    nscougv: int = 0
    igcp: int = 0
    nscougc: int = 0
    igpp: int = 0
    igwp: int = 0
    nscougw: int = 0

    @classmethod
    def allocate(
        cls, num_nodes: int, num_elements: int, **scalars: Any
    ) -> "HotstartRecord":
        """Zero-filled record sized to a mesh; ``scalars`` set header/control fields."""
        record = cls(
            eta1=np.zeros(num_nodes),
            eta2=np.zeros(num_nodes),
            eta_disc=np.zeros(num_nodes),
            uu2=np.zeros(num_nodes),
            vv2=np.zeros(num_nodes),
            nnodecode=np.zeros(num_nodes, dtype=np.int64),
            noff=np.zeros(num_elements, dtype=np.int64),
        )
        for name, value in scalars.items():
            if name not in _SCALAR_NAMES:
                raise TypeError(f"'{name}' is not a hotstart scalar field.")
            setattr(record, name, value)
        if record.has_wetting_coefficient:
            record.ch1 = np.zeros(num_nodes)
        return record

    @classmethod
    def for_partition(cls, partition: MeshPartition, **scalars: Any) -> "HotstartRecord":
        """Record sized to the present nodes and elements of a partition."""
        return cls.allocate(partition.num_present_nodes, partition.num_elements, **scalars)

    @classmethod
    def derive_global(
        cls, template: "HotstartRecord", num_nodes: int, num_elements: int
    ) -> "HotstartRecord":
        """
        Fresh global record for another mesh resolution.

        Format, flag, time and time step come from ``template``; sizes come
        from the target mesh; node codes and element flags are reset to 1 and
        output counters to 0.
        """
        record = cls.allocate(
            num_nodes,
            num_elements,
            format_version=template.format_version,
            imhs=template.imhs,
            time=template.time,
            iths=template.iths,
            np_global=num_nodes,
            ne_global=num_elements,
            np_active=num_nodes,
            ne_active=num_elements,
        )
        record.nnodecode[:] = 1
        record.noff[:] = 1
        return record

    @property
    def has_wetting_coefficient(self) -> bool:
        return includes_wetting_coefficient(self.imhs)

    @property
    def num_nodes(self) -> int:
        return int(np.asarray(self.eta1).size)

    @property
    def num_elements(self) -> int:
        return int(np.asarray(self.noff).size)

    def nodal_float_fields(self) -> tuple[str, ...]:
        """Names of the float node arrays this record carries, in file order."""
        if self.has_wetting_coefficient:
            return NODAL_FLOAT_FIELDS + (WETTING_COEFFICIENT_FIELD,)
        return NODAL_FLOAT_FIELDS

    def validate(
        self, num_nodes: Optional[int] = None, num_elements: Optional[int] = None
    ) -> None:
        """
        Check array sizes against each other and, optionally, a mesh.

        Raises
        ------
        ValueError
            On any size disagreement, or a set flag without ``ch1``.
        """
        if num_nodes is None:
            num_nodes = self.num_nodes
        if num_elements is None:
            num_elements = self.num_elements

        if self.has_wetting_coefficient and self.ch1 is None:
            raise ValueError(
                f"imhs={self.imhs} requires the wetting coefficient array 'ch1'."
            )
        for name in self.nodal_float_fields() + ("nnodecode",):
            size = np.asarray(getattr(self, name)).size
            if size != num_nodes:
                raise ValueError(
                    f"Hotstart array '{name}' has {size} values, expected {num_nodes}."
                )
        if self.num_elements != num_elements:
            raise ValueError(
                f"Hotstart array 'noff' has {self.num_elements} values, "
                f"expected {num_elements}."
            )

    def to_dataset(self) -> xr.Dataset:
        """The record as an ``xarray.Dataset`` with scalars in ``attrs``."""
        data_vars = {
            name: (["node"], np.asarray(getattr(self, name)))
            for name in self.nodal_float_fields() + ("nnodecode",)
        }
        data_vars["noff"] = (["element"], np.asarray(self.noff))
        attrs = {name: getattr(self, name) for name in _SCALAR_NAMES}
        ds = xr.Dataset(data_vars=data_vars, attrs=attrs)
        update_history(ds, "Converted hotstart record to xarray.")
        return ds


_SCALAR_NAMES = tuple(entry.name for entry in HEADER_LAYOUT) + CONTROL_FIELDS


def _integer_values(values: Any, name: str) -> np.ndarray:
    """Values of an integer field as int64, refusing anything that is not integral."""
    values = np.atleast_1d(np.asarray(values))
    if values.dtype.kind not in "iub":
        if values.dtype.kind != "f" or not (
            np.all(np.isfinite(values)) and np.all(values == np.round(values))
        ):
            raise ValueError(f"Hotstart field '{name}' holds non-integral values.")
    values = values.astype(np.int64)
    info = np.iinfo(np.int32)
    if values.size and (values.min() < info.min or values.max() > info.max):
        raise ValueError(f"Hotstart field '{name}' does not fit in 32-bit integers.")
    return values


class HotstartCodec:
    """
    Reader/writer for the fixed 8-byte-record binary hotstart format.

    Every record holds one value: floats as IEEE float64, integers as int32 in
    the first four bytes followed by four zero bytes. The field order is
    :func:`record_layout`. Bytes after the last control scalar are ignored on
    read.

    Parameters
    ----------
    byteorder : {'<', '>'}, default '<'
        Byte order of the file.
    """

    record_size = RECORD_SIZE

    def __init__(self, byteorder: str = "<") -> None:
        if byteorder not in ("<", ">"):
            raise ValueError(f"byteorder must be '<' or '>', got '{byteorder}'.")
        self.byteorder = byteorder
        self._float = np.dtype(f"{byteorder}f8")
        self._int = np.dtype(f"{byteorder}i4")

    @staticmethod
    def _count(entry: LayoutEntry, num_nodes: int, num_elements: int) -> int:
        if entry.extent == "node":
            return num_nodes
        if entry.extent == "element":
            return num_elements
        return 1

    def _decode(self, buf: bytes, kind: str) -> np.ndarray:
        if kind == "float":
            return np.frombuffer(buf, dtype=self._float).astype(np.float64)
        pairs = np.frombuffer(buf, dtype=self._int).reshape(-1, 2)
        return pairs[:, 0].astype(np.int64)

    def _encode(self, values: Any, kind: str, name: str) -> bytes:
        values = np.atleast_1d(np.asarray(values))
        if kind == "float":
            return values.astype(self._float).tobytes()
        values = _integer_values(values, name)
        pairs = np.zeros((values.size, 2), dtype=self._int)
        pairs[:, 0] = values
        return pairs.tobytes()

    def _read_entry(
        self, stream: IO[bytes], entry: LayoutEntry, count: int
    ) -> np.ndarray:
        nbytes = count * self.record_size
        buf = stream.read(nbytes)
        if len(buf) < nbytes:
            raise MalformedHotstartFile(
                f"Hotstart ended inside field '{entry.name}': expected {count} "
                f"record(s), found {len(buf) // self.record_size}."
            )
        return self._decode(buf, entry.kind)

    def read(
        self, stream: IO[bytes], num_nodes: int, num_elements: int
    ) -> HotstartRecord:
        """
        Decode one record from a binary stream.

        Parameters
        ----------
        stream : binary file-like
            Positioned at the first record.
        num_nodes, num_elements : int
            Sizes of the node and element arrays.

        Raises
        ------
        MalformedHotstartFile
            If the stream ends before the layout does.
        """
        values: dict[str, Any] = {}
        for entry in HEADER_LAYOUT:
            values[entry.name] = self._read_entry(stream, entry, 1)[0].item()

        for entry in record_layout(values["imhs"])[len(HEADER_LAYOUT) :]:
            count = self._count(entry, num_nodes, num_elements)
            decoded = self._read_entry(stream, entry, count)
            values[entry.name] = decoded if entry.extent != "scalar" else decoded[0].item()

        return HotstartRecord(**values)

    def write(self, record: HotstartRecord, stream: IO[bytes]) -> int:
        """
        Encode a record into a binary stream.

        Returns
        -------
        int
            Bytes written.

        Raises
        ------
        ValueError
            If the record is internally inconsistent, or an integer field
            holds non-integral values.
        """
        record.validate()
        # encode everything first so a bad field leaves the stream untouched
        chunks = [
            self._encode(getattr(record, entry.name), entry.kind, entry.name)
            for entry in record_layout(record.imhs)
        ]
        return sum(stream.write(chunk) for chunk in chunks)

    def read_file(
        self, path: Union[str, os.PathLike], num_nodes: int, num_elements: int
    ) -> HotstartRecord:
        with open(path, "rb") as f:
            return self.read(f, num_nodes, num_elements)

    def write_file(self, record: HotstartRecord, path: Union[str, os.PathLike]) -> int:
        with open(path, "wb") as f:
            return self.write(record, f)

    def dump_text(self, record: HotstartRecord, stream: IO[str]) -> None:
        """
        Human-readable dump in layout order, one field per line.

        For inspection only; it is never read back.
        """
        record.validate()
        for entry in record_layout(record.imhs):
            values = getattr(record, entry.name)
            if entry.kind == "float":
                values, fmt = np.atleast_1d(np.asarray(values)), "{:.17g}"
            else:
                values, fmt = _integer_values(values, entry.name), "{:d}"
            text = " ".join(fmt.format(v) for v in values.tolist())
            stream.write(f"{entry.name}: {text}\n")
