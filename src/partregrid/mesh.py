from __future__ import annotations

import logging
import os
import warnings
from typing import TYPE_CHECKING, Any, NamedTuple, Optional, Union

import numpy as np
import xarray as xr

from partregrid.catalog import PartitionCatalog
from partregrid.exceptions import (
    IndexOutOfRange,
    MalformedMeshFile,
    PartitionMismatch,
)
from partregrid.utils import pe_directory_name, update_history

if TYPE_CHECKING:
    from partregrid.context import ExecutionContext

logger = logging.getLogger(__name__)

NODES_PER_ELEMENT = 3
OWNERSHIP_POLICIES = ("raise", "warn", "ignore")


class MeshFileContents(NamedTuple):
    """Records of a mesh file, connectivity still 1-based."""

    title: str
    node_ids: np.ndarray
    node_coords: np.ndarray
    bathymetry: np.ndarray
    element_ids: np.ndarray
    connectivity: np.ndarray


class PartitionTable(NamedTuple):
    """Signed global IDs of the entities present on one rank."""

    num_global_elements: int
    element_ids: np.ndarray
    num_global_nodes: int
    node_ids: np.ndarray


def _parse_block(
    lines: list[str], ncols: int, dtype: Any, path: str, what: str
) -> np.ndarray:
    """Parse the leading ``ncols`` columns of a block of text records."""
    if not lines:
        return np.empty((0, ncols), dtype=dtype)
    try:
        block = np.loadtxt(lines, dtype=dtype, usecols=range(ncols), ndmin=2)
    except (ValueError, IndexError) as err:
        raise MalformedMeshFile(f"Unparsable {what} record in {path}: {err}") from err
    return block


def read_mesh_file(path: Union[str, os.PathLike]) -> MeshFileContents:
    """
    Read a fort.14 style mesh description.

    Layout: a title line, a line ``NE NP``, ``NP`` node lines ``id x y depth``
    and ``NE`` element lines ``id 3 n1 n2 n3`` where ``n*`` are 1-based
    positions in the node list. Anything after the element block (boundary
    sections) is ignored.

    Parameters
    ----------
    path : str or path-like
        The mesh file.

    Returns
    -------
    MeshFileContents
        Node and element records.

    Raises
    ------
    MalformedMeshFile
        On a short read, an unparsable record or a non-triangular element.
    """
    path = os.fspath(path)
    with open(path) as f:
        lines = f.readlines()

    if len(lines) < 2:
        raise MalformedMeshFile(f"Mesh file {path} is missing its size header.")
    try:
        num_elements, num_nodes = (int(t) for t in lines[1].split()[:2])
    except ValueError as err:
        raise MalformedMeshFile(f"Bad size header in mesh file {path}.") from err

    node_lines = lines[2 : 2 + num_nodes]
    element_lines = lines[2 + num_nodes : 2 + num_nodes + num_elements]
    if len(node_lines) < num_nodes or len(element_lines) < num_elements:
        raise MalformedMeshFile(
            f"Mesh file {path} declares {num_nodes} nodes and {num_elements} "
            f"elements but ends early."
        )

    nodes = _parse_block(node_lines, 4, np.float64, path, "node")
    elements = _parse_block(element_lines, 5, np.int64, path, "element")

    if elements.size and np.any(elements[:, 1] != NODES_PER_ELEMENT):
        raise MalformedMeshFile(
            f"Mesh file {path} contains non-triangular elements; "
            "only 3-node elements are supported."
        )

    return MeshFileContents(
        title=lines[0].strip(),
        node_ids=nodes[:, 0].astype(np.int64),
        node_coords=nodes[:, 1:3].copy(),
        bathymetry=nodes[:, 3].copy(),
        element_ids=elements[:, 0].copy(),
        connectivity=elements[:, 2:5].copy(),
    )


def read_partition_table(path: Union[str, os.PathLike]) -> PartitionTable:
    """
    Read a fort.18 style table of signed global IDs for one rank.

    After one header line the file holds ``tag NE_G MNE NE_local`` followed by
    ``NE_local`` element IDs, then ``tag NP_G MNP NP_local`` followed by
    ``NP_local`` node IDs. Positive node IDs are resident on the rank; negative
    ones are ghosts. Further sections are ignored.

    Raises
    ------
    MalformedMeshFile
        On a short read or a non-integer entry.
    """
    path = os.fspath(path)
    with open(path) as f:
        f.readline()
        tokens = f.read().split()

    def _section(start: int, what: str) -> tuple[int, np.ndarray, int]:
        header = tokens[start : start + 4]
        if len(header) < 4:
            raise MalformedMeshFile(f"Partition table {path} ends before the {what} header.")
        try:
            num_global, num_local = int(header[1]), int(header[3])
            end = start + 4 + num_local
            ids = np.array([int(t) for t in tokens[start + 4 : end]], dtype=np.int64)
        except ValueError as err:
            raise MalformedMeshFile(
                f"Non-integer {what} entry in partition table {path}."
            ) from err
        if ids.size < num_local:
            raise MalformedMeshFile(
                f"Partition table {path} declares {num_local} {what} IDs "
                f"but holds only {ids.size}."
            )
        return num_global, ids, end

    ne_global, element_ids, cursor = _section(0, "element")
    np_global, node_ids, _ = _section(cursor, "node")
    return PartitionTable(ne_global, element_ids, np_global, node_ids)


def _read_only(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, copy=True)
    arr.flags.writeable = False
    return arr


class MeshPartition:
    """
    The view one rank holds of a distributed triangular mesh.

    Present nodes include halo copies owned elsewhere; ownership always comes
    from the partition catalog. Instances are immutable.

    Attributes
    ----------
    rank : int
        This rank.
    num_ranks : int
        Ranks in the job.
    node_ids : np.ndarray
        Global (1-based) ID of each present node.
    element_ids : np.ndarray
        Global ID of each present element.
    node_coords : np.ndarray
        ``(num_present_nodes, 2)`` coordinates.
    bathymetry : np.ndarray
        Per-node depth attribute from the mesh file.
    connectivity : np.ndarray
        ``(num_elements, 3)`` 0-based indices into the present nodes.
    node_owners : np.ndarray
        Zero-based owning rank of each present node.
    owned_to_present : np.ndarray
        Present index of the k-th owned node, in present scan order.
    num_global_nodes : int or None
        Node count of the whole mesh, when known.
    """

    def __init__(
        self,
        rank: int,
        num_ranks: int,
        node_ids: np.ndarray,
        element_ids: np.ndarray,
        node_coords: np.ndarray,
        connectivity: np.ndarray,
        node_owners: np.ndarray,
        owned_to_present: np.ndarray,
        bathymetry: Optional[np.ndarray] = None,
        num_global_nodes: Optional[int] = None,
    ) -> None:
        n_nodes = len(node_ids)
        if bathymetry is None:
            bathymetry = np.zeros(n_nodes)

        self.rank = int(rank)
        self.num_ranks = int(num_ranks)
        self.node_ids = _read_only(np.asarray(node_ids, dtype=np.int64))
        self.element_ids = _read_only(np.asarray(element_ids, dtype=np.int64))
        self.node_coords = _read_only(
            np.asarray(node_coords, dtype=np.float64).reshape(n_nodes, 2)
        )
        self.connectivity = _read_only(
            np.asarray(connectivity, dtype=np.int64).reshape(-1, NODES_PER_ELEMENT)
        )
        self.node_owners = _read_only(np.asarray(node_owners, dtype=np.int64))
        self.owned_to_present = _read_only(np.asarray(owned_to_present, dtype=np.int64))
        self.bathymetry = _read_only(np.asarray(bathymetry, dtype=np.float64))
        self.num_global_nodes = num_global_nodes

    @classmethod
    def build(
        cls,
        rank: int,
        num_ranks: int,
        catalog: PartitionCatalog,
        node_ids: np.ndarray,
        node_coords: np.ndarray,
        element_ids: np.ndarray,
        connectivity: np.ndarray,
        bathymetry: Optional[np.ndarray] = None,
        ownership_policy: str = "raise",
    ) -> "MeshPartition":
        """
        Construct one rank's partition from signed partitioner output.

        Parameters
        ----------
        rank, num_ranks : int
            This rank and the job size.
        catalog : PartitionCatalog
            Authoritative node ownership.
        node_ids : np.ndarray
            Signed global node IDs; positive means resident on this rank.
        node_coords : np.ndarray
            ``(n, 2)`` coordinates parallel to ``node_ids``.
        element_ids : np.ndarray
            Signed global element IDs.
        connectivity : np.ndarray
            ``(e, 3)`` 1-based positions in the present-node list.
        bathymetry : np.ndarray, optional
            Per-node scalar attribute.
        ownership_policy : {'raise', 'warn', 'ignore'}, default 'raise'
            What to do when the sign hint disagrees with the catalog.

        Raises
        ------
        IndexOutOfRange
            If connectivity references a node outside the present list.
        PartitionMismatch
            If the sign hint disagrees with the catalog and the policy is
            'raise', or the catalog spans more ranks than the job.
        NotFound
            If a node ID is not in the catalog.
        """
        if ownership_policy not in OWNERSHIP_POLICIES:
            raise ValueError(
                f"ownership_policy must be one of {OWNERSHIP_POLICIES}, "
                f"got '{ownership_policy}'."
            )
        if catalog.num_ranks > num_ranks:
            raise PartitionMismatch(
                f"Partition catalog spans {catalog.num_ranks} ranks "
                f"but the job has {num_ranks}."
            )

        signed_ids = np.asarray(node_ids, dtype=np.int64)
        global_ids = np.abs(signed_ids)
        n_nodes = global_ids.size

        if np.unique(global_ids).size != n_nodes:
            raise MalformedMeshFile(
                f"Rank {rank} lists a global node more than once."
            )

        conn = np.asarray(connectivity, dtype=np.int64).reshape(-1, NODES_PER_ELEMENT)
        if conn.size and (conn.min() < 1 or conn.max() > n_nodes):
            bad = conn[(conn < 1) | (conn > n_nodes)][0]
            raise IndexOutOfRange(
                f"Rank {rank} connectivity references node position {int(bad)}, "
                f"but only {n_nodes} nodes are present."
            )

        owners = catalog.owners_of(global_ids)
        owned = owners == rank

        resident_hint = signed_ids > 0
        disagree = np.flatnonzero(resident_hint != owned)
        if disagree.size and ownership_policy != "ignore":
            message = (
                f"Rank {rank}: {disagree.size} node(s) have a residency sign that "
                f"disagrees with the partition catalog (first: global node "
                f"{int(global_ids[disagree[0]])})."
            )
            if ownership_policy == "raise":
                raise PartitionMismatch(message)
            warnings.warn(message + " Using the catalog.")

        return cls(
            rank=rank,
            num_ranks=num_ranks,
            node_ids=global_ids,
            element_ids=np.abs(np.asarray(element_ids, dtype=np.int64)),
            node_coords=node_coords,
            connectivity=conn - 1,
            node_owners=owners,
            owned_to_present=np.flatnonzero(owned),
            bathymetry=bathymetry,
            num_global_nodes=catalog.num_global_nodes,
        )

    @classmethod
    def from_global_mesh(cls, path: Union[str, os.PathLike]) -> "MeshPartition":
        """
        Read an unpartitioned mesh file as a single fully owned partition.

        The node IDs of the file are used as global IDs.
        """
        contents = read_mesh_file(path)
        n_nodes = contents.node_ids.size
        conn = contents.connectivity
        if conn.size and (conn.min() < 1 or conn.max() > n_nodes):
            raise IndexOutOfRange(
                f"Global mesh {path} references a node beyond its {n_nodes} nodes."
            )
        return cls(
            rank=0,
            num_ranks=1,
            node_ids=contents.node_ids,
            element_ids=contents.element_ids,
            node_coords=contents.node_coords,
            connectivity=conn - 1,
            node_owners=np.zeros(n_nodes, dtype=np.int64),
            owned_to_present=np.arange(n_nodes),
            bathymetry=contents.bathymetry,
            num_global_nodes=n_nodes,
        )

    @property
    def num_present_nodes(self) -> int:
        return int(self.node_ids.size)

    @property
    def num_owned_nodes(self) -> int:
        return int(self.owned_to_present.size)

    @property
    def num_elements(self) -> int:
        return int(self.element_ids.size)

    @property
    def owned_node_ids(self) -> np.ndarray:
        """Global IDs of owned nodes in scan order."""
        return self.node_ids[self.owned_to_present]

    @property
    def owned_coords(self) -> np.ndarray:
        return self.node_coords[self.owned_to_present]

    @property
    def is_fully_owned(self) -> bool:
        return self.num_owned_nodes == self.num_present_nodes

    def owned_values(self, present_values: np.ndarray) -> np.ndarray:
        """
        Extract the owned-node values of a present-node array.

        Raises
        ------
        ValueError
            If ``present_values`` is not present-node sized.
        """
        values = np.asarray(present_values)
        if values.shape[0] != self.num_present_nodes:
            raise ValueError(
                f"Expected {self.num_present_nodes} present-node values, "
                f"got {values.shape[0]}."
            )
        return values[self.owned_to_present]

    def to_esmpy_mesh(self, coord_sys: Any = None) -> Any:
        """
        Create the parallel ``esmpy.Mesh`` for this partition.

        Must be called collectively when several ranks take part.

        Parameters
        ----------
        coord_sys : esmpy.CoordSys, optional
            Defaults to ``esmpy.CoordSys.SPH_DEG`` (coordinates are lon/lat).
        """
        import esmpy

        if coord_sys is None:
            coord_sys = esmpy.CoordSys.SPH_DEG

        mesh = esmpy.Mesh(parametric_dim=2, spatial_dim=2, coord_sys=coord_sys)
        # ESMF expects 32-bit IDs and a flat coordinate array
        mesh.add_nodes(
            self.num_present_nodes,
            self.node_ids.astype(np.int32),
            self.node_coords.astype(np.float64).ravel(),
            self.node_owners.astype(np.int32),
        )
        mesh.add_elements(
            self.num_elements,
            self.element_ids.astype(np.int32),
            np.full(self.num_elements, esmpy.MeshElemType.TRI, dtype=np.int32),
            self.connectivity.astype(np.int32).ravel(),
        )
        return mesh

    def to_dataset(self) -> xr.Dataset:
        """
        UGRID-flavoured dataset of this partition.

        Returns
        -------
        xr.Dataset
            Node coordinates, global IDs, owners, bathymetry and
            ``face_node_connectivity`` (0-based).
        """
        ds = xr.Dataset(
            data_vars={
                "bathymetry": (["n_node"], np.array(self.bathymetry)),
                "node_owner": (["n_node"], np.array(self.node_owners)),
                "face_node_connectivity": (
                    ["n_face", "n_max_face_nodes"],
                    np.array(self.connectivity),
                    {"cf_role": "face_node_connectivity", "start_index": 0},
                ),
            },
            coords={
                "node_lon": (
                    ["n_node"],
                    np.array(self.node_coords[:, 0]),
                    {"units": "degrees_east", "standard_name": "longitude"},
                ),
                "node_lat": (
                    ["n_node"],
                    np.array(self.node_coords[:, 1]),
                    {"units": "degrees_north", "standard_name": "latitude"},
                ),
                "global_node_id": (["n_node"], np.array(self.node_ids)),
                "global_element_id": (["n_face"], np.array(self.element_ids)),
            },
            attrs={"rank": self.rank, "num_ranks": self.num_ranks},
        )
        update_history(
            ds,
            f"Exported mesh partition ({self.num_present_nodes} present / "
            f"{self.num_owned_nodes} owned nodes).",
            rank=self.rank,
        )
        return ds

    def __repr__(self) -> str:
        return (
            f"MeshPartition(rank={self.rank}/{self.num_ranks}, "
            f"present_nodes={self.num_present_nodes}, "
            f"owned_nodes={self.num_owned_nodes}, elements={self.num_elements})"
        )


class PartitionedMeshDirectory:
    """
    On-disk layout of a partitioned mesh.

    ``root/partmesh.txt`` is the catalog, ``root/PE%04d/`` holds each rank's
    mesh file, partition table and hotstart, and ``root`` itself holds the
    global mesh and hotstart.
    """

    catalog_name = "partmesh.txt"
    mesh_name = "fort.14"
    table_name = "fort.18"
    hotstart_name = "fort.67"

    def __init__(self, root: Union[str, os.PathLike]) -> None:
        self.root = os.fspath(root)

    def rank_dir(self, rank: int) -> str:
        return os.path.join(self.root, pe_directory_name(rank))

    @property
    def catalog_path(self) -> str:
        return os.path.join(self.root, self.catalog_name)

    def mesh_path(self, rank: Optional[int] = None) -> str:
        base = self.root if rank is None else self.rank_dir(rank)
        return os.path.join(base, self.mesh_name)

    def table_path(self, rank: int) -> str:
        return os.path.join(self.rank_dir(rank), self.table_name)

    def hotstart_path(self, rank: Optional[int] = None) -> str:
        base = self.root if rank is None else self.rank_dir(rank)
        return os.path.join(base, self.hotstart_name)

    def read_catalog(
        self, num_global_nodes: Optional[int] = None, num_ranks: Optional[int] = None
    ) -> PartitionCatalog:
        return PartitionCatalog.from_file(
            self.catalog_path, num_global_nodes=num_global_nodes, num_ranks=num_ranks
        )

    def read_present_node_ids(self, rank: int) -> np.ndarray:
        """Unsigned global IDs of the nodes present on ``rank``, in file order."""
        return np.abs(read_partition_table(self.table_path(rank)).node_ids)

    def read_global_sizes(self, rank: int = 0) -> tuple[int, int]:
        """Global ``(node, element)`` counts declared in a rank's partition table."""
        table = read_partition_table(self.table_path(rank))
        return table.num_global_nodes, table.num_global_elements

    def read_partition(
        self,
        context: ExecutionContext,
        catalog: Optional[PartitionCatalog] = None,
        ownership_policy: str = "raise",
    ) -> MeshPartition:
        """
        Build the calling rank's partition.

        Raises
        ------
        MalformedMeshFile
            If mesh file and partition table disagree on entity counts.
        PartitionMismatch
            If the catalog size differs from the partition table's global count.
        """
        rank = context.rank
        table = read_partition_table(self.table_path(rank))
        contents = read_mesh_file(self.mesh_path(rank))

        if table.node_ids.size != contents.node_ids.size:
            raise MalformedMeshFile(
                f"Rank {rank}: partition table lists {table.node_ids.size} nodes, "
                f"mesh file has {contents.node_ids.size}."
            )
        if table.element_ids.size != contents.element_ids.size:
            raise MalformedMeshFile(
                f"Rank {rank}: partition table lists {table.element_ids.size} "
                f"elements, mesh file has {contents.element_ids.size}."
            )

        if catalog is None:
            catalog = self.read_catalog(
                num_global_nodes=table.num_global_nodes, num_ranks=context.size
            )
        elif catalog.num_global_nodes != table.num_global_nodes:
            raise PartitionMismatch(
                f"Catalog covers {catalog.num_global_nodes} nodes, partition "
                f"table of rank {rank} declares {table.num_global_nodes}."
            )

        partition = MeshPartition.build(
            rank=rank,
            num_ranks=context.size,
            catalog=catalog,
            node_ids=table.node_ids,
            node_coords=contents.node_coords,
            element_ids=table.element_ids,
            connectivity=contents.connectivity,
            bathymetry=contents.bathymetry,
            ownership_policy=ownership_policy,
        )
        logger.debug("Loaded %r from %s", partition, self.rank_dir(rank))
        return partition

    def read_global_mesh(self) -> MeshPartition:
        return MeshPartition.from_global_mesh(self.mesh_path())

    def __repr__(self) -> str:
        return f"PartitionedMeshDirectory({self.root!r})"
