from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

import numpy as np

from partregrid.catalog import PartitionCatalog
from partregrid.exceptions import PartitionMismatch
from partregrid.hotstart import HotstartRecord

if TYPE_CHECKING:
    from partregrid.context import ExecutionContext
    from partregrid.mesh import MeshPartition, PartitionedMeshDirectory

logger = logging.getLogger(__name__)


class CrossRankConsolidator:
    """
    Assemble a global node array on one rank from owned values on every rank.

    Each rank contributes its owned values in owned scan order. The root
    receives them with a variable-count gather and places them by replaying
    each rank's present-node table against the catalog, so the result does
    not depend on message arrival.

    Parameters
    ----------
    context : ExecutionContext
        Rank identity and communicator.
    catalog : PartitionCatalog
        Authoritative node ownership.
    layout : PartitionedMeshDirectory
        Source of every rank's present-node table; read on the root only.
    partition : MeshPartition, optional
        This rank's partition. When given, present-sized input is accepted.

    Notes
    -----
    :meth:`gather` is collective: all ranks must call it the same number of
    times in the same order.
    """

    def __init__(
        self,
        context: ExecutionContext,
        catalog: PartitionCatalog,
        layout: PartitionedMeshDirectory,
        partition: Optional[MeshPartition] = None,
    ) -> None:
        if catalog.num_ranks > context.size:
            raise PartitionMismatch(
                f"Partition catalog spans {catalog.num_ranks} ranks "
                f"but the job has {context.size}."
            )
        self.context = context
        self.catalog = catalog
        self.layout = layout
        self.partition = partition
        self._counts = catalog.owned_counts(context.size)
        self._displs = catalog.displacements(context.size)
        self._placement: Optional[np.ndarray] = None

    def _global_placement(self) -> np.ndarray:
        """Zero-based global index of every entry of the receive buffer."""
        if self._placement is not None:
            return self._placement

        segments = []
        for rank in range(self.context.size):
            ids = self.layout.read_present_node_ids(rank)
            owned = ids[self.catalog.owners_of(ids) == rank]
            if owned.size != self._counts[rank]:
                raise PartitionMismatch(
                    f"Rank {rank} lists {owned.size} owned nodes in its partition "
                    f"table but the catalog assigns it {self._counts[rank]}."
                )
            segments.append(owned - 1)
        placement = np.concatenate(segments) if segments else np.empty(0, np.int64)
        self._placement = placement
        return placement

    def _local_send_buffer(self, local_values: np.ndarray) -> np.ndarray:
        values = np.asarray(local_values, dtype=np.float64)
        partition = self.partition
        if (
            partition is not None
            and values.shape[0] == partition.num_present_nodes
            and not partition.is_fully_owned
        ):
            values = partition.owned_values(values)

        expected = self._counts[self.context.rank]
        if values.size != expected:
            raise PartitionMismatch(
                f"Rank {self.context.rank} contributes {values.size} values, "
                f"the catalog assigns it {expected} nodes."
            )
        return np.ascontiguousarray(values)

    def gather(
        self,
        local_values: np.ndarray,
        num_global_nodes: Optional[int] = None,
        root: int = 0,
    ) -> Optional[np.ndarray]:
        """
        Gather one node field onto ``root``.

        Parameters
        ----------
        local_values : np.ndarray
            Owned-sized values, or present-sized when a partition was given.
        num_global_nodes : int, optional
            Expected global size, checked against the catalog.
        root : int, default 0
            Receiving rank.

        Returns
        -------
        np.ndarray or None
            Global values indexed by ``global_id - 1`` on root, None elsewhere.

        Raises
        ------
        PartitionMismatch
            If the sizes disagree with the catalog.
        """
        if num_global_nodes is not None and num_global_nodes != self.catalog.num_global_nodes:
            raise PartitionMismatch(
                f"Requested {num_global_nodes} global nodes but the catalog "
                f"covers {self.catalog.num_global_nodes}."
            )
        if not 0 <= root < self.context.size:
            raise ValueError(f"Root rank {root} is outside 0..{self.context.size - 1}.")

        sendbuf = self._local_send_buffer(local_values)
        comm = self.context.comm

        if not self.context.is_root(root):
            comm.Gatherv(sendbuf, None, root=root)
            return None

        counts = self._counts
        displs = self._displs
        temp = np.empty(int(counts.sum()), dtype=np.float64)
        comm.Gatherv(sendbuf, [temp, counts.tolist(), displs.tolist()], root=root)

        result = np.zeros(self.catalog.num_global_nodes, dtype=np.float64)
        result[self._global_placement()] = temp
        logger.debug(
            "Gathered %d node values from %d ranks onto rank %d",
            temp.size,
            self.context.size,
            root,
        )
        return result

    def gather_hotstart(
        self,
        record: HotstartRecord,
        num_global_nodes: int,
        num_global_elements: int,
        root: int = 0,
    ) -> Optional[HotstartRecord]:
        """
        Gather every nodal float array of a per-rank record onto ``root``.

        The global record keeps the header of ``record`` and is sized to the
        global mesh (see :meth:`HotstartRecord.derive_global`).

        Returns
        -------
        HotstartRecord or None
            On root; None elsewhere.
        """
        gathered = {
            name: self.gather(getattr(record, name), num_global_nodes, root)
            for name in record.nodal_float_fields()
        }
        if not self.context.is_root(root):
            return None

        global_record = HotstartRecord.derive_global(
            record, num_global_nodes, num_global_elements
        )
        for name, values in gathered.items():
            setattr(global_record, name, values)
        logger.info(
            "Assembled global hotstart: %d nodes, %d elements, %d fields",
            num_global_nodes,
            num_global_elements,
            len(gathered),
        )
        return global_record
