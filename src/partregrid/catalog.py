from __future__ import annotations

import os
from typing import Optional, Union

import numpy as np

from partregrid.exceptions import MalformedPartitionFile, NotFound, PartitionMismatch


class PartitionCatalog:
    """
    Global node to owning-rank assignment.

    Node IDs are 1-based; ranks are zero-based.

    Parameters
    ----------
    owners : array-like of int
        Zero-based owning rank of global node ``i + 1`` at position ``i``.
    num_ranks : int, optional
        Number of ranks in the job. Defaults to ``max(owners) + 1``.

    Raises
    ------
    PartitionMismatch
        If an owner is negative or not below ``num_ranks``.
    """

    def __init__(self, owners: np.ndarray, num_ranks: Optional[int] = None) -> None:
        owners = np.asarray(owners, dtype=np.int64).ravel()
        if owners.size and owners.min() < 0:
            raise PartitionMismatch("Partition catalog contains a negative rank.")

        inferred = int(owners.max()) + 1 if owners.size else 0
        if num_ranks is None:
            num_ranks = inferred
        elif inferred > num_ranks:
            raise PartitionMismatch(
                f"Partition catalog assigns nodes to rank {inferred - 1} "
                f"but the job has only {num_ranks} ranks."
            )

        owners.flags.writeable = False
        self._owners = owners
        self.num_ranks = int(num_ranks)

    @classmethod
    def from_file(
        cls,
        path: Union[str, os.PathLike],
        num_global_nodes: Optional[int] = None,
        num_ranks: Optional[int] = None,
    ) -> "PartitionCatalog":
        """
        Load a catalog of 1-based rank labels, one per global node.

        Parameters
        ----------
        path : str or path-like
            Whitespace or newline separated labels.
        num_global_nodes : int, optional
            Declared global node count to check the entry count against.
        num_ranks : int, optional
            Declared number of ranks.

        Raises
        ------
        MalformedPartitionFile
            If a token is not an integer, a label is below 1, or the entry
            count differs from ``num_global_nodes``.
        """
        with open(path) as f:
            tokens = f.read().split()
        try:
            labels = np.array([int(t) for t in tokens], dtype=np.int64)
        except ValueError as err:
            raise MalformedPartitionFile(
                f"Non-integer rank label in partition catalog {path}: {err}"
            ) from err

        if num_global_nodes is not None and labels.size != num_global_nodes:
            raise MalformedPartitionFile(
                f"Partition catalog {path} has {labels.size} entries, "
                f"expected {num_global_nodes}."
            )
        if labels.size and labels.min() < 1:
            raise MalformedPartitionFile(
                f"Partition catalog {path} contains a rank label below 1."
            )
        return cls(labels - 1, num_ranks=num_ranks)

    @property
    def owners(self) -> np.ndarray:
        """Read-only zero-based owners indexed by ``global_id - 1``."""
        return self._owners

    @property
    def num_global_nodes(self) -> int:
        return int(self._owners.size)

    def owner_of(self, global_id: int) -> int:
        """
        Owning rank of one global node.

        Raises
        ------
        NotFound
            If ``global_id`` is outside ``1..num_global_nodes``.
        """
        if not 1 <= global_id <= self._owners.size:
            raise NotFound(
                f"Global node {global_id} is outside the catalog "
                f"(1..{self._owners.size})."
            )
        return int(self._owners[global_id - 1])

    def owners_of(self, global_ids: np.ndarray) -> np.ndarray:
        """Vectorised :meth:`owner_of`."""
        ids = np.asarray(global_ids, dtype=np.int64)
        if ids.size:
            bad = (ids < 1) | (ids > self._owners.size)
            if bad.any():
                raise NotFound(
                    f"Global node {int(ids[bad][0])} is outside the catalog "
                    f"(1..{self._owners.size})."
                )
        return self._owners[ids - 1]

    def owned_counts(self, num_ranks: Optional[int] = None) -> np.ndarray:
        """Number of nodes owned by each rank."""
        if num_ranks is None:
            num_ranks = self.num_ranks
        if num_ranks < self.num_ranks:
            raise PartitionMismatch(
                f"Catalog spans {self.num_ranks} ranks, cannot count for {num_ranks}."
            )
        return np.bincount(self._owners, minlength=num_ranks).astype(np.int64)

    def displacements(self, num_ranks: Optional[int] = None) -> np.ndarray:
        """Exclusive prefix sum of :meth:`owned_counts` in rank order."""
        counts = self.owned_counts(num_ranks)
        displs = np.zeros_like(counts)
        np.cumsum(counts[:-1], out=displs[1:])
        return displs

    def owned_global_ids(self, rank: int) -> np.ndarray:
        """Ascending global IDs owned by ``rank``."""
        return np.flatnonzero(self._owners == rank) + 1

    def __len__(self) -> int:
        return self.num_global_nodes

    def __repr__(self) -> str:
        return (
            f"PartitionCatalog(num_global_nodes={self.num_global_nodes}, "
            f"num_ranks={self.num_ranks})"
        )
