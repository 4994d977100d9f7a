from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Optional, Protocol

import numpy as np
import xarray as xr
from scipy.sparse import coo_matrix
from scipy.spatial import cKDTree

from partregrid.core import _matmul, _resolved_mask, _stitch_core
from partregrid.exceptions import RegridFailed
from partregrid.utils import update_history

if TYPE_CHECKING:
    from scipy.sparse import csr_matrix

    from partregrid.hotstart import HotstartRecord
    from partregrid.mesh import MeshPartition

logger = logging.getLogger(__name__)


class Operator(Protocol):
    """Linear map from owned source values to owned destination values."""

    def apply(self, values: np.ndarray) -> np.ndarray: ...


class Interpolator(Protocol):
    """Factory of regrid operators between two partitions."""

    def build_operator(
        self,
        source: MeshPartition,
        destination: MeshPartition,
        method: str,
        unmapped_action: str = "ignore",
    ) -> Operator: ...


class WeightsOperator:
    """
    Operator backed by a sparse weight matrix.

    Parameters
    ----------
    weights : scipy.sparse matrix
        Destination x source weights; converted to CSR.
    """

    def __init__(self, weights: Any) -> None:
        self.weights: csr_matrix = weights.tocsr()

    @classmethod
    def from_weights_dict(
        cls, weights: dict, num_destination: int, num_source: int
    ) -> "WeightsOperator":
        """
        Build from an ESMF style weights dictionary.

        Parameters
        ----------
        weights : dict
            ``row_dst`` and ``col_src`` (1-based) and ``weights``.
        num_destination, num_source : int
            Matrix shape.
        """
        rows = np.asarray(weights["row_dst"]) - 1
        cols = np.asarray(weights["col_src"]) - 1
        matrix = coo_matrix(
            (np.asarray(weights["weights"]), (rows, cols)),
            shape=(num_destination, num_source),
        )
        return cls(matrix)

    @property
    def shape(self) -> tuple[int, int]:
        return self.weights.shape

    def apply(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        if values.shape[-1] != self.weights.shape[1]:
            raise RegridFailed(
                f"Operator expects {self.weights.shape[1]} source values, "
                f"got {values.shape[-1]}."
            )
        return _matmul(self.weights, values)

    def __repr__(self) -> str:
        return f"WeightsOperator(shape={self.shape}, nnz={self.weights.nnz})"


def _present_to_owned(partition: MeshPartition) -> np.ndarray:
    index = np.full(partition.num_present_nodes, -1, dtype=np.int64)
    index[partition.owned_to_present] = np.arange(partition.num_owned_nodes)
    return index


class ScipyMeshInterpolator:
    """
    Serial interpolator computing node weights with SciPy.

    ``bilinear`` uses barycentric weights on the source triangle containing
    each destination node; nodes outside every triangle get an empty row.
    ``nearest_s2d`` copies the closest source node. Distances are planar in
    the mesh coordinates.

    Parameters
    ----------
    candidates : int, default 8
        Triangles, nearest by centroid, searched first for each destination
        node. Nodes none of them contain fall back to a search of every
        triangle.
    edge_tolerance : float, default 1e-10
        Barycentric slack that still counts as inside a triangle.
    search_chunk : int, default 1_000_000
        Point-triangle pairs tested at once by the fallback search.
    """

    methods = ("bilinear", "nearest_s2d")

    def __init__(
        self,
        candidates: int = 8,
        edge_tolerance: float = 1e-10,
        search_chunk: int = 1_000_000,
    ) -> None:
        if candidates < 1:
            raise ValueError(f"candidates must be positive, got {candidates}.")
        self.candidates = candidates
        self.edge_tolerance = edge_tolerance
        self.search_chunk = search_chunk

    def build_operator(
        self,
        source: MeshPartition,
        destination: MeshPartition,
        method: str,
        unmapped_action: str = "ignore",
    ) -> WeightsOperator:
        """
        Weight matrix from owned source to owned destination nodes.

        Raises
        ------
        RegridFailed
            If the source partition holds halo nodes; a serial stencil
            cannot see values owned by other ranks.
        ValueError
            For an unknown method or unmapped action.
        """
        if method not in self.methods:
            raise ValueError(
                f"Method '{method}' is not supported. "
                f"Available methods are: {', '.join(self.methods)}"
            )
        if unmapped_action != "ignore":
            raise ValueError(
                f"ScipyMeshInterpolator only supports unmapped_action='ignore', "
                f"got '{unmapped_action}'."
            )
        if not source.is_fully_owned:
            raise RegridFailed(
                f"ScipyMeshInterpolator needs a fully owned source partition; "
                f"rank {source.rank} owns {source.num_owned_nodes} of "
                f"{source.num_present_nodes} present nodes."
            )

        points = destination.owned_coords
        if method == "bilinear":
            rows, cols, data = self._barycentric(source, points)
        else:
            rows, cols, data = self._nearest(source, points)

        matrix = coo_matrix(
            (data, (rows, cols)),
            shape=(destination.num_owned_nodes, source.num_owned_nodes),
        )
        logger.debug(
            "Built %s weights: %d destination nodes, %d nonzeros",
            method,
            destination.num_owned_nodes,
            matrix.nnz,
        )
        return WeightsOperator(matrix)

    def _nearest(
        self, source: MeshPartition, points: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        if source.num_owned_nodes == 0 or len(points) == 0:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.int64), np.empty(0)
        tree = cKDTree(source.owned_coords)
        _, nearest = tree.query(points, k=1)
        rows = np.arange(len(points))
        return rows, np.asarray(nearest, dtype=np.int64), np.ones(len(points))

    def _barycentric(
        self, source: MeshPartition, points: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        tri = source.connectivity
        if tri.shape[0] == 0 or len(points) == 0:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.int64), np.empty(0)

        xy = source.node_coords
        ntri = tri.shape[0]
        centroids = xy[tri].mean(axis=1)
        k = min(self.candidates, ntri)
        _, cand = cKDTree(centroids).query(points, k=k)
        cand = np.asarray(cand).reshape(len(points), k)
        hit, elements, weights = self._locate(xy, tri, points, cand)

        # On graded meshes the nearest centroids may all belong to small
        # neighbours of the large triangle that holds the point.
        lo, hi = xy.min(axis=0), xy.max(axis=0)
        in_box = np.all((points >= lo) & (points <= hi), axis=1)
        missed = np.flatnonzero(~hit & in_box)
        if missed.size and k < ntri:
            every = np.arange(ntri)
            step = max(1, self.search_chunk // ntri)
            for start in range(0, missed.size, step):
                idx = missed[start : start + step]
                sub = np.broadcast_to(every, (idx.size, ntri))
                hit[idx], elements[idx], weights[idx] = self._locate(
                    xy, tri, points[idx], sub
                )

        found = np.flatnonzero(hit)
        cols = _present_to_owned(source)[tri[elements[found]]]
        return np.repeat(found, 3), cols.ravel(), weights[found].ravel()

    def _locate(
        self, xy: np.ndarray, tri: np.ndarray, points: np.ndarray, cand: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """First triangle in each row of ``cand`` containing the point, with its weights."""
        verts = xy[tri[cand]]  # (n_dst, k, 3, 2)
        a = verts[..., 0, :]
        v0 = verts[..., 1, :] - a
        v1 = verts[..., 2, :] - a
        v2 = points[:, None, :] - a
        den = v0[..., 0] * v1[..., 1] - v1[..., 0] * v0[..., 1]
        with np.errstate(divide="ignore", invalid="ignore"):
            l1 = (v2[..., 0] * v1[..., 1] - v1[..., 0] * v2[..., 1]) / den
            l2 = (v0[..., 0] * v2[..., 1] - v2[..., 0] * v0[..., 1]) / den
        lam = np.stack([1.0 - l1 - l2, l1, l2], axis=-1)

        inside = (den != 0) & np.all(lam >= -self.edge_tolerance, axis=-1)
        rows = np.arange(len(points))
        first = inside.argmax(axis=1)
        return inside.any(axis=1), cand[rows, first], lam[rows, first]


class ESMPyOperator:
    """
    Operator wrapping a precomputed ``esmpy.Regrid`` between node fields.

    Collective: every rank must call :meth:`apply` together.
    """

    def __init__(self, regrid: Any, src_field: Any, dst_field: Any) -> None:
        self.regrid = regrid
        self.src_field = src_field
        self.dst_field = dst_field

    def apply(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        if values.ndim > 1:
            return np.stack([self.apply(row) for row in values])

        expected = np.asarray(self.src_field.data).size
        if values.size != expected:
            raise RegridFailed(
                f"Operator expects {expected} source values, got {values.size}."
            )
        self.src_field.data[...] = values
        try:
            # zero_region defaults to TOTAL, so unmapped destinations read 0
            self.regrid(self.src_field, self.dst_field)
        except Exception as err:
            raise RegridFailed(f"ESMF regrid failed: {err}") from err
        return np.array(self.dst_field.data, dtype=np.float64, copy=True)

    def destroy(self) -> None:
        for obj in (self.regrid, self.src_field, self.dst_field):
            obj.destroy()


class ESMPyInterpolator:
    """
    Distributed interpolator backed by ESMPy.

    Partitions become parallel ``esmpy.Mesh`` objects; operators regrid
    node-located fields with unmapped destinations ignored.

    Parameters
    ----------
    coord_sys : esmpy.CoordSys, optional
        Mesh coordinate system, ``SPH_DEG`` by default.
    """

    def __init__(self, coord_sys: Any = None) -> None:
        try:
            import esmpy
        except ImportError as err:
            raise ImportError(
                "ESMPy is required for ESMPyInterpolator. "
                "Install it via `conda install -c conda-forge esmpy`."
            ) from err

        self._manager = esmpy.Manager(debug=False)
        self.coord_sys = coord_sys
        self.method_map = {
            "bilinear": esmpy.RegridMethod.BILINEAR,
            "nearest_s2d": esmpy.RegridMethod.NEAREST_STOD,
            "nearest_d2s": esmpy.RegridMethod.NEAREST_DTOS,
            "patch": esmpy.RegridMethod.PATCH,
        }
        self.unmapped_action_map = {
            "ignore": esmpy.UnmappedAction.IGNORE,
            "error": getattr(esmpy.UnmappedAction, "ERROR", None),
        }
        # keyed by id; the partition is kept alive so its id cannot be reused
        self._meshes: dict[int, tuple[MeshPartition, Any]] = {}

    def _mesh(self, partition: MeshPartition) -> Any:
        key = id(partition)
        if key not in self._meshes:
            self._meshes[key] = (partition, partition.to_esmpy_mesh(self.coord_sys))
        return self._meshes[key][1]

    def build_operator(
        self,
        source: MeshPartition,
        destination: MeshPartition,
        method: str,
        unmapped_action: str = "ignore",
    ) -> ESMPyOperator:
        """
        Build the ESMF regrid between node fields of both partitions.

        Collective across all ranks.

        Raises
        ------
        ValueError
            For an unknown method or unmapped action.
        RegridFailed
            If ESMF cannot construct the operator.
        """
        import esmpy

        try:
            regrid_method = self.method_map[method]
        except KeyError:
            available_methods = ", ".join(self.method_map.keys())
            raise ValueError(
                f"Method '{method}' is not supported. "
                f"Available methods are: {available_methods}"
            )
        action = self.unmapped_action_map.get(unmapped_action)
        if action is None:
            raise ValueError(f"Unsupported unmapped_action '{unmapped_action}'.")

        start_time = time.perf_counter()
        try:
            src_field = esmpy.Field(
                self._mesh(source), name="src", meshloc=esmpy.MeshLoc.NODE
            )
            dst_field = esmpy.Field(
                self._mesh(destination), name="dst", meshloc=esmpy.MeshLoc.NODE
            )
            regrid = esmpy.Regrid(
                src_field,
                dst_field,
                regrid_method=regrid_method,
                unmapped_action=action,
            )
        except Exception as err:
            raise RegridFailed(
                f"ESMF could not build the {method} operator: {err}"
            ) from err

        logger.debug(
            "Rank %d built ESMF %s operator in %.3fs",
            source.rank,
            method,
            time.perf_counter() - start_time,
        )
        return ESMPyOperator(regrid, src_field, dst_field)

    def destroy(self) -> None:
        for _, mesh in self._meshes.values():
            mesh.destroy()
        self._meshes.clear()


class DualPathRegridder:
    """
    Regrid node values with a primary method and a masked fallback.

    Destination nodes the primary operator fully covers take its result;
    every other destination node takes the fallback result.

    Parameters
    ----------
    source, destination : MeshPartition
        This rank's partitions of the two meshes.
    interpolator : Interpolator, optional
        Operator factory. Defaults to :class:`ESMPyInterpolator`.
    primary_method : str, default 'bilinear'
    fallback_method : str, default 'nearest_s2d'
    tolerance : float, default 1e-8
        A destination node is resolved when the primary operator maps an
        all-ones field to one within this tolerance.

    Notes
    -----
    Construction and every :meth:`stitch` call are collective when the
    interpolator is distributed.
    """

    def __init__(
        self,
        source: MeshPartition,
        destination: MeshPartition,
        interpolator: Optional[Interpolator] = None,
        primary_method: str = "bilinear",
        fallback_method: str = "nearest_s2d",
        tolerance: float = 1e-8,
    ) -> None:
        if interpolator is None:
            interpolator = ESMPyInterpolator()

        self.source = source
        self.destination = destination
        self.interpolator = interpolator
        self.primary_method = primary_method
        self.fallback_method = fallback_method
        self.tolerance = tolerance

        start_time = time.perf_counter()
        self.primary = interpolator.build_operator(
            source, destination, primary_method, unmapped_action="ignore"
        )
        self.fallback = interpolator.build_operator(
            source, destination, fallback_method, unmapped_action="ignore"
        )

        self._probe = self._apply(self.primary, np.ones(source.num_owned_nodes))
        resolved = _resolved_mask(self._probe, tolerance)
        resolved.flags.writeable = False
        self._resolved = resolved
        self.generation_time = time.perf_counter() - start_time

        logger.debug(
            "Rank %d: %d of %d destination nodes unresolved by %s, filled by %s",
            destination.rank,
            self.unresolved_count,
            destination.num_owned_nodes,
            primary_method,
            fallback_method,
        )

    def _apply(self, operator: Operator, values: np.ndarray) -> np.ndarray:
        result = np.asarray(operator.apply(values))
        if result.shape[-1] != self.destination.num_owned_nodes:
            raise RegridFailed(
                f"Operator returned {result.shape[-1]} destination values, "
                f"expected {self.destination.num_owned_nodes}."
            )
        return result

    @property
    def resolved_mask(self) -> np.ndarray:
        """Read-only boolean mask over owned destination nodes."""
        return self._resolved

    @property
    def unresolved_count(self) -> int:
        return int(self._resolved.size - np.count_nonzero(self._resolved))

    def _owned_source_values(self, src_values: np.ndarray) -> np.ndarray:
        values = np.asarray(src_values, dtype=np.float64)
        n = values.shape[-1]
        if n == self.source.num_owned_nodes:
            return values
        if n == self.source.num_present_nodes:
            return values[..., self.source.owned_to_present]
        raise ValueError(
            f"Expected {self.source.num_present_nodes} present or "
            f"{self.source.num_owned_nodes} owned source values, got {n}."
        )

    def stitch(self, src_values: np.ndarray) -> np.ndarray:
        """
        Regrid one field (or a stack of fields along the leading axis).

        Parameters
        ----------
        src_values : np.ndarray
            Present-node or owned-node sized source values.

        Returns
        -------
        np.ndarray
            Values at the owned destination nodes, in owned scan order.

        Raises
        ------
        RegridFailed
            If an operator fails or returns the wrong size.
        """
        buf = self._owned_source_values(src_values)
        mapped = self._apply(self.primary, buf)
        unmapped = self._apply(self.fallback, buf)
        return _stitch_core(mapped, unmapped, self._resolved)

    def regrid_record(self, record: HotstartRecord) -> dict[str, np.ndarray]:
        """Regrid every nodal float array of a hotstart record."""
        return {
            name: self.stitch(getattr(record, name))
            for name in record.nodal_float_fields()
        }

    def diagnostics(self) -> xr.Dataset:
        """
        Per destination node diagnostics of the primary operator.

        Returns
        -------
        xr.Dataset
            - weight_sum: primary operator applied to ones.
            - resolved: 1 where the primary result is used, 0 elsewhere.
        """
        coords = self.destination.owned_coords
        ds = xr.Dataset(
            data_vars={
                "weight_sum": (["node"], np.array(self._probe)),
                "resolved": (["node"], self._resolved.astype(np.int8)),
            },
            coords={
                "node_lon": (["node"], coords[:, 0]),
                "node_lat": (["node"], coords[:, 1]),
                "global_node_id": (["node"], np.array(self.destination.owned_node_ids)),
            },
            attrs={
                "primary_method": self.primary_method,
                "fallback_method": self.fallback_method,
                "tolerance": self.tolerance,
                "unresolved_count": self.unresolved_count,
            },
        )
        update_history(
            ds,
            f"Generated {self.primary_method}/{self.fallback_method} regrid diagnostics.",
            rank=self.destination.rank,
        )
        return ds

    def destroy(self) -> None:
        """Release backend resources held by the operators."""
        for operator in (self.primary, self.fallback):
            destroy = getattr(operator, "destroy", None)
            if destroy is not None:
                destroy()
        destroy = getattr(self.interpolator, "destroy", None)
        if destroy is not None:
            destroy()

    def __repr__(self) -> str:
        return (
            f"DualPathRegridder({self.primary_method} -> {self.fallback_method}, "
            f"destination_nodes={self.destination.num_owned_nodes}, "
            f"unresolved={self.unresolved_count})"
        )
