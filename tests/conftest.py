import os
import sys
import threading

import numpy as np
import pytest


def setup_esmpy_mock():
    # Use real classes for the mock to avoid pickling recursion issues
    # and ensure isinstance works.

    class MockMesh:
        def __init__(self, *args, **kwargs):
            self.kwargs = kwargs
            self.node_ids = np.empty(0, dtype=np.int32)
            self.node_coords = np.empty(0)
            self.node_owners = np.empty(0, dtype=np.int32)
            self.element_ids = np.empty(0, dtype=np.int32)
            self.element_conn = np.empty(0, dtype=np.int32)

        def add_nodes(self, node_count, node_ids, node_coords, node_owners):
            self.node_ids = np.asarray(node_ids)
            self.node_coords = np.asarray(node_coords)
            self.node_owners = np.asarray(node_owners)

        def add_elements(self, element_count, element_ids, element_types, element_conn):
            self.element_ids = np.asarray(element_ids)
            self.element_types = np.asarray(element_types)
            self.element_conn = np.asarray(element_conn)

        @property
        def owned_count(self):
            # single PET: rank 0 owns what it is told it owns
            return int(np.count_nonzero(self.node_owners == 0))

        def destroy(self):
            pass

    class MockField:
        def __init__(self, *args, **kwargs):
            self.name = kwargs.get("name", "field")
            self.grid = args[0] if args else None
            size = self.grid.owned_count if self.grid is not None else 0
            self.data = np.zeros(size)

        def destroy(self):
            pass

    class MockRegrid:
        # BILINEAR copies the overlapping prefix and leaves the rest at 0;
        # NEAREST_STOD also fills the tail with the last source value.
        def __init__(self, srcfield, dstfield, **kwargs):
            self.kwargs = kwargs

        def __call__(self, srcfield, dstfield, **kwargs):
            src = srcfield.data
            dst = dstfield.data
            dst[...] = 0.0
            n = min(src.size, dst.size)
            dst[:n] = src[:n]
            if self.kwargs.get("regrid_method") == 2 and src.size and dst.size > n:
                dst[n:] = src[-1]
            return dstfield

        def destroy(self):
            pass

    class MockESMF:
        def __init__(self):
            self._is_mock = True

            class CoordSys:
                SPH_DEG = 1
                CART = 0

            self.CoordSys = CoordSys

            class RegridMethod:
                BILINEAR = 0
                CONSERVE = 1
                NEAREST_STOD = 2
                NEAREST_DTOS = 3
                PATCH = 4

            self.RegridMethod = RegridMethod

            class UnmappedAction:
                IGNORE = 1
                ERROR = 0

            self.UnmappedAction = UnmappedAction

            class MeshLoc:
                NODE = 0
                ELEMENT = 1

            self.MeshLoc = MeshLoc

            class MeshElemType:
                TRI = 5
                QUAD = 9

            self.MeshElemType = MeshElemType

            self.Mesh = MockMesh
            self.Field = MockField
            self.Regrid = MockRegrid
            self.__version__ = "8.6.0"

        def Manager(self, *args, **kwargs):
            class MockManager:
                def __enter__(self):
                    return self

                def __exit__(self, *args):
                    pass

            return MockManager()

        def pet_count(self):
            return 1

        def local_pet(self):
            return 0

    mock_esmpy = MockESMF()
    sys.modules["esmpy"] = mock_esmpy
    return mock_esmpy


try:
    import esmpy

    # Verify it's actually working
    if hasattr(esmpy, "_is_mock"):
        raise ImportError("Already mocked")
    esmpy.Manager(debug=False)
    HAS_REAL_ESMF = True
    print("\n--- Real ESMF detected in conftest.py ---")
except (ImportError, Exception) as e:
    HAS_REAL_ESMF = False
    print(f"\n--- Real ESMF NOT detected in conftest.py: {e} ---")
    setup_esmpy_mock()


from partregrid.context import ExecutionContext  # noqa: E402


class _SharedState:
    def __init__(self, size):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=10)
        self.slots = [None] * size


class ThreadCommunicator:
    """In-process communicator; one instance per rank thread."""

    def __init__(self, state, rank):
        self.state = state
        self.rank = rank

    def Get_rank(self):
        return self.rank

    def Get_size(self):
        return self.state.size

    def Gatherv(self, sendbuf, recvbuf, root=0):
        self.state.slots[self.rank] = np.array(sendbuf, copy=True)
        self.state.barrier.wait()
        if self.rank == root:
            data, counts, displs = recvbuf
            for r, chunk in enumerate(self.state.slots):
                if chunk.size != counts[r]:
                    self.state.barrier.abort()
                    raise ValueError(f"rank {r} sent {chunk.size}, expected {counts[r]}")
                data[displs[r] : displs[r] + counts[r]] = chunk
        self.state.barrier.wait()

    def gather(self, sendobj, root=0):
        self.state.slots[self.rank] = sendobj
        self.state.barrier.wait()
        result = list(self.state.slots) if self.rank == root else None
        self.state.barrier.wait()
        return result

    def bcast(self, obj, root=0):
        if self.rank == root:
            self.state.slots[root] = obj
        self.state.barrier.wait()
        result = self.state.slots[root]
        self.state.barrier.wait()
        return result

    def Barrier(self):
        self.state.barrier.wait()

    def Abort(self, errorcode=1):
        self.state.barrier.abort()
        raise SystemExit(errorcode)


@pytest.fixture
def run_ranks():
    """Run ``target(context)`` on ``size`` threads and return per-rank results."""

    def _run(size, target):
        state = _SharedState(size)
        results = [None] * size
        errors = [None] * size

        def worker(rank):
            try:
                results[rank] = target(ExecutionContext(ThreadCommunicator(state, rank)))
            except BaseException as err:
                errors[rank] = err
                state.barrier.abort()

        threads = [threading.Thread(target=worker, args=(r,)) for r in range(size)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        for err in errors:
            if err is not None and not isinstance(err, threading.BrokenBarrierError):
                raise err
        for err in errors:
            if err is not None:
                raise err
        return results

    return _run


def write_mesh_file(path, node_ids, coords, depth, element_ids, connectivity):
    with open(path, "w") as f:
        f.write("test mesh\n")
        f.write(f"{len(element_ids)} {len(node_ids)}\n")
        for nid, (x, y), d in zip(node_ids, coords, depth):
            f.write(f"{nid} {x:.17g} {y:.17g} {d:.17g}\n")
        for eid, (a, b, c) in zip(element_ids, connectivity):
            f.write(f"{eid} 3 {a} {b} {c}\n")


def write_partition_table(path, num_global_elements, element_ids, num_global_nodes, node_ids):
    with open(path, "w") as f:
        f.write("partition table\n")
        f.write(f"RES {num_global_elements} {len(element_ids)} {len(element_ids)}\n")
        for eid in element_ids:
            f.write(f"{eid}\n")
        f.write(f"RES {num_global_nodes} {len(node_ids)} {len(node_ids)}\n")
        for nid in node_ids:
            f.write(f"{nid}\n")


def write_partitioned_mesh(root, coords, triangles, element_ranks, owners, depth=None):
    """
    Lay out a partitioned mesh directory.

    ``triangles`` holds 1-based global node IDs, ``element_ranks`` the rank
    holding each element and ``owners`` the zero-based owner of each node.
    Every rank sees the nodes of its elements plus the nodes it owns, in
    ascending global ID, with the residency sign taken from ``owners``.
    """
    os.makedirs(root, exist_ok=True)
    coords = np.asarray(coords, dtype=float)
    triangles = np.asarray(triangles, dtype=int)
    element_ranks = np.asarray(element_ranks, dtype=int)
    owners = np.asarray(owners, dtype=int)
    num_nodes = len(coords)
    num_elements = len(triangles)
    if depth is None:
        depth = np.arange(num_nodes, dtype=float) + 1.0
    num_ranks = int(max(owners.max(), element_ranks.max())) + 1

    with open(os.path.join(root, "partmesh.txt"), "w") as f:
        f.write("\n".join(str(o + 1) for o in owners) + "\n")
    write_mesh_file(
        os.path.join(root, "fort.14"),
        np.arange(1, num_nodes + 1),
        coords,
        depth,
        np.arange(1, num_elements + 1),
        triangles,
    )

    for rank in range(num_ranks):
        rank_dir = os.path.join(root, f"PE{rank:04d}")
        os.makedirs(rank_dir, exist_ok=True)
        elements = np.flatnonzero(element_ranks == rank)
        present = np.union1d(
            triangles[elements].ravel(), np.flatnonzero(owners == rank) + 1
        ).astype(int)
        local = {gid: i + 1 for i, gid in enumerate(present)}
        local_conn = [[local[g] for g in triangles[e]] for e in elements]
        signed = [gid if owners[gid - 1] == rank else -gid for gid in present]
        write_mesh_file(
            os.path.join(rank_dir, "fort.14"),
            np.arange(1, present.size + 1),
            coords[present - 1],
            depth[present - 1],
            np.arange(1, elements.size + 1),
            local_conn,
        )
        write_partition_table(
            os.path.join(rank_dir, "fort.18"),
            num_elements,
            elements + 1,
            num_nodes,
            signed,
        )
    return root


# Unit square split along its diagonal; rank 0 owns nodes 1-2, rank 1 owns 3-4.
SQUARE_COORDS = [[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]]
SQUARE_TRIANGLES = [[1, 2, 3], [2, 4, 3]]


@pytest.fixture
def two_rank_square(tmp_path):
    return write_partitioned_mesh(
        str(tmp_path / "square"),
        SQUARE_COORDS,
        SQUARE_TRIANGLES,
        element_ranks=[0, 1],
        owners=[0, 0, 1, 1],
    )


@pytest.fixture
def serial_square(tmp_path):
    return write_partitioned_mesh(
        str(tmp_path / "serial"),
        SQUARE_COORDS,
        SQUARE_TRIANGLES,
        element_ranks=[0, 0],
        owners=[0, 0, 0, 0],
    )


@pytest.fixture
def mesh_writer():
    return write_partitioned_mesh
