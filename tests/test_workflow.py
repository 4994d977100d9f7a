import os

import numpy as np
import pytest
from scipy.sparse import coo_matrix

from partregrid import (
    ExecutionContext,
    HotstartCodec,
    HotstartRecord,
    MalformedHotstartFile,
    PartitionedMeshDirectory,
    ScipyMeshInterpolator,
    WeightsOperator,
    read_mesh_file,
    regrid_hotstart,
)

SQUARE_COORDS = [[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]]
SQUARE_TRIANGLES = [[1, 2, 3], [2, 4, 3]]


class MatchingIdInterpolator:
    """Maps each owned destination node onto the source node with its global ID."""

    def build_operator(self, source, destination, method, unmapped_action="ignore"):
        src_ids = source.owned_node_ids
        dst_ids = destination.owned_node_ids
        rows, cols = np.nonzero(dst_ids[:, None] == src_ids[None, :])
        return WeightsOperator(
            coo_matrix(
                (np.ones(rows.size), (rows, cols)), shape=(dst_ids.size, src_ids.size)
            )
        )


def _write_source_hotstarts(root, context_size, imhs=0):
    layout = PartitionedMeshDirectory(root)
    codec = HotstartCodec()
    for rank in range(context_size):
        node_ids = layout.read_present_node_ids(rank)
        num_elements = read_mesh_file(layout.mesh_path(rank)).element_ids.size
        record = HotstartRecord.allocate(
            node_ids.size,
            num_elements,
            format_version=1050624,
            imhs=imhs,
            time=3600.0,
            iths=360,
            nscoue=9,
        )
        record.eta1[:] = node_ids
        record.uu2[:] = -node_ids
        if record.ch1 is not None:
            record.ch1[:] = 2.0 * node_ids
        codec.write_file(record, layout.hotstart_path(rank))


def test_serial_regrid_hotstart(serial_square, tmp_path, mesh_writer):
    # eta1 = x + 2y at the unit square corners
    layout = PartitionedMeshDirectory(serial_square)
    codec = HotstartCodec()
    record = HotstartRecord.allocate(
        4, 2, format_version=1050624, imhs=0, time=7200.0, iths=720, igep=5
    )
    record.eta1[:] = [0.0, 1.0, 2.0, 3.0]
    codec.write_file(record, layout.hotstart_path(0))

    destination = mesh_writer(
        str(tmp_path / "destination"),
        [[0.25, 0.25], [0.75, 0.25], [0.25, 0.75], [2.0, 2.0]],
        [[1, 2, 3], [2, 4, 3]],
        element_ranks=[0, 0],
        owners=[0, 0, 0, 0],
    )

    result = regrid_hotstart(
        ExecutionContext.serial(),
        serial_square,
        destination,
        interpolator=ScipyMeshInterpolator(),
        write_text=True,
    )

    np.testing.assert_allclose(result.eta1, [0.75, 1.25, 1.75, 3.0])
    output = os.path.join(destination, "fort.67")
    assert os.path.exists(output + ".txt")

    written = codec.read_file(output, 4, 2)
    np.testing.assert_allclose(written.eta1, result.eta1)
    assert written.format_version == 1050624
    assert written.time == 7200.0
    assert written.iths == 720
    assert (written.np_global, written.ne_global) == (4, 2)
    assert (written.np_active, written.ne_active) == (4, 2)
    np.testing.assert_array_equal(written.nnodecode, [1, 1, 1, 1])
    np.testing.assert_array_equal(written.noff, [1, 1])
    assert written.igep == 0


def test_distributed_regrid_hotstart(two_rank_square, tmp_path, mesh_writer, run_ranks):
    _write_source_hotstarts(two_rank_square, 2, imhs=10)
    destination = mesh_writer(
        str(tmp_path / "destination"),
        SQUARE_COORDS,
        SQUARE_TRIANGLES,
        element_ranks=[0, 1],
        owners=[0, 0, 1, 1],
    )

    def target(context):
        return regrid_hotstart(
            context, two_rank_square, destination, interpolator=MatchingIdInterpolator()
        )

    global_record, other = run_ranks(2, target)
    assert other is None
    np.testing.assert_allclose(global_record.eta1, [1, 2, 3, 4])
    np.testing.assert_allclose(global_record.uu2, [-1, -2, -3, -4])
    np.testing.assert_allclose(global_record.ch1, [2, 4, 6, 8])
    assert global_record.imhs == 10

    written = HotstartCodec().read_file(os.path.join(destination, "fort.67"), 4, 2)
    np.testing.assert_allclose(written.ch1, global_record.ch1)
    assert written.nscoue == 0


def test_truncated_source_hotstart_is_fatal(serial_square, tmp_path):
    with open(PartitionedMeshDirectory(serial_square).hotstart_path(0), "wb") as f:
        f.write(b"\x00" * 16)
    with pytest.raises(MalformedHotstartFile):
        regrid_hotstart(
            ExecutionContext.serial(),
            serial_square,
            serial_square,
            interpolator=ScipyMeshInterpolator(),
        )
