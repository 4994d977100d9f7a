from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Optional, Union

from partregrid.context import ExecutionContext, abort_on_error
from partregrid.gather import CrossRankConsolidator
from partregrid.hotstart import HotstartCodec, HotstartRecord
from partregrid.mesh import PartitionedMeshDirectory
from partregrid.regridder import DualPathRegridder

if TYPE_CHECKING:
    from partregrid.regridder import Interpolator

logger = logging.getLogger(__name__)


def regrid_hotstart(
    context: ExecutionContext,
    source_dir: Union[str, os.PathLike],
    destination_dir: Union[str, os.PathLike],
    interpolator: Optional[Interpolator] = None,
    root: int = 0,
    write_text: bool = False,
    ownership_policy: str = "raise",
    codec: Optional[HotstartCodec] = None,
) -> Optional[HotstartRecord]:
    """
    Move a partitioned hotstart from one mesh onto another.

    Every rank reads its source partition and hotstart, regrids the nodal
    fields onto its destination partition and takes part in the gather; the
    root writes ``destination_dir/fort.67``.

    Parameters
    ----------
    context : ExecutionContext
        Rank identity and communicator.
    source_dir, destination_dir : str or path-like
        Partitioned mesh directories. The source holds per-rank hotstarts.
    interpolator : Interpolator, optional
        Operator factory passed to :class:`DualPathRegridder`.
    root : int, default 0
        Rank that assembles and writes the global hotstart.
    write_text : bool, default False
        Also write a human-readable ``fort.67.txt`` next to the output.
    ownership_policy : {'raise', 'warn', 'ignore'}, default 'raise'
        Handling of residency signs that disagree with the catalog.
    codec : HotstartCodec, optional
        Binary codec for input and output, little-endian by default.

    Returns
    -------
    HotstartRecord or None
        The global destination record on root, None elsewhere.

    Notes
    -----
    Collective. Any error raised on one rank, a missing input file included,
    aborts the whole job when more than one rank runs.
    """
    if codec is None:
        codec = HotstartCodec()
    source_layout = PartitionedMeshDirectory(source_dir)
    destination_layout = PartitionedMeshDirectory(destination_dir)

    with abort_on_error(context):
        source = source_layout.read_partition(context, ownership_policy=ownership_policy)
        destination_catalog = destination_layout.read_catalog(num_ranks=context.size)
        destination = destination_layout.read_partition(
            context, catalog=destination_catalog, ownership_policy=ownership_policy
        )
        num_global_nodes, num_global_elements = destination_layout.read_global_sizes(
            context.rank
        )

        source_record = codec.read_file(
            source_layout.hotstart_path(context.rank),
            source.num_present_nodes,
            source.num_elements,
        )

        regridder = DualPathRegridder(source, destination, interpolator=interpolator)
        try:
            regridded = regridder.regrid_record(source_record)
        finally:
            regridder.destroy()

        local = HotstartRecord.allocate(
            destination.num_owned_nodes,
            destination.num_elements,
            format_version=source_record.format_version,
            imhs=source_record.imhs,
            time=source_record.time,
            iths=source_record.iths,
        )
        for name, values in regridded.items():
            setattr(local, name, values)

        consolidator = CrossRankConsolidator(
            context, destination_catalog, destination_layout, partition=destination
        )
        global_record = consolidator.gather_hotstart(
            local, num_global_nodes, num_global_elements, root=root
        )

        if global_record is None:
            return None

        output_path = destination_layout.hotstart_path()
        codec.write_file(global_record, output_path)
        if write_text:
            with open(output_path + ".txt", "w") as f:
                codec.dump_text(global_record, f)
        logger.info("Wrote global hotstart %s", output_path)
        return global_record
