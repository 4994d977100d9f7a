from __future__ import annotations

import contextlib
import logging
from typing import Any, Iterator, Optional

import numpy as np

logger = logging.getLogger(__name__)


class SerialCommunicator:
    """
    Single-rank communicator exposing the subset of the mpi4py API we use.

    Collectives degenerate to local copies, which lets every component run
    without an MPI launcher.
    """

    def Get_rank(self) -> int:
        return 0

    def Get_size(self) -> int:
        return 1

    def Gatherv(self, sendbuf: Any, recvbuf: Any, root: int = 0) -> None:
        if root != 0:
            raise ValueError(f"Root rank {root} does not exist in a serial context.")
        data, counts, displs = recvbuf[0], recvbuf[1], recvbuf[2]
        send = np.asarray(sendbuf)
        if send.size != counts[0]:
            raise ValueError(
                f"Send count {send.size} does not match receive count {counts[0]}."
            )
        data[displs[0] : displs[0] + counts[0]] = send

    def gather(self, sendobj: Any, root: int = 0) -> list:
        return [sendobj]

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return obj

    def Barrier(self) -> None:
        pass

    def Abort(self, errorcode: int = 1) -> None:
        raise SystemExit(errorcode)


class ExecutionContext:
    """
    Rank identity and collective handle for one participant of an SPMD job.

    Parameters
    ----------
    comm : Any
        Communicator with the mpi4py ``Get_rank``/``Get_size``/``Gatherv``/
        ``Abort`` interface.
    """

    def __init__(self, comm: Any) -> None:
        self.comm = comm
        self.rank = int(comm.Get_rank())
        self.size = int(comm.Get_size())

    @classmethod
    def serial(cls) -> "ExecutionContext":
        """Context for a single-rank run."""
        return cls(SerialCommunicator())

    @classmethod
    def from_mpi(cls, comm: Optional[Any] = None) -> "ExecutionContext":
        """
        Context wrapping an MPI communicator (``MPI.COMM_WORLD`` by default).

        Raises
        ------
        ImportError
            If mpi4py is not installed.
        """
        if comm is None:
            try:
                from mpi4py import MPI
            except ImportError as err:
                raise ImportError(
                    "mpi4py is required for distributed runs. "
                    "Install it via `pip install mpi4py`."
                ) from err
            comm = MPI.COMM_WORLD
        return cls(comm)

    def is_root(self, root: int = 0) -> bool:
        return self.rank == root

    def abort(self, errorcode: int = 1) -> None:
        """Tear down every rank of the job."""
        self.comm.Abort(errorcode)

    def __repr__(self) -> str:
        return f"ExecutionContext(rank={self.rank}, size={self.size})"


@contextlib.contextmanager
def abort_on_error(context: ExecutionContext, errorcode: int = 1) -> Iterator[None]:
    """
    Turn any error raised on one rank into a job-wide abort.

    Other ranks may already be blocked in a collective, so a failure that is
    not a ``PartRegridError`` (a missing file, a malformed record) aborts too.
    ``KeyboardInterrupt`` and ``SystemExit`` pass through untouched. With a
    single rank the error propagates unchanged so callers and tests can
    inspect it.
    """
    try:
        yield
    except Exception as err:
        if context.size == 1:
            raise
        logger.critical("Rank %d aborting job: %s", context.rank, err)
        context.abort(errorcode)
        raise
