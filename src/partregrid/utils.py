from __future__ import annotations

import datetime
import socket
from typing import Optional, Union

import xarray as xr


def update_history(
    obj: Union[xr.DataArray, xr.Dataset], message: str, rank: Optional[int] = None
) -> Union[xr.DataArray, xr.Dataset]:
    """
    Prepend a timestamped provenance line to the 'history' attribute.

    Parameters
    ----------
    obj : xr.DataArray or xr.Dataset
        The xarray object to update in place.
    message : str
        The message to record.
    rank : int, optional
        Rank that produced the object; recorded with the host name.

    Returns
    -------
    xr.DataArray or xr.Dataset
        The updated xarray object.
    """
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    origin = ""
    if rank is not None:
        origin = f" [{socket.gethostname()} rank {rank}]"
    full_message = f"{timestamp}{origin}: {message}"
    if "history" in obj.attrs:
        obj.attrs["history"] = f"{full_message}\n" + obj.attrs["history"]
    else:
        obj.attrs["history"] = full_message
    return obj


def pe_directory_name(rank: int) -> str:
    """Name of the per-rank subdirectory, e.g. ``PE0003``."""
    return f"PE{rank:04d}"
