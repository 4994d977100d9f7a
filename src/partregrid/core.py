from __future__ import annotations

from typing import Any

import numpy as np


def _matmul(matrix: Any, data: np.ndarray) -> np.ndarray:
    """
    Backend-agnostic sparse product ``(matrix @ data.T).T``.

    Handles both NumPy and CuPy backends and ensures a NumPy array is returned.

    Parameters
    ----------
    matrix : Any
        The sparse weight matrix, destination x source.
    data : np.ndarray
        Source values, 1D (nodes) or 2D (fields x nodes).

    Returns
    -------
    np.ndarray
        Destination values with the same leading shape as ``data``.
    """
    if data.ndim == 1:
        res = matrix @ data
    else:
        res = (matrix @ data.T).T
    if hasattr(res, "get"):
        return res.get()
    return np.asarray(res)


def _resolved_mask(probe: np.ndarray, tolerance: float = 1e-8) -> np.ndarray:
    """
    Destination nodes that received a full interpolation stencil.

    ``probe`` is the primary operator applied to all ones; a node counts as
    resolved only when its weights sum to one within ``tolerance``.
    """
    probe = np.asarray(probe, dtype=np.float64)
    with np.errstate(invalid="ignore"):
        return np.abs(probe - 1.0) < tolerance


def _stitch_core(
    mapped: np.ndarray, unmapped: np.ndarray, resolved: np.ndarray
) -> np.ndarray:
    """
    Combine primary and fallback results under the resolved mask.

    Parameters
    ----------
    mapped : np.ndarray
        Primary result, destination sized (trailing axis).
    unmapped : np.ndarray
        Fallback result, same shape as ``mapped``.
    resolved : np.ndarray
        Boolean mask over the trailing axis.

    Returns
    -------
    np.ndarray
        ``mapped`` where resolved, ``unmapped`` elsewhere.
    """
    if mapped.shape != unmapped.shape:
        raise ValueError(
            f"Primary result {mapped.shape} and fallback result "
            f"{unmapped.shape} differ in shape."
        )
    return np.where(resolved, mapped, unmapped)
