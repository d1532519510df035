from __future__ import annotations

import numpy as np


def unwound_size(n: int) -> int:
    """Length of the unconstrained vector encoding an n×n covariance."""
    n = int(n)
    if n < 1:
        raise ValueError("Matrix dimension must be >= 1.")
    return n * (n + 1) // 2


def dim_from_unwound_size(m: int) -> int:
    m = int(m)
    n = int(round((np.sqrt(8.0 * m + 1.0) - 1.0) / 2.0))
    if n < 1 or unwound_size(n) != m:
        raise ValueError(f"Length {m} is not a triangular number n(n+1)/2.")
    return n


def _lower_colmajor(n: int) -> tuple[np.ndarray, np.ndarray]:
    # Upper-triangle indices in row-major order, swapped, walk the lower triangle column by column.
    r, c = np.triu_indices(int(n))
    return c, r


def unwind(M: np.ndarray) -> np.ndarray:
    """Map an SPD matrix to its log-Cholesky vector.

    The lower Cholesky factor L has its diagonal replaced by log(diag(L)); the
    lower-triangular entries (diagonal included) are returned column by column.
    Raises numpy.linalg.LinAlgError when M is not positive definite.
    """
    M = np.asarray(M, dtype=float)
    if M.ndim != 2 or M.shape[0] != M.shape[1]:
        raise ValueError("unwind expects a square 2D matrix.")
    n = int(M.shape[0])
    L = np.linalg.cholesky(M)
    L[np.diag_indices(n)] = np.log(np.diag(L))
    rows, cols = _lower_colmajor(n)
    return L[rows, cols]


def rewind(v: np.ndarray) -> np.ndarray:
    """Inverse of `unwind`; any finite real vector yields an SPD matrix."""
    v = np.asarray(v, dtype=float)
    if v.ndim != 1:
        raise ValueError("rewind expects a 1D vector.")
    n = dim_from_unwound_size(int(v.size))
    L = np.zeros((n, n), dtype=float)
    rows, cols = _lower_colmajor(n)
    L[rows, cols] = v
    L[np.diag_indices(n)] = np.exp(np.diag(L))
    return L @ L.T


def rewind_log_jacobian(v: np.ndarray) -> float:
    """log |d vech(M) / d v| for M = rewind(v).

    Combines the Cholesky Jacobian 2^n prod_i L_ii^(n-i+1) with the factor
    L_ii from the log-diagonal reparameterisation (i is 1-based).
    """
    v = np.asarray(v, dtype=float)
    n = dim_from_unwound_size(int(v.size))
    rows, cols = _lower_colmajor(n)
    log_diag = v[rows == cols]
    powers = (n - np.arange(n) + 1).astype(float)
    return float(n * np.log(2.0) + np.sum(powers * log_diag))


def log_transform_log_jacobian(log_x: np.ndarray) -> float:
    """log |dx / d log x| for x = exp(log_x), summed over components."""
    return float(np.sum(np.asarray(log_x, dtype=float)))
