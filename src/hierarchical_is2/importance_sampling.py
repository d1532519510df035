from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.special import logsumexp

from .errors import AggregationError


def ess_from_logweights(logw: np.ndarray) -> float:
    """Kish effective sample size (sum w)^2 / sum w^2 of log-weights; -inf counts as zero weight."""
    lw = np.asarray(logw, dtype=float).reshape(-1)
    m = np.isfinite(lw)
    if not np.any(m):
        return 0.0
    w = np.exp(lw[m] - float(np.max(lw[m])))
    s1 = float(np.sum(w))
    s2 = float(np.sum(w * w))
    if not (np.isfinite(s1) and s1 > 0.0 and np.isfinite(s2) and s2 > 0.0):
        return 0.0
    return float((s1 * s1) / s2)


def log_mean_exp(logw: np.ndarray, axis: int | None = None) -> np.ndarray | float:
    """log(mean(exp(logw))) via `logsumexp` minus log n.

    Entries equal to -inf contribute zero weight; if every entry along the
    reduction is -inf the result is -inf. NaN or +inf entries propagate as NaN
    so callers can decide whether that is fatal.
    """
    lw = np.asarray(logw, dtype=float)
    if lw.size == 0:
        raise ValueError("log_mean_exp of an empty array.")
    n = lw.size if axis is None else lw.shape[axis]
    m = np.max(lw, axis=axis, keepdims=True)
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        out = logsumexp(lw, axis=axis, keepdims=True) - np.log(float(n))
    # All -inf -> -inf; a NaN or +inf maximum has no finite centring.
    out = np.where(np.isfinite(m), out, np.where(np.isneginf(m), -np.inf, np.nan))
    if axis is None:
        return float(out.reshape(()))
    return np.squeeze(out, axis=axis)


def _check_logweights(logw: np.ndarray, *, what: str) -> np.ndarray:
    lw = np.asarray(logw, dtype=float).reshape(-1)
    if lw.size == 0:
        raise AggregationError(f"{what}: no log-weights to aggregate.")
    n_nan = int(np.sum(np.isnan(lw)))
    n_pinf = int(np.sum(np.isposinf(lw)))
    if n_nan or n_pinf:
        raise AggregationError(f"{what}: {n_nan} NaN and {n_pinf} +inf log-weights (of {lw.size}).")
    if not np.any(np.isfinite(lw)):
        raise AggregationError(f"{what}: every log-weight is -inf (likelihood collapsed for all proposals).")
    return lw


@dataclass(frozen=True)
class BootstrapSummary:
    estimate: float
    estimates: np.ndarray  # (n_bootstrap,)

    @property
    def variance(self) -> float:
        return float(np.var(self.estimates, ddof=1)) if self.estimates.size > 1 else 0.0

    @property
    def standard_error(self) -> float:
        return float(np.sqrt(self.variance))

    @property
    def mean(self) -> float:
        return float(np.mean(self.estimates))


def aggregate_logweights(logw: np.ndarray) -> float:
    """Log marginal-likelihood estimate: log-mean-exp over all proposal log-weights."""
    lw = _check_logweights(logw, what="outer aggregation")
    out = float(log_mean_exp(lw))
    if not np.isfinite(out):
        raise AggregationError(f"outer aggregation: non-finite estimate {out!r}.")
    return out


def bootstrap_log_mean_exp(
    logw: np.ndarray,
    *,
    n_bootstrap: int = 10_000,
    rng: np.random.Generator,
    chunk: int = 256,
) -> BootstrapSummary:
    """Resample log-weights with replacement and recompute the aggregate each time.

    Resamples are drawn `chunk` at a time so memory stays at chunk × n.
    """
    lw = _check_logweights(logw, what="bootstrap")
    n_bootstrap = int(n_bootstrap)
    if n_bootstrap < 2:
        raise ValueError("n_bootstrap must be >= 2.")
    chunk = max(1, int(chunk))
    n = int(lw.size)
    est = np.empty(n_bootstrap, dtype=float)
    for start in range(0, n_bootstrap, chunk):
        stop = min(start + chunk, n_bootstrap)
        idx = rng.integers(0, n, size=(stop - start, n))
        est[start:stop] = log_mean_exp(lw[idx], axis=1)
    # A resample made only of -inf weights is a legitimate (if useless) draw; anything else non-finite is not.
    if np.any(np.isnan(est)) or np.any(np.isposinf(est)):
        raise AggregationError("bootstrap: non-finite resampled estimate after max-centring.")
    if np.any(np.isneginf(est)):
        raise AggregationError(
            "bootstrap: a resample contained only -inf log-weights; too few proposals carry weight."
        )
    return BootstrapSummary(estimate=aggregate_logweights(lw), estimates=est)
