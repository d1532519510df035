from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence
import warnings

import numpy as np
from scipy.special import logsumexp
from sklearn.exceptions import ConvergenceWarning
from sklearn.mixture import GaussianMixture

from .errors import MixtureFitError
from .group_models import mvn_logpdf, mvn_sample


def clamped_split(
    rng: np.random.Generator,
    total: int,
    probs: Sequence[float],
    *,
    min_count: int = 2,
) -> np.ndarray:
    """Split `total` draws across components by sequential binomial stick-breaking.

    Component k receives Binomial(remaining, p_k / sum(p_k:)) clamped so that it
    and every later component keep at least `min_count` draws. With two
    components this is n1 ~ Binomial(T, p1) clamped to [min_count, T - min_count].
    """
    p = np.asarray(probs, dtype=float).reshape(-1)
    k = int(p.size)
    total = int(total)
    min_count = int(min_count)
    if k < 1:
        raise ValueError("Need at least one component to split over.")
    if np.any(~np.isfinite(p)) or np.any(p < 0.0) or not float(np.sum(p)) > 0.0:
        raise ValueError("Split probabilities must be finite, non-negative and not all zero.")
    if total < k * min_count:
        raise ValueError(f"Cannot give each of {k} components {min_count} of only {total} draws.")

    counts = np.zeros(k, dtype=int)
    remaining = total
    for i in range(k - 1):
        tail = float(np.sum(p[i:]))
        frac = float(p[i] / tail) if tail > 0.0 else 0.0
        n_i = int(rng.binomial(remaining, min(max(frac, 0.0), 1.0)))
        reserve = min_count * (k - i - 1)
        n_i = min(max(n_i, min_count), remaining - reserve)
        counts[i] = n_i
        remaining -= n_i
    counts[-1] = remaining
    return counts


@dataclass(frozen=True)
class ImportanceMixture:
    weights: np.ndarray  # (K,)
    means: np.ndarray  # (K, d)
    covariances: np.ndarray  # (K, d, d)
    attempts: int = 1

    def __post_init__(self) -> None:
        w = np.asarray(self.weights, dtype=float).reshape(-1)
        means = np.atleast_2d(np.asarray(self.means, dtype=float))
        covs = np.asarray(self.covariances, dtype=float)
        k, d = means.shape
        if w.shape != (k,) or covs.shape != (k, d, d):
            raise ValueError("Mixture weights/means/covariances shapes are inconsistent.")
        if np.any(w < 0.0) or not np.isfinite(np.sum(w)) or np.sum(w) <= 0.0:
            raise ValueError("Mixture weights must be non-negative with a positive sum.")
        w = w / np.sum(w)
        for i in range(k):
            np.linalg.cholesky(covs[i])
        object.__setattr__(self, "weights", w)
        object.__setattr__(self, "means", means)
        object.__setattr__(self, "covariances", covs)

    @property
    def n_components(self) -> int:
        return int(self.weights.size)

    @property
    def dim(self) -> int:
        return int(self.means.shape[1])

    def logpdf(self, x: np.ndarray, *, weights: np.ndarray | None = None) -> np.ndarray:
        """Mixture log density at each row of x.

        `weights` overrides the fitted component weights, e.g. with the realized
        fractions counts / n from `sample_proposals`.
        """
        x = np.atleast_2d(np.asarray(x, dtype=float))
        w = self.weights if weights is None else np.asarray(weights, dtype=float).reshape(-1)
        if w.shape != self.weights.shape:
            raise ValueError(f"Expected {self.n_components} component weights, got shape {w.shape}.")
        with np.errstate(divide="ignore"):
            log_w = np.log(w)
        comp = np.stack(
            [log_w[i] + mvn_logpdf(x, self.means[i], self.covariances[i]) for i in range(self.n_components)],
            axis=1,
        )
        return logsumexp(comp, axis=1)

    def sample_proposals(
        self, n: int, rng: np.random.Generator, *, min_per_component: int = 2
    ) -> tuple[np.ndarray, np.ndarray]:
        """Draw n proposals, heaviest component first, each component keeping >= min_per_component.

        Returns (proposals, counts) with counts[k] the number drawn from component k.
        The clamp moves the realized fractions counts / n away from the fitted
        weights, so importance weights must use `logpdf(x, weights=counts / n)`.
        """
        order = np.argsort(-self.weights, kind="stable")
        split = clamped_split(rng, int(n), self.weights[order], min_count=min_per_component)
        counts = np.zeros(self.n_components, dtype=int)
        counts[order] = split
        blocks = [mvn_sample(rng, self.means[i], self.covariances[i], int(counts[i])) for i in order]
        return np.concatenate(blocks, axis=0), counts

    def to_jsonable(self) -> dict[str, Any]:
        return {
            "weights": self.weights.tolist(),
            "means": self.means.tolist(),
            "covariances": self.covariances.tolist(),
            "attempts": int(self.attempts),
        }


def fit_importance_mixture(
    samples: np.ndarray,
    *,
    n_components: int = 2,
    rng: np.random.Generator,
    max_attempts: int = 10,
    max_iter: int = 500,
    tol: float = 1e-6,
    reg_covar: float = 1e-6,
) -> ImportanceMixture:
    """EM fit of a full-covariance Gaussian mixture with bounded random restarts.

    An attempt fails when EM raises, does not converge, or returns a component
    covariance that is not positive definite. Each retry uses a fresh random
    initialisation seeded from `rng`.
    """
    X = np.asarray(samples, dtype=float)
    if X.ndim != 2:
        raise ValueError("samples must have shape (n_iter, n_params).")
    n_components = int(n_components)
    max_attempts = int(max_attempts)
    if n_components < 1:
        raise ValueError("n_components must be >= 1.")
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1.")
    if X.shape[0] <= n_components:
        raise MixtureFitError(
            f"Only {X.shape[0]} samples for a {n_components}-component mixture.", attempts=0
        )

    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        gm = GaussianMixture(
            n_components=n_components,
            covariance_type="full",
            max_iter=int(max_iter),
            tol=float(tol),
            reg_covar=float(reg_covar),
            random_state=int(rng.integers(0, 2**31 - 1)),
        )
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", ConvergenceWarning)
                gm.fit(X)
            if not gm.converged_:
                raise FloatingPointError(f"EM did not converge within {int(max_iter)} iterations.")
            return ImportanceMixture(
                weights=gm.weights_,
                means=gm.means_,
                covariances=gm.covariances_,
                attempts=attempt,
            )
        except (ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
            last_error = exc

    raise MixtureFitError(
        f"Mixture fit failed after {max_attempts} attempts on {X.shape[0]} samples of dimension "
        f"{X.shape[1]} (last error: {last_error}); use more posterior iterations or fewer components.",
        attempts=max_attempts,
        last_error=last_error,
    )
