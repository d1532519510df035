from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import numpy as np
from scipy.stats import invgamma, invwishart, multivariate_normal

from .draws import PosteriorDraws
from .errors import SampleAssemblyError
from .transforms import log_transform_log_jacobian, rewind, rewind_log_jacobian, unwind, unwound_size


class GroupModel(Protocol):
    """Group-level model family seen by the IS² estimator.

    A group parameter vector ("proposal") has `n_params` entries; its first
    `n_group` entries are the coordinates the subject-level conditional
    distribution is conditioned on.
    """

    n_randeffect: int

    @property
    def n_group(self) -> int: ...

    @property
    def n_params(self) -> int: ...

    def augmented_samples(self, draws: PosteriorDraws) -> np.ndarray: ...

    def log_prior(self, params: np.ndarray) -> float: ...

    def sample_random_effects(self, params: np.ndarray, n: int, rng: np.random.Generator) -> np.ndarray: ...

    def random_effect_logpdf(self, x: np.ndarray, params: np.ndarray) -> np.ndarray: ...

    def to_jsonable(self) -> dict[str, Any]: ...


def mvn_logpdf(x: np.ndarray, mean: np.ndarray, cov: np.ndarray) -> np.ndarray:
    """Row-wise multivariate normal log density; always returns shape (n,)."""
    x = np.atleast_2d(np.asarray(x, dtype=float))
    out = multivariate_normal.logpdf(x, mean=np.asarray(mean, dtype=float), cov=np.asarray(cov, dtype=float))
    return np.atleast_1d(np.asarray(out, dtype=float)).reshape(x.shape[0])


def mvn_sample(rng: np.random.Generator, mean: np.ndarray, cov: np.ndarray, n: int) -> np.ndarray:
    mean = np.asarray(mean, dtype=float)
    if int(n) <= 0:
        return np.empty((0, mean.size), dtype=float)
    return rng.multivariate_normal(mean, np.asarray(cov, dtype=float), size=int(n), method="cholesky")


@dataclass(frozen=True)
class HuangWandPrior:
    """Hyperparameters of the normal / Huang-Wand group prior.

      theta_mu ~ N(theta_mu_mean, theta_mu_var)
      Sigma | a ~ IW(v_half + n - 1, 2 v_half diag(1/a))
      a_k ~ IG(1/2, 1/A_k^2)
    """

    theta_mu_mean: np.ndarray
    theta_mu_var: np.ndarray
    v_half: float = 2.0
    A_half: float | np.ndarray = 1.0

    def __post_init__(self) -> None:
        mean = np.atleast_1d(np.asarray(self.theta_mu_mean, dtype=float))
        var = np.atleast_2d(np.asarray(self.theta_mu_var, dtype=float))
        if var.shape != (mean.size, mean.size):
            raise ValueError("theta_mu_var must be square and match theta_mu_mean.")
        if not (np.isfinite(self.v_half) and float(self.v_half) > 0.0):
            raise ValueError("v_half must be finite and positive.")
        A = np.broadcast_to(np.asarray(self.A_half, dtype=float), mean.shape).copy()
        if np.any(~np.isfinite(A)) or np.any(A <= 0.0):
            raise ValueError("A_half must be finite and positive.")
        object.__setattr__(self, "theta_mu_mean", mean)
        object.__setattr__(self, "theta_mu_var", var)
        object.__setattr__(self, "v_half", float(self.v_half))
        object.__setattr__(self, "A_half", A)

    def to_jsonable(self) -> dict[str, Any]:
        return {
            "theta_mu_mean": self.theta_mu_mean.tolist(),
            "theta_mu_var": self.theta_mu_var.tolist(),
            "v_half": float(self.v_half),
            "A_half": np.asarray(self.A_half).tolist(),
        }


@dataclass(frozen=True)
class HuangWandGroupModel:
    """Multivariate-normal group distribution with a Huang-Wand covariance prior.

    Parameter vector layout: [theta_mu (n) | unwind(Sigma) (n(n+1)/2) | log a (n)].
    """

    prior: HuangWandPrior

    @property
    def n_randeffect(self) -> int:
        return int(self.prior.theta_mu_mean.size)

    @property
    def n_unwound(self) -> int:
        return unwound_size(self.n_randeffect)

    @property
    def n_group(self) -> int:
        return self.n_randeffect + self.n_unwound

    @property
    def n_params(self) -> int:
        return self.n_group + self.n_randeffect

    def split(self, params: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return (theta_mu, Sigma, log a) from a parameter vector."""
        p = np.asarray(params, dtype=float).reshape(-1)
        if p.size != self.n_params:
            raise ValueError(f"Expected {self.n_params} group parameters, got {p.size}.")
        n = self.n_randeffect
        return p[:n], rewind(p[n : self.n_group]), p[self.n_group :]

    def augmented_samples(self, draws: PosteriorDraws) -> np.ndarray:
        if draws.theta_sig is None or draws.a_half is None:
            raise SampleAssemblyError("Huang-Wand group model needs theta_sig and a_half draws.")
        if draws.n_randeffect != self.n_randeffect:
            raise SampleAssemblyError(
                f"Draws have {draws.n_randeffect} random effects; prior is for {self.n_randeffect}."
            )
        out = np.empty((draws.n_iter, self.n_params), dtype=float)
        n = self.n_randeffect
        for it in range(draws.n_iter):
            try:
                v = unwind(draws.theta_sig[:, :, it])
            except np.linalg.LinAlgError as exc:
                raise SampleAssemblyError(f"theta_sig draw at iteration {it} is not positive definite.") from exc
            out[it, :n] = draws.theta_mu[:, it]
            out[it, n : self.n_group] = v
            out[it, self.n_group :] = np.log(draws.a_half[:, it])
        return out

    def log_prior(self, params: np.ndarray) -> float:
        """Prior log density in the unconstrained parameterisation (Jacobians included)."""
        mu, sigma, log_a = self.split(params)
        n = self.n_randeffect
        a = np.exp(log_a)
        if not np.all(np.isfinite(a)) or np.any(a <= 0.0):
            return -np.inf
        v = float(self.prior.v_half)
        lp_mu = float(mvn_logpdf(mu, self.prior.theta_mu_mean, self.prior.theta_mu_var)[0])
        lp_sig = float(invwishart.logpdf(sigma, df=v + n - 1.0, scale=2.0 * v * np.diag(1.0 / a)))
        lp_a = float(np.sum(invgamma.logpdf(a, 0.5, scale=1.0 / np.asarray(self.prior.A_half) ** 2)))
        log_jac = rewind_log_jacobian(np.asarray(params, dtype=float)[n : self.n_group]) + log_transform_log_jacobian(log_a)
        return lp_mu + lp_sig + lp_a + log_jac

    def sample_random_effects(self, params: np.ndarray, n: int, rng: np.random.Generator) -> np.ndarray:
        mu, sigma, _ = self.split(params)
        return mvn_sample(rng, mu, sigma, n)

    def random_effect_logpdf(self, x: np.ndarray, params: np.ndarray) -> np.ndarray:
        mu, sigma, _ = self.split(params)
        return mvn_logpdf(x, mu, sigma)

    def to_jsonable(self) -> dict[str, Any]:
        return {"family": "huang_wand", "prior": self.prior.to_jsonable()}


@dataclass(frozen=True)
class KnownCovariancePrior:
    """Normal prior on the group mean with a fixed group covariance."""

    theta_mu_mean: np.ndarray
    theta_mu_var: np.ndarray
    sigma: np.ndarray

    def __post_init__(self) -> None:
        mean = np.atleast_1d(np.asarray(self.theta_mu_mean, dtype=float))
        var = np.atleast_2d(np.asarray(self.theta_mu_var, dtype=float))
        sigma = np.atleast_2d(np.asarray(self.sigma, dtype=float))
        k = mean.size
        if var.shape != (k, k) or sigma.shape != (k, k):
            raise ValueError("theta_mu_var and sigma must be square and match theta_mu_mean.")
        try:
            np.linalg.cholesky(sigma)
        except np.linalg.LinAlgError as exc:
            raise ValueError("Known group covariance must be positive definite.") from exc
        object.__setattr__(self, "theta_mu_mean", mean)
        object.__setattr__(self, "theta_mu_var", var)
        object.__setattr__(self, "sigma", sigma)

    def to_jsonable(self) -> dict[str, Any]:
        return {
            "theta_mu_mean": self.theta_mu_mean.tolist(),
            "theta_mu_var": self.theta_mu_var.tolist(),
            "sigma": self.sigma.tolist(),
        }


@dataclass(frozen=True)
class KnownCovarianceGroupModel:
    """Normal group distribution N(theta_mu, sigma) with sigma known; parameters = theta_mu."""

    prior: KnownCovariancePrior

    @property
    def n_randeffect(self) -> int:
        return int(self.prior.theta_mu_mean.size)

    @property
    def n_group(self) -> int:
        return self.n_randeffect

    @property
    def n_params(self) -> int:
        return self.n_randeffect

    def augmented_samples(self, draws: PosteriorDraws) -> np.ndarray:
        if draws.n_randeffect != self.n_randeffect:
            raise SampleAssemblyError(
                f"Draws have {draws.n_randeffect} random effects; prior is for {self.n_randeffect}."
            )
        return np.ascontiguousarray(draws.theta_mu.T)

    def log_prior(self, params: np.ndarray) -> float:
        return float(mvn_logpdf(params, self.prior.theta_mu_mean, self.prior.theta_mu_var)[0])

    def sample_random_effects(self, params: np.ndarray, n: int, rng: np.random.Generator) -> np.ndarray:
        return mvn_sample(rng, np.asarray(params, dtype=float).reshape(-1), self.prior.sigma, n)

    def random_effect_logpdf(self, x: np.ndarray, params: np.ndarray) -> np.ndarray:
        return mvn_logpdf(x, np.asarray(params, dtype=float).reshape(-1), self.prior.sigma)

    def to_jsonable(self) -> dict[str, Any]:
        return {"family": "known_covariance", "prior": self.prior.to_jsonable()}
