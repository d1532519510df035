from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from scipy.stats import multivariate_normal

from .draws import PosteriorDraws
from .group_models import KnownCovarianceGroupModel, KnownCovariancePrior
from .schema import ParameterSchema


@dataclass(frozen=True)
class NormalObservationLikelihood:
    """log p(x_j | alpha_j) for x_ji ~ N(alpha_j, sd^2); accepts one record or an array of records."""

    sd: float = 1.0
    field: str = "alpha"
    column: str = "x"

    def __call__(self, params: Any, data: pd.DataFrame) -> Any:
        x = np.asarray(data[self.column], dtype=float)
        a = np.asarray(params[self.field], dtype=float)
        sd = float(self.sd)
        resid = (x[None, :] - a.reshape(-1, 1)) / sd
        ll = np.sum(-0.5 * resid**2 - np.log(sd) - 0.5 * np.log(2.0 * np.pi), axis=1)
        if a.ndim == 0:
            return float(ll[0])
        return ll


@dataclass(frozen=True)
class NormalNormalExample:
    data: pd.DataFrame
    draws: PosteriorDraws
    model: KnownCovarianceGroupModel
    log_likelihood: NormalObservationLikelihood
    schema: ParameterSchema
    analytic_log_ml: float


def normal_normal_log_ml(
    x: np.ndarray,
    subject_index: np.ndarray,
    *,
    mu0: float,
    mu_sd: float,
    tau: float,
    obs_sd: float,
) -> float:
    """Closed-form log p(x) for x_ji = mu + (alpha_j - mu) + eps_ji with all terms normal."""
    x = np.asarray(x, dtype=float)
    s = np.asarray(subject_index)
    same_subject = (s[:, None] == s[None, :]).astype(float)
    cov = mu_sd**2 + tau**2 * same_subject + obs_sd**2 * np.eye(x.size)
    return float(multivariate_normal.logpdf(x, mean=np.full(x.size, float(mu0)), cov=cov))


def normal_normal_example(
    *,
    n_subjects: int = 2,
    n_obs: int = 1,
    n_iter: int = 2000,
    mu0: float = 0.0,
    mu_sd: float = 1.0,
    tau: float = 1.0,
    obs_sd: float = 1.0,
    seed: int = 0,
) -> NormalNormalExample:
    """Two-level conjugate normal model with exact posterior draws.

      mu ~ N(mu0, mu_sd^2),  alpha_j ~ N(mu, tau^2),  x_ji ~ N(alpha_j, obs_sd^2).

    The joint posterior of (alpha_1..alpha_J, mu) is Gaussian, so the draws
    stand in for sampler output without an MCMC run.
    """
    n_subjects = int(n_subjects)
    n_obs = int(n_obs)
    if n_subjects < 1 or n_obs < 1:
        raise ValueError("Need at least one subject and one observation per subject.")
    rng = np.random.default_rng(int(seed))

    mu_true = rng.normal(mu0, mu_sd)
    alpha_true = rng.normal(mu_true, tau, size=n_subjects)
    subj = np.repeat(np.arange(n_subjects), n_obs)
    x = alpha_true[subj] + obs_sd * rng.normal(size=subj.size)
    data = pd.DataFrame({"subject": subj, "x": x})

    # Posterior precision/shift over z = (alpha_0..alpha_{J-1}, mu).
    J = n_subjects
    P = np.zeros((J + 1, J + 1))
    b = np.zeros(J + 1)
    for j in range(J):
        P[j, j] += 1.0 / tau**2 + n_obs / obs_sd**2
        P[j, J] -= 1.0 / tau**2
        P[J, j] -= 1.0 / tau**2
        b[j] += float(np.sum(x[subj == j])) / obs_sd**2
    P[J, J] += J / tau**2 + 1.0 / mu_sd**2
    b[J] += mu0 / mu_sd**2
    post_cov = np.linalg.inv(P)
    post_mean = post_cov @ b
    z = rng.multivariate_normal(post_mean, 0.5 * (post_cov + post_cov.T), size=int(n_iter))

    draws = PosteriorDraws(
        alpha=z[:, :J].T[:, None, :],
        theta_mu=z[:, J][None, :],
        subjects=tuple(range(J)),
    )
    model = KnownCovarianceGroupModel(
        KnownCovariancePrior(theta_mu_mean=[mu0], theta_mu_var=[[mu_sd**2]], sigma=[[tau**2]])
    )
    return NormalNormalExample(
        data=data,
        draws=draws,
        model=model,
        log_likelihood=NormalObservationLikelihood(sd=obs_sd, field="alpha", column="x"),
        schema=ParameterSchema(("alpha",)),
        analytic_log_ml=normal_normal_log_ml(x, subj, mu0=mu0, mu_sd=mu_sd, tau=tau, obs_sd=obs_sd),
    )
