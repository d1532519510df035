from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Literal

import numpy as np

from .group_models import GroupModel, mvn_logpdf, mvn_sample
from .importance_sampling import ess_from_logweights, log_mean_exp
from .mixture import clamped_split
from .posterior import SubjectMoments
from .schema import ParameterSchema

# log_likelihood(record, data) -> float, or (records, data) -> array when vectorized.
LogLikelihood = Callable[[Any, Any], Any]


@dataclass(frozen=True)
class ParticleBatch:
    particles: np.ndarray  # (n_particles, n_randeffect)
    n_conditional: int
    cond_mean: np.ndarray
    cond_cov: np.ndarray


@dataclass(frozen=True)
class SubjectEstimate:
    log_likelihood: float
    n_failed: int
    ess: float


def generate_particles(
    moments: SubjectMoments,
    model: GroupModel,
    params: np.ndarray,
    *,
    n_particles: int,
    wmix: float,
    rng: np.random.Generator,
) -> ParticleBatch:
    """Draw particles from the defensive mixture wmix·conditional + (1-wmix)·group."""
    params = np.asarray(params, dtype=float).reshape(-1)
    cond_mean, cond_cov = moments.conditional(params[: model.n_group])
    n1, n2 = clamped_split(rng, int(n_particles), [float(wmix), 1.0 - float(wmix)])
    p1 = mvn_sample(rng, cond_mean, cond_cov, int(n1))
    p2 = np.asarray(model.sample_random_effects(params, int(n2), rng), dtype=float).reshape(int(n2), -1)
    return ParticleBatch(
        particles=np.concatenate([p1, p2], axis=0),
        n_conditional=int(n1),
        cond_mean=cond_mean,
        cond_cov=cond_cov,
    )


def evaluate_log_likelihood(
    log_likelihood: LogLikelihood,
    particles: np.ndarray,
    data: Any,
    *,
    schema: ParameterSchema,
    vectorized: bool = False,
    on_failure: Literal["neg_inf", "raise"] = "neg_inf",
) -> tuple[np.ndarray, int]:
    """Call the subject likelihood for every particle.

    Returns (loglik, n_failed). With `on_failure == "neg_inf"`, NaN/+inf results
    and numerical exceptions become -inf so the particle carries no weight.
    """
    recs = schema.records(particles)
    n = int(recs.shape[0])
    n_failed = 0
    if vectorized:
        try:
            ll = np.asarray(log_likelihood(recs, data), dtype=float).reshape(-1)
        except (ValueError, ArithmeticError, np.linalg.LinAlgError):
            if on_failure == "raise":
                raise
            return np.full(n, -np.inf), n
        if ll.shape != (n,):
            raise ValueError(f"Vectorized log-likelihood returned shape {ll.shape}; expected {(n,)}.")
    else:
        ll = np.empty(n, dtype=float)
        for i in range(n):
            try:
                ll[i] = float(log_likelihood(recs[i], data))
            except (ValueError, ArithmeticError, np.linalg.LinAlgError):
                if on_failure == "raise":
                    raise
                ll[i] = -np.inf
                n_failed += 1

    # -inf is a valid (zero) likelihood; NaN and +inf are oracle failures.
    bad = np.isnan(ll) | np.isposinf(ll)
    if np.any(bad):
        if on_failure == "raise":
            raise FloatingPointError(f"Log-likelihood returned {int(np.sum(bad))} NaN/+inf values.")
        n_failed += int(np.sum(bad))
        ll = np.where(bad, -np.inf, ll)
    return ll, n_failed


def subject_log_likelihood(
    moments: SubjectMoments,
    model: GroupModel,
    params: np.ndarray,
    data: Any,
    log_likelihood: LogLikelihood,
    *,
    schema: ParameterSchema,
    n_particles: int,
    wmix: float,
    rng: np.random.Generator,
    vectorized: bool = False,
    on_failure: Literal["neg_inf", "raise"] = "neg_inf",
) -> SubjectEstimate:
    """Unbiased importance-sampling estimate of log ∫ p(y_j | a) g(a | params) da.

    Particle weight: log p(y_j | a) + log g(a | params) - log q(a), with
    q = f·N(a; conditional) + (1-f)·g(a | params) and f = n_conditional / n_particles
    the realized split. Nominally f is wmix, but the clamp in `clamped_split`
    shifts it at small particle counts.
    """
    batch = generate_particles(moments, model, params, n_particles=n_particles, wmix=wmix, rng=rng)
    ll, n_failed = evaluate_log_likelihood(
        log_likelihood, batch.particles, data, schema=schema, vectorized=vectorized, on_failure=on_failure
    )
    lp = np.asarray(model.random_effect_logpdf(batch.particles, params), dtype=float).reshape(-1)
    lc = mvn_logpdf(batch.particles, batch.cond_mean, batch.cond_cov)
    n_total = int(batch.particles.shape[0])
    n_cond = int(batch.n_conditional)
    lq = np.logaddexp(np.log(n_cond / n_total) + lc, np.log((n_total - n_cond) / n_total) + lp)
    # lp - lq <= log(n_total / (n_total - n_cond)); both -inf means the particle is outside both supports.
    with np.errstate(invalid="ignore"):
        ratio = np.where(np.isneginf(lp), -np.inf, lp - lq)
    lw = ll + ratio
    return SubjectEstimate(
        log_likelihood=float(log_mean_exp(lw)),
        n_failed=int(n_failed),
        ess=ess_from_logweights(lw),
    )
