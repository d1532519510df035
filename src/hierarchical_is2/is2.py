from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
import json
import os
from pathlib import Path
import time
from typing import Any, Literal

import numpy as np

from .draws import PosteriorDraws
from .group_models import GroupModel
from .importance_sampling import bootstrap_log_mean_exp, ess_from_logweights
from .mixture import ImportanceMixture, fit_importance_mixture
from .particles import LogLikelihood, subject_log_likelihood
from .posterior import SubjectMoments, assemble_posterior
from .schema import ParameterSchema


@dataclass(frozen=True)
class IS2Config:
    is_samples: int = 1000
    n_particles: int = 250
    n_components: int = 2
    wmix: float = 0.95
    n_workers: int | None = None
    n_bootstrap: int = 10_000
    max_fit_attempts: int = 10
    seed: int = 0
    fit_max_iter: int = 500
    fit_tol: float = 1e-6
    fit_reg_covar: float = 1e-6
    likelihood_failure: Literal["neg_inf", "raise"] = "neg_inf"
    vectorized_likelihood: bool = False
    bootstrap_chunk: int = 256
    progress: bool = False
    progress_every: int = 100
    progress_path: str | None = None

    def __post_init__(self) -> None:
        if int(self.n_components) < 1:
            raise ValueError("n_components must be >= 1.")
        if int(self.is_samples) < 2 * int(self.n_components):
            raise ValueError("is_samples must leave at least 2 proposals per mixture component.")
        if int(self.n_particles) < 4:
            raise ValueError("n_particles must be >= 4.")
        if not (0.0 < float(self.wmix) < 1.0):
            raise ValueError("wmix must lie strictly inside (0, 1).")
        if int(self.n_bootstrap) < 2:
            raise ValueError("n_bootstrap must be >= 2.")
        if int(self.max_fit_attempts) < 1:
            raise ValueError("max_fit_attempts must be >= 1.")
        if self.likelihood_failure not in ("neg_inf", "raise"):
            raise ValueError(f"Unknown likelihood_failure policy {self.likelihood_failure!r}.")

    def to_jsonable(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class IS2Context:
    """Read-only state shared by every proposal evaluation."""

    model: GroupModel
    moments: tuple[SubjectMoments, ...]
    subject_data: tuple
    log_likelihood: LogLikelihood
    schema: ParameterSchema
    proposals: np.ndarray  # (is_samples, n_params)
    log_q: np.ndarray  # (is_samples,) log density of the realized proposal mixture
    proposal_seeds: tuple[np.random.SeedSequence, ...]
    config: IS2Config


@dataclass(frozen=True)
class ProposalWeight:
    index: int
    log_weight: float
    log_likelihood: float
    log_prior: float
    n_failed: int
    particle_ess: float


@dataclass(frozen=True)
class IS2Result:
    log_marginal_likelihood: float
    standard_error: float
    bootstrap_variance: float
    log_weights: np.ndarray
    bootstrap_estimates: np.ndarray
    ess: float
    n_failed: np.ndarray
    particle_ess: np.ndarray
    mixture: ImportanceMixture
    config: IS2Config
    meta: dict

    def to_jsonable(self, *, include_weights: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "log_marginal_likelihood": float(self.log_marginal_likelihood),
            "standard_error": float(self.standard_error),
            "bootstrap_variance": float(self.bootstrap_variance),
            "bootstrap_mean": float(np.mean(self.bootstrap_estimates)),
            "ess": float(self.ess),
            "n_failed_likelihood_evals": int(np.sum(self.n_failed)),
            "particle_ess_mean": float(np.mean(self.particle_ess)),
            "mixture": self.mixture.to_jsonable(),
            "config": self.config.to_jsonable(),
            "meta": dict(self.meta),
        }
        if include_weights:
            out["log_weights"] = self.log_weights.tolist()
            out["bootstrap_estimates"] = self.bootstrap_estimates.tolist()
        return out


def evaluate_proposal(i: int, ctx: IS2Context) -> ProposalWeight:
    """Log importance weight of proposal i: sum_j log p_hat_j + log prior - log q."""
    cfg = ctx.config
    rng = np.random.default_rng(ctx.proposal_seeds[int(i)])
    params = ctx.proposals[int(i)]
    ll_total = 0.0
    n_failed = 0
    ess = []
    for moments, data in zip(ctx.moments, ctx.subject_data, strict=True):
        est = subject_log_likelihood(
            moments,
            ctx.model,
            params,
            data,
            ctx.log_likelihood,
            schema=ctx.schema,
            n_particles=int(cfg.n_particles),
            wmix=float(cfg.wmix),
            rng=rng,
            vectorized=bool(cfg.vectorized_likelihood),
            on_failure=cfg.likelihood_failure,
        )
        ll_total += est.log_likelihood
        n_failed += est.n_failed
        ess.append(est.ess)
    log_prior = float(ctx.model.log_prior(params))
    return ProposalWeight(
        index=int(i),
        log_weight=float(ll_total + log_prior - float(ctx.log_q[int(i)])),
        log_likelihood=float(ll_total),
        log_prior=log_prior,
        n_failed=int(n_failed),
        particle_ess=float(np.mean(ess)),
    )


def evaluate_proposals(indices: Sequence[int], ctx: IS2Context) -> list[ProposalWeight]:
    return [evaluate_proposal(int(i), ctx) for i in indices]


# Worker processes are forked after the context is set, so they inherit it without pickling
# the (possibly closure-based) likelihood function.
_IS2_CTX: IS2Context | None = None


def _is2_chunk_worker(indices: np.ndarray) -> list[ProposalWeight]:
    """Top-level worker for one disjoint block of proposal indices."""
    if _IS2_CTX is None:
        raise RuntimeError("IS2 worker context not initialized (requires fork start method).")
    return evaluate_proposals([int(i) for i in indices], _IS2_CTX)


def resolve_workers(requested: int | None, *, n_tasks: int) -> int:
    """Clamp a requested worker count to the usable CPUs and the number of tasks."""
    total = os.cpu_count() or 1
    if hasattr(os, "sched_getaffinity"):
        try:
            allowed = len(os.sched_getaffinity(0))
            if allowed > 0:
                total = min(int(total), int(allowed))
        except OSError:
            pass
    req = int(total) if requested is None or int(requested) <= 0 else min(int(requested), int(total))
    return max(1, min(req, int(n_tasks)))


def _order_subject_data(subject_data: Mapping | Sequence, subjects: tuple) -> tuple:
    if isinstance(subject_data, Mapping):
        missing = [s for s in subjects if s not in subject_data]
        if missing:
            raise ValueError(f"No data for subjects {missing[:5]}{'...' if len(missing) > 5 else ''}.")
        return tuple(subject_data[s] for s in subjects)
    out = tuple(subject_data)
    if len(out) != len(subjects):
        raise ValueError(f"Got data for {len(out)} subjects; posterior has {len(subjects)}.")
    return out


def run_is2(
    draws: PosteriorDraws,
    model: GroupModel,
    log_likelihood: LogLikelihood,
    subject_data: Mapping | Sequence,
    *,
    schema: ParameterSchema | None = None,
    config: IS2Config | None = None,
    discard: int = 0,
    thin: int = 1,
) -> IS2Result:
    """Estimate the log marginal likelihood of a hierarchical model with IS².

    Steps: assemble the posterior draws, fit the importance mixture, draw the
    proposals, evaluate one log-weight per proposal (in parallel when
    `config.n_workers > 1`), then aggregate with a bootstrap standard error.
    """
    cfg = config if config is not None else IS2Config()
    t0 = time.time()

    assembled = assemble_posterior(draws, model, discard=discard, thin=thin)
    if schema is None:
        schema = ParameterSchema(tuple(f"alpha_{k}" for k in range(draws.n_randeffect)))
    if schema.size != draws.n_randeffect:
        raise ValueError(f"Schema has {schema.size} fields; draws have {draws.n_randeffect} random effects.")
    data = _order_subject_data(subject_data, assembled.subjects)

    root = np.random.SeedSequence(int(cfg.seed))
    fit_ss, proposal_ss, boot_ss, particle_ss = root.spawn(4)

    mixture = fit_importance_mixture(
        assembled.augmented,
        n_components=int(cfg.n_components),
        rng=np.random.default_rng(fit_ss),
        max_attempts=int(cfg.max_fit_attempts),
        max_iter=int(cfg.fit_max_iter),
        tol=float(cfg.fit_tol),
        reg_covar=float(cfg.fit_reg_covar),
    )
    N = int(cfg.is_samples)
    proposals, counts = mixture.sample_proposals(N, np.random.default_rng(proposal_ss))
    # Stratified draws: the density they came from uses the realized component fractions.
    log_q = mixture.logpdf(proposals, weights=counts / float(N))

    ctx = IS2Context(
        model=model,
        moments=assembled.moments,
        subject_data=data,
        log_likelihood=log_likelihood,
        schema=schema,
        proposals=proposals,
        log_q=log_q,
        proposal_seeds=tuple(particle_ss.spawn(N)),
        config=cfg,
    )

    logw = np.full(N, np.nan, dtype=float)
    n_failed = np.zeros(N, dtype=int)
    particle_ess = np.full(N, np.nan, dtype=float)
    filled = np.zeros(N, dtype=bool)

    progress = bool(cfg.progress)
    progress_every = max(1, int(cfg.progress_every))
    progress_path = Path(cfg.progress_path) if cfg.progress_path is not None else None
    if progress_path is not None:
        progress_path.parent.mkdir(parents=True, exist_ok=True)
        progress_path.write_text("", encoding="utf-8")
    t_eval = time.time()
    done = 0

    def _store(results: list[ProposalWeight]) -> None:
        nonlocal done
        for r in results:
            logw[r.index] = r.log_weight
            n_failed[r.index] = r.n_failed
            particle_ess[r.index] = r.particle_ess
            filled[r.index] = True
        prev = done
        done += len(results)
        if not progress and progress_path is None:
            return
        elapsed = float(time.time() - t_eval)
        rate = float(done) / max(elapsed, 1e-9)
        eta = float(N - done) / max(rate, 1e-9)
        if progress and (done // progress_every > prev // progress_every or done == N):
            print(
                f"[is2] done={done}/{N} elapsed={elapsed/60.0:.1f}m eta={eta/60.0:.1f}m "
                f"failed={int(np.sum(n_failed))}",
                flush=True,
            )
        if progress_path is not None:
            rec = {"done": int(done), "N": int(N), "elapsed_s": elapsed, "eta_s": eta}
            with open(progress_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(rec, sort_keys=True) + "\n")
                f.flush()

    n_workers = resolve_workers(cfg.n_workers, n_tasks=N)
    if n_workers > 1:
        import multiprocessing as mp

        global _IS2_CTX
        _IS2_CTX = ctx
        try:
            chunks = np.array_split(np.arange(N), n_workers)
            with mp.get_context("fork").Pool(processes=n_workers) as pool:
                for results in pool.imap_unordered(_is2_chunk_worker, chunks, chunksize=1):
                    _store(results)
        finally:
            _IS2_CTX = None
    else:
        for i in range(N):
            _store([evaluate_proposal(i, ctx)])

    if not np.all(filled):
        raise RuntimeError(f"{int(np.sum(~filled))} proposal weights missing (worker crash or early exit).")

    boot = bootstrap_log_mean_exp(
        logw,
        n_bootstrap=int(cfg.n_bootstrap),
        rng=np.random.default_rng(boot_ss),
        chunk=int(cfg.bootstrap_chunk),
    )
    return IS2Result(
        log_marginal_likelihood=boot.estimate,
        standard_error=boot.standard_error,
        bootstrap_variance=boot.variance,
        log_weights=logw,
        bootstrap_estimates=boot.estimates,
        ess=ess_from_logweights(logw),
        n_failed=n_failed,
        particle_ess=particle_ess,
        mixture=mixture,
        config=cfg,
        meta={
            "n_subjects": int(len(assembled.subjects)),
            "n_randeffect": int(draws.n_randeffect),
            "n_iter": int(assembled.n_iter),
            "n_params": int(model.n_params),
            "n_workers": int(n_workers),
            "fit_attempts": int(mixture.attempts),
            "proposal_counts": counts.tolist(),
            "schema": schema.to_jsonable(),
            "group_model": model.to_jsonable(),
            "elapsed_s": float(time.time() - t0),
        },
    )


def log_bayes_factor(numerator: IS2Result, denominator: IS2Result) -> tuple[float, float]:
    """log BF = log Z_num - log Z_den, with the two bootstrap standard errors added in quadrature."""
    log_bf = float(numerator.log_marginal_likelihood - denominator.log_marginal_likelihood)
    se = float(np.sqrt(numerator.standard_error**2 + denominator.standard_error**2))
    return log_bf, se
