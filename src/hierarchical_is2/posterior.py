from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .draws import PosteriorDraws
from .errors import SampleAssemblyError
from .group_models import GroupModel


@dataclass(frozen=True)
class SubjectMoments:
    """Empirical joint moments of (alpha_j, group coordinates) for one subject.

    The normal conditional of alpha_j given the group coordinates g is
      mean = m_a + S_ag S_gg^{-1} (g - m_g),   cov = S_aa - S_ag S_gg^{-1} S_ga,
    and its regression matrix and covariance are precomputed once here.
    """

    subject: object
    mean: np.ndarray
    cov: np.ndarray
    n_randeffect: int
    _regression: np.ndarray | None = field(default=None, repr=False, compare=False)
    _cond_cov: np.ndarray | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        mean = np.asarray(self.mean, dtype=float)
        cov = np.asarray(self.cov, dtype=float)
        n = int(self.n_randeffect)
        if mean.ndim != 1 or cov.shape != (mean.size, mean.size) or not (0 < n < mean.size):
            raise SampleAssemblyError(f"Subject {self.subject!r}: moment shapes are inconsistent.")
        S_aa = cov[:n, :n]
        S_ag = cov[:n, n:]
        S_gg = cov[n:, n:]
        try:
            # Solve instead of forming S_gg^{-1} explicitly.
            regression = np.linalg.solve(S_gg, S_ag.T).T
        except np.linalg.LinAlgError as exc:
            raise SampleAssemblyError(
                f"Subject {self.subject!r}: group-coordinate covariance is singular; "
                "the posterior draws do not vary enough to condition on."
            ) from exc
        cond_cov = S_aa - regression @ S_ag.T
        cond_cov = 0.5 * (cond_cov + cond_cov.T)
        try:
            np.linalg.cholesky(cond_cov)
        except np.linalg.LinAlgError as exc:
            raise SampleAssemblyError(f"Subject {self.subject!r}: conditional covariance is not positive definite.") from exc
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "cov", cov)
        object.__setattr__(self, "n_randeffect", n)
        object.__setattr__(self, "_regression", regression)
        object.__setattr__(self, "_cond_cov", cond_cov)

    def conditional(self, group_values: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Mean and covariance of alpha_j given the group coordinates."""
        g = np.asarray(group_values, dtype=float).reshape(-1)
        n = self.n_randeffect
        if g.size != self.mean.size - n:
            raise ValueError(f"Expected {self.mean.size - n} group coordinates, got {g.size}.")
        cond_mean = self.mean[:n] + self._regression @ (g - self.mean[n:])
        return cond_mean, self._cond_cov


@dataclass(frozen=True)
class AssembledPosterior:
    augmented: np.ndarray  # (n_iter, n_params)
    moments: tuple[SubjectMoments, ...]
    subjects: tuple
    n_iter: int


def assemble_posterior(
    draws: PosteriorDraws,
    model: GroupModel,
    *,
    n_subjects: int | None = None,
    n_randeffect: int | None = None,
    n_iter: int | None = None,
    discard: int = 0,
    thin: int = 1,
) -> AssembledPosterior:
    """Build the group-level augmented sample matrix and per-subject moments.

    Optional counts are checked against the draws; any mismatch is fatal.
    """
    if discard or thin != 1:
        draws = draws.select(discard=discard, thin=thin)
    if n_subjects is not None and int(n_subjects) != draws.n_subjects:
        raise SampleAssemblyError(f"Expected {int(n_subjects)} subjects, draws have {draws.n_subjects}.")
    if n_randeffect is not None and int(n_randeffect) != draws.n_randeffect:
        raise SampleAssemblyError(f"Expected {int(n_randeffect)} random effects, draws have {draws.n_randeffect}.")
    if n_iter is not None and int(n_iter) != draws.n_iter:
        raise SampleAssemblyError(f"Expected {int(n_iter)} sample iterations, draws have {draws.n_iter}.")

    augmented = model.augmented_samples(draws)
    if augmented.shape != (draws.n_iter, model.n_params):
        raise SampleAssemblyError(
            f"Group model produced augmented samples of shape {augmented.shape}; "
            f"expected {(draws.n_iter, model.n_params)}."
        )
    if not np.all(np.isfinite(augmented)):
        raise SampleAssemblyError("Augmented group samples contain non-finite values.")
    if draws.n_iter <= model.n_params:
        raise SampleAssemblyError(
            f"Need more sample iterations ({draws.n_iter}) than group parameters ({model.n_params})."
        )

    group_block = augmented[:, : model.n_group]
    moments = []
    for j, subject in enumerate(draws.subjects):
        joint = np.concatenate([draws.alpha[j].T, group_block], axis=1)
        moments.append(
            SubjectMoments(
                subject=subject,
                mean=np.mean(joint, axis=0),
                cov=np.atleast_2d(np.cov(joint, rowvar=False)),
                n_randeffect=draws.n_randeffect,
            )
        )
    return AssembledPosterior(
        augmented=augmented,
        moments=tuple(moments),
        subjects=draws.subjects,
        n_iter=int(draws.n_iter),
    )
