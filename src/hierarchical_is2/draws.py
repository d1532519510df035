from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import SampleAssemblyError


@dataclass(frozen=True)
class PosteriorDraws:
    """Sample-stage draws from an upstream hierarchical sampler.

    Array layouts (iteration axis last):
      alpha:     (n_subjects, n_randeffect, n_iter)   subject random effects
      theta_mu:  (n_randeffect, n_iter)                group mean
      theta_sig: (n_randeffect, n_randeffect, n_iter)  group covariance
      a_half:    (n_randeffect, n_iter)                Huang-Wand scale-mixture values

    `theta_sig` and `a_half` may be None for group models whose covariance is
    fixed rather than sampled.
    """

    alpha: np.ndarray
    theta_mu: np.ndarray
    theta_sig: np.ndarray | None = None
    a_half: np.ndarray | None = None
    subjects: tuple | None = None

    def __post_init__(self) -> None:
        alpha = np.asarray(self.alpha, dtype=float)
        theta_mu = np.asarray(self.theta_mu, dtype=float)
        if alpha.ndim != 3:
            raise SampleAssemblyError(f"alpha must have shape (n_subjects, n_randeffect, n_iter); got {alpha.shape}.")
        if theta_mu.ndim != 2:
            raise SampleAssemblyError(f"theta_mu must have shape (n_randeffect, n_iter); got {theta_mu.shape}.")
        n_sub, n_re, n_iter = alpha.shape
        if theta_mu.shape != (n_re, n_iter):
            raise SampleAssemblyError(
                f"theta_mu shape {theta_mu.shape} inconsistent with alpha (expected {(n_re, n_iter)})."
            )
        object.__setattr__(self, "alpha", alpha)
        object.__setattr__(self, "theta_mu", theta_mu)

        if self.theta_sig is not None:
            theta_sig = np.asarray(self.theta_sig, dtype=float)
            if theta_sig.shape != (n_re, n_re, n_iter):
                raise SampleAssemblyError(
                    f"theta_sig shape {theta_sig.shape} inconsistent with alpha (expected {(n_re, n_re, n_iter)})."
                )
            object.__setattr__(self, "theta_sig", theta_sig)
        if self.a_half is not None:
            a_half = np.asarray(self.a_half, dtype=float)
            if a_half.shape != (n_re, n_iter):
                raise SampleAssemblyError(
                    f"a_half shape {a_half.shape} inconsistent with alpha (expected {(n_re, n_iter)})."
                )
            if np.any(~np.isfinite(a_half)) or np.any(a_half <= 0.0):
                raise SampleAssemblyError("a_half draws must be finite and strictly positive.")
            object.__setattr__(self, "a_half", a_half)

        if self.subjects is None:
            object.__setattr__(self, "subjects", tuple(range(n_sub)))
        else:
            subjects = tuple(self.subjects)
            if len(subjects) != n_sub:
                raise SampleAssemblyError(f"Got {len(subjects)} subject ids for {n_sub} subjects in alpha.")
            object.__setattr__(self, "subjects", subjects)

    @property
    def n_subjects(self) -> int:
        return int(self.alpha.shape[0])

    @property
    def n_randeffect(self) -> int:
        return int(self.alpha.shape[1])

    @property
    def n_iter(self) -> int:
        return int(self.alpha.shape[2])

    def select(self, *, discard: int = 0, thin: int = 1) -> "PosteriorDraws":
        """Drop the first `discard` iterations and keep every `thin`-th one after that."""
        discard = int(discard)
        thin = int(thin)
        if discard < 0:
            raise ValueError("discard must be >= 0.")
        if thin < 1:
            raise ValueError("thin must be >= 1.")
        if discard >= self.n_iter:
            raise SampleAssemblyError(f"discard={discard} removes all {self.n_iter} iterations.")
        sl = slice(discard, None, thin)
        return PosteriorDraws(
            alpha=self.alpha[..., sl],
            theta_mu=self.theta_mu[..., sl],
            theta_sig=None if self.theta_sig is None else self.theta_sig[..., sl],
            a_half=None if self.a_half is None else self.a_half[..., sl],
            subjects=self.subjects,
        )
