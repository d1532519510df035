from __future__ import annotations

import numpy as np
import pytest
from scipy.stats import invgamma, invwishart, multivariate_normal

from hierarchical_is2.group_models import (
    HuangWandGroupModel,
    HuangWandPrior,
    KnownCovarianceGroupModel,
    KnownCovariancePrior,
)
from hierarchical_is2.transforms import rewind_log_jacobian, unwind


def _hw_model() -> HuangWandGroupModel:
    prior = HuangWandPrior(theta_mu_mean=np.array([0.5, -0.5]), theta_mu_var=np.diag([1.0, 4.0]))
    return HuangWandGroupModel(prior)


def _params(mu: np.ndarray, sigma: np.ndarray, a: np.ndarray) -> np.ndarray:
    return np.concatenate([mu, unwind(sigma), np.log(a)])


def test_huang_wand_layout() -> None:
    model = _hw_model()
    assert model.n_randeffect == 2
    assert model.n_group == 5
    assert model.n_params == 7
    sigma = np.array([[1.5, 0.2], [0.2, 0.7]])
    p = _params(np.array([0.1, 0.2]), sigma, np.array([0.8, 1.3]))
    mu, s, log_a = model.split(p)
    assert np.allclose(mu, [0.1, 0.2])
    assert np.allclose(s, sigma)
    assert np.allclose(np.exp(log_a), [0.8, 1.3])
    with pytest.raises(ValueError):
        model.split(p[:-1])


def test_huang_wand_log_prior_components() -> None:
    model = _hw_model()
    mu = np.array([0.1, 0.2])
    sigma = np.array([[1.5, 0.2], [0.2, 0.7]])
    a = np.array([0.8, 1.3])
    p = _params(mu, sigma, a)
    v = 2.0
    expected = (
        multivariate_normal.logpdf(mu, mean=[0.5, -0.5], cov=np.diag([1.0, 4.0]))
        + invwishart.logpdf(sigma, df=v + 1.0, scale=2.0 * v * np.diag(1.0 / a))
        + np.sum(invgamma.logpdf(a, 0.5, scale=1.0))
        + rewind_log_jacobian(unwind(sigma))
        + np.sum(np.log(a))
    )
    assert np.isclose(model.log_prior(p), expected)


def test_huang_wand_single_random_effect() -> None:
    model = HuangWandGroupModel(HuangWandPrior(theta_mu_mean=[0.0], theta_mu_var=[[1.0]], A_half=2.0))
    p = np.array([0.3, np.log(1.2), np.log(0.9)])
    lp = model.log_prior(p)
    assert np.isfinite(lp)
    x = np.array([[0.0], [1.0]])
    ref = multivariate_normal.logpdf(x.ravel(), mean=0.3, cov=1.2**2)
    assert np.allclose(model.random_effect_logpdf(x, p), ref)
    assert model.random_effect_logpdf(np.array([[0.0]]), p).shape == (1,)


def test_group_sampling_matches_group_density() -> None:
    model = _hw_model()
    sigma = np.array([[1.5, 0.4], [0.4, 0.7]])
    p = _params(np.array([1.0, -2.0]), sigma, np.array([1.0, 1.0]))
    x = model.sample_random_effects(p, 20_000, np.random.default_rng(0))
    assert x.shape == (20_000, 2)
    assert np.allclose(x.mean(axis=0), [1.0, -2.0], atol=0.05)
    assert np.allclose(np.cov(x, rowvar=False), sigma, atol=0.06)
    assert model.sample_random_effects(p, 0, np.random.default_rng(0)).shape == (0, 2)


def test_known_covariance_model() -> None:
    model = KnownCovarianceGroupModel(KnownCovariancePrior(theta_mu_mean=[0.0], theta_mu_var=[[1.0]], sigma=[[2.0]]))
    assert model.n_params == model.n_group == model.n_randeffect == 1
    assert np.isclose(model.log_prior(np.array([0.5])), multivariate_normal.logpdf(0.5, 0.0, 1.0))
    lp = model.random_effect_logpdf(np.array([[0.0], [1.0], [2.0]]), np.array([1.0]))
    assert np.allclose(lp, multivariate_normal.logpdf([0.0, 1.0, 2.0], 1.0, 2.0))
    with pytest.raises(ValueError):
        KnownCovariancePrior(theta_mu_mean=[0.0, 0.0], theta_mu_var=np.eye(2), sigma=-np.eye(2))


def test_prior_validation() -> None:
    with pytest.raises(ValueError):
        HuangWandPrior(theta_mu_mean=[0.0, 0.0], theta_mu_var=np.eye(3))
    with pytest.raises(ValueError):
        HuangWandPrior(theta_mu_mean=[0.0], theta_mu_var=[[1.0]], A_half=-1.0)
