from __future__ import annotations

import numpy as np
import pytest
from scipy.stats import multivariate_normal
from sklearn.mixture import GaussianMixture

import hierarchical_is2.mixture as mixture_mod
from hierarchical_is2.errors import MixtureFitError
from hierarchical_is2.group_models import mvn_logpdf
from hierarchical_is2.importance_sampling import log_mean_exp
from hierarchical_is2.mixture import ImportanceMixture, clamped_split, fit_importance_mixture


def _two_blob_samples(rng: np.random.Generator, n: int = 600, d: int = 3) -> np.ndarray:
    a = rng.normal(size=(int(0.7 * n), d))
    b = rng.normal(loc=6.0, scale=0.5, size=(n - a.shape[0], d))
    return np.concatenate([a, b], axis=0)


def test_clamped_split_two_components_invariants() -> None:
    rng = np.random.default_rng(0)
    for T in range(4, 80):
        for p in (0.0, 1e-6, 0.05, 0.5, 0.95, 1.0 - 1e-6, 1.0):
            n1, n2 = clamped_split(rng, T, [p, 1.0 - p])
            assert n1 + n2 == T
            assert 2 <= n1 <= T - 2
            assert 2 <= n2 <= T - 2


def test_clamped_split_many_components_keeps_minimum() -> None:
    rng = np.random.default_rng(1)
    for T in (8, 9, 20, 200):
        for probs in ([0.97, 0.01, 0.01, 0.01], [0.25, 0.25, 0.25, 0.25], [0.0, 0.0, 0.0, 1.0]):
            counts = clamped_split(rng, T, probs)
            assert int(counts.sum()) == T
            assert np.all(counts >= 2)


def test_clamped_split_rejects_too_small_total() -> None:
    with pytest.raises(ValueError):
        clamped_split(np.random.default_rng(0), 3, [0.5, 0.5])
    with pytest.raises(ValueError):
        clamped_split(np.random.default_rng(0), 10, [np.nan, 0.5])


def test_fit_importance_mixture_is_valid() -> None:
    rng = np.random.default_rng(2)
    X = _two_blob_samples(rng)
    mix = fit_importance_mixture(X, n_components=2, rng=np.random.default_rng(3))
    assert mix.n_components == 2
    assert mix.dim == 3
    assert abs(float(np.sum(mix.weights)) - 1.0) < 1e-10
    for k in range(2):
        assert np.all(np.linalg.eigvalsh(mix.covariances[k]) > 0.0)
    heavy = int(np.argmax(mix.weights))
    assert np.allclose(mix.means[heavy], 0.0, atol=0.3)
    assert np.allclose(mix.means[1 - heavy], 6.0, atol=0.3)
    assert np.isclose(mix.weights[heavy], 0.7, atol=0.05)


def test_fit_retries_after_numerical_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"n": 0}

    class FlakyMixture(GaussianMixture):
        def fit(self, X, y=None):
            calls["n"] += 1
            if calls["n"] < 3:
                raise np.linalg.LinAlgError("singular component covariance")
            return super().fit(X, y)

    monkeypatch.setattr(mixture_mod, "GaussianMixture", FlakyMixture)
    X = _two_blob_samples(np.random.default_rng(4))
    mix = fit_importance_mixture(X, n_components=2, rng=np.random.default_rng(5), max_attempts=5)
    assert mix.attempts == 3
    assert calls["n"] == 3


def test_fit_gives_up_after_bounded_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"n": 0}

    class BrokenMixture(GaussianMixture):
        def fit(self, X, y=None):
            calls["n"] += 1
            raise ValueError("EM diverged")

    monkeypatch.setattr(mixture_mod, "GaussianMixture", BrokenMixture)
    X = _two_blob_samples(np.random.default_rng(6))
    with pytest.raises(MixtureFitError) as info:
        fit_importance_mixture(X, n_components=2, rng=np.random.default_rng(7), max_attempts=4)
    assert calls["n"] == 4
    assert info.value.attempts == 4
    assert info.value.stage == "mixture_fit"
    assert "4 attempts" in str(info.value)
    assert isinstance(info.value.last_error, ValueError)


def test_fit_requires_more_samples_than_components() -> None:
    with pytest.raises(MixtureFitError):
        fit_importance_mixture(np.zeros((2, 3)), n_components=2, rng=np.random.default_rng(0))


def test_sample_proposals_keeps_light_component_alive() -> None:
    mix = ImportanceMixture(
        weights=np.array([0.001, 0.999]),
        means=np.array([[100.0, 100.0], [0.0, 0.0]]),
        covariances=np.stack([np.eye(2), np.eye(2)]),
    )
    rng = np.random.default_rng(8)
    for _ in range(20):
        props, counts = mix.sample_proposals(40, rng)
        assert props.shape == (40, 2)
        assert int(counts.sum()) == 40
        n_far = int(np.sum(props[:, 0] > 50.0))
        assert n_far == counts[0]
        assert 2 <= n_far <= 38


def test_realized_fractions_keep_stratified_weights_unbiased() -> None:
    # Target is the light component itself, so the integral is exactly 1.
    mix = ImportanceMixture(
        weights=np.array([0.001, 0.999]),
        means=np.array([[100.0, 100.0], [0.0, 0.0]]),
        covariances=np.stack([np.eye(2), np.eye(2)]),
    )
    props, counts = mix.sample_proposals(40, np.random.default_rng(3))
    assert counts[0] == 2
    log_target = mvn_logpdf(props, mix.means[0], mix.covariances[0])
    realized = log_target - mix.logpdf(props, weights=counts / 40.0)
    assert abs(log_mean_exp(realized)) < 1e-8
    nominal = log_target - mix.logpdf(props)
    assert log_mean_exp(nominal) > 3.0
    with pytest.raises(ValueError):
        mix.logpdf(props, weights=np.ones(3) / 3.0)


def test_mixture_logpdf_matches_scipy() -> None:
    means = np.array([[0.0, 1.0], [3.0, -1.0]])
    covs = np.stack([np.eye(2), np.array([[2.0, 0.3], [0.3, 0.5]])])
    w = np.array([0.3, 0.7])
    mix = ImportanceMixture(weights=w, means=means, covariances=covs)
    x = np.random.default_rng(9).normal(size=(5, 2))
    ref = np.log(
        w[0] * multivariate_normal.pdf(x, means[0], covs[0]) + w[1] * multivariate_normal.pdf(x, means[1], covs[1])
    )
    assert np.allclose(mix.logpdf(x), ref)


def test_importance_mixture_normalizes_weights_and_checks_covariances() -> None:
    mix = ImportanceMixture(weights=[2.0, 2.0], means=np.zeros((2, 1)), covariances=np.ones((2, 1, 1)))
    assert np.allclose(mix.weights, [0.5, 0.5])
    with pytest.raises(np.linalg.LinAlgError):
        ImportanceMixture(weights=[1.0], means=np.zeros((1, 2)), covariances=-np.eye(2)[None])
