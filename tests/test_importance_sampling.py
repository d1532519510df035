from __future__ import annotations

from decimal import Decimal, getcontext

import numpy as np
import pytest

from hierarchical_is2.errors import AggregationError
from hierarchical_is2.importance_sampling import (
    aggregate_logweights,
    bootstrap_log_mean_exp,
    ess_from_logweights,
    log_mean_exp,
)


def _reference_log_mean_exp(values: list[float]) -> float:
    getcontext().prec = 60
    total = sum(Decimal(v).exp() for v in values)
    return float((total / Decimal(len(values))).ln())


def test_log_mean_exp_survives_spread_beyond_700() -> None:
    cases = [
        [1000.0, 200.0, -1000.0],
        [-2000.0, -1200.0, -1199.5, -1900.0],
        [750.0, 0.0, -10.0, 749.0],
    ]
    for lw in cases:
        with np.errstate(all="ignore"):
            naive = np.log(np.mean(np.exp(np.asarray(lw))))
        assert not np.isfinite(naive)
        out = log_mean_exp(np.asarray(lw))
        assert np.isfinite(out)
        assert abs(out - _reference_log_mean_exp(lw)) <= 1e-12 * max(1.0, abs(out))


def test_log_mean_exp_is_monotone_in_weights() -> None:
    base = np.array([-900.0, 0.0, 850.0])
    lower = log_mean_exp(base)
    higher = log_mean_exp(base + np.array([0.0, 0.0, 1.0]))
    assert higher > lower


def test_log_mean_exp_handles_negative_infinity() -> None:
    assert np.isclose(log_mean_exp(np.array([0.0, -np.inf])), np.log(0.5))
    assert log_mean_exp(np.array([-np.inf, -np.inf])) == -np.inf
    assert np.isnan(log_mean_exp(np.array([0.0, np.nan])))
    assert np.isnan(log_mean_exp(np.array([0.0, np.inf])))
    rows = log_mean_exp(np.array([[0.0, 0.0], [-np.inf, -np.inf], [1.0, 1.0]]), axis=1)
    assert rows.shape == (3,)
    assert np.allclose(rows[[0, 2]], [0.0, 1.0])
    assert rows[1] == -np.inf


def test_aggregate_rejects_collapsed_or_invalid_weights() -> None:
    with pytest.raises(AggregationError) as info:
        aggregate_logweights(np.full(10, -np.inf))
    assert info.value.stage == "aggregation"
    with pytest.raises(AggregationError):
        aggregate_logweights(np.array([0.0, np.nan]))
    with pytest.raises(AggregationError):
        aggregate_logweights(np.array([0.0, np.inf]))
    assert np.isclose(aggregate_logweights(np.array([2.0, 2.0, -np.inf, -np.inf])), 2.0 + np.log(0.5))


def test_ess_from_logweights() -> None:
    assert np.isclose(ess_from_logweights(np.zeros(50)), 50.0)
    assert np.isclose(ess_from_logweights(np.array([0.0, -800.0, -900.0])), 1.0)
    assert ess_from_logweights(np.full(3, -np.inf)) == 0.0


def test_bootstrap_mean_tracks_point_estimate() -> None:
    rng = np.random.default_rng(0)
    lw = rng.normal(size=2000) - 500.0
    boot = bootstrap_log_mean_exp(lw, n_bootstrap=2000, rng=np.random.default_rng(1))
    assert boot.estimates.shape == (2000,)
    assert np.isclose(boot.estimate, log_mean_exp(lw))
    assert boot.standard_error > 0.0
    assert np.isclose(boot.variance, boot.standard_error**2)
    assert abs(boot.mean - boot.estimate) < 3.0 * boot.standard_error


def test_bootstrap_variance_shrinks_with_more_weights() -> None:
    variances = {}
    for n in (100, 1000, 10_000):
        v = []
        for rep in range(3):
            lw = np.random.default_rng(100 + rep).normal(size=n)
            boot = bootstrap_log_mean_exp(lw, n_bootstrap=300, rng=np.random.default_rng(200 + rep))
            v.append(boot.variance)
        variances[n] = float(np.mean(v))
    assert variances[100] > variances[1000] > variances[10_000]


def test_bootstrap_is_reproducible_for_a_seed() -> None:
    lw = np.random.default_rng(3).normal(size=500)
    a = bootstrap_log_mean_exp(lw, n_bootstrap=100, rng=np.random.default_rng(4), chunk=7)
    b = bootstrap_log_mean_exp(lw, n_bootstrap=100, rng=np.random.default_rng(4), chunk=7)
    assert np.array_equal(a.estimates, b.estimates)
    with pytest.raises(ValueError):
        bootstrap_log_mean_exp(lw, n_bootstrap=1, rng=np.random.default_rng(0))
