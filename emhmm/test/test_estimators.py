#!/usr/bin/env python
"""Tests for estimators, which initialize models, reduce forward-backward
output to expected sufficient statistics, and re-estimate parameters
"""
import numpy
import pytest
import scipy.stats

from numpy.testing import assert_almost_equal, assert_array_equal

from emhmm.estimators import (
    DirichletStatePriorEstimator,
    DirichletTransitionEstimator,
    DiscreteEmissionEstimator,
    GaussianEmissionEstimator,
    fit_gaussian,
)
from emhmm.factors import GaussianFactor, NormalInvWishart, is_posdef
from emhmm.sequences import SequenceCollection
from emhmm.training import make_config
from emhmm.util import DegenerateEmissionError, InvalidInputError
from emhmm.test.common import (
    check_stochastic,
    get_dirty_casino,
    get_separated_gaussian,
)

_SEED = 20394

#===============================================================================
# State priors and transitions
#===============================================================================


class TestDirichletStatePriorEstimator():

    @classmethod
    def setup_class(cls):
        cls.estimator = DirichletStatePriorEstimator([2, 2, 3])

    def test_construct_factors_is_posterior_mode(self):
        found = self.estimator.construct_factors(numpy.array([3.0, 1.0, 0.0]))
        assert_almost_equal(found.data, numpy.array([4.0, 2.0, 2.0]) / 8.0)

    def test_unit_pseudocounts_give_maximum_likelihood(self):
        estimator = DirichletStatePriorEstimator(numpy.ones(2))
        found = estimator.construct_factors(numpy.array([3.0, 1.0]))
        assert_almost_equal(found.data, [0.75, 0.25])

    def test_reduce_data_takes_first_posterior_row(self):
        hmm = get_dirty_casino()
        res = hmm.forward_backward(numpy.array([5, 5, 0, 1]))
        assert_array_equal(self.estimator.reduce_data(hmm, res), res.posterior[0])

    def test_pseudocounts_below_one_raise(self):
        with pytest.raises(InvalidInputError):
            DirichletStatePriorEstimator([1, 0.5])


class TestDirichletTransitionEstimator():

    @classmethod
    def setup_class(cls):
        cls.estimator = DirichletTransitionEstimator(2 * numpy.ones((2, 2)))

    def test_construct_factors_is_rowwise_posterior_mode(self):
        counts = numpy.array([[8.0, 0.0], [1.0, 3.0]])
        found = self.estimator.construct_factors(counts)
        assert_almost_equal(found.data, [[0.9, 0.1], [1.0 / 3, 2.0 / 3]])
        check_stochastic(found.data)

    def test_empty_row_without_pseudocounts_raises(self):
        estimator = DirichletTransitionEstimator(numpy.ones((2, 2)))
        with pytest.raises(DegenerateEmissionError) as excinfo:
            estimator.construct_factors(numpy.array([[1.0, 1.0], [0.0, 0.0]]))
        assert excinfo.value.state == 1

    def test_reduce_data_counts_transitions(self):
        hmm = get_dirty_casino()
        obs = numpy.array([0, 5, 5, 2, 5])
        res = hmm.forward_backward(obs)
        found = self.estimator.reduce_data(hmm, res)
        assert_almost_equal(found, hmm.expected_transitions(obs))
        assert_almost_equal(found.sum(), len(obs) - 1)

    def test_log_prior(self):
        hmm = get_dirty_casino()
        expected = numpy.log(hmm.trans_probs.data).sum()
        assert_almost_equal(self.estimator.log_prior(hmm), expected)


#===============================================================================
# Gaussian emissions
#===============================================================================


def test_fit_gaussian():
    rng = numpy.random.default_rng(_SEED)
    data = rng.multivariate_normal([1, 2], [[1.0, 0.4], [0.4, 2.0]], size=50)
    found = fit_gaussian(data)
    assert_almost_equal(found.mean, data.mean(0))
    assert_almost_equal(found.cov, numpy.cov(data, rowvar=False, bias=True))


def test_fit_gaussian_univariate():
    found = fit_gaussian(numpy.array([[1.0], [3.0]]))
    assert_almost_equal(found.mean, [2.0])
    assert_almost_equal(found.cov, [[1.0]])


class TestGaussianEmissionEstimator():

    @classmethod
    def setup_class(cls):
        rng = numpy.random.default_rng(_SEED)
        cls.data = rng.multivariate_normal([1, -1], [[1.0, 0.3], [0.3, 0.5]], size=60)
        w = rng.random(60)
        cls.weights = numpy.column_stack([w, 1 - w])
        cls.prior = NormalInvWishart([0.5, 0.0], [[0.5, 0.1], [0.1, 0.3]], 4, 2)
        cls.estimator = GaussianEmissionEstimator(cls.prior)
        cls.ess = cls.estimator.reduce_data(None, cls.data, cls.weights)
        cls.factors = cls.estimator.construct_factors(cls.ess)

    def test_reduce_data(self):
        for k in range(2):
            w = self.weights[:, k]
            xbar = (w[:, None] * self.data).sum(0) / w.sum()
            XX = sum([w[n] * numpy.outer(x - xbar, x - xbar) for n, x in enumerate(self.data)])
            assert_almost_equal(self.ess["wsum"][k], w.sum())
            assert_almost_equal(self.ess["xbar"][k], xbar)
            assert_almost_equal(self.ess["XX"][k], XX)

    def test_reduce_data_empty_state(self):
        weights = numpy.column_stack([numpy.ones(60), numpy.zeros(60)])
        ess = self.estimator.reduce_data(None, self.data, weights)
        assert ess["wsum"][1] == 0
        assert numpy.isfinite(ess["xbar"]).all()
        assert_array_equal(ess["XX"][1], numpy.zeros((2, 2)))

    def test_construct_factors_symmetric_posdef(self):
        for factor in self.factors:
            assert_array_equal(factor.cov, factor.cov.T)
            assert is_posdef(factor.cov)

    def _objective(self, k, mean, cov):
        # expected complete-data log likelihood for state k, plus log prior
        w = self.weights[:, k]
        loglik = (w * scipy.stats.multivariate_normal.logpdf(self.data, mean=mean, cov=cov)).sum()
        return loglik + self.prior.logprob(mean, cov)

    def test_construct_factors_maximizes_posterior(self):
        for k, factor in enumerate(self.factors):
            best = self._objective(k, factor.mean, factor.cov)
            off_diagonal = numpy.array([[0.0, 0.02], [0.02, 0.0]])
            perturbed = [
                (factor.mean + [0.05, 0.0], factor.cov),
                (factor.mean - [0.0, 0.05], factor.cov),
                (factor.mean, factor.cov * 1.05),
                (factor.mean, factor.cov * 0.95),
                (factor.mean, factor.cov + off_diagonal),
                (factor.mean, factor.cov - off_diagonal),
            ]
            for mean, cov in perturbed:
                assert self._objective(k, mean, cov) < best

    def test_single_state_closed_form(self):
        ess = self.estimator.reduce_data(None, self.data, numpy.ones((60, 1)))
        factor = self.estimator.construct_factors(ess)[0]

        N = 60.0
        xbar = self.data.mean(0)
        scatter = (self.data - xbar).T.dot(self.data - xbar)
        diff = xbar - self.prior.mu
        expected_mean = (N * xbar + 2 * self.prior.mu) / (N + 2)
        expected_cov = (self.prior.Sigma + scatter + (2 * N / (N + 2)) * numpy.outer(diff, diff)) \
                       / (4 + N + 2 + 2)
        assert_almost_equal(factor.mean, expected_mean)
        assert_almost_equal(factor.cov, expected_cov)

    def test_empty_state_reverts_to_prior_mode(self):
        weights = numpy.column_stack([numpy.ones(60), numpy.zeros(60)])
        ess = self.estimator.reduce_data(None, self.data, weights)
        factor = self.estimator.construct_factors(ess)[1]
        assert_almost_equal(factor.mean, self.prior.mu)
        assert_almost_equal(factor.cov, self.prior.Sigma / (4 + 2 + 2))

    def test_non_posdef_covariance_raises(self):
        ess = {
            "xbar": numpy.zeros((2, 2)),
            "XX": numpy.array([numpy.eye(2), -10 * numpy.eye(2)]),
            "wsum": numpy.array([5.0, 5.0]),
        }
        with pytest.raises(DegenerateEmissionError) as excinfo:
            self.estimator.construct_factors(ess)
        assert excinfo.value.state == 1

    def test_log_prior_sums_states(self):
        hmm = get_separated_gaussian()
        prior = NormalInvWishart.default(1)
        estimator = GaussianEmissionEstimator(prior)
        expected = prior.logprob([-5], [[1]]) + prior.logprob([5], [[1]])
        assert_almost_equal(estimator.log_prior(hmm), expected)


class TestGaussianInitialize():

    @classmethod
    def setup_class(cls):
        hmm = get_separated_gaussian()
        rng = numpy.random.default_rng(_SEED)
        cls.obs = [hmm.generate(100, random_state=rng)[1] for _ in range(3)]
        cls.sequences = SequenceCollection(cls.obs, "gaussian")
        cls.config = make_config(cls.sequences, 2)
        cls.estimator = GaussianEmissionEstimator(cls.config.emission_prior)

    def _check_valid(self, model):
        assert model.num_states == 2
        assert model.emission_type == "gaussian"
        check_stochastic(model.state_priors.data)
        check_stochastic(model.trans_probs.data)
        for factor in model.emission_probs:
            assert factor.dim == 1
            assert is_posdef(factor.cov)

    def test_first_restart_finds_clusters(self):
        model = self.estimator.initialize(self.sequences, self.config, 0, numpy.random.default_rng(1))
        self._check_valid(model)
        means = sorted([X.mean[0] for X in model.emission_probs])
        assert_almost_equal(means, [-5, 5], decimal=0)

    def test_first_restart_inflates_covariance(self):
        model = self.estimator.initialize(self.sequences, self.config, 0, numpy.random.default_rng(1))
        for factor in model.emission_probs:
            assert factor.cov[0, 0] > 1.0

    def test_first_restart_transitions_from_labels(self):
        # sticky states in the data give a sticky initial transition matrix
        model = self.estimator.initialize(self.sequences, self.config, 0, numpy.random.default_rng(1))
        assert (numpy.diag(model.trans_probs.data) > 0.7).all()

    def test_later_restart(self):
        model = self.estimator.initialize(self.sequences, self.config, 1, numpy.random.default_rng(1))
        self._check_valid(model)
        # each state is fit to pooled data, so means fall between the clusters
        for factor in model.emission_probs:
            assert -5 < factor.mean[0] < 5

    def test_later_restarts_differ(self):
        rng = numpy.random.default_rng(1)
        model1 = self.estimator.initialize(self.sequences, self.config, 1, rng)
        model2 = self.estimator.initialize(self.sequences, self.config, 2, rng)
        assert model1.emission_probs[0] != model2.emission_probs[0]
        assert model1.state_priors != model2.state_priors

    def test_reproducible(self):
        model1 = self.estimator.initialize(self.sequences, self.config, 0, numpy.random.default_rng(5))
        model2 = self.estimator.initialize(self.sequences, self.config, 0, numpy.random.default_rng(5))
        assert model1.get_row() == model2.get_row()

    def test_supplied_parameters_kept(self):
        pi0 = [0.3, 0.7]
        trans0 = [[0.6, 0.4], [0.1, 0.9]]
        emission0 = [GaussianFactor(-1, 2), GaussianFactor(1, 3)]
        config = make_config(self.sequences, 2, pi0=pi0, trans0=trans0, emission0=emission0)
        for restart in (0, 1):
            model = self.estimator.initialize(
                self.sequences, config, restart, numpy.random.default_rng(1)
            )
            assert_array_equal(model.state_priors.data, pi0)
            assert_array_equal(model.trans_probs.data, trans0)
            assert model.emission_probs == emission0

    def test_supplied_transitions_kept_on_first_restart(self):
        trans0 = [[0.5, 0.5], [0.5, 0.5]]
        config = make_config(self.sequences, 2, trans0=trans0)
        model = self.estimator.initialize(self.sequences, config, 0, numpy.random.default_rng(1))
        assert_array_equal(model.trans_probs.data, trans0)
        check_stochastic(model.state_priors.data)


#===============================================================================
# Discrete emissions
#===============================================================================


class TestDiscreteEmissionEstimator():

    @classmethod
    def setup_class(cls):
        rng = numpy.random.default_rng(_SEED)
        cls.symbols = rng.integers(0, 4, size=40)
        w = rng.random(40)
        cls.weights = numpy.column_stack([w, 1 - w])
        cls.prior = numpy.array([[2, 2, 2, 2], [1, 3, 1, 1]], dtype=float)
        cls.estimator = DiscreteEmissionEstimator(cls.prior)
        cls.ess = cls.estimator.reduce_data(None, cls.symbols, cls.weights)

    def test_num_symbols(self):
        assert self.estimator.num_symbols == 4

    def test_reduce_data_counts(self):
        expected = numpy.zeros((2, 4))
        for n, symbol in enumerate(self.symbols):
            expected[:, symbol] += self.weights[n]
        assert_almost_equal(self.ess["counts"], expected)
        assert_almost_equal(self.ess["wsum"], self.weights.sum(0))
        assert_almost_equal(self.ess["counts"].sum(1), self.ess["wsum"])

    def test_construct_factors_is_posterior_mode(self):
        factors = self.estimator.construct_factors(self.ess)
        for k, factor in enumerate(factors):
            expected = self.ess["counts"][k] + self.prior[k] - 1
            assert_almost_equal(factor.data, expected / expected.sum())
            check_stochastic(factor.data)

    def test_unit_pseudocounts_give_maximum_likelihood(self):
        estimator = DiscreteEmissionEstimator(numpy.ones((1, 3)))
        ess = estimator.reduce_data(None, numpy.array([0, 0, 2, 0]), numpy.ones((4, 1)))
        assert_almost_equal(estimator.construct_factors(ess)[0].data, [0.75, 0.0, 0.25])

    def test_empty_state_without_pseudocounts_raises(self):
        estimator = DiscreteEmissionEstimator(numpy.ones((2, 2)))
        weights = numpy.column_stack([numpy.ones(3), numpy.zeros(3)])
        ess = estimator.reduce_data(None, numpy.array([0, 1, 1]), weights)
        with pytest.raises(DegenerateEmissionError) as excinfo:
            estimator.construct_factors(ess)
        assert excinfo.value.state == 1

    def test_log_prior(self):
        hmm = get_dirty_casino()
        estimator = DiscreteEmissionEstimator(2 * numpy.ones((2, 6)))
        expected = numpy.log(hmm.emission_matrix).sum()
        assert_almost_equal(estimator.log_prior(hmm), expected)

    @pytest.mark.parametrize("prior", [numpy.ones(3), numpy.full((2, 3), 0.5)])
    def test_invalid_prior_raises(self, prior):
        with pytest.raises(InvalidInputError):
            DiscreteEmissionEstimator(prior)


class TestDiscreteInitialize():

    @classmethod
    def setup_class(cls):
        cls.obs = [numpy.array([0, 1, 2, 2, 1]), numpy.array([2, 0])]
        cls.sequences = SequenceCollection(cls.obs, "discrete")
        cls.config = make_config(cls.sequences, 2)
        cls.estimator = DiscreteEmissionEstimator(cls.config.emission_prior)

    def test_random_model(self):
        model = self.estimator.initialize(self.sequences, self.config, 0, numpy.random.default_rng(1))
        assert model.emission_type == "discrete"
        assert model.emission_matrix.shape == (2, 3)
        check_stochastic(model.state_priors.data)
        check_stochastic(model.trans_probs.data)
        check_stochastic(model.emission_matrix)

    def test_random_model_reproducible(self):
        model1 = self.estimator.initialize(self.sequences, self.config, 0, numpy.random.default_rng(9))
        model2 = self.estimator.initialize(self.sequences, self.config, 0, numpy.random.default_rng(9))
        assert model1.get_row() == model2.get_row()

    def test_supplied_parameters_kept(self):
        emission0 = [[0.2, 0.3, 0.5], [0.5, 0.5, 0.0]]
        config = make_config(self.sequences, 2, emission0=emission0, pi0=[1, 0])
        model = self.estimator.initialize(self.sequences, config, 0, numpy.random.default_rng(1))
        assert_array_equal(model.emission_matrix, emission0)
        assert_array_equal(model.state_priors.data, [1, 0])
        check_stochastic(model.trans_probs.data)
