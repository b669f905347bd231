#!/usr/bin/env python
import itertools

import numpy

from numpy.testing import assert_almost_equal

from emhmm.hmm import FirstOrderHMM
from emhmm.factors import ArrayFactor, MatrixFactor, GaussianFactor

#===============================================================================
# Convenience functions
#===============================================================================


def check_stochastic(data, decimal=9):
    """Check that `data` is non-negative and sums to one along its last axis"""
    data = numpy.asarray(data)
    assert (data >= 0).all()
    assert_almost_equal(data.sum(-1), numpy.ones(data.shape[:-1]), decimal=decimal)


def brute_force_paths(hmm, obs):
    """Joint log probability of `obs` with every possible state path

    Returns
    -------
    dict
        Dictionary mapping state paths (tuples) to log probabilities
    """
    evidence = hmm.log_local_evidence(obs)
    with numpy.errstate(divide="ignore"):
        log_pi = numpy.log(hmm.state_priors.data)
        log_t = numpy.log(hmm.trans_probs.data)

    paths = {}
    for path in itertools.product(range(hmm.num_states), repeat=len(obs)):
        logprob = log_pi[path[0]] + evidence[0, path[0]]
        for t in range(1, len(obs)):
            logprob += log_t[path[t - 1], path[t]] + evidence[t, path[t]]
        paths[path] = logprob

    return paths


def best_permutation(found, expected):
    """Return the permutation of state labels in `found` that best matches
    `expected`, as judged by summed absolute error

    Parameters
    ----------
    found, expected : numpy.ndarray
        `[num_states x ...]` arrays of per-state parameters

    Returns
    -------
    tuple
        Permutation `p` such that `found[p]` best matches `expected`
    """
    num_states = len(expected)
    return min(
        itertools.permutations(range(num_states)),
        key=lambda p: numpy.abs(found[list(p)] - expected).sum(),
    )


#===============================================================================
# Pre-built HMMs for testing and examples
#===============================================================================


def get_dirty_casino():
    """Return a two-state HMM similar to the "dirty" casino example from Durbin et al."""
    state_priors = ArrayFactor(numpy.array([0.9, 0.1]))
    trans_probs = MatrixFactor(numpy.array([[0.85, 0.15], [0.4, 0.6]]))
    emission_probs = [
        ArrayFactor(numpy.tile((1.0 / 6), 6)),
        ArrayFactor(numpy.array([0.1, 0.1, 0.1, 0.1, 0.1, 0.5]))
    ]
    return FirstOrderHMM(
        state_priors=state_priors, trans_probs=trans_probs, emission_probs=emission_probs
    )


def get_two_symbol():
    """Return a two-state HMM over two symbols, with sticky states"""
    return FirstOrderHMM(
        state_priors=ArrayFactor([0.5, 0.5]),
        trans_probs=MatrixFactor([[0.9, 0.1], [0.2, 0.8]]),
        emission_probs=[ArrayFactor([0.7, 0.3]), ArrayFactor([0.1, 0.9])],
    )


def get_bivariate_gaussian():
    """Return a three-state HMM with bivariate Gaussian emissions"""
    transitions = numpy.array(
        [
            [0.8, 0.1, 0.1],
            [0.2, 0.7, 0.1],
            [0.05, 0.15, 0.8],
        ]
    )
    emission_probs = [
        GaussianFactor([0, 0], [[1.0, 0.3], [0.3, 0.5]]),
        GaussianFactor([4, 1], [[0.5, 0.0], [0.0, 0.5]]),
        GaussianFactor([-3, 4], [[2.0, -0.5], [-0.5, 1.0]]),
    ]
    return FirstOrderHMM(
        state_priors=ArrayFactor([0.6, 0.3, 0.1]),
        trans_probs=MatrixFactor(transitions),
        emission_probs=emission_probs,
    )


def get_separated_gaussian():
    """Return a two-state HMM with univariate, well-separated Gaussian emissions"""
    return FirstOrderHMM(
        state_priors=ArrayFactor([0.5, 0.5]),
        trans_probs=MatrixFactor([[0.9, 0.1], [0.1, 0.9]]),
        emission_probs=[GaussianFactor(-5, 1), GaussianFactor(5, 1)],
    )
