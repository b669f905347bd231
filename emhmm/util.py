#!/usr/bin/env python
"""Utilities used by multiple functions / across the library
"""
import warnings
import numpy

#: Small constant added to probabilities before taking logs, guarding
#: against ``log(0)``
EPS = numpy.finfo(float).eps

#===============================================================================
# Exceptions
#===============================================================================


class HMMFitError(Exception):
    """Base class for errors raised while fitting an HMM"""


class InvalidInputError(HMMFitError, ValueError):
    """Observations, priors, or options are malformed. Raised before any
    EM iteration is run
    """


class DegenerateEmissionError(HMMFitError, ArithmeticError):
    """A state collapsed during re-estimation, e.g. because its posterior
    covariance is not positive-definite or a probability row has no mass

    Attributes
    ----------
    state : int or None
        Index of offending state, if known
    """

    def __init__(self, message, state=None):
        HMMFitError.__init__(self, message)
        self.state = state


class AllRestartsFailedError(HMMFitError, RuntimeError):
    """Every random restart of EM failed

    Attributes
    ----------
    errors : list
        Exception raised by each restart, in order
    """

    def __init__(self, errors):
        self.errors = list(errors)
        msg = "All %d restart(s) failed: %s" % (
            len(self.errors), "; ".join([str(X) for X in self.errors])
        )
        HMMFitError.__init__(self, msg)


#===============================================================================
# Printing
#===============================================================================


class NullWriter(object):
    """File-like object that actually writes nothing, in the spirit of
    :obj:`os.devnull`
    """

    def write(self, inp):
        pass

    def __repr__(self):
        return "NullWriter()"

    def __str__(self):
        return "NullWriter()"

    def close(self):
        pass

    def flush(self):
        pass


#===============================================================================
# Probability tables
#===============================================================================


def normalize(data, axis=None):
    """Scale `data` so that it sums to one, either in total or along `axis`

    Parameters
    ----------
    data : array-like
        Non-negative vector or matrix

    axis : int or None, optional
        If `None`, divide by the sum of all elements. If 1, make each row
        sum to one. If 0, make each column sum to one. (Default: `None`)

    Returns
    -------
    numpy.ndarray
        Normalized copy of `data`

    Raises
    ------
    DegenerateEmissionError
        If the total (or any row/column along `axis`) has no mass
    """
    data = numpy.asarray(data, dtype=float)
    if axis is None:
        total = data.sum()
    else:
        total = data.sum(axis=axis, keepdims=True)

    bad = ~numpy.isfinite(total) | (total <= 0)
    if numpy.any(bad):
        state = None
        if axis is not None:
            state = int(numpy.flatnonzero(bad.ravel())[0])
        raise DegenerateEmissionError(
            "Cannot normalize a probability table with no mass (axis %s, index %s)" %
            (axis, state),
            state=state
        )

    return data / total


def count_unique(data):
    """Count distinct values in `data`

    Parameters
    ----------
    data : array-like or list of array-like
        Values to count. Lists of arrays are pooled.

    Returns
    -------
    int
        Number of distinct values
    """
    if isinstance(data, (list, tuple)):
        data = numpy.concatenate([numpy.ravel(X) for X in data])
    return len(numpy.unique(data))


def get_random_state(random_state=None):
    """Return a :class:`numpy.random.Generator` for `random_state`

    Parameters
    ----------
    random_state : None, int, or :class:`numpy.random.Generator`
        Seed or generator. Generators are passed through unchanged, so that
        successive callers draw from the same stream.

    Returns
    -------
    :class:`numpy.random.Generator`
    """
    if isinstance(random_state, numpy.random.Generator):
        return random_state
    return numpy.random.default_rng(random_state)


#===============================================================================
# Building tables when state paths are known
#===============================================================================


def build_hmm_tables(
        num_states,
        state_sequences,
        state_prior_pseudocounts=0,
        transition_pseudocounts=0,
):
    """Build a set of state prior and transition tables from sequences of known
    states. This in contrast to *training*, in which parameters for transition
    tables are estimated from sequences of observations and unknown states.

    Parameters
    ----------
    num_states : int
        Number of states

    state_sequences : list of list_like
        Sequences of states, represented as integers

    state_prior_pseudocounts : int or array-like
        Pseudocounts to add to state prior counts. If an ``int``, same value
        will be added to every cell (Default: 0)

    transition_pseudocounts : int or matrix-like
        Pseudocounts to add to count table. If `int`, same value will be added
        to every cell in the table. If matrix or array-like, that matrix will
        be added to the count matrix (Default: 0)

    Returns
    -------
    :class:`numpy.ndarray`
        Array of state priors

    :class:`numpy.ndarray`
        Table[i,j] of transition probabilities from state `i` to state `j`
    """
    tmat = numpy.zeros((num_states, num_states), dtype=float)
    state_priors = numpy.zeros(num_states, dtype=float)

    for my_seq in state_sequences:
        if len(my_seq) == 0:
            continue

        my_seq = numpy.asarray(my_seq, dtype=int)
        state_priors[my_seq[0]] += 1
        numpy.add.at(tmat, (my_seq[:-1], my_seq[1:]), 1)

    state_priors += state_prior_pseudocounts
    tmat += transition_pseudocounts

    if (tmat.sum(1) == 0).any():
        warnings.warn(
            "There are all-zero rows in the transition table! These may yield "
            "nonsensical probabilities! Consider adding pseudocounts",
            UserWarning
        )

    tmat = (1.0 * tmat.T / tmat.sum(1)).T
    state_priors = state_priors / state_priors.sum()

    return state_priors, tmat
