#!/usr/bin/env python
"""Maximum a posteriori (MAP) expectation-maximization training of HMMs,
built atop plugin estimator classes, which determine how parameters for the
HMM are initialized and re-estimated from observation data during training
(see :mod:`emhmm.estimators`).

The main entry point is :func:`fit_hmm`, which validates its inputs, resolves
default priors into a :class:`FitConfig`, and hands off to :func:`train_em`.
:func:`train_em` runs one or more restarts of EM, alternating :func:`estep`
and :func:`mstep` until the objective,

.. math::

    \\log P(\\text{observations} | \\theta) + \\log P(\\theta)

stops improving, and keeps the model from the best-scoring restart.

Also includes a helper to record the objective and parameters during training
"""
import collections
import datetime
import functools
import multiprocessing
import sys
import warnings

import numpy

from emhmm.estimators import (
    EMISSION_ESTIMATORS,
    DirichletStatePriorEstimator,
    DirichletTransitionEstimator,
    SufficientStatistics,
)
from emhmm.factors import GaussianFactor, NormalInvWishart, is_posdef
from emhmm.hmm import FirstOrderHMM
from emhmm.sequences import SequenceCollection, get_emission_type
from emhmm.util import (
    EPS,
    AllRestartsFailedError,
    DegenerateEmissionError,
    InvalidInputError,
    NullWriter,
    count_unique,
    get_random_state,
)

#: Immutable settings for one call to :func:`train_em`. Priors are fully
#: resolved (no `None`); initial parameters `pi0`, `trans0`, `emission0` are
#: `None` when they are to be synthesized by the emission estimator.
FitConfig = collections.namedtuple(
    "FitConfig",
    [
        "num_states",
        "emission_type",
        "pi0",
        "trans0",
        "emission0",
        "pi_prior",
        "trans_prior",
        "emission_prior",
        "maxiter",
        "tol",
        "restarts",
        "processes",
    ],
)

#===============================================================================
# INDEX: helper functions
#===============================================================================


def _format_helper(x):
    """Format input for logging, depending on type"""
    if isinstance(x, (int, numpy.integer)):
        return "%d" % x
    elif isinstance(x, (float, numpy.floating)):
        return "%.16e" % x
    else:
        return str(x)


class StderrWriter(object):
    """File-like object that writes lines to :obj:`sys.stderr`"""

    @staticmethod
    def write(inp):
        sys.stderr.write(inp)

    @staticmethod
    def flush():
        sys.stderr.flush()


def DefaultLoggerFactory(fh, maxcols=None, printer=None):
    """Factory function to record the objective and parameter changes during
    training. A header is written on the first call, using the parameter
    names of the model passed then.

    Parameters
    ----------
    fh : file-like
        Something implementing a ``write()`` method

    maxcols : int or None, optional
        If not `None`, only output the first `maxcols` columns of output to `fh`

    printer : file-like or None, optional
        If not `None`, a file-like object to which the first five columns of
        output will be dumped (e.g. :obj:`sys.stderr` )


    Returns
    -------
    function
        Logging function for use with :func:`train_em`
    """
    header = [
        "time",
        "restart",
        "iteration",
        "delta",
        "logprob",
        "logprob_per_obs",
    ]
    state = {"header_written": False}

    def logfunc(
            model,
            restart=None,
            iteration=None,
            delta=None,
            logprob=None,
            logprob_per_obs=None,
    ):
        if not state["header_written"]:
            full_header = header + model.get_header()
            fh.write("\t".join(full_header[:maxcols]) + "\n")
            if printer is not None:
                printer.write("\t".join(full_header[:5]) + "\n")
            state["header_written"] = True

        ltmp = [
            datetime.datetime.now(),
            restart,
            iteration,
            delta,
            logprob,
            logprob_per_obs,
        ] + model.get_row()
        ltmp = [_format_helper(X) for X in ltmp]

        fh.write("\t".join(ltmp[:maxcols]) + "\n")

        if printer is not None:
            printer.write("\t".join(ltmp[:5]) + "\n")

    return logfunc


def has_converged(logprob, last_logprob, tol):
    """Return `True` if the relative change between `logprob` and
    `last_logprob` is below `tol`

    Parameters
    ----------
    logprob : float
        Objective at current iteration

    last_logprob : float
        Objective at previous iteration

    tol : float
        Convergence threshold

    Returns
    -------
    bool
    """
    delta = abs(logprob - last_logprob)
    avg = (abs(logprob) + abs(last_logprob) + EPS) / 2.0
    return delta / avg < tol


#===============================================================================
# INDEX: configuration
#===============================================================================


def _check_stochastic(name, data, shape):
    try:
        data = numpy.array(data, dtype=float).reshape(shape)
    except (TypeError, ValueError):
        raise InvalidInputError("%s must have shape %s" % (name, shape))

    sums = data.sum(-1)
    if (data < 0).any() or not numpy.allclose(sums, 1):
        raise InvalidInputError("%s must be non-negative and sum to 1 along its last axis" % name)

    return data


def _check_pseudocounts(name, data, shape, default):
    if data is None:
        return numpy.full(shape, float(default))
    try:
        data = numpy.array(data, dtype=float)
    except (TypeError, ValueError):
        raise InvalidInputError("%s must have shape %s" % (name, shape))

    if data.ndim == 0:
        data = numpy.full(shape, float(data))
    # a single row is applied to every state
    elif len(shape) == 2 and data.shape in ((shape[1], ), (1, shape[1])):
        data = numpy.tile(data.ravel(), (shape[0], 1))

    if data.shape != tuple(shape):
        raise InvalidInputError("%s must have shape %s. Found %s" % (name, shape, data.shape))

    if not (data >= 1).all():
        raise InvalidInputError("%s must all be >= 1" % name)

    return data


def _check_gaussian_emissions(emission0, num_states, dim):
    if len(emission0) != num_states:
        raise InvalidInputError(
            "Initial emissions must have one entry per state. Found %d for %d states" %
            (len(emission0), num_states)
        )

    emission_probs = []
    for n, my_emission in enumerate(emission0):
        try:
            if isinstance(my_emission, GaussianFactor):
                mean, cov = my_emission.mean, my_emission.cov
            elif isinstance(my_emission, dict):
                mean, cov = my_emission["mu"], my_emission["Sigma"]
            else:
                mean, cov = my_emission
            factor = GaussianFactor(mean, cov)
        except (KeyError, TypeError, ValueError):
            raise InvalidInputError(
                "Initial emission %d must be a GaussianFactor, a (mean, cov) pair, or a "
                "dict with keys 'mu' and 'Sigma', with matching shapes" % n
            )
        if factor.dim != dim:
            raise InvalidInputError(
                "Initial emission %d has dimension %d; data has dimension %d" % (n, factor.dim, dim)
            )
        if not is_posdef(factor.cov):
            raise InvalidInputError("Initial covariance %d is not positive-definite" % n)

        emission_probs.append(factor)

    return emission_probs


def make_config(
        sequences,
        num_states,
        pi0=None,
        trans0=None,
        emission0=None,
        pi_prior=None,
        trans_prior=None,
        emission_prior=None,
        maxiter=50,
        tol=1e-4,
        restarts=1,
        processes=1,
):
    """Validate options for :func:`train_em` and fill in default priors

    Parameters
    ----------
    sequences : :class:`~emhmm.sequences.SequenceCollection`
        Training data

    See :func:`fit_hmm` for remaining parameters

    Returns
    -------
    FitConfig

    Raises
    ------
    InvalidInputError
        If any option is malformed or inconsistent with the data
    """
    if int(num_states) != num_states or num_states < 1:
        raise InvalidInputError("Number of states must be a positive integer. Found %s" % num_states)
    num_states = int(num_states)

    if int(maxiter) != maxiter or maxiter < 1:
        raise InvalidInputError("maxiter must be a positive integer. Found %s" % maxiter)
    if int(restarts) != restarts or restarts < 1:
        raise InvalidInputError("restarts must be a positive integer. Found %s" % restarts)
    if int(processes) != processes or processes < 1:
        raise InvalidInputError("processes must be a positive integer. Found %s" % processes)
    if not tol >= 0:
        raise InvalidInputError("tol must be non-negative. Found %s" % tol)

    K = num_states
    emission_type = sequences.emission_type

    if pi0 is not None:
        pi0 = _check_stochastic("Initial state priors", pi0, (K, ))
    if trans0 is not None:
        trans0 = _check_stochastic("Initial transition matrix", trans0, (K, K))

    pi_prior = _check_pseudocounts("State prior pseudocounts", pi_prior, (K, ), 2)
    trans_prior = _check_pseudocounts("Transition pseudocounts", trans_prior, (K, K), 2)

    if emission_type == "gaussian":
        dim = sequences.dim
        if emission_prior is None:
            emission_prior = NormalInvWishart.default(dim)
        elif isinstance(emission_prior, dict):
            try:
                emission_prior = NormalInvWishart(**emission_prior)
            except TypeError:
                raise InvalidInputError(
                    "Gaussian emission prior needs exactly the keys 'mu', 'Sigma', 'dof', 'k'"
                )
        elif not isinstance(emission_prior, NormalInvWishart):
            raise InvalidInputError(
                "Gaussian emission prior must be a NormalInvWishart or a dict of its parameters"
            )

        if emission_prior.dim != dim:
            raise InvalidInputError(
                "Emission prior has dimension %d; data has dimension %d" %
                (emission_prior.dim, dim)
            )

        if emission0 is not None:
            emission0 = _check_gaussian_emissions(emission0, K, dim)
        elif sequences.num_observations < max(K, 2):
            raise InvalidInputError(
                "At least %d observations are needed to initialize %d Gaussian states" %
                (max(K, 2), K)
            )
    else:
        max_symbol = int(sequences.stacked.max())
        if emission0 is not None:
            emission0 = numpy.array(emission0, dtype=float)
            if emission0.ndim != 2:
                raise InvalidInputError("Initial emission matrix must be two-dimensional")
            num_symbols = emission0.shape[1]
            emission0 = _check_stochastic("Initial emission matrix", emission0, (K, num_symbols))
        else:
            num_symbols = count_unique(sequences.stacked)

        if max_symbol >= num_symbols:
            raise InvalidInputError(
                "Discrete symbols must be coded 0..%d. Found symbol %d" %
                (num_symbols - 1, max_symbol)
            )
        emission_prior = _check_pseudocounts(
            "Emission pseudocounts", emission_prior, (K, num_symbols), 2
        )

    return FitConfig(
        num_states=K,
        emission_type=emission_type,
        pi0=pi0,
        trans0=trans0,
        emission0=emission0,
        pi_prior=pi_prior,
        trans_prior=trans_prior,
        emission_prior=emission_prior,
        maxiter=int(maxiter),
        tol=float(tol),
        restarts=int(restarts),
        processes=int(processes),
    )


#===============================================================================
# INDEX: training functions
#===============================================================================


def bw_worker(my_model, my_obs, state_prior_estimator, transition_estimator):
    """Collect summary statistics from an observation sequence. In an
    expectation-maximization context, :py:func:`bw_worker` is used in
    evaluating the Q function in the E step.

    Parameters
    ----------
    my_model : :class:`~emhmm.hmm.FirstOrderHMM`
        Model under which observations are evaluated

    my_obs : numpy.ndarray
        Observation sequence

    state_prior_estimator : :class:`~emhmm.estimators.DirichletStatePriorEstimator`
        Estimator that extracts expected start counts

    transition_estimator : :class:`~emhmm.estimators.DirichletTransitionEstimator`
        Estimator that extracts expected transition counts

    Returns
    -------
    float
        log probability for observation sequence under ``my_model``

    numpy.ndarray
        `[time x num_states]` posterior state probabilities

    numpy.ndarray
        contribution of ``my_obs`` to start counts

    numpy.ndarray
        contribution of ``my_obs`` to transition counts
    """
    fb_result = my_model.forward_backward(my_obs)
    my_pi = state_prior_estimator.reduce_data(my_model, fb_result)
    my_A = transition_estimator.reduce_data(my_model, fb_result)
    return fb_result.logprob, fb_result.posterior, my_pi, my_A


def estep(
        model,
        sequences,
        state_prior_estimator,
        transition_estimator,
        emission_estimator,
        processes=1,
):
    """Compute expected sufficient statistics for all sequences, and the
    training objective for the current model

    Parameters
    ----------
    model : :class:`~emhmm.hmm.FirstOrderHMM`
        Current model

    sequences : :class:`~emhmm.sequences.SequenceCollection`
        Training data

    state_prior_estimator : :class:`~emhmm.estimators.DirichletStatePriorEstimator`

    transition_estimator : :class:`~emhmm.estimators.DirichletTransitionEstimator`

    emission_estimator : subclass of :class:`~emhmm.estimators.AbstractEmissionEstimator`

    processes : int, optional
        Number of processes to use. Results are combined in sequence order
        regardless (Default: 1)

    Returns
    -------
    :class:`~emhmm.estimators.SufficientStatistics`
        Expected sufficient statistics

    float
        Log likelihood of all sequences plus log prior of `model`
    """
    K = model.num_states
    start_counts = numpy.zeros(K)
    trans_counts = numpy.zeros((K, K))
    weights = numpy.zeros((sequences.num_observations, K))

    worker = functools.partial(
        bw_worker,
        model,
        state_prior_estimator=state_prior_estimator,
        transition_estimator=transition_estimator,
    )
    if processes == 1 or len(sequences) == 1:
        pool_results = map(worker, sequences)
    else:
        pool = multiprocessing.Pool(processes=processes)
        pool_results = pool.map(worker, sequences.sequences)
        pool.close()
        pool.join()

    loglik = 0.0
    for i, (obs_logprob, posterior, my_pi, my_A) in enumerate(pool_results):
        loglik += obs_logprob
        start_counts += my_pi
        trans_counts += my_A
        weights[sequences.get_slice(i)] += posterior

    loglik += state_prior_estimator.log_prior(model)
    loglik += transition_estimator.log_prior(model)

    ess = emission_estimator.reduce_data(model, sequences.stacked, weights)
    loglik += emission_estimator.log_prior(model)

    return SufficientStatistics(start_counts, trans_counts, weights, ess), loglik


def mstep(stats, state_prior_estimator, transition_estimator, emission_estimator):
    """Build a new model from expected sufficient statistics

    Parameters
    ----------
    stats : :class:`~emhmm.estimators.SufficientStatistics`
        Output of :func:`estep`

    See :func:`estep` for remaining parameters

    Returns
    -------
    :class:`~emhmm.hmm.FirstOrderHMM`

    Raises
    ------
    DegenerateEmissionError
        If any state collapsed
    """
    return FirstOrderHMM(
        state_priors=state_prior_estimator.construct_factors(stats.start_counts),
        emission_probs=emission_estimator.construct_factors(stats.emission),
        trans_probs=transition_estimator.construct_factors(stats.trans_counts),
        emission_type=emission_estimator.emission_type,
    )


def train_em(sequences, config, random_state=None, logfunc=None):
    """Train an HMM by MAP expectation-maximization on one or more unlabeled
    observation sequences, keeping the best of `config.restarts` runs.

    Parameters
    ----------
    sequences : :class:`~emhmm.sequences.SequenceCollection`
        Training data

    config : FitConfig
        Validated options, e.g. from :func:`make_config`

    random_state : None, int, or :class:`numpy.random.Generator`, optional
        Source of randomness for initialization

    logfunc : callable, optional
        Logging function. Should accept a model as a first argument, and allow
        arbitrary keywords to pass through. At present, the following keywords
        are passed: `restart`, `iteration`, `delta`, `logprob`,
        `logprob_per_obs`.

    Returns
    -------
    dict
        Dictionary with the following keys:

        `best_model`
            :class:`~emhmm.hmm.FirstOrderHMM` final model of best restart

        `logprobs`
            Objective at each iteration of best restart

        `reason`
            Reason training of best restart ceased. ``MAXITER`` if maximum
            iterations reached. ``CONVERGENCE`` if model converged to `tol`.

        `restart`
            Index of best restart

        `restart_results`
            List with one dict per restart, holding keys `model`, `logprobs`,
            `reason`, and `error` (`None` unless the restart failed)

    Raises
    ------
    AllRestartsFailedError
        If no restart produced a model
    """
    rng = get_random_state(random_state)

    state_prior_estimator = DirichletStatePriorEstimator(config.pi_prior)
    transition_estimator = DirichletTransitionEstimator(config.trans_prior)
    emission_estimator = EMISSION_ESTIMATORS[config.emission_type](config.emission_prior)

    restart_results = []
    for restart in range(config.restarts):
        model = emission_estimator.initialize(sequences, config, restart, rng)
        logprobs = []
        reason = "MAXITER"
        error = None

        try:
            for iteration in range(config.maxiter):
                stats, logprob = estep(
                    model,
                    sequences,
                    state_prior_estimator,
                    transition_estimator,
                    emission_estimator,
                    processes=config.processes,
                )
                if not numpy.isfinite(logprob):
                    raise DegenerateEmissionError(
                        "Objective is not finite at iteration %d of restart %d" %
                        (iteration, restart)
                    )

                delta = logprob - logprobs[-1] if logprobs else numpy.inf
                logprobs.append(logprob)
                if logfunc is not None:
                    logfunc(model,
                            restart         = restart,
                            iteration       = iteration,
                            delta           = delta,
                            logprob         = logprob,
                            logprob_per_obs = logprob / sequences.num_observations) # yapf: disable

                if delta < -max(config.tol * abs(logprob), 1e-6):
                    warnings.warn(
                        "Objective decreased by %s at iteration %d of restart %d" %
                        (-delta, iteration, restart),
                        RuntimeWarning
                    )

                # M-step of Expectation-Maximization:
                # Update parameters for next model
                model = mstep(stats, state_prior_estimator, transition_estimator, emission_estimator)

                if len(logprobs) > 1 and has_converged(logprob, logprobs[-2], config.tol):
                    reason = "CONVERGENCE"
                    break

        except DegenerateEmissionError as e:
            warnings.warn("Restart %d failed: %s" % (restart, e), RuntimeWarning)
            model, reason, error = None, "DEGENERATE", e

        restart_results.append({
            "model"    : model,
            "logprobs" : numpy.array(logprobs),
            "reason"   : reason,
            "error"    : error,
        }) # yapf: disable

    finished = [X for X in range(len(restart_results)) if restart_results[X]["error"] is None]
    if len(finished) == 0:
        raise AllRestartsFailedError([X["error"] for X in restart_results])

    best = max(finished, key=lambda X: restart_results[X]["logprobs"][-1])
    dtmp = {
        "best_model"      : restart_results[best]["model"],
        "logprobs"        : restart_results[best]["logprobs"],
        "reason"          : restart_results[best]["reason"],
        "restart"         : best,
        "restart_results" : restart_results,
    } # yapf: disable

    return dtmp


# yapf: disable
def fit_hmm(obs,
            num_states,
            emission_type,
            pi0            = None,
            trans0         = None,
            emission0      = None,
            pi_prior       = None,
            trans_prior    = None,
            emission_prior = None,
            maxiter        = 50,
            tol            = 1e-4,
            restarts       = 1,
            random_state   = None,
            processes      = 1,
            verbose        = False,
            logfunc        = None,
           ):
    """Fit an HMM with Gaussian or discrete emissions to one or more
    observation sequences by MAP expectation-maximization

    Parameters
    ----------
    obs : array-like or list of array-like
        One or more observation sequences. Gaussian sequences are `[T x d]`
        (a 1D sequence is a scalar time series); discrete sequences are 1D
        arrays of integer symbols coded `0..V-1`.

    num_states : int
        Number of hidden states

    emission_type : str
        ``"gaussian"`` (or ``"gauss"``) or ``"discrete"``

    pi0 : array-like or None, optional
        Initial state priors. If `None`, synthesized during initialization

    trans0 : array-like or None, optional
        Initial `[num_states x num_states]` transition matrix, rows summing
        to one. If `None`, synthesized during initialization

    emission0 : list, array-like or None, optional
        Initial emission parameters. For Gaussian emissions, a list with one
        :class:`~emhmm.factors.GaussianFactor`, `(mean, cov)` tuple, or dict
        with keys `mu` and `Sigma` per state. For discrete emissions, a
        `[num_states x num_symbols]` matrix whose rows sum to one. If `None`,
        synthesized during initialization

    pi_prior : array-like or None, optional
        Dirichlet pseudo-counts for state priors, all >= 1 (Default: 2)

    trans_prior : array-like or None, optional
        Dirichlet pseudo-counts for transitions, all >= 1. Either a full
        matrix or a single row applied to every state (Default: 2)

    emission_prior : optional
        For Gaussian emissions, a :class:`~emhmm.factors.NormalInvWishart` or
        a dict of its parameters (`mu`, `Sigma`, `dof`, `k`). For discrete
        emissions, a `[num_states x num_symbols]` matrix of Dirichlet
        pseudo-counts, all >= 1. (Default: see
        :meth:`~emhmm.factors.NormalInvWishart.default`, or 2 for discrete)

    maxiter : int, optional
        Maximum number of EM iterations per restart (Default: 50)

    tol : float, optional
        Relative change in objective below which EM is considered converged
        (Default: 1e-4)

    restarts : int, optional
        Number of restarts; the best-scoring model is kept (Default: 1)

    random_state : None, int, or :class:`numpy.random.Generator`, optional
        Source of randomness. Fits with equal seeds are identical.

    processes : int, optional
        Number of processes to use in the E step (Default: 1)

    verbose : bool, optional
        If `True`, print progress to :obj:`sys.stderr` (Default: `False`)

    logfunc : callable, optional
        Logging function, see :func:`train_em`

    Returns
    -------
    :class:`~emhmm.hmm.FirstOrderHMM`
        Fitted model

    numpy.ndarray
        Objective (log likelihood plus log prior) at each iteration of the
        restart that produced the model

    Raises
    ------
    InvalidInputError
        If observations or options are malformed

    AllRestartsFailedError
        If every restart failed
    """
    # yapf: enable
    emission_type = get_emission_type(emission_type)
    sequences = SequenceCollection(obs, emission_type)
    config = make_config(
        sequences,
        num_states,
        pi0=pi0,
        trans0=trans0,
        emission0=emission0,
        pi_prior=pi_prior,
        trans_prior=trans_prior,
        emission_prior=emission_prior,
        maxiter=maxiter,
        tol=tol,
        restarts=restarts,
        processes=processes,
    )

    if verbose and logfunc is None:
        logfunc = DefaultLoggerFactory(NullWriter(), printer=StderrWriter())

    results = train_em(sequences, config, random_state=random_state, logfunc=logfunc)
    return results["best_model"], results["logprobs"]
