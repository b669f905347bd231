#!/usr/bin/env python
"""Estimator classes for MAP expectation-maximization training. Estimators
determine how parameters for the HMM are initialized and re-estimated from
observations during each training cycle.

Estimators must be able to:

    1. Reduce the output of the forward-backward algorithm to expected
       sufficient statistics (expectation step), implemented by the method
       ``reduce_data()``

    2. Evaluate the log prior probability of the current parameters, which
       contributes to the training objective, via ``log_prior()``

    3. Estimate improved parameters for the model from the expected
       statistics (maximization step), and, using these parameters,
       initialize new Factors. These steps are implemented by the method
       ``construct_factors()``

State priors and transitions are handled by
:class:`DirichletStatePriorEstimator` and :class:`DirichletTransitionEstimator`
regardless of emission type. Emission estimators additionally implement
``initialize()``, which creates a starting model, and are registered by
emission type in :data:`EMISSION_ESTIMATORS`.
"""
import collections

import numpy
import scipy.sparse

from abc import abstractmethod
from sklearn.mixture import GaussianMixture

from emhmm.factors import (
    ArrayFactor,
    MatrixFactor,
    GaussianFactor,
    dirichlet_log_mode_term,
    is_posdef,
)
from emhmm.hmm import FirstOrderHMM, two_slice_sum
from emhmm.util import (
    DegenerateEmissionError,
    InvalidInputError,
    build_hmm_tables,
    normalize,
)

#: Expected sufficient statistics collected over all sequences in one E step.
#: `weights` is the `[observations x num_states]` matrix of posterior state
#: probabilities, stacked in the same order as
#: :attr:`~emhmm.sequences.SequenceCollection.stacked`. `emission` is a dict
#: of statistics specific to the emission type.
SufficientStatistics = collections.namedtuple(
    "SufficientStatistics",
    ["start_counts", "trans_counts", "weights", "emission"],
)

#===============================================================================
# INDEX: helper functions
#===============================================================================


def fit_gaussian(data):
    """Maximum-likelihood mean and covariance of `data`

    Parameters
    ----------
    data : numpy.ndarray
        `[observations x d]` array

    Returns
    -------
    :class:`~emhmm.factors.GaussianFactor`
    """
    dim = data.shape[1]
    mean = data.mean(0)
    cov = numpy.cov(data, rowvar=False, bias=True).reshape((dim, dim))
    return GaussianFactor(mean, cov)


#===============================================================================
# INDEX: estimators for state priors and transitions
#===============================================================================


class AbstractProbabilityEstimator(object):
    """Helper class for reestimation of probabilities in EM training.
    Subclasses will be used during training to extract sufficient statistics
    from observation data (via calls to
    :meth:`AbstractProbabilityEstimator.reduce_data`), and to create new
    factors from those statistics (via calls to
    :meth:`AbstractProbabilityEstimator.construct_factors`)

    Attributes
    ----------
    pseudocounts : numpy.ndarray
        Dirichlet pseudo-counts. The MAP estimate adds ``pseudocounts - 1`` to
        the expected counts, so every entry must be at least 1.
    """

    def __init__(self, pseudocounts):
        self.pseudocounts = numpy.array(pseudocounts, dtype=float)
        if (self.pseudocounts < 1).any():
            raise InvalidInputError(
                "%s pseudocounts must all be >= 1" % self.__class__.__name__
            )

    @abstractmethod
    def reduce_data(self, model, fb_result):
        """Collect data from a single observation sequence and reduce it to a
        form amenable for factor construction by
        :meth:`AbstractProbabilityEstimator.construct_factors`

        Parameters
        ----------
        model : :class:`~emhmm.hmm.FirstOrderHMM`
            Model under which the sequence was evaluated

        fb_result : :class:`~emhmm.hmm.ForwardBackwardResult`
            Output of :meth:`~emhmm.hmm.FirstOrderHMM.forward_backward`

        Returns
        -------
        numpy.ndarray
            Array of appropriate shape containing sufficient statistics
        """

    @abstractmethod
    def construct_factors(self, counts):
        """Construct a factor from expected counts summed over all sequences

        Parameters
        ----------
        counts : numpy.ndarray
            Sum of outputs of :meth:`AbstractProbabilityEstimator.reduce_data`

        Returns
        -------
        some sort of probability factor
        """

    @abstractmethod
    def log_prior(self, model):
        """Return log prior probability (up to a constant) of the relevant
        parameters of `model`
        """


class DirichletStatePriorEstimator(AbstractProbabilityEstimator):
    """Estimate state priors as the mode of their Dirichlet posterior,
    modeling these as an :class:`~emhmm.factors.ArrayFactor`
    """

    def reduce_data(self, model, fb_result):
        """Posterior probability of each state at the first timestep"""
        return fb_result.posterior[0, :]

    def construct_factors(self, counts):
        """Construct state prior factor from expected start counts

        Parameters
        ----------
        counts : numpy.ndarray
            Expected number of sequences starting in each state

        Returns
        -------
        :class:`~emhmm.factors.ArrayFactor`
            State prior probability factor
        """
        return ArrayFactor(normalize(counts + self.pseudocounts - 1))

    def log_prior(self, model):
        return dirichlet_log_mode_term(model.state_priors.data, self.pseudocounts)


class DirichletTransitionEstimator(AbstractProbabilityEstimator):
    """Estimate transitions between states as the mode of the Dirichlet
    posterior for each row. Constructs a MatrixFactor
    """

    def reduce_data(self, model, fb_result):
        """Expected transition counts for one sequence"""
        return two_slice_sum(
            fb_result.forward,
            fb_result.backward,
            model.trans_probs.data,
            fb_result.evidence,
        )

    def construct_factors(self, counts):
        """Construct transition factor from expected transition counts

        Parameters
        ----------
        counts : numpy.ndarray
            `[num_states x num_states]` expected transition counts

        Returns
        -------
        :class:`~emhmm.factors.MatrixFactor`
            Transition probability factor
        """
        return MatrixFactor(normalize(counts + self.pseudocounts - 1, axis=1))

    def log_prior(self, model):
        return dirichlet_log_mode_term(model.trans_probs.data, self.pseudocounts)


#===============================================================================
# INDEX: emission estimators
#===============================================================================


class AbstractEmissionEstimator(object):
    """Helper class for initialization and reestimation of emission
    distributions. Unlike state priors and transitions, emission statistics
    are computed in one pass over all observations, using the stacked
    posterior state probabilities from the E step.

    Attributes
    ----------
    emission_type : str
        Emission type handled by the estimator

    prior
        Prior over emission parameters
    """
    emission_type = None

    @abstractmethod
    def initialize(self, sequences, config, restart, random_state):
        """Create a starting model

        Parameters
        ----------
        sequences : :class:`~emhmm.sequences.SequenceCollection`
            Training data

        config : :class:`~emhmm.training.FitConfig`
            Fitting configuration. Initial parameters given there are used
            as-is; the rest are synthesized.

        restart : int
            Index of restart, starting at 0. Restart 0 may use a more
            expensive, data-driven initialization.

        random_state : :class:`numpy.random.Generator`
            Source of randomness

        Returns
        -------
        :class:`~emhmm.hmm.FirstOrderHMM`
        """

    @abstractmethod
    def reduce_data(self, model, stacked, weights):
        """Reduce stacked observations and posterior state probabilities to
        emission sufficient statistics

        Parameters
        ----------
        model : :class:`~emhmm.hmm.FirstOrderHMM`
            Model used in the E step

        stacked : numpy.ndarray
            All observations, stacked in sequence order

        weights : numpy.ndarray
            `[observations x num_states]` posterior state probabilities

        Returns
        -------
        dict
            Emission sufficient statistics
        """

    @abstractmethod
    def log_prior(self, model):
        """Return log prior probability of the emission parameters of
        `model`
        """

    @abstractmethod
    def construct_factors(self, ess):
        """Construct emission factors for each state

        Parameters
        ----------
        ess : dict
            Output of :meth:`AbstractEmissionEstimator.reduce_data`

        Returns
        -------
        list
            Emission factor for each state
        """

    @staticmethod
    def _random_pi_and_trans(config, random_state, offset):
        num_states = config.num_states
        pi = config.pi0
        if pi is None:
            pi = normalize(random_state.random(num_states) + config.pi_prior + offset)
        trans = config.trans0
        if trans is None:
            trans = normalize(
                random_state.random((num_states, num_states)) + config.trans_prior + offset, axis=1
            )
        return pi, trans


class GaussianEmissionEstimator(AbstractEmissionEstimator):
    """Estimate multivariate Gaussian emissions as the mode of their
    Normal-Inverse-Wishart posterior
    """
    emission_type = "gaussian"

    def __init__(self, prior):
        """Create a GaussianEmissionEstimator

        Parameters
        ----------
        prior : :class:`~emhmm.factors.NormalInvWishart`
            Prior shared by the emission distributions of all states
        """
        self.prior = prior

    def initialize(self, sequences, config, restart, random_state):
        """Create a starting model.

        If no emission parameters are supplied, restart 0 fits a Gaussian
        mixture model to the pooled observations, and, if needed, estimates
        state priors and transitions from the mixture component assigned to
        each observation. Later restarts fit each state's Gaussian to the
        pooled observations perturbed by independent standard normal noise,
        and draw state priors and transitions at random.

        See :meth:`AbstractEmissionEstimator.initialize` for parameters
        """
        num_states = config.num_states
        stacked = sequences.stacked
        dim = sequences.dim
        pi, trans = config.pi0, config.trans0

        if config.emission0 is not None:
            emission_probs = list(config.emission0)
        elif restart == 0:
            mixture = GaussianMixture(
                n_components=num_states,
                covariance_type="full",
                random_state=int(random_state.integers(2**31 - 1)),
            ).fit(stacked)
            emission_probs = [
                GaussianFactor(mixture.means_[k], mixture.covariances_[k] + numpy.eye(dim))
                for k in range(num_states)
            ]

            if pi is None or trans is None:
                labels = mixture.predict(stacked)
                label_seqs = [labels[sequences.get_slice(X)] for X in range(len(sequences))]
                emp_pi, emp_trans = build_hmm_tables(
                    num_states,
                    label_seqs,
                    state_prior_pseudocounts=1,
                    transition_pseudocounts=1,
                )
                pi = emp_pi if pi is None else pi
                trans = emp_trans if trans is None else trans
        else:
            emission_probs = [
                fit_gaussian(stacked + random_state.standard_normal(stacked.shape))
                for _ in range(num_states)
            ]

        config = config._replace(pi0=pi, trans0=trans)
        pi, trans = self._random_pi_and_trans(config, random_state, -1)
        return FirstOrderHMM(
            state_priors=ArrayFactor(pi),
            emission_probs=emission_probs,
            trans_probs=MatrixFactor(trans),
            emission_type=self.emission_type,
        )

    def reduce_data(self, model, stacked, weights):
        """Weighted means, scatter matrices and total weight of each state

        Returns
        -------
        dict
            `xbar`
                `[num_states x d]` posterior-weighted mean of observations

            `XX`
                `[num_states x d x d]` posterior-weighted scatter around `xbar`

            `wsum`
                Total posterior weight of each state
        """
        num_states = weights.shape[1]
        dim = stacked.shape[1]
        wsum = weights.sum(0)

        xbar = numpy.zeros((num_states, dim))
        numpy.divide(weights.T.dot(stacked), wsum[:, None], out=xbar, where=wsum[:, None] > 0)

        XX = numpy.zeros((num_states, dim, dim))
        for k in range(num_states):
            Xc = stacked - xbar[k]
            XX[k] = (Xc * weights[:, k, None]).T.dot(Xc)

        return {"xbar": xbar, "XX": XX, "wsum": wsum}

    def log_prior(self, model):
        return sum([self.prior.logprob(X.mean, X.cov) for X in model.emission_probs])

    def construct_factors(self, ess):
        """Posterior mode of mean and covariance of each state

        Raises
        ------
        DegenerateEmissionError
            If any posterior covariance is not symmetric positive-definite
        """
        prior = self.prior
        kappa0, m0, nu0, S0 = prior.k, prior.mu, prior.dof, prior.Sigma
        dim = prior.dim

        emission_probs = []
        for k, (xbar, XX, wk) in enumerate(zip(ess["xbar"], ess["XX"], ess["wsum"])):
            mean = (wk * xbar + kappa0 * m0) / (wk + kappa0)
            a = (kappa0 * wk) / (kappa0 + wk)
            diff = xbar - m0
            cov = (S0 + XX + a * numpy.outer(diff, diff)) / (nu0 + wk + dim + 2)
            cov = (cov + cov.T) / 2
            if not is_posdef(cov):
                raise DegenerateEmissionError(
                    "Posterior covariance of state %d is not positive-definite "
                    "(expected count %s)" % (k, wk),
                    state=k
                )

            emission_probs.append(GaussianFactor(mean, cov))

        return emission_probs


class DiscreteEmissionEstimator(AbstractEmissionEstimator):
    """Estimate emissions over a finite alphabet of symbols as the mode of the
    Dirichlet posterior for each state, modeling these as a series of
    ArrayFactors
    """
    emission_type = "discrete"

    def __init__(self, prior):
        """Create a DiscreteEmissionEstimator

        Parameters
        ----------
        prior : numpy.ndarray
            `[num_states x num_symbols]` Dirichlet pseudo-counts. All must be
            at least 1.
        """
        self.prior = numpy.array(prior, dtype=float)
        if self.prior.ndim != 2:
            raise InvalidInputError("Discrete emission prior must be a matrix")
        if (self.prior < 1).any():
            raise InvalidInputError("Discrete emission pseudocounts must all be >= 1")

    @property
    def num_symbols(self):
        return self.prior.shape[1]

    def initialize(self, sequences, config, restart, random_state):
        """Create a starting model by drawing state priors, transitions, and
        emissions from their priors plus uniform noise. Parameters supplied
        in `config` are kept.

        See :meth:`AbstractEmissionEstimator.initialize` for parameters
        """
        pi, trans = self._random_pi_and_trans(config, random_state, 0)
        emission = config.emission0
        if emission is None:
            emission = normalize(random_state.random(self.prior.shape) + self.prior, axis=1)

        return FirstOrderHMM(
            state_priors=ArrayFactor(pi),
            emission_probs=[ArrayFactor(X) for X in emission],
            trans_probs=MatrixFactor(trans),
            emission_type=self.emission_type,
        )

    def reduce_data(self, model, stacked, weights):
        """Expected joint counts of each hidden state and observed symbol

        Returns
        -------
        dict
            `counts`
                `[num_states x num_symbols]` expected number of times each
                state emitted each symbol

            `wsum`
                Total posterior weight of each state
        """
        N = len(stacked)
        indicator = scipy.sparse.csr_matrix(
            (numpy.ones(N), (numpy.arange(N), stacked)),
            shape=(N, self.num_symbols),
        )
        counts = numpy.asarray(indicator.T.dot(weights)).T
        return {"counts": counts, "wsum": weights.sum(0)}

    def log_prior(self, model):
        return dirichlet_log_mode_term(model.emission_matrix, self.prior)

    def construct_factors(self, ess):
        """Posterior mode of each state's emission distribution

        Returns
        -------
        list
            list of :class:`~emhmm.factors.ArrayFactor` objects, representing
            emission probabilities for each state
        """
        Epc = self.prior - 1
        denom = ess["wsum"] + Epc.sum(1)
        if (denom <= 0).any():
            state = int(numpy.flatnonzero(denom <= 0)[0])
            raise DegenerateEmissionError(
                "State %d has no expected emissions and no pseudocounts" % state,
                state=state
            )

        E = (ess["counts"] + Epc) / denom[:, None]
        return [ArrayFactor(X) for X in E]


#: Emission estimator class for each emission type
EMISSION_ESTIMATORS = {
    "gaussian": GaussianEmissionEstimator,
    "discrete": DiscreteEmissionEstimator,
}
