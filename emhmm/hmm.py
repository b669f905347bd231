#!/usr/bin/env python
"""Contains the class that represents first-order Hidden Markov Models, along
with the inference routines used in training. These encapsulate methods for:

    #. Computing the probability of observing a sequence of observations via
       the forward algorithm

    #. Computing posterior state probabilities and expected transition counts
       via the forward-backward algorithm

    #. Assigning state labels to observations by posterior decoding

    #. Generating sequences of observations

Emissions may be multivariate Gaussian (:class:`~emhmm.factors.GaussianFactor`)
or discrete (:class:`~emhmm.factors.ArrayFactor`). Training utilities for
estimating model parameters may be found in :mod:`emhmm.training`.


References
----------
[Durbin1998]
    Durbin R et al. (1998). Biological sequence analysis: Probabilistic models
    of proteins and nucleic acids. Cambridge University Press, New York.
    ISBN 978-0-521-62971-3

[Rabiner1989]
    Rabiner, LR (1989). A Tutorial on Hidden Markov Models and Selected
    Applications in Speech Recognition. Proceedings of the IEEE, 77(2), pp
    257-286

[Murphy2012]
    Murphy, KP (2012). Machine Learning: A Probabilistic Perspective, ch 17.
    MIT Press, Cambridge MA. ISBN 978-0-262-01802-9
"""
import collections

import numpy
import jsonpickle
import jsonpickle.ext.numpy
jsonpickle.ext.numpy.register_handlers()

from emhmm.factors import (
    AbstractFactor,
    ArrayFactor,
    GaussianFactor,
)
from emhmm.util import InvalidInputError, get_random_state

#: Output of :meth:`FirstOrderHMM.forward_backward`
ForwardBackwardResult = collections.namedtuple(
    "ForwardBackwardResult",
    ["logprob", "posterior", "forward", "backward", "scale_factors", "evidence"],
)

#===============================================================================
# INDEX: inference helpers
#===============================================================================


def two_slice_sum(forward, backward, trans, evidence):
    """Sum the two-slice marginals `P(s_t = i, s_t+1 = j | observations)` over
    all `t`, giving the expected number of transitions from each state to
    each other state in one sequence.

    Each slice is normalized individually, so `forward`, `backward` and
    `evidence` may carry arbitrary per-timestep scaling.

    Parameters
    ----------
    forward : numpy.ndarray
        `[time x num_states]` scaled forward probabilities

    backward : numpy.ndarray
        `[time x num_states]` scaled backward probabilities

    trans : numpy.ndarray
        `[num_states x num_states]` transition matrix

    evidence : numpy.ndarray
        `[time x num_states]` local evidence, i.e. the likelihood of each
        observation under each state

    Returns
    -------
    numpy.ndarray
        `[num_states x num_states]` expected transition counts. All zero for a
        sequence of length 1.
    """
    num_states = forward.shape[1]
    if forward.shape[0] < 2:
        return numpy.zeros((num_states, num_states))

    ksi = forward[:-1, :, None] * trans[None, :, :] * (evidence[1:] * backward[1:])[:, None, :]
    ksi /= ksi.sum(axis=(1, 2), keepdims=True)
    return ksi.sum(0)


#===============================================================================
# INDEX: models
#===============================================================================


class FirstOrderHMM(AbstractFactor):
    """First-order homogeneous hidden Markov model.

    Observations/emissions can be multivariate

    Attributes
    ----------
    num_states : int
        Number of hidden states

    emission_type : str
        ``"gaussian"`` or ``"discrete"``

    state_priors : :class:`~emhmm.factors.ArrayFactor`
        Probabilities of starting in each state

    trans_probs : :class:`~emhmm.factors.MatrixFactor`
        Transition probabilities

    emission_probs : list
        Emission factor for each state
    """

    def __init__(self, state_priors=None, emission_probs=None, trans_probs=None, emission_type=None):
        """Create a First order hidden Markov model

        Parameters
        ----------
        state_priors : :class:`~emhmm.factors.ArrayFactor`
            Probabilities of starting in any state

        emission_probs  : list of Factors
            Probability distributions describing the probabilities of observing
            any emission in each state. All must be
            :class:`~emhmm.factors.GaussianFactor`, or all
            :class:`~emhmm.factors.ArrayFactor`.

        trans_probs : :class:`~emhmm.factors.MatrixFactor`
            Matrix describing transition probabilities from each state (first
            index) to each other state (second index).

        emission_type : str or None, optional
            ``"gaussian"`` or ``"discrete"``. If `None`, inferred from
            `emission_probs`
        """
        splen = len(state_priors)
        tlen = len(trans_probs)
        elen = len(emission_probs)
        if splen != tlen or splen != elen:
            raise InvalidInputError(
                "State priors, transition probabilities, and emission factors "
                "must have same length. Found %s, %s, %s instead."
                % (splen, tlen, elen)
            )

        if emission_type is None:
            if all([isinstance(X, GaussianFactor) for X in emission_probs]):
                emission_type = "gaussian"
            elif all([isinstance(X, ArrayFactor) for X in emission_probs]):
                emission_type = "discrete"
            else:
                raise InvalidInputError(
                    "Emission factors must all be GaussianFactors or all ArrayFactors"
                )

        self.num_states = splen
        self.emission_type = emission_type
        self.state_priors = state_priors
        self.emission_probs = list(emission_probs)
        self.trans_probs = trans_probs

    def __str__(self):
        return repr(self)

    def __repr__(self):
        return "<%s, %s states, %s emissions>" % (
            self.__class__.__name__, self.num_states, self.emission_type
        )

    @property
    def emission_matrix(self):
        """`[num_states x num_symbols]` emission table of a discrete model"""
        if self.emission_type != "discrete":
            raise AttributeError("Only discrete models have an emission matrix")
        return numpy.array([X.data for X in self.emission_probs])

    def get_header(self):
        """Return a list of parameter names corresponding to elements returned
        by :meth:`FirstOrderHMM.get_row`

        Returns
        -------
        list
            List of parameter names
        """
        ltmp = ["sp_%s" % X for X in self.state_priors.get_header()]
        ltmp += ["t_%s" % X for X in self.trans_probs.get_header()]
        for n, e_prob in enumerate(self.emission_probs):
            ltmp += ["e%d_%s" % (n, X) for X in e_prob.get_header()]

        return ltmp

    def get_row(self):
        """Serialize parameters as a list, e.g. for a row in a log file

        Returns
        -------
        list
            List of parameter values
        """
        ltmp = self.state_priors.get_row()
        ltmp += self.trans_probs.get_row()
        for e_prob in self.emission_probs:
            ltmp += e_prob.get_row()

        return ltmp

    def to_json(self):
        """Return a string JSON blob encoding `self`"""
        return jsonpickle.encode(self)

    @staticmethod
    def from_json(stmp):
        """Revive a model from a JSON blob

        Parameters
        ----------
        stmp : str
            JSON blob encoding an HMM

        Returns
        -------
        :class:`FirstOrderHMM`
        """
        return jsonpickle.decode(stmp)

    def log_local_evidence(self, emissions):
        """Log likelihood of each observation under each state's emission
        distribution

        Parameters
        ----------
        emissions : numpy.ndarray
            Sequence of observations

        Returns
        -------
        numpy.ndarray
            `[time x num_states]` array of log likelihoods
        """
        L = len(emissions)
        with numpy.errstate(divide="ignore"):
            return numpy.column_stack(
                [numpy.reshape(X.logprob(emissions), L) for X in self.emission_probs]
            )

    def local_evidence(self, emissions):
        """Likelihood of each observation under each state's emission
        distribution, rescaled at each timestep so that its largest entry is 1

        Parameters
        ----------
        emissions : numpy.ndarray
            Sequence of observations

        Returns
        -------
        numpy.ndarray
            `[time x num_states]` array of scaled likelihoods

        numpy.ndarray
            Log of the factor removed at each timestep. The unscaled
            likelihoods equal ``evidence * exp(offsets[:, None])``
        """
        log_evidence = self.log_local_evidence(emissions)
        offsets = log_evidence.max(1)
        with numpy.errstate(invalid="ignore"):
            evidence = numpy.exp(log_evidence - offsets[:, None])

        return evidence, offsets

    def _forward(self, evidence):
        # probability sequence indexed by timeslice. columns are end states
        L = len(evidence)
        T = self.trans_probs.data
        scaled_forward = numpy.zeros((L, self.num_states))
        scale_factors = numpy.zeros(L)

        # if an observation is impossible under every state, c = 0 and all
        # later timesteps become nan; callers see a logprob of -inf
        f = self.state_priors.data * evidence[0]
        with numpy.errstate(invalid="ignore", divide="ignore"):
            for t in range(L):
                if t > 0:
                    f = scaled_forward[t - 1].dot(T) * evidence[t]
                c = f.sum()
                scaled_forward[t] = f / c
                scale_factors[t] = c

        return scaled_forward, scale_factors

    @staticmethod
    def _total_logprob(scale_factors, offsets):
        if not (numpy.isfinite(offsets).all() and (scale_factors > 0).all()):
            return -numpy.inf
        return float(numpy.log(scale_factors).sum() + offsets.sum())

    def forward(self, emissions):
        """Calculates the log-probability of observing a sequence of emissions,
        regardless of the state sequence, using the Forward Algorithm.

        Numerical underflows are prevented by scaling probabilities at each
        step, following the procedure given in Rabiner (1989)

        Parameters
        ----------
        emissions : numpy.ndarray
            Sequence of observations

        Returns
        -------
        float
            log probability of sequence of emissions

        numpy.ndarray
            `[time x num_states]` scaled forward probabilities. Each row sums
            to one, and gives the probability of being in each state at time
            `t`, given the observations from `0` to `t`

        numpy.ndarray
            Scaling constant used at each step
        """
        evidence, offsets = self.local_evidence(emissions)
        scaled_forward, scale_factors = self._forward(evidence)
        return self._total_logprob(scale_factors, offsets), scaled_forward, scale_factors

    def forward_backward(self, emissions):
        """Calculates the forward algorithm, the backward algorithm, and
        the posterior probability of each state at each timestep.

        Forward probabilities are normalized at every step, and the backward
        probabilities divided by the same constants (Rabiner 1989), so that
        their product is the posterior state probability without further
        normalization.

        Parameters
        ----------
        emissions : numpy.ndarray
            Observations

        Returns
        -------
        ForwardBackwardResult
            Named tuple with fields:

            `logprob`
                log probability of sequence of emissions

            `posterior`
                `[time x num_states]` posterior probability of each state at
                each timestep, given the whole sequence. Rows sum to one.

            `forward`
                `[time x num_states]` scaled forward probabilities

            `backward`
                `[time x num_states]` scaled backward probabilities, with the
                final row set to one

            `scale_factors`
                Scaling constant used at each step

            `evidence`
                `[time x num_states]` scaled local evidence, from
                :meth:`FirstOrderHMM.local_evidence`
        """
        evidence, offsets = self.local_evidence(emissions)
        scaled_forward, scale_factors = self._forward(evidence)

        T = self.trans_probs.data
        L = len(evidence)
        scaled_backward = numpy.ones((L, self.num_states))
        with numpy.errstate(invalid="ignore", divide="ignore"):
            for t in range(L - 2, -1, -1):
                scaled_backward[t] = T.dot(evidence[t + 1] * scaled_backward[t + 1]) \
                                     / scale_factors[t + 1]

        posterior = scaled_forward * scaled_backward
        return ForwardBackwardResult(
            self._total_logprob(scale_factors, offsets),
            posterior,
            scaled_forward,
            scaled_backward,
            scale_factors,
            evidence,
        )

    def expected_transitions(self, emissions):
        """Expected number of transitions between each pair of states in
        `emissions`

        Parameters
        ----------
        emissions : numpy.ndarray
            Sequence of observations

        Returns
        -------
        numpy.ndarray
            `[num_states x num_states]` expected transition counts
        """
        res = self.forward_backward(emissions)
        return two_slice_sum(res.forward, res.backward, self.trans_probs.data, res.evidence)

    def logprob(self, emissions):
        """Compute the log probability of observing a sequence of emissions.

        Parameters
        ----------
        emissions : numpy.ndarray
            Sequence of observations

        Returns
        -------
        float
            log probability of sequence of emissions
        """
        return self.forward(emissions)[0]

    def posterior_decode(self, emissions):
        """Find the most probable state for each individual state in the
        sequence of emissions, using posterior decoding. Note, this objective
        is distinct from finding the most probable sequence of states for all
        emissions.

        Parameters
        ----------
        emissions : numpy.ndarray
            Sequence of observations


        Returns
        -------
        numpy.ndarray
            An array of dimension `[t x 1]` of the most likely states at each
            point `t`

        numpy.ndarray
            An array of dimension `[t x k]` of the posterior probability of
            being in state `k` at time `t`
        """
        posterior_probs = self.forward_backward(emissions).posterior
        return posterior_probs.argmax(1), posterior_probs

    def generate(self, length, random_state=None):
        """Generates a random sequence of states and emissions from the HMM

        Parameters
        ----------
        length : int
            Length of sequence to generate. Empty arrays are returned if `length`
            is less than 1

        random_state : None, int, or :class:`numpy.random.Generator`, optional
            Source of randomness

        Returns
        -------
        numpy.ndarray
            Array of dimension `[t]` indicating the HMM state at each
            timestep

        numpy.ndarray
            Observations. Integer symbols of dimension `[t]` for discrete
            models, or `[t x d]` for Gaussian models
        """
        rng = get_random_state(random_state)
        if length < 1:
            if self.emission_type == "discrete":
                return numpy.zeros(0, dtype=int), numpy.zeros(0, dtype=int)
            return numpy.zeros(0, dtype=int), numpy.zeros((0, self.emission_probs[0].dim))

        states = [self.state_priors.generate(rng)]
        for i in range(1, length):
            states.append(self.trans_probs.generate(states[-1], rng))

        emissions = [self.emission_probs[X].generate(rng) for X in states]
        if self.emission_type == "discrete":
            emissions = numpy.array(emissions, dtype=int)
        else:
            emissions = numpy.array(emissions, dtype=float).reshape((length, -1))

        return numpy.array(states, dtype=int), emissions
