#!/usr/bin/env python
"""Pythonic representations of Factors (probability distributions), which
serve as the components of a :class:`~emhmm.hmm.FirstOrderHMM`: state priors,
transition probabilities, and per-state emission distributions. Priors over
those parameters are represented here too.

Factors must be able to:

    - calculate a log probability of an observation via a ``logprob()`` method

    - calculate a probability of an observation via a ``probability()`` method

    - flatten their parameters for logging via ``get_header()`` and
      ``get_row()``

In addition, factors may supply a ``generate()`` function, to sample from
their distribution.

All factors hold only plain :mod:`numpy` arrays, so that they can be pickled
for multiprocessing and serialized with :mod:`jsonpickle`.
"""
import numpy
import scipy.stats

from abc import abstractmethod

from emhmm.util import EPS, InvalidInputError, get_random_state

#===============================================================================
# Abstract classes
#===============================================================================


class AbstractFactor(object):
    """Abstract class for all probability distributions
    """

    def probability(self, *args, **kwargs):
        """Return the probability of a single observation

        Parameters
        ----------
        args : list
            List of arguments representing observations

        kwargs : dict
            Dict of arguments representing observations

        Returns
        -------
        float
            Probability of observation
        """
        return numpy.exp(self.logprob(*args, **kwargs))

    def logprob(self, *args, **kwargs):
        """Return the log probability of a single observation

        Parameters
        ----------
        args : list
            List of arguments representing observations

        kwargs : dict
            Dict of arguments representing observations

        Returns
        -------
        float
            Log probability of observation
        """
        with numpy.errstate(divide="ignore"):
            return numpy.log(self.probability(*args, **kwargs))

    @abstractmethod
    def generate(self, *args, **kwargs):
        """Sample a random value from the distribution"""

    @abstractmethod
    def get_header(self):
        """Return a list of parameter names corresponding to elements returned
        by `self.get_row()`
        """

    @abstractmethod
    def get_row(self):
        """Serialize parameters as a list, to be used e.g. as a row in a
        log file
        """


#===============================================================================
# Implementable classes
#===============================================================================


class ArrayFactor(AbstractFactor):
    """Univariate probability distribution constructed from a 1D list or array.
    Used for state priors, and for the emission distribution of a single
    state over discrete symbols.

    Attributes
    ----------
    data : numpy.ndarray
        Table of probabilities indexed by position


    See also
    --------
    MatrixFactor
    """

    def __init__(self, data):
        """Create an ArrayFactor

        Parameters
        ----------
        data : list-like
            Array of probabilities indexed by position
        """
        self.data = numpy.array(data, dtype=float)

    def __eq__(self, other):
        return isinstance(other, ArrayFactor) \
            and self.data.shape == other.data.shape \
            and (self.data == other.data).all()

    def __len__(self):
        return len(self.data)

    def __repr__(self):
        return "<%s, %s cells>" % (self.__class__.__name__, len(self))

    def get_header(self):
        """Return a list of parameter names corresponding to elements returned
        by :meth:`ArrayFactor.get_row`
        """
        return [str(X) for X in range(len(self.data))]

    def get_row(self):
        """Serialize parameters as a list"""
        return list(self.data)

    def probability(self, i):
        """Return probability in cell(s) `i` of the array

        Parameters
        ----------
        i : int or array-like of int
            Index (or indices) of requested probability
        """
        return self.data[i]

    def generate(self, random_state=None):
        """Generate a random sample from the distribution

        Parameters
        ----------
        random_state : None, int, or :class:`numpy.random.Generator`, optional
            Source of randomness

        Returns
        --------
        int
            Sample generated
        """
        rng = get_random_state(random_state)
        idx = self.data.cumsum().searchsorted(rng.random(), side="right")
        return int(min(idx, len(self.data) - 1))


class MatrixFactor(AbstractFactor):
    """Conditional probability distribution `P(column|row)` constructed from a
    two-dimensional row-stochastic matrix. Used for transition probabilities.

    Attributes
    ----------
    data : numpy.ndarray
        MxN table of probabilities
    """

    def __init__(self, data):
        """Create a MatrixFactor

        Parameters
        ----------
        data : numpy.ndarray
            MxN table of probabilities, whose rows sum to one
        """
        self.data = numpy.array(data, dtype=float)

    def __eq__(self, other):
        return isinstance(other, MatrixFactor) \
            and self.data.shape == other.data.shape \
            and (self.data == other.data).all()

    def __len__(self):
        return self.data.shape[0]

    def __repr__(self):
        return "<%s, %sx%s>" % ((self.__class__.__name__, ) + self.data.shape)

    def get_header(self):
        """Return a list of parameter names corresponding to elements returned
        by :meth:`MatrixFactor.get_row`
        """
        shape = self.data.shape
        return ["%d,%d" % (X, Y) for X in range(shape[0]) for Y in range(shape[1])]

    def get_row(self):
        """Serialize parameters as a list"""
        return list(self.data.ravel())

    def probability(self, i, j):
        """Return probability value `P(j|i)` at `(i, j)` in underlying matrix

        Parameters
        ----------
        i : int
            Row index

        j : int
            Column index

        Returns
        -------
        float
        """
        return self.data[i, j]

    def generate(self, i, random_state=None):
        """Sample a column given row `i`

        Parameters
        ----------
        i : int
            Row index

        random_state : None, int, or :class:`numpy.random.Generator`, optional
            Source of randomness

        Returns
        -------
        int
            Sampled column
        """
        rng = get_random_state(random_state)
        idx = self.data[i, :].cumsum().searchsorted(rng.random(), side="right")
        return int(min(idx, self.data.shape[1] - 1))


class GaussianFactor(AbstractFactor):
    """Multivariate normal distribution, used as the emission distribution of
    a single state

    Attributes
    ----------
    mean : numpy.ndarray
        Mean vector, length `d`

    cov : numpy.ndarray
        `[d x d]` symmetric positive-definite covariance matrix
    """

    def __init__(self, mean, cov):
        """Create a GaussianFactor

        Parameters
        ----------
        mean : array-like
            Mean vector (or scalar, for univariate emissions)

        cov : array-like
            Covariance matrix (or scalar variance, for univariate emissions)
        """
        self.mean = numpy.atleast_1d(numpy.array(mean, dtype=float)).ravel()
        dim = len(self.mean)
        self.cov = numpy.array(cov, dtype=float).reshape((dim, dim))

    def __eq__(self, other):
        return isinstance(other, GaussianFactor) \
            and self.mean.shape == other.mean.shape \
            and (self.mean == other.mean).all() \
            and (self.cov == other.cov).all()

    def __repr__(self):
        return "<%s, dim %s>" % (self.__class__.__name__, self.dim)

    @property
    def dim(self):
        return len(self.mean)

    def get_header(self):
        """Return a list of parameter names corresponding to elements returned
        by :meth:`GaussianFactor.get_row`
        """
        ltmp = ["mu%d" % X for X in range(self.dim)]
        ltmp += ["cov%d,%d" % (X, Y) for X in range(self.dim) for Y in range(X, self.dim)]
        return ltmp

    def get_row(self):
        """Serialize parameters as a list. Only the upper triangle of the
        covariance matrix is reported
        """
        return list(self.mean) + list(self.cov[numpy.triu_indices(self.dim)])

    def logprob(self, x):
        """Return the log density of one or more observations

        Parameters
        ----------
        x : numpy.ndarray
            A single observation of length `d`, or a `[T x d]` array of
            observations

        Returns
        -------
        float or numpy.ndarray
            Log density of each observation
        """
        return scipy.stats.multivariate_normal.logpdf(x, mean=self.mean, cov=self.cov)

    def generate(self, random_state=None):
        """Sample an observation

        Parameters
        ----------
        random_state : None, int, or :class:`numpy.random.Generator`, optional
            Source of randomness

        Returns
        -------
        numpy.ndarray
            Observation of length `d`
        """
        rng = get_random_state(random_state)
        return rng.multivariate_normal(self.mean, self.cov)


#===============================================================================
# Priors over parameters
#===============================================================================


def is_posdef(mat):
    """Return `True` if `mat` is symmetric positive-definite

    Parameters
    ----------
    mat : numpy.ndarray
        Square matrix

    Returns
    -------
    bool
    """
    mat = numpy.asarray(mat, dtype=float)
    if not numpy.isfinite(mat).all() or not numpy.allclose(mat, mat.T):
        return False
    try:
        numpy.linalg.cholesky(mat)
    except numpy.linalg.LinAlgError:
        return False
    return True


class NormalInvWishart(object):
    """Normal-Inverse-Wishart distribution, the conjugate prior over the mean
    and covariance of a multivariate Gaussian:

    .. math::

        \\Sigma \\sim IW(S_0, \\nu_0), \\quad \\mu | \\Sigma \\sim N(m_0, \\Sigma / \\kappa_0)

    Attributes
    ----------
    mu : numpy.ndarray
        Prior mean `m0`

    Sigma : numpy.ndarray
        Prior scale matrix `S0`

    dof : float
        Degrees of freedom `nu0`. Must exceed `d - 1`

    k : float
        Concentration `kappa0`, in units of pseudo-observations
    """

    def __init__(self, mu, Sigma, dof, k):
        self.mu = numpy.atleast_1d(numpy.array(mu, dtype=float)).ravel()
        dim = len(self.mu)
        try:
            self.Sigma = numpy.array(Sigma, dtype=float).reshape((dim, dim))
        except ValueError:
            raise InvalidInputError(
                "NIW scale matrix must be %d x %d to match prior mean" % (dim, dim)
            )
        self.dof = float(dof)
        self.k = float(k)

        if not is_posdef(self.Sigma):
            raise InvalidInputError("NIW scale matrix must be symmetric positive-definite")
        if self.dof <= dim - 1:
            raise InvalidInputError(
                "NIW degrees of freedom must exceed d - 1 = %d. Found %s" % (dim - 1, self.dof)
            )
        if self.k <= 0:
            raise InvalidInputError("NIW concentration must be positive. Found %s" % self.k)

    def __repr__(self):
        return "<%s, dim %s, dof %s, k %s>" % (
            self.__class__.__name__, self.dim, self.dof, self.k
        )

    @property
    def dim(self):
        return len(self.mu)

    @staticmethod
    def default(dim):
        """Weakly-informative prior for `dim`-dimensional data: centered at
        zero, with scale `0.1 * I`, `dim + 1` degrees of freedom, and
        concentration `dim`
        """
        return NormalInvWishart(numpy.zeros(dim), 0.1 * numpy.eye(dim), dim + 1, dim)

    def logprob(self, mean, cov):
        """Log density of a (mean, covariance) pair under the prior

        Parameters
        ----------
        mean : numpy.ndarray
            Mean vector

        cov : numpy.ndarray
            Covariance matrix

        Returns
        -------
        float
        """
        cov = numpy.asarray(cov, dtype=float).reshape((self.dim, self.dim))
        logp = scipy.stats.invwishart.logpdf(cov, df=self.dof, scale=self.Sigma)
        logp += scipy.stats.multivariate_normal.logpdf(
            numpy.ravel(mean), mean=self.mu, cov=cov / self.k
        )
        return float(logp)


def dirichlet_log_mode_term(probs, pseudocounts):
    """Unnormalized Dirichlet log prior, ``sum(log(probs + EPS) * (pseudocounts - 1))``

    Parameters
    ----------
    probs : numpy.ndarray
        Probability vector or row-stochastic matrix

    pseudocounts : numpy.ndarray
        Dirichlet pseudo-counts, same shape as `probs`

    Returns
    -------
    float
    """
    probs = numpy.asarray(probs, dtype=float)
    return float((numpy.log(probs + EPS) * (numpy.asarray(pseudocounts) - 1)).sum())
