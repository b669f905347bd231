#!/usr/bin/env python
"""Containers for collections of observation sequences.

A :class:`SequenceCollection` holds one or more independent observation
sequences that share a dimensionality, together with a stacked view of all
observations. The stacked view is the ordering used for per-time-step
quantities during training: rows of the responsibility matrix computed in the
E step line up with rows of :attr:`SequenceCollection.stacked`, and the rows
belonging to sequence ``i`` start at ``offsets[i]``.
"""
import numpy

from emhmm.util import InvalidInputError

#: Emission types understood by :func:`get_emission_type`, with aliases
EMISSION_TYPES = {
    "gaussian": "gaussian",
    "gauss": "gaussian",
    "discrete": "discrete",
}


def get_emission_type(emission_type):
    """Resolve `emission_type` to its canonical name

    Parameters
    ----------
    emission_type : str
        ``"gaussian"`` (or ``"gauss"``), or ``"discrete"``. Case-insensitive.

    Returns
    -------
    str
        ``"gaussian"`` or ``"discrete"``

    Raises
    ------
    InvalidInputError
        If `emission_type` is not supported
    """
    try:
        return EMISSION_TYPES[str(emission_type).lower()]
    except KeyError:
        raise InvalidInputError(
            "'%s' is not a valid emission type. Choose from %s" %
            (emission_type, sorted(EMISSION_TYPES))
        )


class SequenceCollection(object):
    """Ordered, read-only collection of observation sequences

    Attributes
    ----------
    sequences : list of numpy.ndarray
        Observation sequences. Continuous sequences are `[T x d]` float
        arrays; discrete sequences are length-`T` integer arrays.

    emission_type : str
        ``"gaussian"`` or ``"discrete"``

    dim : int
        Dimensionality `d` of each observation (1 for discrete data)

    lengths : numpy.ndarray
        Length of each sequence

    offsets : numpy.ndarray
        Row of :attr:`stacked` at which each sequence begins

    stacked : numpy.ndarray
        All observations concatenated in sequence order
    """

    def __init__(self, obs, emission_type="gaussian"):
        """Create a SequenceCollection

        Parameters
        ----------
        obs : array-like or list of array-like
            A single sequence, or a list of sequences. A one-dimensional
            sequence of continuous values is treated as a scalar time series.

        emission_type : str, optional
            ``"gaussian"`` or ``"discrete"`` (Default: ``"gaussian"``)

        Raises
        ------
        InvalidInputError
            If the collection or any sequence is empty, if sequences differ
            in dimensionality, or contain invalid values
        """
        self.emission_type = get_emission_type(emission_type)

        if isinstance(obs, numpy.ndarray):
            obs = list(obs) if obs.dtype == object else [obs]
        elif isinstance(obs, SequenceCollection):
            obs = obs.sequences
        elif not isinstance(obs, (list, tuple)):
            obs = [obs]
        elif len(obs) > 0 and all([numpy.isscalar(X) for X in obs]):
            # flat list of scalars is a single scalar time series
            obs = [obs]

        if len(obs) == 0:
            raise InvalidInputError("No observation sequences given")

        if self.emission_type == "discrete":
            sequences = [self._check_discrete(X, n) for n, X in enumerate(obs)]
            self.dim = 1
        else:
            sequences = [self._check_continuous(X, n) for n, X in enumerate(obs)]
            dims = set([X.shape[1] for X in sequences])
            if len(dims) > 1:
                raise InvalidInputError(
                    "All sequences must have the same dimensionality. Found %s" % sorted(dims)
                )
            self.dim = dims.pop()

        self.sequences = sequences
        self.lengths = numpy.array([len(X) for X in sequences], dtype=int)
        self.offsets = numpy.concatenate([[0], self.lengths.cumsum()[:-1]]).astype(int)
        self.stacked = numpy.concatenate(sequences, axis=0)

        for my_seq in self.sequences:
            my_seq.setflags(write=False)
        self.stacked.setflags(write=False)

    @staticmethod
    def _check_continuous(seq, n):
        try:
            seq = numpy.array(seq, dtype=float)
        except (TypeError, ValueError):
            raise InvalidInputError("Sequence %d is not a rectangular numeric array" % n)

        if seq.ndim == 1:
            seq = seq[:, None]
        if seq.ndim != 2:
            raise InvalidInputError(
                "Sequence %d must be one- or two-dimensional. Found %d dimensions." %
                (n, seq.ndim)
            )
        if seq.shape[0] == 0 or seq.shape[1] == 0:
            raise InvalidInputError("Sequence %d is empty" % n)
        if not numpy.isfinite(seq).all():
            raise InvalidInputError("Sequence %d contains non-finite values" % n)

        return seq

    @staticmethod
    def _check_discrete(seq, n):
        try:
            raw = numpy.array(seq)
        except (TypeError, ValueError):
            raise InvalidInputError("Sequence %d is not a rectangular array" % n)

        if raw.ndim == 2 and 1 in raw.shape:
            raw = raw.ravel()
        if raw.ndim != 1:
            raise InvalidInputError("Discrete sequence %d must be one-dimensional" % n)
        if len(raw) == 0:
            raise InvalidInputError("Sequence %d is empty" % n)

        if raw.dtype.kind == "f":
            if not numpy.isfinite(raw).all() or (raw != numpy.round(raw)).any():
                raise InvalidInputError("Discrete sequence %d contains non-integer symbols" % n)
        elif raw.dtype.kind not in "iub":
            raise InvalidInputError("Discrete sequence %d contains non-integer symbols" % n)

        seq = raw.astype(int)
        if (seq < 0).any():
            raise InvalidInputError("Discrete sequence %d contains negative symbols" % n)

        return seq

    def __len__(self):
        return len(self.sequences)

    def __iter__(self):
        return iter(self.sequences)

    def __getitem__(self, i):
        return self.sequences[i]

    def __repr__(self):
        return "<%s, %s sequences, %s observations, dim %s>" % (
            self.__class__.__name__, len(self), self.num_observations, self.dim
        )

    @property
    def num_observations(self):
        """Total number of time steps across all sequences"""
        return len(self.stacked)

    def get_slice(self, i):
        """Return slice of :attr:`stacked` occupied by sequence `i`"""
        return slice(self.offsets[i], self.offsets[i] + self.lengths[i])
