"""Lightweight engine for fitting hidden Markov models with Gaussian or
discrete emissions by maximum a posteriori expectation-maximization.

See :func:`emhmm.training.fit_hmm` to get started.
"""
from emhmm.hmm import FirstOrderHMM
from emhmm.training import fit_hmm

__version__ = "0.1.0"
