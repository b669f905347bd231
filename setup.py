#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.rst") as f:
    long_description = f.read().replace(":mod:", "")


config_info = {
    "version"  : "0.1.0",
    "packages" : find_packages(),
}


setup(
    name = "emhmm",
    install_requires = [
        "numpy",
        "scipy",
        "scikit-learn",
        "jsonpickle",
    ],
    extras_require = {
        "test" : ["pytest"],
    },
    python_requires = ">=3.8",

    description = (
        "Lightweight engine for fitting hidden Markov models with Gaussian "
        "or discrete emissions by MAP expectation-maximization"
    ),
    long_description = long_description,
    long_description_content_type = "text/x-rst",

    license   = "BSD 3-Clause",
    keywords  = "HMM hidden Markov model expectation maximization Baum-Welch MAP statistics",
    platforms = "POSIX",

    classifiers=[
         'Development Status :: 4 - Beta',
         'Programming Language :: Python',
         'Programming Language :: Python :: 3',
         'Topic :: Scientific/Engineering',
         'License :: OSI Approved :: BSD License',
         'Operating System :: POSIX',
        ],

    **config_info
) # yapf: disable
