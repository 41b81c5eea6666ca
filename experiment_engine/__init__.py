"""
Experiment Engine - Controlled Experimentation Platform

Deterministic variant assignment, exposure/conversion tracking, and
frequentist, Bayesian and bootstrap significance analysis for A/B,
multivariate, sequential and multi-armed bandit tests.
"""

__version__ = "1.0.0"
__author__ = "Experiment Engine"
