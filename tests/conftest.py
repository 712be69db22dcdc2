"""Shared fixtures for the solver adapter tests.

The reference problems and their solutions come from the MATPOWER QP
solver test suite.
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Make the top-level modules importable without installing the project.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from qps_cvxopt import QPProblem  # noqa: E402


@pytest.fixture
def sas_qp() -> QPProblem:
    """QP from the SAS/IML documentation with one equality and one lower-only row."""

    return QPProblem(
        H=np.array(
            [
                [1003.1, 4.3, 6.3, 5.9],
                [4.3, 2.2, 2.1, 3.9],
                [6.3, 2.1, 3.5, 4.8],
                [5.9, 3.9, 4.8, 10.0],
            ]
        ),
        c=np.zeros(4),
        A=np.array([[1.0, 1.0, 1.0, 1.0], [0.17, 0.11, 0.10, 0.18]]),
        l=np.array([1.0, 0.10]),
        u=np.array([1.0, np.inf]),
        xmin=np.zeros(4),
    )


@pytest.fixture
def small_lp() -> QPProblem:
    """LP with upper-only and lower-only rows and non-negative variables."""

    return QPProblem(
        c=np.array([-5.0, -4.0, -6.0]),
        A=np.array([[1.0, -1.0, 1.0], [-3.0, -2.0, -4.0], [3.0, 2.0, 0.0]]),
        l=np.array([-np.inf, -42.0, -np.inf]),
        u=np.array([20.0, np.inf, 30.0]),
        xmin=np.zeros(3),
    )
