"""Conversion of two-sided linear constraints to one-sided standard form.

A range constrained problem ``l <= A x <= u`` is rewritten as equality rows
``Ae x = be`` plus one-sided rows ``Ai x <= bi`` for solvers that only accept
the latter, and the multipliers the solver returns for the one-sided rows
are mapped back onto the lower/upper limits of the original rows.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import NamedTuple, Optional, Tuple

import numpy as np
import numpy.typing as npt

EQ_TOL: float = float(np.finfo(np.float64).eps)
BIG_M: float = 1e10

logger = logging.getLogger(__name__)


class ProblemDefinitionError(ValueError):
    """Raised when a problem is rejected before reaching the solver."""


class MalformedProblemError(ProblemDefinitionError):
    """The problem lacks the data needed to be solved at all."""


class InvertedBoundError(ProblemDefinitionError):
    """An upper limit lies below its lower limit."""


class DimensionMismatchError(ProblemDefinitionError):
    """Array shapes disagree with each other."""


@dataclass(frozen=True)
class ConstraintPartition:
    """Row indices of each constraint category.

    ``ieq``, ``ilt``, ``igt`` and ``ibx`` hold the equality, upper-only,
    lower-only and boxed rows. ``ifree`` holds rows unbounded on both sides,
    which constrain nothing and are left out of the standard form.
    """

    ieq: npt.NDArray[np.intp]
    ilt: npt.NDArray[np.intp]
    igt: npt.NDArray[np.intp]
    ibx: npt.NDArray[np.intp]
    ifree: npt.NDArray[np.intp]
    nrows: int

    @property
    def neq(self) -> int:
        return len(self.ieq)

    @property
    def nlt(self) -> int:
        return len(self.ilt)

    @property
    def ngt(self) -> int:
        return len(self.igt)

    @property
    def nbx(self) -> int:
        return len(self.ibx)

    @property
    def nineq(self) -> int:
        """Number of one-sided rows produced by :func:`to_standard_form`."""

        return self.nlt + self.ngt + 2 * self.nbx


class StandardForm(NamedTuple):
    Ae: npt.NDArray[np.float64]
    be: npt.NDArray[np.float64]
    Ai: npt.NDArray[np.float64]
    bi: npt.NDArray[np.float64]


def _as_vector(values: npt.ArrayLike, name: str) -> npt.NDArray[np.float64]:
    """Return ``values`` as a flat float array."""

    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim > 1:
        if vector.ndim == 2 and 1 in vector.shape:
            return vector.reshape(-1)
        raise DimensionMismatchError(
            f"{name} must be a vector, got shape {vector.shape}"
        )
    return np.atleast_1d(vector)


def partition(
    l: npt.ArrayLike,
    u: npt.ArrayLike,
    eq_tol: float = EQ_TOL,
    big_m: float = BIG_M,
) -> ConstraintPartition:
    """Classify each row of ``l <= A x <= u`` by which limits are finite."""

    lower = _as_vector(l, "l")
    upper = _as_vector(u, "u")
    if lower.shape != upper.shape:
        raise DimensionMismatchError(
            f"l has {lower.size} entries but u has {upper.size}"
        )

    inverted = np.flatnonzero(upper < lower - eq_tol)
    if inverted.size:
        raise InvertedBoundError(
            "u < l for constraint rows %s" % inverted.tolist()
        )

    with np.errstate(invalid="ignore"):
        width = np.abs(upper - lower)
    # inf - inf is nan, which never compares <= eq_tol
    is_eq = width <= eq_tol
    has_lower = lower > -big_m
    has_upper = upper < big_m

    is_gt = ~is_eq & has_lower & ~has_upper
    is_lt = ~is_eq & ~has_lower & has_upper
    is_bx = ~is_eq & has_lower & has_upper
    is_free = ~is_eq & ~has_lower & ~has_upper

    result = ConstraintPartition(
        ieq=np.flatnonzero(is_eq),
        ilt=np.flatnonzero(is_lt),
        igt=np.flatnonzero(is_gt),
        ibx=np.flatnonzero(is_bx),
        ifree=np.flatnonzero(is_free),
        nrows=lower.size,
    )
    logger.debug(
        "Partitioned %d rows: %d eq, %d lt, %d gt, %d boxed, %d free",
        result.nrows,
        result.neq,
        result.nlt,
        result.ngt,
        result.nbx,
        len(result.ifree),
    )
    return result


def check_variable_bounds(xmin: npt.ArrayLike, xmax: npt.ArrayLike) -> None:
    """Raise if any variable upper bound lies below its lower bound."""

    lower = _as_vector(xmin, "xmin")
    upper = _as_vector(xmax, "xmax")
    if lower.shape != upper.shape:
        raise DimensionMismatchError(
            f"xmin has {lower.size} entries but xmax has {upper.size}"
        )
    inverted = np.flatnonzero(upper < lower)
    if inverted.size:
        raise InvertedBoundError(
            "xmax < xmin for variables %s" % inverted.tolist()
        )


def to_standard_form(
    A: npt.ArrayLike,
    l: npt.ArrayLike,
    u: npt.ArrayLike,
    parts: ConstraintPartition,
) -> StandardForm:
    """Split ``l <= A x <= u`` into ``Ae x = be`` and ``Ai x <= bi``.

    The one-sided rows are stacked as upper-only rows, negated lower-only
    rows, boxed rows and negated boxed rows. :func:`from_standard_duals`
    relies on this order.
    """

    matrix = np.atleast_2d(np.asarray(A, dtype=np.float64))
    lower = _as_vector(l, "l")
    upper = _as_vector(u, "u")
    if matrix.shape[0] != parts.nrows or lower.size != parts.nrows:
        raise DimensionMismatchError(
            f"A has {matrix.shape[0]} rows, l has {lower.size} entries, "
            f"partition covers {parts.nrows} rows"
        )

    Ae = matrix[parts.ieq, :]
    be = upper[parts.ieq]
    Ai = np.vstack(
        (
            matrix[parts.ilt, :],
            -matrix[parts.igt, :],
            matrix[parts.ibx, :],
            -matrix[parts.ibx, :],
        )
    )
    bi = np.concatenate(
        (upper[parts.ilt], -lower[parts.igt], upper[parts.ibx], -lower[parts.ibx])
    )
    logger.debug("Standard form: Ae %s, Ai %s", Ae.shape, Ai.shape)
    return StandardForm(Ae, be, Ai, bi)


def _nan_pair(nrows: int) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    return (np.full(nrows, np.nan), np.full(nrows, np.nan))


def from_standard_duals(
    eq_dual: Optional[npt.ArrayLike],
    ineq_dual: Optional[npt.ArrayLike],
    parts: ConstraintPartition,
    eq_dual_sign: float = 1.0,
) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """Map solver multipliers back onto the limits of the original rows.

    ``eq_dual`` holds one signed value per equality row. With
    ``eq_dual_sign = 1`` a negative value means the lower limit binds and a
    positive one the upper limit, which is the convention of CVXOPT and
    quadprog; pass ``-1`` for solvers using the opposite sign. ``ineq_dual``
    holds one non-negative value per one-sided row in the order produced by
    :func:`to_standard_form`; extra trailing entries are ignored.

    Returns ``(mu_l, mu_u)``, both NaN-filled when the duals are missing.
    """

    if eq_dual is None or ineq_dual is None:
        logger.debug("No multipliers available for %d rows", parts.nrows)
        return _nan_pair(parts.nrows)

    eq = np.asarray(eq_dual, dtype=np.float64).reshape(-1)
    ineq = np.asarray(ineq_dual, dtype=np.float64).reshape(-1)
    if eq.size < parts.neq or ineq.size < parts.nineq:
        logger.debug(
            "Expected %d equality and %d inequality multipliers, got %d and %d",
            parts.neq,
            parts.nineq,
            eq.size,
            ineq.size,
        )
        return _nan_pair(parts.nrows)

    nlt, ngt, nbx = parts.nlt, parts.ngt, parts.nbx
    signed = eq_dual_sign * eq[: parts.neq]

    mu_l = np.zeros(parts.nrows)
    mu_l[parts.ieq] = np.where(signed < 0, -signed, 0.0)
    mu_l[parts.igt] = ineq[nlt : nlt + ngt]
    mu_l[parts.ibx] = ineq[nlt + ngt + nbx : nlt + ngt + 2 * nbx]

    mu_u = np.zeros(parts.nrows)
    mu_u[parts.ieq] = np.where(signed > 0, signed, 0.0)
    mu_u[parts.ilt] = ineq[:nlt]
    mu_u[parts.ibx] = ineq[nlt + ngt : nlt + ngt + nbx]

    return (mu_l, mu_u)
