from __future__ import annotations

from dataclasses import dataclass, field, replace
import importlib
import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Mapping, NamedTuple, Optional, Tuple

from cvxopt import matrix as cvx_matrix, solvers
import numpy as np
import numpy.typing as npt

from range_constraints import (
    BIG_M,
    EQ_TOL,
    ConstraintPartition,
    DimensionMismatchError,
    MalformedProblemError,
    StandardForm,
    check_variable_bounds,
    from_standard_duals,
    partition,
    to_standard_form,
)

if TYPE_CHECKING:
    from cvxopt.base import matrix as CVXMatrix

# cvxopt's ``solver`` argument for each algorithm choice
ALGORITHMS: Dict[str, Optional[str]] = {
    "default": None,
    "mosek": "mosek",
    "glpk": "glpk",
}
LP_ONLY_ALGORITHMS: Tuple[str, ...] = ("glpk",)
# modules cvxopt imports to reach each optional backend
BACKEND_MODULES: Dict[str, str] = {
    "mosek": "cvxopt.msk",
    "glpk": "cvxopt.glpk",
}

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class QPProblem:
    """Problem ``min 1/2 x'Hx + c'x`` s.t. ``l <= Ax <= u``, ``xmin <= x <= xmax``.

    A missing or all-zero ``H`` makes the problem a linear program.
    """

    H: Optional[npt.ArrayLike] = None
    c: Optional[npt.ArrayLike] = None
    A: Optional[npt.ArrayLike] = None
    l: Optional[npt.ArrayLike] = None
    u: Optional[npt.ArrayLike] = None
    xmin: Optional[npt.ArrayLike] = None
    xmax: Optional[npt.ArrayLike] = None
    x0: Optional[npt.ArrayLike] = None

    @property
    def is_lp(self) -> bool:
        return self.H is None or not np.any(np.asarray(self.H))


@dataclass(frozen=True)
class SolverOptions:
    """Per-call solver configuration.

    ``verbose`` is 0 (silent), 1 (log a final summary) or 2 (also print
    cvxopt's iteration table). ``qp_opts`` and ``lp_opts`` are passed to
    ``cvxopt.solvers.qp`` and ``cvxopt.solvers.lp`` as their ``options``,
    with ``show_progress`` always taken from ``verbose``. ``"mosek"`` and
    ``"glpk"`` need the matching cvxopt backend installed.

    ``eq_tol`` decides both equality rows and fixed variables. ``big_m``
    only applies to the limits of linear constraint rows; any finite
    variable bound is passed to the solver.
    """

    verbose: int = 0
    algorithm: str = "default"
    qp_opts: Mapping[str, Any] = field(default_factory=dict, hash=False)
    lp_opts: Mapping[str, Any] = field(default_factory=dict, hash=False)
    eq_tol: float = EQ_TOL
    big_m: float = BIG_M
    eq_dual_sign: float = 1.0

    def __post_init__(self) -> None:
        if self.verbose not in (0, 1, 2):
            raise ValueError(f"verbose must be 0, 1 or 2, got {self.verbose!r}")
        if self.algorithm not in ALGORITHMS:
            raise ValueError(
                f"Unknown algorithm {self.algorithm!r}, "
                f"expected one of {sorted(ALGORITHMS)}"
            )
        if self.eq_dual_sign not in (1, -1):
            raise ValueError("eq_dual_sign must be 1 or -1")
        object.__setattr__(self, "qp_opts", MappingProxyType(dict(self.qp_opts)))
        object.__setattr__(self, "lp_opts", MappingProxyType(dict(self.lp_opts)))

    def cvxopt_options(self, is_lp: bool) -> Dict[str, Any]:
        """Return a fresh options dict for one cvxopt call."""

        options: Dict[str, Any] = dict(self.lp_opts if is_lp else self.qp_opts)
        options["show_progress"] = self.verbose > 1
        return options


@dataclass(frozen=True, eq=False)
class Multipliers:
    mu_l: npt.NDArray[np.float64]
    mu_u: npt.NDArray[np.float64]
    lower: npt.NDArray[np.float64]
    upper: npt.NDArray[np.float64]


@dataclass(frozen=True, eq=False)
class QPResult:
    """Solution in the standardized layout.

    ``eflag`` and ``output`` are cvxopt's status string and result dict,
    passed through unchanged.
    """

    x: npt.NDArray[np.float64]
    f: float
    eflag: str
    output: Dict[str, Any]
    lmbda: Multipliers

    @property
    def success(self) -> bool:
        return self.eflag == "optimal"


def _vector(
    values: Optional[npt.ArrayLike], size: int, fill: float, name: str
) -> npt.NDArray[np.float64]:
    """Return ``values`` as a float vector of ``size``, or ``fill`` if missing."""

    if values is None or np.size(values) == 0:
        return np.full(size, fill)
    vector = np.asarray(values, dtype=np.float64).reshape(-1)
    if vector.size != size:
        raise DimensionMismatchError(
            f"{name} has {vector.size} entries, expected {size}"
        )
    return vector


def _num_variables(problem: QPProblem) -> int:
    """Infer the number of variables from H, or for an LP from A or the bounds."""

    if not problem.is_lp:
        H = np.atleast_2d(np.asarray(problem.H, dtype=np.float64))
        if H.ndim != 2 or H.shape[0] != H.shape[1]:
            raise DimensionMismatchError(f"H must be square, got shape {H.shape}")
        return H.shape[0]
    if problem.A is not None and np.size(problem.A) > 0:
        return np.atleast_2d(np.asarray(problem.A)).shape[1]
    if problem.xmin is not None and np.size(problem.xmin) > 0:
        return np.size(problem.xmin)
    if problem.xmax is not None and np.size(problem.xmax) > 0:
        return np.size(problem.xmax)
    raise MalformedProblemError(
        "LP problem must include constraints or variable bounds"
    )


def normalize_problem(problem: QPProblem) -> QPProblem:
    """Fill in defaults and check that all dimensions agree."""

    nx = _num_variables(problem)

    if problem.is_lp:
        H = np.zeros((nx, nx))
        if problem.H is not None and np.size(problem.H) > 0:
            if np.atleast_2d(np.asarray(problem.H)).shape != (nx, nx):
                raise DimensionMismatchError(
                    f"H has shape {np.shape(problem.H)}, expected {(nx, nx)}"
                )
    else:
        H = np.atleast_2d(np.asarray(problem.H, dtype=np.float64))

    if problem.A is None or np.size(problem.A) == 0:
        A = np.zeros((0, nx))
    else:
        A = np.atleast_2d(np.asarray(problem.A, dtype=np.float64))
        if A.ndim != 2 or A.shape[1] != nx:
            raise DimensionMismatchError(
                f"A has shape {A.shape}, expected {nx} columns"
            )
    nA = A.shape[0]

    normalized = replace(
        problem,
        H=H,
        c=_vector(problem.c, nx, 0.0, "c"),
        A=A,
        l=_vector(problem.l, nA, -np.inf, "l"),
        u=_vector(problem.u, nA, np.inf, "u"),
        xmin=_vector(problem.xmin, nx, -np.inf, "xmin"),
        xmax=_vector(problem.xmax, nx, np.inf, "xmax"),
        x0=_vector(problem.x0, nx, 0.0, "x0"),
    )
    check_variable_bounds(normalized.xmin, normalized.xmax)
    logger.debug(
        "Normalized %s with %d variables and %d linear constraints",
        "LP" if problem.is_lp else "QP",
        nx,
        nA,
    )
    return normalized


class BoundRows(NamedTuple):
    """Variable indices by how their bounds reach the solver.

    Fixed variables become equality rows, the other finite bounds become
    ``-x <= -xmin`` and ``x <= xmax`` rows.
    """

    ifix: npt.NDArray[np.intp]
    ilo: npt.NDArray[np.intp]
    iup: npt.NDArray[np.intp]


def classify_variable_bounds(
    xmin: npt.NDArray[np.float64], xmax: npt.NDArray[np.float64], eq_tol: float
) -> BoundRows:
    has_lower = np.isfinite(xmin)
    has_upper = np.isfinite(xmax)
    is_fixed = has_lower & has_upper & (np.abs(xmax - xmin) <= eq_tol)
    return BoundRows(
        ifix=np.flatnonzero(is_fixed),
        ilo=np.flatnonzero(has_lower & ~is_fixed),
        iup=np.flatnonzero(has_upper & ~is_fixed),
    )


def _append_variable_bounds(
    form: StandardForm,
    xmin: npt.NDArray[np.float64],
    xmax: npt.NDArray[np.float64],
    rows: BoundRows,
) -> StandardForm:
    """Append the variable bounds to the equality and one-sided rows."""

    eye = np.eye(xmin.size)
    Ae = np.vstack((form.Ae, eye[rows.ifix, :]))
    be = np.concatenate((form.be, xmax[rows.ifix]))
    G = np.vstack((form.Ai, -eye[rows.ilo, :], eye[rows.iup, :]))
    h = np.concatenate((form.bi, -xmin[rows.ilo], xmax[rows.iup]))
    logger.debug(
        "Stacked %d fixed, %d lower and %d upper variable bounds",
        rows.ifix.size,
        rows.ilo.size,
        rows.iup.size,
    )
    return StandardForm(Ae, be, G, h)


def _cvx(array: npt.NDArray[np.float64]) -> Optional[CVXMatrix]:
    """Convert a non-empty array to a cvxopt matrix, or return None."""

    if array.size == 0:
        return None
    return cvx_matrix(np.ascontiguousarray(array, dtype=np.float64))


def _call_solver(
    problem: QPProblem,
    G: npt.NDArray[np.float64],
    h: npt.NDArray[np.float64],
    Ae: npt.NDArray[np.float64],
    be: npt.NDArray[np.float64],
    options: SolverOptions,
    warm_start: bool,
) -> Dict[str, Any]:
    """Run cvxopt's LP or QP solver and return its raw result dict."""

    nx = problem.c.size
    solver = ALGORITHMS[options.algorithm]
    cvx_options = options.cvxopt_options(problem.is_lp)
    q = cvx_matrix(np.ascontiguousarray(problem.c, dtype=np.float64))
    A_matrix = _cvx(Ae)
    b_matrix = _cvx(be)

    try:
        if problem.is_lp:
            if G.shape[0] == 0:
                G_matrix = cvx_matrix(0.0, (0, nx))
                h_matrix = cvx_matrix(0.0, (0, 1))
            else:
                G_matrix = _cvx(G)
                h_matrix = _cvx(h)
            logger.debug(
                "Solving LP with %d variables using %s", nx, options.algorithm
            )
            return solvers.lp(
                q,
                G_matrix,
                h_matrix,
                A_matrix,
                b_matrix,
                solver=solver,
                options=cvx_options,
            )
        initvals = {"x": _cvx(problem.x0)} if warm_start else None
        logger.debug("Solving QP with %d variables using %s", nx, options.algorithm)
        return solvers.qp(
            _cvx(problem.H),
            q,
            _cvx(G),
            _cvx(h),
            A_matrix,
            b_matrix,
            solver=solver,
            initvals=initvals,
            options=cvx_options,
        )
    except ArithmeticError as exc:
        logger.warning("cvxopt failed on %d variable problem: %s", nx, exc)
        return {"status": "failed", "message": str(exc), "x": None}
    except ValueError as exc:
        # rank deficiency is the only ValueError cvxopt raises after solving
        # has started; the rest report bad arguments
        if not str(exc).startswith("Rank("):
            raise
        logger.warning("cvxopt failed on %d variable problem: %s", nx, exc)
        return {"status": "failed", "message": str(exc), "x": None}


def _check_backend(algorithm: str) -> None:
    """Raise ``ValueError`` if the optional cvxopt backend cannot be imported."""

    module = BACKEND_MODULES.get(algorithm)
    if module is None:
        return
    try:
        importlib.import_module(module)
    except ImportError as exc:
        raise ValueError(
            f"algorithm {algorithm!r} needs {module}, which is not installed"
        ) from exc


def _dual(
    result: Dict[str, Any], key: str, size: int
) -> Optional[npt.NDArray[np.float64]]:
    """Return a multiplier vector from a cvxopt result, or None if missing."""

    values = result.get(key)
    if values is None:
        return None
    if size == 0:
        return np.zeros(0)
    return np.array(values, dtype=np.float64).reshape(-1)


def _failed_result(
    nx: int, nA: int, status: str, output: Dict[str, Any]
) -> QPResult:
    """Return a NaN-filled result with the shapes of a successful one."""

    return QPResult(
        x=np.full(nx, np.nan),
        f=float("nan"),
        eflag=status,
        output=output,
        lmbda=Multipliers(
            mu_l=np.full(nA, np.nan),
            mu_u=np.full(nA, np.nan),
            lower=np.full(nx, np.nan),
            upper=np.full(nx, np.nan),
        ),
    )


def _bound_duals(
    y: Optional[npt.NDArray[np.float64]],
    z: Optional[npt.NDArray[np.float64]],
    parts: ConstraintPartition,
    rows: BoundRows,
    nx: int,
    eq_dual_sign: float,
) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """Scatter the multipliers of the appended bound rows onto the variables.

    A fixed variable's equality multiplier is split like that of an
    equality constraint row.
    """

    nfix, nlo, nup = rows.ifix.size, rows.ilo.size, rows.iup.size
    if (
        y is None
        or z is None
        or y.size < parts.neq + nfix
        or z.size < parts.nineq + nlo + nup
    ):
        return (np.full(nx, np.nan), np.full(nx, np.nan))

    fixed = eq_dual_sign * y[parts.neq : parts.neq + nfix]
    offset = parts.nineq
    lower = np.zeros(nx)
    upper = np.zeros(nx)
    lower[rows.ifix] = np.where(fixed < 0, -fixed, 0.0)
    upper[rows.ifix] = np.where(fixed > 0, fixed, 0.0)
    lower[rows.ilo] = z[offset : offset + nlo]
    upper[rows.iup] = z[offset + nlo : offset + nlo + nup]
    return (lower, upper)


def qps_cvxopt(
    problem: QPProblem, options: Optional[SolverOptions] = None
) -> QPResult:
    """Solve a range constrained QP or LP with cvxopt.

    Solver failures do not raise: the result then carries cvxopt's status
    and NaN-filled vectors of the usual lengths. Problem and configuration
    errors are raised before cvxopt is called.
    """

    options = options or SolverOptions()
    warm_start = problem.x0 is not None
    problem = normalize_problem(problem)
    if not problem.is_lp and options.algorithm in LP_ONLY_ALGORITHMS:
        raise ValueError(f"{options.algorithm} can only solve linear programs")
    _check_backend(options.algorithm)

    nx = problem.c.size
    nA = problem.A.shape[0]
    parts = partition(problem.l, problem.u, options.eq_tol, options.big_m)
    rows = classify_variable_bounds(problem.xmin, problem.xmax, options.eq_tol)
    Ae, be, G, h = _append_variable_bounds(
        to_standard_form(problem.A, problem.l, problem.u, parts),
        problem.xmin,
        problem.xmax,
        rows,
    )

    output = _call_solver(problem, G, h, Ae, be, options, warm_start)
    status = output.get("status", "unknown")
    if options.verbose:
        logger.info(
            "cvxopt %s finished with status '%s' after %s iterations",
            "LP" if problem.is_lp else "QP",
            status,
            output.get("iterations"),
        )

    if status != "optimal" or output.get("x") is None:
        logger.warning("Solver returned status '%s', no solution available", status)
        return _failed_result(nx, nA, status, output)

    x = np.array(output["x"], dtype=np.float64).reshape(-1)
    f = float(0.5 * x @ problem.H @ x + problem.c @ x)
    y = _dual(output, "y", Ae.shape[0])
    z = _dual(output, "z", G.shape[0])
    mu_l, mu_u = from_standard_duals(y, z, parts, options.eq_dual_sign)
    lower, upper = _bound_duals(y, z, parts, rows, nx, options.eq_dual_sign)

    logger.debug("Solution objective %g", f)
    return QPResult(
        x=x,
        f=f,
        eflag=status,
        output=output,
        lmbda=Multipliers(mu_l=mu_l, mu_u=mu_u, lower=lower, upper=upper),
    )
