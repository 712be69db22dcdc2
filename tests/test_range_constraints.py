from __future__ import annotations

import numpy as np
import pytest

from range_constraints import (
    DimensionMismatchError,
    InvertedBoundError,
    check_variable_bounds,
    from_standard_duals,
    partition,
    to_standard_form,
)


def _random_limits(rng: np.random.Generator, m: int):
    """Return limits mixing equality, upper-only, lower-only and boxed rows."""

    kind = rng.integers(0, 4, size=m)
    base = rng.integers(-5, 5, size=m).astype(float)
    width = rng.integers(1, 4, size=m).astype(float)
    l = np.where(kind == 1, -np.inf, base)
    u = np.where(kind == 0, base, np.where(kind == 2, np.inf, base + width))
    return l, u


def test_partition_categories() -> None:
    l = np.array([1.0, -np.inf, 0.5, -1.0, -np.inf, 2.0])
    u = np.array([1.0, 3.0, np.inf, 1.0, np.inf, 2.0])
    parts = partition(l, u)
    assert parts.ieq.tolist() == [0, 5]
    assert parts.ilt.tolist() == [1]
    assert parts.igt.tolist() == [2]
    assert parts.ibx.tolist() == [3]
    assert parts.ifree.tolist() == [4]
    assert (parts.neq, parts.nlt, parts.ngt, parts.nbx) == (2, 1, 1, 1)
    assert parts.nineq == 4


def test_partition_treats_big_values_as_infinite() -> None:
    parts = partition([-2e10, 0.0, -1e10], [5.0, 1e10, 1e11])
    assert parts.ilt.tolist() == [0]
    assert parts.igt.tolist() == [1]
    assert parts.ifree.tolist() == [2]

    parts = partition([-2e10], [5.0], big_m=1e11)
    assert parts.ibx.tolist() == [0]


def test_partition_equality_tolerance() -> None:
    parts = partition([1.0, 1.0], [1.0 + 1e-9, 1.0 + 1e-3], eq_tol=1e-8)
    assert parts.ieq.tolist() == [0]
    assert parts.ibx.tolist() == [1]


@pytest.mark.parametrize("seed", range(5))
def test_partition_is_exhaustive_and_disjoint(seed: int) -> None:
    rng = np.random.default_rng(seed)
    l, u = _random_limits(rng, 40)
    parts = partition(l, u)
    groups = [parts.ieq, parts.ilt, parts.igt, parts.ibx]
    combined = np.concatenate(groups)
    assert len(parts.ifree) == 0
    assert len(combined) == len(set(combined.tolist())) == 40
    assert sorted(combined.tolist()) == list(range(40))


def test_partition_rejects_inverted_rows() -> None:
    with pytest.raises(InvertedBoundError, match=r"\[1\]"):
        partition([0.0, 2.0], [1.0, 1.0])


def test_partition_rejects_length_mismatch() -> None:
    with pytest.raises(DimensionMismatchError):
        partition([0.0, 1.0], [1.0])


def test_check_variable_bounds() -> None:
    check_variable_bounds([0.0, -np.inf], [0.0, np.inf])
    with pytest.raises(InvertedBoundError):
        check_variable_bounds([0.0, 1.0], [1.0, 0.0])
    with pytest.raises(DimensionMismatchError):
        check_variable_bounds([0.0], [1.0, 2.0])


def test_standard_form_portfolio_rows() -> None:
    A = np.array([[1, 1, 1, 1], [0.17, 0.11, 0.10, 0.18]])
    l = np.array([1, 0.10])
    u = np.array([1, np.inf])
    parts = partition(l, u)
    assert parts.ieq.tolist() == [0]
    assert parts.igt.tolist() == [1]

    Ae, be, Ai, bi = to_standard_form(A, l, u, parts)
    assert Ae.tolist() == [[1, 1, 1, 1]]
    assert be.tolist() == [1]
    assert Ai.tolist() == [[-0.17, -0.11, -0.10, -0.18]]
    assert bi.tolist() == [-0.10]


def test_standard_form_row_order() -> None:
    A = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0], [2.0, -1.0]])
    l = np.array([-1.0, -np.inf, 0.0, 3.0])
    u = np.array([1.0, 4.0, np.inf, 3.0])
    parts = partition(l, u)

    Ae, be, Ai, bi = to_standard_form(A, l, u, parts)
    assert Ae.tolist() == [[2.0, -1.0]]
    assert be.tolist() == [3.0]
    assert Ai.tolist() == [[0.0, 1.0], [-1.0, -1.0], [1.0, 0.0], [-1.0, 0.0]]
    assert bi.tolist() == [4.0, 0.0, 1.0, 1.0]


def test_standard_form_skips_free_rows() -> None:
    A = np.array([[1.0, 2.0], [3.0, 4.0]])
    l = np.array([-np.inf, 0.0])
    u = np.array([np.inf, np.inf])
    Ae, be, Ai, bi = to_standard_form(A, l, u, partition(l, u))
    assert Ae.shape == (0, 2) and be.shape == (0,)
    assert Ai.tolist() == [[-3.0, -4.0]]
    assert bi.tolist() == [0.0]


@pytest.mark.parametrize("seed", range(5))
def test_standard_form_preserves_feasible_set(seed: int) -> None:
    # integer data keeps every product and sum exact
    rng = np.random.default_rng(seed)
    m, n = 12, 3
    A = rng.integers(-3, 4, size=(m, n)).astype(float)
    l, u = _random_limits(rng, m)
    Ae, be, Ai, bi = to_standard_form(A, l, u, partition(l, u))

    points = rng.integers(-3, 4, size=(500, n)).astype(float)
    for x in points:
        ax = A @ x
        in_range = bool(np.all((l <= ax) & (ax <= u)))
        in_standard = bool(np.all(Ae @ x == be) and np.all(Ai @ x <= bi))
        assert in_range == in_standard


def test_standard_form_rejects_mismatched_rows() -> None:
    parts = partition([0.0, 0.0], [1.0, 1.0])
    with pytest.raises(DimensionMismatchError):
        to_standard_form(np.ones((3, 2)), [0.0, 0.0], [1.0, 1.0], parts)


@pytest.mark.parametrize(
    "dual, expected_l, expected_u",
    [(-2.5, 2.5, 0.0), (1.5, 0.0, 1.5), (0.0, 0.0, 0.0)],
)
def test_equality_dual_sign_split(
    dual: float, expected_l: float, expected_u: float
) -> None:
    parts = partition([1.0], [1.0])
    mu_l, mu_u = from_standard_duals([dual], [], parts)
    assert mu_l.tolist() == [expected_l]
    assert mu_u.tolist() == [expected_u]


def test_equality_dual_sign_convention_flip() -> None:
    parts = partition([1.0], [1.0])
    mu_l, mu_u = from_standard_duals([-2.0], [], parts, eq_dual_sign=-1.0)
    assert mu_l.tolist() == [0.0]
    assert mu_u.tolist() == [2.0]


def test_boxed_duals() -> None:
    parts = partition([0.0], [1.0])
    assert parts.ibx.tolist() == [0]

    # ineq rows are (x <= 1, -x <= 0)
    mu_l, mu_u = from_standard_duals([], [2.0, 0.0], parts)
    assert (mu_l.tolist(), mu_u.tolist()) == ([0.0], [2.0])

    mu_l, mu_u = from_standard_duals([], [0.0, 3.0], parts)
    assert (mu_l.tolist(), mu_u.tolist()) == ([3.0], [0.0])


def test_duals_follow_original_row_order() -> None:
    l = np.array([0.0, -np.inf, -1.0, 5.0, -np.inf, 2.0, -np.inf])
    u = np.array([np.inf, 4.0, 1.0, 5.0, 7.0, 3.0, np.inf])
    parts = partition(l, u)
    # lt rows 1, 4; gt row 0; boxed rows 2, 5; eq row 3; free row 6
    ineq = np.array([10.0, 11.0, 20.0, 30.0, 31.0, 40.0, 41.0, 99.0])
    mu_l, mu_u = from_standard_duals([-6.0], ineq, parts)
    assert mu_u.tolist() == [0.0, 10.0, 30.0, 0.0, 11.0, 31.0, 0.0]
    assert mu_l.tolist() == [20.0, 0.0, 40.0, 6.0, 0.0, 41.0, 0.0]


def test_missing_duals_are_nan() -> None:
    parts = partition([0.0, -np.inf], [1.0, 2.0])
    for eq, ineq in [(None, [1.0, 2.0, 3.0]), ([], None), ([], [1.0])]:
        mu_l, mu_u = from_standard_duals(eq, ineq, parts)
        assert mu_l.shape == mu_u.shape == (2,)
        assert np.isnan(mu_l).all() and np.isnan(mu_u).all()
