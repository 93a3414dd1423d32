from typing import Tuple

import torch
from jaxtyping import Float
from jaxtyping import Int
from lcp_torch.logger import debug


def effective_bounds(
    x: Float[torch.Tensor, "N"],
    lo: Float[torch.Tensor, "N"],
    hi: Float[torch.Tensor, "N"],
    f_index: Int[torch.Tensor, "N"],
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Box bounds after scaling friction rows by the impulse of the row they refer to.

    Args:
        x: Current impulses, shape [N]
        lo: Lower bounds (friction coefficients for friction rows), shape [N]
        hi: Upper bounds (friction coefficients for friction rows), shape [N]
        f_index: Row scaling the bounds of each row, -1 for absolute bounds, shape [N]

    Returns:
        Effective lower and upper bounds, each of shape [N]
    """
    has_f = f_index >= 0
    scale = torch.where(has_f, x[f_index.clamp(min=0)], torch.ones_like(x))
    lo_eff = torch.where(has_f, lo * scale, lo)
    hi_eff = torch.where(has_f, hi * scale, hi)
    return lo_eff, hi_eff


def lcp_residual(A, x, b, lo, hi, f_index) -> float:
    """Natural-map residual max|x - clamp(x - (Ax + b), lo, hi)| of a boxed LCP."""
    if x.numel() == 0:
        return 0.0
    w = A @ x + b
    lo_eff, hi_eff = effective_bounds(x, lo, hi, f_index)
    projected = torch.minimum(torch.maximum(x - w, lo_eff), hi_eff)
    return (x - projected).abs().max().item()


def projected_gauss_seidel(A, b, lo, hi, f_index, iterations: int, tolerance: float):
    n = b.shape[0]
    x = torch.zeros_like(b)
    for _ in range(iterations):
        for i in range(n):
            if A[i, i] <= 1e-12:
                continue
            r = A[i] @ x + b[i]
            if f_index[i] >= 0:
                lo_i = lo[i] * x[f_index[i]]
                hi_i = hi[i] * x[f_index[i]]
            else:
                lo_i, hi_i = lo[i], hi[i]
            x[i] = torch.clamp(x[i] - r / A[i, i], min=lo_i, max=hi_i)
        if lcp_residual(A, x, b, lo, hi, f_index) < tolerance:
            break
    return x


def polish_active_set(A, b, lo, hi, f_index, x, threshold: float):
    """
    Solve the clamped rows of a boxed LCP exactly, keeping the active set that
    the iterative solution settled on.

    Rows strictly inside their bounds are unknowns with zero residual. Friction
    rows pinned to a bound follow the row they refer to. All other rows keep
    their bound value.

    Returns:
        The polished impulses, or None if they violate the LCP conditions.
    """
    n = b.shape[0]
    scale = max(1.0, x.abs().max().item())
    tol = threshold * scale
    lo_eff, hi_eff = effective_bounds(x, lo, hi, f_index)

    clamping = [i for i in range(n) if lo_eff[i] + tol < x[i] < hi_eff[i] - tol]
    if not clamping:
        return None
    column = {row: k for k, row in enumerate(clamping)}

    S = torch.zeros((n, len(clamping)), dtype=b.dtype)
    fixed = torch.zeros_like(b)
    for i in range(n):
        if i in column:
            S[i, column[i]] = 1.0
            continue
        at_hi = abs(x[i] - hi_eff[i]) <= abs(x[i] - lo_eff[i])
        if f_index[i] >= 0:
            coefficient = hi[i] if at_hi else lo[i]
            if f_index[i].item() in column:
                S[i, column[f_index[i].item()]] = coefficient
        else:
            bound = hi_eff[i] if at_hi else lo_eff[i]
            fixed[i] = bound if torch.isfinite(bound) else 0.0

    rows = torch.tensor(clamping)
    system = (A @ S)[rows]
    rhs = -(A @ fixed + b)[rows]
    x_c = torch.linalg.pinv(system) @ rhs
    polished = fixed + S @ x_c

    w = A @ polished + b
    lo_eff, hi_eff = effective_bounds(polished, lo, hi, f_index)
    feasible_tol = 1e-8 * max(1.0, polished.abs().max().item())
    for i in range(n):
        if polished[i] < lo_eff[i] - feasible_tol or polished[i] > hi_eff[i] + feasible_tol:
            return None
        if i in column:
            continue
        at_hi = abs(polished[i] - hi_eff[i]) <= abs(polished[i] - lo_eff[i])
        if lo_eff[i] == hi_eff[i]:
            continue
        if at_hi and w[i] > feasible_tol:
            return None
        if not at_hi and w[i] < -feasible_tol:
            return None
    return polished


def solve_box_lcp(
    A: Float[torch.Tensor, "N N"],
    b: Float[torch.Tensor, "N"],
    lo: Float[torch.Tensor, "N"],
    hi: Float[torch.Tensor, "N"],
    f_index: Int[torch.Tensor, "N"],
    iterations: int = 500,
    tolerance: float = 1e-12,
    threshold: float = 1e-9,
) -> Float[torch.Tensor, "N"]:
    """
    Solve the boxed LCP  w = A x + b,  lo <= x <= hi  with
    x = lo => w >= 0,  x = hi => w <= 0,  otherwise w = 0.

    Rows with f_index >= 0 use lo * x[f], hi * x[f] as bounds (friction cone).

    Args:
        A: Delassus matrix, shape [N, N]
        b: Constraint velocities without impulses, shape [N]
        lo: Lower bounds, shape [N]
        hi: Upper bounds, shape [N]
        f_index: Friction index of every row, shape [N]
        iterations: Maximum projected Gauss-Seidel sweeps
        tolerance: Residual at which the sweeps stop early
        threshold: Relative distance from a bound that counts as interior

    Returns:
        Impulses, shape [N]
    """
    n = b.shape[0]
    if n == 0:
        return torch.zeros_like(b)

    x = projected_gauss_seidel(A, b, lo, hi, f_index, iterations, tolerance)
    polished = polish_active_set(A, b, lo, hi, f_index, x, threshold)
    if polished is not None:
        return polished

    residual = lcp_residual(A, x, b, lo, hi, f_index)
    if residual > 1e-9:
        debug.print(f"LCP active set polish failed, keeping iterative solution (residual {residual:.3e})")
    return x
