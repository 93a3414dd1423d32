from typing import Callable

import torch
from jaxtyping import Float
from lcp_torch.constants import DTYPE


def pseudo_inverse(matrix: torch.Tensor) -> torch.Tensor:
    """Rank-revealing pseudoinverse, well defined for rank-deficient constraint sets."""
    if matrix.numel() == 0:
        return matrix.T.clone()
    return torch.linalg.pinv(matrix)


def projection_into_clamps(
    A_c: Float[torch.Tensor, "N C"],
    velocity_changes: Float[torch.Tensor, "N C"],
    bounce: Float[torch.Tensor, "C"],
    dt: float,
) -> Float[torch.Tensor, "C N"]:
    """
    Operator mapping a predicted velocity to the clamping constraint forces

        P_c = (1/dt) * pinv(A_c^T V) * diag(bounce) * A_c^T

    Args:
        A_c: Clamping constraint directions (generalized impulses), shape [N, C]
        velocity_changes: Velocity change of every clamping column including
            the upper-bound columns it drags along, V = M^-1 (A_c + A_ub E), shape [N, C]
        bounce: 1 + restitution for bouncing columns, 1 otherwise, shape [C]
        dt: Time step

    Returns:
        P_c, shape [C, N]
    """
    if A_c.shape[1] == 0:
        return torch.zeros((0, A_c.shape[0]), dtype=DTYPE)
    constraint_velocities = A_c.T @ velocity_changes  # [C, C]
    return (1.0 / dt) * pseudo_inverse(constraint_velocities) @ torch.diag(bounce) @ A_c.T


def force_vel(
    Minv: Float[torch.Tensor, "N N"],
    A_c_ub_E: Float[torch.Tensor, "N C"],
    P_c: Float[torch.Tensor, "C N"],
    dt: float,
) -> Float[torch.Tensor, "N N"]:
    if A_c_ub_E.shape[1] == 0:
        return dt * Minv
    eye = torch.eye(Minv.shape[0], dtype=DTYPE)
    return dt * Minv @ (eye - dt * A_c_ub_E @ P_c @ Minv)


def vel_vel(
    Minv: Float[torch.Tensor, "N N"],
    A_c_ub_E: Float[torch.Tensor, "N C"],
    P_c: Float[torch.Tensor, "C N"],
    force_vel_jacobian: Float[torch.Tensor, "N N"],
    vel_c: Float[torch.Tensor, "N N"],
    dt: float,
) -> Float[torch.Tensor, "N N"]:
    eye = torch.eye(Minv.shape[0], dtype=DTYPE)
    if A_c_ub_E.shape[1] == 0:
        return eye - force_vel_jacobian @ vel_c
    return eye - dt * Minv @ A_c_ub_E @ P_c - force_vel_jacobian @ vel_c


def vel_wrt(
    dt: float,
    Minv: Float[torch.Tensor, "N N"],
    A_c_ub_E: Float[torch.Tensor, "N C"],
    P_c: Float[torch.Tensor, "C N"],
    d_minv_outer: Float[torch.Tensor, "N W"],
    d_minv_inner: Float[torch.Tensor, "N W"],
    d_c: Float[torch.Tensor, "N W"],
    d_p_c: Float[torch.Tensor, "C W"],
) -> Float[torch.Tensor, "N W"]:
    """
    Sensitivity of the next velocity to a with-respect-to vector,

        dt * (dMinv*outerTau + Minv*(-dC - (A_c + A_ub E)*(dP_c + P_c*dt*(dMinv*innerTau - Minv*dC))))

    where the dMinv terms are already applied to their torque vectors.
    """
    if A_c_ub_E.shape[1] == 0:
        return dt * (d_minv_outer - Minv @ d_c)
    inner = d_p_c + P_c @ (dt * (d_minv_inner - Minv @ d_c))
    return dt * (d_minv_outer + Minv @ (-d_c - A_c_ub_E @ inner))


def pos_pos(
    A_b: Float[torch.Tensor, "N B"],
    restitution: Float[torch.Tensor, "B"],
    num_dofs: int,
) -> Float[torch.Tensor, "N N"]:
    """
    Matrix X closest to the identity (Frobenius norm) with a_i^T X a_i = -e_i
    for every bouncing column a_i, i.e. positions reflect along bounce
    directions and pass through unchanged elsewhere.

    Args:
        A_b: Bouncing constraint directions, shape [N, B]
        restitution: Restitution coefficient of each bouncing column, shape [B]
        num_dofs: N

    Returns:
        X, shape [N, N]
    """
    eye = torch.eye(num_dofs, dtype=DTYPE)
    if A_b.shape[1] == 0:
        return eye

    # Column i of W is vec(a_i a_i^T), so W^T vec(X) stacks a_i^T X a_i
    W = torch.stack(
        [torch.outer(A_b[:, i], A_b[:, i]).T.reshape(-1) for i in range(A_b.shape[1])], dim=1
    )  # [N*N, B]
    center = eye.T.reshape(-1)  # column-major vec(I)
    q = center - pseudo_inverse(W.T) @ (restitution + W.T @ center)
    return q.reshape(num_dofs, num_dofs).T


def finite_difference(
    evaluate: Callable[[], torch.Tensor],
    x0: torch.Tensor,
    assign: Callable[[torch.Tensor], None],
    eps: float,
    central: bool = True,
) -> torch.Tensor:
    """
    Jacobian of `evaluate` with respect to the vector written by `assign`.

    `assign(x0)` is called before returning, also on error.

    Args:
        evaluate: Reads the quantity of interest from the current state
        x0: Unperturbed value of the differentiated vector, shape [W]
        assign: Writes a value of the differentiated vector into the state
        eps: Perturbation size
        central: Central differences if True, forward differences otherwise

    Returns:
        Jacobian, shape [len(evaluate()), W]
    """
    columns = []
    try:
        base = None if central else evaluate()
        for i in range(x0.shape[0]):
            perturbed = x0.clone()
            perturbed[i] += eps
            assign(perturbed)
            plus = evaluate()
            if central:
                perturbed[i] = x0[i] - eps
                assign(perturbed)
                minus = evaluate()
                columns.append((plus - minus) / (2 * eps))
            else:
                columns.append((plus - base) / eps)
            assign(x0)
    finally:
        assign(x0)

    if not columns:
        size = evaluate().shape[0]
        return torch.zeros((size, 0), dtype=DTYPE)
    return torch.stack(columns, dim=1)
