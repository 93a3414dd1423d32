from typing import Tuple

import torch
from jaxtyping import Float
from lcp_torch.constants import DTYPE

FIRST_FRICTION_DIRECTION = torch.tensor([1.0, 0.0, 0.0], dtype=DTYPE)
_FALLBACK_DIRECTIONS = (
    torch.tensor([0.0, 0.0, 1.0], dtype=DTYPE),
    torch.tensor([0.0, 1.0, 0.0], dtype=DTYPE),
)


def _first_tangent_seed(normal: Float[torch.Tensor, "3"]) -> torch.Tensor:
    """Direction whose cross product with the normal spans the first tangent."""
    if torch.linalg.cross(FIRST_FRICTION_DIRECTION, normal).norm() > 1e-6:
        return FIRST_FRICTION_DIRECTION
    for direction in _FALLBACK_DIRECTIONS:
        if torch.linalg.cross(direction, normal).norm() > 1e-6:
            return direction
    raise AssertionError(f"Degenerate contact normal {normal}")


def tangent_basis(normal: Float[torch.Tensor, "3"]) -> Float[torch.Tensor, "3 2"]:
    """
    Two friction directions orthogonal to a unit contact normal.

    The first column is normalize(d x n) for the first friction direction d,
    the second is n x t1.

    Args:
        normal (torch.Tensor): Unit contact normal, shape [3]

    Returns:
        torch.Tensor: Tangent basis, shape [3, 2]
    """
    assert normal.shape == (3,), "Normal must be a 3D vector"

    seed = _first_tangent_seed(normal)
    first = torch.linalg.cross(seed, normal)
    first = first / torch.norm(first)
    second = torch.linalg.cross(normal, first)
    return torch.stack([first, second], dim=1)


def tangent_basis_gradient(
    normal: Float[torch.Tensor, "3"], normal_gradient: Float[torch.Tensor, "3"]
) -> Float[torch.Tensor, "3 2"]:
    """
    Rate of change of `tangent_basis(normal)` when the normal moves along
    `normal_gradient`.

    Args:
        normal (torch.Tensor): Unit contact normal, shape [3]
        normal_gradient (torch.Tensor): Derivative of the normal, shape [3]

    Returns:
        torch.Tensor: Derivative of the tangent basis, shape [3, 2]
    """
    seed = _first_tangent_seed(normal)
    raw = torch.linalg.cross(seed, normal)
    raw_norm = torch.norm(raw)
    first = raw / raw_norm

    d_raw = torch.linalg.cross(seed, normal_gradient)
    d_first = (d_raw - first * torch.dot(first, d_raw)) / raw_norm
    d_second = torch.linalg.cross(normal_gradient, first) + torch.linalg.cross(
        normal, d_first
    )
    return torch.stack([d_first, d_second], dim=1)


def inertia_matrix(moi: Float[torch.Tensor, "6"]) -> Float[torch.Tensor, "3 3"]:
    ixx, iyy, izz, ixy, ixz, iyz = moi.unbind(0)
    return torch.stack(
        [
            torch.stack([ixx, ixy, ixz]),
            torch.stack([ixy, iyy, iyz]),
            torch.stack([ixz, iyz, izz]),
        ]
    )


def block_offsets(sizes) -> Tuple[list, int]:
    """Running start offsets of consecutive blocks and their total size."""
    offsets = []
    total = 0
    for size in sizes:
        offsets.append(total)
        total += size
    return offsets, total
