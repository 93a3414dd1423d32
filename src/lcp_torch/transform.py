import torch
from jaxtyping import Float


def skew(v: Float[torch.Tensor, "3"]) -> Float[torch.Tensor, "3 3"]:
    """
    Skew-symmetric (cross product) matrix of a 3-vector.

    Args:
        v (torch.Tensor): Vector, shape [3]

    Returns:
        torch.Tensor: Matrix [v]x such that [v]x @ u == v x u, shape [3, 3]
    """
    zero = torch.zeros((), dtype=v.dtype, device=v.device)
    return torch.stack(
        [
            torch.stack([zero, -v[2], v[1]]),
            torch.stack([v[2], zero, -v[0]]),
            torch.stack([-v[1], v[0], zero]),
        ]
    )


def rotation_matrix(
    axis: Float[torch.Tensor, "3"], angle: torch.Tensor
) -> Float[torch.Tensor, "3 3"]:
    """
    Rodrigues rotation about a unit axis. Differentiable in the angle.

    Args:
        axis (torch.Tensor): Unit rotation axis, shape [3]
        angle (torch.Tensor): Rotation angle, scalar

    Returns:
        torch.Tensor: Rotation matrix, shape [3, 3]
    """
    K = skew(axis)
    eye = torch.eye(3, dtype=axis.dtype, device=axis.device)
    return eye + torch.sin(angle) * K + (1 - torch.cos(angle)) * (K @ K)


def make_transform(
    rotation: Float[torch.Tensor, "3 3"], translation: Float[torch.Tensor, "3"]
) -> Float[torch.Tensor, "4 4"]:
    bottom = torch.tensor([[0.0, 0.0, 0.0, 1.0]], dtype=rotation.dtype, device=rotation.device)
    top = torch.cat([rotation, translation.view(3, 1)], dim=1)
    return torch.cat([top, bottom], dim=0)


def translation_transform(translation: Float[torch.Tensor, "3"]) -> Float[torch.Tensor, "4 4"]:
    eye = torch.eye(3, dtype=translation.dtype, device=translation.device)
    return make_transform(eye, translation)


def invert_transform(T: Float[torch.Tensor, "4 4"]) -> Float[torch.Tensor, "4 4"]:
    R = T[:3, :3]
    p = T[:3, 3]
    return make_transform(R.T, -(R.T @ p))


def transform_point(T: Float[torch.Tensor, "4 4"], point: Float[torch.Tensor, "3"]) -> torch.Tensor:
    return T[:3, :3] @ point + T[:3, 3]


def transform_vector(T: Float[torch.Tensor, "4 4"], vector: Float[torch.Tensor, "3"]) -> torch.Tensor:
    return T[:3, :3] @ vector


def exp_map(twist: Float[torch.Tensor, "6"]) -> Float[torch.Tensor, "4 4"]:
    """
    Exponential map of a twist [w, v] (angular first) onto SE(3).

    Args:
        twist (torch.Tensor): Twist scaled by the motion amount, shape [6]

    Returns:
        torch.Tensor: Homogeneous transform, shape [4, 4]
    """
    w = twist[:3]
    v = twist[3:]
    theta = torch.norm(w)
    eye = torch.eye(3, dtype=twist.dtype, device=twist.device)

    if theta < 1e-12:
        return make_transform(eye, v)

    axis = w / theta
    K = skew(axis)
    R = rotation_matrix(axis, theta)
    # Left Jacobian of SO(3) applied to the linear part
    V = eye * theta + (1 - torch.cos(theta)) * K + (theta - torch.sin(theta)) * (K @ K)
    p = V @ (v / theta)
    return make_transform(R, p)


def adjoint(T: Float[torch.Tensor, "4 4"]) -> Float[torch.Tensor, "6 6"]:
    """
    Adjoint matrix of a rigid transform for angular-first twists.

    Args:
        T (torch.Tensor): Homogeneous transform, shape [4, 4]

    Returns:
        torch.Tensor: Ad_T, shape [6, 6]
    """
    R = T[:3, :3]
    p = T[:3, 3]
    zeros = torch.zeros((3, 3), dtype=T.dtype, device=T.device)
    top = torch.cat([R, zeros], dim=1)
    bottom = torch.cat([skew(p) @ R, R], dim=1)
    return torch.cat([top, bottom], dim=0)


def adjoint_transform(
    T: Float[torch.Tensor, "4 4"], twist: Float[torch.Tensor, "6"]
) -> Float[torch.Tensor, "6"]:
    """Express a twist given in the frame of T in the parent frame of T."""
    R = T[:3, :3]
    p = T[:3, 3]
    w = R @ twist[:3]
    v = torch.linalg.cross(p, w) + R @ twist[3:]
    return torch.cat([w, v])


def ad(
    rotate: Float[torch.Tensor, "6"], axis: Float[torch.Tensor, "6"]
) -> Float[torch.Tensor, "6"]:
    """
    Lie bracket of two twists, i.e. the rate of change of `axis` when the
    frame it lives in moves along `rotate`.

    Args:
        rotate (torch.Tensor): Twist of the motion, shape [6]
        axis (torch.Tensor): Twist being moved, shape [6]

    Returns:
        torch.Tensor: [rotate, axis], shape [6]
    """
    w1, v1 = rotate[:3], rotate[3:]
    w2, v2 = axis[:3], axis[3:]
    w = torch.linalg.cross(w1, w2)
    v = torch.linalg.cross(w1, v2) + torch.linalg.cross(v1, w2)
    return torch.cat([w, v])


def gradient_wrt_theta(
    twist: Float[torch.Tensor, "6"], point: Float[torch.Tensor, "3"], theta: float = 0.0
) -> Float[torch.Tensor, "3"]:
    """
    Derivative of exp(twist * theta) applied to a point, taken at theta.

    Args:
        twist (torch.Tensor): World screw axis, shape [6]
        point (torch.Tensor): World point, shape [3]
        theta (float): Amount of motion already applied

    Returns:
        torch.Tensor: Velocity of the point, shape [3]
    """
    if theta != 0.0:
        point = transform_point(exp_map(twist * theta), point)
    return torch.linalg.cross(twist[:3], point) + twist[3:]


def gradient_wrt_theta_pure_rotation(
    axis: Float[torch.Tensor, "3"], vector: Float[torch.Tensor, "3"], theta: float = 0.0
) -> Float[torch.Tensor, "3"]:
    """
    Derivative of a direction rotated about `axis` by theta. Translation
    does not act on directions, so only the angular part of a screw matters.

    Args:
        axis (torch.Tensor): Angular part of the world screw axis, shape [3]
        vector (torch.Tensor): Direction, shape [3]
        theta (float): Amount of rotation already applied

    Returns:
        torch.Tensor: Rate of change of the direction, shape [3]
    """
    if theta != 0.0:
        norm = torch.norm(axis)
        if norm > 1e-12:
            vector = rotation_matrix(axis / norm, torch.as_tensor(theta * norm.item(), dtype=vector.dtype)) @ vector
    return torch.linalg.cross(axis, vector)
