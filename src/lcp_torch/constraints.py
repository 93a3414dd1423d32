from dataclasses import dataclass
from enum import Enum
from typing import List

import torch
from jaxtyping import Float
from lcp_torch.constants import DTYPE
from lcp_torch.utils import tangent_basis


class ContactType(Enum):
    VERTEX_FACE = "vertex_face"
    FACE_VERTEX = "face_vertex"
    EDGE_EDGE = "edge_edge"
    UNSUPPORTED = "unsupported"


@dataclass
class Contact:
    """Contact geometry at the time of detection.

    The normal is the direction of the force acting on body A. Bodies are
    referenced by skeleton name and index in the skeleton, so the record can
    be deep-copied without dragging the world along.
    """

    point: torch.Tensor
    normal: torch.Tensor
    depth: float
    contact_type: ContactType
    skeleton_a: str
    body_a: int
    skeleton_b: str
    body_b: int
    friction: float = 0.0
    restitution: float = 0.0


def world_force(
    point: Float[torch.Tensor, "3"], direction: Float[torch.Tensor, "3"]
) -> Float[torch.Tensor, "6"]:
    """Spatial force [torque, force] of a unit force along `direction` at `point`."""
    return torch.cat([torch.linalg.cross(point, direction), direction])


def contact_force_multiple(contact: Contact, dof) -> float:
    """
    Side of the contact a DOF acts on: +1 if the DOF moves body A, -1 if it
    moves body B, 0 if it moves neither.
    """
    skeleton = dof.skeleton
    if skeleton.name == contact.skeleton_a and skeleton.is_ancestor(dof.child_body, contact.body_a):
        return 1.0
    if skeleton.name == contact.skeleton_b and skeleton.is_ancestor(dof.child_body, contact.body_b):
        return -1.0
    return 0.0


class Constraint:
    """One LCP constraint spanning `dimension` scalar rows."""

    is_contact = False

    def __init__(self, dimension: int, skeletons: List[str]):
        self.dimension = dimension
        self.skeletons = skeletons
        self.bouncing = False
        self.penetration_velocity = 0.0

    def generalized_impulse(self, world, skeleton, index: int) -> torch.Tensor:
        """Generalized force on `skeleton` of a unit impulse along row `index`."""
        raise NotImplementedError

    def bounds(self, index: int):
        """(lo, hi, friction index) of row `index`.

        The friction index is the row, within this constraint, whose impulse
        scales the bounds, or -1 when the bounds are absolute.
        """
        raise NotImplementedError

    def get_restitution_coefficient(self, index: int) -> float:
        return 0.0

    def is_bouncing(self, index: int) -> bool:
        return False

    def get_penetration_correction_velocity(self, index: int) -> float:
        return 0.0


class ContactConstraint(Constraint):
    """Normal plus (when frictional) two tangent rows of one point contact."""

    is_contact = True

    def __init__(self, contact: Contact, friction_threshold: float = 1e-9):
        frictional = contact.friction > friction_threshold
        skeletons = [contact.skeleton_a]
        if contact.skeleton_b != contact.skeleton_a:
            skeletons.append(contact.skeleton_b)
        super().__init__(3 if frictional else 1, skeletons)
        self.contact = contact

    def get_tangent_basis(self, normal: torch.Tensor) -> Float[torch.Tensor, "3 2"]:
        return tangent_basis(normal)

    def get_direction(self, index: int) -> Float[torch.Tensor, "3"]:
        if index == 0:
            return self.contact.normal
        return self.get_tangent_basis(self.contact.normal)[:, index - 1]

    def generalized_impulse(self, world, skeleton, index: int) -> torch.Tensor:
        impulse = torch.zeros(skeleton.num_dofs, dtype=DTYPE)
        if skeleton.name not in self.skeletons:
            return impulse
        force = world_force(self.contact.point, self.get_direction(index))
        for dof in skeleton.dofs:
            multiple = contact_force_multiple(self.contact, dof)
            if multiple != 0.0:
                axis = skeleton.get_world_screw_axis(dof.index_in_skeleton)
                impulse[dof.index_in_skeleton] = multiple * torch.dot(axis, force)
        return impulse

    def bounds(self, index: int):
        if index == 0:
            return 0.0, float("inf"), -1
        return -self.contact.friction, self.contact.friction, 0

    def get_restitution_coefficient(self, index: int) -> float:
        return self.contact.restitution if index == 0 else 0.0

    def is_bouncing(self, index: int) -> bool:
        return index == 0 and self.bouncing

    def get_penetration_correction_velocity(self, index: int) -> float:
        return self.penetration_velocity if index == 0 else 0.0


class JointLimitConstraint(Constraint):
    """Keeps one DOF inside its position limits."""

    def __init__(self, skeleton_name: str, dof_index: int, sign: float):
        super().__init__(1, [skeleton_name])
        self.dof_index = dof_index
        # +1 pushes the DOF up from its lower limit, -1 down from the upper one
        self.sign = sign

    def generalized_impulse(self, world, skeleton, index: int) -> torch.Tensor:
        impulse = torch.zeros(skeleton.num_dofs, dtype=DTYPE)
        if skeleton.name == self.skeletons[0]:
            impulse[self.dof_index] = self.sign
        return impulse

    def bounds(self, index: int):
        return 0.0, float("inf"), -1
