import copy
from enum import Enum
from typing import Callable
from typing import NamedTuple
from typing import Optional

import torch
from jaxtyping import Float
from lcp_torch.constants import DTYPE
from lcp_torch.constants import EPS_CONSTRAINT_FORCES
from lcp_torch.constants import EPS_CONTACT
from lcp_torch.constraints import contact_force_multiple
from lcp_torch.constraints import ContactType
from lcp_torch.constraints import world_force
from lcp_torch.restorable import RestorableSnapshot
from lcp_torch.transform import ad
from lcp_torch.transform import adjoint_transform
from lcp_torch.transform import exp_map
from lcp_torch.transform import gradient_wrt_theta
from lcp_torch.transform import gradient_wrt_theta_pure_rotation
from lcp_torch.transform import transform_point
from lcp_torch.transform import transform_vector
from lcp_torch.utils import tangent_basis_gradient

CLAMPING = "clamping"
UPPER_BOUND = "upper_bound"


class SkeletonContactType(Enum):
    """Role a skeleton plays in a contact, seen from one of its DOFs."""

    VERTEX = "vertex"
    FACE = "face"
    EDGE = "edge"
    UNSUPPORTED = "unsupported"
    NONE = "none"


class PeerKey(NamedTuple):
    """Identifies a constraint column across snapshots: LCP role and column offset."""

    role: str
    offset: int


class ContactGradient:
    """
    Analytic sensitivities of one scalar constraint dimension.

    The contact geometry is deep-copied at construction, so it always reflects
    the state of the LCP solve it came from. World screw axes are read from the
    live world, which callers keep at the matching (pre-step) state.
    """

    def __init__(self, constraint, index: int):
        self.constraint = constraint
        self.index = index
        self.skeletons = list(constraint.skeletons)
        self.is_contact = constraint.is_contact
        self.contact = copy.deepcopy(constraint.contact) if self.is_contact else None
        self.contact_type = (
            self.contact.contact_type if self.is_contact else ContactType.UNSUPPORTED
        )
        self.peer_key: Optional[PeerKey] = None

    def set_peer_key(self, role: str, offset: int):
        self.peer_key = PeerKey(role, offset)

    def get_peer_constraint(self, snapshot) -> "ContactGradient":
        """The constraint playing the same LCP role in another snapshot."""
        return snapshot.get_peer_constraint(self.peer_key)

    # ====================== Geometry ======================

    def get_contact_position(self) -> Float[torch.Tensor, "3"]:
        if not self.is_contact:
            return torch.zeros(3, dtype=DTYPE)
        return self.contact.point

    def get_contact_normal(self) -> Float[torch.Tensor, "3"]:
        if not self.is_contact:
            return torch.zeros(3, dtype=DTYPE)
        return self.contact.normal

    def get_force_direction(self) -> Float[torch.Tensor, "3"]:
        if not self.is_contact:
            return torch.zeros(3, dtype=DTYPE)
        if self.index == 0:
            return self.contact.normal
        return self.constraint.get_tangent_basis(self.contact.normal)[:, self.index - 1]

    def get_world_force(self) -> Float[torch.Tensor, "6"]:
        return world_force(self.get_contact_position(), self.get_force_direction())

    def get_skeleton_contact_type(self, dof) -> SkeletonContactType:
        """
        Role of the DOF's skeleton in the contact. DOFs that move neither
        contact body get NONE.
        """
        skeleton = dof.skeleton
        if skeleton.name not in self.skeletons:
            return SkeletonContactType.NONE
        if not self.is_contact:
            return SkeletonContactType.UNSUPPORTED

        contact = self.contact
        if skeleton.name == contact.skeleton_a and skeleton.is_ancestor(dof.child_body, contact.body_a):
            return {
                ContactType.VERTEX_FACE: SkeletonContactType.VERTEX,
                ContactType.FACE_VERTEX: SkeletonContactType.FACE,
                ContactType.EDGE_EDGE: SkeletonContactType.EDGE,
            }.get(self.contact_type, SkeletonContactType.UNSUPPORTED)
        if skeleton.name == contact.skeleton_b and skeleton.is_ancestor(dof.child_body, contact.body_b):
            return {
                ContactType.VERTEX_FACE: SkeletonContactType.FACE,
                ContactType.FACE_VERTEX: SkeletonContactType.VERTEX,
                ContactType.EDGE_EDGE: SkeletonContactType.EDGE,
            }.get(self.contact_type, SkeletonContactType.UNSUPPORTED)
        return SkeletonContactType.NONE

    def get_force_multiple(self, dof) -> float:
        if not self.is_contact:
            return 1.0
        return contact_force_multiple(self.contact, dof)

    def get_world_screw_axis(self, dof) -> Float[torch.Tensor, "6"]:
        return dof.skeleton.get_world_screw_axis(dof.index_in_skeleton)

    def get_dofs(self, world) -> list:
        return [dof for dof in world.get_dofs() if dof.skeleton.name in self.skeletons]

    # ====================== Constraint forces ======================

    def get_constraint_forces(self, world, skeleton) -> Float[torch.Tensor, "n"]:
        """Generalized force on every DOF of `skeleton` per unit constraint force."""
        forces = torch.zeros(skeleton.num_dofs, dtype=DTYPE)
        if skeleton.name not in self.skeletons:
            return forces
        force = self.get_world_force()
        for dof in skeleton.dofs:
            multiple = self.get_force_multiple(dof)
            if multiple != 0.0:
                forces[dof.index_in_skeleton] = multiple * torch.dot(self.get_world_screw_axis(dof), force)
        return forces

    def get_constraint_forces_world(self, world) -> Float[torch.Tensor, "N"]:
        return torch.cat(
            [self.get_constraint_forces(world, skeleton) for skeleton in world.skeletons]
        )

    def get_constraint_force(self, world, dof) -> float:
        multiple = self.get_force_multiple(dof)
        if multiple == 0.0:
            return 0.0
        return multiple * torch.dot(self.get_world_screw_axis(dof), self.get_world_force()).item()

    # ====================== Analytic gradients ======================

    def get_contact_position_gradient(self, dof) -> Float[torch.Tensor, "3"]:
        contact_type = self.get_skeleton_contact_type(dof)
        if contact_type == SkeletonContactType.VERTEX:
            return gradient_wrt_theta(self.get_world_screw_axis(dof), self.get_contact_position())
        # EDGE contacts are not modelled, zero is a known approximation
        return torch.zeros(3, dtype=DTYPE)

    def get_contact_normal_gradient(self, dof) -> Float[torch.Tensor, "3"]:
        contact_type = self.get_skeleton_contact_type(dof)
        if contact_type == SkeletonContactType.FACE:
            axis = self.get_world_screw_axis(dof)
            return gradient_wrt_theta_pure_rotation(axis[:3], self.get_contact_normal())
        # EDGE contacts are not modelled, zero is a known approximation
        return torch.zeros(3, dtype=DTYPE)

    def get_contact_force_gradient(self, dof) -> Float[torch.Tensor, "3"]:
        """Rate of change of the force direction of this dimension."""
        normal_gradient = self.get_contact_normal_gradient(dof)
        if self.index == 0:
            return normal_gradient
        if torch.dot(normal_gradient, normal_gradient) <= 1e-12:
            return torch.zeros(3, dtype=DTYPE)
        return tangent_basis_gradient(self.get_contact_normal(), normal_gradient)[:, self.index - 1]

    def get_contact_world_force_gradient(self, dof) -> Float[torch.Tensor, "6"]:
        position = self.get_contact_position()
        direction = self.get_force_direction()
        d_position = self.get_contact_position_gradient(dof)
        d_direction = self.get_contact_force_gradient(dof)
        torque = torch.linalg.cross(d_position, direction) + torch.linalg.cross(position, d_direction)
        return torch.cat([torque, d_direction])

    def get_screw_axis_gradient(self, axis_dof, rotate_dof) -> Float[torch.Tensor, "6"]:
        """
        Rate of change of the world screw axis of `axis_dof` when `rotate_dof`
        moves. Zero across skeletons and when `rotate_dof` sits below
        `axis_dof` in the tree.
        """
        if axis_dof.skeleton is not rotate_dof.skeleton:
            return torch.zeros(6, dtype=DTYPE)
        skeleton = axis_dof.skeleton
        if not skeleton.is_ancestor(rotate_dof.child_body, axis_dof.child_body):
            return torch.zeros(6, dtype=DTYPE)
        return ad(self.get_world_screw_axis(rotate_dof), self.get_world_screw_axis(axis_dof))

    def get_constraint_force_derivative(self, world, dof, wrt) -> float:
        multiple = self.get_force_multiple(dof)
        if multiple == 0.0:
            return 0.0
        screw_gradient = self.get_screw_axis_gradient(dof, wrt)
        force_gradient = self.get_contact_world_force_gradient(wrt)
        value = torch.dot(screw_gradient, self.get_world_force()) + torch.dot(
            self.get_world_screw_axis(dof), force_gradient
        )
        return multiple * value.item()

    def get_constraint_forces_jacobian(self, world) -> Float[torch.Tensor, "N N"]:
        """
        Derivative of the generalized constraint forces (rows) with respect
        to every DOF position (columns), by the product rule on
        force = screw_axis . world_force.
        """
        dofs = world.get_dofs()
        n = len(dofs)
        jac = torch.zeros((n, n), dtype=DTYPE)
        force = self.get_world_force()
        force_gradients = [self.get_contact_world_force_gradient(wrt) for wrt in dofs]

        for row, dof in enumerate(dofs):
            multiple = self.get_force_multiple(dof)
            if multiple == 0.0:
                continue
            axis = self.get_world_screw_axis(dof)
            for col, wrt in enumerate(dofs):
                screw_gradient = self.get_screw_axis_gradient(dof, wrt)
                jac[row, col] = multiple * (
                    torch.dot(screw_gradient, force) + torch.dot(axis, force_gradients[col])
                )
        return jac

    def get_contact_position_jacobian(self, world) -> Float[torch.Tensor, "3 N"]:
        dofs = world.get_dofs()
        if not dofs:
            return torch.zeros((3, 0), dtype=DTYPE)
        return torch.stack([self.get_contact_position_gradient(dof) for dof in dofs], dim=1)

    def get_contact_force_direction_jacobian(self, world) -> Float[torch.Tensor, "3 N"]:
        dofs = world.get_dofs()
        if not dofs:
            return torch.zeros((3, 0), dtype=DTYPE)
        return torch.stack([self.get_contact_force_gradient(dof) for dof in dofs], dim=1)

    def get_contact_force_jacobian(self, world) -> Float[torch.Tensor, "6 N"]:
        dofs = world.get_dofs()
        if not dofs:
            return torch.zeros((6, 0), dtype=DTYPE)
        return torch.stack([self.get_contact_world_force_gradient(dof) for dof in dofs], dim=1)

    # ====================== Exponential map estimates ======================

    def estimate_perturbed_contact_position(self, dof, eps: float) -> Float[torch.Tensor, "3"]:
        position = self.get_contact_position()
        if self.get_skeleton_contact_type(dof) != SkeletonContactType.VERTEX:
            return position
        return transform_point(exp_map(self.get_world_screw_axis(dof) * eps), position)

    def estimate_perturbed_contact_normal(self, dof, eps: float) -> Float[torch.Tensor, "3"]:
        normal = self.get_contact_normal()
        if self.get_skeleton_contact_type(dof) != SkeletonContactType.FACE:
            return normal
        return transform_vector(exp_map(self.get_world_screw_axis(dof) * eps), normal)

    def estimate_perturbed_contact_force_direction(self, dof, eps: float) -> Float[torch.Tensor, "3"]:
        normal = self.estimate_perturbed_contact_normal(dof, eps)
        if self.index == 0 or not self.is_contact:
            return normal
        return self.constraint.get_tangent_basis(normal)[:, self.index - 1]

    def estimate_perturbed_screw_axis(self, axis_dof, rotate_dof, eps: float) -> Float[torch.Tensor, "6"]:
        axis = self.get_world_screw_axis(axis_dof)
        if axis_dof.skeleton is not rotate_dof.skeleton:
            return axis
        if not axis_dof.skeleton.is_ancestor(rotate_dof.child_body, axis_dof.child_body):
            return axis
        return adjoint_transform(exp_map(self.get_world_screw_axis(rotate_dof) * eps), axis)

    # ====================== Brute force ======================

    def _read_perturbed(self, world, dof, amount: float, read: Callable, step: bool = True):
        """
        Move one DOF by `amount`, optionally re-run the forward pass, and
        read a quantity from the peer constraint (or from the world).
        The world is restored before returning.
        """
        from lcp_torch.snapshot import forward_pass

        with RestorableSnapshot(world):
            skeleton = dof.skeleton
            positions = skeleton.get_positions()
            positions[dof.index_in_skeleton] += amount
            skeleton.set_positions(positions)
            if not step:
                return read(None)
            snapshot = forward_pass(world, idempotent=True)
            return read(self.get_peer_constraint(snapshot))

    def _central_difference(self, world, dof, read: Callable, eps: float, step: bool = True):
        plus = self._read_perturbed(world, dof, eps, read, step)
        minus = self._read_perturbed(world, dof, -eps, read, step)
        return (plus - minus) / (2 * eps)

    def brute_force_contact_position_gradient(self, world, dof) -> Float[torch.Tensor, "3"]:
        return self._central_difference(world, dof, lambda peer: peer.get_contact_position(), EPS_CONTACT)

    def brute_force_contact_normal_gradient(self, world, dof) -> Float[torch.Tensor, "3"]:
        return self._central_difference(world, dof, lambda peer: peer.get_contact_normal(), EPS_CONTACT)

    def brute_force_contact_force_gradient(self, world, dof) -> Float[torch.Tensor, "3"]:
        return self._central_difference(world, dof, lambda peer: peer.get_force_direction(), EPS_CONTACT)

    def brute_force_contact_world_force_gradient(self, world, dof) -> Float[torch.Tensor, "6"]:
        return self._central_difference(world, dof, lambda peer: peer.get_world_force(), EPS_CONTACT)

    def brute_force_screw_axis_gradient(self, world, axis_dof, rotate_dof) -> Float[torch.Tensor, "6"]:
        return self._central_difference(
            world,
            rotate_dof,
            lambda _: self.get_world_screw_axis(axis_dof),
            EPS_CONTACT,
            step=False,
        )

    def brute_force_constraint_forces_jacobian(self, world) -> Float[torch.Tensor, "N N"]:
        dofs = world.get_dofs()
        if not dofs:
            return torch.zeros((0, 0), dtype=DTYPE)
        columns = [
            self._central_difference(
                world,
                dof,
                lambda peer: peer.get_constraint_forces_world(world),
                EPS_CONSTRAINT_FORCES,
            )
            for dof in dofs
        ]
        return torch.stack(columns, dim=1)
