from dataclasses import dataclass
from enum import IntEnum
from typing import List

import torch
from jaxtyping import Float
from lcp_torch.constants import CLAMPING_THRESHOLD
from lcp_torch.constants import DTYPE
from lcp_torch.constants import EPS_GROUP_POS_VEL
from lcp_torch.contact_gradient import ContactGradient
from lcp_torch.jacobians import finite_difference
from lcp_torch.jacobians import force_vel
from lcp_torch.jacobians import pos_pos
from lcp_torch.jacobians import projection_into_clamps
from lcp_torch.jacobians import pseudo_inverse
from lcp_torch.jacobians import vel_vel
from lcp_torch.lcp import effective_bounds
from lcp_torch.restorable import RestorableSnapshot
from lcp_torch.utils import block_offsets


class ConstraintMapping(IntEnum):
    """Classification of a constraint dimension. Upper-bound dimensions store
    the (non-negative) index of the clamping dimension they follow instead."""

    CLAMPING = -1
    NOT_CLAMPING = -2
    IRRELEVANT = -3


@dataclass
class LossGradient:
    loss_wrt_position: torch.Tensor
    loss_wrt_velocity: torch.Tensor
    loss_wrt_torque: torch.Tensor


class ConstraintGroupMatrices:
    """
    Constraint matrices of one group of skeletons coupled by constraints.

    Filled in two phases by the constraint solver: one `measure_impulse` call
    per constraint dimension, in order, then a single `finalize` with the LCP
    solution. Rows of every matrix follow the group's own DOF layout (member
    skeletons in world order).
    """

    def __init__(self, world, skeleton_names: List[str], time_step: float):
        self.skeleton_names = list(skeleton_names)
        self.time_step = time_step
        self.skeleton_dofs = [world.get_skeleton(name).num_dofs for name in self.skeleton_names]
        offsets, self.num_dofs = block_offsets(self.skeleton_dofs)
        self.skeleton_offsets = dict(zip(self.skeleton_names, offsets))

        self.num_constraint_dim = 0
        self._impulse_tests: List[torch.Tensor] = []
        self._massed_impulse_tests: List[torch.Tensor] = []
        self._restitution: List[float] = []
        self._bouncing: List[bool] = []
        self._penetration_velocities: List[float] = []
        self._gradients: List[ContactGradient] = []
        # Constraint being measured and its next expected dimension
        self._pending = None
        self._measured_constraints = []
        self.finalized = False

    # ====================== Measurement ======================

    def measure_impulse(self, constraint, index: int, world):
        """
        Record the response of the group to a unit impulse along one
        constraint dimension.

        Args:
            constraint: Constraint owning the dimension
            index: Dimension within the constraint
            world: World at the pre-step state
        """
        assert not self.finalized, "Cannot measure impulses after finalize"
        if index == 0:
            assert self._pending is None or self._pending[1] == self._pending[0].dimension, (
                "Previous constraint was not measured in every dimension"
            )
            assert not any(constraint is measured for measured in self._measured_constraints), (
                "Constraint was already measured"
            )
            self._measured_constraints.append(constraint)
        else:
            assert self._pending is not None and self._pending[0] is constraint, (
                "Constraint dimensions must be measured consecutively"
            )
            assert self._pending[1] == index, (
                f"Expected dimension {self._pending[1]}, got {index}"
            )

        impulse = []
        massed = []
        for name in self.skeleton_names:
            skeleton = world.get_skeleton(name)
            generalized = constraint.generalized_impulse(world, skeleton, index)
            impulse.append(generalized)
            massed.append(skeleton.multiply_by_inv_mass_matrix(generalized))

        self._impulse_tests.append(torch.cat(impulse))
        self._massed_impulse_tests.append(torch.cat(massed))
        self._restitution.append(constraint.get_restitution_coefficient(index))
        self._bouncing.append(constraint.is_bouncing(index))
        self._penetration_velocities.append(constraint.get_penetration_correction_velocity(index))
        self._gradients.append(ContactGradient(constraint, index))
        self._pending = (constraint, index + 1)
        self.num_constraint_dim += 1

    def finalize(
        self,
        impulses: Float[torch.Tensor, "M"],
        hi: Float[torch.Tensor, "M"],
        lo: Float[torch.Tensor, "M"],
        f_index: torch.Tensor,
    ):
        """
        Classify every dimension from the LCP solution and build the matrices.

        Args:
            impulses: LCP solution, shape [M]
            hi: Upper bounds (friction coefficients for friction rows), shape [M]
            lo: Lower bounds (friction coefficients for friction rows), shape [M]
            f_index: Group row scaling the bounds of each row, -1 if none, shape [M]
        """
        assert not self.finalized, "Group matrices already finalized"
        m = self.num_constraint_dim
        assert impulses.shape == (m,), f"Expected {m} impulses, got {tuple(impulses.shape)}"
        assert self._pending is None or self._pending[1] == self._pending[0].dimension, (
            "Last constraint was not measured in every dimension"
        )
        self.finalized = True

        self.impulses = impulses.detach().clone().to(DTYPE)
        mappings = [ConstraintMapping.NOT_CLAMPING] * m
        coefficients = [0.0] * m
        if m > 0:
            lo_eff, hi_eff = effective_bounds(self.impulses, lo, hi, f_index)
            tol = CLAMPING_THRESHOLD * max(1.0, self.impulses.abs().max().item())
            for i in range(m):
                x = self.impulses[i].item()
                if lo_eff[i].item() + tol < x < hi_eff[i].item() - tol:
                    mappings[i] = ConstraintMapping.CLAMPING
                elif abs(x) <= tol:
                    mappings[i] = ConstraintMapping.IRRELEVANT

            for i in range(m):
                f = int(f_index[i])
                if mappings[i] != ConstraintMapping.NOT_CLAMPING or f < 0:
                    continue
                if mappings[f] == ConstraintMapping.CLAMPING:
                    at_hi = abs(self.impulses[i] - hi_eff[i]) <= abs(self.impulses[i] - lo_eff[i])
                    coefficients[i] = (hi[i] if at_hi else lo[i]).item()
                    mappings[i] = f
        self.mappings = torch.tensor([int(mapping) for mapping in mappings], dtype=torch.long)

        self.clamping_indices = [i for i in range(m) if mappings[i] == ConstraintMapping.CLAMPING]
        self.upper_bound_indices = [i for i in range(m) if mappings[i] >= 0]
        self.bouncing_indices = [
            i for i in self.clamping_indices if self._bouncing[i] and self._restitution[i] > 0.0
        ]
        clamping_column = {row: k for k, row in enumerate(self.clamping_indices)}

        self.clamping_matrix = self._columns(self._impulse_tests, self.clamping_indices)
        self.massed_clamping_matrix = self._columns(self._massed_impulse_tests, self.clamping_indices)
        self.upper_bound_matrix = self._columns(self._impulse_tests, self.upper_bound_indices)
        self.massed_upper_bound_matrix = self._columns(self._massed_impulse_tests, self.upper_bound_indices)
        self.bouncing_matrix = self._columns(self._impulse_tests, self.bouncing_indices)

        self.upper_bound_mapping = torch.zeros(
            (len(self.upper_bound_indices), len(self.clamping_indices)), dtype=DTYPE
        )
        for k, row in enumerate(self.upper_bound_indices):
            self.upper_bound_mapping[k, clamping_column[int(mappings[row])]] = coefficients[row]

        bouncing = set(self.bouncing_indices)
        self.bounce_diagonals = torch.tensor(
            [1.0 + self._restitution[i] if i in bouncing else 1.0 for i in self.clamping_indices],
            dtype=DTYPE,
        )
        self.restitution_diagonals = torch.tensor(
            [self._restitution[i] for i in self.bouncing_indices], dtype=DTYPE
        )
        self.penetration_velocities = torch.tensor(
            [self._penetration_velocities[i] for i in self.clamping_indices], dtype=DTYPE
        )
        self.clamping_constraints = [self._gradients[i] for i in self.clamping_indices]
        self.upper_bound_constraints = [self._gradients[i] for i in self.upper_bound_indices]

    def _columns(self, tests: List[torch.Tensor], indices: List[int]) -> torch.Tensor:
        if not indices:
            return torch.zeros((self.num_dofs, 0), dtype=DTYPE)
        return torch.stack([tests[i] for i in indices], dim=1)

    def _require_finalized(self):
        assert self.finalized, "Group matrices are not finalized"

    # ====================== Accessors ======================

    def get_skeletons(self) -> List[str]:
        return self.skeleton_names

    def get_num_dofs(self) -> int:
        return self.num_dofs

    def get_num_constraint_dim(self) -> int:
        return self.num_constraint_dim

    def get_impulse_tests(self) -> Float[torch.Tensor, "n M"]:
        """Generalized impulse of every measured dimension, one column each."""
        return self._columns(self._impulse_tests, list(range(self.num_constraint_dim)))

    def get_massed_impulse_tests(self) -> Float[torch.Tensor, "n M"]:
        """Velocity change caused by a unit impulse along every measured dimension."""
        return self._columns(self._massed_impulse_tests, list(range(self.num_constraint_dim)))

    def get_clamping_constraint_matrix(self) -> Float[torch.Tensor, "n C"]:
        self._require_finalized()
        return self.clamping_matrix

    def get_massed_clamping_constraint_matrix(self) -> Float[torch.Tensor, "n C"]:
        self._require_finalized()
        return self.massed_clamping_matrix

    def get_upper_bound_constraint_matrix(self) -> Float[torch.Tensor, "n U"]:
        self._require_finalized()
        return self.upper_bound_matrix

    def get_massed_upper_bound_constraint_matrix(self) -> Float[torch.Tensor, "n U"]:
        self._require_finalized()
        return self.massed_upper_bound_matrix

    def get_upper_bound_mapping_matrix(self) -> Float[torch.Tensor, "U C"]:
        self._require_finalized()
        return self.upper_bound_mapping

    def get_bouncing_constraint_matrix(self) -> Float[torch.Tensor, "n B"]:
        self._require_finalized()
        return self.bouncing_matrix

    def get_bounce_diagonals(self) -> Float[torch.Tensor, "C"]:
        self._require_finalized()
        return self.bounce_diagonals

    def get_restitution_diagonals(self) -> Float[torch.Tensor, "B"]:
        self._require_finalized()
        return self.restitution_diagonals

    def get_contact_constraint_impulses(self) -> Float[torch.Tensor, "M"]:
        self._require_finalized()
        return self.impulses

    def get_contact_constraint_mappings(self) -> torch.Tensor:
        self._require_finalized()
        return self.mappings

    def get_penetration_correction_velocities(self) -> Float[torch.Tensor, "C"]:
        self._require_finalized()
        return self.penetration_velocities

    def get_clamping_constraints(self) -> List[ContactGradient]:
        self._require_finalized()
        return self.clamping_constraints

    def get_upper_bound_constraints(self) -> List[ContactGradient]:
        self._require_finalized()
        return self.upper_bound_constraints

    def get_clamping_and_upper_bound_matrix(self) -> Float[torch.Tensor, "n C"]:
        """A_c + A_ub E"""
        return self.get_clamping_constraint_matrix() + self.upper_bound_matrix @ self.upper_bound_mapping

    # ====================== Group state ======================

    def _skeletons(self, world):
        return [world.get_skeleton(name) for name in self.skeleton_names]

    def _block_diagonal(self, world, getter) -> Float[torch.Tensor, "n n"]:
        return torch.block_diag(*[getter(s) for s in self._skeletons(world)])

    def _vector(self, world, getter) -> Float[torch.Tensor, "n"]:
        return torch.cat([getter(s) for s in self._skeletons(world)])

    def get_mass_matrix(self, world) -> Float[torch.Tensor, "n n"]:
        return self._block_diagonal(world, lambda s: s.get_mass_matrix())

    def get_inv_mass_matrix(self, world) -> Float[torch.Tensor, "n n"]:
        return self._block_diagonal(world, lambda s: s.get_inv_mass_matrix())

    def get_pos_c_jacobian(self, world) -> Float[torch.Tensor, "n n"]:
        return self._block_diagonal(world, lambda s: s.get_pos_c_jacobian())

    def get_vel_c_jacobian(self, world) -> Float[torch.Tensor, "n n"]:
        return self._block_diagonal(world, lambda s: s.get_vel_c_jacobian())

    def get_positions(self, world) -> Float[torch.Tensor, "n"]:
        return self._vector(world, lambda s: s.get_positions())

    def set_positions(self, world, positions: Float[torch.Tensor, "n"]):
        assert positions.shape == (self.num_dofs,), "Wrong group position vector size"
        for skeleton in self._skeletons(world):
            start = self.skeleton_offsets[skeleton.name]
            skeleton.set_positions(positions[start : start + skeleton.num_dofs])

    def get_velocities(self, world) -> Float[torch.Tensor, "n"]:
        return self._vector(world, lambda s: s.get_velocities())

    def get_forces(self, world) -> Float[torch.Tensor, "n"]:
        return self._vector(world, lambda s: s.get_forces())

    def get_coriolis_and_gravity_forces(self, world) -> Float[torch.Tensor, "n"]:
        return self._vector(world, lambda s: s.get_coriolis_and_gravity_forces())

    # ====================== Jacobians ======================

    def get_projection_into_clamps_matrix(self, world, for_finite_differencing: bool = False):
        """
        P_c of this group. With `for_finite_differencing` the velocity changes
        are recomputed from the world's current mass matrix instead of the
        recorded impulse tests.
        """
        A_c = self.get_clamping_constraint_matrix()
        E = self.upper_bound_mapping
        if for_finite_differencing:
            V = self.get_inv_mass_matrix(world) @ self.get_clamping_and_upper_bound_matrix()
        else:
            V = self.massed_clamping_matrix + self.massed_upper_bound_matrix @ E
        return projection_into_clamps(A_c, V, self.bounce_diagonals, self.time_step)

    def get_force_vel_jacobian(self, world) -> Float[torch.Tensor, "n n"]:
        raise NotImplementedError

    def get_vel_vel_jacobian(self, world) -> Float[torch.Tensor, "n n"]:
        raise NotImplementedError

    def get_analytical_next_v(self, world) -> Float[torch.Tensor, "n"]:
        """Next velocity predicted from the current group state, holding the
        constraint directions fixed."""
        dt = self.time_step
        Minv = self.get_inv_mass_matrix(world)
        v = self.get_velocities(world)
        tau = self.get_forces(world)
        C = self.get_coriolis_and_gravity_forces(world)
        P_c = self.get_projection_into_clamps_matrix(world, for_finite_differencing=True)
        inner_v = v + dt * Minv @ (tau - C)
        return v + dt * Minv @ (tau - C - self.get_clamping_and_upper_bound_matrix() @ P_c @ inner_v)

    def get_pos_vel_jacobian(self, world) -> Float[torch.Tensor, "n n"]:
        """Derivative of the next velocity with respect to the group positions."""
        with RestorableSnapshot(world):
            return finite_difference(
                lambda: self.get_analytical_next_v(world),
                self.get_positions(world),
                lambda q: self.set_positions(world, q),
                EPS_GROUP_POS_VEL,
            )

    def get_pos_pos_jacobian(self) -> Float[torch.Tensor, "n n"]:
        self._require_finalized()
        return pos_pos(self.bouncing_matrix, self.restitution_diagonals, self.num_dofs)

    def get_vel_pos_jacobian(self) -> Float[torch.Tensor, "n n"]:
        return self.time_step * self.get_pos_pos_jacobian()

    def backprop(self, world, next_loss: LossGradient) -> LossGradient:
        """
        Pull a loss gradient on the next state back through this group.
        The world is expected at the pre-step state.
        """
        next_pos = next_loss.loss_wrt_position
        next_vel = next_loss.loss_wrt_velocity
        assert next_pos.shape == (self.num_dofs,), "Wrong group loss vector size"
        assert next_vel.shape == (self.num_dofs,), "Wrong group loss vector size"

        force_vel_jacobian = self.get_force_vel_jacobian(world)
        vel_vel_jacobian = self.get_vel_vel_jacobian(world)
        pos_vel_jacobian = self.get_pos_vel_jacobian(world)
        pos_pos_jacobian = self.get_pos_pos_jacobian()
        vel_pos_jacobian = self.get_vel_pos_jacobian()

        return LossGradient(
            loss_wrt_position=pos_pos_jacobian.T @ next_pos + pos_vel_jacobian.T @ next_vel,
            loss_wrt_velocity=vel_vel_jacobian.T @ next_vel + vel_pos_jacobian.T @ next_pos,
            loss_wrt_torque=force_vel_jacobian.T @ next_vel,
        )


class LCPConstraintGroupMatrices(ConstraintGroupMatrices):
    """Jacobians through the clamp projection P_c, including Coriolis effects."""

    def get_force_vel_jacobian(self, world) -> Float[torch.Tensor, "n n"]:
        Minv = self.get_inv_mass_matrix(world)
        P_c = self.get_projection_into_clamps_matrix(world)
        return force_vel(Minv, self.get_clamping_and_upper_bound_matrix(), P_c, self.time_step)

    def get_vel_vel_jacobian(self, world) -> Float[torch.Tensor, "n n"]:
        Minv = self.get_inv_mass_matrix(world)
        P_c = self.get_projection_into_clamps_matrix(world)
        A_c_ub_E = self.get_clamping_and_upper_bound_matrix()
        force_vel_jacobian = force_vel(Minv, A_c_ub_E, P_c, self.time_step)
        vel_c = self.get_vel_c_jacobian(world)
        return vel_vel(Minv, A_c_ub_E, P_c, force_vel_jacobian, vel_c, self.time_step)


class MassedConstraintGroupMatrices(ConstraintGroupMatrices):
    """
    Jacobians written in terms of the velocity changes V = M^-1 A only,

        X_c = (V_c + V_ub E) pinv(V_c^T M (V_c + V_ub E)) diag(bounce) V_c^T

    Coriolis terms are ignored.
    """

    def get_massed_projection_into_clamps_matrix(self, world) -> Float[torch.Tensor, "n n"]:
        V_c = self.get_massed_clamping_constraint_matrix()
        if V_c.shape[1] == 0:
            return torch.zeros((self.num_dofs, self.num_dofs), dtype=DTYPE)
        V_c_ub_E = V_c + self.massed_upper_bound_matrix @ self.upper_bound_mapping
        M = self.get_mass_matrix(world)
        return V_c_ub_E @ pseudo_inverse(V_c.T @ M @ V_c_ub_E) @ torch.diag(self.bounce_diagonals) @ V_c.T

    def get_force_vel_jacobian(self, world) -> Float[torch.Tensor, "n n"]:
        X_c = self.get_massed_projection_into_clamps_matrix(world)
        return self.time_step * (self.get_inv_mass_matrix(world) - X_c)

    def get_vel_vel_jacobian(self, world) -> Float[torch.Tensor, "n n"]:
        X_c = self.get_massed_projection_into_clamps_matrix(world)
        eye = torch.eye(self.num_dofs, dtype=DTYPE)
        return eye - X_c @ self.get_mass_matrix(world)
