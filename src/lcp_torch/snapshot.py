from contextlib import nullcontext
from enum import Enum
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

import torch
from jaxtyping import Float
from lcp_torch.constants import DEFAULT_SUBDIVISIONS
from lcp_torch.constants import DTYPE
from lcp_torch.constants import EPS_CORIOLIS
from lcp_torch.constants import EPS_FORCE_VEL
from lcp_torch.constants import EPS_MINV
from lcp_torch.constants import EPS_POS_POS
from lcp_torch.constants import EPS_POS_VEL
from lcp_torch.constants import EPS_PROJECTION
from lcp_torch.constants import EPS_VEL_POS
from lcp_torch.constants import EPS_VEL_VEL
from lcp_torch.constants import TOLERANCE_POS_VEL
from lcp_torch.constants import TOLERANCE_WITH_BOUNCES
from lcp_torch.constants import TOLERANCE_WITHOUT_BOUNCES
from lcp_torch.contact_gradient import CLAMPING
from lcp_torch.contact_gradient import ContactGradient
from lcp_torch.contact_gradient import PeerKey
from lcp_torch.contact_gradient import UPPER_BOUND
from lcp_torch.group_matrices import ConstraintGroupMatrices
from lcp_torch.group_matrices import LCPConstraintGroupMatrices
from lcp_torch.group_matrices import LossGradient
from lcp_torch.jacobians import finite_difference
from lcp_torch.jacobians import force_vel
from lcp_torch.jacobians import pos_pos
from lcp_torch.jacobians import projection_into_clamps
from lcp_torch.jacobians import pseudo_inverse
from lcp_torch.jacobians import vel_vel
from lcp_torch.jacobians import vel_wrt
from lcp_torch.logger import debug
from lcp_torch.restorable import RestorableSnapshot


class WithRespectTo(Enum):
    POSITION = "position"
    LINK_MASSES = "link_masses"
    LINK_COMS = "link_coms"
    LINK_MOIS = "link_mois"


def get_wrt(world, wrt: WithRespectTo) -> torch.Tensor:
    if wrt == WithRespectTo.POSITION:
        return world.get_positions()
    if wrt == WithRespectTo.LINK_MASSES:
        return world.get_link_masses()
    if wrt == WithRespectTo.LINK_COMS:
        return world.get_link_coms()
    if wrt == WithRespectTo.LINK_MOIS:
        return world.get_link_mois()
    raise ValueError(f"Unknown differentiation target: {wrt}")


def set_wrt(world, wrt: WithRespectTo, value: torch.Tensor):
    if wrt == WithRespectTo.POSITION:
        world.set_positions(value)
    elif wrt == WithRespectTo.LINK_MASSES:
        world.set_link_masses(value)
    elif wrt == WithRespectTo.LINK_COMS:
        world.set_link_coms(value)
    elif wrt == WithRespectTo.LINK_MOIS:
        world.set_link_mois(value)
    else:
        raise ValueError(f"Unknown differentiation target: {wrt}")


def get_wrt_dim(world, wrt: WithRespectTo) -> int:
    return get_wrt(world, wrt).shape[0]


class StepGradientSnapshot:
    """
    Record of one simulation step, used to differentiate the post-step state
    with respect to the pre-step position, velocity and torques.

    The constraint groups the solver attached to the skeletons during the step
    are collected once. All world-level matrices are assembled from them with
    rows following the skeleton DOF offsets and columns concatenated group by
    group. Quantities depending on the mass matrix are evaluated at the
    pre-step state, which is restored on the live world around each query.
    """

    def __init__(
        self,
        world,
        pre_step_position: torch.Tensor,
        pre_step_velocity: torch.Tensor,
        pre_step_torques: torch.Tensor,
    ):
        self.time_step = world.time_step
        self.pre_step_position = pre_step_position.detach().clone()
        self.pre_step_velocity = pre_step_velocity.detach().clone()
        self.pre_step_torques = pre_step_torques.detach().clone()
        self.post_step_position = world.get_positions()
        self.post_step_velocity = world.get_velocities()
        self.post_step_torques = world.get_forces()

        self.num_dofs = world.get_num_dofs()
        assert self.pre_step_position.shape == (self.num_dofs,), "Wrong pre-step position size"
        assert self.pre_step_velocity.shape == (self.num_dofs,), "Wrong pre-step velocity size"
        assert self.pre_step_torques.shape == (self.num_dofs,), "Wrong pre-step torque size"

        self.skeleton_offsets: Dict[str, int] = world.get_dof_offsets()
        self.skeleton_dofs: Dict[str, int] = {s.name: s.num_dofs for s in world.skeletons}

        # Groups are shared by all their member skeletons
        self.gradient_matrices: List[ConstraintGroupMatrices] = []
        for skeleton in world.skeletons:
            group = skeleton.gradient_matrices
            if group is not None and not any(group is known for known in self.gradient_matrices):
                self.gradient_matrices.append(group)

        grouped = [name for group in self.gradient_matrices for name in group.skeleton_names]
        assert len(grouped) == len(set(grouped)), "Skeleton belongs to more than one constraint group"
        grouped_dofs = sum(group.num_dofs for group in self.gradient_matrices)
        free_dofs = sum(n for name, n in self.skeleton_dofs.items() if name not in grouped)
        assert grouped_dofs + free_dofs == self.num_dofs, (
            f"Constraint groups cover {grouped_dofs} + {free_dofs} DOFs, world has {self.num_dofs}"
        )

        self.num_constraint_dim = sum(g.num_constraint_dim for g in self.gradient_matrices)
        self.clamping_constraints: List[ContactGradient] = []
        self.upper_bound_constraints: List[ContactGradient] = []
        for group in self.gradient_matrices:
            self.clamping_constraints.extend(group.get_clamping_constraints())
            self.upper_bound_constraints.extend(group.get_upper_bound_constraints())
        for offset, constraint in enumerate(self.clamping_constraints):
            constraint.set_peer_key(CLAMPING, offset)
        for offset, constraint in enumerate(self.upper_bound_constraints):
            constraint.set_peer_key(UPPER_BOUND, offset)

        self.num_clamping = len(self.clamping_constraints)
        self.num_upper_bound = len(self.upper_bound_constraints)
        self.num_bouncing = sum(g.get_bouncing_constraint_matrix().shape[1] for g in self.gradient_matrices)

    # ====================== State ======================

    def get_pre_step_position(self) -> torch.Tensor:
        return self.pre_step_position.clone()

    def get_pre_step_velocity(self) -> torch.Tensor:
        return self.pre_step_velocity.clone()

    def get_pre_step_torques(self) -> torch.Tensor:
        return self.pre_step_torques.clone()

    def get_post_step_position(self) -> torch.Tensor:
        return self.post_step_position.clone()

    def get_post_step_velocity(self) -> torch.Tensor:
        return self.post_step_velocity.clone()

    def get_post_step_torques(self) -> torch.Tensor:
        return self.post_step_torques.clone()

    def _set_pre_step_state(self, world):
        world.set_positions(self.pre_step_position)
        world.set_velocities(self.pre_step_velocity)
        world.set_forces(self.pre_step_torques)

    def has_bounces(self) -> bool:
        return self.num_bouncing > 0

    def get_num_clamping(self) -> int:
        return self.num_clamping

    def get_num_upper_bound(self) -> int:
        return self.num_upper_bound

    def get_clamping_constraints(self) -> List[ContactGradient]:
        return self.clamping_constraints

    def get_upper_bound_constraints(self) -> List[ContactGradient]:
        return self.upper_bound_constraints

    def get_peer_constraint(self, key: PeerKey) -> ContactGradient:
        constraints = self.clamping_constraints if key.role == CLAMPING else self.upper_bound_constraints
        assert key.offset < len(constraints), (
            f"No {key.role} constraint at offset {key.offset}, the active set changed"
        )
        return constraints[key.offset]

    def _tolerance(self) -> float:
        return TOLERANCE_WITH_BOUNCES if self.has_bounces() else TOLERANCE_WITHOUT_BOUNCES

    def _pos_vel_tolerance(self) -> float:
        return max(self._tolerance(), TOLERANCE_POS_VEL)

    # ====================== Assembly ======================

    def _assemble_matrix(self, getter: Callable) -> Float[torch.Tensor, "N K"]:
        blocks = [getter(group) for group in self.gradient_matrices]
        columns = sum(block.shape[1] for block in blocks)
        matrix = torch.zeros((self.num_dofs, columns), dtype=DTYPE)
        col = 0
        for group, block in zip(self.gradient_matrices, blocks):
            for name in group.skeleton_names:
                local = group.skeleton_offsets[name]
                world_offset = self.skeleton_offsets[name]
                n = self.skeleton_dofs[name]
                matrix[world_offset : world_offset + n, col : col + block.shape[1]] = block[local : local + n]
            col += block.shape[1]
        return matrix

    def _assemble_vector(self, getter: Callable, dtype=DTYPE) -> torch.Tensor:
        parts = [getter(group) for group in self.gradient_matrices]
        if not parts:
            return torch.zeros(0, dtype=dtype)
        return torch.cat(parts)

    def _assemble_block_diagonal(self, world, getter: Callable, for_finite_differencing: bool):
        if for_finite_differencing:
            return torch.block_diag(*[getter(s) for s in world.skeletons])
        with RestorableSnapshot(world):
            self._set_pre_step_state(world)
            return torch.block_diag(*[getter(s) for s in world.skeletons])

    def get_clamping_constraint_matrix(self, world) -> Float[torch.Tensor, "N C"]:
        return self._assemble_matrix(lambda g: g.get_clamping_constraint_matrix())

    def get_massed_clamping_constraint_matrix(self, world) -> Float[torch.Tensor, "N C"]:
        return self._assemble_matrix(lambda g: g.get_massed_clamping_constraint_matrix())

    def get_upper_bound_constraint_matrix(self, world) -> Float[torch.Tensor, "N U"]:
        return self._assemble_matrix(lambda g: g.get_upper_bound_constraint_matrix())

    def get_massed_upper_bound_constraint_matrix(self, world) -> Float[torch.Tensor, "N U"]:
        return self._assemble_matrix(lambda g: g.get_massed_upper_bound_constraint_matrix())

    def get_bouncing_constraint_matrix(self, world) -> Float[torch.Tensor, "N B"]:
        return self._assemble_matrix(lambda g: g.get_bouncing_constraint_matrix())

    def get_upper_bound_mapping_matrix(self) -> Float[torch.Tensor, "U C"]:
        mapping = torch.zeros((self.num_upper_bound, self.num_clamping), dtype=DTYPE)
        row = 0
        col = 0
        for group in self.gradient_matrices:
            block = group.get_upper_bound_mapping_matrix()
            mapping[row : row + block.shape[0], col : col + block.shape[1]] = block
            row += block.shape[0]
            col += block.shape[1]
        return mapping

    def get_bounce_diagonals(self) -> Float[torch.Tensor, "C"]:
        return self._assemble_vector(lambda g: g.get_bounce_diagonals())

    def get_restitution_diagonals(self) -> Float[torch.Tensor, "B"]:
        return self._assemble_vector(lambda g: g.get_restitution_diagonals())

    def get_contact_constraint_impulses(self) -> Float[torch.Tensor, "M"]:
        return self._assemble_vector(lambda g: g.get_contact_constraint_impulses())

    def get_contact_constraint_mappings(self) -> torch.Tensor:
        return self._assemble_vector(lambda g: g.get_contact_constraint_mappings(), dtype=torch.long)

    def get_penetration_correction_velocities(self) -> Float[torch.Tensor, "C"]:
        return self._assemble_vector(lambda g: g.get_penetration_correction_velocities())

    def get_mass_matrix(self, world, for_finite_differencing: bool = False) -> Float[torch.Tensor, "N N"]:
        return self._assemble_block_diagonal(world, lambda s: s.get_mass_matrix(), for_finite_differencing)

    def get_inv_mass_matrix(self, world, for_finite_differencing: bool = False) -> Float[torch.Tensor, "N N"]:
        return self._assemble_block_diagonal(world, lambda s: s.get_inv_mass_matrix(), for_finite_differencing)

    def get_pos_c_jacobian(self, world, for_finite_differencing: bool = False) -> Float[torch.Tensor, "N N"]:
        return self._assemble_block_diagonal(world, lambda s: s.get_pos_c_jacobian(), for_finite_differencing)

    def get_vel_c_jacobian(self, world, for_finite_differencing: bool = False) -> Float[torch.Tensor, "N N"]:
        return self._assemble_block_diagonal(world, lambda s: s.get_vel_c_jacobian(), for_finite_differencing)

    def implicit_multiply_by_mass_matrix(self, world, x: torch.Tensor) -> torch.Tensor:
        """M x, skeleton by skeleton, at the world's current state."""
        return self._per_skeleton(world, x, lambda s, part: s.multiply_by_mass_matrix(part))

    def implicit_multiply_by_inv_mass_matrix(self, world, x: torch.Tensor) -> torch.Tensor:
        """M^-1 x, skeleton by skeleton, at the world's current state."""
        return self._per_skeleton(world, x, lambda s, part: s.multiply_by_inv_mass_matrix(part))

    def _per_skeleton(self, world, x: torch.Tensor, apply: Callable) -> torch.Tensor:
        assert x.shape == (self.num_dofs,), "Wrong vector size"
        result = x.clone()
        for skeleton in world.skeletons:
            start = self.skeleton_offsets[skeleton.name]
            end = start + skeleton.num_dofs
            result[start:end] = apply(skeleton, x[start:end])
        return result

    # ====================== Analytical Jacobians ======================

    def _clamping_and_upper_bound_matrix(self, world) -> Float[torch.Tensor, "N C"]:
        A_c = self.get_clamping_constraint_matrix(world)
        A_ub = self.get_upper_bound_constraint_matrix(world)
        return A_c + A_ub @ self.get_upper_bound_mapping_matrix()

    def get_projection_into_clamps_matrix(
        self, world, for_finite_differencing: bool = False
    ) -> Float[torch.Tensor, "C N"]:
        """
        P_c, mapping a predicted velocity to the clamping impulses (divided
        by dt) that keep the clamping constraints satisfied.

        The recorded velocity changes are used by default. With
        `for_finite_differencing` they are rebuilt from the mass matrix at the
        world's current state, so perturbing the world moves P_c.
        """
        A_c = self.get_clamping_constraint_matrix(world)
        if A_c.shape[1] == 0:
            return torch.zeros((0, self.num_dofs), dtype=DTYPE)
        E = self.get_upper_bound_mapping_matrix()
        if for_finite_differencing:
            A_ub = self.get_upper_bound_constraint_matrix(world)
            V = self.get_inv_mass_matrix(world, True) @ (A_c + A_ub @ E)
        else:
            V_c = self.get_massed_clamping_constraint_matrix(world)
            V_ub = self.get_massed_upper_bound_constraint_matrix(world)
            V = V_c + V_ub @ E
        return projection_into_clamps(A_c, V, self.get_bounce_diagonals(), self.time_step)

    def _uses_lcp_strategy(self) -> bool:
        return all(isinstance(group, LCPConstraintGroupMatrices) for group in self.gradient_matrices)

    def _assemble_per_group(
        self, world, group_jacobian: Callable, free_jacobian: Callable
    ) -> Float[torch.Tensor, "N N"]:
        """
        Block matrix built from every group's own Jacobian and the closed form
        of the skeletons in no group, evaluated at the pre-step state.
        """
        matrix = torch.zeros((self.num_dofs, self.num_dofs), dtype=DTYPE)
        grouped = set()
        with RestorableSnapshot(world):
            self._set_pre_step_state(world)
            for group in self.gradient_matrices:
                rows = torch.cat(
                    [
                        torch.arange(self.skeleton_offsets[name], self.skeleton_offsets[name] + n)
                        for name, n in zip(group.skeleton_names, group.skeleton_dofs)
                    ]
                )
                matrix[rows.unsqueeze(1), rows.unsqueeze(0)] = group_jacobian(group)
                grouped.update(group.skeleton_names)
            for skeleton in world.skeletons:
                if skeleton.name in grouped or skeleton.num_dofs == 0:
                    continue
                start = self.skeleton_offsets[skeleton.name]
                end = start + skeleton.num_dofs
                matrix[start:end, start:end] = free_jacobian(skeleton)
        return matrix

    def get_force_vel_jacobian(self, world) -> Float[torch.Tensor, "N N"]:
        if not self._uses_lcp_strategy():
            return self._assemble_per_group(
                world,
                lambda group: group.get_force_vel_jacobian(world),
                lambda skeleton: self.time_step * skeleton.get_inv_mass_matrix(),
            )
        Minv = self.get_inv_mass_matrix(world)
        P_c = self.get_projection_into_clamps_matrix(world)
        return force_vel(Minv, self._clamping_and_upper_bound_matrix(world), P_c, self.time_step)

    def get_vel_vel_jacobian(self, world) -> Float[torch.Tensor, "N N"]:
        if not self._uses_lcp_strategy():
            return self._assemble_per_group(
                world,
                lambda group: group.get_vel_vel_jacobian(world),
                lambda skeleton: torch.eye(skeleton.num_dofs, dtype=DTYPE)
                - self.time_step * skeleton.get_inv_mass_matrix() @ skeleton.get_vel_c_jacobian(),
            )
        Minv = self.get_inv_mass_matrix(world)
        P_c = self.get_projection_into_clamps_matrix(world)
        A_c_ub_E = self._clamping_and_upper_bound_matrix(world)
        force_vel_jacobian = force_vel(Minv, A_c_ub_E, P_c, self.time_step)
        vel_c = self.get_vel_c_jacobian(world)
        return vel_vel(Minv, A_c_ub_E, P_c, force_vel_jacobian, vel_c, self.time_step)

    def get_pos_vel_jacobian(self, world) -> Float[torch.Tensor, "N N"]:
        return self.get_vel_jacobian_wrt(world, WithRespectTo.POSITION)

    def get_vel_jacobian_wrt(self, world, wrt: WithRespectTo) -> Float[torch.Tensor, "N W"]:
        """
        Derivative of the next velocity with respect to positions or link
        inertial parameters, holding the constraint directions fixed.
        """
        dt = self.time_step
        with RestorableSnapshot(world):
            self._set_pre_step_state(world)

            tau = world.get_forces()
            C = world.get_coriolis_and_gravity_forces()
            Minv = world.get_inv_mass_matrix()
            d_minv_inner = self.get_jacobian_of_minv(world, tau - C, wrt)
            d_c = self.get_jacobian_of_c(world, wrt)
            inner_v = world.get_velocities() + dt * Minv @ (tau - C)

            d_p_c = self.get_jacobian_of_projection_into_clamps_matrix(world, inner_v, wrt)
            P_c = self.get_projection_into_clamps_matrix(world)
            A_c_ub_E = self._clamping_and_upper_bound_matrix(world)

            outer_tau = tau - C - A_c_ub_E @ (P_c @ inner_v)
            d_minv_outer = self.get_jacobian_of_minv(world, outer_tau, wrt)

        return vel_wrt(dt, Minv, A_c_ub_E, P_c, d_minv_outer, d_minv_inner, d_c, d_p_c)

    def get_jacobian_of_projection_into_clamps_matrix(
        self, world, v: torch.Tensor, wrt: WithRespectTo
    ) -> Float[torch.Tensor, "C W"]:
        """
        Derivative of P_c v with v held fixed. Only the mass matrix inside
        P_c depends on the differentiation target.
        """
        A_c = self.get_clamping_constraint_matrix(world)
        if A_c.shape[1] == 0:
            return torch.zeros((0, get_wrt_dim(world, wrt)), dtype=DTYPE)
        E = self.get_upper_bound_mapping_matrix()
        V_c = self.get_massed_clamping_constraint_matrix(world)
        V_ub = self.get_massed_upper_bound_constraint_matrix(world)
        A_c_ub_E = self._clamping_and_upper_bound_matrix(world)

        Q_inv = pseudo_inverse(A_c.T @ (V_c + V_ub @ E))
        bounce = self.get_bounce_diagonals()
        tau = A_c_ub_E @ (Q_inv @ (bounce * (A_c.T @ v)))
        minv_jacobian = self.get_jacobian_of_minv(world, tau, wrt)
        return -(1.0 / self.time_step) * Q_inv @ (A_c.T @ minv_jacobian)

    def finite_difference_jacobian_of_projection_into_clamps_matrix(
        self, world, v: torch.Tensor, wrt: WithRespectTo
    ) -> Float[torch.Tensor, "C W"]:
        return finite_difference(
            lambda: self.get_projection_into_clamps_matrix(world, True) @ v,
            get_wrt(world, wrt),
            lambda x: set_wrt(world, wrt, x),
            EPS_PROJECTION,
        )

    def get_jacobian_of_minv(self, world, tau: torch.Tensor, wrt: WithRespectTo) -> Float[torch.Tensor, "N W"]:
        """Derivative of M^-1 tau with tau held fixed."""
        return finite_difference(
            lambda: self.implicit_multiply_by_inv_mass_matrix(world, tau),
            get_wrt(world, wrt),
            lambda x: set_wrt(world, wrt, x),
            EPS_MINV,
        )

    def get_jacobian_of_c(self, world, wrt: WithRespectTo) -> Float[torch.Tensor, "N W"]:
        return finite_difference(
            lambda: world.get_coriolis_and_gravity_forces(),
            get_wrt(world, wrt),
            lambda x: set_wrt(world, wrt, x),
            EPS_CORIOLIS,
            central=False,
        )

    def get_pos_pos_jacobian(self, world) -> Float[torch.Tensor, "N N"]:
        return pos_pos(self.get_bouncing_constraint_matrix(world), self.get_restitution_diagonals(), self.num_dofs)

    def get_vel_pos_jacobian(self, world) -> Float[torch.Tensor, "N N"]:
        return self.time_step * self.get_pos_pos_jacobian(world)

    def get_analytical_next_v(self, world, for_finite_differencing: bool = False) -> Float[torch.Tensor, "N"]:
        """Next velocity predicted from the world's current state with the
        recorded constraint directions."""
        dt = self.time_step
        Minv = world.get_inv_mass_matrix()
        tau = world.get_forces()
        C = world.get_coriolis_and_gravity_forces()
        v = world.get_velocities()
        P_c = self.get_projection_into_clamps_matrix(world, for_finite_differencing)
        inner_v = v + dt * Minv @ (tau - C)
        return v + dt * Minv @ (tau - C - self._clamping_and_upper_bound_matrix(world) @ (P_c @ inner_v))

    # ====================== Backprop ======================

    def backprop(self, world, next_timestep_loss: LossGradient) -> LossGradient:
        """
        Pull the loss gradient on the post-step state back to the pre-step
        position, velocity and torques.
        """
        n = self.num_dofs
        next_pos = next_timestep_loss.loss_wrt_position
        next_vel = next_timestep_loss.loss_wrt_velocity
        assert next_pos.shape == (n,), f"Expected loss vector of size {n}"
        assert next_vel.shape == (n,), f"Expected loss vector of size {n}"

        loss_wrt_position = torch.zeros(n, dtype=DTYPE)
        loss_wrt_velocity = torch.zeros(n, dtype=DTYPE)
        loss_wrt_torque = torch.zeros(n, dtype=DTYPE)
        visited = set()

        with RestorableSnapshot(world):
            self._set_pre_step_state(world)

            for group in self.gradient_matrices:
                segments = []
                for name in group.skeleton_names:
                    assert name not in visited, f"Skeleton {name} visited twice"
                    visited.add(name)
                    start = self.skeleton_offsets[name]
                    segments.append((start, start + self.skeleton_dofs[name]))

                group_next = LossGradient(
                    loss_wrt_position=torch.cat([next_pos[a:b] for a, b in segments]),
                    loss_wrt_velocity=torch.cat([next_vel[a:b] for a, b in segments]),
                    loss_wrt_torque=torch.zeros(group.num_dofs, dtype=DTYPE),
                )
                group_this = group.backprop(world, group_next)

                cursor = 0
                for a, b in segments:
                    loss_wrt_position[a:b] = group_this.loss_wrt_position[cursor : cursor + b - a]
                    loss_wrt_velocity[a:b] = group_this.loss_wrt_velocity[cursor : cursor + b - a]
                    loss_wrt_torque[a:b] = group_this.loss_wrt_torque[cursor : cursor + b - a]
                    cursor += b - a

            # Unconstrained skeletons have closed form Jacobians
            for skeleton in world.skeletons:
                if skeleton.name in visited or not skeleton.is_mobile():
                    continue
                visited.add(skeleton.name)
                a = self.skeleton_offsets[skeleton.name]
                b = a + skeleton.num_dofs

                torque = self.time_step * skeleton.multiply_by_inv_mass_matrix(next_vel[a:b])
                position = next_pos[a:b] - skeleton.get_pos_c_jacobian().T @ torque
                velocity = next_vel[a:b] - skeleton.get_vel_c_jacobian().T @ torque + self.time_step * position

                loss_wrt_torque[a:b] = torque
                loss_wrt_position[a:b] = position
                loss_wrt_velocity[a:b] = velocity

        return LossGradient(loss_wrt_position, loss_wrt_velocity, loss_wrt_torque)

    # ====================== Finite differences ======================

    def _step_from(self, world, position, velocity, torques, steps: int = 1):
        world.set_positions(position)
        world.set_velocities(velocity)
        world.set_forces(torques)
        for _ in range(steps):
            world.step()

    def _finite_difference_state(
        self,
        world,
        perturb: Callable[[int, float], Tuple[torch.Tensor, torch.Tensor, torch.Tensor]],
        read: Callable[[], torch.Tensor],
        eps: float,
        subdivisions: int = 1,
    ) -> Float[torch.Tensor, "N N"]:
        """
        Forward differences of `read` after stepping from perturbed pre-step
        states, with gradient recording and penetration correction off.
        """
        solver = world.constraint_solver
        columns = []
        with RestorableSnapshot(world), solver.flags(
            gradient_enabled=False, penetration_correction_enabled=False
        ):
            world.time_step = self.time_step / subdivisions
            self._step_from(
                world, self.pre_step_position, self.pre_step_velocity, self.pre_step_torques, subdivisions
            )
            original = read()
            for i in range(self.num_dofs):
                self._step_from(world, *perturb(i, eps), steps=subdivisions)
                columns.append((read() - original) / eps)

        if not columns:
            return torch.zeros((self.num_dofs, 0), dtype=DTYPE)
        return torch.stack(columns, dim=1)

    def _perturbed(self, vector: torch.Tensor, i: int, eps: float) -> torch.Tensor:
        tweaked = vector.clone()
        tweaked[i] += eps
        return tweaked

    def finite_difference_vel_vel_jacobian(self, world) -> Float[torch.Tensor, "N N"]:
        return self._finite_difference_state(
            world,
            lambda i, eps: (
                self.pre_step_position,
                self._perturbed(self.pre_step_velocity, i, eps),
                self.pre_step_torques,
            ),
            world.get_velocities,
            EPS_VEL_VEL,
        )

    def finite_difference_force_vel_jacobian(self, world) -> Float[torch.Tensor, "N N"]:
        return self._finite_difference_state(
            world,
            lambda i, eps: (
                self.pre_step_position,
                self.pre_step_velocity,
                self._perturbed(self.pre_step_torques, i, eps),
            ),
            world.get_velocities,
            EPS_FORCE_VEL,
        )

    def finite_difference_pos_vel_jacobian(self, world) -> Float[torch.Tensor, "N N"]:
        """
        Forward differences of the next velocity over the pre-step positions.
        Every perturbed step is also compared with the analytical next
        velocity and disagreements are logged.
        """
        tolerance = self._tolerance()

        def perturb(i: int, eps: float):
            position = self._perturbed(self.pre_step_position, i, eps)
            world.set_positions(position)
            world.set_velocities(self.pre_step_velocity)
            world.set_forces(self.pre_step_torques)
            self._check_analytical_next_v(world, position, f"Column {i}", tolerance)
            return position, self.pre_step_velocity, self.pre_step_torques

        with RestorableSnapshot(world):
            self._set_pre_step_state(world)
            self._check_analytical_next_v(world, self.pre_step_position, "Unperturbed", tolerance)

        return self._finite_difference_state(world, perturb, world.get_velocities, EPS_POS_VEL)

    def _check_analytical_next_v(self, world, position, label: str, tolerance: float):
        expected = self.get_analytical_next_v(world, for_finite_differencing=True)
        with RestorableSnapshot(world), world.constraint_solver.flags(
            gradient_enabled=False, penetration_correction_enabled=False
        ):
            self._step_from(world, position, self.pre_step_velocity, self.pre_step_torques)
            actual = world.get_velocities()
        dt = self.time_step
        debug.mismatch(
            f"{label} analytical acceleration",
            (expected - self.pre_step_velocity) / dt,
            (actual - self.pre_step_velocity) / dt,
            tolerance,
        )

    def finite_difference_pos_pos_jacobian(
        self, world, subdivisions: int = DEFAULT_SUBDIVISIONS
    ) -> Float[torch.Tensor, "N N"]:
        # The perturbation must be much larger than the distance travelled in one substep
        return self._finite_difference_state(
            world,
            lambda i, eps: (
                self._perturbed(self.pre_step_position, i, eps),
                self.pre_step_velocity,
                self.pre_step_torques,
            ),
            world.get_positions,
            EPS_POS_POS / subdivisions,
            subdivisions,
        )

    def finite_difference_vel_pos_jacobian(
        self, world, subdivisions: int = DEFAULT_SUBDIVISIONS
    ) -> Float[torch.Tensor, "N N"]:
        return self._finite_difference_state(
            world,
            lambda i, eps: (
                self.pre_step_position,
                self._perturbed(self.pre_step_velocity, i, eps),
                self.pre_step_torques,
            ),
            world.get_positions,
            EPS_VEL_POS / subdivisions,
            subdivisions,
        )

    # ====================== Debugging ======================

    def debug_compare(self, world, debug_folder: Optional[str] = None) -> Dict[str, Tuple[bool, float]]:
        """
        Compare the analytical velocity Jacobians with finite differences.
        posVel is held to a looser tier, its analytical form already contains
        finite differences of M^-1 and C.

        Args:
            world: World the snapshot was taken from
            debug_folder: If given, a heatmap comparison of every Jacobian is saved there

        Returns:
            Mapping from Jacobian name to (within tolerance, max absolute error)
        """
        tolerances = {
            "vel_vel": self._tolerance(),
            "pos_vel": self._pos_vel_tolerance(),
            "force_vel": self._tolerance(),
        }
        pairs = {
            "vel_vel": (self.get_vel_vel_jacobian(world), self.finite_difference_vel_vel_jacobian(world)),
            "pos_vel": (self.get_pos_vel_jacobian(world), self.finite_difference_pos_vel_jacobian(world)),
            "force_vel": (self.get_force_vel_jacobian(world), self.finite_difference_force_vel_jacobian(world)),
        }

        debug.section("JACOBIAN COMPARISON")
        results = {}
        for name, (analytical, numerical) in pairs.items():
            error = (analytical - numerical).abs()
            max_error = error.max().item() if error.numel() > 0 else 0.0
            results[name] = (debug.mismatch(name, analytical, numerical, tolerances[name]), max_error)
            debug.print(f"{name}: max error {max_error:.3e}")
            if debug_folder is not None:
                from lcp_torch.visualization import visualize_jacobian_comparison

                visualize_jacobian_comparison(analytical, numerical, name, debug_folder)
        return results


def forward_pass(world, idempotent: bool = False) -> StepGradientSnapshot:
    """
    Step the world with gradient recording on and snapshot the step.

    Args:
        world: World to step
        idempotent: Restore the world to its pre-step state afterwards

    Returns:
        Snapshot of the step
    """
    pre_step_position = world.get_positions()
    pre_step_velocity = world.get_velocities()
    pre_step_torques = world.get_forces()

    restorable = RestorableSnapshot(world) if idempotent else nullcontext()
    with restorable:
        with world.constraint_solver.flags(gradient_enabled=True):
            world.step()
        return StepGradientSnapshot(world, pre_step_position, pre_step_velocity, pre_step_torques)
