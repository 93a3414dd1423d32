from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import replace
from typing import Dict
from typing import List

import torch
from lcp_torch.constants import DTYPE
from lcp_torch.constraints import Constraint
from lcp_torch.constraints import Contact
from lcp_torch.constraints import ContactConstraint
from lcp_torch.constraints import JointLimitConstraint
from lcp_torch.group_matrices import LCPConstraintGroupMatrices
from lcp_torch.lcp import solve_box_lcp


@dataclass(frozen=True)
class SolverFlags:
    # Record ConstraintGroupMatrices for every constrained group
    gradient_enabled: bool = True
    # Push penetrating contacts apart with a velocity bias
    penetration_correction_enabled: bool = True


class ConstraintSolver:
    def __init__(
        self,
        gradient_enabled: bool = True,
        penetration_correction_enabled: bool = True,
        erp: float = 0.2,
        penetration_allowance: float = 1e-4,
        bounce_threshold: float = 1e-3,
        group_matrices_cls=LCPConstraintGroupMatrices,
        lcp_iterations: int = 500,
    ):
        self._flags = SolverFlags(gradient_enabled, penetration_correction_enabled)
        self.erp = erp
        self.penetration_allowance = penetration_allowance
        self.bounce_threshold = bounce_threshold
        self.group_matrices_cls = group_matrices_cls
        self.lcp_iterations = lcp_iterations

    # ====================== Flags ======================

    @property
    def gradient_enabled(self) -> bool:
        return self._flags.gradient_enabled

    @property
    def penetration_correction_enabled(self) -> bool:
        return self._flags.penetration_correction_enabled

    def get_flags(self) -> SolverFlags:
        return self._flags

    def set_flags(self, flags: SolverFlags):
        self._flags = flags

    @contextmanager
    def flags(self, **overrides):
        """Temporarily override solver flags, restoring the previous ones on exit."""
        previous = self._flags
        self._flags = replace(previous, **overrides)
        try:
            yield self._flags
        finally:
            self._flags = previous

    # ====================== Constraints ======================

    def build_constraints(self, world, contacts: List[Contact]) -> List[Constraint]:
        constraints: List[Constraint] = [ContactConstraint(contact) for contact in contacts]
        for skeleton in world.skeletons:
            if not skeleton.is_mobile():
                continue
            for dof in skeleton.dofs:
                lower, upper = skeleton.bodies[dof.child_body].joint.position_limits
                q = skeleton.positions[dof.index_in_skeleton].item()
                if q <= lower:
                    constraints.append(JointLimitConstraint(skeleton.name, dof.index_in_skeleton, 1.0))
                elif q >= upper:
                    constraints.append(JointLimitConstraint(skeleton.name, dof.index_in_skeleton, -1.0))
        return constraints

    def group_constraints(self, world, constraints: List[Constraint]):
        """
        Split constraints into groups of skeletons coupled through them.

        Returns:
            List of (member skeleton names in world order, constraints)
        """
        mobile = {s.name for s in world.skeletons if s.is_mobile()}
        parent: Dict[str, str] = {name: name for name in mobile}

        def find(name: str) -> str:
            while parent[name] != name:
                parent[name] = parent[parent[name]]
                name = parent[name]
            return name

        relevant = []
        for constraint in constraints:
            members = [name for name in constraint.skeletons if name in mobile]
            if not members:
                continue
            relevant.append((constraint, members))
            for name in members[1:]:
                parent[find(name)] = find(members[0])

        groups: Dict[str, tuple] = {}
        for constraint, members in relevant:
            root = find(members[0])
            if root not in groups:
                groups[root] = ([], [])
            groups[root][1].append(constraint)

        order = [s.name for s in world.skeletons]
        result = []
        for root, (_, group_constraints) in groups.items():
            names = [name for name in order if name in mobile and find(name) == root]
            result.append((names, group_constraints))
        result.sort(key=lambda group: order.index(group[0][0]))
        return result

    # ====================== Solve ======================

    def solve(self, world, predicted: torch.Tensor, contacts: List[Contact]) -> torch.Tensor:
        """
        Resolve all constraints on the predicted (unconstrained) velocities.

        Args:
            world: World being stepped, still at the pre-step positions
            predicted: Unconstrained next velocity of every DOF, shape [N]
            contacts: Contacts found at the pre-step positions

        Returns:
            Constrained next velocity of every DOF, shape [N]
        """
        dt = world.time_step
        offsets = world.get_dof_offsets()
        velocities = predicted.clone()

        constraints = self.build_constraints(world, contacts)
        for names, group_constraints in self.group_constraints(world, constraints):
            skeletons = [world.get_skeleton(name) for name in names]
            segments = [(offsets[s.name], s.num_dofs) for s in skeletons]
            v_star = torch.cat([predicted[start : start + size] for start, size in segments])

            group = self.group_matrices_cls(world, names, dt)
            lo, hi, f_index, rows = [], [], [], []
            for constraint in group_constraints:
                self._update_contact_state(world, skeletons, constraint, v_star, dt)
                first_row = group.get_num_constraint_dim()
                for index in range(constraint.dimension):
                    group.measure_impulse(constraint, index, world)
                    row_lo, row_hi, row_f = constraint.bounds(index)
                    lo.append(row_lo)
                    hi.append(row_hi)
                    f_index.append(first_row + row_f if row_f >= 0 else -1)
                    rows.append((constraint, index))

            A = group.get_impulse_tests()  # [n, m]
            V = group.get_massed_impulse_tests()  # [n, m]
            approach = A.T @ v_star
            b = approach.clone()
            for row, (constraint, index) in enumerate(rows):
                if constraint.is_bouncing(index):
                    b[row] += constraint.get_restitution_coefficient(index) * approach[row]
                else:
                    b[row] -= constraint.get_penetration_correction_velocity(index)

            lo = torch.tensor(lo, dtype=DTYPE)
            hi = torch.tensor(hi, dtype=DTYPE)
            f_index = torch.tensor(f_index, dtype=torch.long)
            impulses = solve_box_lcp(A.T @ V, b, lo, hi, f_index, iterations=self.lcp_iterations)
            v_group = v_star + V @ impulses

            if self.gradient_enabled:
                group.finalize(impulses, hi, lo, f_index)
                for skeleton in skeletons:
                    skeleton.gradient_matrices = group

            cursor = 0
            for start, size in segments:
                velocities[start : start + size] = v_group[cursor : cursor + size]
                cursor += size
        return velocities

    def _update_contact_state(self, world, skeletons, constraint: Constraint, v_star: torch.Tensor, dt: float):
        """Decide bouncing and the penetration-correction velocity from the normal row."""
        constraint.bouncing = False
        constraint.penetration_velocity = 0.0
        if not constraint.is_contact:
            return
        normal = torch.cat([constraint.generalized_impulse(world, s, 0) for s in skeletons])
        approach = torch.dot(normal, v_star).item()
        restitution = constraint.get_restitution_coefficient(0)
        constraint.bouncing = restitution > 0.0 and approach < -self.bounce_threshold
        if not constraint.bouncing and self.penetration_correction_enabled:
            depth = constraint.contact.depth - self.penetration_allowance
            constraint.penetration_velocity = self.erp * max(depth, 0.0) / dt
