from dataclasses import dataclass
from dataclasses import field
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Union

import torch
from jaxtyping import Float
from torch.autograd.functional import jacobian
from lcp_torch.constants import DTYPE
from lcp_torch.constants import GRAVITY
from lcp_torch.transform import adjoint
from lcp_torch.transform import adjoint_transform
from lcp_torch.transform import invert_transform
from lcp_torch.transform import make_transform
from lcp_torch.transform import rotation_matrix
from lcp_torch.transform import skew
from lcp_torch.transform import transform_point
from lcp_torch.transform import translation_transform
from lcp_torch.utils import inertia_matrix

JOINT_TYPES = ("fixed", "revolute", "prismatic")


def _vector(value, size: int) -> torch.Tensor:
    if value is None:
        return torch.zeros(size, dtype=DTYPE)
    return torch.as_tensor(value, dtype=DTYPE).clone().reshape(size)


@dataclass
class Joint:
    joint_type: str = "fixed"
    axis: torch.Tensor = field(default_factory=lambda: torch.tensor([0.0, 0.0, 1.0], dtype=DTYPE))
    offset: torch.Tensor = field(default_factory=lambda: torch.eye(4, dtype=DTYPE))
    position_limits: Tuple[float, float] = (-float("inf"), float("inf"))

    @property
    def num_dofs(self) -> int:
        return 0 if self.joint_type == "fixed" else 1

    def local_twist(self) -> Float[torch.Tensor, "6"]:
        """Screw axis of the joint in the child body frame."""
        zeros = torch.zeros(3, dtype=DTYPE)
        if self.joint_type == "revolute":
            return torch.cat([self.axis, zeros])
        if self.joint_type == "prismatic":
            return torch.cat([zeros, self.axis])
        return torch.zeros(6, dtype=DTYPE)

    def motion(self, position: torch.Tensor) -> Float[torch.Tensor, "4 4"]:
        if self.joint_type == "revolute":
            return make_transform(rotation_matrix(self.axis, position), torch.zeros(3, dtype=DTYPE))
        return translation_transform(self.axis * position)


@dataclass
class Face:
    point: torch.Tensor
    normal: torch.Tensor


@dataclass
class Body:
    name: str
    parent: int
    joint: Joint
    mass: float
    com: torch.Tensor
    moi: torch.Tensor
    vertices: List[torch.Tensor]
    faces: List[Face]
    friction: float
    restitution: float
    index_in_tree: int
    dof_index: Optional[int] = None

    def spatial_inertia(self) -> Float[torch.Tensor, "6 6"]:
        """Spatial inertia about the body origin for angular-first twists."""
        c = skew(self.com)
        eye = torch.eye(3, dtype=DTYPE)
        top = torch.cat([inertia_matrix(self.moi) + self.mass * (c.T @ c), self.mass * c], dim=1)
        bottom = torch.cat([-self.mass * c, self.mass * eye], dim=1)
        return torch.cat([top, bottom], dim=0)


class Dof:
    """Handle on one scalar degree of freedom of a skeleton."""

    def __init__(self, skeleton: "Skeleton", index_in_skeleton: int, child_body: int):
        self.skeleton = skeleton
        self.index_in_skeleton = index_in_skeleton
        self.child_body = child_body

    @property
    def name(self) -> str:
        return f"{self.skeleton.name}:{self.skeleton.bodies[self.child_body].name}"

    def __repr__(self):
        return f"Dof({self.name})"


class Skeleton:
    def __init__(
        self,
        name: str,
        mobile: bool = True,
        base_transform: Optional[torch.Tensor] = None,
    ):
        self.name = name
        self.mobile = mobile
        self.base_transform = (
            torch.eye(4, dtype=DTYPE) if base_transform is None else base_transform.to(DTYPE)
        )
        self.gravity = torch.tensor(GRAVITY, dtype=DTYPE)

        self.bodies: List[Body] = []
        self.dofs: List[Dof] = []

        self.positions = torch.zeros(0, dtype=DTYPE)
        self.velocities = torch.zeros(0, dtype=DTYPE)
        self.forces = torch.zeros(0, dtype=DTYPE)
        self.external_forces = torch.zeros(0, dtype=DTYPE)

        # ConstraintGroupMatrices of the last step, None when unconstrained
        self.gradient_matrices = None

    def add_body(
        self,
        name: Optional[str] = None,
        parent: int = -1,
        joint_type: str = "fixed",
        axis: Sequence[float] = (0.0, 0.0, 1.0),
        offset: Optional[torch.Tensor] = None,
        mass: float = 0.0,
        com: Optional[Sequence[float]] = None,
        moi: Optional[Union[Sequence[float], torch.Tensor]] = None,
        vertices: Optional[Sequence[Sequence[float]]] = None,
        faces: Optional[Sequence[Tuple[Sequence[float], Sequence[float]]]] = None,
        friction: float = 1.0,
        restitution: float = 0.0,
        position_limits: Optional[Tuple[float, float]] = None,
        position: float = 0.0,
        velocity: float = 0.0,
    ) -> int:
        assert joint_type in JOINT_TYPES, f"Unknown joint type {joint_type}"
        assert parent < len(self.bodies), "Parent body must be added before its children"
        assert mass >= 0.0, "Body mass must be non-negative"

        axis = _vector(axis, 3)
        assert torch.norm(axis) > 0, "Joint axis must be non-zero"
        joint = Joint(
            joint_type=joint_type,
            axis=axis / torch.norm(axis),
            offset=torch.eye(4, dtype=DTYPE) if offset is None else offset.to(DTYPE),
            position_limits=position_limits or (-float("inf"), float("inf")),
        )

        body_idx = len(self.bodies)
        body = Body(
            name=name or f"body_{body_idx}",
            parent=parent,
            joint=joint,
            mass=float(mass),
            com=_vector(com, 3),
            moi=_vector(moi, 6),
            vertices=[_vector(v, 3) for v in (vertices or [])],
            faces=[Face(_vector(p, 3), _vector(n, 3) / torch.norm(_vector(n, 3))) for p, n in (faces or [])],
            friction=friction,
            restitution=restitution,
            index_in_tree=body_idx,
        )
        self.bodies.append(body)

        if joint.num_dofs > 0:
            body.dof_index = len(self.dofs)
            self.dofs.append(Dof(self, body.dof_index, body_idx))
            value = torch.tensor([position, velocity, 0.0], dtype=DTYPE)
            self.positions = torch.cat([self.positions, value[0:1]])
            self.velocities = torch.cat([self.velocities, value[1:2]])
            self.forces = torch.cat([self.forces, value[2:3]])
            self.external_forces = torch.cat([self.external_forces, value[2:3]])
        return body_idx

    # ====================== State ======================

    @property
    def num_dofs(self) -> int:
        return len(self.dofs)

    def is_mobile(self) -> bool:
        return self.mobile and self.num_dofs > 0

    def get_positions(self) -> torch.Tensor:
        return self.positions.clone()

    def set_positions(self, positions: torch.Tensor):
        assert positions.shape == (self.num_dofs,), "Wrong position vector size"
        self.positions = positions.detach().clone().to(DTYPE)

    def get_velocities(self) -> torch.Tensor:
        return self.velocities.clone()

    def set_velocities(self, velocities: torch.Tensor):
        assert velocities.shape == (self.num_dofs,), "Wrong velocity vector size"
        self.velocities = velocities.detach().clone().to(DTYPE)

    def get_forces(self) -> torch.Tensor:
        return self.forces.clone()

    def set_forces(self, forces: torch.Tensor):
        assert forces.shape == (self.num_dofs,), "Wrong force vector size"
        self.forces = forces.detach().clone().to(DTYPE)

    # ====================== Kinematics ======================

    def _body_transforms(self, q: torch.Tensor) -> List[torch.Tensor]:
        transforms = []
        for body in self.bodies:
            parent_T = self.base_transform if body.parent < 0 else transforms[body.parent]
            T = parent_T @ body.joint.offset
            if body.dof_index is not None:
                T = T @ body.joint.motion(q[body.dof_index])
            transforms.append(T)
        return transforms

    def _screw_axes(self, transforms: List[torch.Tensor]) -> Float[torch.Tensor, "6 n"]:
        axes = [
            adjoint_transform(transforms[dof.child_body], self.bodies[dof.child_body].joint.local_twist())
            for dof in self.dofs
        ]
        if not axes:
            return torch.zeros((6, 0), dtype=DTYPE)
        return torch.stack(axes, dim=1)

    def get_world_transform(self, body_index: int) -> Float[torch.Tensor, "4 4"]:
        return self._body_transforms(self.positions)[body_index]

    def get_world_screw_axis(self, dof_index: int) -> Float[torch.Tensor, "6"]:
        """World twist produced by a unit velocity of one DOF."""
        dof = self.dofs[dof_index]
        T = self.get_world_transform(dof.child_body)
        return adjoint_transform(T, self.bodies[dof.child_body].joint.local_twist())

    def get_world_point(self, body_index: int, local_point: torch.Tensor) -> torch.Tensor:
        return transform_point(self.get_world_transform(body_index), local_point)

    def is_ancestor(self, ancestor: int, body_index: int) -> bool:
        """True if `ancestor` is `body_index` or one of its parents."""
        while body_index >= 0:
            if body_index == ancestor:
                return True
            body_index = self.bodies[body_index].parent
        return False

    def dof_moves_body(self, dof_index: int, body_index: int) -> bool:
        return self.is_ancestor(self.dofs[dof_index].child_body, body_index)

    # ====================== Dynamics ======================

    def _mass_matrix(self, q: torch.Tensor) -> Float[torch.Tensor, "n n"]:
        n = self.num_dofs
        transforms = self._body_transforms(q)
        axes = self._screw_axes(transforms)  # [6, n]
        M = torch.zeros((n, n), dtype=DTYPE)
        for b, body in enumerate(self.bodies):
            mask = torch.tensor(
                [1.0 if self.dof_moves_body(d, b) else 0.0 for d in range(n)], dtype=DTYPE
            )
            J = axes * mask  # [6, n]
            Ad_inv = adjoint(invert_transform(transforms[b]))
            G = Ad_inv.T @ body.spatial_inertia() @ Ad_inv
            M = M + J.T @ G @ J
        return M

    def _potential_energy(self, q: torch.Tensor) -> torch.Tensor:
        transforms = self._body_transforms(q)
        energy = torch.zeros((), dtype=DTYPE)
        for b, body in enumerate(self.bodies):
            energy = energy - body.mass * torch.dot(self.gravity, transform_point(transforms[b], body.com))
        return energy

    def _coriolis_and_gravity(self, q: torch.Tensor, v: torch.Tensor) -> torch.Tensor:
        def momentum(q_):
            return self._mass_matrix(q_) @ v

        def kinetic_energy(q_):
            return 0.5 * torch.dot(v, self._mass_matrix(q_) @ v)

        dMv_dq = jacobian(momentum, q, create_graph=True)  # [n, n]
        dT_dq = jacobian(kinetic_energy, q, create_graph=True)  # [n]
        dU_dq = jacobian(self._potential_energy, q, create_graph=True)  # [n]
        return dMv_dq @ v - dT_dq + dU_dq - self.external_forces

    def get_mass_matrix(self) -> Float[torch.Tensor, "n n"]:
        return self._mass_matrix(self.positions).detach()

    def get_inv_mass_matrix(self) -> Float[torch.Tensor, "n n"]:
        if self.num_dofs == 0:
            return torch.zeros((0, 0), dtype=DTYPE)
        return torch.linalg.inv(self.get_mass_matrix())

    def multiply_by_mass_matrix(self, x: torch.Tensor) -> torch.Tensor:
        assert x.shape[0] == self.num_dofs, "Wrong vector size"
        return self.get_mass_matrix() @ x

    def multiply_by_inv_mass_matrix(self, x: torch.Tensor) -> torch.Tensor:
        assert x.shape[0] == self.num_dofs, "Wrong vector size"
        if self.num_dofs == 0:
            return x.clone()
        return torch.linalg.solve(self.get_mass_matrix(), x)

    def get_coriolis_and_gravity_forces(self) -> Float[torch.Tensor, "n"]:
        """Coriolis, gravity and (negated) external generalized forces, C(q, v)."""
        if self.num_dofs == 0:
            return torch.zeros(0, dtype=DTYPE)
        return self._coriolis_and_gravity(self.positions, self.velocities).detach()

    def get_pos_c_jacobian(self) -> Float[torch.Tensor, "n n"]:
        if self.num_dofs == 0:
            return torch.zeros((0, 0), dtype=DTYPE)
        v = self.velocities
        return jacobian(lambda q_: self._coriolis_and_gravity(q_, v), self.positions).detach()

    def get_vel_c_jacobian(self) -> Float[torch.Tensor, "n n"]:
        if self.num_dofs == 0:
            return torch.zeros((0, 0), dtype=DTYPE)
        q = self.positions
        return jacobian(lambda v_: self._coriolis_and_gravity(q, v_), self.velocities).detach()

    # ====================== Link parameters ======================

    def get_link_masses(self) -> torch.Tensor:
        return torch.tensor([body.mass for body in self.bodies], dtype=DTYPE)

    def set_link_masses(self, masses: torch.Tensor):
        assert masses.shape == (len(self.bodies),), "Wrong link mass vector size"
        for body, mass in zip(self.bodies, masses):
            body.mass = float(mass)

    def get_link_coms(self) -> torch.Tensor:
        if not self.bodies:
            return torch.zeros(0, dtype=DTYPE)
        return torch.cat([body.com for body in self.bodies])

    def set_link_coms(self, coms: torch.Tensor):
        assert coms.shape == (3 * len(self.bodies),), "Wrong link COM vector size"
        for i, body in enumerate(self.bodies):
            body.com = coms[3 * i : 3 * i + 3].detach().clone().to(DTYPE)

    def get_link_mois(self) -> torch.Tensor:
        if not self.bodies:
            return torch.zeros(0, dtype=DTYPE)
        return torch.cat([body.moi for body in self.bodies])

    def set_link_mois(self, mois: torch.Tensor):
        assert mois.shape == (6 * len(self.bodies),), "Wrong link MOI vector size"
        for i, body in enumerate(self.bodies):
            body.moi = mois[6 * i : 6 * i + 6].detach().clone().to(DTYPE)


class World:
    def __init__(
        self,
        time_step: float = 1e-3,
        gravity: Sequence[float] = GRAVITY,
        collision_detector=None,
        constraint_solver=None,
        integrator=None,
    ):
        # Imported here, the solver stack builds on top of the model
        from lcp_torch.collision import CollisionDetector
        from lcp_torch.integrator import SemiImplicitEulerIntegrator
        from lcp_torch.solver import ConstraintSolver

        self.time_step = time_step
        self.gravity = torch.tensor(gravity, dtype=DTYPE)
        self.skeletons: List[Skeleton] = []
        self.collision_detector = collision_detector or CollisionDetector()
        self.constraint_solver = constraint_solver or ConstraintSolver()
        self.integrator = integrator or SemiImplicitEulerIntegrator()

    # ====================== Skeletons ======================

    def add_skeleton(self, skeleton: Skeleton) -> Skeleton:
        assert all(s.name != skeleton.name for s in self.skeletons), (
            f"Skeleton name {skeleton.name} already used"
        )
        skeleton.gravity = self.gravity
        self.skeletons.append(skeleton)
        return skeleton

    def get_skeleton(self, key: Union[str, int]) -> Skeleton:
        if isinstance(key, int):
            return self.skeletons[key]
        for skeleton in self.skeletons:
            if skeleton.name == key:
                return skeleton
        raise KeyError(f"No skeleton named {key}")

    def get_num_dofs(self) -> int:
        return sum(s.num_dofs for s in self.skeletons)

    def get_dofs(self) -> List[Dof]:
        return [dof for skeleton in self.skeletons for dof in skeleton.dofs]

    def get_dof_offsets(self) -> dict:
        offsets = {}
        cursor = 0
        for skeleton in self.skeletons:
            offsets[skeleton.name] = cursor
            cursor += skeleton.num_dofs
        return offsets

    # ====================== State ======================

    def _concat(self, getter) -> torch.Tensor:
        parts = [getter(s) for s in self.skeletons]
        if not parts:
            return torch.zeros(0, dtype=DTYPE)
        return torch.cat(parts)

    def _scatter(self, values: torch.Tensor, setter, sizer=lambda s: s.num_dofs):
        total = sum(sizer(s) for s in self.skeletons)
        assert values.shape == (total,), f"Expected vector of size {total}, got {tuple(values.shape)}"
        cursor = 0
        for skeleton in self.skeletons:
            size = sizer(skeleton)
            setter(skeleton, values[cursor : cursor + size])
            cursor += size

    def get_positions(self) -> torch.Tensor:
        return self._concat(Skeleton.get_positions)

    def set_positions(self, positions: torch.Tensor):
        self._scatter(positions, Skeleton.set_positions)

    def get_velocities(self) -> torch.Tensor:
        return self._concat(Skeleton.get_velocities)

    def set_velocities(self, velocities: torch.Tensor):
        self._scatter(velocities, Skeleton.set_velocities)

    def get_forces(self) -> torch.Tensor:
        return self._concat(Skeleton.get_forces)

    def set_forces(self, forces: torch.Tensor):
        self._scatter(forces, Skeleton.set_forces)

    def get_mass_matrix(self) -> torch.Tensor:
        return torch.block_diag(*[s.get_mass_matrix() for s in self.skeletons])

    def get_inv_mass_matrix(self) -> torch.Tensor:
        return torch.block_diag(*[s.get_inv_mass_matrix() for s in self.skeletons])

    def get_coriolis_and_gravity_forces(self) -> torch.Tensor:
        return self._concat(Skeleton.get_coriolis_and_gravity_forces)

    # ====================== Link parameters ======================
    # Only mobile skeletons take part in parameter fitting

    def get_link_masses(self) -> torch.Tensor:
        return self._concat(lambda s: s.get_link_masses() if s.is_mobile() else torch.zeros(0, dtype=DTYPE))

    def set_link_masses(self, masses: torch.Tensor):
        self._scatter(
            masses,
            lambda s, x: s.set_link_masses(x) if s.is_mobile() else None,
            lambda s: len(s.bodies) if s.is_mobile() else 0,
        )

    def get_link_coms(self) -> torch.Tensor:
        return self._concat(lambda s: s.get_link_coms() if s.is_mobile() else torch.zeros(0, dtype=DTYPE))

    def set_link_coms(self, coms: torch.Tensor):
        self._scatter(
            coms,
            lambda s, x: s.set_link_coms(x) if s.is_mobile() else None,
            lambda s: 3 * len(s.bodies) if s.is_mobile() else 0,
        )

    def get_link_mois(self) -> torch.Tensor:
        return self._concat(lambda s: s.get_link_mois() if s.is_mobile() else torch.zeros(0, dtype=DTYPE))

    def set_link_mois(self, mois: torch.Tensor):
        self._scatter(
            mois,
            lambda s, x: s.set_link_mois(x) if s.is_mobile() else None,
            lambda s: 6 * len(s.bodies) if s.is_mobile() else 0,
        )

    # ====================== Simulation ======================

    def step(self):
        """Advance one time step with the constraint solve on the predicted velocity."""
        dt = self.time_step
        for skeleton in self.skeletons:
            skeleton.gradient_matrices = None

        predicted = self._concat(lambda s: self.integrator.predict_velocity(s, dt))
        contacts = self.collision_detector.detect(self)
        velocities = self.constraint_solver.solve(self, predicted, contacts)

        positions = self.integrator.integrate_positions(self.get_positions(), velocities, dt)
        self.set_velocities(velocities)
        self.set_positions(positions)
