import math

import pytest
import torch
from lcp_torch.constants import DTYPE
from lcp_torch.model import Skeleton
from lcp_torch.model import World
from lcp_torch.solver import ConstraintSolver
from lcp_torch.transform import translation_transform


def point_mass(name, mass=1.0, position=(0.0, 0.0, 0.0), velocity=(0.0, 0.0, 0.0), friction=1.0, restitution=0.0):
    """Point mass on three prismatic joints (x, y, z) carrying one vertex."""
    skeleton = Skeleton(name)
    x = skeleton.add_body("x", joint_type="prismatic", axis=(1, 0, 0), position=position[0], velocity=velocity[0])
    y = skeleton.add_body(
        "y", parent=x, joint_type="prismatic", axis=(0, 1, 0), position=position[1], velocity=velocity[1]
    )
    skeleton.add_body(
        "z",
        parent=y,
        joint_type="prismatic",
        axis=(0, 0, 1),
        mass=mass,
        vertices=[(0.0, 0.0, 0.0)],
        friction=friction,
        restitution=restitution,
        position=position[2],
        velocity=velocity[2],
    )
    return skeleton


def ground(friction=1.0, restitution=0.0):
    skeleton = Skeleton("ground", mobile=False)
    skeleton.add_body("ground", faces=[((0.0, 0.0, 0.0), (0.0, 0.0, 1.0))], friction=friction, restitution=restitution)
    return skeleton


def make_world(*skeletons, group_matrices_cls=None, gravity=(0.0, 0.0, -9.81)):
    solver = ConstraintSolver() if group_matrices_cls is None else ConstraintSolver(group_matrices_cls=group_matrices_cls)
    world = World(time_step=1e-3, gravity=gravity, constraint_solver=solver)
    for skeleton in skeletons:
        world.add_skeleton(skeleton)
    return world


def free_mass_world(**kwargs):
    """A single body falling freely high above the ground."""
    return make_world(
        ground(),
        point_mass("ball", mass=2.0, position=(0.0, 0.0, 1.0), velocity=(1.0, 0.0, 0.0)),
        **kwargs,
    )


def platform_world(**kwargs):
    """Frictionless ball landing on a platform that slides along z."""
    platform = Skeleton("platform")
    platform.add_body(
        "platform",
        joint_type="prismatic",
        axis=(0, 0, 1),
        mass=2.0,
        faces=[((0.0, 0.0, 0.0), (0.0, 0.0, 1.0))],
        friction=0.0,
    )
    ball = point_mass("ball", position=(0.2, -0.1, 0.0), velocity=(0.3, 0.1, -0.5), friction=0.0)
    return make_world(ball, platform, **kwargs)


def sliding_world(**kwargs):
    """Ball sliding along x on the ground, friction saturated along the motion."""
    return make_world(
        ground(),
        point_mass("ball", position=(0.0, 0.0, 0.0), velocity=(1.0, 0.0, 0.0), friction=0.3),
        **kwargs,
    )


def bounce_world(**kwargs):
    """Frictionless ball hitting the ground with restitution 0.5."""
    return make_world(
        ground(friction=0.0, restitution=1.0),
        point_mass("ball", velocity=(0.0, 0.0, -1.0), friction=0.0, restitution=0.5),
        **kwargs,
    )


def pendulum_contact_world(**kwargs):
    """Pendulum of length 1 hinged at z = 0.5, its tip pressed into the ground at 60 degrees."""
    pendulum = Skeleton("pendulum", base_transform=translation_transform(torch.tensor([0.0, 0.0, 0.5], dtype=DTYPE)))
    pendulum.add_body(
        "arm",
        joint_type="revolute",
        axis=(0, 1, 0),
        mass=1.0,
        com=(0.0, 0.0, -1.0),
        vertices=[(0.0, 0.0, -1.0)],
        friction=0.0,
        position=math.pi / 3,
        velocity=-0.5,
    )
    return make_world(ground(friction=0.0), pendulum, **kwargs)


def plate_world(**kwargs):
    """Ball dropping onto a plate hinged about y at the origin."""
    plate = Skeleton("plate")
    plate.add_body(
        "plate",
        joint_type="revolute",
        axis=(0, 1, 0),
        mass=1.0,
        moi=(0.1, 0.1, 0.1, 0.0, 0.0, 0.0),
        faces=[((0.0, 0.0, 0.0), (0.0, 0.0, 1.0))],
        friction=0.0,
    )
    ball = point_mass("ball", position=(0.5, 0.0, 0.0), velocity=(0.0, 0.0, -0.5), friction=0.0)
    return make_world(plate, ball, **kwargs)


def double_pendulum_world(**kwargs):
    """Unconstrained planar double pendulum, Coriolis terms included."""
    arm = Skeleton("arm")
    upper = arm.add_body(
        "upper",
        joint_type="revolute",
        axis=(0, 1, 0),
        mass=1.0,
        com=(0.0, 0.0, -0.5),
        moi=(0.01, 0.01, 0.01, 0.0, 0.0, 0.0),
        position=0.4,
        velocity=0.5,
    )
    arm.add_body(
        "lower",
        parent=upper,
        joint_type="revolute",
        axis=(0, 1, 0),
        offset=translation_transform(torch.tensor([0.0, 0.0, -1.0], dtype=DTYPE)),
        mass=0.5,
        com=(0.0, 0.0, -0.5),
        moi=(0.01, 0.01, 0.01, 0.0, 0.0, 0.0),
        position=-0.3,
        velocity=-0.2,
    )
    return make_world(arm, **kwargs)


def partitioned_world(**kwargs):
    """
    Two independent constraint groups and one free skeleton:
    a ball resting on the ground, a ball flying, a ball pushed into a wall
    that slides along x.
    """
    wall = Skeleton("wall")
    wall.add_body(
        "wall",
        joint_type="prismatic",
        axis=(1, 0, 0),
        mass=2.0,
        faces=[((0.0, 0.0, 0.0), (1.0, 0.0, 0.0))],
        friction=0.0,
        position=-3.0,
    )
    return make_world(
        ground(),
        point_mass("resting", velocity=(0.0, 0.0, -0.1), friction=0.5),
        point_mass("flying", position=(3.0, 0.0, 2.0), velocity=(0.0, 1.0, 0.0)),
        wall,
        point_mass("stacked", position=(-3.0, 0.0, 1.0), velocity=(-0.5, 0.0, 0.0), friction=0.0),
        **kwargs,
    )


@pytest.fixture
def scenarios():
    return {
        "free": free_mass_world,
        "platform": platform_world,
        "sliding": sliding_world,
        "bounce": bounce_world,
        "pendulum_contact": pendulum_contact_world,
        "plate": plate_world,
        "double_pendulum": double_pendulum_world,
        "partitioned": partitioned_world,
    }
