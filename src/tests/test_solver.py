import pytest
import torch
from conftest import bounce_world
from conftest import partitioned_world
from conftest import platform_world
from conftest import sliding_world
from lcp_torch.constants import DTYPE
from lcp_torch.constraints import JointLimitConstraint
from lcp_torch.model import Skeleton
from lcp_torch.solver import SolverFlags


class TestSolverFlags:
    def test_defaults(self):
        world = platform_world()
        assert world.constraint_solver.get_flags() == SolverFlags(True, True)

    def test_scoped_override(self):
        solver = platform_world().constraint_solver
        with solver.flags(gradient_enabled=False) as flags:
            assert flags == SolverFlags(gradient_enabled=False, penetration_correction_enabled=True)
            assert not solver.gradient_enabled
            with solver.flags(penetration_correction_enabled=False):
                assert not solver.gradient_enabled
                assert not solver.penetration_correction_enabled
            assert solver.penetration_correction_enabled
        assert solver.gradient_enabled

    def test_scoped_override_restored_on_error(self):
        solver = platform_world().constraint_solver
        with pytest.raises(RuntimeError):
            with solver.flags(gradient_enabled=False, penetration_correction_enabled=False):
                raise RuntimeError("probe failed")
        assert solver.get_flags() == SolverFlags(True, True)

    def test_gradient_disabled_records_nothing(self):
        world = platform_world()
        with world.constraint_solver.flags(gradient_enabled=False):
            world.step()
        assert all(s.gradient_matrices is None for s in world.skeletons)


class TestConstraintSolver:
    def test_platform_impulse(self):
        world = platform_world()
        world.step()
        ball, platform = world.get_skeleton("ball"), world.get_skeleton("platform")
        # Plastic impact: both move together along z
        assert torch.allclose(ball.get_velocities()[2], platform.get_velocities()[0], atol=1e-12)
        assert torch.allclose(ball.get_velocities()[:2], torch.tensor([0.3, 0.1], dtype=DTYPE))

        group = ball.gradient_matrices
        assert group is platform.gradient_matrices
        assert group.get_skeletons() == ["ball", "platform"]
        assert torch.allclose(group.get_contact_constraint_impulses(), torch.tensor([0.5 / 1.5], dtype=DTYPE))

    def test_sliding_friction(self):
        world = sliding_world()
        world.step()
        dt = world.time_step
        v = world.get_velocities()
        assert torch.allclose(v, torch.tensor([1.0 - 0.3 * 9.81 * dt, 0.0, 0.0], dtype=DTYPE), atol=1e-12)

    def test_bounce(self):
        world = bounce_world()
        world.step()
        dt = world.time_step
        approach = -1.0 - 9.81 * dt
        assert torch.allclose(world.get_velocities()[2], torch.tensor(-0.5 * approach, dtype=DTYPE))

    def test_penetration_correction(self):
        world = sliding_world()
        world.get_skeleton("ball").set_positions(torch.tensor([0.0, 0.0, -0.01], dtype=DTYPE))
        solver = world.constraint_solver
        with solver.flags(penetration_correction_enabled=False):
            world.step()
        uncorrected = world.get_velocities()[2].item()

        world = sliding_world()
        world.get_skeleton("ball").set_positions(torch.tensor([0.0, 0.0, -0.01], dtype=DTYPE))
        world.step()
        corrected = world.get_velocities()[2].item()
        expected = solver.erp * (0.01 - solver.penetration_allowance) / world.time_step
        assert abs(uncorrected) < 1e-12
        assert corrected == pytest.approx(expected)

    def test_group_partition(self):
        world = partitioned_world()
        contacts = world.collision_detector.detect(world)
        solver = world.constraint_solver
        groups = solver.group_constraints(world, solver.build_constraints(world, contacts))
        assert [names for names, _ in groups] == [["resting"], ["wall", "stacked"]]
        assert [len(constraints) for _, constraints in groups] == [1, 1]

    def test_joint_limit(self):
        skeleton = Skeleton("slider")
        skeleton.add_body(
            "slider", joint_type="prismatic", axis=(1, 0, 0), mass=1.0, position_limits=(0.0, 1.0), position=1.0
        )
        world = platform_world()
        world.add_skeleton(skeleton)
        constraints = world.constraint_solver.build_constraints(world, [])
        limits = [c for c in constraints if isinstance(c, JointLimitConstraint)]
        assert len(limits) == 1
        assert limits[0].sign == -1.0
        assert torch.allclose(
            limits[0].generalized_impulse(world, skeleton, 0), torch.tensor([-1.0], dtype=DTYPE)
        )
