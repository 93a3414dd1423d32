import pytest
import torch
from conftest import bounce_world
from conftest import pendulum_contact_world
from conftest import platform_world
from conftest import sliding_world
from lcp_torch import group_matrices
from lcp_torch.constants import DTYPE
from lcp_torch.constraints import ContactConstraint
from lcp_torch.group_matrices import ConstraintMapping
from lcp_torch.group_matrices import LCPConstraintGroupMatrices
from lcp_torch.group_matrices import MassedConstraintGroupMatrices
from lcp_torch.restorable import RestorableSnapshot
from lcp_torch.snapshot import forward_pass

INF = float("inf")


def recorded_group(world):
    snapshot = forward_pass(world, idempotent=True)
    assert len(snapshot.gradient_matrices) == 1
    return snapshot.gradient_matrices[0]


class TestMeasurement:
    @pytest.fixture
    def setup_group(self):
        world = sliding_world()
        contacts = world.collision_detector.detect(world)
        assert len(contacts) == 1
        constraint = ContactConstraint(contacts[0])
        group = LCPConstraintGroupMatrices(world, ["ball"], world.time_step)
        return {"world": world, "constraint": constraint, "group": group}

    def measure_all(self, setup_group):
        for index in range(setup_group["constraint"].dimension):
            setup_group["group"].measure_impulse(setup_group["constraint"], index, setup_group["world"])

    def test_impulse_tests(self, setup_group):
        self.measure_all(setup_group)
        group = setup_group["group"]
        assert group.get_num_constraint_dim() == 3
        # Normal, then tangents -y and x
        expected = torch.tensor([[0.0, 0.0, 1.0], [0.0, -1.0, 0.0], [1.0, 0.0, 0.0]], dtype=DTYPE).T
        assert torch.allclose(group.get_impulse_tests(), expected)
        assert torch.allclose(group.get_massed_impulse_tests(), expected)

    def test_dimensions_out_of_order(self, setup_group):
        group, constraint, world = setup_group["group"], setup_group["constraint"], setup_group["world"]
        group.measure_impulse(constraint, 0, world)
        with pytest.raises(AssertionError):
            group.measure_impulse(constraint, 2, world)

    def test_incomplete_constraint(self, setup_group):
        group, constraint, world = setup_group["group"], setup_group["constraint"], setup_group["world"]
        group.measure_impulse(constraint, 0, world)
        with pytest.raises(AssertionError):
            group.measure_impulse(ContactConstraint(constraint.contact), 0, world)
        with pytest.raises(AssertionError):
            group.finalize(
                torch.zeros(1, dtype=DTYPE),
                torch.tensor([INF], dtype=DTYPE),
                torch.zeros(1, dtype=DTYPE),
                torch.tensor([-1]),
            )

    def test_constraint_measured_once(self, setup_group):
        self.measure_all(setup_group)
        with pytest.raises(AssertionError):
            setup_group["group"].measure_impulse(setup_group["constraint"], 0, setup_group["world"])

    def test_finalize_once(self, setup_group):
        self.measure_all(setup_group)
        group = setup_group["group"]
        with pytest.raises(AssertionError):
            group.get_clamping_constraint_matrix()

        args = (
            torch.tensor([1.0, 0.0, -0.3], dtype=DTYPE),
            torch.tensor([INF, 0.3, 0.3], dtype=DTYPE),
            torch.tensor([0.0, -0.3, -0.3], dtype=DTYPE),
            torch.tensor([-1, 0, 0]),
        )
        group.finalize(*args)
        with pytest.raises(AssertionError):
            group.finalize(*args)
        with pytest.raises(AssertionError):
            group.measure_impulse(setup_group["constraint"], 0, setup_group["world"])

    @pytest.mark.parametrize(
        "impulses, expected_mappings, expected_mapping_matrix",
        [
            ([1.0, 0.0, -0.3], [-1, -1, 0], [[-0.3, 0.0]]),
            ([1.0, 0.3, 0.0], [-1, 0, -1], [[0.3, 0.0]]),
            ([1.0, 0.1, 0.2], [-1, -1, -1], None),
            ([0.0, 0.0, 0.0], [-3, -3, -3], None),
            ([0.0, 0.3, 0.0], [-3, -2, -3], None),
        ],
    )
    def test_classification(self, setup_group, impulses, expected_mappings, expected_mapping_matrix):
        self.measure_all(setup_group)
        group = setup_group["group"]
        group.finalize(
            torch.tensor(impulses, dtype=DTYPE),
            torch.tensor([INF, 0.3, 0.3], dtype=DTYPE),
            torch.tensor([0.0, -0.3, -0.3], dtype=DTYPE),
            torch.tensor([-1, 0, 0]),
        )
        assert group.get_contact_constraint_mappings().tolist() == expected_mappings

        num_clamping = sum(1 for m in expected_mappings if m == ConstraintMapping.CLAMPING)
        num_upper_bound = sum(1 for m in expected_mappings if m >= 0)
        assert group.get_clamping_constraint_matrix().shape == (3, num_clamping)
        assert group.get_upper_bound_constraint_matrix().shape == (3, num_upper_bound)
        assert len(group.get_clamping_constraints()) == num_clamping
        assert len(group.get_upper_bound_constraints()) == num_upper_bound
        if expected_mapping_matrix is not None:
            assert torch.allclose(
                group.get_upper_bound_mapping_matrix(), torch.tensor(expected_mapping_matrix, dtype=DTYPE)
            )

    def test_clamping_and_upper_bound_matrix(self, setup_group):
        self.measure_all(setup_group)
        group = setup_group["group"]
        group.finalize(
            torch.tensor([1.0, 0.0, -0.3], dtype=DTYPE),
            torch.tensor([INF, 0.3, 0.3], dtype=DTYPE),
            torch.tensor([0.0, -0.3, -0.3], dtype=DTYPE),
            torch.tensor([-1, 0, 0]),
        )
        expected = torch.tensor([[-0.3, 0.0, 1.0], [0.0, -1.0, 0.0]], dtype=DTYPE).T
        assert torch.allclose(group.get_clamping_and_upper_bound_matrix(), expected)


class TestRecordedGroups:
    def test_sliding_classification(self):
        group = recorded_group(sliding_world())
        assert group.get_contact_constraint_mappings().tolist() == [
            ConstraintMapping.CLAMPING,
            ConstraintMapping.CLAMPING,
            0,
        ]
        assert torch.allclose(group.get_upper_bound_mapping_matrix(), torch.tensor([[-0.3, 0.0]], dtype=DTYPE))

    def test_sliding_vel_vel(self):
        world = sliding_world()
        group = recorded_group(world)
        # Pressing harder into the ground brakes harder
        expected = torch.tensor([[1.0, 0.0, 0.3], [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]], dtype=DTYPE)
        assert torch.allclose(group.get_vel_vel_jacobian(world), expected, atol=1e-10)

    @pytest.mark.parametrize("build", [platform_world, sliding_world, bounce_world])
    def test_analytical_next_v(self, build):
        world = build()
        snapshot = forward_pass(world, idempotent=True)
        group = snapshot.gradient_matrices[0]
        # Every DOF of these worlds belongs to the group
        assert group.get_num_dofs() == world.get_num_dofs()
        assert torch.allclose(group.get_analytical_next_v(world), snapshot.get_post_step_velocity(), atol=1e-10)

    @pytest.mark.parametrize("build", [platform_world, sliding_world, bounce_world])
    def test_massed_matches_lcp(self, build):
        world_lcp = build()
        world_massed = build(group_matrices_cls=MassedConstraintGroupMatrices)
        lcp = recorded_group(world_lcp)
        massed = recorded_group(world_massed)
        assert isinstance(lcp, LCPConstraintGroupMatrices)
        assert isinstance(massed, MassedConstraintGroupMatrices)

        assert torch.allclose(
            massed.get_force_vel_jacobian(world_massed), lcp.get_force_vel_jacobian(world_lcp), atol=1e-12
        )
        assert torch.allclose(
            massed.get_vel_vel_jacobian(world_massed), lcp.get_vel_vel_jacobian(world_lcp), atol=1e-10
        )

    def test_massed_projection_without_clamping(self):
        world = sliding_world(group_matrices_cls=MassedConstraintGroupMatrices)
        contacts = world.collision_detector.detect(world)
        constraint = ContactConstraint(contacts[0])
        group = MassedConstraintGroupMatrices(world, ["ball"], world.time_step)
        for index in range(constraint.dimension):
            group.measure_impulse(constraint, index, world)
        group.finalize(
            torch.zeros(3, dtype=DTYPE),
            torch.tensor([INF, 0.3, 0.3], dtype=DTYPE),
            torch.tensor([0.0, -0.3, -0.3], dtype=DTYPE),
            torch.tensor([-1, 0, 0]),
        )
        assert torch.equal(group.get_massed_projection_into_clamps_matrix(world), torch.zeros(3, 3, dtype=DTYPE))
        assert torch.allclose(group.get_force_vel_jacobian(world), world.time_step * torch.eye(3, dtype=DTYPE))
        assert torch.allclose(group.get_vel_vel_jacobian(world), torch.eye(3, dtype=DTYPE))

    def test_pos_pos_bounce(self):
        world = bounce_world()
        group = recorded_group(world)
        assert torch.allclose(group.get_restitution_diagonals(), torch.tensor([0.5], dtype=DTYPE))
        assert torch.allclose(group.get_bounce_diagonals(), torch.tensor([1.5], dtype=DTYPE))
        expected = torch.diag(torch.tensor([1.0, 1.0, -0.5], dtype=DTYPE))
        assert torch.allclose(group.get_pos_pos_jacobian(), expected, atol=1e-12)
        assert torch.allclose(group.get_vel_pos_jacobian(), world.time_step * expected, atol=1e-15)

    def test_pos_pos_without_bounce(self):
        group = recorded_group(platform_world())
        assert torch.equal(group.get_pos_pos_jacobian(), torch.eye(4, dtype=DTYPE))

    def test_pos_vel_step_size(self, monkeypatch):
        world = pendulum_contact_world()
        snapshot = forward_pass(world, idempotent=True)
        group = snapshot.gradient_matrices[0]
        expected = snapshot.get_pos_vel_jacobian(world)
        monkeypatch.setattr(group_matrices, "EPS_GROUP_POS_VEL", 1e-5)
        with RestorableSnapshot(world):
            snapshot._set_pre_step_state(world)
            assert torch.allclose(group.get_pos_vel_jacobian(world), expected, atol=1e-5)
