import numpy as np
import pytest
import torch
from lcp_torch.constants import DTYPE
from lcp_torch.transform import ad
from lcp_torch.transform import adjoint
from lcp_torch.transform import adjoint_transform
from lcp_torch.transform import exp_map
from lcp_torch.transform import gradient_wrt_theta
from lcp_torch.transform import gradient_wrt_theta_pure_rotation
from lcp_torch.transform import invert_transform
from lcp_torch.transform import rotation_matrix
from lcp_torch.transform import skew
from lcp_torch.transform import transform_point
from lcp_torch.transform import transform_vector
from scipy.linalg import expm
from scipy.spatial.transform import Rotation


def twist_hat(twist: torch.Tensor) -> np.ndarray:
    hat = np.zeros((4, 4))
    hat[:3, :3] = skew(twist[:3]).numpy()
    hat[:3, 3] = twist[3:].numpy()
    return hat


class TestTransform:
    @pytest.fixture
    def setup_twists(self):
        torch.random.manual_seed(0)
        twists = torch.randn(10, 6, dtype=DTYPE)
        points = torch.randn(10, 3, dtype=DTYPE)
        return {"twists": twists, "points": points}

    def test_skew(self):
        v = torch.tensor([1.0, -2.0, 0.5], dtype=DTYPE)
        u = torch.tensor([0.3, 0.7, -1.1], dtype=DTYPE)
        assert torch.allclose(skew(v) @ u, torch.linalg.cross(v, u))
        assert torch.allclose(skew(v).T, -skew(v))

    @pytest.mark.parametrize("angle", [0.0, 0.3, -1.2, 3.0])
    def test_rotation_matrix(self, angle):
        axis = torch.tensor([1.0, 2.0, -0.5], dtype=DTYPE)
        axis = axis / torch.norm(axis)
        R = rotation_matrix(axis, torch.tensor(angle, dtype=DTYPE))
        expected = Rotation.from_rotvec((axis * angle).numpy()).as_matrix()
        assert np.allclose(R.numpy(), expected, atol=1e-12)

    def test_exp_map(self, setup_twists):
        for twist in setup_twists["twists"]:
            T = exp_map(twist)
            assert np.allclose(T.numpy(), expm(twist_hat(twist)), atol=1e-10), f"exp_map mismatch for {twist}"

    def test_exp_map_pure_translation(self):
        twist = torch.tensor([0.0, 0.0, 0.0, 1.0, -2.0, 3.0], dtype=DTYPE)
        T = exp_map(twist)
        assert torch.allclose(T[:3, :3], torch.eye(3, dtype=DTYPE))
        assert torch.allclose(T[:3, 3], twist[3:])

    def test_invert_transform(self, setup_twists):
        for twist in setup_twists["twists"]:
            T = exp_map(twist)
            assert torch.allclose(invert_transform(T) @ T, torch.eye(4, dtype=DTYPE), atol=1e-12)

    def test_adjoint_transform_matches_matrix(self, setup_twists):
        twists = setup_twists["twists"]
        for i in range(len(twists) - 1):
            T = exp_map(twists[i])
            assert torch.allclose(adjoint(T) @ twists[i + 1], adjoint_transform(T, twists[i + 1]), atol=1e-12)

    def test_adjoint_transform_conjugates_hat(self, setup_twists):
        twists = setup_twists["twists"]
        T = exp_map(twists[0]).numpy()
        moved = adjoint_transform(torch.from_numpy(T), twists[1])
        expected = T @ twist_hat(twists[1]) @ np.linalg.inv(T)
        assert np.allclose(twist_hat(moved), expected, atol=1e-10)

    def test_ad_is_derivative_of_adjoint(self, setup_twists):
        twists = setup_twists["twists"]
        eps = 1e-6
        for i in range(len(twists) - 1):
            rotate, axis = twists[i], twists[i + 1]
            plus = adjoint_transform(exp_map(rotate * eps), axis)
            minus = adjoint_transform(exp_map(-rotate * eps), axis)
            numerical = (plus - minus) / (2 * eps)
            assert torch.allclose(ad(rotate, axis), numerical, atol=1e-8)

    def test_gradient_wrt_theta(self, setup_twists):
        eps = 1e-6
        for twist, point in zip(setup_twists["twists"], setup_twists["points"]):
            plus = transform_point(exp_map(twist * eps), point)
            minus = transform_point(exp_map(-twist * eps), point)
            numerical = (plus - minus) / (2 * eps)
            assert torch.allclose(gradient_wrt_theta(twist, point), numerical, atol=1e-8)

    def test_gradient_wrt_theta_at_offset(self, setup_twists):
        eps = 1e-6
        theta = 0.7
        for twist, point in zip(setup_twists["twists"], setup_twists["points"]):
            plus = transform_point(exp_map(twist * (theta + eps)), point)
            minus = transform_point(exp_map(twist * (theta - eps)), point)
            numerical = (plus - minus) / (2 * eps)
            assert torch.allclose(gradient_wrt_theta(twist, point, theta), numerical, atol=1e-7)

    def test_gradient_wrt_theta_pure_rotation(self, setup_twists):
        eps = 1e-6
        for twist, vector in zip(setup_twists["twists"], setup_twists["points"]):
            plus = transform_vector(exp_map(twist * eps), vector)
            minus = transform_vector(exp_map(-twist * eps), vector)
            numerical = (plus - minus) / (2 * eps)
            analytical = gradient_wrt_theta_pure_rotation(twist[:3], vector)
            assert torch.allclose(analytical, numerical, atol=1e-8)
