import pytest
import torch
from lcp_torch.constants import DTYPE
from lcp_torch.lcp import effective_bounds
from lcp_torch.lcp import lcp_residual
from lcp_torch.lcp import solve_box_lcp

INF = float("inf")


def as_tensors(A, b, lo, hi, f_index):
    return (
        torch.tensor(A, dtype=DTYPE),
        torch.tensor(b, dtype=DTYPE),
        torch.tensor(lo, dtype=DTYPE),
        torch.tensor(hi, dtype=DTYPE),
        torch.tensor(f_index, dtype=torch.long),
    )


class TestBoxLCP:
    @pytest.mark.parametrize(
        "b, expected",
        [
            (-4.0, 2.0),  # interior
            (4.0, 0.0),  # separating, at lower bound
        ],
    )
    def test_single_row(self, b, expected):
        A, b, lo, hi, f_index = as_tensors([[2.0]], [b], [0.0], [INF], [-1])
        x = solve_box_lcp(A, b, lo, hi, f_index)
        assert torch.allclose(x, torch.tensor([expected], dtype=DTYPE))

    def test_upper_bound(self):
        A, b, lo, hi, f_index = as_tensors([[2.0]], [-4.0], [0.0], [1.0], [-1])
        x = solve_box_lcp(A, b, lo, hi, f_index)
        assert torch.allclose(x, torch.tensor([1.0], dtype=DTYPE))
        assert (A @ x + b).item() < 0.0

    def test_empty(self):
        A, b, lo, hi, f_index = as_tensors([], [], [], [], [])
        x = solve_box_lcp(A.reshape(0, 0), b, lo, hi, f_index)
        assert x.shape == (0,)

    def test_coupled_rows(self):
        A, b, lo, hi, f_index = as_tensors([[2.0, 1.0], [1.0, 2.0]], [-3.0, -3.0], [0.0, 0.0], [INF, INF], [-1, -1])
        x = solve_box_lcp(A, b, lo, hi, f_index)
        assert torch.allclose(x, torch.tensor([1.0, 1.0], dtype=DTYPE), atol=1e-12)
        assert lcp_residual(A, x, b, lo, hi, f_index) < 1e-12

    def test_friction_cone(self):
        # Unit mass on the ground: normal, then two tangents, sliding along the second tangent
        A, b, lo, hi, f_index = as_tensors(
            torch.eye(3).tolist(),
            [-0.01, 0.0, 1.0],
            [0.0, -0.3, -0.3],
            [INF, 0.3, 0.3],
            [-1, 0, 0],
        )
        x = solve_box_lcp(A, b, lo, hi, f_index)
        assert torch.allclose(x, torch.tensor([0.01, 0.0, -0.003], dtype=DTYPE), atol=1e-14)

        lo_eff, hi_eff = effective_bounds(x, lo, hi, f_index)
        assert torch.allclose(lo_eff, torch.tensor([0.0, -0.003, -0.003], dtype=DTYPE))
        assert torch.allclose(hi_eff, torch.tensor([INF, 0.003, 0.003], dtype=DTYPE))

    def test_random_spd(self):
        torch.random.manual_seed(0)
        for _ in range(5):
            L = torch.randn(4, 4, dtype=DTYPE)
            A = L @ L.T + 0.5 * torch.eye(4, dtype=DTYPE)
            b = torch.randn(4, dtype=DTYPE)
            lo = torch.zeros(4, dtype=DTYPE)
            hi = torch.full((4,), INF, dtype=DTYPE)
            f_index = torch.full((4,), -1, dtype=torch.long)
            x = solve_box_lcp(A, b, lo, hi, f_index, iterations=2000)
            w = A @ x + b
            assert (x >= -1e-10).all()
            assert (w >= -1e-8).all()
            assert torch.abs(x * w).max() < 1e-8
