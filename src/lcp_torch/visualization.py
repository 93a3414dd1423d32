import os

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import torch
from jaxtyping import Float


def visualize_jacobian_comparison(
    J_ana: Float[torch.Tensor, "N M"],
    J_num: Float[torch.Tensor, "N M"],
    name: str,
    debug_folder: str,
    threshold: float = 1e-6,
) -> str:
    """
    Visualizes the comparison between the analytical and numerical Jacobians.

    Args:
        J_ana: Analytical Jacobian [N, M].
        J_num: Numerical Jacobian [N, M].
        name: Name of the Jacobian, used in the file name.
        debug_folder: Folder the figure is saved to.
        threshold: Differences below this value are not highlighted.

    Returns:
        Path of the saved figure.
    """
    J_ana_np = J_ana.detach().cpu().numpy()
    J_num_np = J_num.detach().cpu().numpy()

    # Compute absolute difference
    diff = np.abs(J_ana_np - J_num_np)

    fig, axes = plt.subplots(1, 3, figsize=(18, 6))

    im0 = axes[0].imshow(J_ana_np, aspect="auto", cmap="viridis", interpolation="nearest")
    axes[0].set_title(f"Analytical {name}")
    plt.colorbar(im0, ax=axes[0])

    im1 = axes[1].imshow(J_num_np, aspect="auto", cmap="viridis", interpolation="nearest")
    axes[1].set_title(f"Numerical {name}")
    plt.colorbar(im1, ax=axes[1])

    # Highlight only significant differences
    diff_thresholded = np.copy(diff)
    diff_thresholded[diff_thresholded < threshold] = 0
    im2 = axes[2].imshow(diff_thresholded, aspect="auto", cmap="hot", interpolation="nearest")
    axes[2].set_title(f"Absolute Difference (Threshold: {threshold})")
    plt.colorbar(im2, ax=axes[2])

    plt.tight_layout()

    os.makedirs(debug_folder, exist_ok=True)
    fig_path = os.path.join(debug_folder, f"{name}_comparison.png")
    plt.savefig(fig_path)
    plt.close(fig)
    return fig_path
