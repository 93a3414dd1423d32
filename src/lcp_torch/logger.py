import os
from typing import Any

import numpy as np
import torch


class DebugLogger:
    def __init__(self):
        self.debug_enabled = os.getenv("DEBUG", "false").lower() == "true"
        self.indent_level = 0
        self.indent_str = "    "
        self.section_width = 80  # Total width of section header
        self.subsection_width = 60  # Total width of subsection header
        self.decimals = 6

    def _process_tensor(self, tensor: torch.Tensor) -> Any:
        """Process tensor for prettier printing."""
        if isinstance(tensor, torch.Tensor):
            tensor_np = tensor.detach().cpu().numpy()
            return np.round(tensor_np, self.decimals)
        return tensor

    def _format_value(self, value: Any) -> str:
        """Format different types of values."""
        if isinstance(value, torch.Tensor):
            return str(self._process_tensor(value))
        elif isinstance(value, (list, tuple)):
            return str([self._format_value(v) for v in value])
        elif isinstance(value, dict):
            return str({k: self._format_value(v) for k, v in value.items()})
        return str(value)

    def _create_centered_header(self, title: str, width: int, fill_char: str) -> str:
        """Create a centered header with fixed width."""
        if len(title) > width - 4:  # Leave at least 2 fill_char on each side
            title = title[: (width - 7)] + "..."

        total_fill = width - len(title) - 2  # -2 for spaces around title
        left_fill = total_fill // 2
        right_fill = total_fill - left_fill

        return f"{fill_char * left_fill} {title} {fill_char * right_fill}"

    def print(self, *args, **kwargs):
        if not self.debug_enabled:
            return
        indent = self.indent_str * self.indent_level
        processed_args = [self._format_value(arg) for arg in args]
        print(indent + " ".join(map(str, processed_args)), **kwargs)

    def section(self, title: str):
        if not self.debug_enabled:
            return
        header = self._create_centered_header(title, self.section_width, "=")
        print(f"\n{header}\n")

    def subsection(self, title: str):
        if not self.debug_enabled:
            return
        header = self._create_centered_header(title, self.subsection_width, "-")
        print(f"\n{header}\n")

    def indent(self):
        self.indent_level += 1

    def undent(self):
        self.indent_level = max(0, self.indent_level - 1)

    def mismatch(
        self,
        name: str,
        analytical: torch.Tensor,
        numerical: torch.Tensor,
        tolerance: float,
    ) -> bool:
        """Report an analytical/numerical disagreement.

        Args:
            name: Label of the compared quantity.
            analytical: Analytical result.
            numerical: Finite-difference result of the same shape.
            tolerance: Largest accepted absolute entry-wise error.

        Returns:
            True when the two agree within the tolerance.
        """
        error = (analytical - numerical).abs()
        max_error = error.max().item() if error.numel() > 0 else 0.0
        if max_error <= tolerance:
            return True

        self.subsection(f"{name} MISMATCH")
        self.indent()
        self.print(f"Max error {max_error:.3e} above tolerance {tolerance:.1e}")
        self.print("Analytical:", analytical)
        self.print("Numerical:", numerical)
        self.print("Diff:", analytical - numerical)
        self.undent()
        return False


# Create global instance
debug = DebugLogger()
