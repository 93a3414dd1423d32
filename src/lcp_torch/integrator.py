import torch
from jaxtyping import Float


class SemiImplicitEulerIntegrator:
    """
    Semi-implicit (symplectic) Euler in generalized coordinates:

        v* = v + dt * M^-1 (tau - C(q, v))
        v' = v* + M^-1 J^T lambda        (constraint impulses, applied by the solver)
        q' = q + dt * v'
    """

    def predict_velocity(self, skeleton, dt: float) -> Float[torch.Tensor, "n"]:
        """
        Unconstrained velocity of a skeleton after one step.

        Args:
            skeleton: Skeleton to integrate
            dt: Time step

        Returns:
            Predicted velocity v*, shape [n]
        """
        v = skeleton.get_velocities()
        if not skeleton.is_mobile():
            return torch.zeros_like(v)
        tau = skeleton.get_forces()
        C = skeleton.get_coriolis_and_gravity_forces()
        return v + dt * skeleton.multiply_by_inv_mass_matrix(tau - C)

    def integrate_positions(
        self,
        positions: Float[torch.Tensor, "N"],
        velocities: Float[torch.Tensor, "N"],
        dt: float,
    ) -> Float[torch.Tensor, "N"]:
        return positions + dt * velocities
