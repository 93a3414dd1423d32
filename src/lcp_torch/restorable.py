class RestorableSnapshot:
    """
    Copy of everything a probe may change on the live world: positions,
    velocities, forces, time step, solver flags and the constraint groups
    attached to the skeletons.

    Use it as a context manager to restore on every exit path:

        with RestorableSnapshot(world):
            world.set_positions(perturbed)
            world.step()
    """

    def __init__(self, world):
        self.world = world
        self.positions = world.get_positions()
        self.velocities = world.get_velocities()
        self.forces = world.get_forces()
        self.time_step = world.time_step
        self.solver_flags = world.constraint_solver.get_flags()
        self.gradient_matrices = [s.gradient_matrices for s in world.skeletons]

    def restore(self):
        world = self.world
        world.set_positions(self.positions)
        world.set_velocities(self.velocities)
        world.set_forces(self.forces)
        world.time_step = self.time_step
        world.constraint_solver.set_flags(self.solver_flags)
        for skeleton, matrices in zip(world.skeletons, self.gradient_matrices):
            skeleton.gradient_matrices = matrices

    def __enter__(self) -> "RestorableSnapshot":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.restore()
        return False
