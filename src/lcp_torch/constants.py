import torch

DTYPE = torch.float64

# Finite-difference step sizes
EPS_MINV = 1e-6
EPS_GROUP_POS_VEL = 1e-6
EPS_CORIOLIS = 1e-6
EPS_PROJECTION = 1e-5
EPS_VEL_VEL = 1e-7
EPS_FORCE_VEL = 1e-7
EPS_POS_VEL = 1e-9
EPS_POS_POS = 1e-1
EPS_VEL_POS = 1e-3
EPS_CONTACT = 1e-6
EPS_CONSTRAINT_FORCES = 1e-7

DEFAULT_SUBDIVISIONS = 20

# Analytic vs. finite-difference agreement
TOLERANCE_WITH_BOUNCES = 1e-4
TOLERANCE_WITHOUT_BOUNCES = 1e-8
# posVel differentiates M^-1 and C numerically inside the analytical result
TOLERANCE_POS_VEL = 1e-6

# Constraint classification
CLAMPING_THRESHOLD = 1e-9

GRAVITY = (0.0, 0.0, -9.81)
