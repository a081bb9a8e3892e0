# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
fusion-jit: JAX factor-graph least squares for pose-graph SLAM.

Importing the package enables JAX 64-bit mode; the solver tolerances assume
double precision.
"""

import jax

jax.config.update("jax_enable_x64", True)

from fusion_jit.core.types import Factor, FactorId, VariableId  # noqa: E402
from fusion_jit.core.variables import TangentIndex, VariableAssignments  # noqa: E402
from fusion_jit.core.factor_graph import FactorGraph, FactorGraphError  # noqa: E402
from fusion_jit.slam.manifold import (  # noqa: E402
    Pose2,
    Pose3,
    Rot2,
    Rot3,
    Vector,
    between,
    compose,
    inverse,
)
from fusion_jit.optimization.gaussian_factor_graph import (  # noqa: E402
    GaussianFactorGraph,
    JacobianFactor,
)
from fusion_jit.optimization.cgls import CGLS, CGLSConfig, cgls  # noqa: E402
from fusion_jit.optimization.solvers import (  # noqa: E402
    GDConfig,
    LevenbergMarquardt,
    LMConfig,
    LMResult,
    LMStatus,
    SolverGaveUpError,
    Verbosity,
    gradient_descent,
    levenberg_marquardt,
)
from fusion_jit.slam.initialization import chordal_initialization  # noqa: E402
from fusion_jit.datasets.g2o import G2OParseError, load_g2o_2d, load_g2o_3d  # noqa: E402

__version__ = "0.1.0"
