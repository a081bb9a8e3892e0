# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Nonlinear optimization solvers for fusion-jit.

This module implements the outer iterative solvers that drive a
:class:`fusion_jit.core.factor_graph.FactorGraph` towards a (local) minimum
of its total error. Both operate on a
:class:`fusion_jit.core.variables.VariableAssignments` *in place*: every
update is a retraction of each variable along its tangent step.

Key Concepts
------------
LMConfig
    Dataclass holding configuration for Levenberg–Marquardt:
    - precision: stop once the total error drops to this value
    - max_iters: maximum number of outer (relinearization) iterations
    - max_inner_iters / cgls_precision: budget of each CGLS solve
    - initial_lambda, min_lambda, max_lambda, lambda_factor: damping schedule
    - min_model_fidelity: acceptance threshold on actual / predicted reduction
    - verbosity: SILENT, SUMMARY or TRYLAMBDA logging

LevenbergMarquardt(cfg, callback).optimize(graph, values)
    Trust-region loop. Each outer iteration linearizes the graph once; the
    inner loop damps the linear system with a scalar Jacobian ``λ·I``, solves
    it with CGLS from zero, and evaluates the step tentatively on a retracted
    copy of the values:

        model_fidelity = Δerror / (old_linear_error − new_linear_error)

    A step is accepted iff Δerror > machine epsilon and the fidelity exceeds
    ``min_model_fidelity``; only then are the values overwritten. Rejected
    steps leave the values bit-for-bit unchanged and raise λ; once λ exceeds
    ``max_lambda`` the solver gives up with :class:`SolverGaveUpError`.

gradient_descent(graph, values, cfg)
    First-order descent on the manifold along ``-2 Jᵀ e``.

Notes
-----
Linear steps are solved for ``min ‖J dx + e‖`` and applied as
``retract(x, +dx)``.
"""

from __future__ import annotations

import enum
import logging
import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import jax.numpy as jnp

from fusion_jit.core.factor_graph import FactorGraph
from fusion_jit.core.variables import VariableAssignments
from fusion_jit.optimization.cgls import CGLS, CGLSConfig

logger = logging.getLogger("fusion_jit.solvers")

_EPS = sys.float_info.epsilon


class Verbosity(enum.IntEnum):
    SILENT = 0
    SUMMARY = 1
    TRYLAMBDA = 2


class LMStatus(enum.Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class LMConfig:
    precision: float = 1e-10
    max_iters: int = 50
    max_inner_iters: int = 200       # CGLS iterations per damped solve
    cgls_precision: float = 0.0
    initial_lambda: float = 1e-6
    min_lambda: float = 1e-10
    max_lambda: float = 1e20
    lambda_factor: float = 10.0
    min_model_fidelity: float = 0.01
    max_lambda_trials: int = 5       # inner attempts, counted over the whole solve
    verbosity: Verbosity = Verbosity.SILENT


@dataclass
class LMIteration:
    """One damped attempt of the inner loop."""
    step: int
    lambda_: float
    error_before: float
    error_after: float
    model_fidelity: float
    accepted: bool


@dataclass
class LMResult:
    status: LMStatus
    steps: int
    error: float
    lambda_: float
    history: List[LMIteration] = field(default_factory=list)


class SolverGaveUpError(RuntimeError):
    """
    Raised when the damping parameter saturates without an acceptable step.

    ``values`` is the assignments object passed to the solver, holding the
    last accepted state.
    """

    def __init__(self, message: str, values: VariableAssignments, history: List[LMIteration]):
        super().__init__(message)
        self.message = message
        self.values = values
        self.history = history


LMCallback = Callable[[FactorGraph, VariableAssignments, float, int], None]


class LevenbergMarquardt:
    """
    Levenberg–Marquardt optimizer.

    Usage:
        lm = LevenbergMarquardt(LMConfig(precision=1e-3, max_iters=10))
        result = lm.optimize(graph, values)   # values is updated in place
    """

    def __init__(self, cfg: Optional[LMConfig] = None, callback: Optional[LMCallback] = None):
        self.cfg = cfg or LMConfig()
        self.callback = callback
        self.step = 0

    def _log(self, level: Verbosity, msg: str, *args) -> None:
        if self.cfg.verbosity >= level:
            logger.log(logging.INFO if level == Verbosity.SUMMARY else logging.DEBUG, msg, *args)

    def optimize(self, graph: FactorGraph, values: VariableAssignments) -> LMResult:
        cfg = self.cfg
        graph.validate(values)

        index = values.tangent_index()
        cgls_cfg = CGLSConfig(precision=cfg.cgls_precision, max_iters=cfg.max_inner_iters)
        history: List[LMIteration] = []

        old_error = graph.error(values)
        self._log(Verbosity.SUMMARY, "[LM OUTER] initial error = %g", old_error)

        lam = cfg.initial_lambda
        inner_iter_step = 0
        self.step = 0
        status = LMStatus.MAX_ITERATIONS

        for _ in range(cfg.max_iters):
            if old_error <= cfg.precision:
                status = LMStatus.CONVERGED
                break

            self._log(Verbosity.SUMMARY, "[LM OUTER] outer loop start, error = %g", old_error)
            gfg = graph.linearize(values, index)
            dx = gfg.zeros()

            while True:
                self._log(Verbosity.TRYLAMBDA, "[LM INNER] starting one iteration, lambda = %g", lam)
                damped = gfg.damped(lam)
                old_linear_error = damped.error(dx)

                dx_t = CGLS(cgls_cfg).optimize(damped, dx)
                new_linear_error = damped.error(dx_t)

                candidate = values.retracted(index.unpack(dx_t))
                this_error = graph.error(candidate)
                delta_error = old_error - this_error

                predicted = old_linear_error - new_linear_error
                model_fidelity = delta_error / predicted if predicted > 0.0 else 0.0
                self._log(
                    Verbosity.TRYLAMBDA,
                    "[LM INNER] nonlinear error = %g, delta error = %g, linear error = %g, "
                    "model fidelity = %g",
                    this_error, delta_error, new_linear_error, model_fidelity,
                )

                accepted = delta_error > _EPS and model_fidelity > cfg.min_model_fidelity
                history.append(
                    LMIteration(self.step, lam, old_error, this_error, model_fidelity, accepted)
                )

                inner_success = False
                if accepted:
                    for vid in index.ids:
                        values[vid] = candidate[vid]
                    old_error = this_error

                    if lam > cfg.min_lambda:
                        lam = lam / cfg.lambda_factor
                    else:
                        break
                    inner_success = True
                else:
                    self._log(Verbosity.TRYLAMBDA, "[LM INNER] fail, trying to increase lambda")
                    if lam > cfg.max_lambda:
                        self._log(Verbosity.TRYLAMBDA, "[LM INNER] giving up in lambda search")
                        raise SolverGaveUpError(
                            "maximum lambda reached, giving up", values, history
                        )
                    lam = lam * cfg.lambda_factor

                inner_iter_step += 1
                if inner_iter_step > cfg.max_lambda_trials or inner_success:
                    break

            self.step += 1
            if self.callback is not None:
                self.callback(graph, values, lam, self.step)
        else:
            if old_error <= cfg.precision:
                status = LMStatus.CONVERGED

        self._log(Verbosity.SUMMARY, "[FINAL   ] final error = %g", old_error)
        return LMResult(status, self.step, old_error, lam, history)


def levenberg_marquardt(
    graph: FactorGraph,
    values: VariableAssignments,
    cfg: Optional[LMConfig] = None,
    callback: Optional[LMCallback] = None,
) -> LMResult:
    """Functional wrapper around :class:`LevenbergMarquardt`."""
    return LevenbergMarquardt(cfg, callback).optimize(graph, values)


@dataclass
class GDConfig:
    learning_rate: float = 1e-1
    max_iters: int = 200


def error_gradient(graph: FactorGraph, values: VariableAssignments) -> jnp.ndarray:
    """
    Gradient of the total error with respect to the local charts, ``2 Jᵀ e``,
    laid out by ``values.tangent_index()``.
    """
    gfg = graph.linearize(values)
    return 2.0 * gfg.linear_adjoint(gfg.error_vectors(gfg.zeros()))


def gradient_descent(
    graph: FactorGraph, values: VariableAssignments, cfg: Optional[GDConfig] = None
) -> VariableAssignments:
    """
    Very simple gradient descent loop on the manifold.

    Args:
        graph: factor graph defining the objective
        values: initial assignments, updated in place
        cfg: hyperparameters

    Returns:
        values, for chaining
    """
    cfg = cfg or GDConfig()
    graph.validate(values)
    index = values.tangent_index()
    for _ in range(cfg.max_iters):
        g = error_gradient(graph, values)
        values.move(index.unpack(-cfg.learning_rate * g))
    logger.debug("gradient descent finished, error = %g", graph.error(values))
    return values
