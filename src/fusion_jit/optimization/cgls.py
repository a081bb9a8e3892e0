# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Conjugate Gradient Least Squares (CGLS) for Gaussian factor graphs.

Solves ``min_x ‖A x + e‖²`` (equivalently ``A x = b`` with ``b = -e`` in the
least-squares sense) using only the products ``A p`` and ``Aᵀ r`` exposed by
:class:`fusion_jit.optimization.gaussian_factor_graph.GaussianFactorGraph`.
The normal matrix ``AᵀA`` is never formed.

Algorithm (Björck, *Numerical Methods for Least Squares Problems*, 7.4.1)::

    r = b - A x,  s = Aᵀ r,  p = s,  γ = ‖s‖²
    repeat:
        q = A p
        α = γ / ‖q‖²
        x += α p,  r -= α q
        s = Aᵀ r
        β = ‖s‖² / γ,  γ = ‖s‖²
        p = s + β p

Stopping: ``γ ≤ precision``, applied step ``‖α p‖² < precision``,
``‖q‖² = 0`` (p is in the null space of A), or ``max_iters`` iterations.
Non-convergence is not an error: the best iterate is returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import jax.numpy as jnp

from fusion_jit.optimization.gaussian_factor_graph import GaussianFactorGraph

logger = logging.getLogger("fusion_jit.cgls")


@dataclass
class CGLSConfig:
    precision: float = 1e-10
    max_iters: int = 400


class CGLS:
    """
    CGLS optimizer.

    ``step`` counts the iterations performed by the last :meth:`optimize`
    call; ``gamma`` is the final squared norm of the normal-equation residual.
    """

    def __init__(self, cfg: Optional[CGLSConfig] = None):
        self.cfg = cfg or CGLSConfig()
        self.step = 0
        self.gamma = float("nan")

    def optimize(self, gfg: GaussianFactorGraph, initial: Optional[jnp.ndarray] = None) -> jnp.ndarray:
        cfg = self.cfg
        x = gfg.zeros() if initial is None else jnp.asarray(initial)

        r = -gfg.error_vectors(x)  # r(0) = b - A x(0)
        s = gfg.linear_adjoint(r)
        p = s
        gamma = float(jnp.dot(s, s))

        self.step = 0
        while self.step < cfg.max_iters and gamma > cfg.precision:
            q = gfg.linear_forward(p)
            q_norm2 = float(jnp.dot(q, q))
            if q_norm2 == 0.0:
                break

            alpha = gamma / q_norm2
            applied = alpha * p
            x = x + applied
            r = r - alpha * q
            s = gfg.linear_adjoint(r)

            gamma_next = float(jnp.dot(s, s))
            beta = gamma_next / gamma
            gamma = gamma_next
            p = s + beta * p
            self.step += 1

            if float(jnp.dot(applied, applied)) < cfg.precision:
                break

        self.gamma = gamma
        logger.debug("CGLS stopped after %d steps, |A^T r|^2 = %g", self.step, gamma)
        return x


def cgls(
    gfg: GaussianFactorGraph,
    x0: Optional[jnp.ndarray] = None,
    cfg: Optional[CGLSConfig] = None,
) -> jnp.ndarray:
    """Run CGLS on ``gfg`` from ``x0`` (zeros by default) and return the iterate."""
    return CGLS(cfg).optimize(gfg, x0)
