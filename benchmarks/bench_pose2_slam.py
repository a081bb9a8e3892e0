# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.

import argparse
import time

import jax.numpy as jnp

from fusion_jit.core.factor_graph import FactorGraph
from fusion_jit.core.variables import VariableAssignments
from fusion_jit.datasets.g2o import load_g2o_2d
from fusion_jit.optimization.solvers import LMConfig, Verbosity, levenberg_marquardt
from fusion_jit.slam.manifold import Pose2


def build_pose2_loop(num_poses: int = 100, loop_every: int = 10):
    """
    Planar pose graph around a circle:
        pose0 --odom--> pose1 --odom--> ... --odom--> pose_{N-1}
    plus a loop closure back to pose0 every ``loop_every`` poses.
    Initial guesses are perturbed away from ground truth.
    """
    dtheta = 2.0 * jnp.pi / num_poses
    truth = [
        Pose2.from_xytheta(10.0 * jnp.cos(i * dtheta), 10.0 * jnp.sin(i * dtheta), i * dtheta + jnp.pi / 2)
        for i in range(num_poses)
    ]

    values = VariableAssignments()
    ids = []
    for i, pose in enumerate(truth):
        noise = jnp.array([0.2 * jnp.sin(0.7 * i), 0.2 * jnp.cos(0.3 * i), 0.05 * jnp.sin(1.1 * i)])
        ids.append(values.store(pose.retract(noise)))

    graph = FactorGraph()
    graph.add_factor("prior", (ids[0],), {"measurement": truth[0], "sigma": 0.01})
    for i in range(num_poses - 1):
        graph.add_factor(
            "between", (ids[i], ids[i + 1]), {"measurement": truth[i].between(truth[i + 1])}
        )
    for i in range(loop_every, num_poses, loop_every):
        graph.add_factor("between", (ids[i], ids[0]), {"measurement": truth[i].between(truth[0])})
    return graph, values


def run_benchmark(graph, values, max_iters: int = 20):
    print("=== Pose2 Levenberg-Marquardt Benchmark ===")
    print(f"variables = {len(values)}, factors = {len(graph)}, max_iters = {max_iters}")

    cfg = LMConfig(max_iters=max_iters, verbosity=Verbosity.SILENT)

    # Warmup on a copy: compiles the vmapped kernels for every factor group
    levenberg_marquardt(graph, values.copy(), LMConfig(max_iters=1))

    initial_error = graph.error(values)
    t0 = time.time()
    result = levenberg_marquardt(graph, values, cfg)
    t1 = time.time()

    elapsed = t1 - t0
    print(f"Elapsed time: {elapsed * 1000:.3f} ms ({result.steps} outer steps)")
    print(f"error: {initial_error:.6g} -> {result.error:.6g} [{result.status.value}]")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Levenberg-Marquardt timing on a Pose2 graph")
    parser.add_argument("--g2o", help="optional 2D g2o file to optimize instead of the synthetic loop")
    parser.add_argument("--num-poses", type=int, default=100)
    parser.add_argument("--max-iters", type=int, default=20)
    args = parser.parse_args()

    if args.g2o:
        problem = load_g2o_2d(args.g2o)
        first = min(problem.variable_ids)
        problem.graph.add_factor(
            "prior",
            (problem.variable_ids[first],),
            {"measurement": problem.initial_guess[problem.variable_ids[first]]},
        )
        run_benchmark(problem.graph, problem.initial_guess, args.max_iters)
    else:
        graph, values = build_pose2_loop(args.num_poses)
        run_benchmark(graph, values, args.max_iters)
