# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Reader for pose-graph datasets in the g2o text format.

Supported records (whitespace separated, one per line)::

    VERTEX_SE2 i x y θ
    EDGE_SE2 i j x y θ  I11 I12 I13 I22 I23 I33

    VERTEX_SE3:QUAT i x y z qx qy qz qw
    EDGE_SE3:QUAT i j x y z qx qy qz qw  <21 information values>

Information-matrix entries are checked for being numeric and then discarded:
factors built from them are unweighted.

``parse_g2o_2d`` / ``parse_g2o_3d`` are generators of :class:`InitialGuess`
and :class:`Measurement` entries; malformed lines raise
:class:`G2OParseError` when they are reached. ``load_g2o_2d`` /
``load_g2o_3d`` turn a whole file into a :class:`G2OProblem` ready for
:func:`fusion_jit.optimization.solvers.levenberg_marquardt`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Union

from fusion_jit.core.factor_graph import FactorGraph
from fusion_jit.core.types import VariableId
from fusion_jit.core.variables import VariableAssignments
from fusion_jit.slam.manifold import Pose2, Pose3, Rot3

logger = logging.getLogger("fusion_jit.g2o")

_INFO_2D = 6
_INFO_3D = 21


class G2OParseError(ValueError):
    """A g2o line could not be parsed; ``line_index`` is 0-based."""

    def __init__(self, line_index: int, line: str, message: str):
        super().__init__(f"line {line_index}: {message}: {line!r}")
        self.line_index = line_index
        self.line = line
        self.message = message


@dataclass(frozen=True)
class InitialGuess:
    index: int
    pose: Any


@dataclass(frozen=True)
class Measurement:
    frame_index: int
    measured_index: int
    pose: Any


Entry = Union[InitialGuess, Measurement]


class _LineParser:
    def __init__(self, line: str, line_index: int):
        self.line = line
        self.line_index = line_index
        self.columns = line.split()
        self.position = 0

    def error(self, message: str) -> G2OParseError:
        return G2OParseError(self.line_index, self.line, message)

    def string(self) -> str:
        if self.position == len(self.columns):
            raise self.error("Fewer columns than expected")
        column = self.columns[self.position]
        self.position += 1
        return column

    def int(self) -> int:
        column = self.string()
        try:
            return int(column)
        except ValueError:
            raise self.error(f"Cannot convert {column} to Int") from None

    def float(self) -> float:
        column = self.string()
        try:
            return float(column)
        except ValueError:
            raise self.error(f"Cannot convert {column} to Double") from None

    def pose2(self) -> Pose2:
        x, y, theta = self.float(), self.float(), self.float()
        return Pose2.from_xytheta(x, y, theta)

    def pose3(self) -> Pose3:
        t = [self.float(), self.float(), self.float()]
        qx, qy, qz, qw = self.float(), self.float(), self.float(), self.float()
        return Pose3(Rot3.from_quaternion(qw, qx, qy, qz), t)

    def check_consumed_all(self) -> None:
        if self.position < len(self.columns):
            raise self.error("More columns than expected")


def _parse(
    lines: Iterable[str],
    vertex_tag: str,
    edge_tag: str,
    parse_pose: Callable[[_LineParser], Any],
    info_size: int,
) -> Iterator[Entry]:
    for line_index, raw in enumerate(lines):
        line = raw.rstrip("\r\n")
        if not line.strip():
            continue
        parser = _LineParser(line, line_index)
        tag = parser.string()
        if tag == vertex_tag:
            entry = InitialGuess(parser.int(), parse_pose(parser))
        elif tag == edge_tag:
            frame_index, measured_index = parser.int(), parser.int()
            entry = Measurement(frame_index, measured_index, parse_pose(parser))
            for _ in range(info_size):
                parser.float()
        else:
            raise parser.error(
                f"First column should be {vertex_tag} or {edge_tag}, but it is {tag}"
            )
        parser.check_consumed_all()
        yield entry


def parse_g2o_2d(lines: Iterable[str]) -> Iterator[Entry]:
    """Entries of a 2D (VERTEX_SE2 / EDGE_SE2) g2o file."""
    return _parse(lines, "VERTEX_SE2", "EDGE_SE2", _LineParser.pose2, _INFO_2D)


def parse_g2o_3d(lines: Iterable[str]) -> Iterator[Entry]:
    """Entries of a 3D (VERTEX_SE3:QUAT / EDGE_SE3:QUAT) g2o file."""
    return _parse(lines, "VERTEX_SE3:QUAT", "EDGE_SE3:QUAT", _LineParser.pose3, _INFO_3D)


@dataclass
class G2OProblem:
    """
    A g2o dataset as an optimization problem.

    - initial_guess: assignments holding one pose per vertex
    - graph: one "between" factor per edge
    - variable_ids: g2o vertex index -> VariableId
    """
    initial_guess: VariableAssignments
    graph: FactorGraph
    variable_ids: Dict[int, VariableId]


def build_problem(entries: Iterable[Entry]) -> G2OProblem:
    initial_guess = VariableAssignments()
    graph = FactorGraph()
    variable_ids: Dict[int, VariableId] = {}
    measurements: List[Measurement] = []

    for entry in entries:
        if isinstance(entry, InitialGuess):
            if entry.index in variable_ids:
                raise ValueError(f"Duplicate vertex {entry.index}")
            variable_ids[entry.index] = initial_guess.store(entry.pose)
        else:
            measurements.append(entry)

    for m in measurements:
        for index in (m.frame_index, m.measured_index):
            if index not in variable_ids:
                raise ValueError(f"Edge {m.frame_index}-{m.measured_index} refers to unknown vertex {index}")
        graph.add_factor(
            "between",
            (variable_ids[m.frame_index], variable_ids[m.measured_index]),
            {"measurement": m.pose},
        )

    logger.info("loaded g2o problem: %d vertices, %d edges", len(variable_ids), len(measurements))
    return G2OProblem(initial_guess, graph, variable_ids)


def load_g2o_2d(path: Union[str, os.PathLike]) -> G2OProblem:
    with open(path, "r") as f:
        return build_problem(parse_g2o_2d(f))


def load_g2o_3d(path: Union[str, os.PathLike]) -> G2OProblem:
    with open(path, "r") as f:
        return build_problem(parse_g2o_3d(f))
