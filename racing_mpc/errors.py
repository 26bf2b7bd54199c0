# Copyright (c) 2024. Tudor Oancea
from enum import Enum, auto

__all__ = [
    "RacingMPCError",
    "ConfigurationError",
    "CompilationError",
    "DimensionMismatch",
    "SolverError",
    "SolverInfeasible",
    "SolverDidNotConverge",
    "SolverStatus",
]


class RacingMPCError(Exception):
    pass


class ConfigurationError(RacingMPCError):
    """Invalid physical or tuning parameters."""


class CompilationError(RacingMPCError):
    """The symbolic dynamics or cost could not be built."""


class DimensionMismatch(RacingMPCError, ValueError):
    """A caller supplied an array of the wrong shape."""


class SolverStatus(Enum):
    SOLVED = auto()
    INFEASIBLE = auto()
    DID_NOT_CONVERGE = auto()
    UNSOLVED = auto()  # no solver run, e.g. a warm start


class SolverError(RacingMPCError):
    def __init__(self, return_status: str) -> None:
        super().__init__(return_status)
        self.return_status = return_status


class SolverInfeasible(SolverError):
    pass


class SolverDidNotConverge(SolverError):
    pass
