# Copyright (c) 2024. Tudor Oancea
from enum import IntEnum

import numpy as np
import numpy.typing as npt
from casadi import MX, SX, atan2, cos, sin

from .errors import DimensionMismatch

__all__ = [
    "XIndex",
    "UIndex",
    "TyreIndex",
    "align_yaw",
    "teds_projection",
    "wrap_to_pi",
    "as_array",
]

FloatArray = npt.NDArray[np.float64]


class XIndex(IntEnum):
    X = 0  # world x
    Y = 1  # world y
    YAW = 2
    VYAW = 3  # yaw rate
    BETA = 4  # body slip angle
    V = 5  # velocity magnitude


class UIndex(IntEnum):
    FD = 0  # drive force
    FB = 1  # brake force
    STEER = 2  # front wheel angle


class TyreIndex(IntEnum):
    FL = 0
    FR = 1
    RL = 2
    RR = 3


def align_yaw(yaw_1: SX | MX, yaw_2: SX | MX) -> SX | MX:
    """yaw_1 shifted by a multiple of 2*pi so that it is the closest to yaw_2"""
    d_yaw = yaw_1 - yaw_2
    return atan2(sin(d_yaw), cos(d_yaw)) + yaw_2


def teds_projection(x: FloatArray | float, a: float):
    """Projection of x onto the interval [a, a + 2*pi)"""
    return np.mod(x - a, 2 * np.pi) + a


def wrap_to_pi(x: FloatArray | float):
    """Wrap angles to [-pi, pi)"""
    return teds_projection(x, -np.pi)


def as_array(name: str, value, shape: tuple[int, ...]) -> FloatArray:
    """
    Convert value to a float64 array of the given shape, raising DimensionMismatch
    instead of broadcasting or reshaping.
    """
    arr = np.ascontiguousarray(value, dtype=np.float64)
    if arr.shape != shape:
        raise DimensionMismatch(f"{name}: expected shape {shape}, got {arr.shape}")
    return arr
