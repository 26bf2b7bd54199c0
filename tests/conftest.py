# Copyright (c) 2024. Tudor Oancea
import numpy as np
import pytest

from racing_mpc import (
    DoubleTrackPlanarModel,
    RacingMPC,
    sample_base_vehicle_config,
    sample_model_config,
    sample_mpc_config,
)
from racing_mpc.mpc import HorizonReference

N_TEST = 10


@pytest.fixture(scope="module")
def model():
    return DoubleTrackPlanarModel(sample_base_vehicle_config(), sample_model_config())


@pytest.fixture(scope="module")
def mpc(model):
    return RacingMPC(sample_mpc_config(N=N_TEST), model)


@pytest.fixture(scope="module")
def straight_reference():
    return HorizonReference(
        curvature=np.zeros(N_TEST + 1), speed=np.full(N_TEST + 1, 20.0)
    )


@pytest.fixture(scope="module")
def straight_solution(mpc, straight_reference):
    x0 = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 20.0])
    return mpc.solve(x0, straight_reference)


@pytest.fixture(scope="module")
def cornering_reference():
    return HorizonReference(
        curvature=np.full(N_TEST + 1, 1 / 30), speed=np.full(N_TEST + 1, 15.0)
    )


@pytest.fixture(scope="module")
def cornering_solution(mpc, cornering_reference):
    x0 = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 15.0])
    return mpc.solve(x0, cornering_reference)
