# Copyright (c) 2024. Tudor Oancea
import numpy as np
import pytest

from racing_mpc import (
    ConfigurationError,
    DimensionMismatch,
    DoubleTrackPlanarModel,
    TyreIndex,
    XIndex,
    sample_base_vehicle_config,
    sample_model_config,
)

x_corner = np.array([0.0, 0.0, 0.0, 0.1, 0.02, 40.0])
u_corner = np.array([500.0, 0.0, 0.1])


def test_dimensions(model):
    assert DoubleTrackPlanarModel.dimensions() == (6, 3)
    assert model.dimensions() == (model.nx, model.nu)


def test_forward_dynamics_deterministic(model):
    out1 = model.forward_dynamics(x_corner, u_corner)
    out2 = model.forward_dynamics(x_corner.copy(), u_corner.copy())
    assert out1.keys() == out2.keys()
    for key in ("x_dot", "Fx_ij", "Fy_ij", "Fz_ij"):
        np.testing.assert_array_equal(out1[key], out2[key])
    assert out1["gamma_y"] == out2["gamma_y"]


def test_forward_dynamics_accelerating_corner(model):
    out = model.forward_dynamics(x_corner, u_corner)
    x_dot = out["x_dot"]
    assert x_dot.shape == (6,)
    assert np.all(np.isfinite(x_dot))
    assert x_dot[XIndex.V] > 0.0
    # positive steering turns left: lateral force and load shift to the right wheels
    assert out["gamma_y"] > 0.0
    assert out["Fz_ij"][TyreIndex.FR] > out["Fz_ij"][TyreIndex.FL]
    assert x_dot[XIndex.YAW] == pytest.approx(0.1)


def test_straight_line_is_symmetric(model):
    out = model.forward_dynamics(
        np.array([0.0, 0.0, 0.0, 0.0, 0.0, 20.0]), np.array([100.0, 0.0, 0.0])
    )
    np.testing.assert_allclose(out["Fy_ij"], 0.0, atol=1e-9)
    assert out["gamma_y"] == pytest.approx(0.0, abs=1e-9)
    assert out["x_dot"][XIndex.X] == pytest.approx(20.0)
    assert out["x_dot"][XIndex.VYAW] == pytest.approx(0.0, abs=1e-9)


@pytest.mark.parametrize("v", [0.0, 0.5, 1.0, 1.5])
def test_low_speed_is_finite(model, v):
    x = np.array([0.0, 0.0, 0.0, 0.2, 0.05, v])
    out = model.forward_dynamics(x, np.array([0.0, -100.0, 0.2]))
    for key in ("x_dot", "Fx_ij", "Fy_ij", "Fz_ij"):
        assert np.all(np.isfinite(out[key]))
    assert np.isfinite(out["gamma_y"])


def test_load_transfer_fixed_point():
    model = DoubleTrackPlanarModel(
        sample_base_vehicle_config(), sample_model_config(load_transfer_iterations=10)
    )
    gamma_y = model.forward_dynamics(x_corner, u_corner)["gamma_y"]
    gamma_next = float(model.lateral_load_transfer(x_corner, u_corner, gamma_y))
    assert gamma_next == pytest.approx(gamma_y, rel=1e-6)

    model_zero = DoubleTrackPlanarModel(
        sample_base_vehicle_config(), sample_model_config(load_transfer_iterations=0)
    )
    assert model_zero.forward_dynamics(x_corner, u_corner)["gamma_y"] == 0.0


def test_discrete_dynamics(model):
    x = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 10.0])
    x_next = model.discrete_dynamics(x, np.array([0.0, 0.0, 0.0]), 0.1)
    assert x_next[XIndex.X] == pytest.approx(1.0, rel=1e-2)
    assert x_next[XIndex.V] < 10.0


def test_dimension_mismatch(model):
    with pytest.raises(DimensionMismatch):
        model.forward_dynamics(np.zeros(5), u_corner)
    with pytest.raises(DimensionMismatch):
        model.forward_dynamics(x_corner, np.zeros((3, 1)))


def test_wrong_config_type():
    with pytest.raises(ConfigurationError):
        DoubleTrackPlanarModel(sample_model_config(), sample_model_config())
