# Copyright (c) 2024. Tudor Oancea
import numpy as np
import pytest

from racing_mpc import (
    ConfigurationError,
    DimensionMismatch,
    RacingMPC,
    SolverDidNotConverge,
    SolverInfeasible,
    SolverStatus,
    TyreIndex,
    UIndex,
    XIndex,
    sample_model_config,
    sample_mpc_config,
)
from racing_mpc.mpc import HorizonReference, MPCSolution, solver_status

from .conftest import N_TEST


def test_scale_unscale(mpc):
    rng = np.random.default_rng(127)
    x = rng.normal(size=(6, N_TEST + 1)) * 50
    u = rng.normal(size=(3, N_TEST)) * 1000
    gamma_y = rng.normal(size=N_TEST) * 300
    xs, us, gammas = mpc.scale(x, u, gamma_y)
    np.testing.assert_allclose(xs[:, 0], x[:, 0] / mpc.scale_x)
    x2, u2, gamma_y2 = mpc.unscale(xs, us, gammas)
    np.testing.assert_allclose(x2, x, rtol=1e-12)
    np.testing.assert_allclose(u2, u, rtol=1e-12)
    np.testing.assert_allclose(gamma_y2, gamma_y, rtol=1e-12)

    # single vectors
    xs0, us0, _ = mpc.scale(x[:, 0], u[:, 0], gamma_y[0])
    np.testing.assert_allclose(xs0, xs[:, 0])
    np.testing.assert_allclose(us0, us[:, 0])


def test_warm_start_respects_bounds(mpc, model):
    reference = HorizonReference(
        curvature=np.linspace(0.0, 0.05, N_TEST + 1),
        speed=np.linspace(10.0, 25.0, N_TEST + 1),
    )
    x0 = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 5.0])
    warm_start = mpc.create_warm_start(x0, reference)
    assert warm_start.status == SolverStatus.UNSOLVED
    assert warm_start.x.shape == (6, N_TEST + 1)
    assert warm_start.u.shape == (3, N_TEST)
    assert warm_start.gamma_y.shape == (N_TEST,)
    np.testing.assert_array_equal(warm_start.x[:, 0], x0)

    u = warm_start.u
    v = warm_start.x[XIndex.V, :-1]
    delta_max = model.base_config.steer_config.max_steer
    assert np.all(u[UIndex.FD] >= 0.0)
    assert np.all(u[UIndex.FD] <= model.config.Fd_max)
    assert np.all(u[UIndex.FB] <= 0.0)
    assert np.all(u[UIndex.FB] >= model.config.Fb_max)
    assert np.all(np.abs(u[UIndex.STEER]) <= delta_max)
    assert np.all(v * u[UIndex.FD] <= model.config.P_max + 1e-6)
    assert np.all(warm_start.x[XIndex.V] >= 0.0)
    assert np.all(np.isfinite(warm_start.x))

    # braking from above the reference speed
    reference = HorizonReference(
        curvature=np.zeros(N_TEST + 1), speed=np.full(N_TEST + 1, 5.0)
    )
    warm_start = mpc.create_warm_start(np.array([0, 0, 0, 0, 0, 30.0]), reference)
    assert np.all(warm_start.u[UIndex.FB, :3] < 0.0)
    assert np.all(warm_start.u[UIndex.FB] >= model.config.Fb_max)


def test_straight_line_solve(straight_solution):
    sol = straight_solution
    assert sol.status == SolverStatus.SOLVED
    assert sol.success
    assert sol.x.shape == (6, N_TEST + 1)
    assert sol.u.shape == (3, N_TEST)
    assert sol.gamma_y.shape == (N_TEST,)
    assert np.all(np.abs(sol.u[UIndex.STEER]) < 1e-3)
    assert np.all(np.abs(sol.x[XIndex.YAW]) < 1e-3)
    np.testing.assert_allclose(sol.x[XIndex.V], 20.0, atol=0.5)
    assert np.all(np.diff(sol.x[XIndex.X]) > 0.0)
    assert np.isfinite(sol.cost)
    assert sol.first_control.shape == (3,)
    sol.raise_for_status()


def test_cornering_solve(cornering_solution):
    sol = cornering_solution
    assert sol.status == SolverStatus.SOLVED
    assert np.mean(sol.u[UIndex.STEER]) > 0.0
    assert sol.x[XIndex.VYAW, -1] > 0.0
    assert sol.gamma_y[-1] > 0.0


solutions = pytest.mark.parametrize(
    "solution_name", ["straight_solution", "cornering_solution"]
)


@solutions
def test_solution_friction_circle(model, solution_name, request):
    sol = request.getfixturevalue(solution_name)
    mu = model.config.mu
    for i in range(N_TEST):
        out = model.dynamics(x=sol.x[:, i], u=sol.u[:, i], gamma_y=sol.gamma_y[i])
        Fx = out["Fx_ij"].full().ravel()
        Fy = out["Fy_ij"].full().ravel()
        Fz = out["Fz_ij"].full().ravel()
        for j in TyreIndex:
            assert (Fx[j] / (mu * Fz[j])) ** 2 + (Fy[j] / (mu * Fz[j])) ** 2 <= 1 + 1e-4


@solutions
def test_solution_collocation_defects(model, mpc, solution_name, request):
    sol = request.getfixturevalue(solution_name)
    for i in range(N_TEST):
        defect = model.hermite_simpson(
            sol.x[:, i], sol.u[:, i], sol.gamma_y[i], sol.x[:, i + 1], mpc.config.dt
        )
        assert np.max(np.abs(defect.full())) < 1e-4


@solutions
def test_solution_load_transfer_equilibrium(model, solution_name, request):
    sol = request.getfixturevalue(solution_name)
    for i in range(N_TEST):
        gamma_next = float(
            model.lateral_load_transfer(sol.x[:, i], sol.u[:, i], sol.gamma_y[i])
        )
        assert gamma_next == pytest.approx(sol.gamma_y[i], abs=1e-4)


def test_solve_from_standstill(mpc):
    reference = HorizonReference(
        curvature=np.zeros(N_TEST + 1), speed=np.full(N_TEST + 1, 5.0)
    )
    sol = mpc.solve(np.zeros(6), reference)
    assert sol.status == SolverStatus.SOLVED
    assert sol.x[XIndex.V, 0] == pytest.approx(0.0, abs=1e-6)
    assert np.all(sol.x[XIndex.V] >= -1e-6)
    assert sol.x[XIndex.V, -1] > 0.5


def test_solve_not_converged_returns_last_iterate(model, straight_reference):
    mpc = RacingMPC(sample_mpc_config(N=N_TEST, max_iter=1), model)
    sol = mpc.solve(np.array([0.0, 0.0, 0.0, 0.0, 0.0, 20.0]), straight_reference)
    assert sol.status == SolverStatus.DID_NOT_CONVERGE
    assert sol.return_status == "Maximum_Iterations_Exceeded"
    assert not sol.success
    assert sol.x.shape == (6, N_TEST + 1)
    assert sol.u.shape == (3, N_TEST)
    assert sol.gamma_y.shape == (N_TEST,)
    assert np.all(np.isfinite(sol.x))
    assert np.all(np.isfinite(sol.u))
    assert np.isfinite(sol.cost)
    with pytest.raises(SolverDidNotConverge):
        sol.raise_for_status()


def test_solve_with_prior(mpc, straight_reference, straight_solution):
    x1 = straight_solution.x[:, 1]
    sol = mpc.solve(x1, straight_reference, prior=straight_solution)
    assert sol.status == SolverStatus.SOLVED
    np.testing.assert_allclose(sol.x[:, 0], x1, atol=1e-4)


def test_solve_dimension_mismatch(mpc, straight_reference):
    with pytest.raises(DimensionMismatch):
        mpc.solve(np.zeros(5), straight_reference)
    short_reference = HorizonReference(
        curvature=np.zeros(N_TEST), speed=np.full(N_TEST, 20.0)
    )
    with pytest.raises(DimensionMismatch):
        mpc.solve(np.array([0, 0, 0, 0, 0, 20.0]), short_reference)


def test_rate_limit_applied_control(model):
    mpc = RacingMPC(sample_mpc_config(N=5, rate_limit_applied_control=True), model)
    reference = HorizonReference(curvature=np.zeros(6), speed=np.full(6, 20.0))
    x0 = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 20.0])
    with pytest.raises(DimensionMismatch, match="u_prev"):
        mpc.solve(x0, reference)
    sol = mpc.solve(x0, reference, u_prev=np.array([80.0, 0.0, 0.0]))
    assert sol.status == SolverStatus.SOLVED
    assert abs(sol.u[UIndex.STEER, 0]) < 1e-3


def test_wrong_config_type(model):
    with pytest.raises(ConfigurationError):
        RacingMPC(sample_model_config(), model)


def test_solver_status():
    assert solver_status("Solve_Succeeded") == SolverStatus.SOLVED
    assert solver_status("Solved_To_Acceptable_Level") == SolverStatus.SOLVED
    assert solver_status("Infeasible_Problem_Detected") == SolverStatus.INFEASIBLE
    assert solver_status("Maximum_Iterations_Exceeded") == SolverStatus.DID_NOT_CONVERGE
    assert solver_status("Maximum_CpuTime_Exceeded") == SolverStatus.DID_NOT_CONVERGE


def _dummy_solution(status: SolverStatus, return_status: str) -> MPCSolution:
    return MPCSolution(
        x=np.zeros((6, 3)),
        u=np.zeros((3, 2)),
        gamma_y=np.zeros(2),
        status=status,
        return_status=return_status,
        iterations=0,
        cost=0.0,
        solve_time=0.0,
    )


def test_raise_for_status():
    with pytest.raises(SolverInfeasible):
        _dummy_solution(
            SolverStatus.INFEASIBLE, "Infeasible_Problem_Detected"
        ).raise_for_status()
    with pytest.raises(SolverDidNotConverge) as e:
        _dummy_solution(
            SolverStatus.DID_NOT_CONVERGE, "Maximum_Iterations_Exceeded"
        ).raise_for_status()
    assert e.value.return_status == "Maximum_Iterations_Exceeded"
    _dummy_solution(SolverStatus.UNSOLVED, "warm_start").raise_for_status()


def test_records_hold_float_arrays():
    reference = HorizonReference(curvature=np.zeros(4), speed=np.full(4, 12.0))
    assert isinstance(reference.curvature, np.ndarray)
    np.testing.assert_array_equal(reference.speed, [12.0] * 4)
    sol = _dummy_solution(SolverStatus.SOLVED, "Solve_Succeeded")
    assert sol.x.shape == (6, 3)
    np.testing.assert_array_equal(sol.first_control, np.zeros(3))
