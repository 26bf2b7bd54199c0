# Copyright (c) 2024. Tudor Oancea
import logging
from time import perf_counter
from typing import Optional

import numpy as np
from casadi import DM, MX, SX, Function, Opti, cos, diag, mtimes
from strongpods import PODS

from .config import RacingMPCConfig
from .constants import g
from .errors import (
    CompilationError,
    ConfigurationError,
    DimensionMismatch,
    SolverDidNotConverge,
    SolverInfeasible,
    SolverStatus,
)
from .models import DoubleTrackPlanarModel
from .utils import FloatArray, UIndex, XIndex, as_array

__all__ = [
    "HorizonReference",
    "MPCSolution",
    "RacingMPC",
    "solver_status",
]

logger = logging.getLogger(__name__)

_IPOPT_RETURN_STATUS = {
    "Solve_Succeeded": SolverStatus.SOLVED,
    "Solved_To_Acceptable_Level": SolverStatus.SOLVED,
    "Infeasible_Problem_Detected": SolverStatus.INFEASIBLE,
}


def solver_status(return_status: str) -> SolverStatus:
    """map an IPOPT return status onto the statuses exposed to the control layer"""
    return _IPOPT_RETURN_STATUS.get(return_status, SolverStatus.DID_NOT_CONVERGE)


@PODS
class HorizonReference:
    curvature: np.ndarray  # target curvature at each of the N+1 stages
    speed: np.ndarray  # target speed at each of the N+1 stages


@PODS
class MPCSolution:
    x: np.ndarray  # (nx, N+1)
    u: np.ndarray  # (nu, N)
    gamma_y: np.ndarray  # (N,)
    status: SolverStatus
    return_status: str
    iterations: int
    cost: float
    solve_time: float

    @property
    def first_control(self) -> FloatArray:
        return self.u[:, 0]

    @property
    def success(self) -> bool:
        return self.status == SolverStatus.SOLVED

    def raise_for_status(self) -> None:
        if self.status == SolverStatus.INFEASIBLE:
            raise SolverInfeasible(self.return_status)
        if self.status == SolverStatus.DID_NOT_CONVERGE:
            raise SolverDidNotConverge(self.return_status)


class RacingMPC:
    """
    Tracking / minimum time MPC on top of a DoubleTrackPlanarModel.

    The NLP is built once at construction with casadi.Opti and kept resident; each
    call to solve only updates the parameters (initial state, reference) and the
    initial guess. A RacingMPC instance is therefore not thread safe, use one
    instance per thread. The model (and its compiled functions) can be shared.

    All decision variables are scaled: the solver sees x / scale_x, u / scale_u and
    gamma_y / scale_gamma_y.
    """

    config: RacingMPCConfig
    model: DoubleTrackPlanarModel

    scale_x: FloatArray
    scale_u: FloatArray
    scale_gamma_y: float
    min_time_tracking_cost: Function

    def __init__(self, mpc_config: RacingMPCConfig, model: DoubleTrackPlanarModel):
        if not isinstance(mpc_config, RacingMPCConfig):
            raise ConfigurationError("RacingMPC expects a RacingMPCConfig")
        nx, nu = model.dimensions()
        if len(mpc_config.scale_x) != nx or len(mpc_config.scale_u) != nu:
            raise ConfigurationError(
                f"scale vectors have lengths ({len(mpc_config.scale_x)}, "
                f"{len(mpc_config.scale_u)}), the model expects ({nx}, {nu})"
            )
        self.config = mpc_config
        self.model = model
        self.scale_x = np.array(mpc_config.scale_x, dtype=np.float64)
        self.scale_u = np.array(mpc_config.scale_u, dtype=np.float64)
        self.scale_gamma_y = float(mpc_config.scale_gamma_y)

        start = perf_counter()
        try:
            self.min_time_tracking_cost = self._compile_cost()
            self._build_problem()
        except (RuntimeError, NotImplementedError) as e:
            raise CompilationError(f"could not build the racing MPC problem: {e}") from e
        logger.info(
            "built racing MPC problem with N=%d in %.3f s",
            mpc_config.N,
            perf_counter() - start,
        )

    @property
    def N(self) -> int:
        return self.config.N

    ################################################################################
    # scaling
    ################################################################################

    def scale(
        self, x: FloatArray, u: FloatArray, gamma_y: FloatArray
    ) -> tuple[FloatArray, FloatArray, FloatArray]:
        """physical values -> solver values. x and u may be single vectors or stacked columns"""
        x = np.asarray(x, dtype=np.float64)
        u = np.asarray(u, dtype=np.float64)
        return (
            (x.T / self.scale_x).T,
            (u.T / self.scale_u).T,
            np.asarray(gamma_y, dtype=np.float64) / self.scale_gamma_y,
        )

    def unscale(
        self, xs: FloatArray, us: FloatArray, gammas: FloatArray
    ) -> tuple[FloatArray, FloatArray, FloatArray]:
        """solver values -> physical values"""
        xs = np.asarray(xs, dtype=np.float64)
        us = np.asarray(us, dtype=np.float64)
        return (
            (xs.T * self.scale_x).T,
            (us.T * self.scale_u).T,
            np.asarray(gammas, dtype=np.float64) * self.scale_gamma_y,
        )

    ################################################################################
    # problem construction
    ################################################################################

    def _compile_cost(self) -> Function:
        nx, nu = self.model.dimensions()
        x = SX.sym("x", nx)
        u = SX.sym("u", nu)
        du = SX.sym("du", nu)
        kappa_ref = SX.sym("kappa_ref")
        v_ref = SX.sym("v_ref")
        t = SX.sym("t")

        v = x[XIndex.V]
        omega = x[XIndex.VYAW]
        beta = x[XIndex.BETA]
        s_v = float(self.scale_x[XIndex.V])
        s_omega = float(self.scale_x[XIndex.VYAW])
        s_beta = float(self.scale_x[XIndex.BETA])

        cost = (
            self.config.q_v * ((v - v_ref) / s_v) ** 2
            + self.config.q_kappa * ((omega - v * kappa_ref) / s_omega) ** 2
            + self.config.q_beta * (beta / s_beta) ** 2
            - self.config.q_progress * v * cos(beta) / s_v * t
        )
        for i in UIndex:
            s_u = float(self.scale_u[i])
            cost += self.config.r_u[i] * (u[i] / s_u) ** 2
            cost += self.config.r_du[i] * (du[i] / s_u) ** 2

        return Function(
            "min_time_tracking_cost",
            [x, u, du, kappa_ref, v_ref, t],
            [cost],
            ["x", "u", "du", "kappa_ref", "v_ref", "t"],
            ["cost"],
        )

    def _build_problem(self) -> None:
        N = self.config.N
        dt = self.config.dt
        nx, nu = self.model.dimensions()
        opti = Opti()

        # decision variables, scaled
        self._xs = opti.variable(nx, N + 1)
        self._us = opti.variable(nu, N)
        self._gammas = opti.variable(1, N)
        x = mtimes(diag(DM(self.scale_x)), self._xs)
        u = mtimes(diag(DM(self.scale_u)), self._us)
        gamma_y = self.scale_gamma_y * self._gammas

        # parameters
        self._p_x0 = opti.parameter(nx)
        self._p_kappa_ref = opti.parameter(N + 1)
        self._p_v_ref = opti.parameter(N + 1)
        self._p_u_prev = (
            opti.parameter(nu) if self.config.rate_limit_applied_control else None
        )

        # initial state
        opti.subject_to(self._xs[:, 0] == self._p_x0 / DM(self.scale_x))

        # stage constraints and costs
        cost = 0.0
        for i in range(N):
            uip1 = u[:, i + 1] if i < N - 1 else None
            self.model.append_stage_constraints(
                opti, x[:, i], u[:, i], gamma_y[i], x[:, i + 1], uip1, dt
            )
            if i > 0:
                du = u[:, i] - u[:, i - 1]
            elif self._p_u_prev is not None:
                du = u[:, 0] - self._p_u_prev
            else:
                du = MX.zeros(nu)
            cost += self.min_time_tracking_cost(
                x[:, i], u[:, i], du, self._p_kappa_ref[i], self._p_v_ref[i], dt
            )
        if self._p_u_prev is not None:
            self.model.append_rate_constraints(opti, self._p_u_prev, u[:, 0], dt)

        # terminal cost
        cost += self.min_time_tracking_cost(
            x[:, N],
            MX.zeros(nu),
            MX.zeros(nu),
            self._p_kappa_ref[N],
            self._p_v_ref[N],
            0.0,
        )
        opti.minimize(cost)

        ipopt_options = {
            "print_level": self.config.print_level,
            "sb": "yes",
            "max_iter": self.config.max_iter,
            "tol": self.config.tol,
            "constr_viol_tol": self.config.constr_viol_tol,
        }
        if self.config.max_cpu_time is not None:
            ipopt_options["max_cpu_time"] = self.config.max_cpu_time
        opti.solver("ipopt", {"print_time": False, "expand": True}, ipopt_options)
        self._opti = opti

    ################################################################################
    # solving
    ################################################################################

    def _check_inputs(
        self, x0: FloatArray, reference: HorizonReference
    ) -> tuple[FloatArray, FloatArray, FloatArray]:
        N = self.config.N
        return (
            as_array("x0", x0, (self.model.nx,)),
            as_array("reference.curvature", reference.curvature, (N + 1,)),
            as_array("reference.speed", reference.speed, (N + 1,)),
        )

    def _shift_prior(self, x0: FloatArray, prior: MPCSolution):
        """shift the previous solution by one stage and replace its first state by x0"""
        N = self.config.N
        nx, nu = self.model.dimensions()
        x_prior = as_array("prior.x", prior.x, (nx, N + 1))
        u_prior = as_array("prior.u", prior.u, (nu, N))
        gamma_prior = as_array("prior.gamma_y", prior.gamma_y, (N,))
        x_ig = np.hstack((x_prior[:, 1:], x_prior[:, -1:]))
        x_ig[:, 0] = x0
        u_ig = np.hstack((u_prior[:, 1:], u_prior[:, -1:]))
        gamma_ig = np.append(gamma_prior[1:], gamma_prior[-1])
        return x_ig, u_ig, gamma_ig

    def solve(
        self,
        x0: FloatArray,
        reference: HorizonReference,
        prior: Optional[MPCSolution] = None,
        u_prev: Optional[FloatArray] = None,
    ) -> MPCSolution:
        """
        Solve the NLP from the current state x0.

        prior is the solution of the previous control cycle. It is shifted by one stage
        and used as initial guess; without it a warm start is created by forward
        simulation. u_prev is the control applied during the last cycle, required
        (and only used) when config.rate_limit_applied_control is set.

        The returned solution always holds the last iterate of the solver, check its
        status before applying it.
        """
        N = self.config.N
        nx, nu = self.model.dimensions()
        x0, kappa_ref, v_ref = self._check_inputs(x0, reference)
        opti = self._opti

        # set parameters
        opti.set_value(self._p_x0, x0)
        opti.set_value(self._p_kappa_ref, kappa_ref)
        opti.set_value(self._p_v_ref, v_ref)
        if self._p_u_prev is not None:
            if u_prev is None:
                raise DimensionMismatch(
                    f"u_prev: expected shape ({nu},), got None "
                    "(required when rate_limit_applied_control is set)"
                )
            opti.set_value(self._p_u_prev, as_array("u_prev", u_prev, (nu,)))

        # set initial guess
        if prior is None:
            warm_start = self.create_warm_start(x0, reference)
            x_ig, u_ig, gamma_ig = warm_start.x, warm_start.u, warm_start.gamma_y
        else:
            x_ig, u_ig, gamma_ig = self._shift_prior(x0, prior)
        xs_ig, us_ig, gammas_ig = self.scale(x_ig, u_ig, gamma_ig)
        opti.set_initial(self._xs, xs_ig)
        opti.set_initial(self._us, us_ig)
        opti.set_initial(self._gammas, gammas_ig.reshape(1, N))

        # solve
        start = perf_counter()
        try:
            opti.solve()
        except RuntimeError as e:
            logger.debug("opti.solve raised: %s", e)
        solve_time = perf_counter() - start

        # extract the last iterate, whether or not it converged
        stats = opti.stats()
        return_status = str(stats.get("return_status", "unknown"))
        status = solver_status(return_status)
        if status != SolverStatus.SOLVED:
            logger.warning(
                "racing MPC solve ended with %s (%s)", status.name, return_status
            )
        x_opt, u_opt, gamma_opt = self.unscale(
            np.reshape(opti.debug.value(self._xs), (nx, N + 1)),
            np.reshape(opti.debug.value(self._us), (nu, N)),
            np.reshape(opti.debug.value(self._gammas), (N,)),
        )
        return MPCSolution(
            x=x_opt,
            u=u_opt,
            gamma_y=gamma_opt,
            status=status,
            return_status=return_status,
            iterations=int(stats.get("iter_count", 0)),
            cost=float(opti.debug.value(opti.f)),
            solve_time=solve_time,
        )

    def create_warm_start(
        self, x0: FloatArray, reference: HorizonReference
    ) -> MPCSolution:
        """
        Initial guess obtained by simulating the model under a simple policy: a
        proportional speed controller on the drive/brake force and a kinematic
        curvature feedforward on the steering. Every control is clipped to its static
        bounds and rate limits.
        """
        N = self.config.N
        dt = self.config.dt
        nx, nu = self.model.dimensions()
        x0, kappa_ref, v_ref = self._check_inputs(x0, reference)

        chassis = self.model.base_config.chassis_config
        aero = self.model.base_config.aero_config
        model_config = self.model.config
        delta_max = self.model.base_config.steer_config.max_steer
        m = chassis.total_mass
        k_v = 1.0  # speed error -> acceleration gain

        start = perf_counter()
        x = np.zeros((nx, N + 1))
        u = np.zeros((nu, N))
        gamma_y = np.zeros(N)
        x[:, 0] = x0
        for i in range(N):
            v = x[XIndex.V, i]

            # longitudinal: accelerate towards the reference and compensate resistances
            F_res = (
                0.5 * aero.drag_coeff * aero.air_density * aero.frontal_area * v**2
                + chassis.fr * m * g
            )
            F = m * k_v * (v_ref[i + 1] - v) + F_res
            if F >= 0.0:
                fd = min(F, model_config.Fd_max, model_config.P_max / max(v, 1e-3))
                if i > 0:
                    fd_rate = model_config.Fd_max / model_config.Td
                    fd = min(fd, u[UIndex.FD, i - 1] + fd_rate * dt)
                fb = 0.0
            else:
                fd = 0.0
                fb = max(F, model_config.Fb_max)
                if i > 0:
                    fb_rate = model_config.Fb_max / model_config.Tb
                    fb = max(fb, u[UIndex.FB, i - 1] + fb_rate * dt)

            # lateral: kinematic steering angle for the reference curvature
            s = np.clip(kappa_ref[i] * chassis.lr, -1.0, 1.0)
            delta = np.arctan(chassis.wheel_base / chassis.lr * np.tan(np.arcsin(s)))
            if i > 0:
                max_step = delta_max / self.model.steer_time_constant * dt
                delta_prev = u[UIndex.STEER, i - 1]
                delta = np.clip(delta, delta_prev - max_step, delta_prev + max_step)
            delta = np.clip(delta, -delta_max, delta_max)

            u[:, i] = (fd, fb, delta)
            gamma_y[i] = self.model.forward_dynamics(x[:, i], u[:, i])["gamma_y"]
            x[:, i + 1] = self.model.discrete_dynamics(x[:, i], u[:, i], dt)
            x[XIndex.V, i + 1] = max(x[XIndex.V, i + 1], 0.0)

        return MPCSolution(
            x=x,
            u=u,
            gamma_y=gamma_y,
            status=SolverStatus.UNSOLVED,
            return_status="warm_start",
            iterations=0,
            cost=float("nan"),
            solve_time=perf_counter() - start,
        )
