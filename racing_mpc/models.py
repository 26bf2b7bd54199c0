# Copyright (c) 2024. Tudor Oancea
import logging
from abc import ABC, abstractmethod
from time import perf_counter
from typing import Optional

import numpy as np
from casadi import (
    MX,
    SX,
    Function,
    Opti,
    atan,
    cos,
    fmax,
    sin,
    vertcat,
)

from .config import BaseVehicleConfig, DoubleTrackPlanarModelConfig, TyreConfig
from .constants import g
from .errors import CompilationError, ConfigurationError
from .utils import FloatArray, TyreIndex, UIndex, XIndex, align_yaw, as_array

__all__ = ["BaseVehicleModel", "DoubleTrackPlanarModel", "magic_formula"]

logger = logging.getLogger(__name__)


def magic_formula(alpha: SX, Fz: SX, mu: float, tyre: TyreConfig) -> SX:
    """lateral tyre force with the load sensitive extension of the Pacejka magic formula"""
    B = tyre.pacejka_b
    C = tyre.pacejka_c
    E = tyre.pacejka_e
    return (
        mu
        * Fz
        * (1.0 + tyre.pacejka_eps * Fz / tyre.pacejka_fz0)
        * sin(C * atan(B * alpha - E * (B * alpha - atan(B * alpha))))
    )


class BaseVehicleModel(ABC):
    nx: int
    nu: int
    base_config: BaseVehicleConfig

    def __init__(self, base_config: BaseVehicleConfig) -> None:
        super().__init__()
        self.base_config = base_config

    @classmethod
    def dimensions(cls) -> tuple[int, int]:
        return cls.nx, cls.nu

    @abstractmethod
    def forward_dynamics(self, x: FloatArray, u: FloatArray) -> dict:
        pass

    @abstractmethod
    def append_stage_constraints(
        self,
        opti: Opti,
        x: MX,
        u: MX,
        gamma_y: MX,
        xip1: MX,
        uip1: Optional[MX],
        t: float,
    ) -> None:
        pass

    def discrete_dynamics(self, x: FloatArray, u: FloatArray, dt: float) -> FloatArray:
        """one RK4 step of the continuous dynamics with constant control"""

        def f(x_: FloatArray) -> FloatArray:
            return self.forward_dynamics(x_, u)["x_dot"]

        x = np.asarray(x, dtype=np.float64)
        k1 = f(x)
        k2 = f(x + dt / 2 * k1)
        k3 = f(x + dt / 2 * k2)
        k4 = f(x + dt * k3)
        return x + dt / 6 * (k1 + 2 * k2 + 2 * k3 + k4)


class DoubleTrackPlanarModel(BaseVehicleModel):
    """
    Planar double track (four wheel) model.

    x = (X, Y, yaw, yaw rate, slip angle, speed)
    u = (drive force, brake force, front wheel angle)

    The lateral load transfer gamma_y is an auxiliary variable: the vertical loads
    depend on it and it depends on the lateral forces produced by those loads. In the
    NLP it is a decision variable tied down by an equality constraint, in
    forward_dynamics it is resolved by fixed point iteration starting from 0.

    The slip angles and the slip angle derivative divide by the speed. Below
    config.min_speed these terms are evaluated at min_speed, so the outputs stay
    finite but the lateral dynamics are only approximate.
    """

    nx = 6
    nu = 3

    config: DoubleTrackPlanarModelConfig
    dynamics: Function
    lateral_load_transfer: Function
    hermite_simpson: Function

    def __init__(
        self,
        base_config: BaseVehicleConfig,
        config: DoubleTrackPlanarModelConfig,
    ) -> None:
        if not isinstance(base_config, BaseVehicleConfig) or not isinstance(
            config, DoubleTrackPlanarModelConfig
        ):
            raise ConfigurationError(
                "DoubleTrackPlanarModel expects a BaseVehicleConfig and a "
                "DoubleTrackPlanarModelConfig"
            )
        super().__init__(base_config)
        self.config = config
        start = perf_counter()
        try:
            self.compile_dynamics()
        except (RuntimeError, NotImplementedError, TypeError) as e:
            raise CompilationError(f"could not compile double track dynamics: {e}") from e
        logger.info("compiled double track dynamics in %.3f s", perf_counter() - start)

    @property
    def steer_time_constant(self) -> float:
        steer = self.base_config.steer_config
        return steer.max_steer / steer.max_steer_rate

    def forward_dynamics(self, x: FloatArray, u: FloatArray) -> dict:
        x = as_array("x", x, (self.nx,))
        u = as_array("u", u, (self.nu,))

        gamma_y = 0.0
        for _ in range(self.config.load_transfer_iterations):
            gamma_y = float(self.lateral_load_transfer(x, u, gamma_y))

        out = self.dynamics(x=x, u=u, gamma_y=gamma_y)
        res = {name: val.full().ravel() for name, val in out.items()}
        res["gamma_y"] = gamma_y
        return res

    def append_stage_constraints(
        self,
        opti: Opti,
        x: MX,
        u: MX,
        gamma_y: MX,
        xip1: MX,
        uip1: Optional[MX],
        t: float,
    ) -> None:
        """
        Add the constraints of the transition from stage i to stage i + 1. uip1 is
        only used for the actuator rate limits, which are skipped when it is None.
        The speed bound applies to xip1, the first state of the horizon is fixed by
        the initial state constraint instead.
        """
        chassis = self.base_config.chassis_config
        delta_max = self.base_config.steer_config.max_steer
        mu = self.config.mu
        P_max = self.config.P_max
        Fd_max = self.config.Fd_max
        Fb_max = self.config.Fb_max

        v = x[XIndex.V]
        v_next = xip1[XIndex.V]
        fd = u[UIndex.FD]
        fb = u[UIndex.FB]
        delta = u[UIndex.STEER]

        # dynamics constraint
        opti.subject_to(self.hermite_simpson(x, u, gamma_y, xip1, t) == 0)

        # tyre constraints
        out = self.dynamics(x=x, u=u, gamma_y=gamma_y)
        Fx_ij = out["Fx_ij"]
        Fy_ij = out["Fy_ij"]
        Fz_ij = out["Fz_ij"]
        for i in TyreIndex:
            F_max = mu * Fz_ij[i]
            opti.subject_to((Fx_ij[i] / F_max) ** 2 + (Fy_ij[i] / F_max) ** 2 <= 1)

        # load transfer constraint
        opti.subject_to(
            gamma_y
            == self._lateral_load_transfer_expr(
                Fx_ij, Fy_ij, delta, chassis.cg_height, chassis.tw_f, chassis.tw_r
            )
        )

        # static actuator constraints
        opti.subject_to(v_next >= 0.0)
        opti.subject_to(v * fd <= P_max)
        opti.subject_to(opti.bounded(0.0, fd, Fd_max))
        opti.subject_to(opti.bounded(Fb_max, fb, 0.0))
        opti.subject_to((fd * fb) ** 2 <= 1.0)
        opti.subject_to(opti.bounded(-delta_max, delta, delta_max))

        # dynamic actuator constraints
        if uip1 is not None:
            self.append_rate_constraints(opti, u, uip1, t)

    def append_rate_constraints(self, opti: Opti, u: MX, uip1: MX, t: float) -> None:
        """first order actuator lag: bound the change from u to uip1 over t"""
        delta_max = self.base_config.steer_config.max_steer
        Tdelta = self.steer_time_constant
        opti.subject_to(
            (uip1[UIndex.FD] - u[UIndex.FD]) / t <= self.config.Fd_max / self.config.Td
        )
        opti.subject_to(
            (uip1[UIndex.FB] - u[UIndex.FB]) / t >= self.config.Fb_max / self.config.Tb
        )
        opti.subject_to(
            opti.bounded(
                -delta_max / Tdelta,
                (uip1[UIndex.STEER] - u[UIndex.STEER]) / t,
                delta_max / Tdelta,
            )
        )

    @staticmethod
    def _lateral_load_transfer_expr(Fx_ij, Fy_ij, delta, hcog, twf, twr):
        return (
            hcog
            / (0.5 * (twf + twr))
            * (
                Fy_ij[TyreIndex.RL]
                + Fy_ij[TyreIndex.RR]
                + (Fx_ij[TyreIndex.FL] + Fx_ij[TyreIndex.FR]) * sin(delta)
                + (Fy_ij[TyreIndex.FL] + Fy_ij[TyreIndex.FR]) * cos(delta)
            )
        )

    def compile_dynamics(self) -> None:
        x = SX.sym("x", self.nx)
        u = SX.sym("u", self.nu)
        gamma_y = SX.sym("gamma_y")  # lateral load transfer

        phi = x[XIndex.YAW]
        omega = x[XIndex.VYAW]
        beta = x[XIndex.BETA]
        v = x[XIndex.V]
        fd = u[UIndex.FD]
        fb = u[UIndex.FB]
        delta = u[UIndex.STEER]
        v_sq = v * v
        v_lat = fmax(v, self.config.min_speed)

        chassis = self.base_config.chassis_config
        aero = self.base_config.aero_config
        kd_f = self.base_config.powertrain_config.kd  # front drive force bias
        kb_f = self.base_config.front_brake_config.bias  # front brake force bias
        m = chassis.total_mass
        Jzz = chassis.moi
        l = chassis.wheel_base
        lf = chassis.lf
        lr = chassis.lr
        twf = chassis.tw_f
        twr = chassis.tw_r
        fr = chassis.fr
        hcog = chassis.cg_height
        kroll_f = self.config.kroll_f
        mu = self.config.mu
        q_A = 0.5 * aero.air_density * aero.frontal_area  # 0.5 * rho * A
        tyre_f = self.base_config.front_tyre_config
        tyre_r = self.base_config.rear_tyre_config

        # longitudinal tyre forces
        Fx_f = 0.5 * kd_f * fd + 0.5 * kb_f * fb - 0.5 * fr * m * g * lr / l
        Fx_r = 0.5 * (1 - kd_f) * fd + 0.5 * (1 - kb_f) * fb - 0.5 * fr * m * g * lf / l
        Fx_fl = Fx_fr = Fx_f
        Fx_rl = Fx_rr = Fx_r

        # longitudinal acceleration
        ax = (fd + fb - aero.drag_coeff * q_A * v_sq - fr * m * g) / m

        # vertical tyre forces
        Fz_f = (
            0.5 * m * g * lr / l - 0.5 * hcog / l * m * ax + 0.5 * aero.cl_f * q_A * v_sq
        )
        Fz_r = (
            0.5 * m * g * lf / l + 0.5 * hcog / l * m * ax + 0.5 * aero.cl_r * q_A * v_sq
        )
        Fz_fl = Fz_f - kroll_f * gamma_y
        Fz_fr = Fz_f + kroll_f * gamma_y
        Fz_rl = Fz_r - (1 - kroll_f) * gamma_y
        Fz_rr = Fz_r + (1 - kroll_f) * gamma_y

        # tyre slip angles
        v_long = v_lat * cos(beta)
        v_side = v_lat * sin(beta)
        a_fl = delta - atan((lf * omega + v_side) / (v_long - 0.5 * twf * omega))
        a_fr = delta - atan((lf * omega + v_side) / (v_long + 0.5 * twf * omega))
        a_rl = atan((lr * omega - v_side) / (v_long - 0.5 * twr * omega))
        a_rr = atan((lr * omega - v_side) / (v_long + 0.5 * twr * omega))

        # lateral tyre forces
        Fy_fl = magic_formula(a_fl, Fz_fl, mu, tyre_f)
        Fy_fr = magic_formula(a_fr, Fz_fr, mu, tyre_f)
        Fy_rl = magic_formula(a_rl, Fz_rl, mu, tyre_r)
        Fy_rr = magic_formula(a_rr, Fz_rr, mu, tyre_r)

        # equations of motion
        F_drag = aero.drag_coeff * q_A * v_sq
        v_dot = (
            (Fx_rl + Fx_rr) * cos(beta)
            + (Fx_fl + Fx_fr) * cos(delta - beta)
            + (Fy_rl + Fy_rr) * sin(beta)
            - (Fy_fl + Fy_fr) * sin(delta - beta)
            - F_drag * cos(beta)
        ) / m
        beta_dot = -omega + (
            -(Fx_rl + Fx_rr) * sin(beta)
            + (Fx_fl + Fx_fr) * sin(delta - beta)
            + (Fy_rl + Fy_rr) * cos(beta)
            + (Fy_fl + Fy_fr) * cos(delta - beta)
            + F_drag * sin(beta)
        ) / (m * v_lat)
        omega_dot = (
            (Fx_rr - Fx_rl) * twr / 2
            - (Fy_rl + Fy_rr) * lr
            + ((Fx_fr - Fx_fl) * cos(delta) + (Fy_fl - Fy_fr) * sin(delta)) * twf / 2
            + ((Fy_fl + Fy_fr) * cos(delta) + (Fx_fl + Fx_fr) * sin(delta)) * lf
        ) / Jzz

        x_dot = vertcat(
            v * cos(phi + beta),
            v * sin(phi + beta),
            omega,
            omega_dot,
            beta_dot,
            v_dot,
        )
        Fx_ij = vertcat(Fx_fl, Fx_fr, Fx_rl, Fx_rr)
        Fy_ij = vertcat(Fy_fl, Fy_fr, Fy_rl, Fy_rr)
        Fz_ij = vertcat(Fz_fl, Fz_fr, Fz_rl, Fz_rr)

        self.dynamics = Function(
            "double_track_planar_model",
            [x, u, gamma_y],
            [x_dot, Fx_ij, Fy_ij, Fz_ij],
            ["x", "u", "gamma_y"],
            ["x_dot", "Fx_ij", "Fy_ij", "Fz_ij"],
        )
        self.lateral_load_transfer = Function(
            "lateral_load_transfer",
            [x, u, gamma_y],
            [self._lateral_load_transfer_expr(Fx_ij, Fy_ij, delta, hcog, twf, twr)],
            ["x", "u", "gamma_y"],
            ["gamma_y_next"],
        )

        # Hermite-Simpson collocation with zero order hold on u and gamma_y
        xip1 = SX.sym("xip1", self.nx)
        t = SX.sym("t")
        xip1_aligned = vertcat(
            xip1[: int(XIndex.YAW)],
            align_yaw(xip1[XIndex.YAW], phi),
            xip1[int(XIndex.YAW) + 1 :],
        )
        f1 = self.dynamics(x, u, gamma_y)[0]
        f2 = self.dynamics(xip1_aligned, u, gamma_y)[0]
        xm = 0.5 * (x + xip1_aligned) + (t / 8.0) * (f1 - f2)
        fm = self.dynamics(xm, u, gamma_y)[0]
        self.hermite_simpson = Function(
            "hermite_simpson",
            [x, u, gamma_y, xip1, t],
            [x + (t / 6.0) * (f1 + 4 * fm + f2) - xip1_aligned],
            ["x", "u", "gamma_y", "xip1", "t"],
            ["defect"],
        )
