# Copyright (c) 2024. Tudor Oancea
from typing import ClassVar, Mapping, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, model_validator

from . import constants as c
from .errors import ConfigurationError

__all__ = [
    "ChassisConfig",
    "AeroConfig",
    "TyreConfig",
    "PowertrainConfig",
    "BrakeConfig",
    "SteerConfig",
    "BaseVehicleConfig",
    "DoubleTrackPlanarModelConfig",
    "RacingMPCConfig",
    "load_config",
    "sample_base_vehicle_config",
    "sample_model_config",
    "sample_mpc_config",
]


class _Config(BaseModel):
    """
    Frozen configuration model. Subclasses list the fields that must be strictly
    positive and the ones that must lie in [0, 1]; violations raise a
    ConfigurationError straight out of the constructor.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    positive_fields: ClassVar[tuple[str, ...]] = ()
    fraction_fields: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="after")
    def check_ranges(self):
        name = type(self).__name__
        for field in self.positive_fields:
            value = getattr(self, field)
            values = value if isinstance(value, tuple) else (value,)
            if any(not v > 0.0 for v in values):
                raise ConfigurationError(
                    f"{name}.{field} must be strictly positive, got {value}"
                )
        for field in self.fraction_fields:
            value = getattr(self, field)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(
                    f"{name}.{field} must lie in [0, 1], got {value}"
                )
        return self


class ChassisConfig(_Config):
    total_mass: float
    moi: float  # yaw moment of inertia
    wheel_base: float
    cg_ratio: float  # fraction of the wheelbase between CoG and front axle
    tw_f: float
    tw_r: float
    fr: float  # rolling resistance coefficient
    cg_height: float

    positive_fields = ("total_mass", "moi", "wheel_base", "tw_f", "tw_r", "cg_height")
    fraction_fields = ("cg_ratio", "fr")

    @model_validator(mode="after")
    def check_cg(self):
        if self.cg_ratio in (0.0, 1.0):
            raise ConfigurationError("ChassisConfig.cg_ratio must lie in (0, 1)")
        return self

    @property
    def lf(self) -> float:
        return self.cg_ratio * self.wheel_base

    @property
    def lr(self) -> float:
        return self.wheel_base - self.lf


class AeroConfig(_Config):
    cl_f: float
    cl_r: float
    drag_coeff: float
    frontal_area: float
    air_density: float

    positive_fields = ("frontal_area", "air_density")


class TyreConfig(_Config):
    pacejka_b: float
    pacejka_c: float
    pacejka_e: float
    pacejka_fz0: float
    pacejka_eps: float = 0.0

    positive_fields = ("pacejka_b", "pacejka_c", "pacejka_fz0")


class PowertrainConfig(_Config):
    kd: float  # front drive force bias

    fraction_fields = ("kd",)


class BrakeConfig(_Config):
    bias: float  # front brake force bias

    fraction_fields = ("bias",)


class SteerConfig(_Config):
    max_steer: float
    max_steer_rate: float

    positive_fields = ("max_steer", "max_steer_rate")


class BaseVehicleConfig(_Config):
    chassis_config: ChassisConfig
    aero_config: AeroConfig
    front_tyre_config: TyreConfig
    rear_tyre_config: TyreConfig
    powertrain_config: PowertrainConfig
    front_brake_config: BrakeConfig
    steer_config: SteerConfig


class DoubleTrackPlanarModelConfig(_Config):
    mu: float  # tyre-track friction coefficient
    kroll_f: float  # front roll moment distribution
    P_max: float
    Fd_max: float
    Fb_max: float  # negative
    Td: float  # drive actuator time constant
    Tb: float  # brake actuator time constant
    min_speed: float = c.v_min_model
    load_transfer_iterations: int = 1

    positive_fields = ("mu", "P_max", "Fd_max", "Td", "Tb", "min_speed")
    fraction_fields = ("kroll_f",)

    @model_validator(mode="after")
    def check_signs(self):
        if not self.Fb_max < 0.0:
            raise ConfigurationError(
                f"DoubleTrackPlanarModelConfig.Fb_max must be negative, got {self.Fb_max}"
            )
        if self.load_transfer_iterations < 0:
            raise ConfigurationError(
                "DoubleTrackPlanarModelConfig.load_transfer_iterations must be >= 0"
            )
        return self


class RacingMPCConfig(_Config):
    N: int  # horizon length
    dt: float  # stage duration
    scale_x: tuple[float, float, float, float, float, float]
    scale_u: tuple[float, float, float]
    scale_gamma_y: float

    # cost weights
    q_v: float = 1.0
    q_kappa: float = 10.0
    q_beta: float = 0.1
    r_u: tuple[float, float, float] = (1e-2, 1e-2, 1e-1)
    r_du: tuple[float, float, float] = (1e-1, 1e-1, 10.0)
    q_progress: float = 0.0

    # solver
    max_iter: int = 500
    tol: float = 1e-6
    constr_viol_tol: float = 1e-6
    max_cpu_time: Optional[float] = None
    print_level: int = 0

    # rate limit the first stage against the control applied in the last cycle
    rate_limit_applied_control: bool = False

    positive_fields = (
        "N",
        "dt",
        "scale_x",
        "scale_u",
        "scale_gamma_y",
        "max_iter",
        "tol",
    )


ConfigT = TypeVar("ConfigT", bound=_Config)


def load_config(cls: type[ConfigT], data: Mapping) -> ConfigT:
    """Build a config model from a (possibly nested) mapping, e.g. a parsed parameter file."""
    return cls.model_validate(dict(data))


def sample_base_vehicle_config() -> BaseVehicleConfig:
    return BaseVehicleConfig(
        chassis_config=ChassisConfig(
            total_mass=c.m,
            moi=c.I_z,
            wheel_base=c.wheelbase,
            cg_ratio=c.cg_ratio,
            tw_f=c.front_axle_track,
            tw_r=c.rear_axle_track,
            fr=c.f_r,
            cg_height=c.z_CG,
        ),
        aero_config=AeroConfig(
            cl_f=c.C_l_F,
            cl_r=c.C_l_R,
            drag_coeff=c.C_d,
            frontal_area=c.A_front,
            air_density=c.rho_air,
        ),
        front_tyre_config=TyreConfig(
            pacejka_b=c.B_F,
            pacejka_c=c.C_F,
            pacejka_e=c.E_F,
            pacejka_fz0=c.Fz0_F,
            pacejka_eps=c.eps_F,
        ),
        rear_tyre_config=TyreConfig(
            pacejka_b=c.B_R,
            pacejka_c=c.C_R,
            pacejka_e=c.E_R,
            pacejka_fz0=c.Fz0_R,
            pacejka_eps=c.eps_R,
        ),
        powertrain_config=PowertrainConfig(kd=c.k_drive_F),
        front_brake_config=BrakeConfig(bias=c.k_brake_F),
        steer_config=SteerConfig(max_steer=c.delta_max, max_steer_rate=c.delta_dot_max),
    )


def sample_model_config(**overrides) -> DoubleTrackPlanarModelConfig:
    return DoubleTrackPlanarModelConfig(
        **(
            dict(
                mu=c.mu,
                kroll_f=c.k_roll_F,
                P_max=c.P_max,
                Fd_max=c.Fd_max,
                Fb_max=c.Fb_max,
                Td=c.t_drive,
                Tb=c.t_brake,
            )
            | overrides
        )
    )


def sample_mpc_config(**overrides) -> RacingMPCConfig:
    return RacingMPCConfig(
        **(
            dict(
                N=20,
                dt=0.05,
                scale_x=(100.0, 100.0, 3.14, 1.0, 0.1, 20.0),
                scale_u=(c.Fd_max, -c.Fb_max, c.delta_max),
                scale_gamma_y=1000.0,
            )
            | overrides
        )
    )
