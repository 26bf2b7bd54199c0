# Copyright (c) 2024. Tudor Oancea
import logging
from typing import Callable, Optional

import numpy as np
from icecream import ic
from strongpods import PODS
from tqdm import trange

from .config import sample_base_vehicle_config, sample_model_config, sample_mpc_config
from .errors import SolverStatus
from .models import DoubleTrackPlanarModel
from .mpc import HorizonReference, MPCSolution, RacingMPC
from .utils import FloatArray, XIndex

__all__ = ["ClosedLoopLog", "closed_loop", "constant_curvature_reference", "main"]

logger = logging.getLogger(__name__)


@PODS
class ClosedLoopLog:
    x: np.ndarray  # (n_steps+1, nx) executed states
    u: np.ndarray  # (n_steps, nu) applied controls
    statuses: list
    runtimes: np.ndarray  # seconds


def constant_curvature_reference(
    N: int, curvature: float, speed: float
) -> Callable[[FloatArray], HorizonReference]:
    def reference_fn(x: FloatArray) -> HorizonReference:
        return HorizonReference(
            curvature=np.full(N + 1, curvature), speed=np.full(N + 1, speed)
        )

    return reference_fn


def closed_loop(
    mpc: RacingMPC,
    x0: FloatArray,
    reference_fn: Callable[[FloatArray], HorizonReference],
    n_steps: int,
    progress_bar: bool = False,
) -> ClosedLoopLog:
    """
    Receding horizon simulation: at each step solve the MPC from the current state,
    apply the first control for one stage duration and integrate the model. The
    previous solution seeds the next solve. Stops early when the problem becomes
    infeasible.
    """
    model = mpc.model
    dt = mpc.config.dt
    x = [np.asarray(x0, dtype=np.float64)]
    u = []
    statuses = []
    runtimes = []
    prior: Optional[MPCSolution] = None
    u_prev = None
    for i in trange(n_steps, disable=not progress_bar):
        if mpc.config.rate_limit_applied_control and u_prev is None:
            u_prev = mpc.create_warm_start(x[-1], reference_fn(x[-1])).first_control
        solution = mpc.solve(x[-1], reference_fn(x[-1]), prior=prior, u_prev=u_prev)
        statuses.append(solution.status)
        runtimes.append(solution.solve_time)
        if solution.status == SolverStatus.INFEASIBLE:
            logger.warning("closed loop stopped at step %d: infeasible problem", i)
            break
        u.append(solution.first_control.copy())
        x.append(model.discrete_dynamics(x[-1], u[-1], dt))
        prior = solution if solution.success else None
        u_prev = u[-1]

    return ClosedLoopLog(
        x=np.array(x),
        u=np.array(u).reshape(-1, model.nu),
        statuses=statuses,
        runtimes=np.array(runtimes),
    )


def main():
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
    )
    model = DoubleTrackPlanarModel(sample_base_vehicle_config(), sample_model_config())
    mpc = RacingMPC(sample_mpc_config(), model)

    x0 = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 15.0])
    reference_fn = constant_curvature_reference(mpc.N, curvature=1 / 30, speed=15.0)
    log = closed_loop(mpc, x0, reference_fn, n_steps=100, progress_bar=True)

    solved = sum(s == SolverStatus.SOLVED for s in log.statuses)
    ic(solved, len(log.statuses))
    ic(1000 * np.mean(log.runtimes), 1000 * np.max(log.runtimes))
    ic(log.x[-1], np.mean(log.x[:, XIndex.V]))


if __name__ == "__main__":
    main()
