"""
Longitudinal Car-following MPC
==============================

Real-time Gauss-Newton MPC for longitudinal lead following

Modules:
    - vehicle_state: Ego/lead states and per-tick online parameters
    - parameters: MPCParameters and CostWeights
    - dynamics: Triple-integrator ego model
    - cost: Nonlinear least-squares safety/comfort residuals
    - integrator: RK4 horizon discretizer with sensitivities
    - condensing: Gauss-Newton linearization and condensing
    - qp_kernel: Hot-started OSQP kernel
    - mpc_controller: Real-time iteration solver
    - online_parameters: Online parameter feed and latest-value buffer
    - controllers: Stack-facing lead-following controller
    - simulator: Closed-loop scenario simulator
    - visualization: Plotting functions
    - utils: Logger and utilities
    - main: Command-line entry point
"""

from .vehicle_state import (
    EgoState,
    LeadState,
    OnlineParameters,
    virtual_lead,
    stopped_lead_correction,
)
from .parameters import MPCParameters, CostWeights, DEFAULT_INTERVALS
from .cost import (
    rw_distance,
    follow_const_m,
    desired_distance,
    norm_rw_error,
    stage_residual,
    terminal_residual,
)
from .trajectory import (
    SolverStatus,
    SolverEvent,
    NumericalDivergenceError,
    Stage,
    Trajectory,
    Solution,
)
from .integrator import RK4Integrator, HorizonDiscretizer
from .condensing import CondensedQP, linearize, condense
from .qp_kernel import OSQPKernel, QPResult, QPStatus, get_qp_stats
from .mpc_controller import LongitudinalMPC
from .online_parameters import OnlineParameterFeed, LatestValueBuffer
from .controllers import LeadFollowController, ControlCommand
from .simulator import Scenario, ScenarioSimulator, SCENARIOS, get_scenario
from .utils import Logger, SCRIPT_NAME, SCRIPT_VERSION

__version__ = "1.0.0"
__all__ = [
    # States and parameters
    "EgoState",
    "LeadState",
    "OnlineParameters",
    "virtual_lead",
    "stopped_lead_correction",
    "MPCParameters",
    "CostWeights",
    "DEFAULT_INTERVALS",
    # Cost
    "rw_distance",
    "follow_const_m",
    "desired_distance",
    "norm_rw_error",
    "stage_residual",
    "terminal_residual",
    # Trajectory and results
    "SolverStatus",
    "SolverEvent",
    "NumericalDivergenceError",
    "Stage",
    "Trajectory",
    "Solution",
    # Numerics
    "RK4Integrator",
    "HorizonDiscretizer",
    "CondensedQP",
    "linearize",
    "condense",
    "OSQPKernel",
    "QPResult",
    "QPStatus",
    "get_qp_stats",
    # Solver and controller
    "LongitudinalMPC",
    "OnlineParameterFeed",
    "LatestValueBuffer",
    "LeadFollowController",
    "ControlCommand",
    # Simulation
    "Scenario",
    "ScenarioSimulator",
    "SCENARIOS",
    "get_scenario",
    # Utils
    "Logger",
    "SCRIPT_NAME",
    "SCRIPT_VERSION",
]
