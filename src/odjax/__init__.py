"""
odjax is an orbit determination estimation core implemented in JAX.
"""

from .constants import R_EARTH, GM_EARTH

from .config import set_dtype, get_dtype

from .models import (
    DynamicsModel,
    MeasurementModel,
    Pair,
    constant_velocity,
    position_measurement,
    planar_two_body,
    range_2d,
)

from .integrators import propagate

from .estimation import (
    ConfigurationError,
    EstimationError,
    ObservabilityError,
    InnovationCovarianceError,
    EstimatorOptions,
    EstimationResult,
    RestartRecord,
    SolveForMap,
    run_sequential,
    restart_sequential,
    run_batch,
)
