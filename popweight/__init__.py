"""PopWeight package.

Iterative Proportional Updating (IPU) for survey expansion and population
synthesis:

* Target preprocessing: validate target tables against the seed and rescale
  each tier to its first (anchor) table.
* Reweighting: multiplicative per-category adjustment of record weights over a
  primary tier (e.g. households) and an optional, damped secondary tier
  (e.g. persons), with a weight floor and optional min/max ratio bounds.
* Results: final weights, target comparisons and weight distribution summary.
"""

from .config import Config, ConfigError, IPU_Parameters, load_parameters
from .convergence import (CONVERGED, DIVERGED, INFEASIBLE, MAX_ITERATIONS,
                          ConvergenceState)
from .data import (IPUError, SeedTable, StructuralError, TargetList, TargetTable,
                   TargetValidationError)
from .output import IPU_Results
from .project import ipu, ipu_from_config

__version__ = '0.1.0'
