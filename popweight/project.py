import logging
import time

import pandas as pd

from .bounds import Ratio_Bounds
from .config import ConfigError, IPU_Parameters, load_parameters
from .convergence import ConvergenceState
from .data import SeedTable, StructuralError, TargetList, TargetValidationError
from .output import IPU_Results
from .reweighting import Reweighting_DS, Run_IPU, initialize_weights
from .targets import Target_Preprocessor


class IPU_Procedure(object):
    """Runs one IPU weighting from validated inputs to results."""

    def __init__(self, primary_seed, primary_targets, parameters,
                 secondary_seed=None, secondary_targets=None):
        self.primary_seed = primary_seed
        self.primary_targets = primary_targets
        self.secondary_seed = secondary_seed
        self.secondary_targets = secondary_targets
        self.parameters = parameters
        self.state = ConvergenceState(verbose=parameters.verbose)
        self.t = time.time()

    def run(self):
        self._preprocess_targets()
        self._create_ds()
        self._initialize_weights()
        self._run_weighting()
        return self._report_results()

    def _preprocess_targets(self):
        self.preprocessor = Target_Preprocessor(
            self.primary_seed, self.primary_targets,
            self.secondary_seed, self.secondary_targets,
            primary_id=self.primary_seed.id_field, state=self.state)
        self.primary_targets, self.secondary_targets = self.preprocessor.run()
        self.linked_secondary_seed = self.preprocessor.linked_secondary_seed
        logging.info(f"Target preprocessing completed in: {time.time() - self.t:.4f}")

    def _create_ds(self):
        self.constraints = Reweighting_DS().create_ds(
            self.primary_seed, self.primary_targets,
            self.linked_secondary_seed, self.secondary_targets)

        anchor = self.primary_targets.anchor
        self.ratio_bounds = Ratio_Bounds(
            anchor, self.primary_seed.data[anchor.geo_field].values,
            self.parameters.min_weight,
            self.parameters.min_ratio, self.parameters.max_ratio)

    def _initialize_weights(self):
        self.initial_weights = initialize_weights(self.primary_seed,
                                                  self.parameters.min_weight)

    def _run_weighting(self):
        self.run_ipu_obj = Run_IPU(self.constraints, self.initial_weights,
                                   self.parameters, self.state, self.ratio_bounds)
        self.sample_weights = self.run_ipu_obj.run_ipu()
        logging.info(f"Reweighting completed in: {time.time() - self.t:.4f}")

    def _report_results(self):
        self.results = IPU_Results(
            self.primary_seed, self.primary_targets, self.constraints,
            self.sample_weights, self.state,
            secondary_seed=self.linked_secondary_seed,
            secondary_targets=self.secondary_targets)
        logging.info(f"Results completed in: {time.time() - self.t:.4f}")
        return self.results


def _as_seed(seed, id_field, weight_field=None, unique_ids=True):
    if isinstance(seed, SeedTable):
        return seed
    if isinstance(seed, pd.DataFrame):
        return SeedTable(seed, id_field=id_field, weight_field=weight_field,
                         unique_ids=unique_ids)
    raise TargetValidationError(
        f"Seed must be a DataFrame or SeedTable, got {type(seed).__name__}")


def _as_parameters(parameters, overrides):
    if parameters is None:
        parameters = IPU_Parameters()
    elif isinstance(parameters, dict):
        parameters = IPU_Parameters(**parameters)
    elif not isinstance(parameters, IPU_Parameters):
        raise ConfigError(
            f"parameters must be IPU_Parameters or a dict, got {type(parameters).__name__}")
    if overrides:
        parameters = parameters.updated(**overrides)
    return parameters


def ipu(primary_seed, primary_targets, secondary_seed=None, secondary_targets=None,
        primary_id="id", weight_field=None, parameters=None, **overrides):
    """Weight a seed so its weighted totals match the targets.

    primary_seed: DataFrame (or SeedTable) with one row per primary record, a
        unique `primary_id` column, one or more `geo_` columns and the
        attribute columns named by the primary targets.
    primary_targets: {attribute: DataFrame} (or TargetList). Each DataFrame has
        one `geo_` column and one column per category value. The first table
        is the anchor every other table is scaled to.
    secondary_seed, secondary_targets: optional second tier. Secondary rows
        link to primary records through `primary_id`.
    parameters: IPU_Parameters or dict; keyword overrides such as
        `max_iterations=500` or `max_ratio=5` are applied on top.

    Returns IPU_Results. Failing to converge is reported in `results.status`,
    not raised.
    """
    parameters = _as_parameters(parameters, overrides)
    primary_seed = _as_seed(primary_seed, primary_id, weight_field)
    primary_targets = TargetList.coerce(primary_targets, "primary")
    if secondary_seed is not None:
        if (isinstance(secondary_seed, pd.DataFrame)
                and primary_id not in secondary_seed.columns):
            raise StructuralError(
                f"Secondary seed has no linkage column '{primary_id}'")
        secondary_seed = _as_seed(secondary_seed, primary_id, unique_ids=False)
    if secondary_targets is not None:
        secondary_targets = TargetList.coerce(secondary_targets, "secondary")

    procedure = IPU_Procedure(primary_seed, primary_targets, parameters,
                              secondary_seed, secondary_targets)
    return procedure.run()


def ipu_from_config(config_path, primary_seed, primary_targets, secondary_seed=None,
                    secondary_targets=None, primary_id="id", weight_field=None,
                    log_level=None, **overrides):
    """Run `ipu` with parameters read from a YAML file (`parameters: {ipu: ...}`)."""
    if log_level is not None:
        logging.basicConfig(level=log_level)
    t = time.time()
    parameters = load_parameters(config_path)
    results = ipu(primary_seed, primary_targets, secondary_seed, secondary_targets,
                  primary_id=primary_id, weight_field=weight_field,
                  parameters=parameters, **overrides)
    logging.info(f"Time it took: {time.time() - t:.4f}")
    return results
