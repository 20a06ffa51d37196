import logging
import time

import numpy as np
import pandas as pd

from .convergence import Convergence_Monitor


class Constraint_DS(object):
    """One target table laid out against the primary records.

    `contrib[category]` holds, for every primary record, how much it counts
    towards `category`: 0/1 for primary attributes, the number of linked
    secondary records for secondary attributes. `row_idx[category]` lists the
    records with a positive contribution inside a targeted geography.
    """

    def __init__(self, tier, table, geo_codes, row_idx, contrib):
        self.tier = tier
        self.table = table
        self.name = table.name
        self.geo_field = table.geo_field
        self.geos = table.geos
        self.categories = table.categories
        self.targets = table.values.values
        self.geo_codes = geo_codes
        self.row_idx = row_idx
        self.contrib = contrib
        self.contrib_totals = self._contrib_totals()

    def _contrib_totals(self):
        totals = np.zeros(self.targets.shape, dtype=float)
        for j, category in enumerate(self.categories):
            rows = self.row_idx[category]
            totals[:, j] = np.bincount(self.geo_codes[rows],
                                       weights=self.contrib[category][rows],
                                       minlength=len(self.geos))
        return totals

    def weighted_sum(self, sample_weights, category):
        """Weighted total of one category for every geography of the table."""
        rows = self.row_idx[category]
        return np.bincount(self.geo_codes[rows],
                           weights=sample_weights[rows] * self.contrib[category][rows],
                           minlength=len(self.geos))

    def observed(self, sample_weights):
        observed = np.zeros(self.targets.shape, dtype=float)
        for j, category in enumerate(self.categories):
            observed[:, j] = self.weighted_sum(sample_weights, category)
        return observed

    def __repr__(self):
        return f"Constraint_DS({self.tier!r}, {self.name!r}, geos={len(self.geos)})"


class Reweighting_DS(object):
    def __init__(self):
        pass

    def get_sample_restructure(self, sample, variable_name, hid_name, hids, categories):
        """Count records per (hid, category) into a hid x category table."""
        sample_restruct = (sample.groupby([hid_name, variable_name])
                           .size()
                           .unstack(level=1)
                           .fillna(0)
                           )
        sample_restruct = sample_restruct.reindex(index=hids, columns=categories,
                                                  fill_value=0).fillna(0)
        return sample_restruct

    def get_row_idx(self, sample_restruct, geo_codes):
        row_idx = {}
        contrib = {}
        in_geo = geo_codes >= 0
        for column in sample_restruct.columns.values.tolist():
            values = np.array(sample_restruct[column].values, order="C", dtype=float)
            row_idx[column] = np.where((values > 0) & in_geo)[0]
            contrib[column] = values
        return (row_idx, contrib)

    def get_geo_codes(self, table, geo_values):
        """Position of each record's geography in the table, -1 if untargeted."""
        return pd.Index(table.geos).get_indexer(geo_values)

    def create_constraint_ds(self, tier, table, seed, primary_seed, hid_name):
        sample = pd.DataFrame({
            hid_name: seed.data[hid_name].values,
            table.name: seed.categories(table.name).values,
        })
        hids = primary_seed.data[hid_name].values
        sample_restruct = self.get_sample_restructure(
            sample, table.name, hid_name, hids, table.categories)
        geo_codes = self.get_geo_codes(table, primary_seed.data[table.geo_field].values)
        row_idx, contrib = self.get_row_idx(sample_restruct, geo_codes)
        return Constraint_DS(tier, table, geo_codes, row_idx, contrib)

    def create_ds(self, primary_seed, primary_targets, secondary_seed=None,
                  secondary_targets=None):
        """Constraint structures for every table, primary tier first."""
        hid_name = primary_seed.id_field
        constraints = [self.create_constraint_ds("primary", table, primary_seed,
                                                 primary_seed, hid_name)
                       for table in primary_targets]
        if secondary_targets is not None:
            constraints += [self.create_constraint_ds("secondary", table, secondary_seed,
                                                      primary_seed, hid_name)
                            for table in secondary_targets]
        return constraints


def initialize_weights(primary_seed, min_weight):
    """Starting weights (seed weight column or 1.0), floored at `min_weight`."""
    sample_weights = np.array(primary_seed.initial_weights(), dtype=float, order="C")
    return np.maximum(sample_weights, min_weight)


class Run_IPU(object):
    """Iterative proportional updating over a fixed list of constraints.

    Tables are applied in order, one category at a time, so later categories
    see the adjustments of earlier ones within the same pass.
    """

    def __init__(self, constraints, initial_weights, parameters, state,
                 ratio_bounds=None):
        self.constraints = constraints
        self.initial_weights = initial_weights
        self.parameters = parameters
        self.state = state
        self.ratio_bounds = ratio_bounds
        self.max_iterations = parameters.max_iterations
        self.min_weight = parameters.min_weight
        self.secondary_importance = parameters.secondary_importance
        self.has_secondary = any(c.tier == "secondary" for c in constraints)
        self.monitor = Convergence_Monitor(parameters, state, self.has_secondary)
        self.sample_weights = None

    def run_ipu(self):
        t = time.time()
        sample_weights = np.maximum(
            np.array(self.initial_weights, dtype=float, order="C"), self.min_weight)
        iteration = 0

        for iteration in range(1, self.max_iterations + 1):
            self.state.start_iteration(iteration)
            previous_weights = sample_weights.copy()
            for constraint in self.constraints:
                sample_weights = self._ipu_adjust_sample_weights(sample_weights, constraint)

            clamped = 0
            if self.ratio_bounds is not None:
                clamped = self.ratio_bounds.enforce(sample_weights)

            if self.monitor.check_convergence(iteration, sample_weights, self.constraints,
                                              clamped, previous_weights):
                break

        self.monitor.finalize(iteration)
        self.sample_weights = sample_weights

        logging.info(f"IPU {self.state.status} after {iteration} iterations "
                     f"(max discrepancy {self.state.max_gap:.6g}) in: {time.time() - t:.4f}")
        if self.parameters.verbose and not self.state.converged:
            logging.warning(f"IPU did not converge: {self.state.condition}")
        return sample_weights

    def _ipu_adjust_sample_weights(self, sample_weights, constraint):
        exponent = self.secondary_importance if constraint.tier == "secondary" else 1.0

        for j, category in enumerate(constraint.categories):
            rows = constraint.row_idx[category]
            weighted_sum = constraint.weighted_sum(sample_weights, category)
            targets = constraint.targets[:, j]

            adjustment = np.ones(len(constraint.geos), dtype=float)
            reachable = weighted_sum > 0
            adjustment[reachable] = targets[reachable] / weighted_sum[reachable]

            for g in np.nonzero(~reachable & (targets > 0))[0]:
                self.state.flag_unreachable(constraint.tier, constraint.name,
                                            constraint.geos[g], category)

            if rows.size == 0:
                continue
            if exponent != 1.0:
                adjustment = np.power(adjustment, exponent)

            sample_weights[rows] *= adjustment[constraint.geo_codes[rows]]
            sample_weights[rows] = np.maximum(sample_weights[rows], self.min_weight)

        return sample_weights
