import logging
from collections import namedtuple

import numpy as np
import pandas as pd

CONVERGED = "converged"
MAX_ITERATIONS = "max_iterations"
INFEASIBLE = "infeasible"
DIVERGED = "diverged"

# Smallest denominator used for relative discrepancies.
EPSILON = 1e-9

Diagnostic = namedtuple("Diagnostic", ["kind", "message", "iteration"])


class ConvergenceState(object):
    """Everything a run knows about how well the weights fit.

    Diagnostics are always recorded; they are also logged as warnings when
    the run is verbose.
    """

    def __init__(self, verbose=False):
        self.verbose = verbose
        self.iteration = 0
        self.status = None
        self.condition = None
        self.diverging = False
        self.diagnostics = []
        self.discrepancies = {}
        self.tier_gaps = {}
        self.criterion = np.inf
        self.history = pd.DataFrame(
            columns=["primary", "secondary", "max_gap", "clamped"], dtype=float)
        self.history.index.name = "iteration"
        self.unreachable = []
        self._flagged = set()

    @property
    def converged(self):
        return self.status == CONVERGED

    @property
    def max_gap(self):
        if not self.tier_gaps:
            return np.nan
        return max(self.tier_gaps.values())

    def add_diagnostic(self, kind, message, iteration=None):
        self.diagnostics.append(Diagnostic(kind, message, iteration))
        if self.verbose:
            logging.warning(message)
        else:
            logging.debug(message)

    def diagnostics_of_kind(self, kind):
        return [d for d in self.diagnostics if d.kind == kind]

    def start_iteration(self, iteration):
        self.iteration = iteration
        self.unreachable = []

    def flag_unreachable(self, tier, name, geo, category):
        """Record a category with a positive target but no weight to adjust."""
        key = (tier, name, geo, category)
        self.unreachable.append(key)
        if key in self._flagged:
            return
        self._flagged.add(key)
        self.add_diagnostic(
            "zero_observed",
            f"Observed weight for {tier} target '{name}' category '{category}' in "
            f"geography {geo} is zero; no adjustment possible (iteration {self.iteration})",
            self.iteration)

    def __repr__(self):
        return (f"ConvergenceState(status={self.status!r}, iteration={self.iteration}, "
                f"max_gap={self.max_gap})")


class Convergence_Monitor(object):
    """Computes per-category discrepancies and decides when to stop."""

    def __init__(self, parameters, state, has_secondary=False):
        self.parameters = parameters
        self.state = state
        self.has_secondary = has_secondary
        self.tolerance = parameters.relative_tolerance
        self.absolute_diff = parameters.absolute_diff
        self.min_weight = parameters.min_weight
        self.damped_secondary = (has_secondary and
                                 parameters.secondary_importance < 1.0)
        self._increases = 0

    def calculate_discrepancy(self, constraint, weights):
        """Relative gap per (geography, category) for one constraint table.

        A target below what the weight floor allows is compared against the
        floor mass instead; those records cannot go any lower."""
        observed = constraint.observed(weights)
        targets = constraint.targets
        floor_mass = self.min_weight * constraint.contrib_totals
        attainable = np.maximum(targets, floor_mass)
        diff = np.abs(observed - attainable)
        gap = diff / np.maximum(attainable, EPSILON)
        if self.absolute_diff is not None:
            gap = np.where(diff <= self.absolute_diff, 0.0, gap)
        return pd.DataFrame(gap, index=constraint.geos, columns=constraint.categories)

    def weight_change(self, weights, previous_weights):
        """Largest relative change of any weight over one iteration."""
        if previous_weights is None:
            return np.inf
        return float(np.max(np.abs(weights - previous_weights) / previous_weights))

    def check_convergence(self, iteration, weights, constraints, clamped=0,
                          previous_weights=None):
        """Evaluate one finished iteration. Returns True when the loop should stop."""
        tier_gaps = {}
        for constraint in constraints:
            discrepancy = self.calculate_discrepancy(constraint, weights)
            self.state.discrepancies[(constraint.tier, constraint.name)] = discrepancy
            gap = float(discrepancy.values.max()) if discrepancy.size else 0.0
            tier_gaps[constraint.tier] = max(tier_gaps.get(constraint.tier, 0.0), gap)
        self.state.tier_gaps = tier_gaps

        if self.damped_secondary:
            # Damped secondary factors stop short of the secondary targets, so the
            # secondary tier only has to settle; the primary tier must still fit.
            criterion = max(self.weight_change(weights, previous_weights),
                            tier_gaps.get("primary", 0.0))
        else:
            criterion = max(tier_gaps.values()) if tier_gaps else 0.0

        self._track_divergence(iteration, criterion)
        self.state.criterion = criterion

        if criterion < self.tolerance:
            self.state.status = CONVERGED
            if self.damped_secondary:
                self.state.condition = (
                    f"primary discrepancy below {self.tolerance} and weights changed by "
                    f"less than {self.tolerance} (relative) in iteration {iteration}")
            else:
                self.state.condition = (
                    f"max discrepancy below {self.tolerance} after {iteration} iterations")
        elif self.state.diverging and self.parameters.stop_on_divergence:
            self.state.status = DIVERGED
            self.state.condition = (
                f"discrepancy increased for {self.parameters.divergence_iterations} "
                f"consecutive iterations (iteration {iteration})")

        stop = self.state.status is not None
        self._archive(iteration, tier_gaps, clamped, force=stop)
        return stop

    def _track_divergence(self, iteration, criterion):
        previous = self.state.criterion
        if np.isfinite(previous) and np.isfinite(criterion) and criterion > previous:
            self._increases += 1
        else:
            self._increases = 0

        if self._increases >= self.parameters.divergence_iterations:
            if not self.state.diverging:
                self.state.add_diagnostic(
                    "divergence",
                    f"Discrepancy has increased for {self._increases} consecutive "
                    f"iterations (iteration {iteration}, criterion {criterion:.6g})",
                    iteration)
            self.state.diverging = True

    def _archive(self, iteration, tier_gaps, clamped, force=False):
        frequency = self.parameters.archive_performance_frequency
        last = iteration == self.parameters.max_iterations
        if (iteration - 1) % frequency != 0 and not (last or force):
            return
        self.state.history.loc[iteration] = [
            tier_gaps.get("primary", np.nan),
            tier_gaps.get("secondary", np.nan),
            max(tier_gaps.values()) if tier_gaps else np.nan,
            clamped,
        ]

    def finalize(self, iteration):
        """Set the terminal status for a loop that ran out of iterations."""
        if self.state.status is not None:
            return self.state.status
        if iteration not in self.state.history.index and self.state.tier_gaps:
            self.state.history.loc[iteration] = [
                self.state.tier_gaps.get("primary", np.nan),
                self.state.tier_gaps.get("secondary", np.nan),
                self.state.max_gap,
                np.nan,
            ]

        if self.state.unreachable:
            tier, name, geo, category = self.state.unreachable[0]
            self.state.status = INFEASIBLE
            self.state.condition = (
                f"{tier} target '{name}' category '{category}' in geography {geo} "
                f"has a positive target but no observed weight")
        else:
            self.state.status = MAX_ITERATIONS
            self.state.condition = (
                f"max_iterations ({iteration}) reached with max discrepancy "
                f"{self.state.max_gap:.6g}")
        self.state.add_diagnostic(
            "non_convergence",
            f"IPU failed to converge after {iteration} iterations: {self.state.condition}",
            iteration)
        return self.state.status
