import unittest

import numpy as np
import pandas as pd

from popweight.bounds import Ratio_Bounds, average_weights
from popweight.config import IPU_Parameters
from popweight.convergence import (CONVERGED, INFEASIBLE, MAX_ITERATIONS,
                                   ConvergenceState, Convergence_Monitor)
from popweight.data import SeedTable, TargetList, TargetTable
from popweight.reweighting import Reweighting_DS, Run_IPU, initialize_weights


def household_seed():
    return SeedTable(pd.DataFrame({
        "id": [1, 2, 3, 4],
        "geo_all": [1, 1, 1, 1],
        "siz": [1, 1, 2, 2],
        "wgt": [2.0, 1.0, 1.0, 0.00001],
    }))


class TestReweightingDS(unittest.TestCase):
    def test_primary_contributions(self):
        seed = household_seed()
        targets = TargetList({"siz": pd.DataFrame({"geo_all": [1], "1": [35], "2": [65]})})
        constraint, = Reweighting_DS().create_ds(seed, targets)

        self.assertEqual(constraint.tier, "primary")
        self.assertEqual(constraint.categories, ["1", "2"])
        np.testing.assert_array_equal(constraint.contrib["1"], [1, 1, 0, 0])
        np.testing.assert_array_equal(constraint.row_idx["2"], [2, 3])
        np.testing.assert_array_equal(constraint.targets, [[35.0, 65.0]])
        np.testing.assert_array_equal(constraint.observed(np.ones(4)), [[2.0, 2.0]])

    def test_secondary_contributions_count_members(self):
        seed = household_seed()
        persons = SeedTable(pd.DataFrame({
            "id": [1, 1, 1, 2, 4],
            "geo_all": [1, 1, 1, 1, 1],
            "ptype": [1, 1, 2, 2, 1],
        }), unique_ids=False)
        primary = TargetList({"siz": pd.DataFrame({"geo_all": [1], "1": [35], "2": [65]})})
        secondary = TargetList({"ptype": pd.DataFrame({"geo_all": [1], "1": [91], "2": [65]})},
                               tier="secondary")
        constraints = Reweighting_DS().create_ds(seed, primary, persons, secondary)

        self.assertEqual([c.tier for c in constraints], ["primary", "secondary"])
        np.testing.assert_array_equal(constraints[1].contrib["1"], [2, 0, 0, 1])
        np.testing.assert_array_equal(constraints[1].contrib["2"], [1, 1, 0, 0])
        np.testing.assert_array_equal(constraints[1].row_idx["1"], [0, 3])
        weights = np.array([1.0, 2.0, 3.0, 4.0])
        np.testing.assert_array_equal(constraints[1].observed(weights), [[6.0, 3.0]])

    def test_geographies_outside_table_are_ignored(self):
        seed = SeedTable(pd.DataFrame({
            "id": [1, 2, 3], "geo_taz": [1, 2, 3], "siz": [1, 1, 1]}))
        targets = TargetList({"siz": pd.DataFrame({"geo_taz": [1, 2], "1": [5, 6]})})
        constraint, = Reweighting_DS().create_ds(seed, targets)
        np.testing.assert_array_equal(constraint.geo_codes, [0, 1, -1])
        np.testing.assert_array_equal(constraint.row_idx["1"], [0, 1])


class TestInitializeWeights(unittest.TestCase):
    def test_defaults_to_one(self):
        np.testing.assert_array_equal(initialize_weights(household_seed(), 1e-4), np.ones(4))

    def test_weight_column_is_floored(self):
        seed = household_seed()
        seed = SeedTable(seed.data, weight_field="wgt")
        np.testing.assert_array_equal(initialize_weights(seed, 1e-4), [2.0, 1.0, 1.0, 1e-4])


class TestRunIPU(unittest.TestCase):
    def _run(self, seed, targets, **kwargs):
        parameters = IPU_Parameters(**kwargs)
        state = ConvergenceState()
        constraints = Reweighting_DS().create_ds(seed, TargetList(targets))
        run_ipu_obj = Run_IPU(constraints, initialize_weights(seed, parameters.min_weight),
                              parameters, state)
        return run_ipu_obj.run_ipu(), state

    def test_single_table_converges_in_one_iteration(self):
        weights, state = self._run(
            household_seed(),
            {"siz": pd.DataFrame({"geo_all": [1], "1": [35], "2": [65]})})
        np.testing.assert_allclose(weights, [17.5, 17.5, 32.5, 32.5])
        self.assertEqual(state.status, CONVERGED)
        self.assertEqual(state.iteration, 1)

    def test_zero_target_drives_weights_to_floor(self):
        weights, state = self._run(
            household_seed(),
            {"siz": pd.DataFrame({"geo_all": [1], "1": [50], "2": [0]})},
            min_weight=0.001)
        np.testing.assert_allclose(weights, [25.0, 25.0, 0.001, 0.001])
        self.assertEqual(state.status, CONVERGED)

    def test_zero_observed_category_reports_infeasible(self):
        seed = SeedTable(pd.DataFrame({"id": [1, 2], "geo_all": [1, 1], "siz": [1, 1]}))
        table = TargetTable("siz", pd.DataFrame({"geo_all": [1], "1": [10], "2": [5]}))
        weights, state = self._run(seed, [table], max_iterations=3)

        np.testing.assert_allclose(weights, [5.0, 5.0])
        self.assertEqual(state.status, INFEASIBLE)
        self.assertFalse(state.converged)
        self.assertIn("'2'", state.condition)
        self.assertEqual(len(state.diagnostics_of_kind("zero_observed")), 1)
        self.assertEqual(len(state.diagnostics_of_kind("non_convergence")), 1)

    def test_later_tables_see_earlier_adjustments(self):
        seed = SeedTable(pd.DataFrame({
            "id": [1, 2, 3], "geo_all": [1, 1, 1],
            "siz": [1, 2, 2], "veh": [0, 0, 1]}))
        targets = {
            "siz": pd.DataFrame({"geo_all": [1], "1": [10], "2": [20]}),
            "veh": pd.DataFrame({"geo_all": [1], "0": [15], "1": [15]}),
        }
        weights, state = self._run(seed, targets, max_iterations=1)
        # siz: [10, 10, 10]; veh 0 then sees 20 -> factor 0.75; veh 1 sees 10 -> 1.5
        np.testing.assert_allclose(weights, [7.5, 7.5, 15.0])
        self.assertEqual(state.status, MAX_ITERATIONS)


class TestRatioBounds(unittest.TestCase):
    def setUp(self):
        self.anchor = TargetTable("siz", pd.DataFrame({
            "geo_all": [1, 2], "1": [80, 10], "2": [20, 10]}))
        self.geo_values = np.array([1, 1, 2, 2, 2, 2])

    def test_average_weights(self):
        np.testing.assert_allclose(average_weights(self.anchor, self.geo_values),
                                   [50, 50, 5, 5, 5, 5])

    def test_clamps_to_ratio_of_average(self):
        bounds = Ratio_Bounds(self.anchor, self.geo_values, 1e-4, min_ratio=0.8, max_ratio=1.2)
        weights = np.array([80.0, 20.0, 5.0, 7.0, 3.0, 1.0])
        clamped = bounds.enforce(weights)
        np.testing.assert_allclose(weights, [60.0, 40.0, 5.0, 6.0, 4.0, 4.0])
        self.assertEqual(clamped, 5)

    def test_single_side(self):
        bounds = Ratio_Bounds(self.anchor, self.geo_values, 1e-4, max_ratio=2)
        weights = np.array([120.0, 0.5, 11.0, 7.0, 3.0, 1e-4])
        bounds.enforce(weights)
        np.testing.assert_allclose(weights, [100.0, 0.5, 10.0, 7.0, 3.0, 1e-4])

    def test_floor_wins_over_lower_bound(self):
        anchor = TargetTable("siz", pd.DataFrame({"geo_all": [1], "1": [0.0], "2": [0.0]}))
        bounds = Ratio_Bounds(anchor, np.array([1, 1]), 0.01, min_ratio=0.5, max_ratio=2)
        weights = np.array([0.0001, 3.0])
        bounds.enforce(weights)
        np.testing.assert_allclose(weights, [0.01, 0.01])

    def test_disabled(self):
        bounds = Ratio_Bounds(self.anchor, self.geo_values, 1e-4)
        weights = np.array([1000.0, 0.001, 5.0, 5.0, 5.0, 5.0])
        self.assertEqual(bounds.enforce(weights), 0)
        self.assertEqual(weights[0], 1000.0)


class TestConvergenceMonitor(unittest.TestCase):
    def test_divergence_is_flagged(self):
        parameters = IPU_Parameters(divergence_iterations=3)
        state = ConvergenceState()
        monitor = Convergence_Monitor(parameters, state)
        for iteration, criterion in enumerate([0.5, 0.6, 0.7, 0.8], start=1):
            monitor._track_divergence(iteration, criterion)
            state.criterion = criterion
        self.assertTrue(state.diverging)
        self.assertEqual(len(state.diagnostics_of_kind("divergence")), 1)

    def test_decrease_resets_divergence_count(self):
        parameters = IPU_Parameters(divergence_iterations=3)
        state = ConvergenceState()
        monitor = Convergence_Monitor(parameters, state)
        for iteration, criterion in enumerate([0.5, 0.6, 0.7, 0.4, 0.5], start=1):
            monitor._track_divergence(iteration, criterion)
            state.criterion = criterion
        self.assertFalse(state.diverging)

    def test_absolute_diff_ignores_small_misses(self):
        seed = household_seed()
        targets = TargetList({"siz": pd.DataFrame({"geo_all": [1], "1": [3], "2": [2]})})
        constraint, = Reweighting_DS().create_ds(seed, targets)
        weights = np.ones(4)

        strict = Convergence_Monitor(IPU_Parameters(), ConvergenceState())
        relaxed = Convergence_Monitor(IPU_Parameters(absolute_diff=1), ConvergenceState())
        np.testing.assert_allclose(strict.calculate_discrepancy(constraint, weights).values,
                                   [[1.0 / 3.0, 0.0]])
        np.testing.assert_allclose(relaxed.calculate_discrepancy(constraint, weights).values,
                                   [[0.0, 0.0]])


if __name__ == '__main__':
    unittest.main()
