import numpy as np
import pandas as pd
from scipy import stats

from .bounds import average_weights

COMPARISON_COLUMNS = ["attribute", "geo_field", "geo", "category",
                      "target", "result", "diff", "pct_diff"]


class IPU_Results:
    """Final weights merged onto the seeds, plus the numbers to judge them by."""

    def __init__(self, primary_seed, primary_targets, constraints, sample_weights,
                 state, secondary_seed=None, secondary_targets=None):
        self.primary_seed = primary_seed
        self.secondary_seed = secondary_seed
        self.primary_targets = primary_targets
        self.secondary_targets = secondary_targets
        self.constraints = constraints
        self.sample_weights = sample_weights
        self.state = state

        self.anchor_geo_field = primary_targets.anchor.geo_field
        self.weight_tbl = self._create_weight_tbl()
        self.secondary_weight_tbl = self._create_secondary_weight_tbl()
        self.primary_comp = self.compare_results("primary")
        self.secondary_comp = (self.compare_results("secondary")
                               if secondary_targets is not None else None)
        self.weight_dist = self._create_weight_dist()

    @property
    def status(self):
        return self.state.status

    @property
    def converged(self):
        return self.state.converged

    @property
    def iterations(self):
        return self.state.iteration

    @property
    def weights(self):
        """Final weights as a Series indexed by primary id."""
        return pd.Series(self.sample_weights,
                         index=pd.Index(self.primary_seed.ids(), name=self.primary_seed.id_field),
                         name="weight")

    def _create_weight_tbl(self):
        weight_tbl = self.primary_seed.data.copy()
        weight_tbl["weight"] = self.sample_weights
        avg = average_weights(self.primary_targets.anchor,
                              weight_tbl[self.anchor_geo_field].values)
        weight_tbl["avg_weight"] = avg
        weight_tbl["weight_factor"] = self.sample_weights / avg
        return weight_tbl

    def _create_secondary_weight_tbl(self):
        if self.secondary_seed is None:
            return None
        id_field = self.primary_seed.id_field
        weights = self.weight_tbl[[id_field, "weight"]]
        return self.secondary_seed.data.merge(weights, on=id_field, how="left")

    def compare_results(self, tier):
        """Target vs. weighted result for every (table, geography, category)."""
        frames = []
        for constraint in self.constraints:
            if constraint.tier != tier:
                continue
            observed = pd.DataFrame(constraint.observed(self.sample_weights),
                                    index=constraint.geos, columns=constraint.categories)
            comp = pd.DataFrame({
                "target": constraint.table.values.stack(),
                "result": observed.stack(),
            })
            comp.index.names = ["geo", "category"]
            comp = comp.reset_index()
            comp.insert(0, "attribute", constraint.name)
            comp.insert(1, "geo_field", constraint.geo_field)
            frames.append(comp)

        if not frames:
            return pd.DataFrame(columns=COMPARISON_COLUMNS)
        comp = pd.concat(frames, ignore_index=True)
        comp["diff"] = comp["result"] - comp["target"]
        with np.errstate(divide="ignore", invalid="ignore"):
            comp["pct_diff"] = np.where(comp["target"] > 0,
                                        comp["diff"] / comp["target"] * 100, np.nan)
        return comp[COMPARISON_COLUMNS]

    def _create_weight_dist(self):
        """Summary of weight factors (weight / average weight) per anchor geography."""
        rows = {}
        grouped = self.weight_tbl.groupby(self.anchor_geo_field)["weight_factor"]
        for geo, factors in grouped:
            values = factors.dropna().values
            if values.size == 0:
                continue
            description = stats.describe(values, ddof=0)
            rows[geo] = {
                "nobs": description.nobs,
                "min": description.minmax[0],
                "max": description.minmax[1],
                "mean": description.mean,
                "variance": description.variance,
            }
        weight_dist = pd.DataFrame.from_dict(
            rows, orient="index", columns=["nobs", "min", "max", "mean", "variance"])
        weight_dist.index.name = self.anchor_geo_field
        return weight_dist

    def histogram(self, bins=10):
        """Raw bin counts of the weight factors, for plotting elsewhere."""
        factors = self.weight_tbl["weight_factor"].dropna().values
        counts, edges = np.histogram(factors, bins=bins)
        return pd.DataFrame({"bin_start": edges[:-1], "bin_end": edges[1:], "count": counts})

    def __repr__(self):
        return (f"IPU_Results(status={self.status!r}, iterations={self.iterations}, "
                f"records={len(self.sample_weights)})")
