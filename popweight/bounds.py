import logging

import numpy as np
import pandas as pd


def average_weights(anchor_table, geo_values):
    """Per-record average weight of its anchor geography.

    The average is the anchor table's total for the geography divided by the
    number of primary records in it. NaN for records outside the table.
    """
    geo_values = pd.Series(geo_values)
    counts = geo_values.value_counts()
    totals = anchor_table.totals()
    average = (totals / counts.reindex(totals.index)).replace([np.inf, -np.inf], np.nan)
    return geo_values.map(average).values.astype(float)


class Ratio_Bounds(object):
    """Clamps weights into [min_ratio * avg, max_ratio * avg] per geography.

    The weight floor always wins over a lower ratio bound.
    """

    def __init__(self, anchor_table, geo_values, min_weight, min_ratio=None,
                 max_ratio=None):
        self.anchor_table = anchor_table
        self.min_weight = min_weight
        self.min_ratio = min_ratio
        self.max_ratio = max_ratio
        self.average_weights = average_weights(anchor_table, geo_values)
        self.lower, self.upper = self._bounds()

    def _bounds(self):
        known = np.isfinite(self.average_weights)
        n = self.average_weights.shape[0]
        lower = np.full(n, self.min_weight, dtype=float)
        upper = np.full(n, np.inf, dtype=float)
        if self.min_ratio is not None:
            lower[known] = np.maximum(self.min_ratio * self.average_weights[known],
                                      self.min_weight)
        if self.max_ratio is not None:
            upper[known] = np.maximum(self.max_ratio * self.average_weights[known],
                                      self.min_weight)
        if (~known).any():
            logging.debug(f"{int((~known).sum())} records have no anchor average weight; "
                          f"only the weight floor applies to them")
        return lower, upper

    @property
    def enabled(self):
        return self.min_ratio is not None or self.max_ratio is not None

    def enforce(self, sample_weights):
        """Clamp in place. Returns the number of weights that were moved."""
        if not self.enabled:
            return 0
        outside = (sample_weights < self.lower) | (sample_weights > self.upper)
        np.clip(sample_weights, self.lower, self.upper, out=sample_weights)
        return int(outside.sum())
