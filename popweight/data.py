"""Typed input structures for IPU runs.

Seed and target tables arrive as pandas DataFrames from whatever loading layer
the caller uses. The classes here check their shape once, at construction, so
the rest of the package can rely on clean categories, numeric targets and a
single geography column per target table.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Union

import numpy as np
import pandas as pd

GEO_PREFIX = "geo_"


class IPUError(Exception):
    pass


class TargetValidationError(IPUError, ValueError):
    """Input that no amount of iteration can satisfy or interpret."""


class StructuralError(IPUError, ValueError):
    """Primary and secondary inputs do not link up."""


def category_key(value):
    """Normalize a category value so seed values and target headers match.

    1, 1.0, numpy.int64(1) and "1" all become "1".
    """
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def geo_columns(df: pd.DataFrame) -> List[str]:
    return [column for column in df.columns if str(column).startswith(GEO_PREFIX)]


class SeedTable:
    """A seed (sample) table.

    A primary seed has one row per unit and a unique `id_field`. A secondary
    seed has one row per member, and `id_field` is the primary record each
    member belongs to, so ids repeat (`unique_ids=False`).
    """

    def __init__(self, data: pd.DataFrame, id_field: str = "id",
                 weight_field: Optional[str] = None, unique_ids: bool = True):
        if not isinstance(data, pd.DataFrame):
            raise TargetValidationError(
                f"Seed must be a pandas DataFrame, got {type(data).__name__}")
        if id_field not in data.columns:
            raise TargetValidationError(f"Seed table has no id column '{id_field}'")
        if data[id_field].isnull().any():
            raise TargetValidationError(f"Seed id column '{id_field}' contains missing values")
        if unique_ids and data[id_field].duplicated().any():
            duplicated = data.loc[data[id_field].duplicated(), id_field].unique().tolist()
            raise TargetValidationError(
                f"Seed id column '{id_field}' is not unique: {duplicated[:10]}")

        if weight_field is not None:
            if weight_field not in data.columns:
                raise TargetValidationError(f"Seed table has no weight column '{weight_field}'")
            weights = pd.to_numeric(data[weight_field], errors="coerce").values.astype(float)
            if not np.isfinite(weights).all() or (weights <= 0).any():
                raise TargetValidationError(
                    f"Seed weight column '{weight_field}' must be positive and finite")

        self.data = data.reset_index(drop=True).copy()
        self.id_field = id_field
        self.weight_field = weight_field
        self.unique_ids = unique_ids

    def __len__(self):
        return self.data.shape[0]

    def geo_fields(self) -> List[str]:
        return geo_columns(self.data)

    def ids(self) -> np.ndarray:
        return self.data[self.id_field].values

    def initial_weights(self) -> np.ndarray:
        if self.weight_field is None:
            return np.ones(len(self), dtype=float)
        return self.data[self.weight_field].values.astype(float)

    def categories(self, attribute: str) -> pd.Series:
        """Normalized category keys of an attribute column."""
        if attribute not in self.data.columns:
            raise TargetValidationError(
                f"Seed table has no column '{attribute}' to match its target table")
        values = self.data[attribute]
        if values.isnull().any():
            raise TargetValidationError(f"Seed column '{attribute}' contains missing values")
        return values.map(category_key)


class TargetTable:
    """Marginal targets for one seed attribute.

    `data` holds one geography column plus one column per category value;
    each row gives the targets of one geography.
    """

    def __init__(self, name: str, data: pd.DataFrame, geo_field: Optional[str] = None):
        if not isinstance(data, pd.DataFrame):
            raise TargetValidationError(
                f"Target table '{name}' must be a pandas DataFrame, got {type(data).__name__}")
        self.name = name
        self.geo_field = self._find_geo_field(data, geo_field)

        if data[self.geo_field].isnull().any():
            raise TargetValidationError(
                f"Target table '{name}' has missing values in '{self.geo_field}'")
        if data[self.geo_field].duplicated().any():
            raise TargetValidationError(
                f"Target table '{name}' lists a geography more than once in '{self.geo_field}'")

        values = data.set_index(self.geo_field)
        if values.shape[1] == 0:
            raise TargetValidationError(f"Target table '{name}' has no category columns")
        values.columns = [category_key(column) for column in values.columns]
        if values.columns.duplicated().any():
            raise TargetValidationError(
                f"Target table '{name}' has duplicate category columns after normalization")

        try:
            values = values.astype(float)
        except (TypeError, ValueError):
            raise TargetValidationError(f"Target table '{name}' has non-numeric targets")
        array = values.values
        if not np.isfinite(array).all():
            raise TargetValidationError(f"Target table '{name}' contains missing or infinite targets")
        if (array < 0).any():
            raise TargetValidationError(f"Target table '{name}' contains negative targets")

        values.index.name = self.geo_field
        self.values = values

    def _find_geo_field(self, data, geo_field):
        if geo_field is not None:
            if geo_field not in data.columns:
                raise TargetValidationError(
                    f"Target table '{self.name}' has no geography column '{geo_field}'")
            return geo_field
        candidates = geo_columns(data)
        if len(candidates) != 1:
            raise TargetValidationError(
                f"Target table '{self.name}' must have exactly one '{GEO_PREFIX}' column, "
                f"found {candidates}")
        return candidates[0]

    @property
    def categories(self) -> List[str]:
        return self.values.columns.tolist()

    @property
    def geos(self) -> List:
        return self.values.index.tolist()

    def totals(self) -> pd.Series:
        return self.values.sum(axis=1)

    def target(self, geo, category) -> float:
        return float(self.values.loc[geo, category])

    def scaled(self, factors: pd.Series) -> "TargetTable":
        """Return a new table with each geography's row multiplied by `factors`."""
        factors = factors.reindex(self.values.index).fillna(1.0)
        new_values = self.values.mul(factors, axis=0)
        return TargetTable._from_values(self.name, self.geo_field, new_values)

    @classmethod
    def _from_values(cls, name, geo_field, values):
        table = cls.__new__(cls)
        table.name = name
        table.geo_field = geo_field
        table.values = values
        return table

    def __repr__(self):
        return f"TargetTable({self.name!r}, geo_field={self.geo_field!r}, categories={self.categories})"


TargetsInput = Union["TargetList", Dict[str, pd.DataFrame], List[TargetTable]]


class TargetList:
    """Ordered target tables forming one tier. The first table is the anchor."""

    def __init__(self, tables, tier: str = "primary"):
        if isinstance(tables, dict):
            tables = [value if isinstance(value, TargetTable) else TargetTable(name, value)
                      for name, value in tables.items()]
        tables = list(tables)
        if not tables:
            raise TargetValidationError(f"The {tier} target list is empty")
        for table in tables:
            if not isinstance(table, TargetTable):
                raise TargetValidationError(
                    f"The {tier} target list must hold TargetTable objects, got {type(table).__name__}")
        names = [table.name for table in tables]
        if len(set(names)) != len(names):
            raise TargetValidationError(f"The {tier} target list repeats an attribute: {names}")

        self.tables = tables
        self.tier = tier

    @classmethod
    def coerce(cls, targets: TargetsInput, tier: str) -> "TargetList":
        if isinstance(targets, TargetList):
            if targets.tier != tier:
                logging.debug(f"Using a '{targets.tier}' target list as the {tier} tier")
                return cls(targets.tables, tier)
            return targets
        return cls(targets, tier)

    @property
    def anchor(self) -> TargetTable:
        return self.tables[0]

    @property
    def names(self) -> List[str]:
        return [table.name for table in self.tables]

    def geo_fields(self) -> List[str]:
        return sorted(set(table.geo_field for table in self.tables))

    def replace(self, tables) -> "TargetList":
        return TargetList(tables, self.tier)

    def __iter__(self) -> Iterator[TargetTable]:
        return iter(self.tables)

    def __len__(self):
        return len(self.tables)

    def __getitem__(self, key):
        if isinstance(key, str):
            for table in self.tables:
                if table.name == key:
                    return table
            raise KeyError(key)
        return self.tables[key]

    def __repr__(self):
        return f"TargetList({self.tier!r}, {self.names})"
