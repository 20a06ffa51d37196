import logging

import numpy as np
import pandas as pd

from .data import SeedTable, StructuralError, TargetValidationError

# Two totals closer than this (relative) are treated as already in agreement.
SCALE_RTOL = 1e-9


class Target_Preprocessor(object):
    """Validates target tables against their seeds and rescales each tier.

    Secondary seed records inherit the geography of the primary record they
    link to through `primary_id`, so secondary tables are validated against
    the geographies of the primary seed.
    """

    def __init__(self, primary_seed, primary_targets, secondary_seed=None,
                 secondary_targets=None, primary_id="id", state=None):
        self.primary_seed = primary_seed
        self.primary_targets = primary_targets
        self.secondary_seed = secondary_seed
        self.secondary_targets = secondary_targets
        self.primary_id = primary_id
        self.state = state
        self.linked_secondary_seed = None

    def run(self):
        self.check_structure()
        self.link_secondary_seed()
        self.check_tables()
        self.scale_targets()
        return self.primary_targets, self.secondary_targets

    def check_structure(self):
        if (self.secondary_seed is None) != (self.secondary_targets is None):
            raise StructuralError(
                "A secondary seed and secondary targets must be supplied together")

        seed_geo_fields = self.primary_seed.geo_fields()
        for table in self.primary_targets:
            if table.geo_field not in seed_geo_fields:
                raise TargetValidationError(
                    f"Primary target '{table.name}' uses geography '{table.geo_field}' "
                    f"which is not a column of the primary seed")

        if self.secondary_targets is None:
            return
        for table in self.secondary_targets:
            if table.geo_field not in seed_geo_fields:
                raise StructuralError(
                    f"Secondary target '{table.name}' uses geography '{table.geo_field}' "
                    f"which is not a column of the primary seed")
        overlap = set(self.primary_targets.names) & set(self.secondary_targets.names)
        if overlap:
            raise StructuralError(
                f"Attributes {sorted(overlap)} are targeted in both tiers")

    def link_secondary_seed(self):
        """Attach primary geographies to every secondary record."""
        if self.secondary_seed is None:
            return None

        secondary = self.secondary_seed.data
        if self.primary_id not in secondary.columns:
            raise StructuralError(
                f"Secondary seed has no linkage column '{self.primary_id}'")
        primary = self.primary_seed.data
        known_ids = set(primary[self.primary_id].tolist())
        orphans = secondary.loc[~secondary[self.primary_id].isin(known_ids), self.primary_id]
        if not orphans.empty:
            raise StructuralError(
                f"Secondary records link to ids missing from the primary seed: "
                f"{orphans.unique().tolist()[:10]}")

        geo_fields = self.primary_seed.geo_fields()
        primary_geo = primary[[self.primary_id] + geo_fields]
        linked = secondary.merge(primary_geo, on=self.primary_id, how="left",
                                 suffixes=("", "_primary"))
        for geo_field in geo_fields:
            inherited = f"{geo_field}_primary"
            if inherited not in linked.columns:
                continue
            conflict = linked[geo_field] != linked[inherited]
            if conflict.any():
                raise StructuralError(
                    f"Secondary seed column '{geo_field}' disagrees with the primary "
                    f"record's geography for {int(conflict.sum())} records")
            linked = linked.drop(columns=inherited)

        self.linked_secondary_seed = SeedTable(linked, id_field=self.primary_id,
                                               unique_ids=False)
        return self.linked_secondary_seed

    def check_tables(self):
        for table in self.primary_targets:
            self.check_table(self.primary_seed, table, "primary")
        if self.secondary_targets is not None:
            for table in self.secondary_targets:
                self.check_table(self.linked_secondary_seed, table, "secondary")

    def check_table(self, seed, table, tier):
        """Raise TargetValidationError if the seed cannot carry the table's targets."""
        categories = seed.categories(table.name)

        missing_columns = sorted(set(categories.unique()) - set(table.categories))
        if missing_columns:
            raise TargetValidationError(
                f"Seed column '{table.name}' has categories {missing_columns} with no "
                f"target in the {tier} target table '{table.name}'")

        geos = seed.data[table.geo_field]
        missing_geos = sorted(set(geos.unique()) - set(table.geos), key=str)
        if missing_geos and tier == "primary":
            raise TargetValidationError(
                f"Primary target table '{table.name}' has no targets for geographies "
                f"{missing_geos[:10]} present in the seed")

        observations = pd.crosstab(geos.values, categories.values)
        observations = observations.reindex(index=table.geos, columns=table.categories,
                                            fill_value=0)
        unobserved = (table.values.values > 0) & (observations.values == 0)
        if unobserved.any():
            geo_idx, cat_idx = np.nonzero(unobserved)
            pairs = [(table.geos[g], table.categories[c]) for g, c in zip(geo_idx, cat_idx)]
            raise TargetValidationError(
                f"No observations in the {tier} seed for target '{table.name}' "
                f"(geography, category): {pairs[:10]}")

    def scale_targets(self):
        self.primary_targets = self._scale_target_list(self.primary_targets, self.primary_seed)
        if self.secondary_targets is not None:
            self.secondary_targets = self._scale_target_list(
                self.secondary_targets, self.primary_seed)
        return self.primary_targets, self.secondary_targets

    def _scale_target_list(self, target_list, geo_seed):
        anchor = target_list.anchor
        scaled_tables = [anchor]
        for table in target_list.tables[1:]:
            if table.geo_field == anchor.geo_field:
                factors = self._same_geo_factors(anchor, table)
            else:
                factors = self._nested_geo_factors(anchor, table, geo_seed)

            changed = ~np.isclose(factors.values, 1.0, rtol=0.0, atol=SCALE_RTOL)
            if changed.any():
                self._diagnostic(
                    "scaling",
                    f"{target_list.tier.capitalize()} target '{table.name}' does not match "
                    f"the total of '{anchor.name}' in {int(changed.sum())} geographies; "
                    f"scaled to the total of '{anchor.name}'")
                table = table.scaled(factors.where(changed, 1.0))
            scaled_tables.append(table)
        return target_list.replace(scaled_tables)

    def _same_geo_factors(self, anchor, table):
        totals = table.totals()
        reference = anchor.totals().reindex(totals.index)
        return self._factors(table, totals, reference)

    def _geo_mapping(self, geo_seed, child_field, parent_field):
        """child -> parent geography map from the seed, None unless every child
        sits in exactly one parent."""
        mapping = (geo_seed.data[[child_field, parent_field]]
                   .drop_duplicates()
                   .set_index(child_field)[parent_field])
        if mapping.index.duplicated().any():
            return None
        return mapping

    def _nested_geo_factors(self, anchor, table, geo_seed):
        """Factors for a table whose geography level differs from the anchor's.

        A finer table is scaled per anchor geography it nests in. A coarser
        table is scaled against the anchor totals summed up to its level.
        Levels that do not nest either way fall back to the grand total.
        """
        totals = table.totals()
        anchor_totals = anchor.totals()

        finer = self._geo_mapping(geo_seed, table.geo_field, anchor.geo_field)
        if finer is not None and (totals.index.isin(finer.index) | (totals.values == 0)).all():
            parent = finer.reindex(totals.index)
            mapped = parent.notnull()
            group_totals = totals[mapped].groupby(parent[mapped]).sum()
            reference = anchor_totals.reindex(group_totals.index)
            group_factors = self._factors(table, group_totals, reference)
            return parent.map(group_factors).fillna(1.0).astype(float)

        coarser = self._geo_mapping(geo_seed, anchor.geo_field, table.geo_field)
        if coarser is not None:
            parent = coarser.reindex(anchor_totals.index)
            mapped = parent.notnull()
            reference = anchor_totals[mapped].groupby(parent[mapped]).sum()
            return self._factors(table, totals, reference.reindex(totals.index))

        self._diagnostic(
            "grand_total_scaling",
            f"Geographies of '{table.name}' ({table.geo_field}) and '{anchor.name}' "
            f"({anchor.geo_field}) do not nest; scaling '{table.name}' on the grand total")
        reference = pd.Series(anchor_totals.sum(), index=["all"])
        factors = self._factors(table, pd.Series(totals.sum(), index=["all"]), reference)
        return pd.Series(factors.iloc[0], index=totals.index)

    def _factors(self, table, totals, reference):
        factors = pd.Series(1.0, index=totals.index, dtype=float)
        known = reference.notnull()
        scalable = known & (totals > 0)
        factors[scalable] = reference[scalable] / totals[scalable]
        unscalable = known & (totals == 0) & (reference > 0)
        if unscalable.any():
            self._diagnostic(
                "unscalable",
                f"Target '{table.name}' is zero where the anchor total is positive "
                f"({unscalable.index[unscalable].tolist()[:10]}); left unscaled")
        return factors

    def _diagnostic(self, kind, message):
        if self.state is not None:
            self.state.add_diagnostic(kind, message)
        else:
            logging.debug(message)
