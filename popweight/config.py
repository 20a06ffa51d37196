"""Configuration helpers.

IPU runs can be parameterized from a YAML file. The parsed YAML is wrapped in
:class:`Config` for attribute access, and its ``parameters.ipu`` section is
turned into a validated :class:`IPU_Parameters`.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Optional

import yaml


class ConfigError(Exception):
    pass


def wrap_config_value(value):
    """Wrap nested YAML sections as Config; scalars are returned as they are.

    With ``parameters: {ipu: {max_iterations: 200}}`` loaded,
    ``config.parameters.ipu.max_iterations`` is 200.
    """
    if value is None:
        return Config({})
    if isinstance(value, (Config, str, bool, int, float)):
        return value
    return Config(value)


class Config:
    """Attribute-accessible view of a parsed YAML document."""

    DEFAULT_PARAMETERS = {
        "ipu": {
            "max_iterations": 100,
            "min_weight": 0.0001,
            "min_ratio": None,
            "max_ratio": None,
            "secondary_importance": 1.0,
            "relative_tolerance": 0.0001,
            "absolute_diff": None,
            "divergence_iterations": 5,
            "stop_on_divergence": False,
            "archive_performance_frequency": 1,
            "verbose": False
        }
    }

    def __init__(self, data: Any):
        self._data = {} if data is None else data

    def __getattr__(self, key):
        # pandas and copy look up private names; those are ordinary misses
        if key.startswith('_') or not isinstance(self._data, Mapping):
            raise AttributeError(key)
        value = self.return_value(key)
        return wrap_config_value(value) if value is not None else None

    def __getitem__(self, key):
        return wrap_config_value(self.return_value(key))

    def __len__(self):
        return len(self._data)

    def __repr__(self):
        return repr(self._data)

    def return_value(self, key):
        try:
            return self._data[key]
        except KeyError:
            logging.warning(f"Key '{key}' not found in configuration.")
            return None

    def get(self, key: str, default: Any = None) -> Any:
        """Like `config[key]`, but quiet when the key is missing."""
        if isinstance(self._data, Mapping) and key in self._data:
            return wrap_config_value(self._data[key])
        return default

    def get_raw(self, key: str, default: Any = None) -> Any:
        if isinstance(self._data, Mapping) and key in self._data:
            return self._data[key]
        return default

    def return_list(self):
        """Top-level keys of a section."""
        if isinstance(self._data, Mapping):
            return list(self._data.keys())
        return list(self._data)

    def return_dict(self):
        """The section as plain dicts and lists."""

        def convert(value):
            if isinstance(value, Config):
                return value.return_dict()
            elif isinstance(value, list):
                return [convert(v) for v in value]
            elif isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(self._data)


class IPU_Parameters:
    """Validated IPU run parameters.

    Every run gets its own instance; nothing here is process-wide, including
    the `verbose` flag.
    """

    NAMES = tuple(Config.DEFAULT_PARAMETERS["ipu"].keys())

    def __init__(self, **kwargs):
        unknown = sorted(set(kwargs) - set(self.NAMES))
        if unknown:
            raise ConfigError(f"Unknown IPU parameter(s): {unknown}")

        values = dict(Config.DEFAULT_PARAMETERS["ipu"])
        values.update(kwargs)

        self.max_iterations = values["max_iterations"]
        self.min_weight = values["min_weight"]
        self.min_ratio = values["min_ratio"]
        self.max_ratio = values["max_ratio"]
        self.secondary_importance = values["secondary_importance"]
        self.relative_tolerance = values["relative_tolerance"]
        self.absolute_diff = values["absolute_diff"]
        self.divergence_iterations = values["divergence_iterations"]
        self.stop_on_divergence = bool(values["stop_on_divergence"])
        self.archive_performance_frequency = values["archive_performance_frequency"]
        self.verbose = bool(values["verbose"])
        self._validate()

    def _validate(self):
        for key in ("max_iterations", "divergence_iterations",
                    "archive_performance_frequency"):
            value = getattr(self, key)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"'{key}' must be a positive integer, got {value!r}")

        self.min_weight = self._positive_float("min_weight", self.min_weight)
        self.relative_tolerance = self._positive_float(
            "relative_tolerance", self.relative_tolerance)

        self.secondary_importance = self._as_float(
            "secondary_importance", self.secondary_importance)
        if not 0.0 <= self.secondary_importance <= 1.0:
            raise ConfigError(
                f"'secondary_importance' must be within [0, 1], got {self.secondary_importance}")

        for key in ("min_ratio", "max_ratio", "absolute_diff"):
            value = getattr(self, key)
            if value is None:
                continue
            value = self._as_float(key, value)
            if value < 0:
                raise ConfigError(f"'{key}' must be non-negative, got {value}")
            setattr(self, key, value)

        if (self.min_ratio is not None and self.max_ratio is not None
                and self.min_ratio > self.max_ratio):
            raise ConfigError(
                f"'min_ratio' ({self.min_ratio}) is greater than 'max_ratio' ({self.max_ratio})")

    def _as_float(self, key, value):
        if isinstance(value, bool):
            raise ConfigError(f"'{key}' must be a number, got {value!r}")
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"'{key}' must be a number, got {value!r}")
        if math.isnan(value):
            raise ConfigError(f"'{key}' must not be NaN")
        return value

    def _positive_float(self, key, value):
        value = self._as_float(key, value)
        if not value > 0 or math.isinf(value):
            raise ConfigError(f"'{key}' must be a positive finite number, got {value}")
        return value

    def updated(self, **overrides) -> "IPU_Parameters":
        """Return a copy with some values replaced."""
        values = self.return_dict()
        values.update(overrides)
        return IPU_Parameters(**values)

    def return_dict(self):
        return {key: getattr(self, key) for key in self.NAMES}

    def __repr__(self):
        return f"IPU_Parameters({self.return_dict()!r})"

    @classmethod
    def from_config(cls, ipu_config: Optional[Config]) -> "IPU_Parameters":
        """Build parameters from a `parameters.ipu` Config section.

        Missing or empty keys fall back to the defaults."""
        values = {}
        if ipu_config is None or not isinstance(ipu_config, Config):
            logging.warning("Key 'ipu' not found in configuration. Using default IPU parameters.")
            return cls()

        for key in ipu_config.return_list():
            if key not in cls.NAMES:
                raise ConfigError(f"Unknown IPU parameter in configuration: '{key}'")

        for key, default_value in Config.DEFAULT_PARAMETERS["ipu"].items():
            value = ipu_config.get_raw(key, None)
            if value in [None, ""]:
                if default_value is not None:
                    logging.warning(f"Setting default value for '{key}' as it was missing or empty.")
                value = default_value
            values[key] = value
        return cls(**values)


def load_config(config_loc) -> Config:
    with open(config_loc, "r") as config_f:
        config_dict = yaml.safe_load(config_f)
    logging.debug(f"Loaded configuration: {config_dict}")
    return Config(config_dict)


def load_parameters(config_loc) -> IPU_Parameters:
    """Read `parameters: {ipu: {...}}` from a YAML file."""
    config = load_config(config_loc)
    parameters_config = config.get("parameters", None)
    if not isinstance(parameters_config, Config):
        logging.warning("Key 'parameters' not found in configuration. Using default IPU parameters.")
        return IPU_Parameters()
    return IPU_Parameters.from_config(parameters_config.get("ipu", None))
