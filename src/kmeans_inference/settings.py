"""Numerical tolerances and simulation defaults.

Every constant the selection-event solver and the calibration harness
read lives in a :class:`SettingsRegistry`.  Each key has a kind that
fixes which values are legal, so a sweep over tolerances fails at
``replace`` time rather than deep inside an interval computation:

* ``tolerance`` — positive finite float below 1 (relative thresholds
  and the micro-interval half-width),
* ``count`` — positive integer (iteration budget, simulated sizes),
* ``level`` — probability strictly between 0 and 1.

Usage
-----
>>> DEFAULT_SETTINGS["selection.boundary_halfwidth"]     # 1e-09
>>> loose = DEFAULT_SETTINGS.replace({"selection.coef_tol": 1e-9})
>>> DEFAULT_SETTINGS.replace({"selection.coef_tol": -1.0})
Traceback (most recent call last):
    ...
ValueError: selection.coef_tol must be a positive tolerance below 1, got -1.0
"""

from __future__ import annotations

import math
from typing import Dict, Iterator, Mapping, Optional

__all__ = [
    "SettingsRegistry",
    "DEFAULT_SETTINGS",
]


# key → (kind, default)
_SCHEMA: Dict[str, tuple] = {
    "selection.boundary_halfwidth": ("tolerance", 1e-9),
    "selection.coef_tol": ("tolerance", 1e-12),
    "selection.disc_rtol": ("tolerance", 1e-10),
    "selection.thin_width": ("tolerance", 1e-7),
    "clustering.iter_max": ("count", 10),
    "calibration.n_obs": ("count", 150),
    "calibration.n_features": ("count", 2),
    "calibration.alpha": ("level", 0.05),
}


def _check_value(key: str, value) -> float:
    if key not in _SCHEMA:
        raise KeyError(f"Unknown setting {key!r}. Valid keys: {sorted(_SCHEMA)}")
    kind = _SCHEMA[key][0]
    if isinstance(value, bool):
        raise TypeError(f"{key} must be numeric, got {value!r}")
    if kind == "count":
        if not float(value).is_integer() or value < 1:
            raise ValueError(f"{key} must be a positive integer, got {value!r}")
        return int(value)
    value = float(value)
    if kind == "level":
        if not 0.0 < value < 1.0:
            raise ValueError(f"{key} must lie strictly between 0 and 1, got {value}")
        return value
    if not (math.isfinite(value) and 0.0 < value < 1.0):
        raise ValueError(f"{key} must be a positive tolerance below 1, got {value}")
    return value


class SettingsRegistry:
    """Validated, read-only mapping of setting keys to values.

    Parameters
    ----------
    overrides : mapping, optional
        Values replacing the built-in defaults; every key must be known.
    name : str
        Label shown in ``repr``.
    """

    def __init__(self, overrides: Optional[Mapping[str, float]] = None, *,
                 name: str = "custom"):
        data = {key: default for key, (_, default) in _SCHEMA.items()}
        for key, value in (overrides or {}).items():
            data[key] = _check_value(key, value)
        self._data = data
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def __getitem__(self, key: str) -> float:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        changed = {k: v for k, v in self._data.items() if v != _SCHEMA[k][1]}
        return f"SettingsRegistry({self._name!r}, overrides={changed})"

    def replace(self, overrides: Mapping[str, float], *,
                name: Optional[str] = None) -> "SettingsRegistry":
        """New registry with *overrides* applied on top of this one.

        Raises
        ------
        KeyError
            Unknown key.
        ValueError, TypeError
            Value not legal for the key's kind.
        """
        merged = dict(self._data)
        merged.update(overrides)
        return SettingsRegistry(merged, name=name or (self._name + "+"))


DEFAULT_SETTINGS: SettingsRegistry = SettingsRegistry(name="default")
"""The settings used when a call does not pass ``settings=``."""
