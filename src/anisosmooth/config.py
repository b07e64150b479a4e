"""Configuration utilities for anisotropic smoothing runs.

This module centralizes loading, merging, and validating the settings
of the smoothing algorithm. It provides:

- A `DEFAULT_CONFIG` describing the starting point of the anisotropy
    search, the L-BFGS-B options and the diagnostics behaviour.
- `load_config(path, overrides)` which reads a user YAML file, merges it
    deeply with the defaults, applies dotted-key overrides and runs
    a validation pass.
- `resolve_config(mapping, overrides)` doing the same for an in-memory
    mapping.

Design notes
------------
A plain nested dictionary keeps overrides such as ``optimizer.maxiter``
trivial to apply. Invalid values raise :class:`ConfigError`; values that
are legal but unusual (for example a very coarse finite-difference step)
emit a ``RuntimeWarning`` instead.
"""

from __future__ import annotations

import copy
import math
import warnings
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

import yaml

DEFAULT_CONFIG: Dict[str, Any] = {
    "smoothing": {
        "initial_angle": math.pi / 2,
        "initial_intensity": 5.0,
        "strategy": "in_place",
        "progress": False,
    },
    "optimizer": {
        "maxcor": 10,
        "ftol": 1e-10,
        "gtol": 1e-6,
        "maxiter": 1000,
        "maxfun": 15000,
        "maxls": 20,
        "fd_step": 1e-6,
    },
    "diagnostics": {
        "verbose": False,
        "emit_warnings": True,
    },
}


class ConfigError(ValueError):
    """Raised when a configuration fails validation."""


def _deep_update(base: MutableMapping[str, Any], update: Mapping[str, Any]) -> None:
    """Recursively merge ``update`` into ``base`` in-place.

    Nested mappings are merged key by key, so a user file that only sets
    ``optimizer: {maxiter: 50}`` keeps the default ``maxcor``, ``ftol``
    and friends.  Any non-mapping value replaces the one in ``base``.
    """

    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), MutableMapping):
            _deep_update(base[key], value)  # type: ignore[index]
        else:
            base[key] = value


def _set_by_dotted_key(config: MutableMapping[str, Any], dotted_key: str, value: Any) -> None:
    """Assign ``value`` into ``config`` using a dotted path.

    ``optimizer.maxiter`` addresses ``config["optimizer"]["maxiter"]``.
    Intermediate mappings are created as needed.
    """

    keys = dotted_key.split(".")
    target: MutableMapping[str, Any] = config
    for key in keys[:-1]:
        if key not in target or not isinstance(target[key], MutableMapping):
            target[key] = {}
        target = target[key]  # type: ignore[assignment]
    target[keys[-1]] = value


def _validate(config: Mapping[str, Any]) -> None:
    """Sanity checks on the merged configuration.

    Raises :class:`ConfigError` for values that would make the run
    meaningless and warns about settings that are merely suspicious.
    """

    smoothing = config["smoothing"]
    optimizer = config["optimizer"]

    angle = smoothing["initial_angle"]
    intensity = smoothing["initial_intensity"]
    if not 0.0 <= angle <= math.pi:
        raise ConfigError("initial_angle must lie in [0, pi].")
    if not 1.0 <= intensity <= 1000.0:
        raise ConfigError("initial_intensity must lie in [1, 1000].")
    if smoothing["strategy"] not in {"in_place", "snapshot"}:
        raise ConfigError("strategy must be 'in_place' or 'snapshot'.")

    for key in ("maxcor", "maxiter", "maxfun", "maxls"):
        if int(optimizer[key]) <= 0:
            raise ConfigError(f"optimizer.{key} must be positive.")
    for key in ("ftol", "gtol", "fd_step"):
        if float(optimizer[key]) <= 0:
            raise ConfigError(f"optimizer.{key} must be positive.")

    if angle in (0.0, math.pi):
        warnings.warn(
            "initial_angle on the boundary of [0, pi] triggers a periodicity "
            "correction at the first iteration.",
            RuntimeWarning,
            stacklevel=2,
        )
    if float(optimizer["fd_step"]) > 1e-3:
        warnings.warn(
            "fd_step > 1e-3 gives a coarse anisotropy gradient.",
            RuntimeWarning,
            stacklevel=2,
        )


def resolve_config(
    user_cfg: Optional[Mapping[str, Any]] = None,
    overrides: Iterable[tuple[str, Any]] | None = None,
) -> Dict[str, Any]:
    """Merge *user_cfg* and dotted-key *overrides* into the defaults and validate.

    Returns
    -------
    dict
        A fresh configuration dictionary, safe to mutate.
    """

    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if user_cfg:
        if not isinstance(user_cfg, Mapping):
            raise ConfigError("Configuration must be a mapping.")
        unknown = sorted(set(user_cfg) - set(DEFAULT_CONFIG))
        if unknown:
            raise ConfigError(f"Unknown configuration sections: {', '.join(unknown)}")
        _deep_update(cfg, user_cfg)

    if overrides:
        for key, value in overrides:
            _set_by_dotted_key(cfg, key, value)

    _validate(cfg)
    return cfg


def load_config(
    path: str | Path | None = None,
    overrides: Iterable[tuple[str, Any]] | None = None,
) -> Dict[str, Any]:
    """Load a YAML configuration file and merge it with defaults.

    Parameters
    ----------
    path:
        Path to the YAML configuration file, or ``None`` for defaults only.
    overrides:
        Optional iterable of ``(key, value)`` pairs where ``key`` is a dotted
        path specifying the field to override (e.g. ``optimizer.maxiter``).

    Raises
    ------
    FileNotFoundError
        If *path* is given but does not exist.
    ConfigError
        If the merged configuration is invalid.
    """

    user_cfg: Mapping[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(config_path)
        with config_path.open("r", encoding="utf-8") as fh:
            user_cfg = yaml.safe_load(fh) or {}
        if not isinstance(user_cfg, Mapping):
            raise ConfigError("Configuration file must define a mapping.")

    return resolve_config(user_cfg, overrides)


__all__ = ["load_config", "resolve_config", "DEFAULT_CONFIG", "ConfigError"]
