"""
Analysis settings.

All tunable constants of the pipeline live in AnalysisConfig. Settings can
be read from a YAML file; keys not listed here are rejected.
"""

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import MalformedInputError
from .normalize import NORM_METHODS
from .results import SORT_OPTIONS
from .utils import validate_file_exists

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisConfig:
    """Defaults follow edgeR/limma."""

    # expression filter
    cpm_threshold: float = 1.0
    min_samples: Optional[int] = None

    # normalization
    norm_method: str = 'TMM'
    logratio_trim: float = 0.3
    sum_trim: float = 0.05

    # voom and sample quality weights
    span: float = 0.5
    quality_weights: bool = True
    prior_n: float = 10.0
    passes: int = 2
    max_iter: int = 50
    tol: float = 1e-5

    # empirical Bayes
    robust: bool = True
    trend: bool = False

    # result tables
    p_value: float = 0.05
    lfc: float = 0.0
    sort_by: str = 'p'
    significant_only: bool = False
    reference_levels: Dict[str, List[str]] = field(default_factory=dict)

    def __post_init__(self):
        if self.norm_method not in NORM_METHODS:
            raise MalformedInputError(f"Unknown norm_method '{self.norm_method}'; expected", NORM_METHODS)
        if self.sort_by not in SORT_OPTIONS:
            raise MalformedInputError(f"Unknown sort_by '{self.sort_by}'; expected", SORT_OPTIONS)
        if not 0 < self.span <= 1:
            raise MalformedInputError(f"span must be in (0, 1], got {self.span}")
        if not 0 <= self.logratio_trim < 0.5 or not 0 <= self.sum_trim < 0.5:
            raise MalformedInputError("Trim fractions must be in [0, 0.5)")
        if self.min_samples is not None and self.min_samples < 1:
            raise MalformedInputError(f"min_samples must be positive, got {self.min_samples}")
        if self.passes < 1:
            raise MalformedInputError(f"passes must be at least 1, got {self.passes}")

    def update(self, **overrides: Any) -> 'AnalysisConfig':
        """Return a copy with the non-None overrides applied."""
        _check_keys(overrides)
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _level_list(covariate: Any, levels: Any) -> List[str]:
    """A reference level given alone becomes a one-element list."""
    if isinstance(levels, (list, tuple)):
        return [str(level) for level in levels]
    if isinstance(levels, (str, int, float)) and not isinstance(levels, bool):
        return [str(levels)]
    raise MalformedInputError(f"reference_levels for '{covariate}' must be a level or a list of levels")


def _check_keys(values: Dict[str, Any]) -> None:
    known = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise MalformedInputError("Unknown configuration keys", unknown)


def load_config(config_path: Optional[Union[str, Path]] = None) -> AnalysisConfig:
    """
    Load analysis settings from a YAML file.

    Args:
        config_path: YAML mapping of setting names to values (None: defaults)

    Returns:
        AnalysisConfig with the file's values merged over the defaults

    Raises:
        MalformedInputError: If the file is not a mapping or has unknown keys
    """
    if config_path is None:
        return AnalysisConfig()

    path = validate_file_exists(config_path)
    try:
        with open(path, 'r') as f:
            values = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise MalformedInputError(f"Could not parse config {path}: {e}") from e

    if not isinstance(values, dict):
        raise MalformedInputError(f"Config {path} must be a mapping of settings")
    _check_keys(values)

    levels = values.get('reference_levels') or {}
    if not isinstance(levels, dict):
        raise MalformedInputError("reference_levels must map covariates to a level or a list of levels")
    values['reference_levels'] = {str(k): _level_list(k, vs) for k, vs in levels.items()}

    logger.debug(f"Loaded config from {path}: {sorted(values)}")
    return AnalysisConfig(**values)
