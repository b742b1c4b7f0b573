# ncaggregator/models.py

"""
Value objects passed between the stages of an aggregation run.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import xarray as xr


@dataclass(frozen=True)
class SourceStep:
    """One physical timestep of gridded data: where it lives and when it is."""

    timestamp: pd.Timestamp
    path: str
    step_index: int = 0

    @property
    def source_ref(self) -> str:
        return f"{self.path}[{self.step_index}]"


@dataclass
class TimeIndex:
    """
    Chronologically ordered source steps of one run (metadata only, no arrays).

    `grid` holds the spatial coordinates, grid-mapping variables and global
    attributes shared by every step; `variable_attrs` maps each aggregatable
    variable to its native attributes (including `units`).
    """

    steps: List[SourceStep]
    time_dim: Optional[str]
    grid: xr.Dataset
    variable_attrs: Dict[str, dict] = field(default_factory=dict)
    source: str = ""
    mode: str = "multi_file"

    def __len__(self):
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    @property
    def timestamps(self) -> pd.DatetimeIndex:
        return pd.DatetimeIndex([step.timestamp for step in self.steps])


@dataclass(frozen=True)
class AggregationBlock:
    """A contiguous run of shifted timesteps mapped to one output timestep."""

    block_index: int
    member_steps: Tuple[SourceStep, ...]
    shifted_timestamps: Tuple[pd.Timestamp, ...]
    is_partial: bool = False
    has_gap: bool = False

    @property
    def output_timestamp(self) -> pd.Timestamp:
        return self.shifted_timestamps[0]

    def __len__(self):
        return len(self.member_steps)


@dataclass(frozen=True)
class VariableSpec:
    """
    Caller configuration for one output variable.

    Several specs may point at the same source variable; each one produces its
    own output variable and audit rows. `output_unit=None` keeps the native unit
    of the source variable.
    """

    source_variable_name: str
    reducer: str = "mean"
    output_unit: Optional[str] = None
    scale_factor: float = 1.0
    is_geopotential: bool = False
    output_name: Optional[str] = None


@dataclass
class ReducedField:
    """The reduced 2-D field of one VariableSpec over one AggregationBlock."""

    block_index: int
    spec_index: int
    dims: Tuple[str, ...]
    values: np.ndarray


@dataclass(frozen=True)
class AuditRow:
    """Traceability record linking one output field to its sources."""

    block_index: int
    output_timestamp: pd.Timestamp
    output_variable: str
    source_variable_name: str
    reducer: str
    scale_factor: float
    output_unit: str
    contributing_timestamps: Tuple[pd.Timestamp, ...]
    contributing_files: Tuple[str, ...]
    is_partial: bool
    has_gap: bool = False
    is_geopotential: bool = False
