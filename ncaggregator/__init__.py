# ncaggregator/__init__.py

"""
NetCDF Temporal Aggregator
A Python package for aggregating hourly gridded reanalysis NetCDF data
(RDRS-style single-timestep files or one CaSR-style multi-timestep file)
into fixed-length blocks, with an audit index of every output value.
"""

from ncaggregator.models import AggregationBlock, AuditRow, SourceStep, TimeIndex, VariableSpec
from ncaggregator.engine import aggregate

__version__ = "0.1.0"

__all__ = [
    'aggregate', 'AggregationBlock', 'AuditRow', 'SourceStep', 'TimeIndex', 'VariableSpec',
]
