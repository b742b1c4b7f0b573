# ncaggregator/audit.py

"""
Audit index of an aggregation run: one row per (block, variable) recording the
source timesteps, files and transformation behind every output field.
"""

import logging

import pandas as pd

from ncaggregator.models import AuditRow
from ncaggregator.utils import format_timestamp

logger = logging.getLogger(__name__)

AUDIT_COLUMNS = [
    'block_index', 'output_timestamp', 'output_variable', 'source_variable', 'reducer',
    'scale_factor', 'output_unit', 'n_steps', 'contributing_timestamps', 'contributing_files',
    'is_partial', 'has_gap', 'is_geopotential',
]

# Separator used to flatten list-valued columns into one CSV cell
LIST_SEPARATOR = ';'


def build_audit_row(block, spec, output_name):
    """Records how the field of `spec` over `block` was derived."""
    return AuditRow(
        block_index=block.block_index,
        output_timestamp=block.output_timestamp,
        output_variable=output_name,
        source_variable_name=spec.source_variable_name,
        reducer=spec.reducer,
        scale_factor=spec.scale_factor,
        output_unit=spec.output_unit,
        contributing_timestamps=tuple(step.timestamp for step in block.member_steps),
        contributing_files=tuple(step.source_ref for step in block.member_steps),
        is_partial=block.is_partial,
        has_gap=block.has_gap,
        is_geopotential=spec.is_geopotential,
    )


def audit_rows_to_dataframe(audit_rows):
    """Flattens audit rows into a table with one row per (block, variable)."""
    records = [
        {
            'block_index': row.block_index,
            'output_timestamp': format_timestamp(row.output_timestamp),
            'output_variable': row.output_variable,
            'source_variable': row.source_variable_name,
            'reducer': row.reducer,
            'scale_factor': row.scale_factor,
            'output_unit': row.output_unit,
            'n_steps': len(row.contributing_timestamps),
            'contributing_timestamps': LIST_SEPARATOR.join(format_timestamp(t) for t in row.contributing_timestamps),
            'contributing_files': LIST_SEPARATOR.join(row.contributing_files),
            'is_partial': row.is_partial,
            'has_gap': row.has_gap,
            'is_geopotential': row.is_geopotential,
        }
        for row in audit_rows
    ]
    return pd.DataFrame.from_records(records, columns=AUDIT_COLUMNS)
