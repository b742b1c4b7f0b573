# ncaggregator/temporal_aggregator.py

import numbers
import logging
from itertools import groupby

import pandas as pd

from ncaggregator.config import BLOCK_STEP_DIM, CADENCE_HOURS, STANDARD_GRAVITY, SUPPORTED_REDUCERS
from ncaggregator.data_loader import load_block_variable
from ncaggregator.exceptions import (
    ConfigurationError, InvalidAggregationLength, InvalidGeopotentialConfig, UnknownReducer
)
from ncaggregator.models import AggregationBlock

logger = logging.getLogger(__name__)


def _is_integer(value):
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def validate_variable_spec(spec):
    """
    Checks a single VariableSpec.

    Raises:
        UnknownReducer: If the reducer is not one of sum/mean/min/max.
        InvalidGeopotentialConfig: If geopotential conversion is paired with anything but 'mean'.
    """
    reducer = str(spec.reducer).strip().lower()
    if reducer not in SUPPORTED_REDUCERS:
        raise UnknownReducer(
            f"Unsupported temporal aggregation method: '{spec.reducer}' for '{spec.source_variable_name}'. "
            f"Expected one of {SUPPORTED_REDUCERS}."
        )
    if spec.is_geopotential and reducer != 'mean':
        raise InvalidGeopotentialConfig(
            f"Geopotential conversion of '{spec.source_variable_name}' requires the 'mean' reducer, got '{spec.reducer}'."
        )


def validate_run_config(time_shift_hours, aggregation_length_hours, variable_specs):
    """Validates the run configuration before any file is touched."""
    if not _is_integer(aggregation_length_hours) or aggregation_length_hours <= 0:
        raise InvalidAggregationLength(
            f"Aggregation length must be a positive whole number of hours, got {aggregation_length_hours!r}."
        )
    if not _is_integer(time_shift_hours):
        raise ConfigurationError(f"Time shift must be a whole number of hours, got {time_shift_hours!r}.")
    if not variable_specs:
        raise ConfigurationError("No variables configured for aggregation.")
    for spec in variable_specs:
        validate_variable_spec(spec)


def find_gaps(steps, cadence_hours=CADENCE_HOURS):
    """
    Returns (before, after) timestamp pairs of consecutive steps further apart
    than one cadence.
    """
    cadence = pd.Timedelta(hours=cadence_hours)
    return [
        (previous.timestamp, step.timestamp)
        for previous, step in zip(steps, steps[1:])
        if step.timestamp - previous.timestamp > cadence
    ]


def partition_blocks(steps, time_shift_hours, aggregation_length_hours, cadence_hours=CADENCE_HOURS):
    """
    Shifts every timestamp by `time_shift_hours` and partitions the shifted
    sequence into contiguous blocks of `aggregation_length_hours`.

    Block boundaries lie on the grid `anchor + k * aggregation_length_hours`, where
    the anchor is the first unshifted timestamp. Without a shift, block 0 starts
    at the first step; a shift slides the data across the fixed boundaries (e.g.
    UTC data regrouped into local days). Blocks are numbered from 0 starting with
    the block that holds the earliest shifted timestamp.

    Without a shift, or with a shift that is a multiple of the block length, the
    number of blocks is ceil(span / length) and only the trailing block can be
    partial. Any other shift splits the first boundary: a leading partial block
    appears and the count can reach ceil(span / length) + 1 (30 hourly steps,
    shift -5, length 24 -> blocks of 5, 24 and 1 steps).

    Args:
        steps (sequence of SourceStep): Strictly increasing source steps.
        time_shift_hours (int): Offset added to every timestamp.
        aggregation_length_hours (int): Block length in hours.
        cadence_hours (int): Nominal spacing between source steps.

    Returns:
        list: AggregationBlock objects in output time order.
    """
    if not steps:
        return []

    shift = pd.Timedelta(hours=time_shift_hours)
    length = pd.Timedelta(hours=aggregation_length_hours)
    cadence = pd.Timedelta(hours=cadence_hours)
    anchor = steps[0].timestamp

    positioned = [((step.timestamp + shift - anchor) // length, step) for step in steps]

    blocks = []
    for block_index, (_, group) in enumerate(groupby(positioned, key=lambda item: item[0])):
        members = tuple(step for _, step in group)
        shifted = tuple(step.timestamp + shift for step in members)
        has_gap = any(after - before > cadence for before, after in zip(shifted, shifted[1:]))
        is_partial = len(members) * cadence_hours < aggregation_length_hours
        blocks.append(AggregationBlock(
            block_index=block_index,
            member_steps=members,
            shifted_timestamps=shifted,
            is_partial=is_partial,
            has_gap=has_gap,
        ))

    partial = [block.block_index for block in blocks if block.is_partial]
    if partial:
        logger.info(f"Blocks {partial} hold fewer than {aggregation_length_hours} steps and are marked partial.")
    logger.debug(f"Partitioned {len(steps)} steps into {len(blocks)} blocks "
                 f"({aggregation_length_hours}h, shift {time_shift_hours:+d}h).")
    return blocks


def _perform_temporal_reduction(da, reducer='mean'):
    """
    Internal helper collapsing the block-local 'step' axis of a DataArray.
    Missing cells are skipped; a cell missing in every step stays missing.
    """
    if BLOCK_STEP_DIM not in da.dims:
        raise ValueError(f"DataArray must have a '{BLOCK_STEP_DIM}' dimension for temporal reduction. Found: {da.dims}")

    normalized_reducer = reducer.strip().lower()

    if normalized_reducer == 'sum':
        return da.sum(dim=BLOCK_STEP_DIM, skipna=True, min_count=1)
    elif normalized_reducer == 'mean':
        return da.mean(dim=BLOCK_STEP_DIM, skipna=True)
    elif normalized_reducer == 'min':
        return da.min(dim=BLOCK_STEP_DIM, skipna=True)
    elif normalized_reducer == 'max':
        return da.max(dim=BLOCK_STEP_DIM, skipna=True)
    else:
        raise UnknownReducer(f"Unsupported temporal aggregation method: '{reducer}'.")


def geopotential_to_elevation(da):
    """Converts a (block-mean) geopotential field in m2/s2 to elevation in metres above sea level."""
    return da / STANDARD_GRAVITY


def reduce_block_variable(block, spec, time_dim):
    """
    Reduces one VariableSpec over one AggregationBlock.

    Member arrays are loaded on demand, reduced along the block axis, converted
    from geopotential to elevation when requested, then multiplied by the scale
    factor.

    Returns:
        xarray.DataArray: The reduced 2-D field.
    """
    validate_variable_spec(spec)
    stacked = load_block_variable(block.member_steps, spec.source_variable_name, time_dim)
    reduced = _perform_temporal_reduction(stacked, spec.reducer)
    if spec.is_geopotential:
        reduced = geopotential_to_elevation(reduced)
    reduced = reduced * spec.scale_factor
    reduced.name = spec.source_variable_name
    return reduced
