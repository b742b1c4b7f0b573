# ncaggregator/utils.py

import os
import logging
import datetime
from collections import Counter

import numpy as np
import pandas as pd

from ncaggregator.config import SOURCE_FILENAME_PATTERN, SOURCE_FILENAME_TIME_FORMAT
from ncaggregator.exceptions import ConfigurationError, MalformedFilename

logger = logging.getLogger(__name__)


def parse_filename_timestamp(file_path):
    """
    Parses the timestamp encoded in a single-timestep source filename.

    The basename must end with a YYYYMMDDHH stamp directly followed by '.nc',
    for example 'RDRS_v2.1_2020010112.nc' -> 2020-01-01 12:00 UTC.

    Args:
        file_path (str): Path to the NetCDF file.

    Returns:
        pandas.Timestamp: The decoded (timezone-naive, UTC) instant.

    Raises:
        MalformedFilename: If the name does not match the pattern or the stamp is not a valid date.
    """
    base_name = os.path.basename(file_path)
    match = SOURCE_FILENAME_PATTERN.search(base_name)
    if match is None:
        raise MalformedFilename(f"'{base_name}' does not end with a YYYYMMDDHH.nc timestamp.")
    try:
        parsed = datetime.datetime.strptime(match.group('stamp'), SOURCE_FILENAME_TIME_FORMAT)
    except ValueError as e:
        raise MalformedFilename(f"'{base_name}' carries an invalid timestamp '{match.group('stamp')}': {e}") from e
    return pd.Timestamp(parsed)


def find_dim(dims, candidates):
    """Returns the first name in `candidates` that is present in `dims`, or None."""
    return next((dim for dim in candidates if dim in dims), None)


def suggest_time_shift(mean_longitude):
    """
    Suggests a UTC -> local solar time shift in whole hours for a grid centred at
    `mean_longitude` (15 degrees per hour, east positive).
    """
    if mean_longitude is None or not np.isfinite(mean_longitude):
        return 0
    return int(round(mean_longitude / 15.0))


def assign_output_names(variable_specs):
    """
    Gives every VariableSpec a unique output variable name, in caller order.

    A source variable used once keeps its name. Repeated source variables are
    named '<name>_<reducer>', and names that still collide get '_1', '_2', ...
    An explicit `output_name` on a VariableSpec takes precedence.

    Raises:
        ConfigurationError: If explicit names make the result ambiguous.
    """
    source_counts = Counter(spec.source_variable_name for spec in variable_specs)
    names = []
    for spec in variable_specs:
        if spec.output_name:
            names.append(spec.output_name)
        elif source_counts[spec.source_variable_name] == 1:
            names.append(spec.source_variable_name)
        else:
            names.append(f"{spec.source_variable_name}_{spec.reducer}")

    totals = Counter(names)
    occurrences = Counter()
    unique_names = []
    for name in names:
        if totals[name] > 1:
            occurrences[name] += 1
            name = f"{name}_{occurrences[name]}"
        unique_names.append(name)

    if len(set(unique_names)) != len(unique_names):
        raise ConfigurationError(f"Could not derive unique output variable names: {unique_names}")
    logger.debug(f"Output variable names: {unique_names}")
    return unique_names


def format_timestamp(timestamp):
    """ISO-8601 text used for timestamps in the audit table."""
    return pd.Timestamp(timestamp).strftime('%Y-%m-%dT%H:%M:%S')
