# ncaggregator/data_loader.py

import os
import logging
from glob import glob
from itertools import groupby
from operator import attrgetter

import numpy as np
import pandas as pd
import xarray as xr

from ncaggregator.config import (
    VAR_TO_REMOVE, GRID_VAR_NAMES, TIME_DIM_NAMES, LON_VAR_NAMES, OUTPUT_SUBDIR, BLOCK_STEP_DIM
)
from ncaggregator.exceptions import (
    DuplicateTimestamp, InconsistentGrid, InputIntegrityError, NonMonotonicTime,
    ShapeMismatch, UnexpectedStepCount, VariableNotFound
)
from ncaggregator.models import SourceStep, TimeIndex
from ncaggregator.utils import find_dim, parse_filename_timestamp

# Setup logger for this module
logger = logging.getLogger(__name__)


def _is_grid_variable(name, variable):
    return name in GRID_VAR_NAMES or 'grid_mapping_name' in variable.attrs


def _grid_dataset(ds, time_dim):
    """
    Extracts the time-independent grid description of a dataset: coordinates,
    2-D lat/lon, grid-mapping variables and global attributes.
    """
    keep = []
    for name, variable in ds.variables.items():
        if name in VAR_TO_REMOVE or name in TIME_DIM_NAMES:
            continue
        if time_dim is not None and time_dim in variable.dims:
            continue
        if name in ds.coords or _is_grid_variable(name, variable):
            keep.append(name)
    grid = ds.drop_vars([name for name in ds.variables if name not in keep])
    return grid.load()


def _data_variable_attrs(ds):
    """Native attributes of every variable that can be aggregated."""
    return {
        name: dict(da.attrs)
        for name, da in ds.data_vars.items()
        if name not in VAR_TO_REMOVE and not _is_grid_variable(name, da)
    }


def _check_grid(reference_grid, ds, time_dim, file_path):
    candidate = _grid_dataset(ds, time_dim)
    if not reference_grid.equals(candidate):
        raise InconsistentGrid(
            f"Grid of '{file_path}' differs from the first source "
            f"(sizes {dict(candidate.sizes)} vs {dict(reference_grid.sizes)})."
        )


def _decoded_times(ds, time_dim, file_path):
    """Returns the time coordinate of `ds` as absolute, timezone-naive UTC instants."""
    if time_dim in ds.indexes:
        index = ds.indexes[time_dim]
    else:
        index = pd.Index(ds[time_dim].values)
    if isinstance(index, xr.CFTimeIndex):
        index = index.to_datetimeindex()
    if not isinstance(index, pd.DatetimeIndex):
        raise InputIntegrityError(
            f"Time coordinate '{time_dim}' of '{file_path}' could not be decoded to absolute instants "
            f"(units: {ds[time_dim].attrs.get('units', ds[time_dim].encoding.get('units'))!r})."
        )
    if index.tz is not None:
        index = index.tz_convert(None)
    return index


def discover_source_files(source_dir):
    """
    Finds all NetCDF files below `source_dir`, skipping the run's own output folder.

    Args:
        source_dir (str): Directory holding the single-timestep files.

    Returns:
        list: Sorted file paths.
    """
    nc_file_paths_found = sorted(glob(os.path.join(source_dir, '**', '*.nc'), recursive=True))
    output_prefix = os.path.join(source_dir, OUTPUT_SUBDIR) + os.sep
    source_files = []
    for fpath in nc_file_paths_found:
        if fpath.startswith(output_prefix):
            logger.debug(f"Ignoring '{fpath}' as it lives in the output folder.")
            continue
        source_files.append(fpath)
    return source_files


def _build_multi_file_index(source_dir):
    paths = discover_source_files(source_dir)
    if not paths:
        raise FileNotFoundError(f"No NetCDF files found in {source_dir!r}")

    stamped = sorted(((parse_filename_timestamp(p), p) for p in paths), key=lambda item: item[0])
    for (previous_time, previous_path), (timestamp, path) in zip(stamped, stamped[1:]):
        if timestamp == previous_time:
            raise DuplicateTimestamp(
                f"'{previous_path}' and '{path}' both encode {timestamp:%Y-%m-%d %H:%M}."
            )

    steps = []
    reference_grid = None
    time_dim = None
    variable_attrs = {}
    for timestamp, path in stamped:
        with xr.open_dataset(path, decode_times=True) as ds:
            file_time_dim = find_dim(ds.dims, TIME_DIM_NAMES)
            if file_time_dim is not None:
                if ds.sizes[file_time_dim] != 1:
                    raise UnexpectedStepCount(
                        f"'{path}' holds {ds.sizes[file_time_dim]} timesteps; single-timestep files are expected."
                    )
                internal_time = _decoded_times(ds, file_time_dim, path)[0]
                if internal_time != timestamp:
                    logger.warning(
                        f"Internal time {internal_time} of '{os.path.basename(path)}' differs from its "
                        f"filename stamp {timestamp}. Using the filename stamp."
                    )
            if reference_grid is None:
                time_dim = file_time_dim
                reference_grid = _grid_dataset(ds, time_dim)
                variable_attrs = _data_variable_attrs(ds)
            else:
                _check_grid(reference_grid, ds, file_time_dim, path)
        steps.append(SourceStep(timestamp=timestamp, path=path, step_index=0))

    logger.info(f"Indexed {len(steps)} single-timestep files from {steps[0].timestamp} to {steps[-1].timestamp}.")
    return TimeIndex(steps=steps, time_dim=time_dim, grid=reference_grid,
                     variable_attrs=variable_attrs, source=source_dir, mode='multi_file')


def _build_single_file_index(file_path):
    with xr.open_dataset(file_path, decode_times=True) as ds:
        time_dim = find_dim(ds.dims, TIME_DIM_NAMES)
        if time_dim is None:
            raise UnexpectedStepCount(f"'{file_path}' has no time dimension (looked for {TIME_DIM_NAMES}).")
        times = _decoded_times(ds, time_dim, file_path)
        logger.debug(f"Decoded '{time_dim}' of '{file_path}' using units {ds[time_dim].encoding.get('units')!r}.")

        deltas = np.diff(times.values)
        not_increasing = np.flatnonzero(deltas <= np.timedelta64(0, 'ns'))
        if not_increasing.size:
            position = int(not_increasing[0])
            raise NonMonotonicTime(
                f"Time in '{file_path}' is not strictly increasing at step {position + 1}: "
                f"{times[position]} -> {times[position + 1]}."
            )
        grid = _grid_dataset(ds, time_dim)
        variable_attrs = _data_variable_attrs(ds)

    steps = [SourceStep(timestamp=pd.Timestamp(t), path=file_path, step_index=i) for i, t in enumerate(times)]
    logger.info(f"Indexed {len(steps)} timesteps of '{os.path.basename(file_path)}'.")
    return TimeIndex(steps=steps, time_dim=time_dim, grid=grid,
                     variable_attrs=variable_attrs, source=file_path, mode='single_file')


def build_time_index(source_descriptor):
    """
    Builds the chronological TimeIndex of a run.

    Args:
        source_descriptor (str): Either a directory of single-timestep files named
            '...YYYYMMDDHH.nc', or one NetCDF file with an internal time coordinate.

    Returns:
        TimeIndex: Strictly increasing steps sharing one grid.
    """
    if os.path.isdir(source_descriptor):
        return _build_multi_file_index(source_descriptor)
    if os.path.isfile(source_descriptor):
        return _build_single_file_index(source_descriptor)
    raise FileNotFoundError(f"Source {source_descriptor!r} is neither a directory nor a file.")


def load_block_variable(member_steps, variable_name, time_dim):
    """
    Loads one variable for the member steps of a block, stacked along a new
    block-local 'step' axis. Only the requested steps are read.

    Args:
        member_steps (sequence of SourceStep): Ordered steps of the block.
        variable_name (str): Name of the source variable.
        time_dim (str or None): Name of the time dimension in the source files.

    Returns:
        xarray.DataArray: float64 array with dims ('step', *spatial_dims); missing cells are NaN.

    Raises:
        VariableNotFound: If a member file lacks the variable.
        ShapeMismatch: If members disagree in shape, or a time-invariant variable
            is requested for several steps of one file.
    """
    arrays = []
    spatial_dims = None
    attrs = {}
    for path, group in groupby(member_steps, key=attrgetter('path')):
        indices = [step.step_index for step in group]
        with xr.open_dataset(path, decode_times=True) as ds:
            if variable_name not in ds.data_vars:
                raise VariableNotFound(f"Variable '{variable_name}' not found in '{path}'.")
            da = ds[variable_name]
            if time_dim is not None and time_dim in da.dims:
                da = da.isel({time_dim: indices}).transpose(time_dim, ...)
                dims = da.dims[1:]
                pieces = list(da.values)
            else:
                # A time-invariant field can only stand for one step per file
                if len(indices) != 1:
                    raise ShapeMismatch(
                        f"'{variable_name}' in '{path}' has no time dimension and cannot supply "
                        f"{len(indices)} timesteps."
                    )
                dims = da.dims
                pieces = [da.values]
            if spatial_dims is None:
                spatial_dims = dims
                attrs = dict(da.attrs)
            for piece in pieces:
                expected_shape = arrays[0].shape if arrays else piece.shape
                if piece.shape != expected_shape or dims != spatial_dims:
                    raise ShapeMismatch(
                        f"'{variable_name}' in '{path}' has shape {piece.shape} {dims}; "
                        f"expected {expected_shape} {spatial_dims}."
                    )
                arrays.append(piece)

    stacked = np.stack(arrays).astype('float64')
    return xr.DataArray(stacked, dims=(BLOCK_STEP_DIM,) + tuple(spatial_dims), name=variable_name, attrs=attrs)


def describe_source(source_descriptor):
    """
    Lists the aggregatable variables of a source with their native units and the
    mean grid longitude.

    Returns:
        dict: {'variables': {name: units}, 'mean_longitude': float or None}
    """
    if os.path.isdir(source_descriptor):
        paths = discover_source_files(source_descriptor)
        if not paths:
            raise FileNotFoundError(f"No NetCDF files found in {source_descriptor!r}")
        sample_path = paths[0]
    else:
        sample_path = source_descriptor

    with xr.open_dataset(sample_path) as ds:
        variables = {name: attrs.get('units', '') for name, attrs in _data_variable_attrs(ds).items()}
        lon_name = find_dim(ds.variables, LON_VAR_NAMES)
        mean_longitude = None
        if lon_name is not None:
            lon_values = np.asarray(ds[lon_name].values, dtype='float64')
            lon_values = ((lon_values + 180.0) % 360.0) - 180.0
            if np.isfinite(lon_values).any():
                mean_longitude = float(np.nanmean(lon_values))
    return {'variables': variables, 'mean_longitude': mean_longitude}
