# ncaggregator/output_writer.py

import os
import logging
import datetime
import tempfile

import numpy as np
import pandas as pd
import xarray as xr

from ncaggregator.audit import audit_rows_to_dataframe
from ncaggregator.config import (
    AUDIT_CSV_FILENAME, CELL_METHODS, OUTPUT_FILL_VALUE, OUTPUT_NETCDF_FILENAME, OUTPUT_TIME_DIM
)
from ncaggregator.exceptions import WriteFailure

logger = logging.getLogger(__name__)


def _variable_attrs(spec, source_attrs, aggregation_length_hours):
    if spec.is_geopotential:
        long_name = f"elevation above sea level from the {aggregation_length_hours}-hour mean of {spec.source_variable_name}"
    else:
        long_name = f"{aggregation_length_hours}-hour {spec.reducer} of {spec.source_variable_name}"
    attrs = {
        'long_name': long_name,
        'units': spec.output_unit,
        'cell_methods': f"{OUTPUT_TIME_DIM}: {CELL_METHODS[spec.reducer]}",
        'source_variable': spec.source_variable_name,
        'aggregation_function': spec.reducer,
        'aggregation_factor': spec.scale_factor,
    }
    if 'grid_mapping' in source_attrs:
        attrs['grid_mapping'] = source_attrs['grid_mapping']
    return attrs


def build_output_dataset(time_index, blocks, variable_specs, output_names, fields,
                         time_shift_hours, aggregation_length_hours):
    """
    Assembles the reduced fields of a run into one gridded Dataset.

    The spatial coordinates, grid-mapping variables and global attributes come
    unchanged from `time_index.grid`; a new 'time' dimension holds one entry per
    block, stamped with the block's output timestamp.

    Args:
        time_index (TimeIndex): Index of the run, providing the grid.
        blocks (list): AggregationBlock objects in output order.
        variable_specs (list): VariableSpec objects in output variable order.
        output_names (list): Output variable name of each spec.
        fields (dict): ReducedField objects keyed by (block_index, spec_index).
        time_shift_hours (int): Shift applied to the source timestamps.
        aggregation_length_hours (int): Block length in hours.

    Returns:
        xarray.Dataset: The output dataset, with encodings set for writing.
    """
    ds = time_index.grid.copy()
    times = pd.DatetimeIndex([block.output_timestamp for block in blocks])
    ds = ds.assign_coords({OUTPUT_TIME_DIM: times})
    ds[OUTPUT_TIME_DIM].attrs.update({
        'long_name': 'start of aggregation block',
        'time_shift_hours': int(time_shift_hours),
        'aggregation_length_hours': int(aggregation_length_hours),
    })
    if len(times):
        ds[OUTPUT_TIME_DIM].encoding = {
            'units': f"hours since {times[0]:%Y-%m-%d %H:%M:%S}",
            'calendar': 'standard',
        }

    for spec_index, (spec, name) in enumerate(zip(variable_specs, output_names)):
        block_fields = [fields[(block.block_index, spec_index)] for block in blocks]
        values = np.stack([field.values for field in block_fields])
        dims = (OUTPUT_TIME_DIM,) + tuple(block_fields[0].dims)
        source_attrs = time_index.variable_attrs.get(spec.source_variable_name, {})
        ds[name] = xr.DataArray(values, dims=dims,
                                attrs=_variable_attrs(spec, source_attrs, aggregation_length_hours))
        ds[name].encoding = {'_FillValue': OUTPUT_FILL_VALUE, 'dtype': 'float64'}

    history = (f"{datetime.datetime.now(datetime.timezone.utc):%Y-%m-%d %H:%M:%S} UTC: aggregated "
               f"{len(time_index)} timesteps into {len(blocks)} blocks of {aggregation_length_hours} hours "
               f"with a {int(time_shift_hours):+d} hour time shift")
    previous_history = ds.attrs.get('history')
    ds.attrs['history'] = f"{history}\n{previous_history}" if previous_history else history
    ds.encoding = {}
    return ds


def _discard(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary file '{path}': {e}")


def _temporary_path(output_dir, filename):
    try:
        os.makedirs(output_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{filename}.", suffix='.tmp', dir=output_dir)
        os.close(fd)
    except OSError as e:
        raise WriteFailure(f"Cannot create output destination in '{output_dir}': {e}") from e
    return tmp_path


def save_netcdf_data(ds, output_dir, filename=OUTPUT_NETCDF_FILENAME):
    """
    Writes a Dataset to `output_dir/filename`.

    The data is written to a temporary file in the same directory and renamed
    into place only once complete, so a failed run never leaves a file behind
    that looks finished.

    Returns:
        str: Path of the written file.

    Raises:
        WriteFailure: If the destination cannot be created or written.
    """
    final_path = os.path.join(output_dir, filename)
    tmp_path = _temporary_path(output_dir, filename)
    try:
        ds.to_netcdf(tmp_path)
        os.replace(tmp_path, final_path)
    except Exception as e:
        _discard(tmp_path)
        raise WriteFailure(f"Error writing NetCDF file '{final_path}': {e}") from e
    logger.info(f"Saved aggregated NetCDF to {final_path}")
    return final_path


def save_audit_to_csv(audit_rows, output_dir, filename=AUDIT_CSV_FILENAME):
    """
    Writes the audit index of a run as a flat CSV table.

    Returns:
        str: Path of the written file.

    Raises:
        WriteFailure: If the destination cannot be created or written.
    """
    final_path = os.path.join(output_dir, filename)
    df = audit_rows_to_dataframe(audit_rows)
    tmp_path = _temporary_path(output_dir, filename)
    try:
        df.to_csv(tmp_path, index=False)
        os.replace(tmp_path, final_path)
    except Exception as e:
        _discard(tmp_path)
        raise WriteFailure(f"Error writing audit table '{final_path}': {e}") from e
    logger.info(f"Saved aggregation audit ({len(df)} rows) to {final_path}")
    return final_path
