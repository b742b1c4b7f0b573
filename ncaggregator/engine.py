# ncaggregator/engine.py

import os
import logging
import multiprocessing
from dataclasses import replace

from ncaggregator.audit import build_audit_row
from ncaggregator.config import AUDIT_CSV_FILENAME, OUTPUT_NETCDF_FILENAME, OUTPUT_SUBDIR
from ncaggregator.data_loader import build_time_index
from ncaggregator.exceptions import WriteFailure
from ncaggregator.models import ReducedField
from ncaggregator.output_writer import build_output_dataset, save_audit_to_csv, save_netcdf_data
from ncaggregator.temporal_aggregator import (
    find_gaps, partition_blocks, reduce_block_variable, validate_run_config
)
from ncaggregator.utils import assign_output_names

logger = logging.getLogger(__name__)

# Share of the progress signal taken by each stage of a run
PROGRESS_INDEX_BUILT = 0.1
PROGRESS_REDUCTION = 0.8


def process_block_variable(task_args):
    """
    Worker function reducing one VariableSpec over one AggregationBlock.
    Runs in the parent process or in a pool worker.

    Args:
        task_args (tuple): (block, spec_index, spec, time_dim)

    Returns:
        ReducedField: The reduced field, tagged with its block and spec position.
    """
    block, spec_index, spec, time_dim = task_args
    worker_logger = logging.getLogger(f"worker.{spec.source_variable_name}")
    worker_logger.debug(f"Reducing '{spec.source_variable_name}' ({spec.reducer}) over block "
                        f"{block.block_index} ({len(block.member_steps)} steps)")
    reduced = reduce_block_variable(block, spec, time_dim)
    return ReducedField(
        block_index=block.block_index,
        spec_index=spec_index,
        dims=tuple(reduced.dims),
        values=reduced.values,
    )


def _run_tasks(tasks, num_workers):
    """Yields the ReducedField of every task, in task order."""
    if num_workers == -1:
        num_workers = os.cpu_count() or 1
    logger.info(f"Using {num_workers} parallel worker(s) for {len(tasks)} tasks.")

    if num_workers > 1 and len(tasks) > 1:
        with multiprocessing.Pool(processes=num_workers) as pool:
            for field in pool.imap(process_block_variable, tasks):
                yield field
    else:
        for task in tasks:
            yield process_block_variable(task)


def _resolve_output_units(variable_specs, variable_attrs):
    """Fills in the native unit of the source variable where a spec declares none."""
    resolved = []
    for spec in variable_specs:
        if spec.output_unit is None:
            if spec.is_geopotential:
                unit = 'm'
            else:
                unit = str(variable_attrs.get(spec.source_variable_name, {}).get('units', ''))
            spec = replace(spec, output_unit=unit)
        resolved.append(spec)
    return resolved


def default_output_dir(source_descriptor):
    """Output folder used when the caller names none: 'output' next to the source data."""
    if os.path.isdir(source_descriptor):
        return os.path.join(source_descriptor, OUTPUT_SUBDIR)
    return os.path.join(os.path.dirname(os.path.abspath(source_descriptor)), OUTPUT_SUBDIR)


def aggregate(source_descriptor, time_shift_hours, aggregation_length_hours, variable_specs,
              output_dir=None, num_workers=1, progress=None,
              netcdf_filename=OUTPUT_NETCDF_FILENAME, audit_filename=AUDIT_CSV_FILENAME):
    """
    Aggregates hourly gridded data into fixed-length blocks.

    Args:
        source_descriptor (str): Directory of single-timestep '...YYYYMMDDHH.nc' files,
            or a single NetCDF file with an internal time coordinate.
        time_shift_hours (int): Hours added to every source timestamp (e.g. -5 for UTC -> EST).
        aggregation_length_hours (int): Length of each aggregation block.
        variable_specs (sequence of VariableSpec): Output variables, in output order.
        output_dir (str, optional): Destination folder. Defaults to 'output' next to the source.
        num_workers (int): Number of parallel workers; -1 uses all CPUs.
        progress (callable, optional): Called as progress(fraction, message).
        netcdf_filename (str): Name of the aggregated NetCDF file.
        audit_filename (str): Name of the audit CSV file.

    Returns:
        tuple: (output_file_path, audit_rows)

    Raises:
        ConfigurationError: Before any I/O, for an invalid configuration or
            output variable names that cannot be made unique.
        InputIntegrityError: If the source data cannot be aggregated safely. Nothing is written.
        WriteFailure: If the output cannot be written. `audit_rows` are attached and the
            audit CSV is still written when possible.
    """
    variable_specs = list(variable_specs)
    validate_run_config(time_shift_hours, aggregation_length_hours, variable_specs)
    variable_specs = [replace(spec, reducer=str(spec.reducer).strip().lower()) for spec in variable_specs]
    output_names = assign_output_names(variable_specs)

    def report(fraction, message):
        logger.info(message)
        if progress is not None:
            progress(fraction, message)

    time_index = build_time_index(source_descriptor)
    variable_specs = _resolve_output_units(variable_specs, time_index.variable_attrs)

    for before, after in find_gaps(time_index.steps):
        logger.warning(f"Gap in source data between {before} and {after}. Affected blocks are flagged in the audit.")

    blocks = partition_blocks(time_index.steps, time_shift_hours, aggregation_length_hours)
    report(PROGRESS_INDEX_BUILT,
           f"Time index built: {len(time_index)} steps, {len(blocks)} blocks, {len(variable_specs)} variables.")

    tasks = [
        (block, spec_index, spec, time_index.time_dim)
        for block in blocks
        for spec_index, spec in enumerate(variable_specs)
    ]
    fields = {}
    audit_rows = []
    for done, field in enumerate(_run_tasks(tasks, num_workers), start=1):
        block = blocks[field.block_index]
        spec = variable_specs[field.spec_index]
        fields[(field.block_index, field.spec_index)] = field
        audit_rows.append(build_audit_row(block, spec, output_names[field.spec_index]))
        if done % len(variable_specs) == 0 or done == len(tasks):
            report(PROGRESS_INDEX_BUILT + PROGRESS_REDUCTION * done / len(tasks),
                   f"Reduced block {field.block_index + 1}/{len(blocks)}.")

    if output_dir is None:
        output_dir = default_output_dir(source_descriptor)

    dataset = build_output_dataset(time_index, blocks, variable_specs, output_names, fields,
                                   time_shift_hours, aggregation_length_hours)
    try:
        output_path = save_netcdf_data(dataset, output_dir, netcdf_filename)
    except WriteFailure as e:
        e.audit_rows = list(audit_rows)
        try:
            save_audit_to_csv(audit_rows, output_dir, audit_filename)
        except WriteFailure as audit_error:
            logger.error(f"Audit table could not be flushed either: {audit_error}")
        raise

    try:
        save_audit_to_csv(audit_rows, output_dir, audit_filename)
    except WriteFailure as e:
        e.audit_rows = list(audit_rows)
        raise
    report(1.0, f"Aggregation complete: {output_path}")
    return output_path, audit_rows
