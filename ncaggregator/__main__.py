# ncaggregator/__main__.py

import sys
import argparse
import logging

# --- Setup Logger ---
logger = logging.getLogger(__name__)

from ncaggregator.config import (
    AUDIT_CSV_FILENAME, OUTPUT_NETCDF_FILENAME, POSTPROCESS_SETTINGS_YAML,
    load_aggregation_settings, variable_specs_from_settings
)
from ncaggregator.data_loader import describe_source
from ncaggregator.engine import aggregate
from ncaggregator.exceptions import AggregationError, ConfigurationError, WriteFailure
from ncaggregator.utils import suggest_time_shift


def list_variables(source):
    """Logs the variables available in a source and a suggested time shift."""
    description = describe_source(source)
    for name, units in description['variables'].items():
        logger.info(f"  {name} [{units}]")
    logger.info(f"Found {len(description['variables'])} variables.")
    mean_longitude = description['mean_longitude']
    if mean_longitude is not None:
        logger.info(f"Suggested time shift: UTC {suggest_time_shift(mean_longitude):+d} "
                    f"based on mean longitude {mean_longitude:.2f}.")
    return description


def main(argv=None):
    parser = argparse.ArgumentParser(description="Temporally aggregate hourly reanalysis NetCDF data into fixed-length blocks.")
    parser.add_argument('--source', type=str, required=True, help="Directory of hourly '...YYYYMMDDHH.nc' files, or a single NetCDF file.")
    parser.add_argument('--settings_yaml', type=str, default=POSTPROCESS_SETTINGS_YAML, help="Path to the aggregation rules YAML.")
    parser.add_argument('--time_shift', type=int, default=None, help="Hours added to every timestamp (UTC to local time correction).")
    parser.add_argument('--aggregation_length', type=int, default=None, help="Number of hours in each aggregation block.")
    parser.add_argument('--output_dir', type=str, default=None, help="Destination folder. Defaults to 'output' next to the source.")
    parser.add_argument('--num_workers', type=int, default=None, help="Number of parallel workers. Use -1 for all CPUs.")
    parser.add_argument('--aggregate_geopotential', action='store_true', help="Also aggregate geopotential and convert it to elevation (m a.s.l.).")
    parser.add_argument('--geopotential_variable', type=str, default=None, help="Name of the geopotential variable.")
    parser.add_argument('--list_variables', action='store_true', help="List the variables of the source and exit.")
    parser.add_argument('--loglevel', type=str, default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], help="Set the logging level.")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.loglevel.upper()), format='%(asctime)s - %(processName)s - %(name)s - %(levelname)s - %(message)s', datefmt='%Y-%m-%d %H:%M:%S')

    logger.info("--- Starting NetCDF Temporal Aggregator ---")

    if args.list_variables:
        try:
            list_variables(args.source)
        except (OSError, AggregationError) as e:
            logger.error(f"Could not inspect {args.source}: {e}")
            sys.exit(1)
        return 0

    try:
        settings = load_aggregation_settings(args.settings_yaml)
        aggregation = settings['aggregation']
        if args.time_shift is not None: aggregation['time_shift_hours'] = args.time_shift
        if args.aggregation_length is not None: aggregation['aggregation_length_hours'] = args.aggregation_length
        if args.aggregate_geopotential: aggregation['aggregate_geopotential'] = True
        if args.geopotential_variable: aggregation['geopotential_variable'] = args.geopotential_variable
        variable_specs = variable_specs_from_settings(settings)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    output_settings = settings['output']
    num_workers = args.num_workers if args.num_workers is not None else settings['processing'].get('num_workers', 1)

    try:
        output_path, audit_rows = aggregate(
            args.source,
            time_shift_hours=aggregation['time_shift_hours'],
            aggregation_length_hours=aggregation['aggregation_length_hours'],
            variable_specs=variable_specs,
            output_dir=args.output_dir or output_settings.get('directory'),
            num_workers=num_workers,
            netcdf_filename=output_settings.get('netcdf_filename') or OUTPUT_NETCDF_FILENAME,
            audit_filename=output_settings.get('audit_filename') or AUDIT_CSV_FILENAME,
        )
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)
    except WriteFailure as e:
        logger.error(f"Output could not be written: {e} ({len(e.audit_rows)} audit rows were computed).")
        sys.exit(1)
    except (OSError, AggregationError) as e:
        logger.error(f"Aggregation aborted: {e}")
        sys.exit(1)

    logger.info(f"Wrote {output_path} ({len(audit_rows)} audit rows).")
    logger.info("--- NetCDF Temporal Aggregation Complete! ---")
    return 0


if __name__ == '__main__':
    main()
