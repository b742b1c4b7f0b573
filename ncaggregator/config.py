# ncaggregator/config.py

import copy
import logging
import os
import re

import yaml

from ncaggregator.exceptions import ConfigurationError, InvalidGeopotentialConfig
from ncaggregator.models import VariableSpec

logger = logging.getLogger(__name__)

# --- Default Paths ---
# POSTPROCESS_SETTINGS_YAML: Path to the YAML file defining the variables to aggregate.
POSTPROCESS_SETTINGS_YAML = os.path.join(os.path.dirname(__file__), 'settings', 'settings.yaml')

# Artifacts written by a run, by default into an 'output' folder next to the source data.
OUTPUT_SUBDIR = 'output'
OUTPUT_NETCDF_FILENAME = 'RavenInput.nc'
AUDIT_CSV_FILENAME = 'aggregation_procedure.csv'


# --- Source Discovery ---
# Single-timestep source files must end with a YYYYMMDDHH stamp right before '.nc',
# e.g. 'RDRS_v2.1_2020010112.nc'.
SOURCE_FILENAME_PATTERN = re.compile(r'(?P<stamp>\d{10})\.nc$')
SOURCE_FILENAME_TIME_FORMAT = '%Y%m%d%H'


# --- General NetCDF/Xarray Processing Configuration ---
# Bounds variables are neither grid metadata nor aggregatable data.
VAR_TO_REMOVE = ['time_bnds', 'time_bounds']

# Variables describing the spatial grid. They are copied to the output unchanged
# and never offered for aggregation. Any variable carrying a 'grid_mapping_name'
# attribute is treated the same way.
GRID_VAR_NAMES = ['lat', 'lon', 'latitude', 'longitude', 'rlat', 'rlon', 'rotated_pole', 'crs', 'x', 'y']

# Common names for the time dimension in reanalysis products
TIME_DIM_NAMES = ['time', 'valid_time', 't']

# Common names for the longitude variable, used to suggest a time zone shift
LON_VAR_NAMES = ['lon', 'longitude', 'Longitude']


# --- Aggregation Constants ---
# Nominal spacing between consecutive source steps.
CADENCE_HOURS = 1

# Standard acceleration due to gravity in m/s^2, used to turn geopotential into elevation.
STANDARD_GRAVITY = 9.80665

SUPPORTED_REDUCERS = ('sum', 'mean', 'min', 'max')

# CF cell_methods wording for each reducer
CELL_METHODS = {'sum': 'sum', 'mean': 'mean', 'min': 'minimum', 'max': 'maximum'}

# Dimension names used while reducing and in the output file
BLOCK_STEP_DIM = 'step'
OUTPUT_TIME_DIM = 'time'

# Written in place of NaN for cells with no valid contributing value.
OUTPUT_FILL_VALUE = -9999.0


# --- Aggregation Configuration (DEFAULT settings if YAML is not found or incomplete) ---
# Each entry of 'variables' is a mapping with the keys
#   name, reducer (sum/mean/min/max), unit, factor, geopotential, output_name.
# This will be *merged with* or *overridden by* the actual settings.yaml content.
DEFAULT_AGGREGATION_SETTINGS = {
    'aggregation': {
        'time_shift_hours': 0,
        'aggregation_length_hours': 24,
        'aggregate_geopotential': False,
        'geopotential_variable': None,
        'variables': [],
    },
    'output': {
        'directory': None,
        'netcdf_filename': OUTPUT_NETCDF_FILENAME,
        'audit_filename': AUDIT_CSV_FILENAME,
    },
    'processing': {
        'num_workers': 1,
    },
}


def load_aggregation_settings(settings_yaml=None):
    """
    Loads the aggregation settings YAML and merges it over the package defaults.

    Args:
        settings_yaml (str, optional): Path to a settings YAML file. A missing file
            falls back to DEFAULT_AGGREGATION_SETTINGS.

    Returns:
        dict: The merged settings.

    Raises:
        ConfigurationError: If the YAML cannot be parsed.
    """
    settings = copy.deepcopy(DEFAULT_AGGREGATION_SETTINGS)
    if not settings_yaml or not os.path.exists(settings_yaml):
        logger.warning(f"Aggregation settings file '{settings_yaml}' not found. Using package defaults.")
        return settings

    try:
        with open(settings_yaml, "r") as stream:
            user_settings = yaml.safe_load(stream) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Error parsing settings YAML '{settings_yaml}': {exc}") from exc
    logger.info(f"Loaded aggregation settings from: {settings_yaml}")

    if not isinstance(user_settings, dict):
        raise ConfigurationError(f"Settings YAML '{settings_yaml}' must contain a mapping at top level.")

    for section, defaults in settings.items():
        user_section = user_settings.get(section) or {}
        if not isinstance(user_section, dict):
            raise ConfigurationError(f"Section '{section}' of '{settings_yaml}' must be a mapping.")
        defaults.update(user_section)
    return settings


def variable_specs_from_settings(settings):
    """
    Builds the ordered list of VariableSpec objects described by the settings.

    A geopotential spec (mean, unit 'm') is appended when 'aggregate_geopotential'
    is enabled.
    """
    aggregation = settings.get('aggregation', {})
    specs = []
    for position, entry in enumerate(aggregation.get('variables') or []):
        if isinstance(entry, str):
            entry = {'name': entry}
        if not isinstance(entry, dict) or not entry.get('name'):
            raise ConfigurationError(f"Variable entry #{position + 1} must define a 'name'. Found: {entry!r}")
        try:
            factor = float(entry.get('factor', 1.0))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid factor for variable '{entry['name']}': {entry.get('factor')!r}") from exc
        unit = entry.get('unit')
        specs.append(VariableSpec(
            source_variable_name=str(entry['name']),
            reducer=str(entry.get('reducer', 'mean')).strip().lower(),
            output_unit=None if unit is None else str(unit),
            scale_factor=factor,
            is_geopotential=bool(entry.get('geopotential', False)),
            output_name=entry.get('output_name'),
        ))

    if aggregation.get('aggregate_geopotential'):
        geopotential_variable = aggregation.get('geopotential_variable')
        if not geopotential_variable:
            raise InvalidGeopotentialConfig("'aggregate_geopotential' is enabled but no 'geopotential_variable' is set.")
        specs.append(VariableSpec(
            source_variable_name=str(geopotential_variable),
            reducer='mean',
            output_unit='m',
            scale_factor=1.0,
            is_geopotential=True,
        ))
    return specs
