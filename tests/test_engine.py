# tests/test_engine.py

import os

import pytest
import numpy as np
import pandas as pd
import xarray as xr

from ncaggregator.audit import AUDIT_COLUMNS
from ncaggregator.engine import aggregate, default_output_dir
from ncaggregator.exceptions import (
    ConfigurationError, UnknownReducer, VariableNotFound, WriteFailure
)
from ncaggregator.models import VariableSpec

from synthetic_data import START, gz_field, precip_field, temp_field, write_hourly_files, write_single_file

PRECIP_SUM_MM = VariableSpec('precip', reducer='sum', output_unit='mm', scale_factor=1000.0)


@pytest.fixture(scope="module")
def two_day_dir(tmp_path_factory):
    """48 hourly files with missing precipitation cells."""
    directory = tmp_path_factory.mktemp("two_days")
    write_hourly_files(directory, 48, missing=True)
    return directory


@pytest.fixture
def run_two_days(two_day_dir, tmp_path):
    def _run(variable_specs, **kwargs):
        kwargs.setdefault('output_dir', str(tmp_path / "out"))
        return aggregate(str(two_day_dir), kwargs.pop('time_shift_hours', 0),
                         kwargs.pop('aggregation_length_hours', 24), variable_specs, **kwargs)
    return _run


# --- End-to-end scenarios ---

def test_daily_precipitation_sum_in_mm(run_two_days):
    output_path, audit_rows = run_two_days([PRECIP_SUM_MM])

    assert os.path.basename(output_path) == "RavenInput.nc"
    assert len(audit_rows) == 2
    assert all(len(row.contributing_timestamps) == 24 for row in audit_rows)
    assert audit_rows[1].contributing_timestamps[0] == START + pd.Timedelta(hours=24)

    with xr.open_dataset(output_path) as ds:
        assert ds.sizes['time'] == 2
        assert ds['precip'].dims == ('time', 'rlat', 'rlon')
        assert ds['precip'].attrs['units'] == 'mm'
        expected = np.nansum([precip_field(i, missing=True) for i in range(24, 48)], axis=0) * 1000.0
        actual = ds['precip'].isel(time=1).values
        assert np.isnan(actual[0, 0])
        mask = ~np.isnan(expected) & (expected != 0)
        np.testing.assert_allclose(actual[mask], expected[mask])
        assert pd.Timestamp(ds['time'].values[0]) == START


def test_missing_cells_are_written_as_fill_value(run_two_days):
    output_path, _ = run_two_days([PRECIP_SUM_MM])
    with xr.open_dataset(output_path, mask_and_scale=False) as raw:
        assert raw['precip'].attrs['_FillValue'] == -9999.0
        assert raw['precip'].values[0, 0, 0] == -9999.0
    with xr.open_dataset(output_path) as ds:
        assert np.isnan(ds['precip'].values[:, 0, 0]).all()
        # Cell (1, 2) has values at odd steps only and must not be missing
        assert not np.isnan(ds['precip'].values[:, 1, 2]).any()


def test_audit_rows_follow_block_then_variable_order(run_two_days):
    specs = [PRECIP_SUM_MM, VariableSpec('temp', reducer='max')]
    _, audit_rows = run_two_days(specs)
    assert [(row.block_index, row.output_variable) for row in audit_rows] == [
        (0, 'precip'), (0, 'temp'), (1, 'precip'), (1, 'temp')
    ]
    assert audit_rows[1].output_unit == 'K'
    assert audit_rows[0].contributing_files[0].endswith("RDRS_v2.1_2020010100.nc[0]")


def test_repeated_source_variable_gets_distinct_names(run_two_days):
    specs = [
        VariableSpec('temp', reducer='min'),
        VariableSpec('temp', reducer='max'),
        VariableSpec('temp', reducer='max', output_unit='deg_C'),
    ]
    output_path, audit_rows = run_two_days(specs)
    assert [row.output_variable for row in audit_rows[:3]] == ['temp_min', 'temp_max_1', 'temp_max_2']
    with xr.open_dataset(output_path) as ds:
        np.testing.assert_allclose(ds['temp_min'].isel(time=0).values, temp_field(0))
        np.testing.assert_allclose(ds['temp_max_1'].isel(time=0).values, temp_field(23))
        assert ds['temp_max_2'].attrs['units'] == 'deg_C'


def test_geopotential_is_converted_to_elevation(run_two_days):
    spec = VariableSpec('gz', reducer='mean', is_geopotential=True)
    output_path, audit_rows = run_two_days([spec])
    assert audit_rows[0].is_geopotential
    assert audit_rows[0].output_unit == 'm'
    with xr.open_dataset(output_path) as ds:
        expected = np.mean([gz_field(i) for i in range(24)], axis=0) / 9.80665
        np.testing.assert_allclose(ds['gz'].isel(time=0).values, expected)
        assert ds['gz'].attrs['units'] == 'm'


def test_grid_metadata_is_preserved(run_two_days):
    output_path, _ = run_two_days([PRECIP_SUM_MM])
    with xr.open_dataset(output_path) as ds:
        assert 'rotated_pole' in ds.variables
        assert ds['rotated_pole'].attrs['grid_mapping_name'] == 'rotated_latitude_longitude'
        assert ds['precip'].attrs['grid_mapping'] == 'rotated_pole'
        assert ds['lat'].dims == ('rlat', 'rlon')
        np.testing.assert_allclose(ds['rlon'].values, [10.0, 10.5, 11.0])
        assert ds.attrs['title'] == 'Synthetic RDRS sample'
        assert 'history' in ds.attrs


def test_time_shift_changes_block_membership(run_two_days):
    _, audit_rows = run_two_days([PRECIP_SUM_MM], time_shift_hours=-5)
    assert [len(row.contributing_timestamps) for row in audit_rows] == [5, 24, 19]
    assert [row.is_partial for row in audit_rows] == [True, False, True]
    assert audit_rows[1].output_timestamp == START


def test_single_file_source(tmp_path):
    source = write_single_file(tmp_path / "casr_v3.1.nc", 30)
    output_path, audit_rows = aggregate(str(source), 0, 24, [VariableSpec('temp', reducer='mean')])

    assert output_path == os.path.join(str(tmp_path), "output", "RavenInput.nc")
    assert [row.is_partial for row in audit_rows] == [False, True]
    assert audit_rows[1].contributing_files[0] == f"{source}[24]"
    with xr.open_dataset(output_path) as ds:
        np.testing.assert_allclose(ds['temp'].isel(time=1).values,
                                   np.mean([temp_field(i) for i in range(24, 30)], axis=0))


def test_parallel_run_matches_sequential(run_two_days, tmp_path):
    specs = [PRECIP_SUM_MM, VariableSpec('temp', reducer='min')]
    sequential_path, sequential_rows = run_two_days(specs, output_dir=str(tmp_path / "seq"))
    parallel_path, parallel_rows = run_two_days(specs, output_dir=str(tmp_path / "par"), num_workers=2)

    assert sequential_rows == parallel_rows
    with xr.open_dataset(sequential_path) as seq, xr.open_dataset(parallel_path) as par:
        # 'history' carries the wall-clock time of each run
        for name in ('precip', 'temp'):
            xr.testing.assert_identical(seq[name], par[name])


def test_rerun_is_idempotent(run_two_days, tmp_path):
    first_path, first_rows = run_two_days([PRECIP_SUM_MM], output_dir=str(tmp_path / "first"))
    second_path, second_rows = run_two_days([PRECIP_SUM_MM], output_dir=str(tmp_path / "second"))
    assert first_rows == second_rows
    with xr.open_dataset(first_path) as first, xr.open_dataset(second_path) as second:
        np.testing.assert_array_equal(first['precip'].values, second['precip'].values)


def test_progress_is_monotonic(run_two_days):
    reported = []
    run_two_days([PRECIP_SUM_MM, VariableSpec('temp', reducer='max')],
                 progress=lambda fraction, message: reported.append(fraction))
    assert reported == sorted(reported)
    assert reported[0] == pytest.approx(0.1)
    assert reported[-1] == 1.0


# --- Audit table ---

def test_audit_csv_is_written(run_two_days, tmp_path):
    run_two_days([PRECIP_SUM_MM])
    audit = pd.read_csv(tmp_path / "out" / "aggregation_procedure.csv")
    assert list(audit.columns) == AUDIT_COLUMNS
    assert len(audit) == 2
    assert audit['n_steps'].tolist() == [24, 24]
    assert audit.loc[0, 'contributing_timestamps'].split(';')[0] == "2020-01-01T00:00:00"
    assert audit.loc[1, 'output_timestamp'] == "2020-01-02T00:00:00"
    assert audit['scale_factor'].tolist() == [1000.0, 1000.0]


# --- Failure modes ---

def test_configuration_error_before_any_io(tmp_path):
    with pytest.raises(UnknownReducer):
        aggregate("nonexistent_source_path", 0, 24, [VariableSpec('precip', 'median')],
                  output_dir=str(tmp_path / "out"))
    with pytest.raises(ConfigurationError):
        aggregate("nonexistent_source_path", 0, 0, [PRECIP_SUM_MM])
    assert not (tmp_path / "out").exists()


def test_ambiguous_output_names_raise_before_any_io(tmp_path):
    specs = [VariableSpec('precip', 'sum', output_name='a'), VariableSpec('temp', 'max', output_name='a'),
             VariableSpec('gz', 'mean', output_name='a_1')]
    with pytest.raises(ConfigurationError, match="unique output variable names"):
        aggregate(str(tmp_path / "does_not_exist"), 0, 24, specs, output_dir=str(tmp_path / "out"))
    assert not (tmp_path / "out").exists()


def test_reducer_names_are_normalised(run_two_days):
    specs = [VariableSpec('precip', reducer=' SUM ', output_unit='mm', scale_factor=1000.0),
             VariableSpec('temp', reducer='Max'), VariableSpec('temp', reducer='min')]
    output_path, audit_rows = run_two_days(specs)
    assert [row.reducer for row in audit_rows[:3]] == ['sum', 'max', 'min']
    assert [row.output_variable for row in audit_rows[:3]] == ['precip', 'temp_max', 'temp_min']
    with xr.open_dataset(output_path) as ds:
        assert ds['precip'].attrs['cell_methods'] == 'time: sum'
        assert ds['temp_max'].attrs['cell_methods'] == 'time: maximum'
        np.testing.assert_allclose(ds['temp_max'].isel(time=0).values, temp_field(23))


def test_missing_variable_writes_nothing(run_two_days, tmp_path):
    with pytest.raises(VariableNotFound):
        run_two_days([PRECIP_SUM_MM, VariableSpec('humidity', reducer='mean')])
    assert not (tmp_path / "out").exists()


def test_unwritable_destination_raises_write_failure(run_two_days, tmp_path):
    blocker = tmp_path / "not_a_directory"
    blocker.write_text("occupied")
    with pytest.raises(WriteFailure) as excinfo:
        run_two_days([PRECIP_SUM_MM], output_dir=str(blocker))
    assert isinstance(excinfo.value, OSError)
    assert len(excinfo.value.audit_rows) == 2
    assert blocker.read_text() == "occupied"


def test_default_output_dir(two_day_dir, tmp_path):
    assert default_output_dir(str(two_day_dir)) == os.path.join(str(two_day_dir), "output")
    assert default_output_dir(str(tmp_path / "casr.nc")) == os.path.join(str(tmp_path), "output")
