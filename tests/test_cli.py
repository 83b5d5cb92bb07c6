"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from shiftcal_sync import cli as cli_module
from shiftcal_sync.cli import cli


@pytest.fixture
def runner(tmp_path, monkeypatch):
    for name in ('GOOGLE_CLIENT_ID', 'GOOGLE_CLIENT_SECRET', 'GOOGLE_CALENDAR_ID', 'DATABASE_URL'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('DATA_DIR', str(tmp_path / 'data'))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli_module.console, 'width', 200)
    return CliRunner()


def test_config_create(runner, tmp_path):
    result = runner.invoke(cli, ['config', 'create', '--path', 'example.env'])
    assert result.exit_code == 0, result.output
    assert 'GOOGLE_CLIENT_ID' in (tmp_path / 'example.env').read_text()


def test_status_offline(runner):
    result = runner.invoke(cli, ['status'])
    assert result.exit_code == 0, result.output
    assert 'not connected' in result.output
    assert '0 active jobs' in result.output


def test_sync_is_skipped_without_connection(runner):
    result = runner.invoke(cli, ['sync'])
    assert result.exit_code == 0, result.output
    assert 'SKIPPED' in result.output


def test_add_edit_and_delete_event(runner):
    result = runner.invoke(cli, [
        'events', 'add', '--summary', 'Night shift', '--start', '2024-05-06 22:00', '--end', '2024-05-07 07:00',
    ])
    assert result.exit_code == 0, result.output
    assert 'Created' in result.output
    local_id = result.output.strip().rsplit('(', 1)[1].rstrip(')')

    listed = runner.invoke(cli, ['events', 'list', '--from', '2024-05-01', '--to', '2024-05-31'])
    assert 'Night shift' in listed.output

    edited = runner.invoke(cli, ['events', 'edit', local_id, '--summary', 'Day shift'])
    assert edited.exit_code == 0, edited.output

    jobs = runner.invoke(cli, ['outbox', 'list'])
    assert 'CREATE' in jobs.output
    assert 'Day shift' in jobs.output

    deleted = runner.invoke(cli, ['events', 'delete', local_id])
    assert deleted.exit_code == 0, deleted.output
    remaining = runner.invoke(cli, ['outbox', 'list']).output
    assert 'CREATE' not in remaining
    assert 'DELETE' not in remaining


def test_edit_unknown_event_fails(runner):
    result = runner.invoke(cli, ['events', 'edit', 'missing', '--summary', 'x'])
    assert result.exit_code == 1
    assert 'not found' in result.output
