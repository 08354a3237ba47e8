"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner
from rich.console import Console

from offline_calsync import cli as cli_module
from offline_calsync.cli import _parse_when, cli


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli_module, "console", Console(width=200))
    monkeypatch.setenv('DATA_DIR', str(tmp_path / 'data'))
    for name in ('GOOGLE_CLIENT_ID', 'GOOGLE_CLIENT_SECRET', 'DATABASE_URL'):
        monkeypatch.delenv(name, raising=False)
    return CliRunner()


def test_parse_when_uses_timezone():
    parsed = _parse_when("2026-03-10 09:00", "Asia/Seoul")

    assert parsed.utcoffset().total_seconds() == 9 * 3600
    assert _parse_when(None, None) is None


def test_add_list_and_search(runner):
    added = runner.invoke(cli, [
        'events', 'add', '--title', 'Dentist', '--start', '2026-03-10 09:00',
        '--end', '2026-03-10 10:00', '--location', 'Main St',
    ])
    assert added.exit_code == 0, added.output
    assert "Created event" in added.output

    listed = runner.invoke(cli, ['events', 'list'])
    assert "Dentist" in listed.output

    found = runner.invoke(cli, ['events', 'search', 'main'])
    assert "Dentist" in found.output


def test_add_requires_start(runner):
    result = runner.invoke(cli, ['events', 'add', '--title', 'No start'])

    assert result.exit_code != 0
    assert "--start is required" in result.output


def test_edit_unknown_event(runner):
    result = runner.invoke(cli, ['events', 'edit', 'missing', '--title', 'x'])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_validate_reports_missing_client(runner):
    result = runner.invoke(cli, ['config', 'validate'])

    assert result.exit_code == 1
    assert "GOOGLE_CLIENT_ID" in result.output


def test_status_offline(runner):
    result = runner.invoke(cli, ['status'])

    assert result.exit_code == 0, result.output
    assert "Not connected to Google" in result.output
