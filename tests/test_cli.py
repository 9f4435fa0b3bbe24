"""
Tests for the command line interface.
"""

import json

import pytest

from spapi_order_sync.cli import build_parser, cmd_config, cmd_status
from spapi_order_sync.models import ReportStatus
from spapi_order_sync.reports import ReportTransition
from spapi_order_sync.state import ReportStateStore


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SPAPI_CLIENT_ID", "amzn1.application-oa2-client.abcdef123456")
    monkeypatch.setenv("SPAPI_CLIENT_SECRET", "super-secret")
    monkeypatch.setenv("SPAPI_REFRESH_TOKEN", "Atzr|IwEBIabcdefghijklmnop")
    monkeypatch.setenv("SPAPI_STATE_FILE", str(tmp_path / "reports.json"))
    return tmp_path


def test_parser_sync_flags():
    args = build_parser().parse_args(["sync", "--dry-run", "--skip-report"])
    assert args.command == "sync"
    assert args.dry_run is True
    assert args.skip_report is True
    assert args.json is False


def test_config_masks_secrets(env, capsys):
    args = build_parser().parse_args(["config"])

    assert cmd_config(args) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["client_secret"] == "****"
    assert output["region"] == "na"


def test_config_missing_credentials(env, monkeypatch, capsys):
    monkeypatch.delenv("SPAPI_REFRESH_TOKEN")
    args = build_parser().parse_args(["config"])

    assert cmd_config(args) == 1
    assert "SPAPI_REFRESH_TOKEN" in capsys.readouterr().out


def test_status_lists_reports(env, capsys):
    ReportStateStore(env / "reports.json").persist_report_state(ReportTransition(
        report_id="50038019283",
        report_type="GET_FLAT_FILE_ALL_ORDERS_DATA_BY_LAST_UPDATE_GENERAL",
        previous=ReportStatus.IN_PROGRESS,
        status=ReportStatus.DONE,
        attempt=3,
    ))
    args = build_parser().parse_args(["status"])

    assert cmd_status(args) == 0
    assert "50038019283" in capsys.readouterr().out
