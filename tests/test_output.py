"""Tests for output formatting."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from esi_client.output import OutputHandler, error_envelope, format_expiry, format_timedelta, json_envelope


class TestFormatTimedelta:
    """Tests for format_timedelta."""

    @pytest.mark.parametrize(
        "td,expected",
        [
            (timedelta(seconds=45), "45 seconds"),
            (timedelta(minutes=1), "1 minute"),
            (timedelta(minutes=20), "20 minutes"),
            (timedelta(hours=1), "1 hour"),
            (timedelta(hours=5), "5 hours"),
            (timedelta(days=3), "3 days"),
            (timedelta(seconds=-1), "Expired"),
        ],
    )
    def test_formats(self, td: timedelta, expected: str) -> None:
        assert format_timedelta(td) == expected


class TestFormatExpiry:
    """Tests for format_expiry."""

    def test_future(self) -> None:
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert format_expiry(now + timedelta(minutes=20), now=now) == "in 20 minutes"

    def test_past(self) -> None:
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert format_expiry(now - timedelta(minutes=1), now=now) == "Expired"

    def test_naive_expiry_treated_as_utc(self) -> None:
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert format_expiry(datetime(2030, 1, 1, 2, 0, 0), now=now) == "in 2 hours"


def test_json_envelope_wraps_success() -> None:
    assert json.loads(json_envelope({"a": 1})) == {"success": True, "data": {"a": 1}}


class TestOutputHandler:
    """Tests for OutputHandler."""

    def test_success_human_message(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputHandler().success({"a": 1}, "done")
        assert capsys.readouterr().out.strip() == "done"

    def test_success_json_mode(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputHandler(json_mode=True).success({"a": 1}, "done")
        assert json.loads(capsys.readouterr().out)["data"] == {"a": 1}

    def test_status_goes_to_stderr_in_json_mode(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputHandler(json_mode=True).status("waiting")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "waiting" in captured.err

    def test_error_exits(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            OutputHandler().error(ValueError("boom"), help_text="try again")

        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert "Error: boom" in err
        assert "try again" in err

    def test_error_json(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit):
            OutputHandler(json_mode=True).error(ValueError("boom"), error_type="Custom")

        data = json.loads(capsys.readouterr().out)
        assert data["success"] is False
        assert data["error"]["type"] == "Custom"
        assert data["error"]["message"] == "boom"

    def test_table_human(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputHandler().table(["ID", "Name"], [["1", "Jane"], ["22", "Bob"]])
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].split() == ["ID", "Name"]
        assert lines[2].split() == ["1", "Jane"]

    def test_table_json(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputHandler(json_mode=True).table(["ID", "Name"], [["1", "Jane"]])
        assert json.loads(capsys.readouterr().out)["data"] == [{"ID": "1", "Name": "Jane"}]


def test_error_envelope_omits_empty_help() -> None:
    data = json.loads(error_envelope(ValueError("boom")))
    assert data == {"success": False, "error": {"type": "ValueError", "message": "boom"}}
