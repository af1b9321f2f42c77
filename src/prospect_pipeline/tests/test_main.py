# src/prospect_pipeline/tests/test_main.py
"""
Unit tests for the command-line entry point.

Tests cover:
- Argument parsing and defaults
- Outcome summary output
- Exit codes for invalid input and missing configuration
"""
from unittest.mock import patch

import pytest

from prospect_pipeline.config import config
from prospect_pipeline.main import create_parser, main, print_outcome
from prospect_pipeline.models import OutcomeKind, SearchOutcome


class TestParser:
    """Tests for create_parser()."""

    @pytest.mark.unit
    def test_defaults(self):
        args = create_parser().parse_args(["--query", "plumber"])

        assert args.query == "plumber"
        assert args.location == ""
        assert args.count == config.DEFAULT_RESULT_COUNT
        assert args.type == "gmb"
        assert args.filter == []
        assert args.append is False

    @pytest.mark.unit
    def test_repeated_filters(self):
        args = create_parser().parse_args(
            ["-q", "dentist", "-l", "10001", "-n", "25", "-f", "has_phone", "-f", "has_email", "--append"]
        )

        assert args.count == 25
        assert args.filter == ["has_phone", "has_email"]
        assert args.append is True

    @pytest.mark.unit
    def test_unknown_filter_rejected(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["-q", "dentist", "-f", "not_a_filter"])

    @pytest.mark.unit
    def test_query_required(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args([])


class TestOutput:
    """Tests for print_outcome()."""

    @pytest.mark.unit
    def test_partial_outcome_suggests_append(self, capsys):
        outcome = SearchOutcome(
            kind=OutcomeKind.PARTIAL,
            run_token=1,
            requested_count=100,
            found_count=40,
            received_count=40,
        )

        print_outcome(outcome)

        out = capsys.readouterr().out
        assert "partial" in out
        assert "40/100" in out
        assert "--append" in out


class TestMain:
    """Tests for main() exit codes."""

    @pytest.mark.unit
    def test_invalid_count(self, capsys):
        with patch("sys.argv", ["prospect-pipeline", "-q", "plumber", "-n", "0"]):
            assert main() == 1
        assert "--count" in capsys.readouterr().out

    @pytest.mark.unit
    def test_missing_discovery_url(self, capsys):
        with patch("sys.argv", ["prospect-pipeline", "-q", "plumber"]), \
                patch.object(config, "DISCOVERY_API_URL", ""):
            assert main() == 1
        assert "DISCOVERY_API_URL" in capsys.readouterr().out
