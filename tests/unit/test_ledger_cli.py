"""Tests for the operator CLI."""

import json
from decimal import Decimal

import pytest

from src.cli.ledger import build_parser, run


def invoke(parser, *argv):
    return parser.parse_args(list(argv))


@pytest.fixture
def parser():
    return build_parser()


class TestParser:
    """Tests for argument parsing."""

    def test_set_rate_arguments(self, parser):
        args = invoke(
            parser,
            "set-rate",
            "commercial",
            "2.50",
            "--fixed-charge",
            "20",
            "--minimum-charge",
            "30",
            "--effective-from",
            "2025-01-01T00:00:00+00:00",
        )

        assert args.command == "set-rate"
        assert args.unit_price == Decimal("2.50")
        assert args.fixed_charge == Decimal("20")
        assert args.effective_from.year == 2025

    def test_unknown_category_rejected(self, parser):
        with pytest.raises(SystemExit):
            invoke(parser, "set-rate", "castle", "1.00")

    def test_raw_reading_flag(self, parser):
        args = invoke(parser, "record-reading", "3", "4.5", "--raw")

        assert args.raw is True
        assert args.property_id == 3
        assert args.value == Decimal("4.5")

    def test_command_required(self, parser):
        with pytest.raises(SystemExit):
            invoke(parser)


class TestRun:
    """End-to-end runs against a temporary database."""

    @pytest.mark.asyncio
    async def test_prepaid_flow(self, parser, settings, capsys):
        assert await run(invoke(parser, "init-db"), settings) == 0

        assert await run(invoke(parser, "add-property", "Shop", "MTR-9", "commercial"), settings) == 0
        property_id = json.loads(capsys.readouterr().out)["property_id"]

        args = invoke(
            parser,
            "set-rate",
            "commercial",
            "2.50",
            "--fixed-charge",
            "20",
            "--minimum-charge",
            "30",
            "--effective-from",
            "2020-01-01T00:00:00+00:00",
        )
        assert await run(args, settings) == 0
        capsys.readouterr()

        assert await run(invoke(parser, "issue-token", "PAY-CLI-1", str(property_id), "100"), settings) == 0
        issued = json.loads(capsys.readouterr().out)
        assert Decimal(issued["units"]) == Decimal("32")

        assert await run(invoke(parser, "redeem", issued["code"], "--meter", "MTR-9"), settings) == 0
        redeemed = json.loads(capsys.readouterr().out)
        assert Decimal(redeemed["new_balance"]) == Decimal("32")

        assert await run(invoke(parser, "record-reading", str(property_id), "10"), settings) == 0
        capsys.readouterr()

        assert await run(invoke(parser, "balance", str(property_id)), settings) == 0
        summary = json.loads(capsys.readouterr().out)
        assert Decimal(summary["current_balance"]) == Decimal("22")
        assert Decimal(summary["total_consumption"]) == Decimal("10")

    @pytest.mark.asyncio
    async def test_rejection_exit_code(self, parser, settings, capsys):
        await run(invoke(parser, "init-db"), settings)

        exit_code = await run(invoke(parser, "redeem", "0000111122223333"), settings)

        assert exit_code == 1
        err = capsys.readouterr().err
        details = json.loads(err[err.index("{"):])
        assert details["error"] == "TokenNotFoundError"
        assert details["kind"] == "state_conflict"

    @pytest.mark.asyncio
    async def test_issue_for_unknown_property(self, parser, settings, capsys):
        await run(invoke(parser, "init-db"), settings)

        exit_code = await run(invoke(parser, "issue-token", "PAY-X", "77", "50"), settings)

        assert exit_code == 1
        err = capsys.readouterr().err
        assert json.loads(err[err.index("{"):])["error"] == "PropertyNotFoundError"

    @pytest.mark.asyncio
    async def test_failed_baseline_leaves_no_property(self, parser, settings, capsys):
        await run(invoke(parser, "init-db"), settings)

        exit_code = await run(
            invoke(parser, "add-property", "Shop", "MTR-9", "commercial", "--baseline", "-1"), settings
        )

        assert exit_code == 1
        err = capsys.readouterr().err
        assert json.loads(err[err.index("{"):])["error"] == "InvalidAmountError"

        assert await run(invoke(parser, "add-property", "Shop", "MTR-9", "commercial"), settings) == 0
        property_id = json.loads(capsys.readouterr().out)["property_id"]
        assert await run(invoke(parser, "balance", str(property_id)), settings) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["last_reading"] is not None
