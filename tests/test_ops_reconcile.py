from datetime import datetime, timezone

import pytest

from ops.reconcile_sale import build_parser, build_payload, main, parse_timestamp

ARGS = [
    "--slug", " abc12345 ",
    "--buyer", "0x" + "33" * 20,
    "--seller", "0x" + "11" * 20,
    "--price", "5.50",
    "--chain-id", "8453",
    "--timestamp", "2025-01-30T12:00:00Z",
]


def test_parse_timestamp_accepts_iso_and_unix_ms():
    expected = datetime(2025, 1, 30, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2025-01-30T12:00:00Z") == expected
    assert parse_timestamp("2025-01-30T12:00:00") == expected
    assert parse_timestamp(str(int(expected.timestamp() * 1000))) == expected


def test_payload_defaults_to_dry_run():
    payload = build_payload(build_parser().parse_args(ARGS))
    assert payload["dryRun"] is True
    assert payload["listingSlug"] == "abc12345"
    assert payload["priceUsdc"] == "5.50"
    assert payload["chainId"] == 8453
    assert payload["timestamp"] == "2025-01-30T12:00:00+00:00"


def test_payload_writes_only_with_yes():
    assert build_payload(build_parser().parse_args(ARGS + ["--yes"]))["dryRun"] is False
    assert build_payload(build_parser().parse_args(ARGS + ["--yes", "--dry-run"]))["dryRun"] is True


def test_invalid_price_is_rejected():
    args = build_parser().parse_args([a if a != "5.50" else "five" for a in ARGS])
    with pytest.raises(ValueError):
        build_payload(args)


def test_main_requires_admin_key(capsys):
    assert main(ARGS + ["--admin-key", ""]) == 2
    assert "INTERNAL_ADMIN_KEY" in capsys.readouterr().err
