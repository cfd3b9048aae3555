"""Tests for the tron-balance command line."""

import json
from unittest.mock import patch

import pandas as pd
import pytest

from balance_collection import cli


class StubClient:
    def __init__(self, api_key):
        self.api_key = api_key

    async def query_balance(self, address, cancel_token=None):
        return "42"


def stub_factory(api_key, session, base_url=None, requests_per_second=None):
    return StubClient(api_key)


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch('balance_collection.cli.setup_logging'):
        yield


def test_parser_defaults():
    args = cli.build_parser().parse_args(["query", "--input", "in.txt"])

    assert args.output == "results.csv"
    assert args.func is cli.cmd_query
    assert args.ledger is None


def test_query_writes_results(tmp_path, valid_addresses):
    input_file = tmp_path / "in.txt"
    input_file.write_text("\n".join(valid_addresses[:3] + ["invalid"]))
    output_file = tmp_path / "results.csv"
    ledger_file = tmp_path / "apikey_stats.json"

    argv = [
        "--ledger", str(ledger_file),
        "query",
        "--input", str(input_file),
        "--output", str(output_file),
        "--api-key", "key-a",
        "--concurrency", "2",
    ]
    with patch('services.trc20.orchestrator.default_client_factory', stub_factory):
        args = cli.build_parser().parse_args(argv)
        assert args.func(args) == 0

    df = pd.read_csv(output_file, dtype=str, keep_default_na=False)
    assert list(df["address"]) == valid_addresses[:3]
    assert set(df["balance"]) == {"42"}
    assert json.loads(ledger_file.read_text())["keys"]["key-a"] == 3


def test_query_without_valid_addresses(tmp_path):
    input_file = tmp_path / "in.txt"
    input_file.write_text("nothing")

    args = cli.build_parser().parse_args(["query", "--input", str(input_file)])

    assert args.func(args) == 1


def test_keys_prune(tmp_path):
    keys_file = tmp_path / "keys.txt"
    keys_file.write_text("key-a\nkey-b\n")
    ledger_file = tmp_path / "apikey_stats.json"
    ledger_file.write_text(json.dumps({"keys": {"key-a": 5, "key-b": 1}}))

    args = cli.build_parser().parse_args([
        "--ledger", str(ledger_file),
        "keys-prune", "--keys", str(keys_file), "--threshold", "5",
    ])

    assert args.func(args) == 0
    assert keys_file.read_text() == "key-b\n"


def test_keys_status(tmp_path):
    keys_file = tmp_path / "keys.txt"
    keys_file.write_text("key-a\n")

    args = cli.build_parser().parse_args([
        "--ledger", str(tmp_path / "apikey_stats.json"),
        "keys-status", "--keys", str(keys_file),
    ])

    assert args.func(args) == 0


def test_main_exits_with_command_status(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["query", "--input", str(tmp_path / "missing.txt")])

    assert exc_info.value.code == 1
