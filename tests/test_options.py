import pytest

from linksim.options import (
    DEFAULT_CHAN_BER,
    DEFAULT_LIFE,
    DEFAULT_PORT,
    Config,
    UsageError,
    parse_args,
    usage_text,
)


@pytest.fixture(autouse=True)
def _permuting(monkeypatch):
    monkeypatch.delenv("POSIXLY_CORRECT", raising=False)


def test_defaults():
    config = parse_args(["prog", "A"])
    assert config.station == "a"
    assert config.ber == DEFAULT_CHAN_BER
    assert config.port == DEFAULT_PORT
    assert config.debug_mask == 0
    assert config.life == DEFAULT_LIFE
    assert not config.flood and not config.ibib


def test_short_example_from_usage():
    config = parse_args(["prog", "-fd3", "-b", "1e-4", "A"])
    assert config.flood is True
    assert config.debug_mask == 3
    assert config.ber == 1e-4


def test_long_form_matches_short_form():
    short = parse_args(["prog", "-fd3", "-b", "1e-4", "A"])
    long = parse_args(["prog", "--flood", "--debug=3", "--ber=1e-4", "A"])
    assert short == long


def test_long_option_abbreviation_and_separate_argument():
    config = parse_args(["prog", "--fl", "--ttl", "5", "b"])
    assert config.flood is True
    assert config.life == 5000
    assert config.station == "b"


def test_utopia_then_ber_order_matters():
    assert parse_args(["prog", "-u", "A"]).ber == 0.0
    assert parse_args(["prog", "-u", "-b", "1e-3", "A"]).ber == 1e-3
    assert parse_args(["prog", "-b", "1e-3", "-u", "A"]).ber == 0.0


def test_ibib_and_port():
    config = parse_args(["prog", "-i", "-p", "4000", "B"])
    assert config.ibib is True
    assert config.port == 4000


def test_port_truncated_to_16_bits():
    assert parse_args(["prog", "--port=65537", "A"]).port == 1


def test_integer_argument_reads_leading_digits():
    assert parse_args(["prog", "-d", "7abc", "A"]).debug_mask == 7
    assert parse_args(["prog", "-d", "abc", "A"]).debug_mask == 0


@pytest.mark.parametrize("argv", [
    ["prog"],
    ["prog", "-f"],
    ["prog", "-?", "A"],
    ["prog", "--help", "A"],
    ["prog", "-x", "A"],
    ["prog", "--bogus", "A"],
    ["prog", "A", "-p"],
    ["prog", "--flood=1", "A"],
])
def test_usage_errors(argv):
    with pytest.raises(UsageError):
        parse_args(argv)


def test_bad_ber_message():
    with pytest.raises(UsageError, match="Bad BER 1.000"):
        parse_args(["prog", "-b", "1", "A"])


def test_missing_argument_message_names_option():
    with pytest.raises(UsageError, match="requires an argument -- p"):
        parse_args(["prog", "A", "-p"])


def test_bad_station_name():
    with pytest.raises(ValueError, match="Station name must be 'A' or 'B'"):
        parse_args(["prog", "x"])


def test_double_dash_ends_options():
    with pytest.raises(ValueError):
        parse_args(["prog", "--", "-f"])


def test_options_after_station_are_permuted():
    config = parse_args(["prog", "Bravo", "-f"])
    assert config.station == "b"
    assert config.flood is True


def test_posixly_correct_stops_at_first_operand(monkeypatch):
    monkeypatch.setenv("POSIXLY_CORRECT", "1")
    config = parse_args(["prog", "B", "-f"])
    assert config.station == "b"
    assert config.flood is False


def test_log_path_default_and_exe_suffix():
    config_a = parse_args(["prog", "a"])
    config_b = parse_args(["prog", "b"])
    assert config_a.log_path("prog") == "prog-A.log"
    assert config_b.log_path("prog") == "prog-B.log"
    assert config_a.log_path("datalink.EXE") == "datalink-A.log"


def test_log_path_explicit_and_disabled():
    assert parse_args(["prog", "-l", "my.log", "A"]).log_path("prog") == "my.log"
    assert parse_args(["prog", "-n", "A"]).log_path("prog") is None
    assert parse_args(["prog", "--log=NUL", "A"]).log_path("prog") is None


def test_station_name():
    assert parse_args(["prog", "a"]).station_name() == "A"
    assert parse_args(["prog", "B"]).station_name() == "B"
    assert Config(station="z").station_name() == "XXX"


def test_usage_text_mentions_program_and_port():
    text = usage_text("datalink")
    assert text.startswith("\nUsage:\n  datalink <options> <station-name>\n")
    assert f"(default: {DEFAULT_PORT})" in text
    assert "    datalink --flood --debug=3 --ber=1e-4 A\n" in text