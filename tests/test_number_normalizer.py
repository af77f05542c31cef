"""Number normalization and input line parsing"""

from decimal import Decimal

import pytest

from bundle_entries import (
    IdentityMode,
    build_entries,
    format_data_total,
    is_valid_msisdn,
    normalize_number,
    parse_allocation,
    parse_input_text,
    parse_line,
    to_megabytes,
)


def test_nine_digits_get_leading_zero():
    result = normalize_number("554739033")
    assert result.number == "0554739033"
    assert result.is_valid
    assert result.was_fixed


def test_ten_digits_without_zero_have_first_digit_replaced():
    result = normalize_number("1554739033")
    assert result.number == "0554739033"
    assert result.is_valid
    assert result.was_fixed


def test_punctuation_is_stripped():
    result = normalize_number("055.473.9033")
    assert result.number == "0554739033"
    assert result.is_valid
    assert result.was_fixed


def test_clean_number_is_untouched():
    result = normalize_number("0554739033")
    assert result.number == "0554739033"
    assert result.is_valid
    assert not result.was_fixed


def test_surrounding_whitespace_is_not_a_fix():
    result = normalize_number("  0554739033 ")
    assert result.number == "0554739033"
    assert not result.was_fixed


def test_short_number_is_invalid_and_unfixed():
    result = normalize_number("12345")
    assert result.number == "12345"
    assert not result.is_valid
    assert not result.was_fixed


def test_short_number_with_punctuation_reports_fix():
    result = normalize_number("123-45")
    assert result.number == "12345"
    assert not result.is_valid
    assert result.was_fixed


@pytest.mark.parametrize("raw", ["", "   ", None, 554739033])
def test_empty_or_non_text_is_invalid(raw):
    result = normalize_number(raw)
    assert result.number == ""
    assert not result.is_valid
    assert not result.was_fixed


def test_valid_numbers_always_match_msisdn_pattern():
    for raw in ["554739033", "1554739033", "055-473-9033", "+055 473 9033", "0201234567"]:
        result = normalize_number(raw)
        if result.is_valid:
            assert is_valid_msisdn(result.number)


def test_normalizing_twice_changes_nothing():
    first = normalize_number("554739033")
    second = normalize_number(first.number)
    assert second.number == first.number
    assert second.is_valid
    assert not second.was_fixed


@pytest.mark.parametrize("text,expected", [
    ("5", Decimal("5")),
    ("2.5GB", Decimal("2.5")),
    ("10 gb", Decimal("10")),
    (" 1.25 ", Decimal("1.25")),
])
def test_parse_allocation_accepts_positive_numbers(text, expected):
    assert parse_allocation(text) == expected


@pytest.mark.parametrize("text", ["0", "-5", "abc", "", None, "NaN", "Infinity", "5TB"])
def test_parse_allocation_rejects_everything_else(text):
    assert parse_allocation(text) is None


@pytest.mark.parametrize("line,expected", [
    ("0554739033 5", ("0554739033", "5")),
    ("0554739033 5GB", ("0554739033", "5")),
    ("0554739033 5 gb", ("0554739033", "5")),
    ("0554739033,2.5", ("0554739033", "2.5")),
    ("0554739033;10", ("0554739033", "10")),
    ("0554739033\t10", ("0554739033", "10")),
    ("0554739033-5", ("0554739033", "5")),
    ("055 473 9033 5", ("055 473 9033", "5")),
])
def test_parse_line_splits_number_and_allocation(line, expected):
    assert parse_line(line) == expected


@pytest.mark.parametrize("line", ["hello world", "0554739033", "5GB"])
def test_parse_line_rejects_unsplittable_lines(line):
    assert parse_line(line) is None


def test_parse_input_text_counts_skips_and_ignores_blank_lines():
    text = "0554739033 5\n\n   \nnot a number line\n0201234567 10GB\n"
    pairs, skipped = parse_input_text(text)
    assert pairs == [("0554739033", "5"), ("0201234567", "10")]
    assert skipped == 1


def test_build_entries_skips_non_positive_allocations():
    entries, skipped = build_entries([("0554739033", "-5"), ("0554739033", "0"), ("0201234567", "5")])
    assert skipped == 2
    assert len(entries) == 1
    assert entries[0].allocation_gb == Decimal("5")


def test_build_entries_keeps_invalid_numbers():
    entries, skipped = build_entries([("12345", "2")])
    assert skipped == 0
    assert entries[0].raw_number == "12345"
    assert not entries[0].is_valid
    assert entries[0].status == "Invalid"


def test_build_entries_accepts_numeric_cells():
    entries, _ = build_entries([(554739033, 5)])
    assert entries[0].number == "0554739033"
    assert entries[0].is_valid


def test_megabytes_round_half_up():
    assert to_megabytes(Decimal("5")) == 5120
    assert to_megabytes(Decimal("0.5")) == 512
    assert to_megabytes(Decimal("0.0009765625")) == 1
    assert to_megabytes(Decimal("0.00048828125")) == 1


def test_format_data_total_switches_to_tb_above_1023_gb():
    assert format_data_total(Decimal("1023")) == "1023.00 GB"
    assert format_data_total(Decimal("1024")) == "1.00 TB"
    assert format_data_total(Decimal("1536")) == "1.50 TB"


@pytest.mark.parametrize("value,expected", [
    (None, IdentityMode.NUMBER_AND_ALLOCATION),
    ("numberOnly", IdentityMode.NUMBER_ONLY),
    ("number_only", IdentityMode.NUMBER_ONLY),
    ("NUMBER_ONLY", IdentityMode.NUMBER_ONLY),
    ("numberAndAllocation", IdentityMode.NUMBER_AND_ALLOCATION),
    (IdentityMode.NUMBER_ONLY, IdentityMode.NUMBER_ONLY),
])
def test_identity_mode_from_value(value, expected):
    assert IdentityMode.from_value(value) == expected


def test_identity_mode_rejects_unknown_names():
    with pytest.raises(ValueError):
        IdentityMode.from_value("phone")


def test_identity_mode_falls_back_to_given_default():
    assert IdentityMode.from_value("", default=IdentityMode.NUMBER_ONLY) == IdentityMode.NUMBER_ONLY
    assert IdentityMode.from_value(None, default=None) == IdentityMode.NUMBER_AND_ALLOCATION
