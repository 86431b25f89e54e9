"""Tests for default/override flag merging."""

from toolbox_scan.flags import flag_key, group_flags, merge_flags


def test_override_replaces_default_with_same_key():
    assert merge_flags(["--format", "text"], ["--format", "json"]) == ["--format", "json"]


def test_unrelated_defaults_are_kept_in_order():
    merged = merge_flags(
        ["--format", "text", "--test-limit", "50000"],
        ["--seed", "7"],
    )
    assert merged == ["--format", "text", "--test-limit", "50000", "--seed", "7"]


def test_equals_form_overrides_spaced_form():
    merged = merge_flags(["--test-limit", "50000"], ["--test-limit=100"])
    assert merged == ["--test-limit=100"]


def test_last_occurrence_wins_within_overrides():
    merged = merge_flags([], ["--seed", "1", "--seed", "2"])
    assert merged == ["--seed", "2"]


def test_negative_number_is_a_value_not_a_key():
    groups = group_flags(["--seed", "-5", "--quick"])
    assert groups == [("--seed", ["--seed", "-5"]), ("--quick", ["--quick"])]


def test_leading_positionals_are_kept():
    merged = merge_flags([], ["contracts/Token.sol", "--contract", "Token"])
    assert merged == ["contracts/Token.sol", "--contract", "Token"]


def test_flag_key_strips_value():
    assert flag_key("--filter-paths=test/") == "--filter-paths"
    assert flag_key("-v") == "-v"


def test_empty_inputs():
    assert merge_flags([], []) == []
