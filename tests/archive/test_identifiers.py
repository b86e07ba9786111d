"""Tests for identifier normalization and archive file naming."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from mailvault.archive.identifiers import (
    MAX_MESSAGE_ID_LENGTH,
    UNKNOWN_ID,
    compute_hash,
    fallback_message_id,
    folder_directory_name,
    generate_filename,
    host_discriminator,
    normalize_message_id,
    sanitize_for_filename,
)


# ============================================================================
# normalize_message_id
# ============================================================================


def test_normalize_strips_brackets_and_lowercases():
    """Test angle brackets are stripped and case folded."""
    assert normalize_message_id("  <ABC.123@Example.COM>  ") == "abc.123@example.com"


@pytest.mark.parametrize("raw", [None, "", "   ", "<>", "< >", "<..>"])
def test_normalize_empty_values_become_unknown(raw):
    """Test empty identifiers normalize to unknown."""
    assert normalize_message_id(raw) == UNKNOWN_ID


def test_normalize_replaces_path_separators():
    """Test path separators never survive normalization."""
    normalized = normalize_message_id("<part/one\\two@host>")

    assert "/" not in normalized
    assert "\\" not in normalized
    assert normalized == "part_one_two@host"


def test_normalize_neutralizes_traversal():
    """Test dot-dot segments cannot escape a directory."""
    normalized = normalize_message_id("<../../etc/passwd>")

    assert "/" not in normalized
    assert normalized not in {".", ".."}


def test_normalize_replaces_reserved_and_control_characters():
    """Test reserved and control characters are replaced."""
    normalized = normalize_message_id('<a:b*c?d"e|f\x00g\x1fh@x>')

    for char in ':*?"|\x00\x1f':
        assert char not in normalized


def test_normalize_bounds_length_with_hash_suffix():
    """Test long identifiers are truncated with a hash suffix."""
    raw = "<" + "a" * 150 + "@example.com>"
    full = ("a" * 150 + "@example.com").lower()

    normalized = normalize_message_id(raw)

    assert len(normalized) == MAX_MESSAGE_ID_LENGTH
    assert normalized.startswith(full[:91])
    assert normalized.endswith("_" + compute_hash(full)[:8])


def test_normalize_distinct_long_ids_stay_distinct():
    """Test long identifiers sharing a prefix stay distinct."""
    first = normalize_message_id("<" + "x" * 120 + "1@host>")
    second = normalize_message_id("<" + "x" * 120 + "2@host>")

    assert first != second


def test_normalize_is_idempotent():
    """Test normalizing twice changes nothing."""
    once = normalize_message_id("<Some/ID@Host>")

    assert normalize_message_id(once) == once


# ============================================================================
# sanitize_for_filename / folder names
# ============================================================================


def test_sanitize_collapses_runs_of_unsafe_characters():
    """Test runs of unsafe characters collapse to one underscore."""
    assert sanitize_for_filename("[Gmail]/All Mail", 100) == "Gmail_All_Mail"


def test_sanitize_respects_max_length():
    """Test sanitized names are bounded."""
    assert len(sanitize_for_filename("a" * 50, 20)) == 20


@pytest.mark.parametrize("value", [None, "", "///", ".", ".."])
def test_sanitize_unusable_values_become_unknown(value):
    """Test values with nothing usable become unknown."""
    assert sanitize_for_filename(value, 100) == UNKNOWN_ID


def test_folder_directory_name_for_nested_folder():
    """Test nested folder names map to one directory level."""
    assert folder_directory_name("INBOX/Receipts 2024") == "INBOX_Receipts_2024"


def test_host_discriminator_is_sanitized_and_bounded():
    """Test the host part of filenames is safe and bounded."""
    host = host_discriminator("build-server.example.internal.corp")

    assert len(host) <= 20
    assert "/" not in host


# ============================================================================
# Filenames
# ============================================================================


def test_generate_filename_format():
    """Test the maildir filename layout."""
    received = datetime(2024, 1, 1, tzinfo=timezone.utc)

    name = generate_filename(received, "abc@example.com", "my host!")

    assert name == "1704067200.abc@example.com.my_host:2,S.eml"


def test_generate_filename_naive_datetime_treated_as_utc():
    """Test naive datetimes are treated as UTC."""
    naive = datetime(2024, 1, 1)
    aware = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert generate_filename(naive, "id", "h") == generate_filename(aware, "id", "h")


def test_fallback_message_id_is_stable():
    """Test the fallback identifier depends on both receive time and content."""
    received = datetime(2024, 3, 5, 12, 30, tzinfo=timezone.utc)

    first = fallback_message_id(received, "aa" * 32)

    assert first == fallback_message_id(received, "aa" * 32)
    assert len(first) == 16
    assert first != fallback_message_id(datetime(2024, 3, 5, 12, 31, tzinfo=timezone.utc), "aa" * 32)
    assert first != fallback_message_id(received, "bb" * 32)
