"""Tests for signal token detection."""
from autopilot.signals import (
    CODEX_DONE,
    COMPLETED,
    FAILED,
    REVIEW_DONE,
    detect_signal,
    is_analysis_done,
    is_review_done,
    is_terminal,
)


def test_detect_signal_none():
    assert detect_signal("still working on task 2") is None


def test_detect_signal_empty():
    assert detect_signal("") is None


def test_detect_signal_embedded_in_text():
    assert detect_signal("all tasks done.\nCOMPLETED\n") == COMPLETED


def test_detect_signal_first_vocabulary_match_wins():
    assert detect_signal("FAILED to run once, then COMPLETED") == COMPLETED


def test_detect_signal_is_idempotent():
    text = "review finished REVIEW_DONE"
    assert detect_signal(text) == detect_signal(text) == REVIEW_DONE


def test_detect_signal_case_sensitive():
    assert detect_signal("completed everything") is None


def test_is_terminal():
    assert is_terminal(COMPLETED)
    assert is_terminal(FAILED)
    assert not is_terminal(REVIEW_DONE)
    assert not is_terminal(None)


def test_is_review_done():
    assert is_review_done(REVIEW_DONE)
    assert not is_review_done(COMPLETED)


def test_is_analysis_done():
    assert is_analysis_done(CODEX_DONE)
    assert not is_analysis_done(None)
