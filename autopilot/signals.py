"""Signal tokens agents print to tell the runner a phase is over."""

COMPLETED = "COMPLETED"
FAILED = "FAILED"
REVIEW_DONE = "REVIEW_DONE"
CODEX_DONE = "CODEX_DONE"

# Detection order: the first token found in a chunk wins.
SIGNALS = (COMPLETED, FAILED, REVIEW_DONE, CODEX_DONE)


def detect_signal(text: str) -> str | None:
    """Return the first signal token contained in *text*, or None."""
    for token in SIGNALS:
        if token in text:
            return token
    return None


def is_terminal(signal: str | None) -> bool:
    return signal in (COMPLETED, FAILED)


def is_review_done(signal: str | None) -> bool:
    return signal == REVIEW_DONE


def is_analysis_done(signal: str | None) -> bool:
    return signal == CODEX_DONE
