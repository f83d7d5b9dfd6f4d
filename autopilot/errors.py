"""Exception types shared across the orchestration pipeline."""


class AutopilotError(Exception):
    """Base class for every fatal orchestration error.

    ``phase`` and ``iteration`` are filled in by the runner so the final
    message names where the run stopped.
    """

    def __init__(self, message: str, *, phase: str | None = None, iteration: int | None = None):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.iteration = iteration

    def in_phase(self, phase: str, iteration: int | None = None, limit: int | None = None) -> "AutopilotError":
        """Return a copy of this error (same class) carrying phase context."""
        where = f"{phase} phase"
        if iteration is not None:
            where += f", iteration {iteration}" + (f"/{limit}" if limit else "")
        return type(self)(f"{where}: {self.message}", phase=phase, iteration=iteration)


class ConfigurationError(AutopilotError):
    """Missing or invalid input, e.g. no plan file in a mode that needs one."""


class ExecutionError(AutopilotError):
    """The agent subprocess failed to launch or exited abnormally."""


class InvocationCancelled(ExecutionError):
    """The invocation was stopped by a timeout before the agent finished."""


class StreamError(AutopilotError):
    """Reading the agent's output failed (clean end-of-input is not an error)."""


class SignalFailure(AutopilotError):
    """The agent emitted FAILED."""


class IterationLimitExceeded(AutopilotError):
    """A phase hit its iteration cap without a terminal signal."""


class LockContention(AutopilotError):
    """Another run already holds the session's progress log."""
