"""Error taxonomy for cluster actions and scheduling.

ValidationError is raised while building a run (bad targets, unresolved
dependencies, cycles, duplicate registrations) before any unit executes.
The command errors are raised by actions and recorded per unit by the
scheduler. SchedulerTimeoutError is raised to the caller of
ActionScheduler.wait() when the run outlives its deadline.
"""

from typing import Optional


class CastleError(Exception):
    """Base class for castle errors."""


class ValidationError(CastleError):
    """Malformed target, unresolved dependency, cycle, or duplicate registration."""


class UnresolvedVariableError(ValidationError):
    """No provider is registered for a dynamic variable."""

    def __init__(self, name: str):
        super().__init__(f"No provider registered for dynamic variable '{name}'")
        self.name = name


class CommandResultError(CastleError):
    """A command exited with a non-retryable nonzero status."""

    def __init__(self, args: list[str], code: int):
        super().__init__(f"Command {' '.join(args)!r} failed with exit status {code}")
        self.args_list = list(args)
        self.code = code


class TransientCommandError(CastleError):
    """A command kept returning a retryable status until the retry policy gave up."""

    def __init__(self, args: list[str], code: int, attempts: int, reason: str = 'retry limit reached'):
        super().__init__(
            f"Command {' '.join(args)!r} still returning retryable status {code} "
            f"after {attempts} attempt(s): {reason}"
        )
        self.args_list = list(args)
        self.code = code
        self.attempts = attempts


class DependencyFailedError(CastleError):
    """Assigned to a unit that never ran because a dependency failed."""

    def __init__(self, unit: str, dependency: str):
        super().__init__(f"{unit} not run: dependency {dependency} failed")
        self.unit = unit
        self.dependency = dependency


class UnitCancelledError(CastleError):
    """A unit was not run, or not finished, because the run was stopped."""

    def __init__(self, unit: str, reason: str):
        super().__init__(f"{unit} not run: {reason}")
        self.unit = unit
        self.reason = reason


class SchedulerTimeoutError(CastleError, TimeoutError):
    """The run did not finish before its deadline.

    Attributes:
        timeout: The deadline in seconds
        result: Partial SchedulerResult at the moment the deadline passed
    """

    def __init__(self, timeout: float, result: Optional[object] = None):
        super().__init__(f"Actions did not complete within {timeout}s")
        self.timeout = timeout
        self.result = result
