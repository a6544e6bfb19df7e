from __future__ import annotations


class SlotStageSyncError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(SlotStageSyncError, ValueError):
    """Tier or jackpot configuration is empty or malformed."""


class InputFormatError(SlotStageSyncError, ValueError):
    """Raised when a JSON input file fails validation."""


class OutOfOrderStagesError(SlotStageSyncError, ValueError):
    """Engine sent stage timestamps that are not non-decreasing."""


class TimelineCursorError(SlotStageSyncError, IndexError):
    """Cursor moved backward or outside the loaded stage sequence."""


class SpinRejectedError(SlotStageSyncError):
    """
    A spin request was refused.

    Raised before any state mutation: balance, timeline and triggers are
    exactly as they were before the call.
    """


class InsufficientFundsError(SpinRejectedError):
    pass


class NotReadyError(SpinRejectedError):
    pass


class SpinInProgressError(SpinRejectedError):
    """A spin (or a skip leading to one) is already underway."""


class InvalidBetError(SpinRejectedError, ValueError):
    pass


class InvalidTransitionError(SlotStageSyncError, RuntimeError):
    """Operation is not allowed in the controller's current state."""


class LedgerNotSeededError(SlotStageSyncError, RuntimeError):
    """Attempted to award a jackpot tier whose value is not positive."""


class DuplicateTriggerGuardViolation(SlotStageSyncError, AssertionError):
    """A scheduled trigger fired more than once. Must be unreachable."""


class EngineResultError(SlotStageSyncError):
    """The engine returned no result (or failed) for a started spin."""
