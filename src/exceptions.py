"""
Exception hierarchy for the BLV calculator pipeline.

Every error the analysis stages raise on purpose derives from BLVCalcError so the
CLI can tell user-correctable data problems apart from unexpected failures.
"""


class BLVCalcError(Exception):
    """Base exception for analysis pipeline errors."""

    pass


class EmptyDataError(BLVCalcError):
    """Raised when a vector holds no numeric value at all."""

    pass


class InsufficientSamplesError(BLVCalcError):
    """Raised when a regression window has fewer than two samples."""

    pass


class EmptySearchWindowError(BLVCalcError):
    """Raised when taboo zones leave no legal window start inside a plateau."""

    pass


class DegenerateCalibrationError(BLVCalcError):
    """Raised when two calibration ranges share the same mean temperature."""

    pass


class NoSurvivingChannelsError(BLVCalcError):
    """Raised when every channel of a run failed."""

    pass
