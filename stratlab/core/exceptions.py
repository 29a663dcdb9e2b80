class StratLabError(Exception):
    """Base class for all stratlab exceptions."""


class ConfigError(StratLabError):
    """Raised for missing/malformed configuration."""


class DataUnavailableError(StratLabError):
    """Raised when the requested window yields no (or too few) bars."""


class DataValidationError(StratLabError):
    """Raised when bar data fails sanity or schema validation."""


class InvalidStrategyError(StratLabError):
    """Raised when a strategy references unknown indicators/parameters or has out-of-range risk rules."""


class CancellationRequestedError(StratLabError):
    """Raised when a run is cancelled cooperatively; no partial result is exposed."""


class ABTestClosedError(StratLabError):
    """Raised when writing to an A/B test that is not running."""


_DESCRIPTIONS = {
    DataUnavailableError: "No market data is available for the requested window.",
    DataValidationError: "The market data failed validation.",
    InvalidStrategyError: "The strategy definition is invalid.",
    CancellationRequestedError: "The run was cancelled.",
    ConfigError: "The configuration is invalid.",
    ABTestClosedError: "The A/B test is no longer accepting results.",
}


def describe_error(exc: BaseException) -> str:
    """Map a fatal error to a short description suitable for display."""
    for cls in type(exc).__mro__:
        if cls in _DESCRIPTIONS:
            detail = str(exc).strip()
            base = _DESCRIPTIONS[cls]
            return f"{base} {detail}" if detail else base
    return "An unexpected error occurred while running the strategy."


__all__ = [
    "StratLabError",
    "ConfigError",
    "DataUnavailableError",
    "DataValidationError",
    "InvalidStrategyError",
    "CancellationRequestedError",
    "ABTestClosedError",
    "describe_error",
]
