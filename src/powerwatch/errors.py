"""Exceptions raised by powerwatch."""


class PowerWatchError(Exception):
    """Base exception for powerwatch errors."""
    pass


class ConfigError(PowerWatchError):
    """Required configuration is missing or invalid."""
    pass


class TibberError(PowerWatchError):
    """The Tibber API could not be reached or returned an error."""
    pass


class StaleDataError(PowerWatchError):
    """No realtime sample has been accepted within the allowed age."""

    def __init__(self, age_seconds: float, max_age_seconds: float):
        super().__init__(
            f"Realtime data is {age_seconds:.0f}s old (limit {max_age_seconds:.0f}s)"
        )
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
