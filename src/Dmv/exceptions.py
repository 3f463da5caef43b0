# exceptions.py

from __future__ import annotations


class DmvError(Exception):
    """Base class for errors raised by the bot core and its collaborators."""


class ConfigError(DmvError):
    """Configuration file missing or unreadable."""


class RegistrationError(DmvError):
    pass


class DuplicateCommandError(RegistrationError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"command {name!r} is already registered")


class RegistrationClosedError(RegistrationError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"cannot register {name!r}: the bot has already been started")


class BotStateError(DmvError):
    pass


class GatewayError(DmvError):
    """A gateway or REST call failed; status_code is set for HTTP errors."""

    def __init__(self, message: str, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class OptionTypeError(DmvError, TypeError):
    pass


class StoreError(DmvError):
    pass
