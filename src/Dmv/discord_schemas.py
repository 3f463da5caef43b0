# discord_schemas.py

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from Dmv.exceptions import OptionTypeError

# Interaction types
INTERACTION_PING = 1
INTERACTION_APPLICATION_COMMAND = 2

# Interaction callback types
RESPONSE_CHANNEL_MESSAGE_WITH_SOURCE = 4

MESSAGE_FLAG_EPHEMERAL = 64


class OptionKind(enum.IntEnum):
    SUB_COMMAND = 1
    SUB_COMMAND_GROUP = 2
    STRING = 3
    INTEGER = 4
    BOOLEAN = 5
    USER = 6
    CHANNEL = 7
    ROLE = 8
    MENTIONABLE = 9
    NUMBER = 10
    ATTACHMENT = 11

    @property
    def is_container(self) -> bool:
        return self in (OptionKind.SUB_COMMAND, OptionKind.SUB_COMMAND_GROUP)


# Snowflake-valued kinds arrive as strings
_SNOWFLAKE_KINDS = frozenset(
    {
        OptionKind.USER,
        OptionKind.CHANNEL,
        OptionKind.ROLE,
        OptionKind.MENTIONABLE,
        OptionKind.ATTACHMENT,
    }
)


def _value_matches(kind: OptionKind, value: Any) -> bool:
    if kind is OptionKind.BOOLEAN:
        return isinstance(value, bool)
    if kind is OptionKind.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if kind is OptionKind.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind is OptionKind.STRING or kind in _SNOWFLAKE_KINDS:
        return isinstance(value, str)
    return False


class InteractionOption(BaseModel):
    """One node of a received option tree.

    ``value`` is tagged by ``type``: containers (sub-command, group) carry
    only child ``options``, leaves carry a value whose Python type matches
    the declared kind. Mismatches are rejected when the payload is parsed,
    and the ``as_*`` accessors refuse to read a value as the wrong kind.
    """

    name: str
    type: OptionKind
    value: str | bool | int | float | None = None
    options: list[InteractionOption] = Field(default_factory=list)
    focused: bool | None = None

    @model_validator(mode="after")
    def check_value_kind(self) -> InteractionOption:
        if self.type.is_container:
            if self.value is not None:
                raise ValueError(f"option {self.name!r} of kind {self.type.name} carries a value")
            return self
        if self.options:
            raise ValueError(f"leaf option {self.name!r} carries child options")
        # Autocomplete payloads may send partial input as a string for any kind
        if self.value is not None and not self.focused and not _value_matches(self.type, self.value):
            raise ValueError(
                f"option {self.name!r} of kind {self.type.name} "
                f"has a {type(self.value).__name__} value"
            )
        return self

    def _expect(self, *kinds: OptionKind) -> None:
        if self.type not in kinds:
            wanted = "/".join(k.name for k in kinds)
            raise OptionTypeError(f"option {self.name!r} is {self.type.name}, not {wanted}")

    def as_str(self) -> str:
        self._expect(OptionKind.STRING, *_SNOWFLAKE_KINDS)
        return str(self.value)

    def as_int(self) -> int:
        self._expect(OptionKind.INTEGER)
        return int(self.value)  # type: ignore[arg-type]

    def as_float(self) -> float:
        self._expect(OptionKind.NUMBER, OptionKind.INTEGER)
        return float(self.value)  # type: ignore[arg-type]

    def as_bool(self) -> bool:
        self._expect(OptionKind.BOOLEAN)
        return bool(self.value)


class User(BaseModel):
    id: str
    username: str | None = None
    discriminator: str | None = None
    global_name: str | None = None

    def __str__(self) -> str:
        if self.discriminator and self.discriminator != "0":
            return f"{self.username}#{self.discriminator}"
        return self.username or self.id


class Member(BaseModel):
    user: User | None = None
    nick: str | None = None
    roles: list[str] = Field(default_factory=list)


class InteractionData(BaseModel):
    id: str | None = None
    # Absent for component and modal interactions
    name: str | None = None
    type: int | None = None
    guild_id: str | None = None
    options: list[InteractionOption] = Field(default_factory=list)


class Interaction(BaseModel):
    id: str
    type: int
    token: str
    application_id: str
    data: InteractionData | None = None
    guild_id: str | None = None
    channel_id: str | None = None
    member: Member | None = None
    # Set instead of member for interactions outside a guild
    user: User | None = None
    locale: str | None = None

    @property
    def is_application_command(self) -> bool:
        return (
            self.type == INTERACTION_APPLICATION_COMMAND
            and self.data is not None
            and self.data.name is not None
        )

    @property
    def invoking_user(self) -> User | None:
        if self.member is not None and self.member.user is not None:
            return self.member.user
        return self.user


class ReadyEvent(BaseModel):
    user: User
    session_id: str | None = None
    guild_ids: list[str] = Field(default_factory=list)


class ResponseData(BaseModel):
    content: str
    flags: int = 0


class InteractionResponse(BaseModel):
    type: int = RESPONSE_CHANNEL_MESSAGE_WITH_SOURCE
    data: ResponseData

    @property
    def ephemeral(self) -> bool:
        return bool(self.data.flags & MESSAGE_FLAG_EPHEMERAL)
