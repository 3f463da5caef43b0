# src/Dmv/commanding.py
from __future__ import annotations

import re
import types
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from Dmv.discord_schemas import Interaction, InteractionOption, OptionKind
from Dmv.exceptions import DuplicateCommandError, RegistrationClosedError
from Dmv.metrics import inc_counter

if TYPE_CHECKING:
    from Dmv.bot import Bot

log = structlog.get_logger()

# Discord chat-input command type
CMD_CHAT_INPUT = 1

_NAME_RE = re.compile(r"^[-_a-z0-9]{1,32}$")

OptionMap = dict[str, InteractionOption]

# --- Handler signature: (session, interaction, decoded top-level options) ---
CommandHandler = Callable[["Bot", Interaction, OptionMap], Awaitable[None]]


def _check_name(v: str) -> str:
    if not _NAME_RE.match(v):
        raise ValueError(f"invalid command/option name {v!r}")
    return v


# --- Declared option shape, pushed verbatim to Discord ---
class OptionSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = Field(min_length=1, max_length=100)
    type: OptionKind
    required: bool = False
    options: tuple[OptionSchema, ...] = ()

    @field_validator("name")
    @classmethod
    def valid_name(cls, v: str) -> str:
        return _check_name(v)

    @model_validator(mode="after")
    def children_only_on_containers(self) -> OptionSchema:
        if self.options and not self.type.is_container:
            raise ValueError(f"option {self.name!r} of kind {self.type.name} cannot have children")
        if self.type is OptionKind.SUB_COMMAND_GROUP and any(
            o.type is not OptionKind.SUB_COMMAND for o in self.options
        ):
            raise ValueError(f"group {self.name!r} may only contain sub-commands")
        return self

    def to_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "type": int(self.type),
        }
        if not self.type.is_container:
            out["required"] = self.required
        if self.options:
            out["options"] = [o.to_payload() for o in self.options]
        return out


# --- Command descriptor ---
class CommandDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = Field(min_length=1, max_length=100)
    options: tuple[OptionSchema, ...] = ()

    @field_validator("name")
    @classmethod
    def valid_name(cls, v: str) -> str:
        return _check_name(v)

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "type": CMD_CHAT_INPUT,
            "options": [o.to_payload() for o in self.options],
        }


def collect_options(options: Iterable[InteractionOption] | None) -> OptionMap:
    """Index one level of a received option tree by name.

    Later siblings with the same name replace earlier ones. Does not
    descend; call again on ``node.options`` for the next level.
    """
    return {opt.name: opt for opt in options or ()}


class CommandRegistry:
    """Ordered descriptors plus a name -> handler table.

    Open for registration until ``freeze()``; afterwards the handler table
    is a read-only mapping that concurrent dispatches read without locking.
    """

    def __init__(self) -> None:
        self._descriptors: list[CommandDescriptor] = []
        self._handlers: dict[str, CommandHandler] = {}
        self._table: Mapping[str, CommandHandler] = self._handlers
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, descriptor: CommandDescriptor, handler: CommandHandler) -> None:
        if self._frozen:
            raise RegistrationClosedError(descriptor.name)
        if descriptor.name in self._handlers:
            raise DuplicateCommandError(descriptor.name)
        self._descriptors.append(descriptor)
        self._handlers[descriptor.name] = handler
        log.debug("command.registered", command_name=descriptor.name)

    def freeze(self) -> None:
        if self._frozen:
            return
        self._table = types.MappingProxyType(dict(self._handlers))
        self._frozen = True

    def find(self, name: str) -> CommandHandler | None:
        return self._table.get(name)

    def names(self) -> list[str]:
        return [d.name for d in self._descriptors]

    def payload(self) -> list[dict[str, Any]]:
        return [d.to_payload() for d in self._descriptors]

    async def dispatch(self, name: str, *args: Any) -> bool:
        handler = self._table.get(name)
        if handler is None:
            # Stale guild registrations can still deliver these
            inc_counter("command.unknown")
            log.debug("command.unknown", command_name=name)
            return False
        inc_counter("command.dispatched")
        await handler(*args)
        return True

    def __contains__(self, name: object) -> bool:
        return name in self._table

    def __len__(self) -> int:
        return len(self._descriptors)
