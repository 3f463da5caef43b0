# src/Dmv/command_loader.py
from __future__ import annotations

import importlib
import pkgutil
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import Dmv.commands as commands_pkg  # package
from Dmv.user_config import UserConfigManager

if TYPE_CHECKING:
    from Dmv.bot import Bot


@dataclass
class CommandDeps:
    """Collaborators handed to each command module's ``setup``."""

    user_configs: UserConfigManager = field(default_factory=UserConfigManager)


def load_all_commands(bot: Bot, deps: CommandDeps | None = None) -> list[str]:
    """Import every module under Dmv.commands and let it register with ``bot``.

    Modules are visited in name order; each one exposing ``setup(bot, deps)``
    registers its descriptors. Returns the names registered by this call.
    """
    deps = deps or CommandDeps()
    before = set(bot.registry.names())
    for m in pkgutil.iter_modules(commands_pkg.__path__, commands_pkg.__name__ + "."):
        module = importlib.import_module(m.name)
        setup = getattr(module, "setup", None)
        if setup is not None:
            setup(bot, deps)
    return [n for n in bot.registry.names() if n not in before]
