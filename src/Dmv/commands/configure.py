from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from Dmv.commanding import CommandDescriptor, OptionMap, OptionSchema, collect_options
from Dmv.discord_schemas import Interaction, InteractionOption, OptionKind
from Dmv.exceptions import StoreError
from Dmv.metrics import inc_counter
from Dmv.responder import reply_ephemeral
from Dmv.user_config import UserConfigManager, load_zone

if TYPE_CHECKING:
    from Dmv.bot import Bot
    from Dmv.command_loader import CommandDeps

log = structlog.get_logger()

INTERNAL_ERROR = "Internal error, please notify the bot owner."

DESCRIPTOR = CommandDescriptor(
    name="configure",
    description="Configure User settings",
    options=[
        OptionSchema(
            name="timezone",
            description="Timezone related commands",
            type=OptionKind.SUB_COMMAND_GROUP,
            options=[
                OptionSchema(
                    name="set",
                    description="Sets the user timezone, use IANA timezone format (continent/city)",
                    type=OptionKind.SUB_COMMAND,
                    options=[
                        OptionSchema(
                            name="timezone",
                            description="IANA timezone name",
                            type=OptionKind.STRING,
                            required=True,
                        ),
                    ],
                ),
                OptionSchema(
                    name="get",
                    description="Gets the user timezone",
                    type=OptionKind.SUB_COMMAND,
                ),
            ],
        ),
    ],
)


class ConfigureCommand:
    """Handler for ``/configure timezone set|get``."""

    def __init__(self, user_configs: UserConfigManager):
        self.user_configs = user_configs

    async def __call__(self, bot: Bot, inter: Interaction, options: OptionMap) -> None:
        group = options.get("timezone")
        if group is None:
            return
        cmd = collect_options(group.options)
        if "set" in cmd:
            await self.set_timezone(bot, inter, cmd["set"])
        elif "get" in cmd:
            await self.get_timezone(bot, inter, cmd["get"])

    async def set_timezone(self, bot: Bot, inter: Interaction, sub: InteractionOption) -> None:
        user = inter.invoking_user
        if user is None:
            await reply_ephemeral(bot, inter, "Could not tell who you are, try again from a server.")
            return
        opts = collect_options(sub.options)
        tz_opt = opts.get("timezone")
        if tz_opt is None:
            await reply_ephemeral(bot, inter, "Missing the timezone option.")
            return
        tz_name = tz_opt.as_str().strip()

        try:
            zone = load_zone(tz_name)
        except ValueError as err:
            inc_counter("user_config.invalid_timezone")
            await reply_ephemeral(bot, inter, f"Invalid location: {tz_name}: {err}")
            return

        try:
            await self.user_configs.set_timezone(user.id, zone)
        except StoreError:
            inc_counter("user_config.internal_error")
            log.error("user_config.internal_error", action="set", user_id=user.id, exc_info=True)
            await reply_ephemeral(bot, inter, INTERNAL_ERROR)
            return
        inc_counter("user_config.set")
        await reply_ephemeral(bot, inter, f"Timezone set to {zone.key}")

    async def get_timezone(self, bot: Bot, inter: Interaction, sub: InteractionOption) -> None:
        user = inter.invoking_user
        if user is None:
            await reply_ephemeral(bot, inter, "You don't have a timezone set")
            return
        try:
            zone = await self.user_configs.get_timezone(user.id)
        except StoreError:
            inc_counter("user_config.internal_error")
            log.error("user_config.internal_error", action="get", user_id=user.id, exc_info=True)
            await reply_ephemeral(bot, inter, INTERNAL_ERROR)
            return
        if zone is None:
            await reply_ephemeral(bot, inter, "You don't have a timezone set")
            return
        await reply_ephemeral(bot, inter, f"Your timezone is {zone.key}")


def setup(bot: Bot, deps: CommandDeps) -> None:
    bot.register(DESCRIPTOR, ConfigureCommand(deps.user_configs))
