# src/Dmv/commands/pong.py
from Dmv.commanding import CommandDescriptor, OptionMap
from Dmv.discord_schemas import Interaction
from Dmv.responder import reply_visible

DESCRIPTOR = CommandDescriptor(
    name="pong",
    description="Replies with pong",
)


async def pong(bot, inter: Interaction, options: OptionMap) -> None:
    await reply_visible(bot, inter, "Pong!")


def setup(bot, deps) -> None:
    bot.register(DESCRIPTOR, pong)
