from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from Dmv.discord_schemas import (
    MESSAGE_FLAG_EPHEMERAL,
    Interaction,
    InteractionResponse,
    ResponseData,
)

if TYPE_CHECKING:
    from Dmv.bot import Bot

__all__ = [
    "build_response",
    "reply_visible",
    "reply_ephemeral",
]


def build_response(content: str, *, ephemeral: bool = False) -> InteractionResponse:
    flags = MESSAGE_FLAG_EPHEMERAL if ephemeral else 0
    return InteractionResponse(data=ResponseData(content=content, flags=flags))


async def _reply(bot: Bot, inter: Interaction, content: str, *, ephemeral: bool) -> None:
    log = structlog.get_logger()
    log.info(
        "discord.reply.send",
        interaction_id=inter.id,
        ephemeral=ephemeral,
        content_len=len(content or ""),
    )
    # Discord rejects a second acknowledgement; one reply per interaction is on the caller
    await bot.gateway.respond(inter, build_response(content, ephemeral=ephemeral))


async def reply_visible(bot: Bot, inter: Interaction, content: str) -> None:
    await _reply(bot, inter, content, ephemeral=False)


async def reply_ephemeral(bot: Bot, inter: Interaction, content: str) -> None:
    """Answer the interaction with a message only the invoking user can see."""
    await _reply(bot, inter, content, ephemeral=True)
