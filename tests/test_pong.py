import pytest
from conftest import make_interaction

from Dmv.command_loader import load_all_commands


@pytest.mark.asyncio
async def test_pong_replies_once_publicly(bot, gateway):
    load_all_commands(bot)
    inter = make_interaction("pong")
    await bot.dispatch(inter)

    assert len(gateway.responses) == 1
    got_inter, resp = gateway.responses[0]
    assert got_inter is inter
    assert resp.type == 4
    assert resp.data.content == "Pong!"
    assert not resp.ephemeral
    assert resp.model_dump() == {"type": 4, "data": {"content": "Pong!", "flags": 0}}


def test_loader_registers_all_commands_in_order(bot):
    names = load_all_commands(bot)
    assert names == ["configure", "pong"]
    assert bot.registry.names() == ["configure", "pong"]
