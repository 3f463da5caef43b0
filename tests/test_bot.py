import asyncio

import pytest
from structlog.testing import capture_logs
from conftest import FakeGateway, make_bot_config, make_interaction, start_in_background

from Dmv.bot import Bot, BotState
from Dmv.commanding import CommandDescriptor
from Dmv.exceptions import BotStateError, GatewayError, RegistrationClosedError
from Dmv.metrics import get_counter, get_counters
from Dmv.responder import reply_visible


async def _noop(bot, inter, options):
    return None


@pytest.mark.asyncio
async def test_start_pushes_commands_per_guild_then_opens():
    gw = FakeGateway()
    bot = Bot(make_bot_config(["g1", "g2"]), gateway=gw)
    bot.register(CommandDescriptor(name="pong", description="p"), _noop)
    bot.register(CommandDescriptor(name="other", description="o"), _noop)

    task = await start_in_background(bot, gw)
    assert gw.calls == ["overwrite:g1", "overwrite:g2", "open"]
    for app_id, _guild, cmds in gw.overwrites:
        assert app_id == "123"
        assert [c["name"] for c in cmds] == ["pong", "other"]
    assert not task.done()

    await bot.stop()
    assert await asyncio.wait_for(task, 1) is None
    assert gw.calls[-1] == "close"


@pytest.mark.asyncio
async def test_first_overwrite_failure_aborts_start():
    gw = FakeGateway(fail_overwrite_for={"g2"})
    bot = Bot(make_bot_config(["g1", "g2", "g3"]), gateway=gw)
    bot.register(CommandDescriptor(name="pong", description="p"), _noop)

    with pytest.raises(GatewayError) as ei:
        await bot.start()
    assert ei.value.status_code == 403
    # g3 is never attempted and the session never opens
    assert gw.calls == ["overwrite:g1", "overwrite:g2"]

    await bot.stop()
    assert bot.stopped


@pytest.mark.asyncio
async def test_open_failure_propagates_and_stop_is_safe():
    gw = FakeGateway(fail_open=True)
    bot = Bot(make_bot_config(), gateway=gw)
    with pytest.raises(GatewayError):
        await bot.start()
    await bot.stop()
    await bot.stop()
    assert gw.close_count == 1


@pytest.mark.asyncio
async def test_no_guilds_means_no_overwrites():
    gw = FakeGateway()
    bot = Bot(make_bot_config([]), gateway=gw)
    task = await start_in_background(bot, gw)
    assert gw.calls == ["open"]
    await bot.stop()
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_register_after_start_is_rejected(bot, gateway):
    task = await start_in_background(bot, gateway)
    with pytest.raises(RegistrationClosedError):
        bot.register(CommandDescriptor(name="late", description="l"), _noop)
    assert "late" not in bot.registry
    await bot.stop()
    await asyncio.wait_for(task, 1)

    with pytest.raises(RegistrationClosedError):
        bot.register(CommandDescriptor(name="later", description="l"), _noop)


@pytest.mark.asyncio
async def test_start_twice_raises(bot, gateway):
    task = await start_in_background(bot, gateway)
    with pytest.raises(BotStateError):
        await bot.start()
    await bot.stop()
    await asyncio.wait_for(task, 1)
    with pytest.raises(BotStateError):
        await bot.start()


@pytest.mark.asyncio
async def test_state_transitions(bot, gateway):
    assert bot.state is BotState.CREATED
    bot.register(CommandDescriptor(name="pong", description="p"), _noop)
    assert bot.state is BotState.REGISTERING
    task = await start_in_background(bot, gateway)
    assert bot.state is BotState.STARTED
    await bot.stop()
    await asyncio.wait_for(task, 1)
    assert bot.state is BotState.STOPPED


@pytest.mark.asyncio
async def test_dispatch_routes_by_name_with_top_level_options(bot, gateway):
    seen = []

    async def handler(b, inter, options):
        seen.append((b, inter.id, sorted(options)))
        await reply_visible(b, inter, "ok")

    bot.register(CommandDescriptor(name="echo", description="e"), handler)
    task = await start_in_background(bot, gateway)

    inter = make_interaction(
        "echo",
        [{"name": "b", "type": 3, "value": "2"}, {"name": "a", "type": 4, "value": 1}],
    )
    await gateway.deliver(inter)
    assert seen == [(bot, "1001", ["a", "b"])]
    assert len(gateway.responses) == 1
    assert get_counter("command.dispatched") == 1
    assert get_counters()["histo.command.duration_ms.count"] == 1

    await bot.stop()
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_unknown_command_is_silently_ignored(bot, gateway):
    bot.register(CommandDescriptor(name="pong", description="p"), _noop)
    task = await start_in_background(bot, gateway)
    await gateway.deliver(make_interaction("removed"))
    assert gateway.responses == []
    assert get_counter("command.unknown") == 1
    await bot.stop()
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_non_command_interactions_are_ignored(bot, gateway):
    called = []

    async def handler(b, inter, options):
        called.append(inter)

    bot.register(CommandDescriptor(name="pong", description="p"), handler)
    task = await start_in_background(bot, gateway)
    await gateway.deliver(make_interaction(None, type_=1))
    assert called == []
    assert get_counter("interaction.ignored") == 1
    await bot.stop()
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_no_dispatch_after_stop(bot, gateway):
    called = []

    async def handler(b, inter, options):
        called.append(inter)

    bot.register(CommandDescriptor(name="pong", description="p"), handler)
    task = await start_in_background(bot, gateway)
    await bot.stop()
    await asyncio.wait_for(task, 1)

    await gateway.deliver(make_interaction("pong"))
    assert called == []
    assert get_counter("interaction.dropped_after_stop") == 1


@pytest.mark.asyncio
async def test_handler_error_is_logged_and_reraised(bot, gateway):
    async def boom(b, inter, options):
        raise RuntimeError("boom")

    bot.register(CommandDescriptor(name="boom", description="b"), boom)
    task = await start_in_background(bot, gateway)
    with capture_logs() as logs:
        with pytest.raises(RuntimeError):
            await gateway.deliver(make_interaction("boom"))
    events = [e["event"] for e in logs]
    assert "command.error" in events
    completed = next(e for e in logs if e["event"] == "command.completed")
    assert completed["status"] == "error"
    assert get_counter("command.error") == 1

    # The bot keeps serving after a failing handler
    assert bot.state is BotState.STARTED
    await bot.stop()
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_concurrent_dispatches_run_independently(bot, gateway):
    gate = asyncio.Event()
    order = []

    async def slow(b, inter, options):
        order.append(("start", inter.id))
        await gate.wait()
        order.append(("end", inter.id))

    bot.register(CommandDescriptor(name="slow", description="s"), slow)
    task = await start_in_background(bot, gateway)

    t1 = asyncio.create_task(gateway.deliver(make_interaction("slow", interaction_id="a")))
    t2 = asyncio.create_task(gateway.deliver(make_interaction("slow", interaction_id="b")))
    await asyncio.sleep(0.01)
    assert {o for o in order if o[0] == "start"} == {("start", "a"), ("start", "b")}
    gate.set()
    await asyncio.gather(t1, t2)

    await bot.stop()
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_ready_event_is_logged(bot, gateway):
    task = await start_in_background(bot, gateway)
    with capture_logs() as logs:
        await gateway.ready("777")
    assert any(e["event"] == "bot.ready" and e["user_id"] == "777" for e in logs)
    await bot.stop()
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", ["return", "raise"])
async def test_stop_during_open_makes_start_return(outcome):
    gw = FakeGateway(hang_open=outcome)
    bot = Bot(make_bot_config(), gateway=gw)
    task = asyncio.create_task(bot.start())
    await asyncio.wait_for(gw.open_started.wait(), 1)

    await bot.stop()
    assert await asyncio.wait_for(task, 1) is None
    assert bot.stopped
    assert gw.close_count == 1
