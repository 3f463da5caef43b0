# tests/conftest.py

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any

import pytest
from pydantic import SecretStr

from Dmv.bot import Bot
from Dmv.config import BotConfig
from Dmv.db import Database
from Dmv.discord_schemas import Interaction, InteractionResponse, ReadyEvent, User
from Dmv.exceptions import GatewayError
from Dmv.gateway import GatewayEvent
from Dmv.metrics import reset_counters


class FakeGateway:
    """In-process stand-in for DiscordGateway.

    Records every REST call and lets tests push events as if they came from
    the websocket. ``fail_overwrite_for`` and ``fail_open`` simulate the two
    startup failures the bot must surface.
    """

    def __init__(
        self,
        *,
        fail_overwrite_for: set[str] | None = None,
        fail_open: bool = False,
        hang_open: str | None = None,
    ):
        self.calls: list[str] = []
        self.overwrites: list[tuple[str, str, list[dict[str, Any]]]] = []
        self.responses: list[tuple[Interaction, InteractionResponse]] = []
        self.listeners: dict[GatewayEvent, list] = defaultdict(list)
        self.fail_overwrite_for = fail_overwrite_for or set()
        self.fail_open = fail_open
        # "return" or "raise": open() blocks until close(), then returns or fails
        self.hang_open = hang_open
        self.open_started = asyncio.Event()
        self._closed = asyncio.Event()
        self.opened = asyncio.Event()
        self.close_count = 0

    def add_listener(self, event, callback) -> None:
        self.listeners[event].append(callback)

    async def open(self) -> None:
        self.calls.append("open")
        self.open_started.set()
        if self.hang_open:
            await self._closed.wait()
            if self.hang_open == "raise":
                raise GatewayError("gateway connection failed: closed during handshake")
            return
        if self.fail_open:
            raise GatewayError("gateway login rejected", status_code=401)
        self.opened.set()

    async def close(self) -> None:
        self.calls.append("close")
        self.close_count += 1
        self._closed.set()

    async def bulk_overwrite_commands(self, application_id, guild_id, commands):
        self.calls.append(f"overwrite:{guild_id}")
        if guild_id in self.fail_overwrite_for:
            raise GatewayError(f"PUT guild {guild_id} returned 403", status_code=403)
        self.overwrites.append((application_id, guild_id, commands))
        return commands

    async def respond(self, interaction, response) -> None:
        self.responses.append((interaction, response))

    async def emit(self, event: GatewayEvent, payload: Any) -> None:
        for cb in list(self.listeners[event]):
            await cb(payload)

    async def deliver(self, inter: Interaction) -> None:
        await self.emit(GatewayEvent.INTERACTION_CREATE, inter)

    async def ready(self, user_id: str = "999") -> None:
        await self.emit(GatewayEvent.READY, ReadyEvent(user=User(id=user_id, username="dmv")))


def make_bot_config(guild_ids: list[str] | None = None) -> BotConfig:
    return BotConfig(
        token=SecretStr("test-token"),
        application_id="123",
        guild_ids=["g1"] if guild_ids is None else guild_ids,
    )


def make_interaction(
    name: str | None,
    options: list[dict[str, Any]] | None = None,
    *,
    user_id: str = "42",
    guild_id: str | None = "g1",
    type_: int = 2,
    interaction_id: str = "1001",
) -> Interaction:
    user = {"id": user_id, "username": "alice", "discriminator": "0"}
    payload: dict[str, Any] = {
        "id": interaction_id,
        "type": type_,
        "token": "tok",
        "application_id": "123",
        "guild_id": guild_id,
        "channel_id": "c1",
    }
    if name is not None or options is not None:
        payload["data"] = {"id": "cmd", "name": name, "type": 1, "options": options or []}
    if guild_id is not None:
        payload["member"] = {"user": user}
    else:
        payload["user"] = user
    return Interaction.model_validate(payload)


def configure_set(tz: str, **kw: Any) -> Interaction:
    return make_interaction(
        "configure",
        [
            {
                "name": "timezone",
                "type": 2,
                "options": [
                    {
                        "name": "set",
                        "type": 1,
                        "options": [{"name": "timezone", "type": 3, "value": tz}],
                    }
                ],
            }
        ],
        **kw,
    )


def configure_get(**kw: Any) -> Interaction:
    return make_interaction(
        "configure",
        [{"name": "timezone", "type": 2, "options": [{"name": "get", "type": 1, "options": []}]}],
        **kw,
    )


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_counters()
    yield
    reset_counters()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def bot(gateway: FakeGateway) -> Bot:
    return Bot(make_bot_config(), gateway=gateway)


@pytest.fixture
async def database() -> AsyncIterator[Database]:
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.create_all()
    try:
        yield db
    finally:
        await db.dispose()


async def start_in_background(bot: Bot, gateway: FakeGateway) -> asyncio.Task[None]:
    """Run ``bot.start()`` on a task and wait until the gateway is open."""
    task = asyncio.create_task(bot.start())
    opened = asyncio.create_task(gateway.opened.wait())
    done, _ = await asyncio.wait({task, opened}, timeout=2, return_when=asyncio.FIRST_COMPLETED)
    if opened not in done:
        opened.cancel()
    if task in done:
        task.result()
    return task
