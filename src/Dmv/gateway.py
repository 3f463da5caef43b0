"""Gateway transport used by the bot session.

``Gateway`` is the narrow surface the core depends on: open/close the
session, observe ``ready`` and ``interaction_create`` events, bulk-overwrite
guild commands, and acknowledge an interaction. ``DiscordGateway`` backs it
with discord.py for the websocket session (heartbeats, resume, reconnect) and
plain REST calls over httpx for command registration and interaction
callbacks, so the payloads on the wire are exactly the ones built by
``Dmv.commanding`` and ``Dmv.responder``.
"""

from __future__ import annotations

import asyncio
import enum
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import aiohttp
import discord
import httpx
import orjson
import structlog
from pydantic import ValidationError

from Dmv.discord_schemas import Interaction, InteractionResponse, ReadyEvent, User
from Dmv.exceptions import GatewayError

DISCORD_API_BASE = "https://discord.com/api/v10"

log = structlog.get_logger()


class GatewayEvent(str, enum.Enum):
    READY = "ready"
    INTERACTION_CREATE = "interaction_create"


Listener = Callable[[Any], Awaitable[None]]


class Gateway(Protocol):
    def add_listener(self, event: GatewayEvent, callback: Listener) -> None: ...

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def bulk_overwrite_commands(
        self, application_id: str, guild_id: str, commands: list[dict[str, Any]]
    ) -> list[dict[str, Any]]: ...

    async def respond(self, interaction: Interaction, response: InteractionResponse) -> None: ...


def _user_payload(u: discord.abc.User) -> dict[str, Any]:
    return {
        "id": str(u.id),
        "username": u.name,
        "discriminator": u.discriminator,
        "global_name": getattr(u, "global_name", None),
    }


def interaction_from_discord(i: discord.Interaction) -> Interaction:
    """Rebuild the raw interaction payload from discord.py's object."""
    payload: dict[str, Any] = {
        "id": str(i.id),
        "type": i.type.value,
        "token": i.token,
        "application_id": str(i.application_id),
        "data": i.data,
        "guild_id": str(i.guild_id) if i.guild_id else None,
        "channel_id": str(i.channel_id) if i.channel_id else None,
        "locale": str(i.locale) if i.locale else None,
    }
    if i.guild_id is not None:
        payload["member"] = {"user": _user_payload(i.user), "nick": getattr(i.user, "nick", None)}
    else:
        payload["user"] = _user_payload(i.user)
    return Interaction.model_validate(payload)


class _GatewayClient(discord.Client):
    def __init__(self, gateway: DiscordGateway, **kwargs: Any):
        super().__init__(**kwargs)
        self._gateway = gateway

    async def on_ready(self) -> None:
        me = self.user
        assert me is not None
        event = ReadyEvent(
            user=User(**_user_payload(me)),
            session_id=getattr(self.ws, "session_id", None),
            guild_ids=[str(g.id) for g in self.guilds],
        )
        await self._gateway.emit(GatewayEvent.READY, event)

    async def on_interaction(self, interaction: discord.Interaction) -> None:
        try:
            inter = interaction_from_discord(interaction)
        except ValidationError as err:
            log.warning(
                "discord.interaction.invalid",
                interaction_id=str(interaction.id),
                errors=err.errors(include_url=False),
            )
            return
        await self._gateway.emit(GatewayEvent.INTERACTION_CREATE, inter)


class DiscordGateway:
    def __init__(
        self,
        token: str,
        *,
        api_base: str = DISCORD_API_BASE,
        intents: discord.Intents | None = None,
        http_timeout: float = 20,
        ready_timeout: float | None = 60,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._http_timeout = http_timeout
        self._ready_timeout = ready_timeout
        # Tests inject httpx.MockTransport here
        self._http_transport = http_transport
        self._listeners: dict[GatewayEvent, list[Listener]] = defaultdict(list)
        self._client = _GatewayClient(self, intents=intents or discord.Intents.default())
        self._connect_task: asyncio.Task[None] | None = None
        self._closed = False

    def add_listener(self, event: GatewayEvent, callback: Listener) -> None:
        self._listeners[event].append(callback)

    async def emit(self, event: GatewayEvent, payload: Any) -> None:
        for callback in list(self._listeners[event]):
            await callback(payload)

    # --- Websocket session ---

    async def open(self) -> None:
        if self._connect_task is not None:
            raise GatewayError("gateway is already open")
        if self._closed:
            raise GatewayError("gateway has been closed")
        log.info("discord.gateway.open")
        try:
            await self._client.login(self._token)
        except discord.LoginFailure as e:
            raise GatewayError(f"gateway login rejected: {e}", status_code=401) from e
        except discord.HTTPException as e:
            raise GatewayError(f"gateway login failed: {e}", status_code=e.status) from e
        except (aiohttp.ClientError, OSError) as e:
            raise GatewayError(f"gateway unreachable: {e}") from e

        if self._closed:
            log.info("discord.gateway.open_aborted")
            return
        task = asyncio.create_task(self._client.connect(reconnect=True), name="discord-gateway")
        self._connect_task = task
        ready = asyncio.create_task(self._client.wait_until_ready())
        try:
            done, _ = await asyncio.wait(
                {ready, task},
                timeout=self._ready_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not ready.done():
                ready.cancel()
        if self._closed:
            # close() ran while the handshake was in flight
            log.info("discord.gateway.open_aborted")
            return
        if ready in done:
            task.add_done_callback(self._on_connection_done)
            log.info("discord.gateway.connected")
            return
        if task in done:
            if task.cancelled():
                raise GatewayError("gateway connection was cancelled before becoming ready")
            exc = task.exception()
            if exc is None:
                raise GatewayError("gateway closed before becoming ready")
            raise GatewayError(f"gateway connection failed: {exc}") from exc
        raise GatewayError("timed out waiting for the gateway to become ready")

    def _on_connection_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or self._closed:
            return
        exc = task.exception()
        if exc is not None:
            log.error("discord.gateway.connection_lost", error=str(exc))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        log.info("discord.gateway.close")
        await self._client.close()
        task = self._connect_task
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except (discord.DiscordException, aiohttp.ClientError, OSError) as e:
            log.warning("discord.gateway.connection_error", error=str(e))

    # --- REST ---

    async def _request(
        self, method: str, path: str, payload: Any, *, auth: bool = True
    ) -> httpx.Response:
        url = f"{self._api_base}{path}"
        headers = {"Content-Type": "application/json"}
        if auth:
            headers["Authorization"] = f"Bot {self._token}"
        async with httpx.AsyncClient(
            timeout=self._http_timeout, transport=self._http_transport
        ) as client:
            try:
                r = await client.request(method, url, content=orjson.dumps(payload), headers=headers)
                r.raise_for_status()
            except httpx.RequestError as e:
                log.error("discord.rest.network_error", http_method=method, error=str(e))
                raise GatewayError(f"{method} {path} failed: {e}") from e
            except httpx.HTTPStatusError as e:
                log.error(
                    "discord.rest.http_error",
                    http_method=method,
                    http_status_code=e.response.status_code,
                    text_preview=(e.response.text or "")[:200],
                )
                raise GatewayError(
                    f"{method} {path} returned {e.response.status_code}",
                    status_code=e.response.status_code,
                ) from e
        return r

    async def bulk_overwrite_commands(
        self, application_id: str, guild_id: str, commands: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        r = await self._request(
            "PUT", f"/applications/{application_id}/guilds/{guild_id}/commands", commands
        )
        return orjson.loads(r.content) if r.content else []

    async def respond(self, interaction: Interaction, response: InteractionResponse) -> None:
        # The interaction token authorizes the callback; no bot token needed
        await self._request(
            "POST",
            f"/interactions/{interaction.id}/{interaction.token}/callback",
            response.model_dump(),
            auth=False,
        )
