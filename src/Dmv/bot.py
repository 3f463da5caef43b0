"""Bot session: command registration, lifecycle and interaction dispatch.

The lifecycle is ``Bot(...)`` -> ``register(...)`` (any number of times) ->
``await start()``. Registration is closed once ``start`` begins: the
registry is frozen before any network I/O, so the dispatch table never
changes while events are being delivered. ``start`` blocks until ``stop``
is awaited from another task.

Each gateway event arrives on its own task; the bot does not serialize
dispatches, so handlers for different interactions may run concurrently.
"""

from __future__ import annotations

import asyncio
import enum
import time

import structlog
from structlog.contextvars import bound_contextvars

from Dmv.commanding import CommandDescriptor, CommandHandler, CommandRegistry, collect_options
from Dmv.config import BotConfig
from Dmv.discord_schemas import Interaction, ReadyEvent
from Dmv.exceptions import BotStateError, GatewayError, RegistrationClosedError
from Dmv.gateway import DiscordGateway, Gateway, GatewayEvent
from Dmv.metrics import inc_counter, observe_histogram

log = structlog.get_logger()


class BotState(str, enum.Enum):
    CREATED = "created"
    REGISTERING = "registering"
    STARTED = "started"
    STOPPED = "stopped"


class Bot:
    def __init__(self, config: BotConfig, gateway: Gateway | None = None):
        self.config = config
        self.gateway: Gateway = gateway or DiscordGateway(config.token.get_secret_value())
        self.registry = CommandRegistry()
        self.state = BotState.CREATED
        self._stop_signal = asyncio.Event()

    def register(self, descriptor: CommandDescriptor, handler: CommandHandler) -> None:
        if self.state not in (BotState.CREATED, BotState.REGISTERING):
            raise RegistrationClosedError(descriptor.name)
        self.registry.register(descriptor, handler)
        self.state = BotState.REGISTERING

    async def start(self) -> None:
        """Push commands, connect, and block until ``stop``.

        Command overwrite and connection failures propagate to the caller;
        nothing is retried here.
        """
        if self.state not in (BotState.CREATED, BotState.REGISTERING):
            raise BotStateError(f"cannot start a bot in state {self.state.value}")
        self.registry.freeze()
        self.state = BotState.STARTED
        log.info(
            "bot.start",
            commands=self.registry.names(),
            guild_ids=list(self.config.guild_ids),
        )

        self.gateway.add_listener(GatewayEvent.READY, self._on_ready)
        self.gateway.add_listener(GatewayEvent.INTERACTION_CREATE, self._on_interaction)

        payload = self.registry.payload()
        for guild_id in self.config.guild_ids:
            log.info("bot.commands.overwrite", guild_id=guild_id, count=len(payload))
            await self.gateway.bulk_overwrite_commands(
                self.config.application_id, guild_id, payload
            )
        if self.state is BotState.STOPPED:
            # stop() raced the command push; never connect
            return

        try:
            await self.gateway.open()
        except GatewayError:
            if self.state is BotState.STOPPED:
                log.info("bot.open_interrupted")
                return
            raise
        if self.state is BotState.STOPPED:
            # stop() arrived during the handshake
            return
        await self._stop_signal.wait()
        log.info("bot.stopped")

    async def stop(self) -> None:
        # Only the first call does anything
        if self.state is BotState.STOPPED:
            return
        self.state = BotState.STOPPED
        log.info("bot.stop")
        try:
            await self.gateway.close()
        finally:
            self._stop_signal.set()

    @property
    def stopped(self) -> bool:
        return self.state is BotState.STOPPED

    async def _on_ready(self, event: ReadyEvent) -> None:
        log.info(
            "bot.ready", user=str(event.user), user_id=event.user.id, session_id=event.session_id
        )

    async def _on_interaction(self, inter: Interaction) -> None:
        if self.state is not BotState.STARTED:
            inc_counter("interaction.dropped_after_stop")
            return
        if not inter.is_application_command:
            inc_counter("interaction.ignored")
            return
        await self.dispatch(inter)

    async def dispatch(self, inter: Interaction) -> None:
        assert inter.data is not None and inter.data.name is not None
        name = inter.data.name
        if name not in self.registry:
            inc_counter("command.unknown")
            log.debug("command.unknown", command_name=name)
            return

        user = inter.invoking_user
        options = collect_options(inter.data.options)
        with bound_contextvars(interaction_id=inter.id, command_name=name):
            log.info(
                "command.initiated",
                options=sorted(options),
                user_id=user.id if user else None,
                guild_id=inter.guild_id,
            )
            start = time.perf_counter()
            status = "success"
            try:
                await self.registry.dispatch(name, self, inter, options)
            except Exception:
                status = "error"
                inc_counter("command.error")
                log.error("command.error", exc_info=True)
                raise
            finally:
                duration_ms = int((time.perf_counter() - start) * 1000)
                observe_histogram("command.duration_ms", duration_ms)
                log.info("command.completed", status=status, duration_ms=duration_ms)
