"""
Command router - applies inbound frames to server state.

Admin commands fan out to devices and are written to the event log;
device messages update the registry or are answered directly. Every
handler finishes its registry changes before it sends anything, so a
handler never yields in the middle of a mutation.
"""

import logging
from typing import Optional, Union

from crowdflash.aggregator import MetricsAggregator
from crowdflash.broadcast import Broadcaster
from crowdflash.event_log import EventLog, LogEntry, LogType
from crowdflash.protocol import (
    AdminCommand,
    BatteryReport,
    ClientMessage,
    DisconnectClient,
    Heartbeat,
    client_count_event,
    decode_frame,
    device_list_event,
    heartbeat_ack_event,
    log_entry_event,
    parse_admin_command,
    parse_client_message,
)
from crowdflash.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class CommandRouter:
    """Dispatches admin commands and device messages."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        event_log: EventLog,
        broadcaster: Broadcaster,
        aggregator: MetricsAggregator,
    ):
        self.registry = registry
        self.event_log = event_log
        self.broadcaster = broadcaster
        self.aggregator = aggregator
        self.commands_routed = 0
        self.messages_dropped = 0

    # -- shared side effects -------------------------------------------------

    async def log_event(self, log_type: LogType, message: str) -> LogEntry:
        """Append to the event log and stream the entry to every admin."""
        entry = self.event_log.append(log_type, message)
        await self.broadcaster.to_admins(log_entry_event(entry))
        return entry

    async def push_metrics(self):
        await self.broadcaster.to_admins(self.aggregator.compute().to_message())

    async def push_device_list(self):
        await self.broadcaster.to_admins(device_list_event(self.registry.device_list()))

    async def broadcast_client_count(self):
        await self.broadcaster.to_clients(client_count_event(self.registry.client_count))

    # -- admin commands ------------------------------------------------------

    async def handle_admin_frame(self, websocket, raw: Union[str, bytes]) -> Optional[AdminCommand]:
        """Decode and apply one admin frame. Returns the applied command, if any."""
        data = decode_frame(raw)
        command = parse_admin_command(data) if data is not None else None
        if command is None:
            self.messages_dropped += 1
            return None
        await self.apply_admin_command(command)
        return command

    async def apply_admin_command(self, command: AdminCommand):
        self.commands_routed += 1
        # Pulses arrive at beat rate
        level = logging.INFO if command.log_type is not None else logging.DEBUG
        logger.log(
            level, f"Admin command {command.wire_type}", extra={"command": command.wire_type}
        )
        if isinstance(command, DisconnectClient):
            await self._disconnect_client(command)
            return

        event = command.to_client_event()
        if event is not None:
            await self.broadcaster.to_clients(event)
        if command.log_type is not None:
            await self.log_event(command.log_type, command.log_message())

    async def _disconnect_client(self, command: DisconnectClient):
        if not self.registry.disconnect_by_id(command.client_id):
            logger.info(
                f"Disconnect requested for unknown device {command.client_id}",
                extra={"client_id": command.client_id, "command": command.wire_type},
            )
            return
        await self.log_event(command.log_type, command.log_message())
        await self.push_metrics()
        await self.push_device_list()
        await self.broadcast_client_count()

    # -- device messages -----------------------------------------------------

    async def handle_client_frame(
        self, websocket, raw: Union[str, bytes]
    ) -> Optional[ClientMessage]:
        """Decode and apply one device frame. Returns the applied message, if any."""
        if self.registry.get(websocket) is None:
            return None
        data = decode_frame(raw)
        message = parse_client_message(data) if data is not None else None
        if message is None:
            self.messages_dropped += 1
            return None

        if isinstance(message, BatteryReport):
            if self.registry.update_battery(websocket, message.level):
                # Metrics only; the device list is refreshed on connect/disconnect
                await self.push_metrics()
        elif isinstance(message, Heartbeat):
            await self.broadcaster.send(websocket, heartbeat_ack_event())
        return message
