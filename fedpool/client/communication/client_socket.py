"""
WebSocket client for federated participants.

This module implements the participant-side communication with the
coordinator. It manages the connection, registration, heartbeats and message
routing, and provides a small interface for the participant node logic.

Key Components:
    - ParticipantClient: Main WebSocket client class
    - ConnectionStats: Connection statistics
    - Automatic reconnection with exponential backoff
    - Handler registry for coordinator messages

Architecture:
    - Async WebSocket client using the websockets library
    - Event-driven message handling
    - Registration result exposed through an asyncio.Event so callers can
      await it instead of polling
"""

import asyncio
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidURI

from fedpool.common.serialization import ParameterSetSerializer
from fedpool.common.tensor import ParameterSet
from fedpool.server.communication.protocol import Message, MessageFactory, MessageType


class ClientState(Enum):
    """States that the client can be in."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REGISTERING = "registering"
    REGISTERED = "registered"
    ERROR = "error"


class RegistrationError(Exception):
    """The coordinator refused the registration."""


@dataclass
class ConnectionStats:
    """Statistics about the connection."""
    connection_attempts: int = 0
    successful_connections: int = 0
    total_messages_sent: int = 0
    total_messages_received: int = 0
    last_connection_time: float = 0.0
    total_uptime: float = 0.0
    reconnections: int = 0
    heartbeat_failures: int = 0
    last_heartbeat_time: float = 0.0
    large_message_warnings: int = 0


class ParticipantClient:
    """
    WebSocket client connecting one participant to the coordinator.

    Typical workflow:
    1. Connect to the coordinator and register
    2. Receive the current global model
    3. Send contributions with ``send_update``
    4. Receive acknowledgments, errors and new global models through handlers
    """

    def __init__(
        self,
        participant_id: str,
        server_host: str = "localhost",
        server_port: int = 8765,
        serializer: Optional[ParameterSetSerializer] = None,
        auto_reconnect: bool = True,
    ):
        """
        Initialize the participant client.

        Args:
            participant_id: Unique identifier for this participant
            server_host: Coordinator hostname (default: localhost)
            server_port: Coordinator port (default: 8765)
            serializer: Encoder for outgoing contributions (nested lists by default)
            auto_reconnect: Whether to reconnect after a dropped connection
        """
        log = logger.bind(context="ParticipantClient.__init__")

        self.participant_id = participant_id
        self.server_host = server_host
        self.server_port = server_port
        self.server_url = f"ws://{self.server_host}:{self.server_port}"
        self.serializer = serializer or ParameterSetSerializer()

        # Connection state
        self.websocket: Optional[ClientConnection] = None
        self.state = ClientState.DISCONNECTED
        self.is_running = False
        self._registered = asyncio.Event()

        # Reconnection settings
        self.auto_reconnect = auto_reconnect
        self.initial_reconnect_delay = 1.0
        self.reconnect_delay = self.initial_reconnect_delay
        self.max_reconnect_delay = 60.0
        self.reconnect_backoff = 1.5

        # Heartbeat settings
        self.heartbeat_interval = 30.0
        self.heartbeat_task: Optional[asyncio.Task] = None

        # Message handling
        self.message_handlers: Dict[MessageType, Callable] = {}
        self.pending_responses: Dict[str, asyncio.Future] = {}

        # Values announced by the coordinator at registration
        self.quorum: Optional[int] = None
        self.advised_noise_scale: Optional[float] = None
        self.layer_shapes: Optional[List[List[int]]] = None

        self.stats = ConnectionStats()

        log.info(f"Initialized client for participant {self.participant_id}, server {self.server_url}")

    def set_message_handler(self, message_type: MessageType, handler: Callable):
        """
        Register an async handler ``handler(message)`` for a message type.

        Args:
            message_type: Type of message to handle
            handler: Async function to handle the message
        """
        log = logger.bind(context="ParticipantClient.set_message_handler")
        log.debug(f"Registered handler for {message_type}")
        self.message_handlers[message_type] = handler

    async def start(self):
        """
        Connect and run until stopped, reconnecting with exponential backoff.
        """
        log = logger.bind(context="ParticipantClient.start")
        log.info(f"Starting client {self.participant_id}")

        self.is_running = True
        while self.is_running:
            try:
                await self._connect_and_run()
            except RegistrationError:
                self.is_running = False
                raise

            if not (self.auto_reconnect and self.is_running):
                break

            log.info(f"Reconnecting in {self.reconnect_delay:.1f} seconds...")
            await asyncio.sleep(self.reconnect_delay)
            self.reconnect_delay = min(self.reconnect_delay * self.reconnect_backoff, self.max_reconnect_delay)
            self.stats.reconnections += 1

        self.is_running = False
        log.info(f"Client {self.participant_id} stopped")

    async def stop(self):
        """Send a disconnect notice and close the connection."""
        log = logger.bind(context="ParticipantClient.stop")
        log.info("Stopping client")

        self.is_running = False
        await self._cancel_heartbeat()

        if self.websocket and self.state == ClientState.REGISTERED:
            try:
                await self._send_message(MessageFactory.create_disconnect(self.participant_id, "Client shutting down"))
            except (ConnectionClosed, ConnectionError) as e:
                log.warning(f"Error sending disconnect message: {e}")

        if self.websocket:
            await self.websocket.close()
            self.websocket = None

        self.state = ClientState.DISCONNECTED
        self._registered.clear()
        self._log_final_stats()

    async def _connect_and_run(self):
        """
        Connect, register, start the heartbeat and handle messages until the
        connection closes.
        """
        log = logger.bind(context="ParticipantClient._connect_and_run")

        self.stats.connection_attempts += 1
        connection_start = time.time()
        self.state = ClientState.CONNECTING
        log.info(f"Establishing WebSocket connection at {self.server_url}")

        try:
            self.websocket = await connect(
                self.server_url,
                ping_interval=30,
                ping_timeout=30,
                max_size=50 * 1024 * 1024,
                close_timeout=10,
            )
            self.state = ClientState.CONNECTED
            self.stats.successful_connections += 1
            self.stats.last_connection_time = time.time()
            self.reconnect_delay = self.initial_reconnect_delay
            log.info("WebSocket connection established")

            message_task = asyncio.create_task(self._message_loop())
            try:
                await self._register_with_server()
            except BaseException:
                message_task.cancel()
                raise

            self.heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            await message_task

        except ConnectionClosed as e:
            log.warning(f"Connection closed by server: {e}")
        except InvalidURI:
            log.error(f"Invalid server URL: {self.server_url}")
            self.state = ClientState.ERROR
            self.is_running = False
            raise
        except (OSError, asyncio.TimeoutError) as e:
            log.error(f"Network error connecting to coordinator: {e}")
        finally:
            self.stats.total_uptime += time.time() - connection_start
            self._registered.clear()
            await self._cancel_heartbeat()
            if self.websocket:
                await self.websocket.close()
                self.websocket = None
            if self.state != ClientState.ERROR:
                self.state = ClientState.DISCONNECTED

    async def _register_with_server(self):
        """Send REGISTER and wait for the acknowledgment."""
        log = logger.bind(context="ParticipantClient._register_with_server")
        log.info(f"Registering participant {self.participant_id}")

        self.state = ClientState.REGISTERING
        waiter = self._expect(MessageType.REGISTER_ACK)
        await self._send_message(MessageFactory.create_register_message(self.participant_id))

        try:
            response: Message = await asyncio.wait_for(waiter, timeout=30.0)
        except asyncio.TimeoutError:
            log.error("Registration timed out")
            self.pending_responses.pop(MessageType.REGISTER_ACK.value, None)
            raise

        if not response.payload.get("success", False):
            reason = response.payload.get("message", "Unknown error")
            log.error(f"Registration failed: {reason}")
            self.state = ClientState.ERROR
            raise RegistrationError(f"Registration failed: {reason}")

        self.quorum = response.payload.get("quorum")
        self.advised_noise_scale = response.payload.get("noise_scale")
        self.layer_shapes = response.payload.get("layer_shapes")
        self.state = ClientState.REGISTERED
        self._registered.set()
        log.info(f"Participant {self.participant_id} registered (Q={self.quorum})")

    async def wait_until_registered(self, timeout: Optional[float] = None) -> bool:
        """Wait for a successful registration. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._registered.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _message_loop(self):
        """Receive and dispatch messages until the connection closes."""
        log = logger.bind(context="ParticipantClient._message_loop")

        try:
            async for raw_message in self.websocket:
                self.stats.total_messages_received += 1

                try:
                    message = Message.from_json(raw_message)
                except ValueError as e:
                    log.error(f"Failed to decode message: {e}")
                    continue

                if not message.validate():
                    log.warning(f"Invalid message received: type={message.type}")
                    continue

                await self._handle_message(message)
        finally:
            # Nothing will answer outstanding waiters on this connection
            for future in self.pending_responses.values():
                if not future.done():
                    future.set_exception(ConnectionError("Connection closed"))
            self.pending_responses.clear()

    async def _handle_message(self, message: Message):
        """Resolve waiters, run built-in handling and external handlers."""
        log = logger.bind(context="ParticipantClient._handle_message")
        message_type = MessageType(message.type)

        future = self.pending_responses.pop(message_type.value, None)
        if future is not None and not future.done():
            future.set_result(message)

        if message_type == MessageType.ERROR:
            log.warning(
                f"Coordinator error [{message.payload.get('error_code')}]: {message.payload.get('message')}"
            )
        elif message_type == MessageType.DISCONNECT:
            log.info(f"Coordinator requested disconnect: {message.payload.get('reason', '')}")
            self.auto_reconnect = False

        handler = self.message_handlers.get(message_type)
        if handler is None:
            log.trace(f"No handler for message type: {message_type}")
            return
        try:
            await handler(message)
        except Exception:
            log.exception(f"Handler failed for {message_type}")

    def _expect(self, message_type: MessageType) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self.pending_responses[message_type.value] = future
        return future

    async def _heartbeat_loop(self):
        """Send periodic heartbeats while registered."""
        log = logger.bind(context="ParticipantClient._heartbeat_loop")
        log.debug(f"Starting heartbeat loop (interval={self.heartbeat_interval}s)")

        while self.is_running and self.state == ClientState.REGISTERED:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._send_message(MessageFactory.create_heartbeat(self.participant_id))
                self.stats.last_heartbeat_time = time.time()
            except (ConnectionClosed, ConnectionError) as e:
                log.warning(f"Failed to send heartbeat: {e}")
                self.stats.heartbeat_failures += 1
                break

    async def _cancel_heartbeat(self):
        if self.heartbeat_task:
            self.heartbeat_task.cancel()
            try:
                await self.heartbeat_task
            except asyncio.CancelledError:
                pass
            self.heartbeat_task = None

    async def _send_message(self, message: Message):
        """
        Send a message to the coordinator.

        Raises:
            ConnectionError: If there is no open connection
        """
        log = logger.bind(context="ParticipantClient._send_message")

        if self.websocket is None:
            raise ConnectionError("WebSocket is not connected")

        message_json = message.to_json()
        message_size = len(message_json.encode('utf-8'))
        if message_size > 10 * 1024 * 1024:
            log.warning(f"Large message: {message_size / (1024 * 1024):.1f}MB for {message.type}")
            self.stats.large_message_warnings += 1

        await self.websocket.send(message_json)
        self.stats.total_messages_sent += 1
        log.trace(f"Sent {message.type} ({message_size / 1024:.1f}KB)")

    async def send_update(self, parameters: ParameterSet, round_num: Optional[int] = None):
        """
        Send a contribution to the coordinator.

        Args:
            parameters: Noise-perturbed local ParameterSet
            round_num: Round of the global model the update was trained from
        """
        log = logger.bind(context="ParticipantClient.send_update")
        log.info(f"Sending contribution trained from round {round_num}")

        weights = self.serializer.serialize(parameters)
        await self._send_message(MessageFactory.create_submit_weights(self.participant_id, weights, round_num))

    def is_connected(self) -> bool:
        """Check if client is connected and registered."""
        return self.state == ClientState.REGISTERED

    def get_stats(self) -> Dict[str, Any]:
        """Get connection statistics as a dictionary."""
        return asdict(self.stats)

    def _log_final_stats(self):
        log = logger.bind(context="ParticipantClient._log_final_stats")
        log.info("=== Final Connection Statistics ===")
        log.info(f"Connection attempts: {self.stats.connection_attempts}")
        log.info(f"Successful connections: {self.stats.successful_connections}")
        log.info(f"Total uptime: {self.stats.total_uptime:.1f} seconds")
        log.info(f"Messages sent: {self.stats.total_messages_sent}")
        log.info(f"Messages received: {self.stats.total_messages_received}")
        log.info(f"Reconnections: {self.stats.reconnections}")
