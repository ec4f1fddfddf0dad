"""
WebSocket server exposing the aggregation coordinator to participants.

This module is a thin transport adapter: it decodes messages, hands
submissions to the AggregationCoordinator and pushes every newly published
global model to all registered participants.

Key Components:
    - CoordinatorServer: WebSocket server and participant registry
    - WebSocketBroadcaster: Broadcaster implementation bridging the
      coordinator's worker threads back onto the event loop

Architecture:
    - Async WebSocket server using the websockets library
    - Each participant connection handled as a separate task
    - ``coordinator.submit`` runs in the loop's default thread-pool executor,
      so averaging never blocks the event loop
    - Publication is marshalled onto the loop with
      ``asyncio.run_coroutine_threadsafe`` and fanned out with a single
      synchronous ``broadcast`` call, preserving round order per connection
"""

import asyncio
import concurrent.futures
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, broadcast, serve
from websockets.exceptions import ConnectionClosed

from fedpool.common.errors import ContributionRejectedError, ErrorCode, FederationError
from fedpool.common.serialization import ParameterSetSerializer
from fedpool.server.coordinator import AggregationCoordinator, Broadcaster, GlobalParameterSet, SubmissionReceipt

from .protocol import Message, MessageFactory, MessageType

BROADCAST_RECIPIENT = "broadcast"


class ParticipantState(Enum):
    """States that a connected participant can be in."""
    REGISTERED = "registered"
    SUBMITTING = "submitting"
    IDLE = "idle"
    DISCONNECTED = "disconnected"


@dataclass
class ConnectedParticipant:
    """
    Information about a connected participant.

    Attributes:
        participant_id: Unique participant identifier
        websocket: Active WebSocket connection
        state: Current state of the participant
        last_heartbeat: Timestamp of last message received
        registration_time: When the participant registered
        submissions: Accepted contributions from this connection
        rejections: Rejected contributions from this connection
    """
    participant_id: str
    websocket: ServerConnection
    state: ParticipantState
    last_heartbeat: float
    registration_time: float
    submissions: int = 0
    rejections: int = 0


class WebSocketBroadcaster(Broadcaster):
    """
    Publishes global models through a running CoordinatorServer.

    ``publish`` is called from the coordinator's worker thread. It schedules
    the fan-out on the server's event loop and returns immediately.
    """

    def __init__(self, server: "CoordinatorServer"):
        self.server = server

    def publish(self, global_parameters: GlobalParameterSet):
        log = logger.bind(context="WebSocketBroadcaster.publish")

        loop = self.server.loop
        if loop is None or loop.is_closed():
            log.warning(f"Server loop not running, round {global_parameters.round_num} not broadcast")
            return

        future = asyncio.run_coroutine_threadsafe(
            self.server.broadcast_global_model(global_parameters), loop
        )
        future.add_done_callback(self._log_failure)
        log.debug(f"Scheduled broadcast of round {global_parameters.round_num}")

    @staticmethod
    def _log_failure(future: concurrent.futures.Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.bind(context="WebSocketBroadcaster.publish").error(f"Broadcast failed: {error}")


class CoordinatorServer:
    """
    WebSocket server wrapping an AggregationCoordinator.

    Typical workflow:
    1. Start server and listen for connections
    2. Participants connect and register; each receives the current global model
    3. Participants submit perturbed parameters
    4. When the quorum is reached the coordinator averages and this server
       broadcasts the new global model to every registered participant
    5. Repeat indefinitely
    """

    def __init__(
        self,
        coordinator: AggregationCoordinator,
        host: str = "localhost",
        port: int = 8765,
        serializer: Optional[ParameterSetSerializer] = None,
        registration_timeout: float = 30.0,
    ):
        """
        Initialize the coordinator server.

        The server installs a WebSocketBroadcaster on the coordinator.

        Args:
            coordinator: Aggregation coordinator to expose
            host: Server host address (default: localhost)
            port: Server port (default: 8765, 0 picks a free port)
            serializer: Encoder for outgoing global models (nested lists by default)
            registration_timeout: Seconds a new connection has to send REGISTER
        """
        log = logger.bind(context="CoordinatorServer.__init__")

        self.coordinator = coordinator
        self.host = host
        self.port = port
        self.serializer = serializer or ParameterSetSerializer()
        self.registration_timeout = registration_timeout

        # Connection management
        self.connected_participants: Dict[str, ConnectedParticipant] = {}

        # Server state
        self.is_running = False
        self.server_instance: Optional[Server] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None

        # Performance monitoring
        self.total_messages_handled = 0
        self.total_broadcasts = 0
        self.start_time = 0.0

        self.coordinator.set_broadcaster(WebSocketBroadcaster(self))
        log.info(f"CoordinatorServer initialized for {host}:{port}")

    async def start(self):
        """Start listening. Returns once the socket is bound."""
        log = logger.bind(context="CoordinatorServer.start")
        log.info(f"Starting coordinator server on {self.host}:{self.port}")

        self.loop = asyncio.get_running_loop()
        self.server_instance = await serve(
            self._handle_client_connection,
            self.host,
            self.port,
            ping_interval=30,
            ping_timeout=10,
            max_size=50 * 1024 * 1024,
        )

        # Resolve the real port when bound to port 0
        sockets = list(self.server_instance.sockets)
        if sockets:
            self.port = sockets[0].getsockname()[1]

        self.is_running = True
        self.start_time = time.time()
        log.info(f"Coordinator server ready on {self.host}:{self.port}")

    async def serve_forever(self):
        """Start the server (if needed) and run until it is closed."""
        if self.server_instance is None:
            await self.start()
        await self.server_instance.wait_closed()

    async def stop(self):
        """Notify every participant, close all connections and stop listening."""
        log = logger.bind(context="CoordinatorServer.stop")
        log.info("Stopping coordinator server...")

        if self.connected_participants:
            tasks = [
                asyncio.create_task(self._disconnect_participant(pid, "server_shutdown"))
                for pid in list(self.connected_participants)
            ]
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.server_instance:
            self.server_instance.close()
            await self.server_instance.wait_closed()
            self.server_instance = None

        self.is_running = False
        uptime = time.time() - self.start_time if self.start_time else 0.0
        log.info(f"Coordinator server stopped. Uptime: {uptime:.2f} seconds")

    async def _handle_client_connection(self, websocket: ServerConnection):
        """Manage the lifecycle of one participant connection."""
        client_addr = websocket.remote_address
        log = logger.bind(context="CoordinatorServer._handle_client_connection")
        log.info(f"New connection from {client_addr}")

        participant_id = None
        try:
            participant_id = await self._wait_for_registration(websocket)
            if participant_id is None:
                log.warning(f"Connection {client_addr} failed to register, closing")
                return

            await self._send_current_global_model(participant_id)
            await self._handle_participant_messages(participant_id)

        except ConnectionClosed:
            log.info(f"Connection closed by {client_addr}")
        except Exception:
            log.exception(f"Error handling connection {client_addr}")
        finally:
            if participant_id:
                self._cleanup_participant(participant_id, websocket)

    async def _wait_for_registration(self, websocket: ServerConnection) -> Optional[str]:
        """
        Wait for and validate the REGISTER message.

        Returns:
            participant_id if registration succeeded, else None
        """
        log = logger.bind(context="CoordinatorServer._wait_for_registration")

        try:
            raw_message = await asyncio.wait_for(websocket.recv(), timeout=self.registration_timeout)
        except asyncio.TimeoutError:
            log.warning("Registration timed out")
            return None

        try:
            message = Message.from_json(raw_message)
        except ValueError as e:
            log.warning(f"Malformed registration message: {e}")
            await self._send_to_socket(
                websocket, MessageFactory.create_error("", ErrorCode.INVALID_MESSAGE, f"Invalid message: {e}")
            )
            return None

        if message.type != MessageType.REGISTER.value:
            log.warning(f"First message must be REGISTER, got {message.type}")
            await self._send_to_socket(
                websocket,
                MessageFactory.create_error(
                    str(message.participant_id or ""), ErrorCode.NOT_REGISTERED, "Register before sending other messages"
                ),
            )
            return None

        if not message.validate():
            await self._send_registration_response(websocket, str(message.participant_id or ""), False, "Invalid message format")
            return None

        participant_id = message.participant_id
        if participant_id in self.connected_participants:
            log.warning(f"Participant {participant_id} already connected")
            await self._send_registration_response(websocket, participant_id, False, "Participant already connected")
            return None

        now = time.time()
        self.connected_participants[participant_id] = ConnectedParticipant(
            participant_id=participant_id,
            websocket=websocket,
            state=ParticipantState.REGISTERED,
            last_heartbeat=now,
            registration_time=now,
        )
        await self._send_registration_response(websocket, participant_id, True, "Registration successful")
        log.info(f"Participant {participant_id} registered ({len(self.connected_participants)} connected)")
        return participant_id

    async def _send_registration_response(
        self, websocket: ServerConnection, participant_id: str, success: bool, message: str
    ):
        response = MessageFactory.create_register_ack(
            participant_id=participant_id,
            success=success,
            message=message,
            quorum=self.coordinator.quorum,
            noise_scale=self.coordinator.noise_scale,
            layer_shapes=[list(s) for s in self.coordinator.expected_signatures],
        )
        await self._send_to_socket(websocket, response)

    async def _send_current_global_model(self, participant_id: str):
        """Bring a newly registered participant up to the latest round."""
        current = self.coordinator.global_parameters
        message = MessageFactory.create_update_global_model(
            participant_id=participant_id,
            weights=self.serializer.serialize(current.parameters),
            round_num=current.round_num,
        )
        await self._send_message_to_participant(participant_id, message)

    async def _handle_participant_messages(self, participant_id: str):
        """Main receive loop for a registered participant."""
        log = logger.bind(context="CoordinatorServer._handle_participant_messages")
        participant = self.connected_participants[participant_id]

        async for raw_message in participant.websocket:
            self.total_messages_handled += 1
            participant.last_heartbeat = time.time()

            try:
                message = Message.from_json(raw_message)
            except ValueError as e:
                log.warning(f"Malformed message from {participant_id}: {e}")
                await self._send_error(participant_id, ErrorCode.INVALID_MESSAGE, f"Invalid message: {e}")
                continue

            if not message.validate():
                await self._send_error(participant_id, ErrorCode.INVALID_MESSAGE, "Invalid message format")
                continue

            if message.participant_id != participant_id:
                log.warning(f"Connection of {participant_id} sent a message as {message.participant_id}")
                await self._send_error(
                    participant_id, ErrorCode.INVALID_MESSAGE, "participant_id does not match registration"
                )
                continue

            if MessageType(message.type) == MessageType.DISCONNECT:
                log.info(f"Disconnect request from {participant_id}: {message.payload.get('reason', '')}")
                return

            try:
                await self._route_message(participant_id, message)
            except ConnectionClosed:
                raise
            except Exception as e:
                log.exception(f"Error processing {message.type} from {participant_id}")
                await self._send_error(participant_id, ErrorCode.INTERNAL_ERROR, f"Message processing error: {e}")

    async def _route_message(self, participant_id: str, message: Message):
        log = logger.bind(context="CoordinatorServer._route_message")
        message_type = MessageType(message.type)

        if message_type == MessageType.HEARTBEAT:
            log.trace(f"Heartbeat from {participant_id}")
        elif message_type == MessageType.SUBMIT_WEIGHTS:
            await self._handle_submit_weights(participant_id, message)
        else:
            log.warning(f"No handler for message type {message.type} from {participant_id}")
            await self._send_error(
                participant_id, ErrorCode.INVALID_MESSAGE, f"Unexpected message type {message.type}"
            )

    async def _handle_submit_weights(self, participant_id: str, message: Message):
        """Decode a contribution and hand it to the coordinator off the event loop."""
        log = logger.bind(context="CoordinatorServer._handle_submit_weights")
        participant = self.connected_participants[participant_id]
        participant.state = ParticipantState.SUBMITTING
        log.info(f"Contribution from {participant_id} (trained from round {message.round_num})")

        loop = asyncio.get_running_loop()
        try:
            receipt: SubmissionReceipt = await loop.run_in_executor(
                None, self._decode_and_submit, participant_id, message.payload["weights"]
            )
        except ContributionRejectedError as e:
            participant.rejections += 1
            participant.state = ParticipantState.IDLE
            await self._send_error(participant_id, e.error_code, e.message)
            return
        except FederationError as e:
            participant.state = ParticipantState.IDLE
            log.critical(f"Round aborted while handling contribution from {participant_id}: {e}")
            await self._send_error(participant_id, ErrorCode.INTERNAL_ERROR, "Aggregation failed")
            return

        participant.submissions += 1
        participant.state = ParticipantState.IDLE
        ack = MessageFactory.create_submit_ack(
            participant_id=participant_id,
            pool_size=receipt.pool_size,
            quorum=receipt.quorum,
            round_num=receipt.triggered_round,
        )
        await self._send_message_to_participant(participant_id, ack)

    def _decode_and_submit(self, participant_id: str, weights: Any) -> SubmissionReceipt:
        parameters = self.serializer.deserialize(weights)
        return self.coordinator.submit(participant_id, parameters)

    async def broadcast_global_model(self, global_parameters: GlobalParameterSet):
        """
        Send a global model to every registered participant.

        The message is encoded once and written to all connections in a
        single synchronous step, so broadcasts of consecutive rounds cannot
        interleave on a connection.
        """
        log = logger.bind(context="CoordinatorServer.broadcast_global_model")

        message = MessageFactory.create_update_global_model(
            participant_id=BROADCAST_RECIPIENT,
            weights=self.serializer.serialize(global_parameters.parameters),
            round_num=global_parameters.round_num,
        )
        connections = [p.websocket for p in self.connected_participants.values()]
        if not connections:
            log.warning(f"No connected participants for round {global_parameters.round_num}")
            return

        broadcast(connections, message.to_json())
        self.total_broadcasts += 1
        log.info(f"Broadcast round {global_parameters.round_num} to {len(connections)} participants")

    async def _send_error(self, participant_id: str, error_code: int, error_message: str):
        log = logger.bind(context="CoordinatorServer._send_error")
        log.debug(f"Sending error {int(error_code)} to {participant_id}: {error_message}")
        await self._send_message_to_participant(
            participant_id, MessageFactory.create_error(participant_id, error_code, error_message)
        )

    async def _send_message_to_participant(self, participant_id: str, message: Message):
        log = logger.bind(context="CoordinatorServer._send_message_to_participant")

        participant = self.connected_participants.get(participant_id)
        if participant is None:
            log.warning(f"Cannot send message, participant {participant_id} not connected")
            return
        await self._send_to_socket(participant.websocket, message)

    async def _send_to_socket(self, websocket: ServerConnection, message: Message):
        log = logger.bind(context="CoordinatorServer._send_to_socket")
        try:
            await websocket.send(message.to_json())
            log.trace(f"Sent {message.type} to {message.participant_id}")
        except ConnectionClosed:
            log.warning(f"Connection closed before {message.type} could be sent to {message.participant_id}")

    async def _disconnect_participant(self, participant_id: str, reason: str):
        log = logger.bind(context="CoordinatorServer._disconnect_participant")
        log.info(f"Disconnecting participant {participant_id}: {reason}")

        participant = self.connected_participants.get(participant_id)
        if participant is None:
            return

        await self._send_to_socket(participant.websocket, MessageFactory.create_disconnect(participant_id, reason))
        await participant.websocket.close()
        self._cleanup_participant(participant_id, participant.websocket)

    def _cleanup_participant(self, participant_id: str, websocket: ServerConnection):
        """Forget a participant. Its accepted contributions stay in the pool."""
        log = logger.bind(context="CoordinatorServer._cleanup_participant")

        participant = self.connected_participants.get(participant_id)
        if participant is None or participant.websocket is not websocket:
            return

        participant.state = ParticipantState.DISCONNECTED
        del self.connected_participants[participant_id]
        connection_time = time.time() - participant.registration_time
        log.info(
            f"Participant {participant_id} left after {connection_time:.1f}s "
            f"({len(self.connected_participants)} remaining)"
        )

    def get_connected_participants(self) -> Dict[str, ConnectedParticipant]:
        """Get dictionary of all connected participants."""
        return self.connected_participants.copy()

    def get_participant_count(self) -> int:
        return len(self.connected_participants)

    def get_server_statistics(self) -> Dict[str, Any]:
        """Get server and coordinator statistics."""
        uptime = time.time() - self.start_time if self.start_time > 0 else 0

        return {
            "server": {
                "host": self.host,
                "port": self.port,
                "is_running": self.is_running,
                "uptime_seconds": uptime,
                "total_messages_handled": self.total_messages_handled,
                "total_broadcasts": self.total_broadcasts,
            },
            "connections": {
                "total_connected_participants": len(self.connected_participants),
            },
            "coordinator": self.coordinator.get_statistics(),
        }
