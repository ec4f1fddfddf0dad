"""
Communication protocol between the coordinator and participants.

This module defines the message types, message structure, and JSON
serialization for the WebSocket transport wrapping the aggregation
coordinator.

Key Components:
    - MessageType: Enum defining all possible message types
    - Message: Dataclass representing a protocol message
    - MessageFactory: Factory class for creating typed messages
"""

import json
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger


class MessageType(Enum):
    """
    Enumeration of all message types used in the protocol.

    Participant -> Coordinator messages:
        REGISTER: Participant registration request
        SUBMIT_WEIGHTS: Locally trained, noise-perturbed parameters
        HEARTBEAT: Keep-alive signal

    Coordinator -> Participant messages:
        REGISTER_ACK: Registration acknowledgment with round configuration
        SUBMIT_ACK: Contribution accepted, with quorum progress
        UPDATE_GLOBAL_MODEL: New global model after a completed round

    Bidirectional messages:
        ERROR: Error notification with a numeric code
        DISCONNECT: Graceful disconnection notice
    """
    # Participant -> Coordinator
    REGISTER = "register"
    SUBMIT_WEIGHTS = "submit_weights"
    HEARTBEAT = "heartbeat"

    # Coordinator -> Participant
    REGISTER_ACK = "register_ack"
    SUBMIT_ACK = "submit_ack"
    UPDATE_GLOBAL_MODEL = "update_global_model"

    # Bidirectional
    ERROR = "error"
    DISCONNECT = "disconnect"


_REQUIRED_PAYLOAD_FIELDS = {
    MessageType.REGISTER_ACK: ("success",),
    MessageType.SUBMIT_WEIGHTS: ("weights",),
    MessageType.SUBMIT_ACK: ("accepted", "pool_size", "quorum"),
    MessageType.UPDATE_GLOBAL_MODEL: ("weights",),
    MessageType.ERROR: ("error_code", "message"),
}


@dataclass
class Message:
    """
    Base message structure for all communications.

    Attributes:
        type: Type of message (must be a valid MessageType enum value)
        participant_id: Identifier of the sending/receiving participant
        payload: Dictionary containing message-specific data
        timestamp: Unix timestamp when message was created
        round_num: Optional round number the message refers to

    Example:
        >>> msg = Message(
        ...     type="register",
        ...     participant_id="participant_001",
        ...     payload={},
        ...     timestamp=time.time()
        ... )
    """
    type: str
    participant_id: str
    payload: Dict[str, Any]
    timestamp: float
    round_num: Optional[int] = None

    def to_json(self) -> str:
        """Serialize the message to a JSON string."""
        log = logger.bind(context="Message.to_json")
        json_str = json.dumps(asdict(self))
        log.trace(f"Serialized {self.type} message ({len(json_str)} chars)")
        return json_str

    @classmethod
    def from_json(cls, json_str: str) -> "Message":
        """
        Deserialize a JSON string to a Message object.

        Raises:
            ValueError: If the text is not JSON or not a message object
        """
        log = logger.bind(context="Message.from_json")
        log.trace(f"Deserializing JSON: {json_str[:100]}...")

        data = json.loads(json_str)
        if not isinstance(data, dict):
            raise ValueError(f"Message must be a JSON object, got {type(data).__name__}")

        try:
            message = cls(**data)
        except TypeError as e:
            log.error(f"Invalid message structure: {e}")
            raise ValueError(f"Invalid message structure: {e}") from e

        if not isinstance(message.payload, dict):
            raise ValueError("Message payload must be a JSON object")

        log.trace(f"Deserialized message: type={message.type}")
        return message

    def validate(self) -> bool:
        """
        Validate message structure and required fields.

        Performs two levels of validation:
        1. Basic structure: type is known and participant_id is non-empty
        2. Payload validation: message-type-specific required keys

        Returns:
            bool: True if message is valid, False otherwise
        """
        log = logger.bind(context="Message.validate")

        if self.type not in [mt.value for mt in MessageType]:
            log.warning(f"Invalid message type: {self.type}")
            return False

        if not self.participant_id or not isinstance(self.participant_id, str):
            log.warning("Missing required field: participant_id")
            return False

        required = _REQUIRED_PAYLOAD_FIELDS.get(MessageType(self.type), ())
        missing = [key for key in required if key not in self.payload]
        if missing:
            log.warning(f"{self.type} payload missing {missing}")
            return False

        return True


class MessageFactory:
    """
    Factory class for creating protocol messages with proper structure.

    All methods return Message objects ready to be serialized and sent.
    """

    @staticmethod
    def create_register_message(participant_id: str) -> Message:
        """
        Create a registration message from participant to coordinator.

        Args:
            participant_id: Unique participant identifier

        Returns:
            Message: Registration message ready to send
        """
        log = logger.bind(context="MessageFactory.create_register_message")
        log.info(f"Creating REGISTER message for participant={participant_id}")

        return Message(
            type=MessageType.REGISTER.value,
            participant_id=participant_id,
            payload={},
            timestamp=time.time()
        )

    @staticmethod
    def create_register_ack(
        participant_id: str,
        success: bool,
        message: Optional[str] = "",
        quorum: Optional[int] = None,
        noise_scale: Optional[float] = None,
        layer_shapes: Optional[List[List[int]]] = None,
    ) -> Message:
        """
        Create a registration acknowledgment from coordinator to participant.

        A successful acknowledgment also tells the participant the quorum,
        the advisory noise scale and the expected layer shapes.

        Args:
            participant_id: Unique participant identifier
            success: Whether registration was successful
            message: Optional message providing additional info
            quorum: Contributions required per round
            noise_scale: Advisory sigma for the participant's NoiseInjector
            layer_shapes: Expected per-layer shape signatures

        Returns:
            Message: Registration acknowledgment message ready to send
        """
        log = logger.bind(context="MessageFactory.create_register_ack")
        log.info(f"Creating REGISTER_ACK message for participant={participant_id}, success={success}")

        return Message(
            type=MessageType.REGISTER_ACK.value,
            participant_id=participant_id,
            payload={
                "success": success,
                "message": message,
                "quorum": quorum,
                "noise_scale": noise_scale,
                "layer_shapes": layer_shapes,
            },
            timestamp=time.time()
        )

    @staticmethod
    def create_submit_weights(
        participant_id: str,
        weights: Any,
        round_num: Optional[int] = None
    ) -> Message:
        """
        Create a contribution message from participant to coordinator.

        Args:
            participant_id: Unique participant identifier
            weights: Encoded ParameterSet (see ParameterSetSerializer)
            round_num: Round of the global model the participant trained from

        Returns:
            Message: Submission message ready to send
        """
        log = logger.bind(context="MessageFactory.create_submit_weights")
        log.info(f"Creating SUBMIT_WEIGHTS message for participant={participant_id}, base_round={round_num}")

        return Message(
            type=MessageType.SUBMIT_WEIGHTS.value,
            participant_id=participant_id,
            payload={"weights": weights},
            timestamp=time.time(),
            round_num=round_num
        )

    @staticmethod
    def create_submit_ack(
        participant_id: str,
        pool_size: int,
        quorum: int,
        round_num: Optional[int] = None
    ) -> Message:
        """
        Create an acceptance acknowledgment for a contribution.

        Args:
            participant_id: Unique participant identifier
            pool_size: Pool size right after the contribution was appended
            quorum: Configured quorum
            round_num: Round this contribution triggered, if any

        Returns:
            Message: Submission acknowledgment ready to send
        """
        log = logger.bind(context="MessageFactory.create_submit_ack")
        log.debug(f"Creating SUBMIT_ACK message for participant={participant_id} ({pool_size}/{quorum})")

        return Message(
            type=MessageType.SUBMIT_ACK.value,
            participant_id=participant_id,
            payload={
                "accepted": True,
                "pool_size": pool_size,
                "quorum": quorum,
            },
            timestamp=time.time(),
            round_num=round_num
        )

    @staticmethod
    def create_update_global_model(
        participant_id: str,
        weights: Any,
        round_num: int
    ) -> Message:
        """
        Create a global model distribution message.

        Args:
            participant_id: Recipient identifier ("broadcast" for fan-out)
            weights: Encoded global ParameterSet
            round_num: Round that produced the model

        Returns:
            Message: Global model message ready to send
        """
        log = logger.bind(context="MessageFactory.create_update_global_model")
        log.info(f"Creating UPDATE_GLOBAL_MODEL message for participant={participant_id}, round={round_num}")

        return Message(
            type=MessageType.UPDATE_GLOBAL_MODEL.value,
            participant_id=participant_id,
            payload={"weights": weights},
            timestamp=time.time(),
            round_num=round_num
        )

    @staticmethod
    def create_error(
        participant_id: str,
        error_code: int,
        message: str
    ) -> Message:
        """
        Create an error notification message.

        Args:
            participant_id: Participant the error concerns
            error_code: Numeric error code (see ErrorCode)
            message: Descriptive error message
        """
        log = logger.bind(context="MessageFactory.create_error")
        log.info(f"Creating ERROR message for participant={participant_id}, error_code={error_code}")

        return Message(
            type=MessageType.ERROR.value,
            participant_id=participant_id,
            payload={
                "error_code": int(error_code),
                "message": message
            },
            timestamp=time.time()
        )

    @staticmethod
    def create_heartbeat(participant_id: str) -> Message:
        """Create a keep-alive message."""
        return Message(
            type=MessageType.HEARTBEAT.value,
            participant_id=participant_id,
            payload={},
            timestamp=time.time()
        )

    @staticmethod
    def create_disconnect(participant_id: str, reason: str = "") -> Message:
        """Create a graceful disconnection notice."""
        log = logger.bind(context="MessageFactory.create_disconnect")
        log.info(f"Creating DISCONNECT message for participant={participant_id}: {reason}")

        return Message(
            type=MessageType.DISCONNECT.value,
            participant_id=participant_id,
            payload={"reason": reason},
            timestamp=time.time()
        )
