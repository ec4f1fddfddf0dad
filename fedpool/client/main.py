"""
Participant entry point.

Starts a participant node with the dummy trainer and makes a fixed number
of contributions.

Usage:
    fedpool-participant --config config/participant.yaml
    fedpool-participant --participant-id participant_001 --rounds 10
    fedpool-participant --config config/participant.yaml --participant-id participant_002
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from loguru import logger

from fedpool.common.logging_setup import setup_logging
from fedpool.common.serialization import ParameterSetSerializer

from .communication.client_socket import RegistrationError
from .config import ParticipantConfig, create_default_config
from .node import ParticipantNode
from .trainer.trainer_dummy import DummyTrainer


def build_node(config: ParticipantConfig) -> ParticipantNode:
    """
    Wire a participant node from configuration.

    Args:
        config: Participant configuration

    Returns:
        ParticipantNode ready to connect
    """
    trainer = DummyTrainer(config.participant_id, config.training_config())
    serializer = ParameterSetSerializer(encoding=config.encoding, compression=config.compression)
    return ParticipantNode(
        participant_id=config.participant_id,
        trainer=trainer,
        server_host=config.server_host,
        server_port=config.server_port,
        noise_scale=config.noise_scale,
        noise_seed=config.noise_seed,
        serializer=serializer,
        auto_reconnect=config.auto_reconnect,
    )


async def run_participant(config: ParticipantConfig, rounds: int) -> int:
    """
    Connect, contribute ``rounds`` times and disconnect.

    Returns:
        Process exit code
    """
    log = logger.bind(context="run_participant")
    node = build_node(config)

    try:
        if not await node.connect():
            log.error("Could not join the federation")
            return 1
        await node.run(rounds)
        return 0
    except RegistrationError as e:
        log.error(str(e))
        return 1
    finally:
        await node.stop()


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Start a federated participant with the dummy trainer")
    parser.add_argument("--config", type=str, help="Path to YAML configuration file")
    parser.add_argument("--participant-id", type=str, help="Participant identifier (overrides config)")
    parser.add_argument("--host", type=str, help="Override coordinator host")
    parser.add_argument("--port", type=int, help="Override coordinator port")
    parser.add_argument("--rounds", type=int, default=1, help="Number of contributions to make (default: 1)")
    parser.add_argument("--log-level", type=str, help="Override log level")
    args = parser.parse_args(argv)

    if args.config:
        config = ParticipantConfig.from_yaml(args.config)
        if args.participant_id:
            config.update(participant_id=args.participant_id)
    elif args.participant_id:
        config = create_default_config(args.participant_id)
    else:
        parser.error("either --config or --participant-id is required")

    overrides = {
        key: value
        for key, value in (("server_host", args.host), ("server_port", args.port))
        if value is not None
    }
    if overrides:
        config.update(**overrides)
    if args.log_level:
        config.logging["level"] = args.log_level

    setup_logging(
        level=config.logging.get("level", "INFO"),
        file=config.logging.get("file"),
        format=config.logging.get("format", "text"),
    )

    logger.info("Participant Configuration:")
    logger.info(f"  Participant ID: {config.participant_id}")
    logger.info(f"  Coordinator: {config.server_host}:{config.server_port}")
    logger.info(f"  Noise scale: {config.noise_scale if config.noise_scale is not None else 'coordinator advised'}")
    logger.info(f"  Rounds: {args.rounds}")

    sys.exit(asyncio.run(run_participant(config, args.rounds)))


if __name__ == "__main__":
    main()
