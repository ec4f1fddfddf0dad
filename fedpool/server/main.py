"""
Coordinator entry point.

Usage:
    fedpool-coordinator --config config/coordinator.yaml
    fedpool-coordinator --config config/coordinator.yaml --port 9000 --quorum 4
"""

import argparse
import asyncio
import signal
from typing import List, Optional

from loguru import logger

from fedpool.common.logging_setup import setup_logging
from fedpool.common.serialization import ParameterSetSerializer
from fedpool.server.communication.server_socket import CoordinatorServer
from fedpool.server.config import CoordinatorConfig
from fedpool.server.coordinator import AggregationCoordinator


def build_server(config: CoordinatorConfig) -> CoordinatorServer:
    """
    Wire the coordinator and its WebSocket transport from configuration.

    Args:
        config: Coordinator configuration

    Returns:
        CoordinatorServer ready to start
    """
    coordinator = AggregationCoordinator(
        expected_signatures=config.signatures,
        quorum=config.quorum,
        initial_parameters=config.load_initial_parameters(),
        noise_scale=config.noise_scale,
        history_size=config.history_size,
    )
    serializer = ParameterSetSerializer(encoding=config.encoding, compression=config.compression)
    return CoordinatorServer(coordinator, host=config.host, port=config.port, serializer=serializer)


async def run_coordinator(config: CoordinatorConfig):
    """
    Run the coordinator until SIGINT/SIGTERM.

    Args:
        config: Coordinator configuration
    """
    log = logger.bind(context="run_coordinator")

    server = build_server(config)
    await server.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        log.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await stop_event.wait()
    finally:
        log.info("Stopping server and disconnecting participants...")
        try:
            await asyncio.wait_for(server.stop(), timeout=10.0)
        except asyncio.TimeoutError:
            log.error("Server stop timed out after 10 seconds")

        stats = server.coordinator.get_statistics()
        log.info(
            f"Coordinator shutdown complete: {stats['rounds_completed']} rounds, "
            f"{stats['contributions_accepted']} contributions accepted"
        )


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Start the federated aggregation coordinator")
    parser.add_argument("--config", type=str, help="Path to YAML configuration file")
    parser.add_argument("--host", type=str, help="Override bind address")
    parser.add_argument("--port", type=int, help="Override port")
    parser.add_argument("--quorum", type=int, help="Override quorum (contributions per round)")
    parser.add_argument("--log-level", type=str, help="Override log level")
    args = parser.parse_args(argv)

    config = CoordinatorConfig.from_yaml(args.config) if args.config else CoordinatorConfig()

    overrides = {
        key: value
        for key, value in (("host", args.host), ("port", args.port), ("quorum", args.quorum))
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

    logger.info("Coordinator Configuration:")
    logger.info(f"  Address: {config.host}:{config.port}")
    logger.info(f"  Quorum: {config.quorum}")
    logger.info(f"  Noise scale (advisory): {config.noise_scale}")
    logger.info(f"  Layers: {config.layer_shapes}")

    asyncio.run(run_coordinator(config))


if __name__ == "__main__":
    main()
