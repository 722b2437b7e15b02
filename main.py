"""Entry point: wires all components and starts the gRPC server."""

from __future__ import annotations

import logging
import signal
import sys
from concurrent import futures

import grpc

import config
from taste_engine.engine import TasteEngine
from taste_engine.features import FeatureProviderClient, GrpcFeatureProvider
from taste_engine.service import TasteServicer, add_taste_service_to_server
from taste_engine.store import EventStore, GrpcEventStore, InMemoryEventStore

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_server(engine: TasteEngine) -> grpc.Server:
    """Construct and configure the gRPC server around *engine*.

    Args:
        engine: The fully wired :class:`~taste_engine.engine.TasteEngine`.

    Returns:
        A configured but not-yet-started :class:`grpc.Server`.
    """
    servicer = TasteServicer(
        engine=engine,
        predict_warn_threshold_ms=config.PREDICT_WARN_THRESHOLD_MS,
    )
    server = grpc.server(
        futures.ThreadPoolExecutor(max_workers=config.GRPC_MAX_WORKERS)
    )
    add_taste_service_to_server(servicer, server)
    server.add_insecure_port(
        f"{config.GRPC_SERVER_HOST}:{config.GRPC_SERVER_PORT}"
    )
    return server


def build_store() -> EventStore:
    """Remote store when an address is configured, otherwise in-memory."""
    if not config.EVENT_STORE_ADDRESS:
        logger.warning("EVENT_STORE_ADDRESS not set; ratings are kept in memory only.")
        return InMemoryEventStore()
    logger.info("Connecting to event store at %s", config.EVENT_STORE_ADDRESS)
    channel = grpc.insecure_channel(config.EVENT_STORE_ADDRESS)
    return GrpcEventStore(channel, timeout=config.EVENT_STORE_TIMEOUT_SECONDS)


def build_feature_client() -> FeatureProviderClient:
    logger.info("Connecting to feature provider at %s", config.FEATURE_PROVIDER_ADDRESS)
    channel = grpc.insecure_channel(config.FEATURE_PROVIDER_ADDRESS)
    return FeatureProviderClient(
        GrpcFeatureProvider(channel, timeout=config.FEATURE_PROVIDER_TIMEOUT_SECONDS),
        maxsize=config.FEATURE_CACHE_MAXSIZE,
        track_ttl=config.TRACK_FEATURES_TTL_SECONDS,
        album_ttl=config.ALBUM_TTL_SECONDS,
        search_ttl=config.SEARCH_TTL_SECONDS,
        artist_ttl=config.ARTIST_TTL_SECONDS,
    )


def main() -> None:
    """Initialise all components and start the gRPC server.

    Startup sequence:
    1. Connect to the event store (or fall back to memory).
    2. Connect to the audio-feature provider behind its cache.
    3. Build the engine and the gRPC server.
    4. Register ``SIGTERM``/``SIGINT`` shutdown handlers.
    5. Start serving.
    """
    engine = TasteEngine(
        store=build_store(),
        features=build_feature_client(),
        recompute_every=config.RECOMPUTE_EVERY_N_RATINGS,
        history_limit=config.HISTORY_WINDOW,
    )
    server = build_server(engine)

    def handle_shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, shutting down.", sig_name)
        server.stop(grace=5)
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    server.start()
    logger.info(
        "Taste gRPC server listening on %s:%d",
        config.GRPC_SERVER_HOST,
        config.GRPC_SERVER_PORT,
    )
    server.wait_for_termination()


if __name__ == "__main__":
    main()
