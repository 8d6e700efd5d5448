"""
Command line producer and consumer.

Usage:
    # Produce stdin lines to a topic
    python -m kafka_client produce --topic test-topic < events.txt

    # Produce 1000 generated user records in batches of 10, reproducibly
    python -m kafka_client produce --topic test-topic --sample 1000 --seed 42

    # Consume new records as a member of a group
    python -m kafka_client consume --topic test-topic --group test-group

    # Same, starting from the first retained record when the group has no commit
    python -m kafka_client consume --topic test-topic --group test-group --from-beginning

    # Expose Prometheus metrics while running
    python -m kafka_client consume --topic test-topic --group test-group --metrics-port 8000
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from faker import Faker
from prometheus_client import start_http_server
from pydantic import BaseModel

from core.errors.exceptions import Cancelled, ClientError, ConfigurationError, DeliveryError
from core.logging.setup import get_logger, logging_options_from_env, setup_logging
from kafka_client.config import ClientConfig
from kafka_client.consumer import Consumer
from kafka_client.producer import Producer

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)

# Set by signal handlers; producers and consumers finish their current batch
_shutdown_event: Optional[asyncio.Event] = None

SAMPLE_BATCH_SIZE = 10

class SampleUser(BaseModel):
    """Generated record for --sample."""

    name: str
    email: str
    address: str
    city: str
    country: str


def get_shutdown_event() -> asyncio.Event:
    """Get or create the global shutdown event."""
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


def make_sample_user(fake: Faker) -> SampleUser:
    return SampleUser(
        name=fake.name(),
        email=fake.email(),
        address=fake.street_address(),
        city=fake.city(),
        country=fake.country(),
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="python -m kafka_client",
        description="Produce to or consume from a topic",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--bootstrap-servers",
        default=None,
        help="Comma-separated host:port list (default: from config or KAFKA_BOOTSTRAP_SERVERS)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML config file with a 'kafka:' section (default: ./config.yaml if present)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Serve Prometheus metrics on this port",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    produce = sub.add_parser("produce", help="Send stdin lines or generated records")
    produce.add_argument("--topic", required=True)
    produce.add_argument("--key", default=None, help="Key for every record")
    produce.add_argument(
        "--sample",
        type=int,
        default=None,
        metavar="N",
        help=f"Send N generated user records in batches of {SAMPLE_BATCH_SIZE}",
    )
    produce.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for --sample so runs generate the same users",
    )

    consume = sub.add_parser("consume", help="Print records as a group member")
    consume.add_argument("--topic", required=True)
    consume.add_argument("--group", required=True, help="Consumer group id")
    consume.add_argument(
        "--from-beginning",
        action="store_true",
        help="Start from the earliest offset when the group has no commit",
    )
    consume.add_argument(
        "--max-records",
        type=int,
        default=None,
        help="Exit after printing this many records",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ClientConfig:
    """File and environment config with command line overrides applied."""
    config = ClientConfig.load_config(args.config)
    if args.bootstrap_servers:
        config.bootstrap_servers = args.bootstrap_servers
    if args.command == "consume":
        # Like console consumers: only new records unless asked otherwise
        config.auto_offset_reset = "earliest" if args.from_beginning else "latest"
    config.validate()
    return config


# =============================================================================
# Commands
# =============================================================================


async def run_produce(config: ClientConfig, args: argparse.Namespace) -> int:
    shutdown_event = get_shutdown_event()
    failures = 0

    async with Producer(config) as producer:
        if args.sample is not None:
            if args.seed is not None:
                # Same seed, same users
                Faker.seed(args.seed)
            fake = Faker()
            for start in range(0, args.sample, SAMPLE_BATCH_SIZE):
                if shutdown_event.is_set():
                    break
                count = min(SAMPLE_BATCH_SIZE, args.sample - start)
                futures = [
                    await producer.send(
                        args.topic, make_sample_user(fake), key=args.key, cancel=shutdown_event
                    )
                    for _ in range(count)
                ]
                results = await asyncio.gather(*futures, return_exceptions=True)
                errors = [r for r in results if isinstance(r, BaseException)]
                failures += len(errors)
                logger.info(
                    f"Sent batch {start // SAMPLE_BATCH_SIZE + 1}",
                    extra={"record_count": count - len(errors), "topic": args.topic},
                )
        else:
            loop = asyncio.get_running_loop()
            futures = []
            while not shutdown_event.is_set():
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    break
                futures.append(
                    await producer.send(
                        args.topic, line.rstrip("\n"), key=args.key, cancel=shutdown_event
                    )
                )
            results = await asyncio.gather(*futures, return_exceptions=True)
            failures = sum(1 for r in results if isinstance(r, BaseException))

    message = "All records sent" if failures == 0 else f"{failures} record(s) failed"
    logger.info(message, extra={"topic": args.topic})
    return 0 if failures == 0 else 1


async def run_consume(config: ClientConfig, args: argparse.Namespace) -> int:
    shutdown_event = get_shutdown_event()
    printed = 0

    async with Consumer(config) as consumer:
        consumer.subscribe(args.topic, args.group)
        while not shutdown_event.is_set():
            result = await consumer.poll(timeout_ms=1000, cancel=shutdown_event)
            for record in result:
                value = record.value.decode("utf-8", errors="replace") if record.value else None
                print(
                    json.dumps(
                        {
                            "topic": record.topic,
                            "partition": record.partition,
                            "offset": record.offset,
                            "value": value,
                        }
                    ),
                    flush=True,
                )
                printed += 1
                if args.max_records is not None and printed >= args.max_records:
                    shutdown_event.set()
                    break
    return 0


# =============================================================================
# Entry point
# =============================================================================


def setup_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    """First SIGINT/SIGTERM closes gracefully; a second one cancels every task."""

    def handle_signal(sig):
        logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")
        shutdown_event = get_shutdown_event()
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    # Signal handlers are not supported on Windows
    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    global logger
    args = parse_args(argv)

    setup_logging(
        name="kafka_client",
        component=args.command,
        console_level=getattr(logging, args.log_level),
        **logging_options_from_env(),
    )
    logger = get_logger(__name__)

    try:
        config = build_config(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    if args.metrics_port:
        logger.info(f"Starting metrics server on port {args.metrics_port}")
        start_http_server(args.metrics_port)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    setup_signal_handlers(loop)

    runner = run_produce if args.command == "produce" else run_consume
    try:
        return loop.run_until_complete(runner(config, args))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
        return 130
    except Cancelled:
        logger.info("Cancelled by shutdown signal")
        return 130
    except DeliveryError as e:
        logger.error(f"Delivery failed: {e}")
        return 1
    except ClientError as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        loop.close()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    sys.exit(main())
