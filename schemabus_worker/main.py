"""schemabus worker: minimal process entry point.

Three roles:
  subscribe : consume the configured queue and log every valid payload
  publish   : validate and publish one JSON payload from a file
  register  : register a schema version (or dry-run its compatibility)

Role comes from the first argument or the ROLE environment variable.
Broker and registry settings come from the environment (see BusConfig).
A broker that cannot be reached at startup is fatal: exit code 1, restart
is the supervisor's job.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
from pathlib import Path
from typing import Any

from schemabus import (
    ApicurioRegistryClient,
    BusConfig,
    CompatibilityLevel,
    Delivery,
    Publisher,
    SchemaBusError,
    Subscriber,
    connect,
    get_logger,
    load_config,
)

log = get_logger("schemabus.worker")


async def run_subscriber(config: BusConfig) -> None:
    """Consume until SIGINT/SIGTERM, then drain in-flight deliveries and exit."""
    async with ApicurioRegistryClient.from_config(config) as registry:
        transport = await connect(config.rabbitmq_url)
        try:
            await transport.declare_topology(config.topology())
            subscriber = Subscriber(
                transport,
                registry,
                queue=config.queue,
                prefetch=config.prefetch,
                validate=config.validate_payloads,
                handler_attempts=config.handler_attempts,
            )

            async def on_message(payload: Any, delivery: Delivery) -> None:
                log.info(
                    "message.received",
                    payload=payload,
                    headers=delivery.headers,
                    exchange=delivery.exchange,
                    routing_key=delivery.routing_key,
                    redelivered=delivery.redelivered,
                )

            loop = asyncio.get_running_loop()
            stop = loop.create_future()

            def _shutdown() -> None:
                if not stop.done():
                    stop.set_result(True)

            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, _shutdown)

            await subscriber.start(on_message)
            log.info("worker.ready", role="subscribe", queue=config.queue)
            await stop
            await subscriber.stop()
        finally:
            await transport.close()
    log.info("worker.shutdown_complete")


async def run_publish(config: BusConfig, payload_file: Path, artifact_id: str) -> None:
    payload = json.loads(payload_file.read_text(encoding="utf-8"))
    async with ApicurioRegistryClient.from_config(config) as registry:
        transport = await connect(config.rabbitmq_url)
        try:
            await transport.declare_topology(config.topology())
            publisher = Publisher(transport, registry, validate=config.validate_payloads)
            result = await publisher.publish(artifact_id, payload, exchange=config.exchange)
        finally:
            await transport.close()
    if not result.delivered:
        raise SchemaBusError(user_message="Broker applied back-pressure; message not sent.")
    log.info("worker.published", artifact_id=artifact_id, global_id=result.global_id)


async def run_register(
    config: BusConfig,
    schema_file: Path,
    artifact_id: str,
    compatibility: CompatibilityLevel,
    dry_run: bool,
) -> None:
    content = schema_file.read_text(encoding="utf-8")
    async with ApicurioRegistryClient.from_config(config) as registry:
        if dry_run:
            await registry.test_compatibility(artifact_id, content)
            log.info("worker.compat_passed", artifact_id=artifact_id)
            return
        global_id = await registry.register_or_update(artifact_id, content)
        await registry.set_compatibility_rule(artifact_id, compatibility)
    log.info(
        "worker.registered",
        artifact_id=artifact_id,
        global_id=global_id,
        compatibility=compatibility.value,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="schemabus-worker", description=__doc__.splitlines()[0])
    roles = parser.add_subparsers(dest="role")

    roles.add_parser("subscribe", help="consume the configured queue")

    publish = roles.add_parser("publish", help="publish one JSON payload")
    publish.add_argument("--file", required=True, type=Path)
    publish.add_argument("--artifact-id", default=None)

    register = roles.add_parser("register", help="register a schema version")
    register.add_argument("--file", required=True, type=Path)
    register.add_argument("--artifact-id", required=True)
    register.add_argument(
        "--compatibility",
        default=CompatibilityLevel.FORWARD.value,
        type=CompatibilityLevel.parse,
        help="BACKWARD | FORWARD | FULL (default FORWARD)",
    )
    register.add_argument("--dry-run", action="store_true")
    return parser


async def dispatch(args: argparse.Namespace, config: BusConfig) -> None:
    if args.role == "subscribe":
        await run_subscriber(config)
    elif args.role == "publish":
        await run_publish(config, args.file, args.artifact_id or config.artifact_id)
    elif args.role == "register":
        await run_register(config, args.file, args.artifact_id, args.compatibility, args.dry_run)


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv and os.getenv("ROLE"):
        argv = [os.environ["ROLE"]]
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.role is None:
        parser.print_help()
        return 2

    try:
        config = load_config()
        asyncio.run(dispatch(args, config))
    except SchemaBusError as exc:
        log.error("worker.failed", role=args.role, code=exc.code, error=exc.detail)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
