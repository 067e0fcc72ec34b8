"""Command line entry point.

Usage:
  python -m nft_whale_tracker run [--from-block N] [--genesis] [--rules rules.json]
  python -m nft_whale_tracker replay --from-block A [--to-block B] [--top 20]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from redis.asyncio import Redis

from nft_whale_tracker.alerter.channels import TelegramChannel, WebhookChannel
from nft_whale_tracker.alerter.dispatcher import AlertChannel, NotificationDispatcher
from nft_whale_tracker.alerter.engine import AlertRuleEngine, AlertRuleError
from nft_whale_tracker.alerter.store import AlertStore
from nft_whale_tracker.analytics.metrics import holder_stats, top_holders
from nft_whale_tracker.config import Settings, get_settings
from nft_whale_tracker.ingestor.chain import ChainClient
from nft_whale_tracker.ingestor.source import Web3TransferEventSource
from nft_whale_tracker.monitor import MonitorConfig, MonitorLoop, MonitorStartupError
from nft_whale_tracker.storage.broadcast import RedisBroadcaster
from nft_whale_tracker.storage.cache import MetricsCache, MetricsCacheConfig

logger = logging.getLogger("nft_whale_tracker")


def build_alert_channels(settings: Settings) -> list[AlertChannel]:
    """Build list of enabled alert channels."""
    channels: list[AlertChannel] = []

    if settings.telegram.enabled and settings.telegram.bot_token and settings.telegram.chat_id:
        channels.append(
            TelegramChannel(
                settings.telegram.bot_token.get_secret_value(),
                settings.telegram.chat_id,
            )
        )
        logger.info("Telegram channel enabled")

    if settings.webhook.enabled and settings.webhook.url:
        channels.append(WebhookChannel(settings.webhook.url.get_secret_value()))
        logger.info("Webhook channel enabled")

    if not channels:
        logger.warning("No alert channels configured")

    return channels


def load_rules(engine: AlertRuleEngine, path: Path) -> int:
    """Create rules from a JSON list of rule definitions.

    Each entry needs name, metric, condition and threshold; channels is
    optional.
    """
    definitions: Any = json.loads(path.read_text())
    if not isinstance(definitions, list):
        raise AlertRuleError("rules file must hold a JSON list of rule objects")
    for position, definition in enumerate(definitions):
        if not isinstance(definition, dict):
            raise AlertRuleError(f"rule #{position} is not an object")
        engine.create_rule(
            name=definition["name"],
            metric=definition["metric"],
            condition=definition["condition"],
            threshold=definition["threshold"],
            channels=definition.get("channels", ()),
        )
    return len(definitions)


def _build_source(settings: Settings, redis: Redis | None) -> tuple[ChainClient, Web3TransferEventSource]:
    chain = settings.chain
    client = ChainClient(
        chain.rpc_url,
        fallback_rpc_url=chain.fallback_rpc_url,
        redis=redis,
        max_requests_per_second=chain.max_requests_per_second,
    )
    source = Web3TransferEventSource(
        client,
        contract_address=chain.contract_address,
        logs_chunk_size_blocks=chain.logs_chunk_size_blocks,
        max_concurrent_requests=chain.max_concurrent_requests,
    )
    return client, source


async def _run_monitor(settings: Settings, args: argparse.Namespace) -> int:
    engine_store = AlertStore()
    if args.rules:
        try:
            logger.info("Loaded %d alert rules", load_rules(AlertRuleEngine(engine_store), args.rules))
        except (OSError, ValueError, KeyError, AlertRuleError) as e:
            logger.error("Invalid rules file %s: %s", args.rules, e)
            return 2

    redis = Redis.from_url(settings.redis.url)
    client, source = _build_source(settings, redis)
    dispatcher = NotificationDispatcher(
        build_alert_channels(settings),
        broadcaster=RedisBroadcaster(redis, channel=settings.broadcast.channel),
        dry_run=settings.dry_run,
    )
    engine = AlertRuleEngine(engine_store, notifier=dispatcher)

    monitor = MonitorLoop(
        source,
        engine,
        dispatcher=dispatcher,
        cache=MetricsCache(
            redis,
            config=MetricsCacheConfig(
                key_prefix=settings.cache.key_prefix,
                ttl_seconds=settings.cache.ttl_seconds,
            ),
        ),
        config=MonitorConfig.from_settings(settings),
    )

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    from_genesis = args.genesis or settings.monitor.start_mode == "genesis"
    try:
        await monitor.start(args.from_block, from_genesis=from_genesis)
        await stop_requested.wait()
    except MonitorStartupError as e:
        logger.error("%s", e)
        return 1
    finally:
        await monitor.stop()
        await dispatcher.close()
        await client.aclose()
        await redis.aclose()

    logger.info(
        "Final stats: ticks=%d events=%d alerts=%d failed_ticks=%d",
        monitor.stats.ticks,
        monitor.stats.events_processed,
        monitor.stats.alerts_fired,
        monitor.stats.failed_ticks,
    )
    return 0


async def _run_replay(settings: Settings, args: argparse.Namespace) -> int:
    client, source = _build_source(settings, None)
    monitor = MonitorLoop(source, AlertRuleEngine(), config=MonitorConfig.from_settings(settings))
    try:
        result = await monitor.rebuild_from_history(args.from_block, args.to_block)
    finally:
        await client.aclose()

    output = {
        "applied": result.applied,
        "skipped": result.skipped,
        "corrections": result.corrections,
        "holder_stats": holder_stats(result.holders).to_dict(),
        "top_holders": [h.to_dict() for h in top_holders(result.holders, limit=args.top)],
    }
    json.dump(output, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nft_whale_tracker",
        description="NFT collection holder tracking and alerting",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Follow the chain and evaluate alert rules")
    run.add_argument("--from-block", type=int, default=None, help="Resume after this block")
    run.add_argument("--genesis", action="store_true", help="Replay from the collection genesis block")
    run.add_argument("--rules", type=Path, default=None, help="JSON file of alert rules")

    replay_cmd = sub.add_parser("replay", help="Rebuild holders for a historical block range")
    replay_cmd.add_argument("--from-block", type=int, required=True)
    replay_cmd.add_argument("--to-block", type=int, default=None, help="Defaults to the chain head")
    replay_cmd.add_argument("--top", type=int, default=20, help="Top holders to print")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings.validate_requirements(command=args.command)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        return 2
    logger.info("Configuration: %s", settings.redacted_summary())

    if args.command == "run":
        return asyncio.run(_run_monitor(settings, args))
    return asyncio.run(_run_replay(settings, args))


if __name__ == "__main__":
    sys.exit(main())
