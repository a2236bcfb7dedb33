from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Sequence

from .channels import TelegramChannel, VKRepostChannel
from .config import RuntimeSecrets
from .config_schema import AppConfig, WorkerConfig
from .errors import ConfigError
from .outbox import Channel, OutboxWorker, WorkerOptions
from .poller import Poller, PollerOptions, Route, WallFeed
from .retry import RetryEvent
from .run_log import RunLogger
from .scheduler import PeriodicTask
from .storage import SQLiteStore
from .telegram_client import TelegramClient
from .vk_client import VKClient

_JOIN_TIMEOUT_SECONDS = 15.0


@dataclass(frozen=True)
class ChannelSpec:
    channel: Channel
    route: Route
    worker: WorkerConfig


def worker_options(cfg: WorkerConfig) -> WorkerOptions:
    return WorkerOptions(
        rate_seconds=cfg.rate_seconds,
        max_retries=cfg.max_retries,
        lease_ttl_seconds=cfg.lease_ttl_seconds,
        batch=cfg.batch,
        tick_timeout_seconds=cfg.tick_timeout_seconds,
    )


def poller_options(config: AppConfig) -> PollerOptions:
    return PollerOptions(
        wall_count=config.feed.wall_count,
        inter_group_delay_seconds=config.poll.inter_group_delay_seconds,
        pass_timeout_seconds=config.poll.pass_timeout_seconds,
        exists_timeout_seconds=config.poll.exists_timeout_seconds,
    )


def _retry_logger(logger: RunLogger):
    def _on_retry(ev: RetryEvent) -> None:
        logger.warning(
            "api_retry",
            operation=ev.operation,
            attempt=ev.failure_attempt,
            next_attempt=ev.next_attempt,
            max_attempts=ev.max_attempts,
            delay_seconds=round(ev.delay_seconds, 3),
            reason=ev.reason,
            error_type=ev.error_type,
            error=ev.error_message,
        )

    return _on_retry


def build_feed(
    config: AppConfig,
    secrets: RuntimeSecrets,
    logger: RunLogger,
    *,
    stop: threading.Event | None = None,
) -> VKClient:
    return VKClient(
        secrets.vk_token,
        api_version=config.vk.api_version,
        timeout_seconds=config.vk.timeout_seconds,
        on_retry=_retry_logger(logger),
        stop=stop,
    )


def build_channels(
    config: AppConfig,
    secrets: RuntimeSecrets,
    logger: RunLogger,
    *,
    stop: threading.Event | None = None,
) -> list[ChannelSpec]:
    """Channel adapters for every enabled outbound destination."""
    specs: list[ChannelSpec] = []

    tg = config.telegram
    if tg.enabled:
        if not secrets.telegram_token or not tg.chat_id:
            raise ConfigError("telegram is enabled but its token or chat_id is missing")
        client = TelegramClient(
            secrets.telegram_token,
            tg.chat_id,
            timeout_seconds=tg.timeout_seconds,
            on_retry=_retry_logger(logger),
            stop=stop,
        )
        channel = TelegramChannel(client)
        specs.append(ChannelSpec(channel, Route(channel.name, tg.delivery.rule()), tg.worker))
        logger.info("channel_enabled", channel=channel.name, chat_id=tg.chat_id)

    vk = config.vk_repost
    if vk.enabled:
        if not secrets.vk_repost_token or not vk.owner_id:
            raise ConfigError("vk_repost is enabled but its token or owner_id is missing")
        client = VKClient(
            secrets.vk_repost_token,
            api_version=config.vk.api_version,
            timeout_seconds=vk.timeout_seconds,
            on_retry=_retry_logger(logger),
            stop=stop,
        )
        channel = VKRepostChannel(client, vk.owner_id, from_group=vk.from_group)
        specs.append(ChannelSpec(channel, Route(channel.name, vk.delivery.rule()), vk.worker))
        logger.info(
            "channel_enabled",
            channel=channel.name,
            owner_id=vk.owner_id,
            from_group=vk.from_group,
        )

    return specs


def run_service(
    config: AppConfig,
    secrets: RuntimeSecrets,
    store: SQLiteStore,
    logger: RunLogger,
    stop: threading.Event,
    *,
    feed: WallFeed | None = None,
    channels: Sequence[ChannelSpec] | None = None,
) -> list[PeriodicTask]:
    """
    Run the poller and one outbox worker per channel until `stop` is set.

    Returns the finished tasks so callers (and tests) can inspect tick counts.
    """
    feed = feed if feed is not None else build_feed(config, secrets, logger, stop=stop)
    specs = list(channels) if channels is not None else build_channels(config, secrets, logger, stop=stop)

    poller = Poller(
        store,
        feed,
        [s.route for s in specs],
        options=poller_options(config),
        logger=logger,
        stop=stop,
    )
    cursors = poller.resolve_groups(config.feed.groups)
    if not cursors:
        logger.warning("no_groups_resolved", requested=len(config.feed.groups))

    tasks = [
        PeriodicTask(
            "poller",
            lambda: poller.scan_all(cursors),
            config.poll.interval_seconds,
            stop,
            logger=logger,
        )
    ]
    for spec in specs:
        worker = OutboxWorker(
            store,
            spec.channel,
            options=worker_options(spec.worker),
            logger=logger,
            stop=stop,
        )
        tasks.append(
            PeriodicTask(
                f"outbox-{spec.channel.name}",
                worker.tick,
                spec.worker.interval_seconds,
                stop,
                logger=logger,
            )
        )

    for task in tasks:
        task.start()

    stop.wait()
    logger.info("shutdown_requested")

    for task in tasks:
        if not task.join(_JOIN_TIMEOUT_SECONDS):
            logger.warning("task_join_timeout", task=task.name)

    for spec in specs:
        close = getattr(spec.channel, "close", None)
        if callable(close):
            close()
    close_feed = getattr(feed, "close", None)
    if callable(close_feed):
        close_feed()

    logger.info("shutdown_complete", tasks=[{"name": t.name, "ticks": t.ticks, "errors": t.errors} for t in tasks])
    return tasks
