from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Sequence

from .app import run_service
from .config import config_sha256, load_config, mask_secret, resolve_runtime_secrets
from .dry_run import run_dry_run
from .errors import ConfigError, StorageError, TelegramError, VKError
from .extract import classify
from .normalize import dump_item_from_api
from .run_log import RunLogger
from .storage import SQLiteStore
from .storage_schema import OUTBOX_TABLES
from .vk_client import VKClient


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lostdogs")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser(
        "run",
        help="Poll the configured walls and deliver matching posts until interrupted.",
    )
    run.add_argument("--config", required=True, help="Path to YAML config file.")
    run.set_defaults(_handler=_cmd_run)

    cls = subparsers.add_parser(
        "classify",
        help="Classify a single post text (argument or stdin) and print it as JSON.",
    )
    cls.add_argument("--text", default=None, help="Post text; read from stdin when omitted.")
    cls.add_argument("--owner-id", type=int, default=0, help="Wall owner id for the link.")
    cls.add_argument("--post-id", type=int, default=0, help="Post id for the link.")
    cls.set_defaults(_handler=_cmd_classify)

    dry = subparsers.add_parser(
        "dry-run",
        help="Fetch and classify one group's wall without storing anything.",
    )
    dry.add_argument("--config", required=True, help="Path to YAML config file.")
    dry.add_argument("--group", default=None, help="Group screen name (default: first configured).")
    dry.add_argument(
        "--offline",
        action="store_true",
        help="Run without network calls using a small stub wall.",
    )
    dry.set_defaults(_handler=_cmd_dry_run)

    dump = subparsers.add_parser(
        "dump-wall",
        help="Write a group's recent wall posts to a JSON fixture file.",
    )
    dump.add_argument("--config", required=True, help="Path to YAML config file.")
    dump.add_argument("--group", required=True, help="Group screen name.")
    dump.add_argument("--count", type=int, default=100, help="Number of posts to fetch (max 100).")
    dump.add_argument("--out", required=True, help="Output JSON file path.")
    dump.set_defaults(_handler=_cmd_dump_wall)

    status = subparsers.add_parser(
        "outbox-status",
        help="Print stored post count and per-channel outbox status counts.",
    )
    status.add_argument("--config", required=True, help="Path to YAML config file.")
    status.set_defaults(_handler=_cmd_outbox_status)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False, sort_keys=True))


def _install_stop_handlers(stop: threading.Event) -> dict[int, Any]:
    previous: dict[int, Any] = {}

    def _handler(signum: int, frame: object) -> None:
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def _cmd_run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)

    with RunLogger.open(cfg.logging.path, min_level=cfg.logging.level) as log:
        try:
            secrets = resolve_runtime_secrets(cfg)
            log.info(
                "service_starting",
                config_path=str(args.config),
                config_sha256=config_sha256(cfg),
                groups=cfg.feed.groups,
                vk_token=mask_secret(secrets.vk_token),
                telegram_enabled=cfg.telegram.enabled,
                vk_repost_enabled=cfg.vk_repost.enabled,
            )

            stop = threading.Event()
            previous = _install_stop_handlers(stop)
            try:
                with SQLiteStore.open(
                    cfg.storage.path,
                    operation_timeout=cfg.storage.operation_timeout_seconds,
                    exists_timeout=cfg.poll.exists_timeout_seconds,
                ) as store:
                    log.info("storage_opened", path=cfg.storage.path, posts=store.post_count())
                    run_service(cfg, secrets, store, log, stop)
            finally:
                for sig, handler in previous.items():
                    signal.signal(sig, handler)
        except Exception as e:
            log.exception("run_command_failed", exc=e)
            raise

    return 0


def _cmd_classify(args: argparse.Namespace) -> int:
    text = args.text if args.text is not None else sys.stdin.read()
    post = classify(int(args.post_id), text, owner_id=int(args.owner_id))
    _print_json(post.to_dict())
    return 0


def _cmd_dry_run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)

    if bool(getattr(args, "offline", False)):
        from .offline import OFFLINE_GROUP_NAME, OfflineWallFeed

        result = run_dry_run(cfg, OfflineWallFeed(), group=args.group or OFFLINE_GROUP_NAME)
    else:
        secrets = resolve_runtime_secrets(cfg)
        with VKClient(
            secrets.vk_token,
            api_version=cfg.vk.api_version,
            timeout_seconds=cfg.vk.timeout_seconds,
        ) as client:
            result = run_dry_run(cfg, client, group=args.group)

    print(f"group={result.group}")
    print(f"owner_id={result.owner_id}")
    print(f"fetched_count={result.fetched_count}")
    print(f"type_counts={json.dumps(result.type_counts, sort_keys=True)}")
    print(f"animal_counts={json.dumps(result.animal_counts, sort_keys=True)}")
    print(f"deliverable={json.dumps(result.deliverable, sort_keys=True)}")
    print("example_post=")
    _print_json(result.example)

    return 0


def _cmd_dump_wall(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    secrets = resolve_runtime_secrets(cfg)

    count = int(args.count)
    if not (1 <= count <= 100):
        raise ConfigError("--count must be between 1 and 100")

    out_path = Path(args.out)
    with VKClient(
        secrets.vk_token,
        api_version=cfg.vk.api_version,
        timeout_seconds=cfg.vk.timeout_seconds,
    ) as client:
        group_id = client.resolve_group(args.group)
        raw_items = client.fetch_wall_raw(-abs(group_id), count)

    items = [dump_item_from_api(it) for it in raw_items]
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(
        json.dumps(items, indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )

    print(f"group={args.group}")
    print(f"items={len(items)}")
    print(f"out={out_path}")
    return 0


def _cmd_outbox_status(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)

    with SQLiteStore.open(
        cfg.storage.path, operation_timeout=cfg.storage.operation_timeout_seconds
    ) as store:
        print(f"posts={store.post_count()}")
        for channel in OUTBOX_TABLES:
            counts = store.outbox_counts(channel)
            for status, n in counts.items():
                print(f"{channel}.{status}={n}")

    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (VKError, TelegramError, StorageError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
