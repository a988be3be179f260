#!/usr/bin/env python3
import argparse
import logging
import os
import signal
import threading
from typing import Optional
from urllib.error import HTTPError, URLError

from .auth import AuthDecision, AuthState, authorize
from .backend import ModelSelector, OpenCodeClient
from .config import DEFAULT_MODEL, Config, load_config, load_env_file, parse_allowed_user_ids
from .delivery import MESSAGE_CHUNK_CHARS, chunk_text
from .handlers import BridgeState, handle_update
from .session_registry import SessionRegistry
from .sync_bridge import SyncBridge, SyncClient, run_event_listener
from .sync_server import SyncHTTPServer, build_sync_server, start_sync_server, stop_sync_server
from .transport import TelegramClient


def run_self_test() -> int:
    sample = "x" * (MESSAGE_CHUNK_CHARS * 2 + 1)
    chunks = chunk_text(sample)
    if len(chunks) != 3 or "".join(chunks) != sample:
        raise RuntimeError("Chunking self-test failed")

    selector = ModelSelector.parse(DEFAULT_MODEL)
    if selector.provider_id != "opencode" or str(selector) != DEFAULT_MODEL:
        raise RuntimeError("Model parsing self-test failed")

    if parse_allowed_user_ids("0, 12,34") != {12, 34}:
        raise RuntimeError("Allowed users self-test failed")

    auth_state = AuthState(allowed_user_ids=set(), started_at=100)
    if authorize(auth_state, 7, 99) != AuthDecision.STALE:
        raise RuntimeError("Auth self-test failed (stale)")
    if authorize(auth_state, 7, 100) != AuthDecision.BOOTSTRAP:
        raise RuntimeError("Auth self-test failed (bootstrap)")
    if authorize(auth_state, 8, 101) != AuthDecision.RESTART_PENDING:
        raise RuntimeError("Auth self-test failed (restart pending)")

    print("self-test: ok")
    return 0


def acknowledge_updates(client: TelegramClient, offset: int) -> None:
    try:
        client.get_updates(offset, timeout_seconds=0)
    except Exception:
        logging.warning("Failed to acknowledge handled updates before exit", exc_info=True)


def start_sync(
    config: Config,
    client: TelegramClient,
    backend: OpenCodeClient,
    stop_event: threading.Event,
) -> Optional[SyncHTTPServer]:
    if config.sync_chat_id is None:
        logging.info("Sync bridge disabled: TELEGRAM_SYNC_CHAT_ID is not set.")
        return None
    server = build_sync_server(config.sync_host, config.sync_port, client, backend, config.sync_chat_id)
    start_sync_server(server)
    bridge = SyncBridge(backend, SyncClient(config.sync_url), config.opencode_directory)
    listener = threading.Thread(
        target=run_event_listener,
        args=(backend, bridge, stop_event, config.retry_sleep_seconds),
        name="sync-events",
        daemon=True,
    )
    listener.start()
    logging.info("Sync bridge enabled for chat_id=%s", config.sync_chat_id)
    return server


def run_bridge(
    config: Config,
    stop_event: Optional[threading.Event] = None,
    enable_sync: bool = True,
    client: Optional[TelegramClient] = None,
    backend: Optional[OpenCodeClient] = None,
) -> int:
    stop_event = stop_event or threading.Event()
    client = client or TelegramClient(config)
    backend = backend or OpenCodeClient(config.opencode_base_url, config.opencode_timeout_seconds)
    state = BridgeState(
        auth=AuthState(allowed_user_ids=set(config.allowed_user_ids)),
        registry=SessionRegistry(backend, config.default_model),
        backend=backend,
    )

    if config.allowed_user_ids:
        logging.info("Bridge started. Allowed users=%s", sorted(config.allowed_user_ids))
    else:
        logging.warning(
            "No allowed users configured. The first user to message the bot becomes admin."
        )
    logging.info("OpenCode server=%s default model=%s", config.opencode_base_url, config.default_model)

    sync_server = start_sync(config, client, backend, stop_event) if enable_sync else None

    offset = 0
    try:
        while not stop_event.is_set():
            try:
                updates = client.get_updates(offset)
                for update in updates:
                    update_id = update.get("update_id")
                    if isinstance(update_id, int):
                        offset = max(offset, update_id + 1)
                    handle_update(state, config, client, update)
                    if state.is_restart_requested():
                        break
            except (HTTPError, URLError, TimeoutError):
                logging.exception("Network/API error while polling Telegram")
                stop_event.wait(config.retry_sleep_seconds)
            except Exception:
                logging.exception("Unexpected loop error")
                stop_event.wait(config.retry_sleep_seconds)

            if state.is_restart_requested():
                logging.warning("Allowed users updated; exiting so the supervisor restarts the bridge.")
                acknowledge_updates(client, offset)
                break
    except KeyboardInterrupt:
        logging.info("Interrupted while polling; shutting down.")
    finally:
        stop_event.set()
        stop_sync_server(sync_server)

    logging.info("Bridge stopped.")
    return 0


def install_signal_handlers(stop_event: threading.Event) -> None:
    def handle_signal(signum, _frame) -> None:
        if stop_event.is_set():
            return
        logging.info("Received signal %s; shutting down.", signum)
        stop_event.set()
        # Breaks out of a blocking long poll instead of waiting for its timeout.
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def main() -> int:
    parser = argparse.ArgumentParser(description="OpenTelegram bridge")
    parser.add_argument(
        "--env-file",
        default=".env",
        help="path of the .env file holding the bridge configuration",
    )
    parser.add_argument(
        "--self-test",
        action="store_true",
        help="run local self test and exit",
    )
    parser.add_argument(
        "--no-sync",
        action="store_true",
        help="do not start the sync HTTP server and event listener",
    )
    args = parser.parse_args()

    load_env_file(args.env_file)
    logging.basicConfig(
        level=os.getenv("TELEGRAM_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    if args.self_test:
        return run_self_test()

    try:
        config = load_config(args.env_file)
    except Exception as exc:
        logging.error("Configuration error: %s", exc)
        return 1

    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    return run_bridge(config, stop_event=stop_event, enable_sync=not args.no_sync)


if __name__ == "__main__":
    raise SystemExit(main())
