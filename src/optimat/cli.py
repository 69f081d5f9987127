import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv
from pydantic import ValidationError

from common.events import Event, ToolCallEvent, ToolResultEvent
from common.jsonio import atomic_write_json, canonical_dumps, load_json
from optimat.chat.orchestrator import build_orchestrator
from optimat.config import ConfigError, OptimatConfig
from optimat.errors import (
    ConversationNotFound,
    ExampleNotFound,
    ExternalServiceError,
    PersistenceError,
)
from optimat.models import Provider
from optimat.replay.service import ReplayService
from optimat.storage import Storage


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        payload = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(verbose: bool = False, quiet: bool = False, log_format: str = "text") -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_format == "json":
        handlers[0].setFormatter(JsonFormatter())
        logging.basicConfig(level=level, handlers=handlers)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)


def _load_config(args: argparse.Namespace) -> OptimatConfig:
    config = OptimatConfig.from_yaml(args.config) if args.config else OptimatConfig.from_env()
    if args.db:
        config.db_path = args.db
    return config


def _print_event(event: Event) -> None:
    if isinstance(event, ToolCallEvent):
        print(f"  -> {event.tool_name}", file=sys.stderr)
    elif isinstance(event, ToolResultEvent):
        status = "ok" if event.success else f"failed: {event.error}"
        print(f"  <- {event.tool_name} {status}", file=sys.stderr)


def cmd_chat(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)

    try:
        config = _load_config(args)
        config.validate()
        orchestrator = build_orchestrator(
            config, on_event=None if args.quiet else _print_event
        )
    except (ConfigError, PersistenceError) as e:
        print(f"Error: {e}")
        return 1

    def run_once(text: str) -> int:
        try:
            result = orchestrator.run_turn(args.conversation_id, text)
        except (ExternalServiceError, PersistenceError) as e:
            logger.error(f"Turn failed: {e}")
            print(f"Error: {e}")
            return 1
        print(result.message)
        if args.attachments and result.attachments:
            print(canonical_dumps(result.to_response()["attachments"], indent=2))
        return 0

    if args.message:
        return run_once(args.message)

    print(f"Conversation {args.conversation_id}. Type 'exit' to quit.")
    while True:
        try:
            text = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return 0
        if text.lower() in ("exit", "quit"):
            return 0
        if text:
            run_once(text)


def cmd_replay_regenerate(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = _load_config(args)
        service = ReplayService(Storage(config.db_path))
        states = service.regenerate(args.conversation_id)
    except (ConfigError, PersistenceError, ConversationNotFound) as e:
        print(f"Error: {e}")
        return 1
    print(f"Regenerated {len(states)} replay states for {args.conversation_id}")
    return 0


def cmd_replay_export(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = _load_config(args)
        service = ReplayService(Storage(config.db_path))
        replay = service.get_replay(args.conversation_id)
    except (ConfigError, PersistenceError, ConversationNotFound) as e:
        print(f"Error: {e}")
        return 1

    payload = replay.model_dump(mode="json")
    if args.out:
        atomic_write_json(args.out, payload)
        print(f"Wrote {len(replay.states)} states to {args.out}")
    else:
        print(canonical_dumps(payload, indent=2))
    return 0


def cmd_examples_save(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = _load_config(args)
        service = ReplayService(Storage(config.db_path))
        example, states = service.save_as_example(
            args.conversation_id,
            args.title,
            description=args.description,
            tags=args.tag,
            category=args.category,
        )
    except (ConfigError, PersistenceError, ConversationNotFound, ValueError) as e:
        print(f"Error: {e}")
        return 1
    print(f"Saved example {example.id} with {len(states)} replay states")
    return 0


def cmd_examples_list(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = _load_config(args)
        examples = Storage(config.db_path).list_examples(
            is_active=None if args.all else True, limit=args.limit
        )
    except (ConfigError, PersistenceError) as e:
        print(f"Error: {e}")
        return 1
    if not examples:
        print("No chat examples")
        return 0
    for example in examples:
        tags = f" [{', '.join(example.tags)}]" if example.tags else ""
        status = "" if example.is_active else " (inactive)"
        print(f"{example.id}  {example.category}  {example.title}{tags}{status}")
    return 0


def cmd_examples_regenerate(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = _load_config(args)
        service = ReplayService(Storage(config.db_path))
        states = service.regenerate_example(args.example_id)
    except (ConfigError, PersistenceError, ConversationNotFound, ExampleNotFound) as e:
        print(f"Error: {e}")
        return 1
    print(f"Regenerated {len(states)} replay states for example {args.example_id}")
    return 0


def cmd_examples_export(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = _load_config(args)
        replay = ReplayService(Storage(config.db_path)).get_example_replay(args.example_id)
    except (ConfigError, PersistenceError, ExampleNotFound) as e:
        print(f"Error: {e}")
        return 1

    payload = replay.model_dump(mode="json")
    if args.out:
        atomic_write_json(args.out, payload)
        print(f"Wrote {len(replay.states)} states to {args.out}")
    else:
        print(canonical_dumps(payload, indent=2))
    return 0


def cmd_examples_set_active(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = _load_config(args)
        updated = Storage(config.db_path).set_example_active(args.example_id, args.active)
    except (ConfigError, PersistenceError) as e:
        print(f"Error: {e}")
        return 1
    if not updated:
        print(f"Error: Chat example {args.example_id} not found")
        return 1
    print(f"Example {args.example_id} is now {'active' if args.active else 'inactive'}")
    return 0


def cmd_examples_delete(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = _load_config(args)
        deleted = Storage(config.db_path).delete_example(args.example_id)
    except (ConfigError, PersistenceError) as e:
        print(f"Error: {e}")
        return 1
    if not deleted:
        print(f"Error: Chat example {args.example_id} not found")
        return 1
    print(f"Deleted example {args.example_id}")
    return 0


def cmd_providers_load(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)

    data = load_json(args.file)
    if isinstance(data, dict):
        data = data.get("providers")
    if not isinstance(data, list):
        print(f"Error: {args.file} must contain a JSON list of providers")
        return 1

    try:
        config = _load_config(args)
        storage = Storage(config.db_path)
        loaded = skipped = 0
        for index, raw in enumerate(data):
            try:
                provider = Provider.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping provider at index {index}: {e}")
                skipped += 1
                continue
            storage.upsert_provider(provider)
            loaded += 1
    except (ConfigError, PersistenceError) as e:
        print(f"Error: {e}")
        return 1

    print(f"Loaded {loaded} providers ({skipped} skipped)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="optimat",
        description="OPTIMAT - paratransit trip assistant",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Minimal logging (warnings/errors only)"
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log format (default: text)",
    )
    parser.add_argument("--config", "-c", metavar="PATH", help="YAML config file")
    parser.add_argument("--db", metavar="PATH", help="SQLite database path (overrides config)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    chat_parser = subparsers.add_parser("chat", help="Chat with the trip assistant")
    chat_parser.add_argument("conversation_id", help="Conversation ID (created if missing)")
    chat_parser.add_argument("--message", "-m", help="Send one message and exit")
    chat_parser.add_argument(
        "--attachments", action="store_true", help="Print tool attachments as JSON"
    )
    chat_parser.set_defaults(func=cmd_chat)

    replay_parser = subparsers.add_parser("replay", help="Conversation replay states")
    replay_sub = replay_parser.add_subparsers(dest="replay_command")

    regenerate_parser = replay_sub.add_parser("regenerate", help="Rebuild stored replay states")
    regenerate_parser.add_argument("conversation_id", help="Conversation ID")
    regenerate_parser.set_defaults(func=cmd_replay_regenerate)

    export_parser = replay_sub.add_parser("export", help="Export a conversation replay as JSON")
    export_parser.add_argument("conversation_id", help="Conversation ID")
    export_parser.add_argument("--out", "-o", metavar="PATH", help="Output file (default: stdout)")
    export_parser.set_defaults(func=cmd_replay_export)

    examples_parser = subparsers.add_parser("examples", help="Curated chat examples for demo playback")
    examples_sub = examples_parser.add_subparsers(dest="examples_command")

    save_parser = examples_sub.add_parser("save", help="Save a conversation as a chat example")
    save_parser.add_argument("conversation_id", help="Conversation ID")
    save_parser.add_argument("--title", "-t", required=True, help="Example title")
    save_parser.add_argument("--description", "-d", help="Example description")
    save_parser.add_argument(
        "--tag", action="append", default=[], help="Tag (repeat for several)"
    )
    save_parser.add_argument("--category", default="general", help="Category (default: general)")
    save_parser.set_defaults(func=cmd_examples_save)

    list_parser = examples_sub.add_parser("list", help="List chat examples, newest first")
    list_parser.add_argument("--all", action="store_true", help="Include inactive examples")
    list_parser.add_argument("--limit", type=int, default=50, help="Maximum rows (default: 50)")
    list_parser.set_defaults(func=cmd_examples_list)

    example_regenerate_parser = examples_sub.add_parser(
        "regenerate", help="Rebuild an example's states from its conversation"
    )
    example_regenerate_parser.add_argument("example_id", help="Chat example ID")
    example_regenerate_parser.set_defaults(func=cmd_examples_regenerate)

    example_export_parser = examples_sub.add_parser("export", help="Export an example replay as JSON")
    example_export_parser.add_argument("example_id", help="Chat example ID")
    example_export_parser.add_argument(
        "--out", "-o", metavar="PATH", help="Output file (default: stdout)"
    )
    example_export_parser.set_defaults(func=cmd_examples_export)

    for name, active in (("activate", True), ("deactivate", False)):
        toggle_parser = examples_sub.add_parser(
            name, help=f"Mark an example {'active' if active else 'inactive'}"
        )
        toggle_parser.add_argument("example_id", help="Chat example ID")
        toggle_parser.set_defaults(func=cmd_examples_set_active, active=active)

    delete_parser = examples_sub.add_parser("delete", help="Delete an example and its states")
    delete_parser.add_argument("example_id", help="Chat example ID")
    delete_parser.set_defaults(func=cmd_examples_delete)

    providers_parser = subparsers.add_parser("providers", help="Provider data")
    providers_sub = providers_parser.add_subparsers(dest="providers_command")

    load_parser = providers_sub.add_parser("load", help="Load providers from a JSON file")
    load_parser.add_argument("file", help="JSON file with a list of providers")
    load_parser.set_defaults(func=cmd_providers_load)

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
