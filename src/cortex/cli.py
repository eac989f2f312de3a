"""
CLI entry point.

Commands:
- init: Create the memory root
- status: Show tier counters
- history [limit]: Show recent conversation turns and summaries
- get <key>: Read a short-term context value
- set <key> <value>: Store a short-term context value
- knowledge <category> [topic]: Read semantic knowledge
- learn <category> <topic> <value>: Store semantic knowledge

Values given on the command line are parsed as JSON when possible.

Flags:
- --debug: Enable debug logging
"""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from cortex.core.config import Settings, get_settings
from cortex.core.errors import WriteResult
from cortex.core.logging import get_logger, setup_from_settings
from cortex.memory import ConversationEntry, Summary, TieredMemory, create_memory

USAGE = """Usage: cortex [--debug] <command> [args]
Commands:
  init                              create memory root
  status                            show tier counters
  history [limit]                   show recent conversations
  get <key>                         read context value
  set <key> <value>                 store context value
  knowledge <category> [topic]      read knowledge
  learn <category> <topic> <value>  store knowledge"""


def main() -> int:
    """Main entry point."""
    settings = get_settings()

    debug_mode = "--debug" in sys.argv
    if debug_mode:
        sys.argv.remove("--debug")

    setup_from_settings(settings, debug=debug_mode)
    logger = get_logger("cli")

    if len(sys.argv) < 2:
        print(USAGE)
        return 1

    command, args = sys.argv[1], sys.argv[2:]
    handler = COMMANDS.get(command)
    if handler is None:
        print(f"Unknown command: {command}")
        print(USAGE)
        return 1

    logger.debug(f"Running {command} against {settings.backend} store at {settings.memory_root}")
    return asyncio.run(_run(settings, handler, args))


async def _run(
    settings: Settings,
    handler: Callable[[TieredMemory, list[str]], Awaitable[int]],
    args: list[str],
) -> int:
    async with create_memory(settings) as memory:
        return await handler(memory, args)


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _format_time(timestamp: int | None) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _report(result: WriteResult) -> int:
    if not result:
        print(f"Error: {result.error}")
        return 1
    for issue in result.issues:
        print(f"  [{issue.kind.value}] {issue.tier}: {issue.detail}")
    return 0


async def _init(memory: TieredMemory, args: list[str]) -> int:
    result = await memory.flush()
    status = memory.get_status()
    print(f"Initialized {status.backend} memory store: {status.location}")
    return _report(result)


async def _status(memory: TieredMemory, args: list[str]) -> int:
    status = memory.get_status()
    print(f"Backend: {status.backend} ({status.location})")
    print(f"Short-term entries: {status.short_term_entries}")
    print(f"Episodic entries: {status.episodic_entries}")
    print(
        f"Summaries: {status.summarized_entries} "
        f"(covering {status.summarized_conversations} conversations)"
    )
    print(f"Knowledge categories: {status.semantic_categories}")
    print(f"Last refreshed: {_format_time(status.last_refreshed)}")
    return 0


async def _history(memory: TieredMemory, args: list[str]) -> int:
    try:
        limit = int(args[0]) if args else 10
    except ValueError:
        print(f"Invalid limit: {args[0]}")
        return 1

    for item in await memory.get_conversation_history(limit):
        if isinstance(item, Summary):
            topics = ", ".join(item.primary_topics) or "-"
            print(
                f"[summary {_format_time(item.start_time)} .. {_format_time(item.end_time)}] "
                f"{item.conversation_count} turns; topics: {topics}"
            )
        elif isinstance(item, ConversationEntry):
            print(f"[{_format_time(item.timestamp)}] {item.role.value}: {item.content}")
    return 0


async def _get(memory: TieredMemory, args: list[str]) -> int:
    if len(args) != 1:
        print("Usage: cortex get <key>")
        return 1
    value = await memory.get_context(args[0])
    print(json.dumps(value, indent=2, ensure_ascii=False))
    return 0


async def _set(memory: TieredMemory, args: list[str]) -> int:
    if len(args) != 2:
        print("Usage: cortex set <key> <value>")
        return 1
    return _report(await memory.store_context(args[0], _parse_value(args[1])))


async def _knowledge(memory: TieredMemory, args: list[str]) -> int:
    if len(args) == 1:
        value = await memory.get_category_knowledge(args[0])
    elif len(args) == 2:
        value = await memory.get_knowledge(args[0], args[1])
    else:
        print("Usage: cortex knowledge <category> [topic]")
        return 1
    print(json.dumps(value, indent=2, ensure_ascii=False))
    return 0


async def _learn(memory: TieredMemory, args: list[str]) -> int:
    if len(args) != 3:
        print("Usage: cortex learn <category> <topic> <value>")
        return 1
    category, topic, raw = args
    return _report(await memory.store_knowledge(category, topic, _parse_value(raw), source="cli"))


COMMANDS: dict[str, Callable[[TieredMemory, list[str]], Awaitable[int]]] = {
    "init": _init,
    "status": _status,
    "history": _history,
    "get": _get,
    "set": _set,
    "knowledge": _knowledge,
    "learn": _learn,
}


if __name__ == "__main__":
    sys.exit(main())
