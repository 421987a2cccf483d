"""parley entry point.

Streams one prompt through the configured provider and prints the reply:
  Settings -> StreamTransport -> ChatRunner -> stdout
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from parley.api.runner import ChatRunner, RunResult
from parley.api.tools import ToolDispatcher
from parley.api.transport import StreamTransport
from parley.config import Settings
from parley.events import ContentItem, UsageType

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def _print_content(item: ContentItem) -> None:
    text = item if isinstance(item, str) else f"\n{item}\n"
    sys.stdout.write(text)
    sys.stdout.flush()


async def run_prompt(
    settings: Settings,
    prompt: str,
    session_id: str = "cli",
    dispatcher: ToolDispatcher | None = None,
) -> RunResult:
    """Send ``prompt`` and stream the response to stdout."""
    transport = StreamTransport(settings)
    await transport.start()
    try:
        runner = ChatRunner(settings, transport, dispatcher)
        result = await runner.send(session_id, prompt, on_content=_print_content)
        usage = runner.session(session_id).usage
        logger.info(
            "Done after %d request(s): input=%d output=%d cache_read=%d",
            result.requests,
            usage[UsageType.INPUT],
            usage[UsageType.OUTPUT],
            usage[UsageType.CACHE_READ],
        )
        return result
    finally:
        await transport.close()


def main(argv: list[str] | None = None) -> int:
    """Entry point -- parse settings, stream one prompt."""
    parser = argparse.ArgumentParser(prog="parley", description=__doc__)
    parser.add_argument("prompt", nargs="+", help="Message to send")
    args = parser.parse_args(argv)

    settings = Settings()
    configure_logging(settings)
    logger.info("Provider: %s, model: %s", settings.provider, settings.resolved_model)

    result = asyncio.run(run_prompt(settings, " ".join(args.prompt)))
    sys.stdout.write("\n")
    if result.error:
        sys.stderr.write(f"Error: {result.error}\n")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
