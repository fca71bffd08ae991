"""Interactive command-line chat client."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import signal
import sys
import threading
from collections.abc import Awaitable, Callable
from pathlib import Path

import click

from . import __version__
from .cancellation import CancelToken
from .config import ChatConfig, load_config, load_system_prompt
from .conversation import ConversationStore, StoreSummary
from .dispatcher import RequestDispatcher
from .errors import ChatError, ConfigError
from .ratelimit import RateLimiter
from .session import ChatSession, Renderer, SessionState, TurnOutcome
from .telemetry import ChatTracer, TelemetryConfig, set_default_tracer
from .transport import AiohttpTransport, ChatTransport

logger = logging.getLogger(__name__)

LineReader = Callable[[str], Awaitable[str]]

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
_THINKING = "AI is thinking..."

# ---------------------------------------------------------------------------
# Console rendering
# ---------------------------------------------------------------------------


class ConsoleRenderer(Renderer):
    """Plain terminal output; assistant replies are paced word by word."""

    def __init__(self, render_delay: float = 0.02) -> None:
        self._delay = render_delay
        self._thinking = False

    async def render_assistant(self, text: str) -> None:
        click.echo(click.style("AI: ", fg="magenta", bold=True), nl=False)
        for piece in re.split(r"(\s+)", text):
            if not piece:
                continue
            click.echo(piece, nl=False)
            if self._delay and not piece.isspace():
                await asyncio.sleep(self._delay)
        click.echo()

    def show_error(self, message: str) -> None:
        click.echo(click.style(f"Error: {message}", fg="red"), err=True)

    def show_info(self, message: str) -> None:
        click.echo(click.style(message, fg="blue"))

    def show_summary(self, summary: StoreSummary) -> None:
        click.echo(f"  Messages: {summary.message_count}")
        click.echo(f"  Tokens:   {summary.token_count}/{summary.max_tokens}")
        for role, content in summary.recent:
            click.echo(f"  {role:>9}: {content}")

    def show_thinking(self) -> None:
        self._thinking = True
        click.echo(click.style(_THINKING, dim=True), nl=False)

    def clear_thinking(self) -> None:
        if self._thinking:
            click.echo("\r" + " " * len(_THINKING) + "\r", nl=False)
            self._thinking = False


def print_welcome_message() -> None:
    click.echo(click.style("Welcome to the AI Chat!", fg="cyan", bold=True, underline=True))
    click.echo(click.style("Type 'exit' to quit the program.", fg="blue"))
    click.echo(click.style("Commands: /save, /load <name>", fg="blue"))
    click.echo()


# ---------------------------------------------------------------------------
# Input and interrupt tasks
# ---------------------------------------------------------------------------


async def read_line(prompt: str) -> str:
    """Read one line from stdin without blocking the event loop.

    ``input()`` runs on a daemon thread so a read that is still pending when
    the session ends does not hold up interpreter shutdown.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def _resolve(value: str | None, exc: Exception | None) -> None:
        if future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(value or "")

    def _worker() -> None:
        try:
            line = input(prompt)
        except Exception as exc:  # noqa: BLE001
            result: tuple[str | None, Exception | None] = (None, exc)
        else:
            result = (line, None)
        with contextlib.suppress(RuntimeError):  # loop already closed
            loop.call_soon_threadsafe(_resolve, *result)

    threading.Thread(target=_worker, name="llmchat-input", daemon=True).start()
    return await future


async def input_loop(session: ChatSession, reader: LineReader) -> None:
    """Foreground task: read a line, hand it to the session, repeat."""
    while True:
        try:
            line = await reader(click.style("You: ", fg="green", bold=True))
        except EOFError:
            return
        if await session.handle_input(line) is TurnOutcome.EXIT:
            return


async def watch_interrupts(session: ChatSession, interrupts: asyncio.Queue[None]) -> None:
    """Background task: Ctrl-C cancels the request in flight, or ends an idle session."""
    while True:
        await interrupts.get()
        if session.state is SessionState.AWAITING:
            logger.info("Interrupt received, cancelling request")
            session.cancel_token.cancel("interrupted by user")
        else:
            return


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


async def run_chat(
    config: ChatConfig,
    system_prompt: str,
    *,
    transport: ChatTransport | None = None,
    renderer: Renderer | None = None,
    reader: LineReader = read_line,
    interrupts: asyncio.Queue[None] | None = None,
) -> None:
    """Run the read-evaluate loop and the interrupt watcher until either ends."""
    transport = transport or AiohttpTransport(
        api_key=config.groq_api_key,
        api_url=config.api_url,
        timeout=config.request_timeout,
    )
    renderer = renderer or ConsoleRenderer(config.render_delay)
    store = ConversationStore(config.max_conversation_tokens, system_prompt=system_prompt)
    dispatcher = RequestDispatcher(
        transport,
        config,
        limiter=RateLimiter(config.requests_per_second),
    )
    session = ChatSession(
        store,
        dispatcher,
        renderer,
        history_dir=config.history_dir,
        cancel=CancelToken(),
    )

    loop = asyncio.get_running_loop()
    own_signal = interrupts is None
    interrupts = interrupts if interrupts is not None else asyncio.Queue()
    if own_signal:
        try:
            loop.add_signal_handler(signal.SIGINT, interrupts.put_nowait, None)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows
            own_signal = False

    foreground = asyncio.create_task(input_loop(session, reader), name="input-loop")
    watcher = asyncio.create_task(watch_interrupts(session, interrupts), name="interrupt-watcher")
    try:
        done, pending = await asyncio.wait(
            {foreground, watcher}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            task.result()
    finally:
        if own_signal:
            loop.remove_signal_handler(signal.SIGINT)
        await transport.close()


def _configure_tracing() -> ChatTracer:
    exporter = os.environ.get("LLMCHAT_TRACE_EXPORTER", "none").strip().lower() or "none"
    tracer = ChatTracer(TelemetryConfig(exporter=exporter))
    tracer.init()
    set_default_tracer(tracer)
    return tracer


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


@click.command()
@click.version_option(version=__version__, prog_name="llmchat")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="YAML config file (default: ./config.yaml if present).",
)
@click.option(
    "--prompt-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="File whose contents become the system prompt.",
)
@click.option("--model", default=None, help="Model name sent to the API.")
@click.option(
    "--history-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for /save and /load.",
)
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    envvar="LLMCHAT_LOG_LEVEL",
    default="WARNING",
    show_default=True,
)
def cli(
    config_path: Path | None,
    prompt_file: Path | None,
    model: str | None,
    history_dir: Path | None,
    log_level: str,
) -> None:
    """Chat with a hosted LLM from the terminal.

    Type a message to send it, 'exit' to quit, '/save' to write the
    conversation to a timestamped file and '/load <name>' to restore one.
    Ctrl-C cancels a request in flight.
    """
    logging.basicConfig(
        level=log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(
            config_path,
            model=model,
            system_prompt_path=prompt_file,
            history_dir=history_dir,
        )
        system_prompt = load_system_prompt(config.system_prompt_path)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    tracer = _configure_tracing()
    print_welcome_message()
    try:
        asyncio.run(run_chat(config, system_prompt))
    except ChatError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    finally:
        tracer.shutdown()
    click.echo(click.style("Goodbye!", fg="yellow", bold=True))


if __name__ == "__main__":
    cli()
