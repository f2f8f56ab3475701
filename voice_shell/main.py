"""Voice shell REPL — text front end for the playback pipeline.

Run with: python -m voice_shell.main [--debug]

Commands:
  speak text <words>   speak the words as typed
  speak gpt <prompt>   ask the model, speak its reply
  pause | resume | stop | ff
  history | state | quit
Anything else is logged to the transcript without being spoken.
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from dotenv import load_dotenv
from rich.console import Console

from engine.errors import QueueClosed, StoreError

from .config import load_settings
from .shell import VoiceShell

console = Console()


def _setup_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)-14s %(levelname)-7s %(message)s",
        datefmt="%H:%M:%S",
    )
    # Suppress noisy HTTP-level debug logs
    if debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("aiosqlite").setLevel(logging.WARNING)


async def _show_history(shell: VoiceShell) -> None:
    try:
        entries = await shell.history()
    except StoreError as e:
        console.print(f"[red]Cannot read transcript: {e}[/]")
        return
    if not entries:
        console.print("[dim]Transcript is empty.[/]")
    for entry in entries:
        stamp = entry.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        console.print(f"[dim]{stamp}[/] {entry.body}")


async def _run_repl() -> None:
    shell = VoiceShell.from_settings(load_settings())
    shell.start()

    controls = {
        "pause": shell.pause,
        "resume": shell.resume,
        "stop": shell.stop,
        "ff": shell.fast_forward,
    }

    console.print("[bold]Voice Shell[/]")
    console.print("[dim]'speak text ...', 'speak gpt ...', pause/resume/stop/ff, history, quit[/]\n")

    try:
        while True:
            try:
                line = (await asyncio.to_thread(console.input, "[bold green]>[/] ")).strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/]")
                break

            command = line.lower()
            if not line:
                continue
            if command in ("quit", "exit", "q"):
                console.print("[dim]Goodbye![/]")
                break

            try:
                if command in controls:
                    await controls[command]()
                elif command == "state":
                    console.print(f"[cyan]{shell.state.value}[/]")
                elif command == "history":
                    await _show_history(shell)
                else:
                    await shell.submit(line)
            except QueueClosed as e:
                console.print(f"[red]Playback unavailable: {e}[/]")
                break
    finally:
        await shell.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Voice Shell REPL")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    load_dotenv()
    _setup_logging(args.debug)
    asyncio.run(_run_repl())


if __name__ == "__main__":
    main()
