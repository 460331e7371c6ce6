#!/usr/bin/env python3
"""
Odyssey - terminal player

Drives a GameSession directly, without a browser or live video stream.
Scenes render as text panels; the stream is replaced by an offline client
and audio by a silent engine that only tracks what would be playing.

Usage:
    cd backend
    python play_cli.py
    python play_cli.py --offline          # no Gemini calls, static story text
    python play_cli.py --no-preload --storage memory
"""
import argparse
import asyncio
import logging
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.prompt import Prompt
from rich.table import Table

from odyssey_engine.config import settings, validate_config
from odyssey_engine.errors import GenerationError
from odyssey_engine.models import Choice, Phase, PreloadProgress, SceneAsset, SessionState
from odyssey_engine.runtime import GameSession
from odyssey_engine.services import (
    GeminiService,
    LiveStreamSession,
    NpcReply,
    OfflineStreamClient,
    SilentAudioEngine,
    build_store,
)
from odyssey_engine.world import SceneRegistry, VisitOptions

logger = logging.getLogger("odyssey.cli")


# ==================== Config ====================

COLORS = {
    "narrative": "bright_white",
    "scene": "bright_blue",
    "npc": "bright_cyan",
    "player": "bright_green",
    "system": "bright_magenta",
    "error": "bright_red",
    "hint": "dim",
    "ending": "bold bright_yellow",
}

TONE_STYLE = {
    "cautious": "cyan",
    "bold": "red",
    "creative": "magenta",
}


class StaticGenerator:
    """Generator used with --offline: every call fails, so the session
    falls back to the static story text."""

    async def generate_image(self, prompt: str) -> SceneAsset:
        raise GenerationError("offline mode")

    async def generate_text(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        raise GenerationError("offline mode")

    async def generate_structured(self, prompt: str) -> Any:
        raise GenerationError("offline mode")

    async def generate_narrative(
        self, scene_name: str, narrative_context: str, previous_choice: Optional[str] = None
    ) -> str:
        raise GenerationError("offline mode")

    async def generate_choices(
        self, scene_name: str, narrative_context: str, choice_context: str
    ) -> List[Choice]:
        raise GenerationError("offline mode")

    async def generate_npc_response(self, messages: List[Dict[str, Any]], system_prompt: str) -> NpcReply:
        raise GenerationError("offline mode")


# ==================== Rendering ====================

class GameRenderer:
    def __init__(self):
        self.console = Console()

    def print_banner(self, title: str):
        self.console.print(Panel(f"[bold]{title}[/bold]", border_style="bright_blue", expand=False))

    def print_help(self):
        help_text = """
[bold]Story:[/bold]
  begin            start the mission (after preloading)
  next / n         continue once the narrative is shown
  1-3              pick a choice
  visit <id>       pick a specific destination when several are open
  look             show the current scene again

[bold]Crew:[/bold]
  npcs             list crew in this scene
  talk <npc_id>    open a conversation
  say <text>       speak during a conversation (plain text works too)
  bye              close the conversation

[bold]Session:[/bold]
  interact <text>  nudge the live scene
  volume <0-1>     set volume
  progress         preload progress
  status           session record
  save / resume    persist or restore progress
  restart          start over
  quit             leave
"""
        self.console.print(Panel(help_text, title="Commands", border_style="dim"))

    def print_scene(self, session: GameSession):
        scene = session.current_scene()
        if scene is None:
            return
        anchor = session.current_anchor()
        subtitle = f"{scene.subtitle}"
        if anchor is not None:
            subtitle += f"  [dim](anchor {anchor.mime_type}, {len(anchor.data)} bytes)[/dim]"
        self.console.print(Panel(
            subtitle,
            title=f"[bold]{scene.id}. {scene.name}[/bold]",
            border_style=COLORS["scene"],
        ))

    def print_narrative(self, text: str):
        self.console.print(Panel(text, border_style=COLORS["narrative"]))

    def print_choices(self, choices: List[Choice]):
        if not choices:
            self.print_hint("Type 'next' to continue.")
            return
        table = Table(show_header=False, box=None)
        for index, choice in enumerate(choices, start=1):
            style = TONE_STYLE.get(choice.tone, "white")
            table.add_row(f"[bold]{index}[/bold]", choice.text, f"[{style}]{choice.tone}[/]")
        self.console.print(table)

    def print_options(self, options: VisitOptions, session: GameSession):
        rows = []
        for scene_id in options.scene_ids:
            scene = session.registry.get(scene_id)
            rows.append(f"{scene_id}: {scene.name if scene else '?'}")
        self.print_hint("Open destinations - " + ", ".join(rows) + " (use 'visit <id>')")

    def print_npc(self, name: str, text: str, emotion: str = "neutral"):
        self.console.print(Panel(
            text,
            title=f"[bold cyan]{name}[/bold cyan]",
            subtitle=f"[dim]{emotion}[/dim]",
            border_style=COLORS["npc"],
        ))

    def print_ending(self, state: SessionState):
        ending = state.ending
        if ending is None:
            return
        self.console.print(Panel(
            ending.description,
            title=f"[{COLORS['ending']}]{ending.title}[/]",
            border_style="bright_yellow",
        ))
        self.print_hint(f"{len(state.choice_history)} choices made. Type 'restart' to play again.")

    def print_status(self, state: SessionState):
        table = Table(show_header=False, box=None)
        table.add_row("phase", state.phase.value)
        table.add_row("scene", str(state.current_scene_id))
        table.add_row("visited", ", ".join(str(s) for s in sorted(state.visited_scenes)) or "-")
        table.add_row("choices", str(len(state.choice_history)))
        table.add_row("volume", f"{state.volume:.2f}")
        if state.error:
            table.add_row("error", f"[{COLORS['error']}]{state.error}[/]")
        self.console.print(Panel(table, title="Session", border_style="dim"))

    def print_progress(self, progress: PreloadProgress):
        self.print_system(f"Anchors: {progress.loaded}/{progress.total} ({progress.percent}%)")

    def print_player(self, message: str):
        self.console.print(f"[{COLORS['player']}]> {message}[/]")

    def print_error(self, message: str):
        self.console.print(f"[{COLORS['error']}]Error: {message}[/]")

    def print_system(self, message: str):
        self.console.print(f"[{COLORS['system']}]{message}[/]")

    def print_hint(self, message: str):
        self.console.print(f"[{COLORS['hint']}]{message}[/]")

    def get_input(self, state: SessionState, npc_name: Optional[str]) -> str:
        if npc_name:
            prompt_str = f"[talking to {npc_name}] "
        else:
            prompt_str = f"[{state.phase.value.lower()}] "
        try:
            return Prompt.ask(f"[green]{prompt_str}[/green]")
        except (KeyboardInterrupt, EOFError):
            return "quit"


# ==================== Game ====================

class GameCLI:
    def __init__(self, session: GameSession, preload: bool = True):
        self.session = session
        self.renderer = GameRenderer()
        self.preload = preload
        self.running = True
        self._shown_phase: Optional[Phase] = None

    async def start(self):
        self.renderer.print_banner(self.session.registry.title or "Odyssey")
        self.renderer.print_hint("Type 'help' for commands.")

        if self.preload:
            await self.session.start()
            await self._show_preload()
        else:
            self.renderer.print_hint("Preloading skipped.")

        try:
            await self.main_loop()
        finally:
            await self.session.teardown()

    async def _show_preload(self):
        total = len(self.session.registry)
        with Progress(
            TextColumn("[bold]Preloading anchors"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=self.renderer.console,
        ) as bar:
            task_id = bar.add_task("preload", total=total)
            while True:
                bar.update(task_id, completed=self.session.progress.loaded)
                if self.session.state.phase != Phase.PRELOADING or self.session.preload_finished:
                    break
                await asyncio.sleep(0.2)
        self.renderer.print_progress(self.session.progress)
        self.renderer.print_hint("Type 'begin' to start the mission.")

    async def main_loop(self):
        while self.running:
            npc = self.session.npc_chat.npc
            user_input = self.renderer.get_input(self.session.state, npc.name if npc else None)
            if not user_input.strip():
                continue
            try:
                await self.handle_input(user_input.strip())
            except KeyboardInterrupt:
                self.renderer.print_system("\nExiting...")
                break
            self._render_state()

    async def handle_input(self, user_input: str):
        parts = user_input.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1] if len(parts) > 1 else ""

        if cmd in ("quit", "exit", "q"):
            self.running = False
            return

        if cmd == "help":
            self.renderer.print_help()
            return

        if self.session.npc_chat.is_open:
            if cmd == "bye":
                self.session.npc_chat.close_chat()
                return
            text = arg if cmd == "say" else user_input
            await self.cmd_say(text)
            return

        if cmd == "begin":
            await self.session.begin()
            return

        if cmd in ("next", "n"):
            await self.cmd_next()
            return

        if cmd.isdigit():
            await self.cmd_choose(int(cmd))
            return

        if cmd == "visit" and arg.isdigit():
            await self.session.advance(target_scene_id=int(arg))
            return

        if cmd == "look":
            self._shown_phase = None
            return

        if cmd == "npcs":
            self.cmd_list_npcs()
            return

        if cmd == "talk" and arg:
            self.cmd_talk(arg)
            return

        if cmd == "interact" and arg:
            if not self.session.interact(arg):
                self.renderer.print_hint("Interaction dropped (cooldown or no live scene).")
            return

        if cmd == "volume" and arg:
            try:
                self.session.set_volume(float(arg))
            except ValueError:
                self.renderer.print_error("usage: volume <0-1>")
            return

        if cmd == "progress":
            self.renderer.print_progress(self.session.progress)
            return

        if cmd == "status":
            self.renderer.print_status(self.session.state)
            return

        if cmd == "save":
            ok = self.session.save()
            self.renderer.print_system("Saved." if ok else "Save failed.")
            return

        if cmd == "resume":
            if not await self.session.resume():
                self.renderer.print_hint("No saved session.")
            return

        if cmd == "restart":
            self._shown_phase = None
            await self.session.restart()
            if self.preload:
                await self._show_preload()
            return

        self.renderer.print_hint(f"Unknown command: {cmd}")

    async def cmd_next(self):
        state = self.session.state
        if state.phase == Phase.NARRATIVE:
            await self.session.narrative_complete()
            return
        if state.phase == Phase.CHOICES:
            scene = self.session.current_scene()
            if scene is not None and scene.transition.type == "branch":
                self.renderer.print_hint("Pick a choice first.")
                return
            outcome = self.session.resolver.resolve_next(
                state.current_scene_id, None, state.visited_scenes | {state.current_scene_id}
            )
            if isinstance(outcome, VisitOptions) and len(outcome.scene_ids) > 1:
                self.renderer.print_options(outcome, self.session)
            await self.session.advance()
            return
        self.renderer.print_hint(f"Nothing to continue in phase {state.phase.value}.")

    async def cmd_choose(self, index: int):
        choices = self.session.state.current_choices
        if self.session.state.phase != Phase.CHOICES or not 1 <= index <= len(choices):
            self.renderer.print_error("no such choice")
            return
        choice = choices[index - 1]
        self.renderer.print_player(choice.text)
        await self.session.choose(choice.id)

    def cmd_list_npcs(self):
        scene = self.session.current_scene()
        if scene is None or not scene.npcs:
            self.renderer.print_hint("Nobody to talk to here.")
            return
        table = Table(show_header=True)
        table.add_column("id")
        table.add_column("name")
        table.add_column("role")
        for npc_id in scene.npcs:
            npc = self.session.registry.get_npc(npc_id)
            if npc is not None:
                table.add_row(npc.id, npc.name, npc.role)
        self.renderer.console.print(table)

    def cmd_talk(self, npc_id: str):
        if not self.session.npc_chat.open_chat(npc_id):
            self.renderer.print_error(f"unknown crew member: {npc_id}")
            return
        npc = self.session.npc_chat.npc
        greeting = self.session.npc_chat.messages[0]
        self.renderer.print_npc(npc.name, greeting.text, greeting.emotion)

    async def cmd_say(self, text: str):
        npc = self.session.npc_chat.npc
        if npc is None or not text.strip():
            return
        self.renderer.print_player(text)
        reply = await self.session.npc_chat.send_message(text)
        if reply is not None:
            self.renderer.print_npc(npc.name, reply.text, reply.emotion)

    def _render_state(self):
        state = self.session.state
        if state.phase == self._shown_phase:
            return
        self._shown_phase = state.phase

        if state.phase == Phase.NARRATIVE:
            self.renderer.print_scene(self.session)
            self.renderer.print_narrative(state.current_narrative)
            self.renderer.print_hint("Type 'next' to continue.")
        elif state.phase == Phase.CHOICES:
            self.renderer.print_choices(list(state.current_choices))
        elif state.phase == Phase.ENDING:
            self.renderer.print_ending(state)
        elif state.phase == Phase.ERROR:
            self.renderer.print_error(state.error or "unknown error")
            self.renderer.print_hint("Type 'restart' to try again.")


# ==================== Entry ====================

def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


async def main():
    parser = argparse.ArgumentParser(description="Odyssey - terminal player")
    parser.add_argument("--story", default=None, help="path to a story JSON file")
    parser.add_argument("--offline", action="store_true", help="skip Gemini, use static story text")
    parser.add_argument("--no-preload", action="store_true", help="do not generate anchor images")
    parser.add_argument(
        "--storage",
        choices=["memory", "file", "firestore"],
        default=None,
        help="storage backend (default: STORAGE_BACKEND)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args()

    setup_logging(args.verbose)

    story_path = args.story or settings.story_path
    registry = SceneRegistry.from_file(story_path) if story_path else SceneRegistry.load_default()

    if args.offline or not settings.gemini_api_key:
        if not args.offline:
            logger.warning("GEMINI_API_KEY not set, running offline")
        generator = StaticGenerator()
    else:
        validate_config()
        generator = GeminiService()

    session = GameSession(
        registry,
        generator,
        store=build_store(args.storage),
        stream=LiveStreamSession(OfflineStreamClient),
        audio=SilentAudioEngine(settings.default_volume),
    )
    game = GameCLI(session, preload=not (args.no_preload or isinstance(generator, StaticGenerator)))
    await game.start()


if __name__ == "__main__":
    asyncio.run(main())
