"""CLI Application for CineGenie Studio."""

import asyncio
import logging
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.json import JSON
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .codec import (
    bundle_filename,
    export_bundle,
    export_filename,
    export_plain,
    import_bundle,
    import_plain,
)
from .config import ApiKeyHolder, Settings
from .errors import CineGenieError, GenerationError
from .events import AssetEvents
from .maintainer import ConsistencyMaintainer
from .models import AspectRatio, AssetKind, SceneLocator, ScriptDocument
from .orchestrator import GenerationOrchestrator, default_image_prompt
from .service import GeminiService
from .session import ScriptSession, append_suggestion
from .store import Database

T = TypeVar("T")

# Setup Typer and Console
app = typer.Typer(help="CineGenie Studio CLI - Scripts, scenes and generated media")
config_app = typer.Typer(help="Manage the Gemini API key")
app.add_typer(config_app, name="config")
console = Console()


class Studio:
    """Everything a command needs, wired against one data directory."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.db = Database(settings.data_dir)
        self.events = AssetEvents()
        self.session = ScriptSession(self.db)
        self.maintainer = ConsistencyMaintainer(self.session, self.db, self.events)
        self.keys = ApiKeyHolder(settings.data_dir)
        self.keys.load()

    def orchestrator(self, service: GeminiService | None) -> GenerationOrchestrator:
        return GenerationOrchestrator(
            self.session,
            self.db,
            self.events,
            service,
            image_config=self.settings.image_config(),
            video_config=self.settings.video_config(),
        )


def _studio() -> Studio:
    return Studio(Settings.load())


def _get_service(studio: Studio, api_key: str | None = None) -> GeminiService:
    """Get the Gemini service."""
    if not api_key:
        api_key = studio.keys.value
    if not api_key:
        console.print(
            "[bold red]Error:[/bold red] GEMINI_API_KEY not found in env, "
            "key file or arguments.",
        )
        raise typer.Exit(code=1)
    return GeminiService(api_key)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except CineGenieError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e


def _fail_on_session_error(studio: Studio) -> None:
    if studio.session.error:
        console.print(f"[bold red]Error:[/bold red] {studio.session.error}")
        raise typer.Exit(code=1)


async def _open(studio: Studio, script_id: int) -> ScriptDocument:
    await studio.session.load()
    document = await studio.session.select(script_id)
    if document is None:
        console.print(f"[bold red]Error:[/bold red] Script {script_id} not found.")
        raise typer.Exit(code=1)
    return document


def _locator(document: ScriptDocument, act: int, scene: int) -> SceneLocator:
    locator = SceneLocator(act - 1, scene - 1)
    if document.scene_at(locator) is None:
        console.print(f"[bold red]Error:[/bold red] No scene {scene} in act {act}.")
        raise typer.Exit(code=1)
    return locator


def _print_script(document: ScriptDocument) -> None:
    console.print(
        Panel(
            f"[bold]Title:[/bold] {document.title}\n"
            f"[bold]Logline:[/bold] {document.logline}\n"
            f"[bold]Genres:[/bold] {', '.join(document.genre) or '-'}\n"
            f"[bold]Aspect ratio:[/bold] {document.setting.default_aspect_ratio.value}",
            title=f"Script {document.id}",
            border_style="green",
        ),
    )
    for act_index, act in enumerate(document.acts, start=1):
        console.rule(f"[bold blue]Act {act.act_number}")
        console.print(act.summary)
        for scene_index, scene in enumerate(act.scenes, start=1):
            assets = []
            if scene.generated_image_id is not None:
                assets.append(f"image #{scene.generated_image_id}")
            if scene.generated_video_id is not None:
                assets.append(f"video #{scene.generated_video_id}")
            console.print(
                f"[bold]{act_index}.{scene_index}[/bold] "
                f"Scene {scene.scene_number} - {scene.location} ({scene.time})"
                + (f" [cyan]\\[{', '.join(assets)}][/cyan]" if assets else ""),
            )
            console.print(f"    {scene.action}")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """CineGenie Studio."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


@app.command()
def create(
    logline: str = typer.Argument(..., help="Logline or core idea of the story"),
    genre: list[str] = typer.Option([], "--genre", "-g", help="Genre (repeatable)"),
    language: str = typer.Option("en-US", help="Script language (en-US, vi-VN)"),
    length: str = typer.Option("medium", help="Script length: short, medium, long"),
    aspect_ratio: AspectRatio = typer.Option(
        AspectRatio.LANDSCAPE,
        "--aspect-ratio",
        help="Default aspect ratio for generated media",
    ),
    api_key: str | None = typer.Option(
        None,
        envvar="GEMINI_API_KEY",
        help="Google Gemini API Key",
    ),
) -> None:
    """Generate a new script from a logline and save it."""
    if not logline.strip():
        console.print("[bold red]Error:[/bold red] Enter a logline to generate a script.")
        raise typer.Exit(code=1)
    studio = _studio()
    service = _get_service(studio, api_key)

    prompt = (
        f"**Logline / Core Idea:** {logline}\n"
        f"**Genres:** {', '.join(genre)}\n"
        f"**Desired Script Length:** {length}\n"
        "Based on the provided logline, genres, and desired length, "
        "please generate a full movie script."
    )

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Writing the script...", total=None)
            script = service.generate_script(
                prompt,
                config=studio.settings.script_config(language, length),
            )
            progress.update(task, completed=100)
    except Exception as e:
        console.print(f"[bold red]Fatal Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e

    script.setting.default_aspect_ratio = aspect_ratio
    saved = _run(studio.session.add(script))
    _print_script(saved)


@app.command()
def suggest(
    logline: str = typer.Argument(..., help="Logline or core idea of the story"),
    genre: list[str] = typer.Option([], "--genre", "-g", help="Genre (repeatable)"),
    language: str = typer.Option("en-US", help="Suggestion language"),
    append: list[int] = typer.Option(
        [],
        "--append",
        "-a",
        help="Add suggestion N (1-based) to the logline (repeatable)",
    ),
    script_id: int | None = typer.Option(
        None,
        "--script",
        help="Save the extended logline to this script",
    ),
    api_key: str | None = typer.Option(
        None,
        envvar="GEMINI_API_KEY",
        help="Google Gemini API Key",
    ),
) -> None:
    """Suggest plot points for a logline, optionally adding some to it."""
    studio = _studio()
    service = _get_service(studio, api_key)
    prompt = f"**Logline / Core Idea:**\n{logline}\n\n**Genres:**\n{', '.join(genre)}"
    try:
        suggestions = service.suggest_plot_points(
            prompt,
            language=language,
            model=studio.settings.script_model,
        )
    except RuntimeError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e
    for number, item in enumerate(suggestions, start=1):
        console.print(f"{number}. {item}")
    if not append:
        return

    extended = logline
    for number in append:
        if not 1 <= number <= len(suggestions):
            console.print(f"[bold red]Error:[/bold red] No suggestion {number}.")
            raise typer.Exit(code=1)
        extended = append_suggestion(extended, suggestions[number - 1])

    if script_id is not None:

        async def _save() -> None:
            await _open(studio, script_id)
            await studio.session.update_field("logline", extended)

        _run(_save())
    console.print(Panel(extended, title="Logline", border_style="green"))


@app.command("list")
def list_scripts() -> None:
    """List saved scripts."""
    studio = _studio()
    scripts = _run(studio.session.load())
    if not scripts:
        console.print("No scripts saved yet.")
        return
    table = Table(title="Scripts")
    table.add_column("ID", justify="right")
    table.add_column("Title")
    table.add_column("Acts", justify="right")
    table.add_column("Scenes", justify="right")
    for script in scripts:
        table.add_row(
            str(script.id),
            script.title,
            str(len(script.acts)),
            str(len(script.locators())),
        )
    console.print(table)


@app.command()
def show(
    script_id: int = typer.Argument(..., help="Script ID"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw JSON"),
) -> None:
    """Show a script."""
    studio = _studio()
    document = _run(_open(studio, script_id))
    if as_json:
        console.print(JSON(document.model_dump_json(by_alias=True)))
    else:
        _print_script(document)


@app.command()
def delete(script_id: int = typer.Argument(..., help="Script ID")) -> None:
    """Delete a script and every asset it owns."""
    studio = _studio()

    async def _delete() -> bool:
        await _open(studio, script_id)
        return await studio.maintainer.delete_active_script()

    if not _run(_delete()):
        _fail_on_session_error(studio)
    console.print(f"Deleted script {script_id}.")


@app.command("set-field")
def set_field(
    script_id: int = typer.Argument(..., help="Script ID"),
    path: str = typer.Argument(..., help="Field path, e.g. acts[0].scenes[1].action"),
    value: str = typer.Argument(..., help="New value"),
) -> None:
    """Edit a text field of a script."""
    studio = _studio()

    async def _edit() -> None:
        await _open(studio, script_id)
        await studio.session.update_field(path, value)

    try:
        _run(_edit())
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e
    console.print(f"Updated {path}.")


@app.command()
def enhance(
    script_id: int = typer.Argument(..., help="Script ID"),
    path: str = typer.Argument(..., help="Field path, e.g. logline"),
    language: str = typer.Option("en-US", help="Language of the rewrite"),
    api_key: str | None = typer.Option(
        None,
        envvar="GEMINI_API_KEY",
        help="Google Gemini API Key",
    ),
) -> None:
    """Rewrite a text field with Gemini and save it."""
    studio = _studio()
    service = _get_service(studio, api_key)

    async def _enhance() -> str:
        document = await _open(studio, script_id)
        current = document.model_dump()
        for part in path.replace("]", "").replace("[", ".").split("."):
            current = current[int(part)] if part.isdigit() else current[part]
        try:
            text = await asyncio.to_thread(
                service.enhance_text,
                str(current),
                path,
                language,
                studio.settings.script_model,
            )
        except RuntimeError as e:
            raise GenerationError(str(e)) from e
        await studio.session.update_field(path, text)
        return text

    try:
        text = _run(_enhance())
    except (KeyError, IndexError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e
    console.print(Panel(text, title=path, border_style="green"))


@app.command()
def image(
    script_id: int = typer.Argument(..., help="Script ID"),
    act: int = typer.Argument(..., help="Act position (1-based)"),
    scene: int = typer.Argument(..., help="Scene position within the act (1-based)"),
    prompt: str | None = typer.Option(None, help="Image prompt (defaults to the scene)"),
    negative_prompt: str = typer.Option("", help="Things to keep out of the image"),
    aspect_ratio: AspectRatio | None = typer.Option(
        None,
        "--aspect-ratio",
        help="Aspect ratio (defaults to the script's)",
    ),
    api_key: str | None = typer.Option(
        None,
        envvar="GEMINI_API_KEY",
        help="Google Gemini API Key",
    ),
) -> None:
    """Generate an image for a scene."""
    studio = _studio()
    service = _get_service(studio, api_key)
    orchestrator = studio.orchestrator(service)

    async def _generate() -> bool:
        document = await _open(studio, script_id)
        locator = _locator(document, act, scene)
        final_prompt = prompt or default_image_prompt(document.scene_at(locator))
        with console.status("Generating image..."):
            return await orchestrator.generate_scene_image(
                locator,
                final_prompt,
                negative_prompt,
                aspect_ratio,
            )

    if not _run(_generate()):
        _fail_on_session_error(studio)
    console.print("[bold green]Image attached.[/bold green]")


@app.command()
def video(
    script_id: int = typer.Argument(..., help="Script ID"),
    act: int = typer.Argument(..., help="Act position (1-based)"),
    scene: int = typer.Argument(..., help="Scene position within the act (1-based)"),
    aspect_ratio: AspectRatio | None = typer.Option(
        None,
        "--aspect-ratio",
        help="Aspect ratio (defaults to the script's)",
    ),
    api_key: str | None = typer.Option(
        None,
        envvar="GEMINI_API_KEY",
        help="Google Gemini API Key",
    ),
) -> None:
    """Generate a video for a scene, seeded with its image if it has one."""
    studio = _studio()
    service = _get_service(studio, api_key)
    orchestrator = studio.orchestrator(service)

    async def _generate() -> bool:
        document = await _open(studio, script_id)
        locator = _locator(document, act, scene)
        with console.status("Generating video, this can take minutes..."):
            return await orchestrator.generate_scene_video(locator, aspect_ratio)

    if not _run(_generate()):
        _fail_on_session_error(studio)
    console.print("[bold green]Video attached.[/bold green]")


@app.command("remove-asset")
def remove_asset(
    script_id: int = typer.Argument(..., help="Script ID"),
    act: int = typer.Argument(..., help="Act position (1-based)"),
    scene: int = typer.Argument(..., help="Scene position within the act (1-based)"),
    kind: AssetKind = typer.Option(AssetKind.IMAGE, help="Asset kind"),
) -> None:
    """Delete the image or video attached to a scene."""
    studio = _studio()

    async def _remove() -> bool:
        document = await _open(studio, script_id)
        locator = _locator(document, act, scene)
        return await studio.maintainer.delete_scene_asset(locator, kind)

    if _run(_remove()):
        console.print(f"Removed {kind.value}.")
    else:
        _fail_on_session_error(studio)
        console.print(f"Scene has no {kind.value}.")


@app.command()
def gallery() -> None:
    """List every stored asset across all scripts, newest first."""
    studio = _studio()
    records = _run(studio.db.list_assets())
    if not records:
        console.print("No assets yet.")
        return
    table = Table(title="Assets")
    table.add_column("Kind")
    table.add_column("ID", justify="right")
    table.add_column("Script", justify="right")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    for record in records:
        table.add_row(
            record.kind.value,
            str(record.id),
            str(record.script_id),
            record.mime_type,
            f"{len(record.data)} B",
        )
    console.print(table)


@app.command("gallery-delete")
def gallery_delete(
    kind: AssetKind = typer.Argument(..., help="Asset kind"),
    asset_id: int = typer.Argument(..., help="Asset ID"),
) -> None:
    """Delete an asset from the gallery and clear the scenes pointing at it."""
    studio = _studio()

    async def _delete() -> bool:
        record = await studio.db.assets(kind).get(asset_id)
        if record is None:
            return True
        return await studio.maintainer.delete_gallery_asset(
            kind,
            asset_id,
            record.script_id,
        )

    if not _run(_delete()):
        _fail_on_session_error(studio)
    console.print(f"Deleted {kind.value} {asset_id}.")


@app.command()
def export(
    output: Path | None = typer.Option(None, help="Output file"),
) -> None:
    """Export every script to JSON (media is not included)."""
    studio = _studio()
    text = _run(export_plain(studio.db))
    output = output or Path(export_filename())
    output.write_text(text, encoding="utf-8")
    console.print(f"Output saved to: [underline]{output.absolute()}[/underline]")


@app.command("export-zip")
def export_zip(
    script_id: int = typer.Argument(..., help="Script ID"),
    output_dir: Path = typer.Option(Path("."), help="Directory to save the bundle"),
) -> None:
    """Export one script with its images and videos as a ZIP bundle."""
    studio = _studio()

    async def _bundle() -> tuple[str, bytes]:
        document = await _open(studio, script_id)
        return bundle_filename(document), await export_bundle(studio.db, document)

    name, data = _run(_bundle())
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / name
    path.write_bytes(data)
    console.print(f"Output saved to: [underline]{path.absolute()}[/underline]")


@app.command("import")
def import_scripts(
    input_file: Path = typer.Argument(..., help="JSON file with one or more scripts"),
) -> None:
    """Import scripts from a JSON export; all or nothing."""
    if not input_file.exists():
        console.print(f"[bold red]Error:[/bold red] File {input_file} not found.")
        raise typer.Exit(code=1)
    studio = _studio()
    ids = _run(import_plain(studio.db, input_file.read_bytes()))
    _run(studio.session.reload())
    console.print(f"Imported {len(ids)} script(s).")


@app.command("import-zip")
def import_zip(
    input_file: Path = typer.Argument(..., help="ZIP bundle made by export-zip"),
) -> None:
    """Import a bundled script together with its media."""
    if not input_file.exists():
        console.print(f"[bold red]Error:[/bold red] File {input_file} not found.")
        raise typer.Exit(code=1)
    studio = _studio()
    script_id = _run(import_bundle(studio.db, input_file.read_bytes()))
    studio.events.notify()
    console.print(f"Imported bundle as script {script_id}.")


@app.command()
def check() -> None:
    """Report scene references to missing or foreign assets."""
    studio = _studio()

    async def _check() -> int:
        problems = 0
        for document in await studio.session.load():
            for problem in await studio.maintainer.find_dangling_references(document):
                problems += 1
                act, scene = problem.locator
                console.print(
                    f"[yellow]Script {document.id} scene {act + 1}.{scene + 1}: "
                    f"{problem.kind.value} {problem.asset_id} {problem.reason}[/yellow]",
                )
        return problems

    problems = _run(_check())
    if problems:
        raise typer.Exit(code=1)
    console.print("[bold green]All references resolve.[/bold green]")


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", help="Confirm deleting everything"),
) -> None:
    """Delete every script and asset."""
    if not yes:
        console.print("Refusing to clear all data without --yes.")
        raise typer.Exit(code=1)
    studio = _studio()
    _run(studio.maintainer.clear_all())
    console.print("All data cleared.")


@config_app.command("set-key")
def set_key(key: str = typer.Argument(..., help="Gemini API key")) -> None:
    """Save the Gemini API key."""
    studio = _studio()
    try:
        studio.keys.set(key)
    except CineGenieError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e
    console.print(f"API key saved to {studio.keys.path}.")


@config_app.command("clear-key")
def clear_key() -> None:
    """Remove the saved Gemini API key."""
    studio = _studio()
    studio.keys.clear()
    console.print("API key removed.")


@config_app.command("show")
def show_config() -> None:
    """Show the effective settings."""
    studio = _studio()
    console.print(
        Panel(
            f"[bold]Data dir:[/bold] {studio.settings.data_dir}\n"
            f"[bold]Script model:[/bold] {studio.settings.script_model}\n"
            f"[bold]Image model:[/bold] {studio.settings.image_model}\n"
            f"[bold]Video model:[/bold] {studio.settings.video_model}\n"
            f"[bold]API key:[/bold] {'set' if studio.keys.is_set else 'not set'}",
            title="Configuration",
        ),
    )


if __name__ == "__main__":
    app()
