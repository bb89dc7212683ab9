"""
Template Library Commands

Commands for listing, uploading, and deleting document templates.
"""
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from blob_store import get_blob_store
from errors import DocumentGenerationError
from record_store import get_record_store
from template_library import TemplateCategory, TemplateLibrary


console = Console()


def _library() -> TemplateLibrary:
    return TemplateLibrary(get_record_store(), get_blob_store())


@click.group()
def templates():
    """Manage document templates."""
    pass


@templates.command("list")
@click.option("--search", help="Filter by name or description")
def templates_list(search: Optional[str]):
    """List templates, most used first."""
    groups = _library().grouped(search=search)

    if not any(groups.values()):
        console.print("[yellow]No templates found. Use 'templates upload' to add one.[/yellow]")
        return

    for category, items in groups.items():
        if not items:
            continue
        table = Table(title=f"{category.title()} Templates")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Description")
        table.add_column("Used", justify="right")

        for t in items:
            table.add_row(t.id, t.name, (t.description or "")[:40], str(t.usage_count))

        console.print(table)


@templates.command("upload")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--name", help="Template name (defaults to the file name)")
@click.option("--description", default="", help="Short description")
@click.option("--standard", is_flag=True, help="Register as a standard template")
@click.option("--by", "uploaded_by", default=None, help="Uploader name")
def templates_upload(path: Path, name: Optional[str], description: str, standard: bool,
                     uploaded_by: Optional[str]):
    """Upload a .docx template."""
    category = TemplateCategory.STANDARD if standard else TemplateCategory.CUSTOM
    try:
        reference = _library().upload_template(
            name=name or path.stem,
            data=path.read_bytes(),
            description=description,
            uploaded_by=uploaded_by,
            category=category,
        )
    except DocumentGenerationError as e:
        console.print(f"[red]Upload failed: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]Template uploaded:[/green] {reference.name} ({reference.id})")


@templates.command("delete")
@click.argument("template_id")
@click.confirmation_option(prompt="Delete this template?")
def templates_delete(template_id: str):
    """Delete a custom template."""
    try:
        reference = _library().delete_template(template_id)
    except DocumentGenerationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    console.print(f"[green]Deleted template '{reference.name}'[/green]")
