#!/usr/bin/env python3
"""
Case Document Generator

Command line interface for the document generation engine.
Provides commands for:
- Tag reference for template authors
- Inspecting a .docx template before upload
- Managing the template library
- Importing case data
- Generating documents for a case
"""
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from blob_store import get_blob_store
from commands.cases_cmd import cases
from commands.templates_cmd import templates
from config import LOG_LEVEL, LOGS_DIR, OUTPUT_DIR
from errors import DocumentGenerationError, RenderMismatch
from generation_pipeline import GenerationPipeline, GenerationRequest
from record_store import get_record_store
from tag_extractor import inspect_template
from tag_map import LOOP_REFERENCE, TAG_REFERENCE, get_entry
from template_library import TemplateLibrary
from template_renderer import preview_text


console = Console()


# ============================================================================
# CLI Group
# ============================================================================

@click.group()
@click.version_option(version="1.0.0")
def cli():
    """
    Case Document Generator

    Fill .docx templates with client and case data.
    """
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        filename=str(LOGS_DIR / "casegen.log"),
    )


cli.add_command(templates)
cli.add_command(cases)


# ============================================================================
# Template Authoring
# ============================================================================

@cli.command("tags")
def tags_reference():
    """Show the tags available to template authors."""
    for group, entries in TAG_REFERENCE.items():
        table = Table(title=group)
        table.add_column("Tag", style="cyan")
        table.add_column("Description")
        for tag, description in entries:
            table.add_row(f"{{{{{tag}}}}}", description)
        console.print(table)

    table = Table(title="Loops")
    table.add_column("Block", style="cyan")
    table.add_column("Tags inside the block")
    for block, fields in LOOP_REFERENCE.items():
        table.add_row(f"{{#{block}}} ... {{/{block}}}", ", ".join(fields))
    console.print(table)

    console.print(Panel(
        "{#primary_assignee} ... {/primary_assignee}  shown only when set\n"
        "{^client.email} ... {/client.email}  shown only when empty",
        title="Conditional blocks",
    ))


@cli.command("inspect")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def inspect_cmd(path: Path):
    """List the tags used by a local .docx template."""
    try:
        inspection = inspect_template(path.read_bytes())
    except DocumentGenerationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    table = Table(title=f"Tags in {path.name}")
    table.add_column("Tag", style="cyan")
    table.add_column("Kind")
    table.add_column("Checked before generation")

    for tag in inspection.scalar_tags:
        entry = get_entry(tag)
        table.add_row(tag, "value", f"[green]{entry.label}[/green]" if entry else "")
    for tag in inspection.block_tags:
        entry = get_entry(tag)
        table.add_row(tag, "block", f"[green]{entry.label}[/green]" if entry else "")

    console.print(table)
    console.print(
        f"{len(inspection.all_tags)} tags, {len(inspection.mapped_tags)} checked against the client profile"
    )


# ============================================================================
# Generation
# ============================================================================

@cli.command("generate")
@click.argument("case_id")
@click.argument("template_id")
@click.option("--output", "output_dir", type=click.Path(file_okay=False, path_type=Path),
              default=None, help="Directory for the generated file")
@click.option("--no-log", is_flag=True, help="Do not add a 'Generated document' entry to the case log")
@click.option("--archive", is_flag=True, help="Also upload the document to the case files")
@click.option("--preview", is_flag=True, help="Print the document text after generation")
def generate_cmd(case_id: str, template_id: str, output_dir: Optional[Path],
                 no_log: bool, archive: bool, preview: bool):
    """Generate a document from TEMPLATE_ID for CASE_ID."""
    record_store = get_record_store()
    blob_store = get_blob_store()
    library = TemplateLibrary(record_store, blob_store)
    pipeline = GenerationPipeline(record_store, blob_store)

    try:
        template = library.get_template(template_id)
        result = pipeline.start(GenerationRequest(
            template=template,
            case_id=case_id,
            add_log_entry=not no_log,
            generated_by="cli",
            archive=archive,
        ))

        if result is None:
            console.print(Panel(
                "Some fields used by this template are empty in the client profile.\n"
                "Fill them in to continue.",
                title=f"Missing information: {template.name}",
            ))
            values = {}
            for missing in pipeline.missing_fields:
                values[missing.path] = Prompt.ask(f"[cyan]{missing.label}[/cyan]", default="")
            persist = Confirm.ask("Save these values to the client profile?", default=False)
            result = pipeline.resume(values, persist=persist)

    except RenderMismatch as e:
        console.print(f"[red]{e.user_message()}[/red]")
        sys.exit(1)
    except DocumentGenerationError as e:
        console.print(f"[red]Generation failed ({e.stage}): {e}[/red]")
        sys.exit(1)

    target_dir = output_dir or OUTPUT_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / result.file_name
    target.write_bytes(result.document)
    console.print(f"[green]Document generated:[/green] {target}")

    if result.record_updated:
        console.print(f"[green]Client profile updated:[/green] {', '.join(result.changed_labels)}")
    for warning in result.warnings:
        console.print(f"[yellow]Warning ({warning.kind}): {warning.message}[/yellow]")

    if result.archive_url:
        console.print(f"Archived to {result.archive_url}")

    if preview:
        text = preview_text(result.document)
        if text:
            console.print(Panel(text, title=result.file_name))


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
