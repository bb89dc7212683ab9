"""
Case Data Commands

Load client profiles, users and offices into the local record store.
"""
import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from record_store import get_record_store


console = Console()


@click.group()
def cases():
    """Manage case records."""
    pass


@cases.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def cases_import(path: Path):
    """
    Import a JSON file of the form
    {"cases": [...], "users": [...], "offices": [...]}.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    store = get_record_store()

    for office in data.get("offices", []):
        store.add_office(office)
    for user in data.get("users", []):
        store.add_user(user)
    for case in data.get("cases", []):
        store.add_case(case)

    console.print(
        f"[green]Imported {len(data.get('cases', []))} cases, "
        f"{len(data.get('users', []))} users, {len(data.get('offices', []))} offices[/green]"
    )


@cases.command("list")
def cases_list():
    """List stored cases."""
    records = get_record_store().list_cases()

    if not records:
        console.print("[yellow]No cases found. Use 'cases import' to load some.[/yellow]")
        return

    table = Table(title="Cases")
    table.add_column("ID", style="dim")
    table.add_column("Client", style="cyan")
    table.add_column("Case Number")

    for record in records:
        table.add_row(
            str(record.get("id")),
            record.get("name") or "",
            (record.get("immigration_case") or {}).get("case_number") or "",
        )

    console.print(table)
