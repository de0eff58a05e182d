#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
vendorstats-report: view atoms stored by the sqlite sink.
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .atom_store import AtomStore

console = Console()


def _format_values(values: Dict[str, Any], max_fields: int = 8) -> str:
    items = [f"{k}={v}" for k, v in values.items()]
    if len(items) > max_fields:
        items = items[:max_fields] + [f"... (+{len(values) - max_fields})"]
    return ", ".join(items)


def build_atoms_table(rows: List[Dict[str, Any]], title: str = "Reported Atoms") -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Atom", style="cyan")
    table.add_column("Values", style="green")
    for row in rows:
        when = datetime.fromtimestamp(row['timestamp']).strftime('%Y-%m-%d %H:%M:%S')
        table.add_row(when, row['atom'], _format_values(row['values']))
    return table


def build_summary_table(counts: Dict[str, int]) -> Table:
    table = Table(title="Atom Counts", show_header=True)
    table.add_column("Atom", style="cyan")
    table.add_column("Rows", style="green", justify="right")
    for name, count in sorted(counts.items()):
        table.add_row(name, str(count))
    return table


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Show atoms stored by the vendorstats sqlite sink",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('--db-path', default='data/vendorstats.db', help='Path to SQLite database file')
    parser.add_argument('--atom', default=None, help='Only show this atom')
    parser.add_argument('--limit', type=int, default=50, help='Maximum rows to show')
    parser.add_argument('--summary', action='store_true', help='Show per-atom row counts')
    args = parser.parse_args(argv)

    if not Path(args.db_path).exists():
        console.print(f"[red]Error: database {args.db_path} not found[/red]")
        return 1

    store = AtomStore(args.db_path)
    try:
        if args.summary:
            counts = store.get_atom_counts()
            if not counts:
                console.print("[yellow]No atoms stored yet[/yellow]")
                return 0
            console.print(build_summary_table(counts))
            console.print(Panel(f"{sum(counts.values())} atoms in {args.db_path}", border_style="blue"))
            return 0

        rows = store.query_atoms(atom_name=args.atom, limit=args.limit)
        if not rows:
            console.print("[yellow]No matching atoms[/yellow]")
            return 0
        console.print(build_atoms_table(rows, title=f"Reported Atoms ({args.atom or 'all'})"))
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
