"""Rich rendering helpers for ingestion results."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from .ingestion.schemas import IngestionTelemetry

TABLE_ROW_STYLES = ["white", "yellow"]


def render_issues(telemetries: list[IngestionTelemetry], console: Console) -> None:
    """Render every issue across subjects as one table."""
    rows = [(telemetry.subject_id, issue) for telemetry in telemetries for issue in telemetry.issues]
    if not rows:
        console.print("No ingestion issues.")
        return

    table = Table(title="Ingestion Issues", title_justify="left")
    table.add_column("Subject", justify="left")
    table.add_column("Credential", justify="left")
    table.add_column("Code", justify="left")
    table.add_column("Status", justify="right")
    table.add_column("Message", justify="left", overflow="fold")

    for index, (subject_id, issue) in enumerate(rows):
        style = TABLE_ROW_STYLES[index % len(TABLE_ROW_STYLES)]
        table.add_row(
            subject_id,
            issue.credential_ref,
            issue.code or "-",
            str(issue.status) if issue.status is not None else "-",
            issue.message,
            style=style,
        )
    console.print(table)
