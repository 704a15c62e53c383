"""tidycell Command Line Interface."""

import sys
from pathlib import Path

import polars as pl
import typer
from loguru import logger

app = typer.Typer(
    name="tidycell",
    help="tidycell - tidy verbs over multi-assay single-cell datasets",
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug logging on stderr"
    ),
):
    """Configure logging for every command."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _load(dataset_path: str):
    """Read an .h5ad file into a Dataset, exiting on failure."""
    from tidycell.integrations.anndata import read_h5ad

    if not Path(dataset_path).exists():
        typer.echo(f"❌ Dataset not found: {dataset_path}")
        raise typer.Exit(1) from None
    try:
        return read_h5ad(dataset_path)
    except Exception as e:
        typer.echo(f"❌ Failed to load dataset: {e}")
        raise typer.Exit(1) from e


@app.command()
def version():
    """Show tidycell version."""
    import tidycell

    typer.echo(f"tidycell version: {getattr(tidycell, '__version__', 'unknown')}")


@app.command()
def info(
    dataset_path: str = typer.Argument(..., help="Path to .h5ad file"),
    mode: str = typer.Option("tidy", "--mode", "-m", help="Display mode: tidy or native"),
    rows: int = typer.Option(10, "--rows", "-n", help="Rows shown in tidy mode"),
):
    """Show a dataset in tidy or native form."""
    from tidycell.display import DisplayContext, DisplayMode, print_dataset

    try:
        display = DisplayMode(mode)
    except ValueError:
        typer.echo(f"❌ Unknown mode '{mode}'. Use 'tidy' or 'native'.")
        raise typer.Exit(1) from None

    ds = _load(dataset_path)
    print_dataset(ds, DisplayContext(mode=display, max_rows=rows))


@app.command()
def count(
    dataset_path: str = typer.Argument(..., help="Path to .h5ad file"),
    columns: list[str] = typer.Argument(..., help="Columns to count by"),
):
    """Count cells per value combination."""
    from tidycell.core.errors import ColumnNotFound

    ds = _load(dataset_path)
    try:
        result = ds.count(*columns)
    except ColumnNotFound as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(1) from e
    typer.echo("📊 Cell counts:")
    with pl.Config(tbl_rows=-1):
        typer.echo(str(result))


@app.command()
def nest(
    dataset_path: str = typer.Argument(..., help="Path to .h5ad file"),
    key: str = typer.Argument(..., help="Column to nest by"),
):
    """Nest cells by a key and show group sizes."""
    from tidycell.core.errors import ColumnNotFound
    from tidycell.tidy.nesting import group_sizes

    ds = _load(dataset_path)
    try:
        nested = ds.nest(key)
    except ColumnNotFound as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(1) from e
    typer.echo(f"🧩 {len(nested)} groups by '{key}':")
    with pl.Config(tbl_rows=-1):
        typer.echo(str(group_sizes(nested)))


@app.command()
def features(
    dataset_path: str = typer.Argument(..., help="Path to .h5ad file"),
    feature_ids: list[str] = typer.Argument(..., help="Feature ids to join"),
    assay: str | None = typer.Option(None, "--assay", "-a", help="Assay to read"),
    long: bool = typer.Option(False, "--long", "-l", help="Long (stacked) output"),
    output: str | None = typer.Option(
        None, "--output", "-o", help="Output file path (CSV)"
    ),
    limit: int = typer.Option(10, "--limit", help="Rows shown when not writing"),
):
    """Join feature values onto cells."""
    from tidycell.core.errors import TidyCellError

    ds = _load(dataset_path)
    try:
        joined = ds.join_features(feature_ids, shape="long" if long else "wide", assay=assay)
    except TidyCellError as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(1) from e

    table = joined if isinstance(joined, pl.DataFrame) else joined.table()
    if output:
        table.write_csv(output)
        typer.echo(f"✅ Results saved to {output}")
    else:
        typer.echo(f"🧬 {table.height} rows:")
        typer.echo(str(table.head(limit)))


if __name__ == "__main__":
    app()
