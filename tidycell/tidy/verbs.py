"""
Relational verbs over a Dataset.

Every verb takes a Dataset and returns a new one (or, for the verbs that
summarise, a polars DataFrame). Predicates and expressions are polars
expressions evaluated against the tidy table: stored cell metadata plus the
embedding coordinate columns. Row-level verbs only compose index views; the
assay matrices are never read or copied here.
"""

import re
import warnings
from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np
import polars as pl
from loguru import logger

from tidycell.core.dataset import Dataset
from tidycell.core.errors import (
    CardinalityMismatch,
    ColumnNotFound,
    DuplicateCellId,
    EmptySelection,
    PatternMismatch,
)
from tidycell.core.metadata import CELL_ID, spread


def referenced_columns(expression: pl.Expr) -> list[str]:
    """Column names an expression reads, in first-use order"""
    names = []
    for name in expression.meta.root_names():
        if name not in names:
            names.append(name)
    return names


def _equality_predicate(column: str, value: Any) -> pl.Expr:
    if isinstance(value, list | tuple | set):
        return pl.col(column).is_in(list(value))
    return pl.col(column) == value


def write_column(
    ds: Dataset, values: pl.Series, derived_from: Sequence[str] = ()
) -> Dataset:
    """Write a column computed at the view back into a new cell table"""
    name = values.name
    if name == CELL_ID:
        raise ValueError(f"'{CELL_ID}' is reserved and cannot be written")
    if name in ds.embeddings.columns():
        raise ValueError(
            f"Column '{name}' is an embedding coordinate of "
            f"'{ds.embeddings.owner(name)}' and cannot be overwritten"
        )
    full = spread(values, ds.view.positions, ds.n_backing_cells)
    cells = ds.cell_metadata.with_column(full, derived_from=derived_from)
    projection = ds.projection
    if projection is not None and name not in projection:
        projection = projection + (name,)
    return ds._derive(cells=cells, projection=projection)


def filter(ds: Dataset, *predicates: pl.Expr, **equals: Any) -> Dataset:
    """
    Keep the cells for which every predicate holds.

    Args:
        ds: Dataset to filter
        *predicates: polars boolean expressions over metadata/embedding columns
        **equals: Shorthand equality filters; list values become ``is_in``

    Returns:
        Dataset over the retained cells, in their current order. Null
        predicate results count as false.

    Raises:
        ColumnNotFound: If a predicate references an undefined column

    Examples:
        >>> t_cells = filter(ds, pl.col("cell_type") == "T cell")
        >>> big = filter(ds, pl.col("n_genes") > 500, batch=["b1", "b2"])
        >>> right = filter(ds, pl.col("UMAP_1") > 0)
    """
    predicates = [*predicates, *(_equality_predicate(k, v) for k, v in equals.items())]
    if not predicates:
        return ds

    needed = []
    for predicate in predicates:
        for name in referenced_columns(predicate):
            if name not in needed:
                needed.append(name)
    ds.resolve_columns(needed)

    frame = ds.frame([CELL_ID, *[c for c in needed if c != CELL_ID]])
    keep = frame.with_row_index("__row").filter(*predicates)["__row"].to_numpy()
    result = ds.take(keep.astype(np.int64))

    logger.debug(f"filter: {ds.n_cells} -> {result.n_cells} cells")
    if result.is_empty:
        logger.warning("filter selected zero cells")
        warnings.warn(
            "filter selected zero cells", EmptySelection, stacklevel=2
        )
    return result


def select(ds: Dataset, *columns: str, all_columns: bool = False) -> Dataset:
    """
    Project the tidy table onto the named columns.

    Names resolve against every stored and computed column, not only the
    ones visible after an earlier select, so a dropped embedding coordinate
    can be brought back by naming it. ``all_columns=True`` clears the
    projection. ``cell_id`` is always kept as the first column.

    Raises:
        ColumnNotFound: If a name is not a column of the dataset
    """
    if all_columns:
        return ds._derive(projection=None)
    if not columns:
        raise ValueError("select() needs at least one column or all_columns=True")
    ds.resolve_columns(columns)
    projection = [CELL_ID]
    for column in columns:
        if column not in projection:
            projection.append(column)
    return ds._derive(projection=tuple(projection))


def mutate(ds: Dataset, name: str, expression: pl.Expr | Any) -> Dataset:
    """
    Add or overwrite a cell metadata column computed from existing columns.

    The expression is evaluated over the cells in view, so aggregates such as
    ``pl.col("x").mean()`` use the view's cells and broadcast.

    Cycles are judged on recorded lineage, not on values. Reading ``name``
    directly is an in-place update and is allowed. Reading any other column
    whose lineage contains ``name`` is rejected even though its values are
    already computed: ``mutate(ds, "total", pl.col("score") * 2)`` followed by
    ``mutate(ds, "score", pl.col("total") + 1)`` raises. Write such an update
    as one expression over ``name``, e.g. ``pl.col("score") * 2 + 1``.

    Args:
        ds: Dataset
        name: Column to write
        expression: polars expression, or a literal value

    Raises:
        ColumnNotFound: If the expression reads an undefined column
        DependencyCycle: If the new column would depend on itself

    Examples:
        >>> ds = mutate(ds, "log_counts", pl.col("total_counts").log1p())
        >>> ds = mutate(ds, "cd8_ratio", pl.col("CD8A") / (pl.col("CD3D") + 1))
    """
    if not isinstance(expression, pl.Expr):
        expression = pl.lit(expression)
    sources = referenced_columns(expression)
    ds.resolve_columns(sources)
    ds.cell_metadata.check_acyclic(name, sources)

    frame = ds.frame([CELL_ID, *[c for c in sources if c != CELL_ID]])
    values = frame.with_columns(expression.alias(name))[name]
    logger.debug(f"mutate: {name} <- {sources}")
    return write_column(ds, values, derived_from=sources)


def arrange(
    ds: Dataset, column: str | Sequence[str], descending: bool = False
) -> Dataset:
    """
    Reorder cells by one or more columns.

    The sort is stable, so ties keep their current order. Nulls sort last.

    Raises:
        ColumnNotFound: If a sort column does not exist
    """
    columns = [column] if isinstance(column, str) else list(column)
    ds.resolve_columns(columns)
    order = (
        ds.frame(columns)
        .with_row_index("__row")
        .sort(columns, descending=descending, nulls_last=True, maintain_order=True)[
            "__row"
        ]
        .to_numpy()
    )
    return ds.take(order.astype(np.int64))


def unite(
    ds: Dataset,
    new_column: str,
    components: Sequence[str],
    separator: str = "_",
    remove: bool = True,
) -> Dataset:
    """
    Paste several columns into one string column.

    Values must be splittable again: a null component, or a component value
    containing the separator, is rejected.

    Args:
        ds: Dataset
        new_column: Name of the united column
        components: Columns to paste, in order
        separator: String placed between components
        remove: Drop the stored component columns afterwards

    Raises:
        ColumnNotFound: If a component does not exist
        PatternMismatch: Naming the first cell whose component is null or
            contains the separator
    """
    components = list(components)
    if not components:
        raise ValueError("unite() needs at least one component column")
    ds.resolve_columns(components)

    frame = ds.frame([CELL_ID, *[c for c in components if c != CELL_ID]])
    for component in components:
        text = frame[component].cast(pl.Utf8)
        bad = text.is_null() | text.str.contains(separator, literal=True)
        if bad.any():
            row = int(bad.arg_true()[0])
            raise PatternMismatch(
                component,
                frame[CELL_ID][row],
                frame[component][row],
                f"non-null value without {separator!r}",
            )

    values = frame.select(
        pl.concat_str(
            [pl.col(c).cast(pl.Utf8) for c in components], separator=separator
        ).alias(new_column)
    )[new_column]
    result = write_column(ds, values, derived_from=components)

    if remove:
        stored = [
            c for c in components if c in result.cell_metadata and c not in (CELL_ID, new_column)
        ]
        result = _drop_columns(result, stored)
    return result


def extract(
    ds: Dataset,
    column: str,
    new_columns: Sequence[str],
    pattern: str,
    remove: bool = False,
) -> Dataset:
    """
    Split a string column into new columns with a regular expression.

    The pattern uses polars (Rust regex) syntax, which has no lookaround or
    backreferences, and needs one capture group per new column. Every cell
    in view must match.

    Raises:
        ColumnNotFound: If ``column`` does not exist
        PatternMismatch: Naming the first cell whose value does not match
        ValueError: If the pattern is invalid or has the wrong number of groups

    Examples:
        >>> ds = extract(ds, "sample", ["donor", "day"], r"^(D\\d+)_day(\\d+)$")
    """
    new_columns = list(new_columns)
    n_groups = _capture_groups(pattern)
    if n_groups != len(new_columns):
        raise ValueError(
            f"Pattern {pattern!r} has {n_groups} groups for {len(new_columns)} columns"
        )
    ds.resolve_columns([column])

    frame = ds.frame([CELL_ID] if column == CELL_ID else [CELL_ID, column])
    text = frame[column].cast(pl.Utf8)
    matched = text.str.contains(pattern).fill_null(False)
    if not matched.all():
        row = int((~matched).arg_true()[0])
        raise PatternMismatch(column, frame[CELL_ID][row], frame[column][row], pattern)

    result = ds
    for group, new_column in enumerate(new_columns, start=1):
        values = text.str.extract(pattern, group).alias(new_column)
        result = write_column(result, values, derived_from=[column])

    if remove and column in result.cell_metadata and column not in new_columns:
        if column == CELL_ID:
            raise ValueError(f"'{CELL_ID}' cannot be removed")
        result = _drop_columns(result, [column])
    return result


def _capture_groups(pattern: str) -> int:
    """Number of capture groups, checked against the engine that matches"""
    try:
        pl.Series([""], dtype=pl.Utf8).str.contains(pattern)
    except pl.exceptions.PolarsError as e:
        raise ValueError(f"Invalid regular expression {pattern!r}: {e}") from e
    try:
        return re.compile(pattern).groups
    except re.error as e:
        raise ValueError(f"Cannot count groups of {pattern!r}: {e}") from e


def _drop_columns(ds: Dataset, columns: Sequence[str]) -> Dataset:
    if not columns:
        return ds
    cells = ds.cell_metadata.drop(columns)
    projection = ds.projection
    if projection is not None:
        projection = tuple(c for c in projection if c not in columns)
    return ds._derive(cells=cells, projection=projection)


def rename(ds: Dataset, mapping: Mapping[str, str]) -> Dataset:
    """
    Rename stored cell metadata columns.

    Raises:
        ColumnNotFound: If an old name is not a column
        ValueError: For ``cell_id``, embedding coordinates, or a new name that
            is already taken
    """
    existing = set(ds.all_columns())
    for old, new in mapping.items():
        if old not in existing:
            raise ColumnNotFound(old, ds.all_columns())
        if old in ds.embeddings.columns():
            raise ValueError(
                f"Column '{old}' is an embedding coordinate and cannot be renamed"
            )
        if new in existing and new not in mapping:
            raise ValueError(f"Cannot rename '{old}' to '{new}': column exists")
    cells = ds.cell_metadata.rename(mapping)
    projection = ds.projection
    if projection is not None:
        projection = tuple(mapping.get(c, c) for c in projection)
    return ds._derive(cells=cells, projection=projection)


def slice_rows(ds: Dataset, selector) -> Dataset:
    """
    Positional subset relative to the current view.

    Raises:
        DuplicateCellId: If the selector picks a cell more than once
        IndexError: If a position is out of range
    """
    result = ds.take(selector)
    positions = result.view.positions
    if len(np.unique(positions)) != len(positions):
        ids = result.cell_metadata.column(CELL_ID)[positions]
        raise DuplicateCellId(sorted(set(ids.filter(ids.is_duplicated()).to_list())))
    return result


def pull(ds: Dataset, column: str) -> pl.Series:
    """One column of the tidy table as a polars Series"""
    ds.resolve_columns([column])
    return ds.frame([column])[column]


def distinct(ds: Dataset, *columns: str) -> pl.DataFrame:
    """Distinct value combinations, in order of first appearance"""
    if not columns:
        raise ValueError("distinct() needs at least one column")
    ds.resolve_columns(columns)
    return ds.frame(list(columns)).unique(maintain_order=True)


def count(ds: Dataset, *columns: str, name: str = "n") -> pl.DataFrame:
    """
    Number of cells per value combination.

    Without columns, returns a single-row frame with the total.
    """
    if not columns:
        return pl.DataFrame({name: [ds.n_cells]}, schema={name: pl.UInt32})
    ds.resolve_columns(columns)
    return ds.frame(list(columns)).group_by(list(columns), maintain_order=True).len(
        name=name
    )


def left_join(ds: Dataset, table: pl.DataFrame, on: str | Sequence[str]) -> Dataset:
    """
    Attach columns of an external table to the cells by key.

    Cells without a match get nulls. The right table must have unique keys so
    the join cannot change the number of cells.

    Raises:
        ColumnNotFound: If a key is missing on either side
        CardinalityMismatch: If the right table repeats a key
        ValueError: If a right-hand column already exists on the dataset
    """
    keys = [on] if isinstance(on, str) else list(on)
    ds.resolve_columns(keys)
    for key in keys:
        if key not in table.columns:
            raise ColumnNotFound(key, table.columns)
    n_unique = table.select(keys).unique().height
    if n_unique != table.height:
        raise CardinalityMismatch(
            f"Unique keys {keys} in joined table", table.height, n_unique
        )
    incoming = [c for c in table.columns if c not in keys]
    clash = [c for c in incoming if c in set(ds.all_columns())]
    if clash:
        raise ValueError(f"Joined columns already exist on the dataset: {clash}")

    joined = (
        ds.frame(keys)
        .with_row_index("__row")
        .join(table, on=keys, how="left")
        .sort("__row")
    )
    result = ds
    for column in incoming:
        result = write_column(result, joined[column], derived_from=keys)
    logger.debug(f"left_join: attached {incoming} on {keys}")
    return result


def sample_n(
    ds: Dataset, n: int, seed: int | None = None, replace: bool = False
) -> Dataset:
    """
    Random subset of ``n`` cells.

    Sampling with replacement is not possible: it would repeat cell ids.

    Raises:
        CardinalityMismatch: If ``n`` exceeds the number of cells
    """
    if replace:
        raise ValueError("sample_n cannot sample with replacement: cell ids must be unique")
    if n > ds.n_cells:
        raise CardinalityMismatch("Sample size", f"<= {ds.n_cells}", n)
    rng = np.random.default_rng(seed)
    return ds.take(rng.choice(ds.n_cells, size=n, replace=False).astype(np.int64))
