from collections.abc import Iterable, Mapping, Sequence

import numpy as np
import polars as pl

from tidycell.core.errors import (
    ColumnNotFound,
    DependencyCycle,
    DuplicateCellId,
    DuplicateFeature,
)

CELL_ID = "cell_id"
FEATURE_ID = "feature_id"


class MetadataTable:
    """
    Row-indexed attribute table keyed by a unique id column.

    The table wraps a polars DataFrame whose first column is the id column
    (``cell_id`` for cells, ``feature_id`` for features). Rows are in backing
    storage order; datasets read them through an index view. Every mutating
    operation returns a new table, and polars shares the untouched column
    buffers between the old and the new frame.

    The table also records column lineage: for each computed column, the set of
    columns it was derived from. ``check_acyclic`` uses it to reject
    expressions that would make a column depend on itself.
    """

    def __init__(
        self,
        frame: pl.DataFrame,
        id_column: str,
        lineage: Mapping[str, frozenset[str]] | None = None,
    ):
        if id_column not in frame.columns:
            raise ColumnNotFound(id_column, frame.columns)
        frame = frame.with_columns(pl.col(id_column).cast(pl.Utf8))
        # Id column first
        frame = frame.select([id_column, *[c for c in frame.columns if c != id_column]])

        if frame[id_column].null_count():
            raise ValueError(f"Id column '{id_column}' contains null values")
        if frame[id_column].n_unique() != frame.height:
            duplicates = (
                frame.group_by(id_column)
                .len()
                .filter(pl.col("len") > 1)[id_column]
                .sort()
                .to_list()
            )
            if id_column == FEATURE_ID:
                raise DuplicateFeature(duplicates)
            raise DuplicateCellId(duplicates)

        self._frame = frame
        self._id_column = id_column
        self._lineage = dict(lineage or {})

    @classmethod
    def from_ids(cls, ids: Sequence[str], id_column: str) -> "MetadataTable":
        """Table with only the id column"""
        return cls(pl.DataFrame({id_column: [str(i) for i in ids]}), id_column)

    @property
    def frame(self) -> pl.DataFrame:
        return self._frame

    @property
    def id_column(self) -> str:
        return self._id_column

    @property
    def ids(self) -> list[str]:
        return self._frame[self._id_column].to_list()

    @property
    def columns(self) -> list[str]:
        return list(self._frame.columns)

    @property
    def lineage(self) -> dict[str, frozenset[str]]:
        return dict(self._lineage)

    @property
    def height(self) -> int:
        return self._frame.height

    def __len__(self) -> int:
        return self._frame.height

    def __contains__(self, column: str) -> bool:
        return column in self._frame.columns

    def column(self, name: str) -> pl.Series:
        """
        Get one column in backing order.

        Raises:
            ColumnNotFound: If the column does not exist
        """
        if name not in self._frame.columns:
            raise ColumnNotFound(name, self.columns)
        return self._frame[name]

    def take(self, positions: np.ndarray) -> pl.DataFrame:
        """Rows at the given backing positions, as a frame"""
        return self._frame[positions]

    def subset(self, positions: np.ndarray) -> "MetadataTable":
        """New table materialized at the given backing positions"""
        return MetadataTable(self._frame[positions], self._id_column, self._lineage)

    def with_column(
        self, series: pl.Series, derived_from: Iterable[str] = ()
    ) -> "MetadataTable":
        """
        Add or replace a column.

        Args:
            series: Values in backing order, named after the column
            derived_from: Columns the new values were computed from

        Returns:
            New MetadataTable
        """
        name = series.name
        if name == self._id_column:
            raise ValueError(f"Id column '{name}' cannot be overwritten")
        if len(series) != self._frame.height:
            raise ValueError(
                f"Column '{name}' length {len(series)} doesn't match "
                f"{self._frame.height} rows"
            )
        lineage = dict(self._lineage)
        sources = frozenset(derived_from)
        if sources:
            # A self overwrite keeps what the old values were derived from
            expanded = set(sources - {name})
            if name in sources:
                expanded |= self._lineage.get(name, frozenset())
            lineage[name] = frozenset(expanded)
        else:
            lineage.pop(name, None)
        return MetadataTable(
            self._frame.with_columns(series), self._id_column, lineage
        )

    def drop(self, names: Iterable[str]) -> "MetadataTable":
        names = list(names)
        for name in names:
            if name == self._id_column:
                raise ValueError(f"Id column '{name}' cannot be dropped")
            if name not in self._frame.columns:
                raise ColumnNotFound(name, self.columns)
        lineage = {k: v for k, v in self._lineage.items() if k not in names}
        return MetadataTable(self._frame.drop(names), self._id_column, lineage)

    def rename(self, mapping: Mapping[str, str]) -> "MetadataTable":
        for old, new in mapping.items():
            if old == self._id_column or new == self._id_column:
                raise ValueError(f"Id column '{self._id_column}' cannot be renamed")
            if old not in self._frame.columns:
                raise ColumnNotFound(old, self.columns)
        lineage = {
            mapping.get(k, k): frozenset(mapping.get(s, s) for s in v)
            for k, v in self._lineage.items()
        }
        return MetadataTable(self._frame.rename(dict(mapping)), self._id_column, lineage)

    def dependencies(self, column: str) -> set[str]:
        """Every column ``column`` was transitively derived from"""
        seen: set[str] = set()
        stack = list(self._lineage.get(column, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._lineage.get(current, ()))
        return seen

    def check_acyclic(self, name: str, sources: Iterable[str]) -> None:
        """
        Reject a computed column whose sources were derived from it.

        Reading ``name`` itself is an in-place update and is allowed. Any
        other source whose lineage reaches ``name`` is a cycle, whether or not
        its values were computed before the overwrite.

        Raises:
            DependencyCycle: If a source column depends on ``name``
        """
        for source in sources:
            if source == name:
                continue
            if name in self.dependencies(source):
                raise DependencyCycle(name, [name, source, name])

    def __repr__(self) -> str:
        return f"MetadataTable({self._id_column}, {self.height} rows, {self.columns})"


def spread(values: pl.Series, positions: np.ndarray, n_backing: int) -> pl.Series:
    """
    Lay out values computed at an index view in backing order.

    Backing rows outside the view are null. The identity view returns the
    values unchanged.

    Args:
        values: One value per retained position, in view order
        positions: Backing positions of the view
        n_backing: Backing table height

    Returns:
        Series of length ``n_backing``
    """
    if len(values) != len(positions):
        raise ValueError(
            f"Got {len(values)} values for a view of {len(positions)} cells"
        )
    if len(positions) == n_backing and np.array_equal(positions, np.arange(n_backing)):
        return values
    # Gather from the values plus one trailing null
    inverse = np.full(n_backing, len(values), dtype=np.int64)
    inverse[positions] = np.arange(len(values))
    return values.extend_constant(None, 1).gather(inverse)
