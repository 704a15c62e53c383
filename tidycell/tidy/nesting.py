"""
Grouping and nesting engine.

``nest`` partitions the cells of a dataset by key into an outer table whose
payload column holds one complete Dataset per group. ``NestedTable.map``
runs a function over each group and stores whatever it returns as a tagged
payload in a new outer column. ``unnest`` concatenates the group datasets
back into one.

Each nested Dataset has its own index view over the shared read-only backing
storage, so groups can be processed concurrently: results are written only
into the new outer column, never into shared storage.
"""

from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

import numpy as np
import polars as pl
import scipy.sparse
from loguru import logger

from tidycell.config import get_config
from tidycell.core.dataset import Dataset
from tidycell.core.embeddings import Embedding
from tidycell.core.errors import (
    CardinalityMismatch,
    ColumnNotFound,
    DuplicateCellId,
    PayloadKindError,
)
from tidycell.core.index_view import IndexView
from tidycell.core.interfaces import Renderer
from tidycell.core.metadata import CELL_ID


class PayloadKind(str, Enum):
    """Cases of the nested payload union"""

    DATASET = "dataset"
    SCALAR = "scalar"
    ARTIFACT = "artifact"


@dataclass(frozen=True)
class DatasetPayload:
    dataset: Dataset
    kind: ClassVar[PayloadKind] = PayloadKind.DATASET

    def summary(self) -> str:
        return f"<Dataset: {self.dataset.n_cells} cells>"


@dataclass(frozen=True)
class ScalarPayload:
    value: Any
    kind: ClassVar[PayloadKind] = PayloadKind.SCALAR

    def summary(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class ArtifactPayload:
    """Opaque result, e.g. a rendered plot"""

    artifact: Any
    kind: ClassVar[PayloadKind] = PayloadKind.ARTIFACT

    def summary(self) -> str:
        return f"<{type(self.artifact).__name__}>"


NestedPayload = DatasetPayload | ScalarPayload | ArtifactPayload

_SCALAR_TYPES = (str, bytes, bool, int, float, complex, np.generic)


def payload_from(value: Any) -> NestedPayload:
    """Tag a per-group result with its payload kind"""
    if isinstance(value, DatasetPayload | ScalarPayload | ArtifactPayload):
        return value
    if isinstance(value, Dataset):
        return DatasetPayload(value)
    if value is None or isinstance(value, _SCALAR_TYPES):
        if isinstance(value, np.generic):
            value = value.item()
        return ScalarPayload(value)
    return ArtifactPayload(value)


class NestedTable:
    """
    Outer table of a nest: one row per key combination.

    Key columns live in a polars DataFrame; payload columns are lists of
    tagged payloads aligned with its rows. Like Dataset, a NestedTable is a
    value: map and filter_keys return new tables.

    Examples:
        >>> nested = nest(ds, "cell_type")
        >>> len(nested)
        3
        >>> sizes = nested.map("data", lambda d: d.n_cells, output="n")
        >>> sizes.to_frame()
        shape: (3, 3)
        ...
        >>> back = nested.unnest()
    """

    def __init__(
        self,
        keys: pl.DataFrame,
        payloads: Mapping[str, Sequence[Any]],
        empty: Dataset | None = None,
    ):
        self._keys = keys
        # Zero-cell dataset returned by unnest when there are no groups
        self._empty = empty
        self._payloads: dict[str, list[NestedPayload]] = {}
        for name, values in payloads.items():
            if name in keys.columns:
                raise ValueError(f"Payload column '{name}' clashes with a key column")
            values = [payload_from(v) for v in values]
            if len(values) != keys.height:
                raise CardinalityMismatch(
                    f"Payload column '{name}'", keys.height, len(values)
                )
            self._payloads[name] = values

    @property
    def keys(self) -> pl.DataFrame:
        return self._keys

    @property
    def key_columns(self) -> list[str]:
        return list(self._keys.columns)

    @property
    def payload_columns(self) -> list[str]:
        return list(self._payloads)

    @property
    def columns(self) -> list[str]:
        return self.key_columns + self.payload_columns

    def __len__(self) -> int:
        return self._keys.height

    def payloads(self, column: str) -> list[NestedPayload]:
        """
        Payloads of one column, in row order.

        Raises:
            ColumnNotFound: If there is no such payload column
        """
        if column not in self._payloads:
            raise ColumnNotFound(column, self.payload_columns)
        return list(self._payloads[column])

    def kinds(self, column: str) -> set[PayloadKind]:
        return {p.kind for p in self.payloads(column)}

    def datasets(self, column: str | None = None) -> list[Dataset]:
        """
        Nested datasets of a payload column.

        Raises:
            PayloadKindError: If any payload is not a dataset
        """
        column = column or get_config().nest_column
        payloads = self.payloads(column)
        for payload in payloads:
            if payload.kind is not PayloadKind.DATASET:
                raise PayloadKindError(
                    column, PayloadKind.DATASET.value, payload.kind.value
                )
        return [p.dataset for p in payloads]

    def map(
        self,
        column: str,
        function: Callable[[Dataset], Any],
        output: str = "result",
        max_workers: int | None = None,
    ) -> "NestedTable":
        """
        Apply a function to each nested dataset.

        Args:
            column: Payload column holding datasets
            function: Called once per group; may return a Dataset, a scalar
                or any other object (stored as an artifact)
            output: Name of the new payload column
            max_workers: Run groups on a thread pool of this size
                (default: config ``map_max_workers``; None or 1 runs serially)

        Returns:
            New NestedTable with the ``output`` column added (or replaced).
            If the function raises for any group, the exception propagates
            and no table is produced.

        Raises:
            PayloadKindError: If ``column`` does not hold datasets
        """
        if output in self._keys.columns:
            raise ValueError(f"Output column '{output}' clashes with a key column")
        datasets = self.datasets(column)
        max_workers = max_workers or get_config().map_max_workers

        if max_workers and max_workers > 1 and len(datasets) > 1:
            logger.debug(f"map: {len(datasets)} groups on {max_workers} workers")
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                results = list(executor.map(function, datasets))
        else:
            results = [function(dataset) for dataset in datasets]

        if output in self._payloads:
            logger.warning(f"map: replacing payload column '{output}'")
        payloads = dict(self._payloads)
        payloads[output] = [payload_from(r) for r in results]
        return NestedTable(self._keys, payloads, self._empty)

    def render_each(
        self,
        column: str,
        renderer: Renderer,
        columns: Sequence[str],
        output: str = "plot",
        max_workers: int | None = None,
    ) -> "NestedTable":
        """
        Draw one artifact per group with a renderer.

        Results are always stored as artifacts, even when the renderer
        returns a string. Every group is checked for ``columns`` before
        anything is drawn.

        Raises:
            ColumnNotFound: If a group lacks one of ``columns``
            PayloadKindError: If ``column`` does not hold datasets
        """
        columns = list(columns)
        for dataset in self.datasets(column):
            dataset.resolve_columns(columns)
        return self.map(
            column,
            lambda dataset: ArtifactPayload(renderer(dataset, columns)),
            output=output,
            max_workers=max_workers,
        )

    def filter_keys(self, *predicates: pl.Expr) -> "NestedTable":
        """Keep outer rows whose keys satisfy every predicate"""
        for predicate in predicates:
            for name in predicate.meta.root_names():
                if name not in self._keys.columns:
                    raise ColumnNotFound(name, self.key_columns)
        rows = self._keys.with_row_index("__row").filter(*predicates)["__row"].to_list()
        return NestedTable(
            self._keys[rows] if rows else self._keys.clear(),
            {name: [values[i] for i in rows] for name, values in self._payloads.items()},
            self._empty,
        )

    def unnest(self, column: str | None = None) -> Dataset:
        """
        Concatenate the nested datasets of a column back into one dataset.

        A table without groups (nest of a zero-cell view, or filter_keys
        matching nothing) unnests to a zero-cell view of the nested dataset.

        Raises:
            PayloadKindError: If the column holds non-dataset payloads
            DuplicateCellId: If two groups share a cell id
            CardinalityMismatch: If groups disagree on features or assays
        """
        datasets = self.datasets(column)
        if not datasets and self._empty is not None:
            return self._empty
        return concat_datasets(datasets)

    def to_frame(self) -> pl.DataFrame:
        """
        Keys plus one column per payload column.

        Scalar-only columns keep their values; other columns show summaries.
        """
        frame = self._keys
        for name, payloads in self._payloads.items():
            if all(p.kind is PayloadKind.SCALAR for p in payloads):
                series = pl.Series(name, [p.value for p in payloads], strict=False)
            else:
                series = pl.Series(name, [p.summary() for p in payloads], dtype=pl.Utf8)
            frame = frame.with_columns(series)
        return frame

    def __repr__(self) -> str:
        return f"# A nested table: {len(self)} groups\n{self.to_frame()}"


def nest(ds: Dataset, key: str, *more_keys: str, column: str | None = None) -> NestedTable:
    """
    Partition cells by key into nested datasets.

    Args:
        ds: Dataset
        key: Grouping column (metadata or embedding)
        *more_keys: Additional grouping columns
        column: Name of the payload column (default: config ``nest_column``)

    Returns:
        NestedTable with one row per distinct key combination, in order of
        first appearance; nulls form their own group. Each nested Dataset
        keeps the cells of its group in their current order.

    Raises:
        ColumnNotFound: If a key column does not exist
    """
    keys = [key, *more_keys]
    column = column or get_config().nest_column
    ds.resolve_columns(keys)

    groups = (
        ds.frame(keys)
        .with_row_index("__row")
        .group_by(keys, maintain_order=True)
        .agg(pl.col("__row"))
    )
    nested = [
        DatasetPayload(ds.take(np.asarray(rows, dtype=np.int64)))
        for rows in groups["__row"].to_list()
    ]
    logger.info(f"nest: {ds.n_cells} cells into {len(nested)} groups by {keys}")
    empty = ds.take(np.array([], dtype=np.int64))
    return NestedTable(groups.select(keys), {column: nested}, empty)


def concat_datasets(datasets: Sequence[Dataset]) -> Dataset:
    """
    Concatenate datasets cell-wise.

    Datasets that are still views over the same backing components are joined
    as a single index view without copying. Otherwise every dataset is
    collected and the assays, metadata and shared embeddings are stacked.

    Raises:
        DuplicateCellId: If a cell id occurs in more than one dataset
        CardinalityMismatch: If the datasets disagree on features or assays
    """
    if not datasets:
        raise ValueError("Cannot concatenate an empty list of datasets")

    all_ids = [cell_id for ds in datasets for cell_id in ds.cell_ids]
    duplicates = [cell_id for cell_id, n in Counter(all_ids).items() if n > 1]
    if duplicates:
        raise DuplicateCellId(duplicates)

    first = datasets[0]
    projections = {ds.projection for ds in datasets}
    projection = first.projection if len(projections) == 1 else None

    shares_backing = all(
        ds.store is first.store
        and ds.cell_metadata is first.cell_metadata
        and ds.embeddings is first.embeddings
        and ds.feature_metadata is first.feature_metadata
        for ds in datasets
    )
    if shares_backing:
        view = IndexView.concat([ds.view for ds in datasets])
        logger.info(f"unnest: {len(datasets)} groups -> {len(view)} cells (shared view)")
        return first._derive(view=view, projection=projection)

    for ds in datasets[1:]:
        if ds.feature_ids != first.feature_ids:
            raise CardinalityMismatch(
                "Feature axis of concatenated datasets", first.n_features, ds.n_features
            )
        if set(ds.assay_names) != set(first.assay_names):
            raise CardinalityMismatch(
                "Assays of concatenated datasets", first.assay_names, ds.assay_names
            )

    collected = [ds.collect() for ds in datasets]
    assays = {}
    for name in first.assay_names:
        blocks = [ds.store.assay(name).matrix for ds in collected]
        if any(scipy.sparse.issparse(b) for b in blocks):
            assays[name] = scipy.sparse.hstack(blocks, format="csr")
        else:
            assays[name] = np.hstack(blocks)

    cells = pl.concat(
        [ds.cell_metadata.frame for ds in collected], how="diagonal_relaxed"
    )

    embeddings = {}
    for name, embedding in first.embeddings.items():
        dims = embedding.dimensions
        if all(
            name in ds.embeddings and ds.embeddings[name].dimensions == dims
            for ds in collected
        ):
            embeddings[name] = Embedding(
                name,
                np.vstack([ds.embeddings[name].coordinates for ds in collected]),
                dims,
            )
        else:
            logger.warning(f"unnest: dropping embedding '{name}' missing from some groups")

    result = Dataset(
        assays,
        cells,
        first.feature_metadata,
        embeddings,
        default_assay=first.default_assay,
    )
    if projection is not None:
        projection = tuple(c for c in projection if c in set(result.all_columns()))
        result = result._derive(projection=projection)
    logger.info(f"unnest: {len(datasets)} groups -> {result.n_cells} cells (collected)")
    return result


def group_sizes(nested: NestedTable, column: str | None = None) -> pl.DataFrame:
    """Keys plus the cell count of each nested dataset"""
    counts = [d.n_cells for d in nested.datasets(column)]
    return nested.keys.with_columns(pl.Series("n", counts, dtype=pl.UInt32))
