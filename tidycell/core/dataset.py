from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

import numpy as np
import polars as pl
import scipy.sparse
from loguru import logger

from tidycell.config import get_config
from tidycell.core.embeddings import Embedding, EmbeddingStore
from tidycell.core.errors import (
    AssayNotFound,
    CardinalityMismatch,
    ColumnNotFound,
)
from tidycell.core.index_view import IndexView
from tidycell.core.metadata import CELL_ID, FEATURE_ID, MetadataTable
from tidycell.core.store import ColumnarStore
from tidycell.display import DatasetState, get_controller, render

if TYPE_CHECKING:
    from tidycell.tidy.nesting import NestedTable

_KEEP: Any = object()


class Dataset:
    """
    Multi-assay single-cell dataset with a tidy, cell-per-row face.

    A Dataset owns a columnar store of feature x cell assays, a cell metadata
    table, a feature metadata table and an embedding store. Relational verbs
    (filter, select, mutate, arrange, joins, nesting) never touch the assay
    matrices: they return new Dataset values that share the backing storage
    and carry a new index view (the ordered cell positions they retain) and,
    for select, a column projection. ``collect()`` is the only operation that
    slices the backing matrices.

    Key Features:
        - Cell ids line up across metadata, every assay and every embedding
        - Copy-on-view verbs; assays are read-only once constructed
        - Embedding coordinates exposed as computed table columns
        - Explicit state (full, view, projected) used at render time

    Examples:
        >>> ds = Dataset(
        ...     assays={"counts": counts, "logcounts": np.log1p(counts)},
        ...     cell_metadata=pl.DataFrame({"cell_id": cells, "cell_type": types}),
        ...     feature_ids=genes,
        ...     embeddings={"umap": umap_coords},
        ... )
        >>> print(f"Dataset shape: {ds.shape}")
        Dataset shape: (100, 2000)

        >>> t_cells = ds.filter(pl.col("cell_type") == "T cell")
        >>> t_cells.join_features(["CD3D", "CD8A"]).table().columns
        ['cell_id', 'cell_type', 'UMAP_1', 'UMAP_2', 'CD3D', 'CD8A']
    """

    def __init__(
        self,
        assays: ColumnarStore | Mapping[str, Any],
        cell_metadata: pl.DataFrame | MetadataTable | None = None,
        feature_metadata: pl.DataFrame | MetadataTable | None = None,
        embeddings: EmbeddingStore | Mapping[str, Any] | None = None,
        *,
        feature_ids: Sequence[str] | None = None,
        cell_ids: Sequence[str] | None = None,
        default_assay: str | None = None,
    ):
        """
        Build a dataset and validate its invariants.

        Args:
            assays: ColumnarStore, or mapping of assay name to feature x cell
                matrix (numpy or scipy.sparse)
            cell_metadata: Cell table with a ``cell_id`` column (or a
                MetadataTable). Defaults to ids only.
            feature_metadata: Feature table with a ``feature_id`` column
            embeddings: EmbeddingStore, or mapping of name to (n_cells, k) array
            feature_ids: Feature ids, when neither ``assays`` is a store nor
                ``feature_metadata`` is given
            cell_ids: Cell ids, when ``cell_metadata`` is not given
            default_assay: Assay used by feature joins when none is named

        Raises:
            DuplicateCellId: If cell ids repeat
            DuplicateFeature: If feature ids repeat
            CardinalityMismatch: If assays, metadata and embeddings disagree on
                the cell or feature axis
            AssayNotFound: If ``default_assay`` is not an assay name
        """
        feature_table = _as_table(feature_metadata, FEATURE_ID)
        if isinstance(assays, ColumnarStore):
            store = assays
        else:
            if feature_ids is None:
                if feature_table is None:
                    raise ValueError(
                        "feature_ids or feature_metadata is required to build a store"
                    )
                feature_ids = feature_table.ids
            store = ColumnarStore(assays, feature_ids)
        if feature_table is None:
            feature_table = MetadataTable.from_ids(store.feature_ids, FEATURE_ID)

        cell_table = _as_table(cell_metadata, CELL_ID)
        if cell_table is None:
            if cell_ids is None:
                raise ValueError("cell_ids or cell_metadata is required")
            cell_table = MetadataTable.from_ids(cell_ids, CELL_ID)

        if not isinstance(embeddings, EmbeddingStore):
            embeddings = EmbeddingStore(embeddings, n_cells=cell_table.height)

        self._store = store
        self._cells = cell_table
        self._features = _align_features(feature_table, store.feature_ids)
        self._embeddings = embeddings
        self._view = IndexView.full(cell_table.height)
        self._projection: tuple[str, ...] | None = None
        self._default_assay = _pick_default_assay(store, default_assay)

        self.validate()
        get_controller().on_dataset_created()
        logger.info(
            f"Dataset created: {self.n_cells} cells x {self.n_features} features, "
            f"assays={self.assay_names}, embeddings={list(self._embeddings)}"
        )

    def _derive(
        self,
        *,
        store: ColumnarStore | None = None,
        cells: MetadataTable | None = None,
        features: MetadataTable | None = None,
        embeddings: EmbeddingStore | None = None,
        view: IndexView | None = None,
        projection: Any = _KEEP,
        default_assay: Any = _KEEP,
    ) -> "Dataset":
        """New dataset sharing every component not replaced"""
        new = object.__new__(Dataset)
        new._store = store if store is not None else self._store
        new._cells = cells if cells is not None else self._cells
        new._features = features if features is not None else self._features
        new._embeddings = embeddings if embeddings is not None else self._embeddings
        new._view = view if view is not None else self._view
        new._projection = self._projection if projection is _KEEP else projection
        new._default_assay = (
            self._default_assay if default_assay is _KEEP else default_assay
        )
        return new

    def validate(self) -> None:
        """
        Check the cross-component invariants.

        Raises:
            CardinalityMismatch: If components disagree on an axis
        """
        n_backing = self._cells.height
        if self._store.n_cells is not None and self._store.n_cells != n_backing:
            raise CardinalityMismatch(
                "Assay cell axis vs cell metadata", n_backing, self._store.n_cells
            )
        if self._embeddings.n_cells is not None and self._embeddings.n_cells != n_backing:
            raise CardinalityMismatch(
                "Embedding cell axis vs cell metadata",
                n_backing,
                self._embeddings.n_cells,
            )
        if self._features.ids != self._store.feature_ids:
            raise CardinalityMismatch(
                "Feature metadata vs assay feature axis",
                self._store.n_features,
                self._features.height,
            )
        if self._view.n_backing != n_backing:
            raise CardinalityMismatch(
                "Index view backing size", n_backing, self._view.n_backing
            )
        clash = set(self._cells.columns) & set(self._embeddings.columns())
        if clash:
            raise ValueError(
                f"Metadata columns clash with embedding columns: {sorted(clash)}"
            )

    # Shape and identity

    @property
    def n_cells(self) -> int:
        """Number of cells in the current view"""
        return len(self._view)

    @property
    def n_features(self) -> int:
        return self._store.n_features

    @property
    def n_backing_cells(self) -> int:
        """Number of cells in the shared backing storage"""
        return self._view.n_backing

    @property
    def shape(self) -> tuple[int, int]:
        """(n_cells, n_features)"""
        return (self.n_cells, self.n_features)

    def __len__(self) -> int:
        return self.n_cells

    @property
    def is_empty(self) -> bool:
        return self.n_cells == 0

    @property
    def cell_ids(self) -> list[str]:
        """Cell ids in view order"""
        return self._cells.column(CELL_ID)[self._view.positions].to_list()

    @property
    def feature_ids(self) -> list[str]:
        return self._store.feature_ids

    @property
    def state(self) -> DatasetState:
        if self._projection is not None:
            return DatasetState.PROJECTED
        if self._view.is_identity:
            return DatasetState.FULL
        return DatasetState.VIEW

    # Components

    @property
    def store(self) -> ColumnarStore:
        return self._store

    @property
    def cell_metadata(self) -> MetadataTable:
        """Cell metadata in backing order (not restricted to the view)"""
        return self._cells

    @property
    def feature_metadata(self) -> MetadataTable:
        return self._features

    @property
    def embeddings(self) -> EmbeddingStore:
        return self._embeddings

    @property
    def view(self) -> IndexView:
        return self._view

    @property
    def projection(self) -> tuple[str, ...] | None:
        return self._projection

    @property
    def assay_names(self) -> list[str]:
        return self._store.assay_names

    @property
    def embedding_names(self) -> list[str]:
        return list(self._embeddings)

    @property
    def default_assay(self) -> str | None:
        return self._default_assay

    def with_default_assay(self, name: str) -> "Dataset":
        """Same dataset with another default assay for feature joins"""
        self._store.assay(name)
        return self._derive(default_assay=name)

    def assay(self, name: str | None = None) -> np.ndarray | scipy.sparse.csr_matrix:
        """
        Raw feature x cell matrix at the current view.

        For a dataset over its full backing storage this is the shared
        read-only matrix itself; for a view it is a sliced copy.

        Args:
            name: Assay name (default: the default assay)

        Raises:
            AssayNotFound: If the assay does not exist
        """
        name = name or self._default_assay
        if name is None:
            raise AssayNotFound("<default>", self.assay_names)
        matrix = self._store.assay(name).matrix
        if self._view.is_identity:
            return matrix
        return matrix[:, self._view.positions]

    # Columns

    def all_columns(self) -> list[str]:
        """Every column a verb can read: stored metadata plus embedding coordinates"""
        return self._cells.columns + self._embeddings.columns()

    def columns(self, all_columns: bool = False) -> list[str]:
        """Columns of the tidy table, honouring the projection unless asked not to"""
        if self._projection is None or all_columns:
            return self.all_columns()
        return list(self._projection)

    def resolve_columns(self, names: Sequence[str]) -> list[str]:
        """
        Check that every name is a known column.

        Raises:
            ColumnNotFound: Naming the first unknown column
        """
        universe = set(self.all_columns())
        for name in names:
            if name not in universe:
                raise ColumnNotFound(name, self.all_columns())
        return list(names)

    def frame(self, columns: Sequence[str] | None = None) -> pl.DataFrame:
        """
        Tidy frame at the current view for the given columns.

        Metadata columns are gathered from the cell table; embedding columns
        are computed from the embedding store. Column order follows ``columns``.
        """
        columns = self.all_columns() if columns is None else self.resolve_columns(columns)
        positions = self._view.positions
        meta_cols = [c for c in columns if c in self._cells]
        embed_cols = [c for c in columns if c not in self._cells]

        if not embed_cols:
            return self._cells.frame.select(meta_cols)[positions]
        embedded = self._embeddings.frame(positions, embed_cols)
        if not meta_cols:
            return embedded.select(columns)
        frame = self._cells.frame.select(meta_cols)[positions].hstack(embedded)
        return frame.select(columns)

    def table(self, all_columns: bool = False) -> pl.DataFrame:
        """
        The tidy table: one row per cell in view order.

        Args:
            all_columns: Ignore a narrowing projection and return every stored
                and computed column

        Returns:
            polars DataFrame starting with ``cell_id``
        """
        return self.frame(self.columns(all_columns=all_columns))

    def to_pandas(self, all_columns: bool = False):
        """Tidy table as a pandas DataFrame indexed by cell id"""
        return self.table(all_columns).to_pandas().set_index(CELL_ID)

    # Materialization

    def take(self, selector) -> "Dataset":
        """New dataset over the cells picked by a selector relative to the current view"""
        return self._derive(view=self._view.compose(selector))

    def collect(self) -> "Dataset":
        """
        Materialize the current view into new backing storage.

        Returns:
            Dataset over freshly sliced assays, metadata and embeddings with an
            identity view. The projection is kept.
        """
        if self._view.is_identity:
            return self._derive()
        positions = self._view.positions
        logger.info(
            f"Collecting view of {len(positions)} / {self._view.n_backing} cells"
        )
        return self._derive(
            store=self._store.take(positions),
            cells=self._cells.subset(positions),
            embeddings=self._embeddings.take(positions),
            view=IndexView.full(len(positions)),
        )

    def with_assay(self, name: str, matrix) -> "Dataset":
        """
        Add or replace an assay computed for the cells in view.

        A dataset that is a view is collected first, so the new matrix only
        has to cover the cells in view. A replaced assay keeps its position.
        """
        base = self if self._view.is_identity else self.collect()
        assays = {n: base._store.assay(n) for n in base.assay_names}
        assays[name] = matrix
        store = ColumnarStore(assays, base._store.feature_ids)
        if store.n_cells != base.n_cells:
            raise CardinalityMismatch(f"Assay '{name}' cell axis", base.n_cells, store.n_cells)
        return base._derive(store=store, default_assay=base._default_assay or name)

    def with_embedding(
        self,
        name: str,
        coordinates: np.ndarray,
        dimensions: Sequence[str] | None = None,
    ) -> "Dataset":
        """
        Add or replace an embedding computed for the cells in view.

        Cells outside the view get NaN coordinates in backing storage.
        """
        coordinates = np.asarray(coordinates, dtype=np.float64)
        if coordinates.ndim == 1:
            coordinates = coordinates.reshape(-1, 1)
        if coordinates.shape[0] != self.n_cells:
            raise CardinalityMismatch(
                f"Embedding '{name}' cell axis", self.n_cells, coordinates.shape[0]
            )
        backing = np.full((self.n_backing_cells, coordinates.shape[1]), np.nan)
        backing[self._view.positions] = coordinates
        embedding = Embedding(name, backing, dimensions)
        clash = set(embedding.dimensions) & set(self._cells.columns)
        if clash:
            raise ValueError(
                f"Embedding columns clash with metadata columns: {sorted(clash)}"
            )
        embeddings = self._embeddings.with_embedding(embedding)
        projection = self._projection
        if projection is not None:
            projection = projection + tuple(
                d for d in embedding.dimensions if d not in projection
            )
        return self._derive(embeddings=embeddings, projection=projection)

    # Rendering

    def __repr__(self) -> str:
        return render(self)

    def render(self, context=None) -> str:
        return render(self, context)

    def __getitem__(self, selector) -> "Dataset":
        """Positional cell subset, relative to the current view"""
        from tidycell.tidy.verbs import slice_rows

        return slice_rows(self, selector)

    # Verb chaining

    def filter(self, *predicates: pl.Expr, **equals: Any) -> "Dataset":
        from tidycell.tidy.verbs import filter

        return filter(self, *predicates, **equals)

    def select(self, *columns: str, all_columns: bool = False) -> "Dataset":
        from tidycell.tidy.verbs import select

        return select(self, *columns, all_columns=all_columns)

    def mutate(self, name: str, expression: pl.Expr) -> "Dataset":
        from tidycell.tidy.verbs import mutate

        return mutate(self, name, expression)

    def arrange(
        self, column: str | Sequence[str], descending: bool = False
    ) -> "Dataset":
        from tidycell.tidy.verbs import arrange

        return arrange(self, column, descending=descending)

    def unite(
        self,
        new_column: str,
        components: Sequence[str],
        separator: str = "_",
        remove: bool = True,
    ) -> "Dataset":
        from tidycell.tidy.verbs import unite

        return unite(self, new_column, components, separator=separator, remove=remove)

    def extract(
        self,
        column: str,
        new_columns: Sequence[str],
        pattern: str,
        remove: bool = False,
    ) -> "Dataset":
        from tidycell.tidy.verbs import extract

        return extract(self, column, new_columns, pattern, remove=remove)

    def rename(self, mapping: Mapping[str, str]) -> "Dataset":
        from tidycell.tidy.verbs import rename

        return rename(self, mapping)

    def pull(self, column: str) -> pl.Series:
        from tidycell.tidy.verbs import pull

        return pull(self, column)

    def count(self, *columns: str) -> pl.DataFrame:
        from tidycell.tidy.verbs import count

        return count(self, *columns)

    def join_features(
        self,
        feature_ids: Sequence[str],
        shape: str = "wide",
        assay: str | None = None,
    ) -> "Dataset | pl.DataFrame":
        from tidycell.tidy.features import join_features

        return join_features(self, feature_ids, shape=shape, assay=assay)

    def nest(self, key: str, *more_keys: str, column: str | None = None) -> "NestedTable":
        from tidycell.tidy.nesting import nest

        return nest(self, key, *more_keys, column=column)


def _as_table(table, id_column: str) -> MetadataTable | None:
    if table is None or isinstance(table, MetadataTable):
        return table
    if not isinstance(table, pl.DataFrame):
        table = pl.from_pandas(table, include_index=False)
    return MetadataTable(table, id_column)


def _align_features(table: MetadataTable, feature_ids: list[str]) -> MetadataTable:
    """Reorder feature metadata to the assay row order"""
    if table.ids == feature_ids:
        return table
    if set(table.ids) != set(feature_ids) or table.height != len(feature_ids):
        missing = sorted(set(feature_ids) - set(table.ids))
        extra = sorted(set(table.ids) - set(feature_ids))
        raise CardinalityMismatch(
            "Feature metadata ids vs assay feature axis",
            f"{len(feature_ids)} ids (missing {missing[:5]})",
            f"{table.height} ids (extra {extra[:5]})",
        )
    index = {feature_id: i for i, feature_id in enumerate(table.ids)}
    positions = np.array([index[f] for f in feature_ids], dtype=np.int64)
    return table.subset(positions)


def _pick_default_assay(store: ColumnarStore, requested: str | None) -> str | None:
    if requested is not None:
        store.assay(requested)
        return requested
    for name in get_config().default_assay_preference:
        if name in store:
            return name
    return store.assay_names[0] if len(store) else None
