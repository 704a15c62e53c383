from collections.abc import Iterator, Mapping, Sequence

import numpy as np
import polars as pl

from tidycell.core.errors import CardinalityMismatch, ColumnNotFound


class Embedding:
    """
    Per-cell coordinate table (a 2D/3D projection, PCA scores, ...).

    Coordinates are stored as a read-only (n_cells, k) float array in backing
    order. Dimension names default to the upper-cased embedding name with a
    1-based suffix, e.g. ``UMAP_1``, ``UMAP_2``.
    """

    def __init__(
        self,
        name: str,
        coordinates: np.ndarray,
        dimensions: Sequence[str] | None = None,
    ):
        coordinates = np.array(coordinates, dtype=np.float64)
        if coordinates.ndim == 1:
            coordinates = coordinates.reshape(-1, 1)
        if coordinates.ndim != 2:
            raise ValueError(
                f"Embedding '{name}' must be 2D (cells x dims), got {coordinates.ndim}D"
            )
        if dimensions is None:
            prefix = name.upper().removeprefix("X_")
            dimensions = [f"{prefix}_{i + 1}" for i in range(coordinates.shape[1])]
        dimensions = list(dimensions)
        if len(dimensions) != coordinates.shape[1]:
            raise CardinalityMismatch(
                f"Embedding '{name}' dimension names",
                coordinates.shape[1],
                len(dimensions),
            )
        coordinates.setflags(write=False)
        self.name = name
        self._coordinates = coordinates
        self._dimensions = dimensions

    @property
    def coordinates(self) -> np.ndarray:
        return self._coordinates

    @property
    def dimensions(self) -> list[str]:
        return list(self._dimensions)

    @property
    def n_cells(self) -> int:
        return self._coordinates.shape[0]

    @property
    def n_dims(self) -> int:
        return self._coordinates.shape[1]

    def take(self, positions: np.ndarray) -> "Embedding":
        return Embedding(self.name, self._coordinates[positions], self._dimensions)

    def __repr__(self) -> str:
        return f"Embedding('{self.name}', {self.n_cells} x {self.n_dims})"


class EmbeddingStore(Mapping):
    """
    Named embeddings over the backing cell axis.

    Embedding coordinates are view-only columns: they show up in tidy tables
    and can be used in predicates, but they are computed from the store at
    the current index view rather than kept as metadata fields.
    """

    def __init__(
        self,
        embeddings: Mapping[str, np.ndarray | Embedding] | None = None,
        n_cells: int | None = None,
    ):
        self._embeddings: dict[str, Embedding] = {}
        self._n_cells = n_cells
        seen_dims: dict[str, str] = {}
        for name, value in (embeddings or {}).items():
            embedding = value if isinstance(value, Embedding) else Embedding(name, value)
            if self._n_cells is None:
                self._n_cells = embedding.n_cells
            elif embedding.n_cells != self._n_cells:
                raise CardinalityMismatch(
                    f"Embedding '{name}' cell axis", self._n_cells, embedding.n_cells
                )
            for dim in embedding.dimensions:
                if dim in seen_dims:
                    raise ValueError(
                        f"Dimension '{dim}' of embedding '{name}' clashes with "
                        f"embedding '{seen_dims[dim]}'"
                    )
                seen_dims[dim] = name
            self._embeddings[name] = embedding
        self._column_owner = seen_dims

    def __getitem__(self, name: str) -> Embedding:
        return self._embeddings[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._embeddings)

    def __len__(self) -> int:
        return len(self._embeddings)

    @property
    def n_cells(self) -> int | None:
        return self._n_cells

    def columns(self) -> list[str]:
        """All coordinate column names, in embedding order"""
        return list(self._column_owner)

    def owner(self, column: str) -> str:
        """Name of the embedding a coordinate column belongs to"""
        try:
            return self._column_owner[column]
        except KeyError:
            raise ColumnNotFound(column, self.columns()) from None

    def frame(
        self, positions: np.ndarray, columns: Sequence[str] | None = None
    ) -> pl.DataFrame:
        """
        Coordinates at the given backing positions.

        Args:
            positions: Backing cell positions from an index view
            columns: Coordinate columns to include (default: all)

        Returns:
            polars DataFrame with one column per requested dimension
        """
        wanted = self.columns() if columns is None else list(columns)
        data = {}
        for column in wanted:
            embedding = self._embeddings[self.owner(column)]
            dim = embedding.dimensions.index(column)
            data[column] = embedding.coordinates[positions, dim]
        return pl.DataFrame(data)

    def with_embedding(self, embedding: Embedding) -> "EmbeddingStore":
        """New store with an embedding added or replaced"""
        embeddings = dict(self._embeddings)
        embeddings[embedding.name] = embedding
        return EmbeddingStore(embeddings, self._n_cells)

    def take(self, positions: np.ndarray) -> "EmbeddingStore":
        return EmbeddingStore(
            {name: e.take(positions) for name, e in self._embeddings.items()},
            len(positions),
        )
