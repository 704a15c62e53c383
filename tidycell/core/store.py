from collections.abc import Iterator, Mapping, Sequence

import numpy as np
import scipy.sparse
from loguru import logger

from tidycell.core.errors import (
    AssayNotFound,
    CardinalityMismatch,
    DuplicateFeature,
    FeatureNotFound,
)


def _freeze(array: np.ndarray) -> np.ndarray:
    """Flag a numpy buffer read-only"""
    array.setflags(write=False)
    return array


class Assay:
    """
    Immutable feature x cell matrix.

    Dense data is kept as a numpy array, sparse data as CSR so that reading a
    handful of feature rows never touches the rest of the matrix. The backing
    buffers are flagged read-only: every dataset view shares them.

    Examples:
        >>> counts = Assay("counts", scipy.sparse.random(50, 100, format="csr"))
        >>> counts.shape
        (50, 100)
        >>> block = counts.rows(np.array([0, 3]), np.arange(10))
        >>> block.shape
        (2, 10)
    """

    def __init__(self, name: str, matrix: np.ndarray | scipy.sparse.spmatrix):
        self.name = name
        if scipy.sparse.issparse(matrix):
            matrix = scipy.sparse.csr_matrix(matrix, copy=True)
            # Canonical format up front; scipy would otherwise sort in place later
            matrix.sum_duplicates()
            matrix.sort_indices()
            _freeze(matrix.data)
            _freeze(matrix.indices)
            _freeze(matrix.indptr)
        else:
            matrix = np.asarray(matrix)
            if matrix.ndim != 2:
                raise ValueError(
                    f"Assay '{name}' must be 2D (features x cells), got {matrix.ndim}D"
                )
            if not matrix.flags.writeable:
                matrix = matrix.view()
            else:
                # Take ownership so the caller's array stays writable
                matrix = matrix.copy()
            _freeze(matrix)
        self._matrix = matrix

    @property
    def matrix(self) -> np.ndarray | scipy.sparse.csr_matrix:
        """The raw backing matrix (read-only)"""
        return self._matrix

    @property
    def shape(self) -> tuple[int, int]:
        """(n_features, n_cells)"""
        return self._matrix.shape

    @property
    def is_sparse(self) -> bool:
        return scipy.sparse.issparse(self._matrix)

    def rows(
        self, feature_positions: np.ndarray, cell_positions: np.ndarray
    ) -> np.ndarray:
        """
        Read feature rows at the given cell positions as a dense block.

        Args:
            feature_positions: Row positions of the requested features
            cell_positions: Column positions from an index view

        Returns:
            Dense array of shape (len(feature_positions), len(cell_positions))
        """
        block = self._matrix[feature_positions]
        if scipy.sparse.issparse(block):
            return block[:, cell_positions].toarray()
        return np.asarray(block[:, cell_positions])

    def take(self, cell_positions: np.ndarray) -> "Assay":
        """Materialize a new assay restricted to the given cell positions"""
        return Assay(self.name, self._matrix[:, cell_positions])

    def __repr__(self) -> str:
        kind = "sparse" if self.is_sparse else "dense"
        return f"Assay('{self.name}', {self.shape[0]} x {self.shape[1]}, {kind})"


class ColumnarStore(Mapping):
    """
    Named assays sharing one feature axis and one cell axis.

    The store validates on construction that all assays agree on shape and
    that the feature axis matches the given feature ids. After that it is
    read-only: nothing in tidycell writes into an assay.

    Examples:
        >>> store = ColumnarStore(
        ...     {"counts": counts_matrix, "logcounts": np.log1p(counts_matrix)},
        ...     feature_ids=["CD3D", "CD8A", "MS4A1"],
        ... )
        >>> store.assay_names
        ['counts', 'logcounts']
        >>> store.feature_positions(["CD8A"])
        array([1])
    """

    def __init__(
        self,
        assays: Mapping[str, np.ndarray | scipy.sparse.spmatrix | Assay],
        feature_ids: Sequence[str],
    ):
        feature_ids = [str(f) for f in feature_ids]
        seen: set[str] = set()
        duplicates = []
        for feature_id in feature_ids:
            if feature_id in seen:
                duplicates.append(feature_id)
            seen.add(feature_id)
        if duplicates:
            raise DuplicateFeature(sorted(set(duplicates)))

        self._feature_ids = feature_ids
        self._feature_index = {f: i for i, f in enumerate(feature_ids)}
        self._assays: dict[str, Assay] = {}
        n_cells = None

        for name, matrix in assays.items():
            assay = matrix if isinstance(matrix, Assay) else Assay(name, matrix)
            if assay.shape[0] != len(feature_ids):
                raise CardinalityMismatch(
                    f"Assay '{name}' feature axis", len(feature_ids), assay.shape[0]
                )
            if n_cells is None:
                n_cells = assay.shape[1]
            elif assay.shape[1] != n_cells:
                raise CardinalityMismatch(
                    f"Assay '{name}' cell axis", n_cells, assay.shape[1]
                )
            self._assays[name] = assay

        self._n_cells = n_cells

    def __getitem__(self, name: str) -> Assay:
        return self.assay(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._assays)

    def __len__(self) -> int:
        return len(self._assays)

    @property
    def assay_names(self) -> list[str]:
        return list(self._assays)

    @property
    def feature_ids(self) -> list[str]:
        return list(self._feature_ids)

    @property
    def n_features(self) -> int:
        return len(self._feature_ids)

    @property
    def n_cells(self) -> int | None:
        """Cell axis length, or None for a store without assays"""
        return self._n_cells

    def assay(self, name: str) -> Assay:
        """
        Look up an assay by name.

        Raises:
            AssayNotFound: If no assay has this name
        """
        try:
            return self._assays[name]
        except KeyError:
            raise AssayNotFound(name, self.assay_names) from None

    def feature_positions(self, feature_ids: Sequence[str]) -> np.ndarray:
        """
        Map feature ids to row positions.

        Raises:
            FeatureNotFound: Naming every id that is not on the feature axis
        """
        missing = [f for f in feature_ids if f not in self._feature_index]
        if missing:
            raise FeatureNotFound(missing)
        return np.array([self._feature_index[f] for f in feature_ids], dtype=np.int64)

    def take(self, cell_positions: np.ndarray) -> "ColumnarStore":
        """Materialize a new store restricted to the given cell positions"""
        logger.debug(
            f"Materializing {len(self._assays)} assays at {len(cell_positions)} cells"
        )
        return ColumnarStore(
            {name: assay.take(cell_positions) for name, assay in self._assays.items()},
            self._feature_ids,
        )

    def __repr__(self) -> str:
        return (
            f"ColumnarStore(assays={self.assay_names}, "
            f"n_features={self.n_features}, n_cells={self._n_cells})"
        )
