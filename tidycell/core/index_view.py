from collections.abc import Sequence

import numpy as np
from loguru import logger


class IndexView:
    """
    Ordered sequence of retained cell positions over shared backing storage.

    IndexView is how filter, arrange and slicing avoid touching assay data:
    every verb produces a new view over the same immutable matrices, and the
    matrices are only sliced when a dataset is explicitly collected.

    Selectors passed to ``compose`` are relative to the current view, exactly
    like indexing an already-sliced array.

    Examples:
        >>> view = IndexView.full(10)
        >>> view = view.compose(slice(2, 8))
        >>> view.positions.tolist()
        [2, 3, 4, 5, 6, 7]
        >>> view.compose([0, -1]).positions.tolist()
        [2, 7]
    """

    __slots__ = ("_positions", "_n_backing")

    def __init__(self, positions: Sequence[int] | np.ndarray, n_backing: int):
        positions = np.asarray(positions, dtype=np.int64)
        if positions.ndim != 1:
            raise ValueError(f"Index view positions must be 1D, got {positions.ndim}D")
        if len(positions) and (positions.min() < 0 or positions.max() >= n_backing):
            raise IndexError(
                f"Index view positions out of bounds for backing size {n_backing}"
            )
        positions.setflags(write=False)
        self._positions = positions
        self._n_backing = int(n_backing)

    @classmethod
    def full(cls, n: int) -> "IndexView":
        """View retaining every backing position in storage order"""
        return cls(np.arange(n, dtype=np.int64), n)

    @classmethod
    def concat(cls, views: Sequence["IndexView"]) -> "IndexView":
        """Concatenate views over the same backing storage"""
        if not views:
            raise ValueError("Cannot concatenate an empty list of index views")
        n_backing = views[0].n_backing
        for view in views[1:]:
            if view.n_backing != n_backing:
                raise ValueError(
                    "Index views reference different backing sizes: "
                    f"{n_backing} and {view.n_backing}"
                )
        return cls(np.concatenate([v.positions for v in views]), n_backing)

    @property
    def positions(self) -> np.ndarray:
        """Read-only int64 array of backing positions"""
        return self._positions

    @property
    def n_backing(self) -> int:
        """Size of the backing axis this view indexes"""
        return self._n_backing

    @property
    def is_identity(self) -> bool:
        """True when the view retains every backing position in order"""
        return len(self._positions) == self._n_backing and bool(
            np.array_equal(self._positions, np.arange(self._n_backing))
        )

    def __len__(self) -> int:
        return len(self._positions)

    def __eq__(self, other) -> bool:
        if not isinstance(other, IndexView):
            return NotImplemented
        return self._n_backing == other._n_backing and bool(
            np.array_equal(self._positions, other._positions)
        )

    def __hash__(self):
        return hash((self._n_backing, self._positions.tobytes()))

    def __repr__(self) -> str:
        return f"IndexView({len(self)} of {self._n_backing})"

    def compose(self, selector) -> "IndexView":
        """
        Apply a selector relative to this view.

        Args:
            selector: None, slice, int, sequence of ints (negative allowed)
                or boolean mask with one entry per retained position.

        Returns:
            New IndexView over the same backing storage.

        Raises:
            IndexError: If an integer selector is out of range.
            ValueError: If a boolean mask has the wrong length.
        """
        if selector is None or (
            isinstance(selector, slice) and selector == slice(None)
        ):
            return self

        n = len(self._positions)

        if isinstance(selector, slice):
            relative = np.arange(n)[selector]
        elif isinstance(selector, int | np.integer) and not isinstance(
            selector, bool | np.bool_
        ):
            index = int(selector)
            if index < 0:
                index += n
            if not 0 <= index < n:
                raise IndexError(f"Index {selector} out of range for {n} cells")
            relative = np.array([index])
        else:
            array = np.asarray(selector)
            if array.dtype == bool:
                if len(array) != n:
                    raise ValueError(
                        f"Boolean mask length {len(array)} doesn't match {n} cells"
                    )
                relative = np.flatnonzero(array)
            elif len(array) == 0:
                relative = np.array([], dtype=np.int64)
            elif np.issubdtype(array.dtype, np.integer):
                relative = array.astype(np.int64)
                relative = np.where(relative < 0, relative + n, relative)
                if relative.min() < 0 or relative.max() >= n:
                    raise IndexError(f"Index out of range for {n} cells")
            else:
                raise TypeError(f"Unsupported selector type: {type(selector)}")

        logger.debug(f"Composing index view: {n} -> {len(relative)} positions")
        return IndexView(self._positions[relative], self._n_backing)
