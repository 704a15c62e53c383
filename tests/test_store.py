"""Tests for assays and the columnar store."""

import numpy as np
import pytest
from scipy.sparse import csr_matrix, issparse

from tidycell.core.errors import (
    AssayNotFound,
    CardinalityMismatch,
    DuplicateFeature,
    FeatureNotFound,
)
from tidycell.core.store import Assay, ColumnarStore


class TestAssay:
    """Test single assay behaviour."""

    def test_dense_is_copied_and_read_only(self):
        """Test dense is copied and read only."""
        values = np.arange(6, dtype=float).reshape(2, 3)
        assay = Assay("counts", values)
        assert assay.shape == (2, 3)
        assert not assay.is_sparse
        with pytest.raises(ValueError):
            assay.matrix[0, 0] = 99.0
        # The caller's array stays writable
        values[0, 0] = 5.0
        assert assay.matrix[0, 0] == 0.0

    def test_sparse_is_csr(self):
        """Test sparse is csr."""
        assay = Assay("counts", csr_matrix(np.eye(3)).tocoo())
        assert assay.is_sparse
        assert assay.matrix.format == "csr"
        assert not assay.matrix.data.flags.writeable

    def test_rejects_non_2d(self):
        """Test rejects non 2d."""
        with pytest.raises(ValueError, match="must be 2D"):
            Assay("counts", np.arange(3))

    def test_rows_sparse(self):
        """Test rows sparse."""
        values = np.arange(12, dtype=float).reshape(3, 4)
        assay = Assay("counts", csr_matrix(values))
        block = assay.rows(np.array([2, 0]), np.array([3, 1]))
        np.testing.assert_array_equal(block, [[11.0, 9.0], [3.0, 1.0]])

    def test_rows_dense(self):
        """Test rows dense."""
        values = np.arange(12, dtype=float).reshape(3, 4)
        assay = Assay("counts", values)
        block = assay.rows(np.array([1]), np.array([0, 2]))
        np.testing.assert_array_equal(block, [[4.0, 6.0]])

    def test_take(self):
        """Test taking cells from an assay."""
        values = np.arange(12, dtype=float).reshape(3, 4)
        taken = Assay("counts", csr_matrix(values)).take(np.array([1, 3]))
        assert taken.shape == (3, 2)
        assert issparse(taken.matrix)
        np.testing.assert_array_equal(taken.matrix.toarray(), values[:, [1, 3]])


class TestColumnarStore:
    """Test multi-assay store validation and lookup."""

    def test_basic(self):
        """Test basic store properties."""
        store = ColumnarStore(
            {"counts": np.ones((3, 5)), "logcounts": np.zeros((3, 5))},
            feature_ids=["a", "b", "c"],
        )
        assert store.assay_names == ["counts", "logcounts"]
        assert store.n_features == 3
        assert store.n_cells == 5
        assert "counts" in store
        assert len(store) == 2

    def test_duplicate_features(self):
        """Test duplicate features."""
        with pytest.raises(DuplicateFeature) as exc_info:
            ColumnarStore({"counts": np.ones((3, 2))}, ["a", "b", "a"])
        assert exc_info.value.features == ["a"]

    def test_feature_axis_mismatch(self):
        """Test feature axis mismatch."""
        with pytest.raises(CardinalityMismatch):
            ColumnarStore({"counts": np.ones((2, 2))}, ["a", "b", "c"])

    def test_cell_axis_mismatch(self):
        """Test cell axis mismatch."""
        with pytest.raises(CardinalityMismatch, match="cell axis"):
            ColumnarStore(
                {"counts": np.ones((2, 3)), "logcounts": np.ones((2, 4))}, ["a", "b"]
            )

    def test_assay_not_found(self):
        """Test assay not found."""
        store = ColumnarStore({"counts": np.ones((1, 2))}, ["a"])
        with pytest.raises(AssayNotFound) as exc_info:
            store.assay("spliced")
        assert exc_info.value.assay == "spliced"
        assert "counts" in str(exc_info.value)
        # Also a KeyError
        with pytest.raises(KeyError):
            store["spliced"]

    def test_feature_positions(self):
        """Test feature positions."""
        store = ColumnarStore({"counts": np.ones((3, 2))}, ["a", "b", "c"])
        assert store.feature_positions(["c", "a"]).tolist() == [2, 0]

    def test_feature_not_found_names_all_missing(self):
        """Test feature not found names all missing."""
        store = ColumnarStore({"counts": np.ones((3, 2))}, ["a", "b", "c"])
        with pytest.raises(FeatureNotFound) as exc_info:
            store.feature_positions(["a", "x", "y"])
        assert exc_info.value.features == ["x", "y"]

    def test_empty_store(self):
        """Test empty store."""
        store = ColumnarStore({}, ["a"])
        assert store.n_cells is None
        assert store.assay_names == []

    def test_take(self):
        """Test taking cells from every assay."""
        store = ColumnarStore({"counts": np.arange(6).reshape(2, 3)}, ["a", "b"])
        taken = store.take(np.array([2, 0]))
        assert taken.n_cells == 2
        np.testing.assert_array_equal(taken.assay("counts").matrix, [[2, 0], [5, 3]])
