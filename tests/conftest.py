import numpy as np
import polars as pl
import pytest
from scipy.sparse import csr_matrix

from tidycell import Dataset, reset_config
from tidycell.display import get_controller

CELL_TYPES = ["T cell", "B cell", "NK cell"]
GENES = ["CD3D", "CD8A", "MS4A1", "NKG7", "GNLY", "LYZ", "CD14", "FCGR3A"]


@pytest.fixture(autouse=True)
def reset_state():
    """Restore process-wide config and display mode around every test."""
    reset_config()
    get_controller()._mode = None
    yield
    reset_config()
    get_controller()._mode = None


@pytest.fixture
def genes():
    return list(GENES)


@pytest.fixture
def counts_matrix():
    """Sparse feature x cell count matrix."""
    rng = np.random.default_rng(42)
    n_genes, n_cells = len(GENES), 100
    dense = rng.poisson(1.5, size=(n_genes, n_cells)).astype(np.float32)
    # Ensure every cell expresses CD3D so log values differ from zero
    dense[0] += 1
    return csr_matrix(dense)


@pytest.fixture
def cell_metadata():
    """Cell table with a deterministic cell type per cell."""
    n_cells = 100
    return pl.DataFrame(
        {
            "cell_id": [f"cell_{i}" for i in range(n_cells)],
            "cell_type": [CELL_TYPES[i % 3] for i in range(n_cells)],
            "batch": [f"batch_{i % 2 + 1}" for i in range(n_cells)],
            "sample": [f"D{i % 4 + 1}_day{i % 5}" for i in range(n_cells)],
            "n_genes": [200 + 10 * i for i in range(n_cells)],
        }
    )


@pytest.fixture
def feature_metadata():
    """Feature table in a different order than the assay rows."""
    return pl.DataFrame(
        {
            "feature_id": list(reversed(GENES)),
            "gene_type": ["protein_coding"] * len(GENES),
        }
    )


@pytest.fixture
def embeddings():
    rng = np.random.default_rng(7)
    return {
        "umap": rng.normal(size=(100, 2)),
        "pca": rng.normal(size=(100, 3)),
    }


@pytest.fixture
def dataset(counts_matrix, cell_metadata, feature_metadata, embeddings):
    """Synthetic 100-cell dataset with counts (sparse) and logcounts (dense)."""
    return Dataset(
        assays={
            "counts": counts_matrix,
            "logcounts": np.log1p(counts_matrix.toarray()),
        },
        cell_metadata=cell_metadata,
        feature_metadata=feature_metadata,
        embeddings=embeddings,
        feature_ids=GENES,
    )


@pytest.fixture
def tiny_dataset():
    """Four cells, two features, dense values that are easy to check by hand."""
    values = np.array(
        [
            [0.0, 1.0, 2.0, 3.0],
            [10.0, 11.0, 12.0, 13.0],
        ]
    )
    return Dataset(
        assays={"counts": values},
        cell_metadata=pl.DataFrame(
            {
                "cell_id": ["a", "b", "c", "d"],
                "group": ["x", "y", "x", "y"],
                "score": [4.0, 1.0, 3.0, 2.0],
            }
        ),
        feature_ids=["g1", "g2"],
        embeddings={"umap": np.array([[0.0, 1.0], [1.0, 0.0], [2.0, 2.0], [3.0, 3.0]])},
    )
