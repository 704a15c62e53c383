"""
AnnData bridge.

AnnData is the loader and interchange format tidycell consumes: ``read_h5ad``
is the Ingestion Loader, and ``to_anndata``/``from_anndata`` let scanpy-style
statistical transforms run on a Dataset.

AnnData stores matrices as cells x genes; tidycell assays are features x
cells, so matrices are transposed on the way in and out.
"""

from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd
import polars as pl
import scipy.sparse
from loguru import logger

from tidycell.core.dataset import Dataset
from tidycell.core.metadata import CELL_ID, FEATURE_ID

if TYPE_CHECKING:
    import anndata as ad

# uns key recording which assay became .X
UNS_KEY = "tidycell"


def _metadata_frame(df: pd.DataFrame, names: pd.Index, id_column: str) -> pl.DataFrame:
    """pandas obs/var to a polars frame keyed by id_column"""
    df = df.copy()
    if id_column in df.columns:
        logger.debug(f"Replacing '{id_column}' column with the AnnData index")
        df = df.drop(columns=[id_column])
    df.insert(0, id_column, np.asarray(names, dtype=str))
    df = df.reset_index(drop=True)
    frame = pl.from_pandas(df)
    # Categoricals compare more predictably as strings
    return frame.with_columns(
        [
            pl.col(c).cast(pl.Utf8)
            for c, dtype in frame.schema.items()
            if isinstance(dtype, (pl.Categorical, pl.Enum))
        ]
    )


def _embedding_name(key: str) -> str:
    return key[2:] if key.startswith("X_") else key


def from_anndata(adata: "ad.AnnData", x_assay: str | None = None) -> Dataset:
    """
    Build a Dataset from an AnnData object.

    ``X`` and every layer become assays, ``obs``/``var`` become the cell and
    feature metadata, and each 2D numeric ``obsm`` entry becomes an embedding
    (``X_umap`` -> ``umap`` with columns ``UMAP_1``, ``UMAP_2``).

    Args:
        adata: AnnData object (in memory)
        x_assay: Assay name for ``X`` (default: recorded by ``to_anndata``,
            else ``"X"``)

    Returns:
        Dataset whose default assay is the one built from ``X``

    Examples:
        >>> import scanpy as sc
        >>> ds = from_anndata(sc.datasets.pbmc3k())
        >>> ds.assay_names
        ['X']
    """
    recorded = adata.uns.get(UNS_KEY, {}) if hasattr(adata, "uns") else {}
    x_assay = x_assay or recorded.get("x_assay", "X")

    assays = {}
    if adata.X is not None:
        assays[x_assay] = _transpose(adata.X)
    for name in adata.layers.keys():
        if name == x_assay:
            logger.warning(f"Layer '{name}' shadowed by X assay of the same name")
            continue
        assays[name] = _transpose(adata.layers[name])

    embeddings = {}
    for key in adata.obsm.keys():
        value = adata.obsm[key]
        array = np.asarray(value.values if isinstance(value, pd.DataFrame) else value)
        if array.ndim != 2 or not np.issubdtype(array.dtype, np.number):
            logger.warning(f"Skipping obsm['{key}']: not a 2D numeric array")
            continue
        embeddings[_embedding_name(key)] = array

    cells = _metadata_frame(adata.obs, adata.obs_names, CELL_ID)
    features = _metadata_frame(adata.var, adata.var_names, FEATURE_ID)
    logger.info(
        f"Loaded AnnData: {adata.n_obs} cells x {adata.n_vars} genes, "
        f"{len(assays)} assays, {len(embeddings)} embeddings"
    )
    return Dataset(
        assays,
        cells,
        features,
        embeddings,
        default_assay=x_assay if assays else None,
    )


def _transpose(matrix):
    if scipy.sparse.issparse(matrix):
        return matrix.T.tocsr()
    return np.asarray(matrix).T


def to_anndata(ds: Dataset, x_assay: str | None = None) -> "ad.AnnData":
    """
    Convert the current view of a Dataset to an in-memory AnnData.

    Matrices are copied (transposed to cells x genes), so the AnnData can be
    modified in place without touching the dataset's read-only storage.

    Args:
        ds: Dataset
        x_assay: Assay to put in ``X`` (default: the dataset's default assay)

    Returns:
        AnnData with the other assays as layers and embeddings in ``obsm``
    """
    import anndata as ad

    x_assay = x_assay or ds.default_assay
    layers = {}
    X = None
    for name in ds.assay_names:
        matrix = ds.assay(name)
        matrix = matrix.T.tocsr() if scipy.sparse.issparse(matrix) else np.array(matrix.T)
        if name == x_assay:
            X = matrix
        else:
            layers[name] = matrix

    obs = ds.frame(ds.cell_metadata.columns).to_pandas().set_index(CELL_ID)
    obs.index.name = None
    var = ds.feature_metadata.frame.to_pandas().set_index(FEATURE_ID)
    var.index.name = None

    positions = ds.view.positions
    obsm = {
        f"X_{name}": np.array(embedding.coordinates[positions])
        for name, embedding in ds.embeddings.items()
    }

    adata = ad.AnnData(X=X, obs=obs, var=var, layers=layers or None, obsm=obsm or None)
    adata.uns[UNS_KEY] = {"x_assay": x_assay}
    return adata


def read_h5ad(path: str | Path, x_assay: str | None = None) -> Dataset:
    """
    Load a Dataset from an ``.h5ad`` file.

    Raises:
        FileNotFoundError: If the file does not exist
    """
    import anndata as ad

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"AnnData file not found: {path}")
    return from_anndata(ad.read_h5ad(path), x_assay=x_assay)
