"""
Scanpy functions as statistical transforms.

Normalization, integration and dimensionality reduction are not implemented
in tidycell. This module adapts scanpy's in-place functions to the
``Dataset -> Dataset`` transform signature: the current view is exported to
AnnData, the function runs on it, and the result is read back as a new
Dataset. The input dataset is never modified.
"""

from collections.abc import Callable
from typing import Any

from loguru import logger

from tidycell.core.dataset import Dataset
from tidycell.core.interfaces import StatisticalTransform
from tidycell.integrations.anndata import from_anndata, to_anndata


def as_transform(
    func: Callable[..., Any],
    *args: Any,
    x_assay: str | None = None,
    output_assay: str | None = None,
    **kwargs: Any,
) -> StatisticalTransform:
    """
    Wrap a scanpy-style function as a Dataset transform.

    Args:
        func: Function taking an AnnData first. It may modify it in place
            (most of ``sc.pp``/``sc.tl``) or return a new AnnData.
        *args: Extra positional arguments for ``func``
        x_assay: Assay exported as ``X`` (default: the dataset's default assay)
        output_assay: Name under which the resulting ``X`` is stored. Defaults
            to overwriting ``x_assay`` in the returned dataset.
        **kwargs: Keyword arguments for ``func``

    Returns:
        Transform function ``Dataset -> Dataset``

    Examples:
        >>> import scanpy as sc
        >>> normalize = as_transform(sc.pp.normalize_total, target_sum=1e4)
        >>> log = as_transform(sc.pp.log1p, output_assay="logcounts")
        >>> ds = log(normalize(ds))
    """
    name = getattr(func, "__name__", repr(func))

    def transform(ds: Dataset) -> Dataset:
        source = x_assay or ds.default_assay
        adata = to_anndata(ds, x_assay=source)
        if output_assay is not None and output_assay != source:
            # Keep the input assay as a layer; X becomes the output assay
            adata.layers[source] = adata.X.copy()
            adata.uns["tidycell"] = {"x_assay": output_assay}

        logger.info(f"Running {name} on {ds.n_cells} cells")
        result = func(adata, *args, **kwargs)
        if result is not None and hasattr(result, "obs") and hasattr(result, "X"):
            adata = result
        return from_anndata(adata)

    transform.__name__ = f"transform_{name}"
    transform.__doc__ = f"Dataset transform wrapping {name}"
    return transform


class Preprocessing:
    """Ready-made scanpy transforms (imports scanpy on first use)"""

    @staticmethod
    def normalize_total(target_sum: float | None = 1e4, **kwargs: Any):
        import scanpy as sc

        return as_transform(sc.pp.normalize_total, target_sum=target_sum, **kwargs)

    @staticmethod
    def log1p(output_assay: str | None = "logcounts", **kwargs: Any):
        import scanpy as sc

        return as_transform(sc.pp.log1p, output_assay=output_assay, **kwargs)

    @staticmethod
    def pca(n_comps: int = 50, **kwargs: Any):
        import scanpy as sc

        return as_transform(sc.pp.pca, n_comps=n_comps, **kwargs)


class Tools:
    """Embedding transforms from ``sc.tl``"""

    @staticmethod
    def umap(n_neighbors: int = 15, **kwargs: Any):
        import scanpy as sc

        def neighbors_then_umap(adata, **umap_kwargs):
            sc.pp.neighbors(adata, n_neighbors=n_neighbors)
            sc.tl.umap(adata, **umap_kwargs)

        neighbors_then_umap.__name__ = "umap"
        return as_transform(neighbors_then_umap, **kwargs)


pp = Preprocessing()
tl = Tools()
