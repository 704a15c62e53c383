from tidycell.integrations.anndata import from_anndata, read_h5ad, to_anndata

__all__ = ["from_anndata", "to_anndata", "read_h5ad"]
