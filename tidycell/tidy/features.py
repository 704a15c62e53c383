"""
Feature join engine.

Reads assay rows for a handful of features at the current index view and
exposes them either as new cell columns (wide) or as stacked
(cell, feature, value) rows (long). Only the requested rows and the cells in
view are read; the assay itself is never copied.
"""

from collections import Counter
from collections.abc import Sequence
from enum import Enum

import numpy as np
import polars as pl
from loguru import logger

from tidycell.config import get_config
from tidycell.core.dataset import Dataset
from tidycell.core.errors import AssayNotFound, DuplicateFeature
from tidycell.tidy.verbs import write_column


class JoinShape(str, Enum):
    """Output layouts of join_features"""

    WIDE = "wide"
    LONG = "long"


def read_features(
    ds: Dataset, feature_ids: Sequence[str], assay: str | None = None
) -> np.ndarray:
    """
    Expression block for the given features at the current view.

    Args:
        ds: Dataset
        feature_ids: Unique feature ids
        assay: Assay to read (default: the dataset's default assay)

    Returns:
        Dense array of shape (len(feature_ids), ds.n_cells)

    Raises:
        DuplicateFeature: If ``feature_ids`` repeats an id
        AssayNotFound: If the assay does not exist
        FeatureNotFound: If any feature id is not on the feature axis
    """
    repeated = [f for f, n in Counter(feature_ids).items() if n > 1]
    if repeated:
        raise DuplicateFeature(repeated)
    assay_name = assay or ds.default_assay
    if assay_name is None:
        raise AssayNotFound("<default>", ds.assay_names)
    matrix = ds.store.assay(assay_name)
    rows = ds.store.feature_positions(feature_ids)
    logger.debug(
        f"Reading {len(rows)} feature rows from '{assay_name}' at {ds.n_cells} cells"
    )
    return matrix.rows(rows, ds.view.positions)


def join_features(
    ds: Dataset,
    feature_ids: str | Sequence[str],
    shape: JoinShape | str = JoinShape.WIDE,
    assay: str | None = None,
) -> Dataset | pl.DataFrame:
    """
    Join assay values for some features onto the cells.

    Wide: one new cell metadata column per feature, named by the feature id.
    An existing column with that name is overwritten (with a warning).

    Long: a polars DataFrame with ``n_cells x len(feature_ids)`` rows. Each row
    of the tidy table is repeated once per feature, in the requested feature
    order, with a feature id column and a value column added. Columns already
    named after a requested feature are dropped. Nothing is aggregated.

    Args:
        ds: Dataset
        feature_ids: Feature id or ids
        shape: "wide" or "long"
        assay: Assay to read (default: the dataset's default assay)

    Returns:
        Dataset (wide) or polars DataFrame (long)

    Raises:
        DuplicateFeature: If ``feature_ids`` repeats an id
        AssayNotFound: If the assay does not exist
        FeatureNotFound: If a feature id is not on the feature axis

    Examples:
        >>> wide = join_features(ds, ["CD3D", "CD8A"])
        >>> wide.table().select(["CD3D", "CD8A"]).shape
        (100, 2)
        >>> long = join_features(ds, ["CD3D", "CD8A"], shape="long")
        >>> long.height
        200
    """
    if isinstance(feature_ids, str):
        feature_ids = [feature_ids]
    feature_ids = list(feature_ids)
    shape = JoinShape(shape)
    block = read_features(ds, feature_ids, assay)

    match shape:
        case JoinShape.WIDE:
            return _join_wide(ds, feature_ids, block)
        case JoinShape.LONG:
            return _join_long(ds, feature_ids, block)


def _join_wide(ds: Dataset, feature_ids: list[str], block: np.ndarray) -> Dataset:
    result = ds
    for feature_id, values in zip(feature_ids, block, strict=True):
        if feature_id in ds.cell_metadata:
            logger.warning(f"join_features: overwriting existing column '{feature_id}'")
        result = write_column(result, pl.Series(feature_id, values))
    return result


def _join_long(ds: Dataset, feature_ids: list[str], block: np.ndarray) -> pl.DataFrame:
    config = get_config()
    feature_col, value_col = config.long_feature_column, config.long_value_column

    base = ds.table()
    base = base.drop([c for c in feature_ids if c in base.columns])
    clash = [c for c in (feature_col, value_col) if c in base.columns]
    if clash:
        raise ValueError(
            f"Long join columns {clash} already exist; rename them or configure "
            "long_feature_column/long_value_column"
        )

    n_cells, n_features = ds.n_cells, len(feature_ids)
    repeated = base[np.repeat(np.arange(n_cells), n_features)]
    long = repeated.with_columns(
        pl.Series(feature_col, feature_ids * n_cells, dtype=pl.Utf8),
        pl.Series(value_col, block.T.reshape(-1)),
    )
    logger.info(
        f"Long feature join: {n_cells} cells x {n_features} features -> {long.height} rows"
    )
    return long
