from tidycell.core.dataset import Dataset
from tidycell.core.embeddings import Embedding, EmbeddingStore
from tidycell.core.errors import (
    AssayNotFound,
    CardinalityMismatch,
    ColumnNotFound,
    DependencyCycle,
    DuplicateCellId,
    DuplicateFeature,
    EmptySelection,
    FeatureNotFound,
    PatternMismatch,
    PayloadKindError,
    TidyCellError,
)
from tidycell.core.index_view import IndexView
from tidycell.core.interfaces import (
    Loader,
    Renderer,
    StatisticalTransform,
    apply_transforms,
)
from tidycell.core.metadata import CELL_ID, FEATURE_ID, MetadataTable
from tidycell.core.store import Assay, ColumnarStore

__all__ = [
    "Dataset",
    "Assay",
    "ColumnarStore",
    "MetadataTable",
    "Embedding",
    "EmbeddingStore",
    "IndexView",
    "Loader",
    "StatisticalTransform",
    "Renderer",
    "apply_transforms",
    "CELL_ID",
    "FEATURE_ID",
    # Errors
    "TidyCellError",
    "ColumnNotFound",
    "AssayNotFound",
    "FeatureNotFound",
    "DuplicateFeature",
    "DuplicateCellId",
    "CardinalityMismatch",
    "PatternMismatch",
    "DependencyCycle",
    "PayloadKindError",
    "EmptySelection",
]
