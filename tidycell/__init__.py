try:
    from importlib.metadata import version

    __version__ = version("tidycell")
except ImportError:
    __version__ = "unknown"

# Core import - always available
from tidycell.config import TidyConfig, get_config, reset_config, set_config
from tidycell.core import (
    AssayNotFound,
    CardinalityMismatch,
    ColumnNotFound,
    Dataset,
    DependencyCycle,
    DuplicateCellId,
    DuplicateFeature,
    EmptySelection,
    FeatureNotFound,
    PatternMismatch,
    PayloadKindError,
    TidyCellError,
)
from tidycell.display import (
    DisplayMode,
    display_mode,
    get_display_mode,
    render,
    set_display_mode,
    toggle_display_mode,
)
from tidycell.tidy import (
    NestedTable,
    arrange,
    count,
    distinct,
    extract,
    filter,
    join_features,
    left_join,
    mutate,
    nest,
    pull,
    rename,
    sample_n,
    select,
    slice_rows,
    unite,
)


# Lazy imports for heavy dependencies
def get_integrations():
    """Get AnnData integration functions (lazy import)"""
    from tidycell.integrations import from_anndata, read_h5ad, to_anndata

    return from_anndata, to_anndata, read_h5ad


__all__ = [
    # Core data structures
    "Dataset",
    "NestedTable",
    # Verbs
    "filter",
    "select",
    "mutate",
    "arrange",
    "unite",
    "extract",
    "rename",
    "slice_rows",
    "pull",
    "distinct",
    "count",
    "left_join",
    "sample_n",
    "join_features",
    "nest",
    # Display
    "DisplayMode",
    "render",
    "display_mode",
    "get_display_mode",
    "set_display_mode",
    "toggle_display_mode",
    # Config
    "TidyConfig",
    "get_config",
    "set_config",
    "reset_config",
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
    # Lazy import functions
    "get_integrations",
]
