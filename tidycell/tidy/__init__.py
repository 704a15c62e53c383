"""
Tidy verbs over Dataset.

The verbs are plain functions taking a Dataset first; the same verbs are
available as Dataset methods for chaining.
"""

from tidycell.tidy.features import JoinShape, join_features, read_features
from tidycell.tidy.nesting import (
    ArtifactPayload,
    DatasetPayload,
    NestedTable,
    PayloadKind,
    ScalarPayload,
    concat_datasets,
    group_sizes,
    nest,
    payload_from,
)
from tidycell.tidy.verbs import (
    arrange,
    count,
    distinct,
    extract,
    filter,
    left_join,
    mutate,
    pull,
    rename,
    sample_n,
    select,
    slice_rows,
    unite,
)

__all__ = [
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
    "read_features",
    "JoinShape",
    "nest",
    "NestedTable",
    "concat_datasets",
    "group_sizes",
    "PayloadKind",
    "DatasetPayload",
    "ScalarPayload",
    "ArtifactPayload",
    "payload_from",
]
