"""
Collaborator interfaces.

tidycell does not load files, run statistics or draw plots. Those are
external collaborators that meet the core through these narrow signatures.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from tidycell.core.dataset import Dataset


@runtime_checkable
class Loader(Protocol):
    """Builds an invariant-satisfying Dataset from an external source"""

    def __call__(self, source: Any) -> "Dataset": ...


@runtime_checkable
class StatisticalTransform(Protocol):
    """
    Pure Dataset -> Dataset function: normalization, integration,
    dimensionality reduction. It may add assays, metadata columns or an
    embedding, but must not modify its input.
    """

    def __call__(self, dataset: "Dataset") -> "Dataset": ...


@runtime_checkable
class Renderer(Protocol):
    """Turns a dataset and column selectors into a plot artifact"""

    def __call__(self, dataset: "Dataset", columns: Sequence[str]) -> Any: ...


def apply_transforms(
    dataset: "Dataset", transforms: Sequence[StatisticalTransform]
) -> "Dataset":
    """Run transforms in order, each on the previous result"""
    for transform in transforms:
        dataset = transform(dataset)
    return dataset
