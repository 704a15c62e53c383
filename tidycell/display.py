"""
Display mode controller.

A dataset can be rendered two ways: ``tidy`` shows the cell table a verb
would see, ``native`` shows the structured store (assays, metadata columns,
embeddings). The mode only affects rendering; stored values are never read
for writing here.

The process-wide mode lives on a single controller. Internally every render
takes an explicit ``DisplayContext``; the global mode is only consulted to
build the default context.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import polars as pl
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from tidycell.config import get_config

if TYPE_CHECKING:
    from tidycell.core.dataset import Dataset


class DisplayMode(str, Enum):
    """Rendering styles"""

    TIDY = "tidy"
    NATIVE = "native"


class DatasetState(str, Enum):
    """What a dataset value currently is, relative to its backing storage"""

    FULL = "full"  # identity index view, all columns
    VIEW = "view"  # subset or reordered cells, all columns
    PROJECTED = "projected"  # narrowed column projection


@dataclass(frozen=True)
class DisplayContext:
    """Rendering parameters passed explicitly to render()"""

    mode: DisplayMode = DisplayMode.TIDY
    max_rows: int | None = None


class DisplayController:
    """
    Holder of the process-wide display mode.

    The mode is unset until the first Dataset is constructed, at which point
    it defaults to ``tidy`` unless a caller already chose a mode.
    """

    def __init__(self):
        self._mode: DisplayMode | None = None

    @property
    def mode(self) -> DisplayMode:
        return self._mode or DisplayMode.TIDY

    def on_dataset_created(self) -> None:
        if self._mode is None:
            self._mode = DisplayMode.TIDY

    def set(self, mode: DisplayMode | str) -> DisplayMode:
        self._mode = DisplayMode(mode)
        return self._mode

    def toggle(self) -> DisplayMode:
        new_mode = (
            DisplayMode.NATIVE if self.mode is DisplayMode.TIDY else DisplayMode.TIDY
        )
        logger.debug(f"Display mode: {self.mode.value} -> {new_mode.value}")
        self._mode = new_mode
        return new_mode

    def context(self) -> DisplayContext:
        return DisplayContext(mode=self.mode)


_controller = DisplayController()


def get_controller() -> DisplayController:
    return _controller


def get_display_mode() -> DisplayMode:
    """Current process-wide display mode"""
    return _controller.mode


def set_display_mode(mode: DisplayMode | str) -> DisplayMode:
    """Set the process-wide display mode (setting the same mode twice is a no-op)"""
    return _controller.set(mode)


def toggle_display_mode() -> DisplayMode:
    """Switch between tidy and native rendering; two toggles restore the original"""
    return _controller.toggle()


@contextmanager
def display_mode(mode: DisplayMode | str) -> Iterator[DisplayMode]:
    """
    Temporarily render in another mode.

    Examples:
        >>> with display_mode("native"):
        ...     print(dataset)
    """
    previous = _controller._mode
    try:
        yield _controller.set(mode)
    finally:
        _controller._mode = previous


def render(dataset: "Dataset", context: DisplayContext | None = None) -> str:
    """
    Render a dataset to text.

    Args:
        dataset: Dataset to render
        context: Explicit rendering context (default: process-wide mode)

    Returns:
        Rendered text
    """
    context = context or _controller.context()
    match context.mode:
        case DisplayMode.TIDY:
            return _render_tidy(dataset, context)
        case DisplayMode.NATIVE:
            return _render_native(dataset)
        case _:
            raise ValueError(f"Unknown display mode: {context.mode}")


def _state_note(dataset: "Dataset") -> str:
    match dataset.state:
        case DatasetState.FULL:
            return ""
        case DatasetState.VIEW:
            return f" (view of {dataset.n_backing_cells} cells)"
        case DatasetState.PROJECTED:
            return f" (projected, view of {dataset.n_backing_cells} cells)"
        case _:
            raise ValueError(f"Unknown dataset state: {dataset.state}")


def _render_tidy(dataset: "Dataset", context: DisplayContext) -> str:
    max_rows = context.max_rows or get_config().max_display_rows
    table = dataset.table()
    lines = [
        f"# A tidycell Dataset: {dataset.n_cells} cells x "
        f"{len(table.columns)} columns{_state_note(dataset)}",
        f"# Features={dataset.n_features} | Assays={', '.join(dataset.assay_names)}"
        + (f" (default: {dataset.default_assay})" if dataset.default_assay else ""),
    ]
    with pl.Config(tbl_rows=max_rows, tbl_cols=-1, tbl_hide_dataframe_shape=True):
        lines.append(str(table))
    return "\n".join(lines)


def _render_native(dataset: "Dataset") -> str:
    lines = [
        f"Dataset with {dataset.n_features} features across "
        f"{dataset.n_cells} cells{_state_note(dataset)}",
        f"{len(dataset.assay_names)} assay(s): {', '.join(dataset.assay_names)}",
        f"Default assay: {dataset.default_assay}",
        f"Cell metadata: {', '.join(dataset.cell_metadata.columns)}",
        f"Feature metadata: {', '.join(dataset.feature_metadata.columns)}",
    ]
    if dataset.embeddings:
        reductions = ", ".join(
            f"{name} ({emb.n_dims}D)" for name, emb in dataset.embeddings.items()
        )
        lines.append(f"Embeddings: {reductions}")
    else:
        lines.append("Embeddings: none")
    return "\n".join(lines)


def print_dataset(
    dataset: "Dataset",
    context: DisplayContext | None = None,
    console: Console | None = None,
) -> None:
    """Print a rendered dataset inside a rich panel"""
    context = context or _controller.context()
    console = console or Console()
    console.print(
        Panel(
            Text(render(dataset, context)),
            title=f"tidycell ({context.mode.value})",
            border_style="cyan" if context.mode is DisplayMode.TIDY else "green",
        )
    )
