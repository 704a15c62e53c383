"""Tests for the display mode controller and renderers."""

import io

import numpy as np
import polars as pl
import pytest
from rich.console import Console

from tidycell import (
    DisplayMode,
    display_mode,
    get_display_mode,
    set_display_mode,
    toggle_display_mode,
)
from tidycell.display import DisplayContext, get_controller, print_dataset, render


class TestDisplayController:
    """Test the process-wide display mode."""

    def test_unset_until_first_dataset(self, tiny_dataset):
        """Test unset until first dataset."""
        # The autouse fixture clears the mode after tiny_dataset was built
        controller = get_controller()
        controller._mode = None
        assert controller.mode is DisplayMode.TIDY
        controller.on_dataset_created()
        assert controller._mode is DisplayMode.TIDY

    def test_explicit_mode_survives_construction(self, counts_matrix, cell_metadata, genes):
        """Test explicit mode survives construction."""
        from tidycell import Dataset

        set_display_mode("native")
        Dataset({"counts": counts_matrix}, cell_metadata, feature_ids=genes)
        assert get_display_mode() is DisplayMode.NATIVE

    def test_toggle_twice_restores(self, dataset):
        """Test toggle twice restores."""
        before = get_display_mode()
        rendered_before = render(dataset)
        table_before = dataset.table()
        counts_before = dataset.assay("counts").toarray().copy()

        assert toggle_display_mode() is not before
        assert toggle_display_mode() is before

        # Stored values are bit-identical
        assert dataset.table().equals(table_before)
        np.testing.assert_array_equal(dataset.assay("counts").toarray(), counts_before)
        assert render(dataset) == rendered_before

    def test_set_same_mode_is_noop(self):
        """Test set same mode is noop."""
        set_display_mode("tidy")
        set_display_mode(DisplayMode.TIDY)
        assert get_display_mode() is DisplayMode.TIDY

    def test_unknown_mode(self):
        """Test unknown mode."""
        with pytest.raises(ValueError):
            set_display_mode("fancy")

    def test_context_manager_restores(self):
        """Test context manager restores."""
        set_display_mode("tidy")
        with display_mode("native") as mode:
            assert mode is DisplayMode.NATIVE
            assert get_display_mode() is DisplayMode.NATIVE
        assert get_display_mode() is DisplayMode.TIDY


class TestRender:
    """Test tidy and native renderings."""

    def test_tidy_render(self, dataset):
        """Test tidy render."""
        text = render(dataset, DisplayContext(mode=DisplayMode.TIDY))
        assert text.startswith("# A tidycell Dataset: 100 cells x 10 columns")
        assert "Assays=counts, logcounts (default: logcounts)" in text
        assert "cell_type" in text
        assert "UMAP_1" in text

    def test_native_render(self, dataset):
        """Test native render."""
        text = render(dataset, DisplayContext(mode=DisplayMode.NATIVE))
        assert text.startswith("Dataset with 8 features across 100 cells")
        assert "2 assay(s): counts, logcounts" in text
        assert "Embeddings: umap (2D), pca (3D)" in text

    def test_native_without_embeddings(self):
        """Test native without embeddings."""
        from tidycell import Dataset

        ds = Dataset({"counts": np.ones((1, 2))}, feature_ids=["g"], cell_ids=["a", "b"])
        assert "Embeddings: none" in render(ds, DisplayContext(mode=DisplayMode.NATIVE))

    def test_render_follows_global_mode(self, dataset):
        """Test render follows global mode."""
        set_display_mode("native")
        assert repr(dataset).startswith("Dataset with")
        toggle_display_mode()
        assert repr(dataset).startswith("# A tidycell Dataset")

    def test_state_notes(self, dataset):
        """Test state notes."""
        tidy = DisplayContext(mode=DisplayMode.TIDY)
        assert "(view of 100 cells)" in render(dataset[:5], tidy)
        assert "(projected, view of 100 cells)" in render(dataset.select("batch"), tidy)
        assert "view of" not in render(dataset, tidy)

    def test_projected_render_shows_projection(self, dataset):
        """Test projected render shows projection."""
        text = render(dataset.select("batch"), DisplayContext(mode=DisplayMode.TIDY))
        assert "100 cells x 2 columns" in text
        assert "UMAP_1" not in text

    def test_max_rows(self, dataset):
        """Test max rows."""
        short = render(dataset, DisplayContext(mode=DisplayMode.TIDY, max_rows=2))
        long = render(dataset, DisplayContext(mode=DisplayMode.TIDY, max_rows=50))
        assert len(short.splitlines()) < len(long.splitlines())

    def test_render_does_not_change_pl_config(self, dataset):
        """Test render does not change pl config."""
        before = pl.Config.state()
        render(dataset)
        assert pl.Config.state() == before

    def test_print_dataset(self, dataset):
        """Test print dataset."""
        buffer = io.StringIO()
        console = Console(file=buffer, width=200)
        print_dataset(dataset, DisplayContext(mode=DisplayMode.NATIVE), console=console)
        output = buffer.getvalue()
        assert "tidycell (native)" in output
        assert "Dataset with 8 features" in output
