"""Tests for nesting, per-group mapping and unnesting."""

import numpy as np
import polars as pl
import pytest

from tidycell import Dataset, nest
from tidycell.core.errors import (
    CardinalityMismatch,
    ColumnNotFound,
    DuplicateCellId,
    EmptySelection,
    PayloadKindError,
)
from tidycell.core import Renderer
from tidycell.tidy.nesting import (
    ArtifactPayload,
    DatasetPayload,
    NestedTable,
    PayloadKind,
    ScalarPayload,
    concat_datasets,
    group_sizes,
    payload_from,
)


class TestNest:
    """Test partitioning cells into nested datasets."""

    def test_nest_by_cell_type(self, dataset):
        """Test nest by cell type."""
        nested = nest(dataset, "cell_type")
        assert len(nested) == 3
        assert nested.key_columns == ["cell_type"]
        assert nested.payload_columns == ["data"]
        sizes = [d.n_cells for d in nested.datasets()]
        assert sum(sizes) == dataset.n_cells
        assert sizes == [34, 33, 33]

    def test_groups_in_first_appearance_order(self, dataset):
        """Test groups in first appearance order."""
        nested = dataset.nest("cell_type")
        assert nested.keys["cell_type"].to_list() == ["T cell", "B cell", "NK cell"]

    def test_nested_datasets_share_storage(self, dataset):
        """Test nested datasets share storage."""
        for group in dataset.nest("cell_type").datasets():
            assert group.store is dataset.store
            assert group.n_backing_cells == 100

    def test_group_members(self, tiny_dataset):
        """Test group members."""
        nested = tiny_dataset.nest("group")
        x, y = nested.datasets()
        assert x.cell_ids == ["a", "c"]
        assert y.cell_ids == ["b", "d"]

    def test_multiple_keys(self, dataset):
        """Test multiple keys."""
        nested = dataset.nest("cell_type", "batch")
        assert len(nested) == 6
        assert nested.key_columns == ["cell_type", "batch"]

    def test_custom_payload_column(self, tiny_dataset):
        """Test custom payload column."""
        nested = tiny_dataset.nest("group", column="cells")
        assert nested.payload_columns == ["cells"]

    def test_unknown_key(self, dataset):
        """Test unknown key."""
        with pytest.raises(ColumnNotFound):
            dataset.nest("nope")

    def test_nest_keeps_projection(self, dataset):
        """Test nest keeps projection."""
        nested = dataset.select("batch").nest("cell_type")
        assert nested.datasets()[0].table().columns == ["cell_id", "batch"]

    def test_group_sizes(self, dataset):
        """Test group sizes."""
        sizes = group_sizes(dataset.nest("cell_type"))
        assert sizes.columns == ["cell_type", "n"]
        assert sizes["n"].sum() == 100


class TestMap:
    """Test running functions per group."""

    def test_map_scalar(self, dataset):
        """Test map scalar."""
        nested = dataset.nest("cell_type").map("data", lambda d: d.n_cells, output="n")
        assert nested.kinds("n") == {PayloadKind.SCALAR}
        frame = nested.to_frame()
        assert frame["n"].to_list() == [34, 33, 33]
        assert frame["data"].to_list()[0] == "<Dataset: 34 cells>"

    def test_map_dataset(self, dataset):
        """Test map dataset."""
        nested = dataset.nest("cell_type").map(
            "data", lambda d: d.join_features(["CD3D"]), output="joined"
        )
        assert nested.kinds("joined") == {PayloadKind.DATASET}
        for group in nested.datasets("joined"):
            assert "CD3D" in group.table().columns
        # Input groups are unchanged
        for group in nested.datasets("data"):
            assert "CD3D" not in group.table().columns

    def test_map_artifact(self, tiny_dataset):
        """Test map artifact."""
        nested = tiny_dataset.nest("group").map("data", lambda d: {"n": d.n_cells})
        assert nested.kinds("result") == {PayloadKind.ARTIFACT}
        assert nested.payloads("result")[0].artifact == {"n": 2}

    def test_map_parallel_matches_serial(self, dataset):
        """Test map parallel matches serial."""
        def mean_cd3d(d):
            return float(d.join_features(["CD3D"]).pull("CD3D").mean())

        nested = dataset.nest("cell_type")
        serial = nested.map("data", mean_cd3d, output="m").to_frame()["m"]
        parallel = nested.map("data", mean_cd3d, output="m", max_workers=3).to_frame()["m"]
        assert serial.equals(parallel)

    def test_map_error_propagates(self, tiny_dataset):
        """Test map error propagates."""
        def boom(d):
            raise RuntimeError("failed group")

        nested = tiny_dataset.nest("group")
        with pytest.raises(RuntimeError, match="failed group"):
            nested.map("data", boom)

    def test_map_over_non_dataset_column(self, tiny_dataset):
        """Test map over non dataset column."""
        nested = tiny_dataset.nest("group").map("data", lambda d: d.n_cells, output="n")
        with pytest.raises(PayloadKindError) as exc_info:
            nested.map("n", lambda d: d)
        assert exc_info.value.actual == "scalar"

    def test_map_output_clashes_with_key(self, tiny_dataset):
        """Test map output clashes with key."""
        with pytest.raises(ValueError, match="clashes"):
            tiny_dataset.nest("group").map("data", len, output="group")

    def test_unknown_payload_column(self, tiny_dataset):
        """Test unknown payload column."""
        with pytest.raises(ColumnNotFound):
            tiny_dataset.nest("group").payloads("nope")

    def test_filter_keys(self, dataset):
        """Test filter keys."""
        nested = dataset.nest("cell_type").filter_keys(pl.col("cell_type") != "B cell")
        assert nested.keys["cell_type"].to_list() == ["T cell", "NK cell"]
        assert [d.n_cells for d in nested.datasets()] == [34, 33]

    def test_filter_keys_unknown(self, dataset):
        """Test filter keys unknown."""
        with pytest.raises(ColumnNotFound):
            dataset.nest("cell_type").filter_keys(pl.col("batch") == "batch_1")

    def test_render_each(self, tiny_dataset):
        """Test render each."""
        def describe(d, columns):
            return ",".join(f"{c}={d.pull(c).sum():g}" for c in columns)

        assert isinstance(describe, Renderer)
        nested = tiny_dataset.nest("group").render_each("data", describe, ["score"])
        # Strings from a renderer are artifacts, not scalars
        assert nested.kinds("plot") == {PayloadKind.ARTIFACT}
        assert [p.artifact for p in nested.payloads("plot")] == ["score=7", "score=3"]

    def test_render_each_checks_columns_first(self, tiny_dataset):
        """Test render each checks columns first."""
        calls = []

        def record(d, columns):
            calls.append(d.n_cells)

        with pytest.raises(ColumnNotFound):
            tiny_dataset.nest("group").render_each("data", record, ["nope"])
        assert calls == []

    def test_repr(self, tiny_dataset):
        """Test nested table repr."""
        assert repr(tiny_dataset.nest("group")).startswith("# A nested table: 2 groups")


class TestUnnest:
    """Test concatenating nested datasets back together."""

    def test_nest_unnest_preserves_cells(self, dataset):
        """Test nest unnest preserves cells."""
        back = dataset.nest("cell_type").unnest()
        assert back.n_cells == dataset.n_cells
        assert set(back.cell_ids) == set(dataset.cell_ids)
        # Groups share storage, so unnest is a single view
        assert back.store is dataset.store

    def test_unnest_mapped_datasets(self, dataset):
        """Test unnest mapped datasets."""
        nested = dataset.nest("cell_type").map(
            "data", lambda d: d.collect(), output="collected"
        )
        back = nested.unnest("collected")
        assert back.store is not dataset.store
        assert set(back.cell_ids) == set(dataset.cell_ids)
        np.testing.assert_allclose(
            back.arrange("n_genes").assay("logcounts"), dataset.assay("logcounts")
        )
        back.validate()

    def test_unnest_keeps_new_columns(self, tiny_dataset):
        """Test unnest keeps new columns."""
        nested = tiny_dataset.nest("group").map(
            "data", lambda d: d.collect().mutate("rank", pl.col("score").rank()), output="ranked"
        )
        back = nested.unnest("ranked")
        assert back.arrange("score").pull("rank").to_list() == [1.0, 2.0, 1.0, 2.0]

    def test_nest_unnest_empty_dataset(self, dataset):
        """Test nest unnest empty dataset."""
        with pytest.warns(EmptySelection):
            empty = dataset.filter(pl.col("n_genes") < 0)
        nested = empty.nest("cell_type")
        assert len(nested) == 0
        back = nested.unnest()
        assert back.n_cells == 0
        assert back.store is dataset.store
        assert back.table().columns == empty.table().columns

    def test_unnest_after_filtering_out_every_group(self, dataset):
        """Test unnest after filtering out every group."""
        nested = dataset.nest("cell_type").filter_keys(pl.col("cell_type") == "nope")
        assert len(nested) == 0
        assert nested.unnest().cell_ids == []
        mapped = nested.map("data", lambda d: d.collect(), output="collected")
        assert mapped.unnest("collected").n_cells == 0

    def test_unnest_groups_with_replaced_assay(self, dataset):
        """Test unnest groups with replaced assay."""
        def double_t_cell_counts(d):
            if d.pull("cell_type")[0] == "T cell":
                return d.with_assay("counts", d.assay("counts") * 2)
            return d.collect()

        nested = dataset.nest("cell_type").map("data", double_t_cell_counts, output="r")
        back = nested.unnest("r")
        assert back.assay_names == dataset.assay_names
        assert set(back.cell_ids) == set(dataset.cell_ids)

        doubled = back.filter(cell_type="T cell").join_features(["CD3D"], assay="counts")
        original = dataset.filter(cell_type="T cell").join_features(["CD3D"], assay="counts")
        np.testing.assert_allclose(
            doubled.pull("CD3D").to_numpy(), original.pull("CD3D").to_numpy() * 2
        )

    def test_concat_assays_in_different_order(self):
        """Test concat assays in different order."""
        first = Dataset(
            {"x": np.array([[1.0]]), "y": np.array([[0.0]])}, feature_ids=["g"], cell_ids=["a"]
        )
        second = Dataset(
            {"y": np.array([[3.0]]), "x": np.array([[2.0]])}, feature_ids=["g"], cell_ids=["b"]
        )
        combined = concat_datasets([first, second])
        assert combined.assay_names == ["x", "y"]
        np.testing.assert_array_equal(combined.assay("x"), [[1.0, 2.0]])
        np.testing.assert_array_equal(combined.assay("y"), [[0.0, 3.0]])

    def test_unnest_scalar_column(self, tiny_dataset):
        """Test unnest scalar column."""
        nested = tiny_dataset.nest("group").map("data", lambda d: d.n_cells, output="n")
        with pytest.raises(PayloadKindError):
            nested.unnest("n")

    def test_concat_duplicate_cells(self, tiny_dataset):
        """Test concat duplicate cells."""
        with pytest.raises(DuplicateCellId) as exc_info:
            concat_datasets([tiny_dataset[:2], tiny_dataset[1:]])
        assert exc_info.value.cell_ids == ["b"]

    def test_concat_feature_mismatch(self, tiny_dataset):
        """Test concat feature mismatch."""
        other = Dataset({"counts": np.ones((1, 1))}, feature_ids=["g1"], cell_ids=["z"])
        with pytest.raises(CardinalityMismatch):
            concat_datasets([tiny_dataset, other])

    def test_concat_empty(self):
        """Test concat empty."""
        with pytest.raises(ValueError):
            concat_datasets([])


class TestPayloads:
    """Test tagged payloads."""

    def test_payload_from(self, tiny_dataset):
        """Test classifying results into payload kinds."""
        assert isinstance(payload_from(tiny_dataset), DatasetPayload)
        assert isinstance(payload_from(3), ScalarPayload)
        assert payload_from(np.float64(2.5)).value == 2.5
        assert isinstance(payload_from(None), ScalarPayload)
        assert isinstance(payload_from([1, 2]), ArtifactPayload)

    def test_payload_length_mismatch(self):
        """Test payload length mismatch."""
        keys = pl.DataFrame({"k": ["a", "b"]})
        with pytest.raises(CardinalityMismatch):
            NestedTable(keys, {"v": [1]})
