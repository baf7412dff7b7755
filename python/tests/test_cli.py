"""Tests for the command line interface."""

import pytest
from typer.testing import CliRunner

from asset_reducer.cli import app
from asset_reducer.store import AssetStore

runner = CliRunner()


@pytest.fixture
def source(write_source):
    return write_source("crate", cols=100, rows=50)


def _triangles(path):
    return AssetStore().load(path).triangle_count


class TestSimplify:
    def test_preset_writes_default_output(self, source):
        result = runner.invoke(app, ["simplify", str(source), "--preset", "standard"])

        assert result.exit_code == 0, result.output
        output = source.parent / "crate_simplified.lodz"
        assert 200 <= _triangles(output) <= 3000

    def test_existing_output_needs_overwrite(self, source, tmp_path):
        output = tmp_path / "out.lodz"
        output.write_bytes(b"old")

        result = runner.invoke(app, ["simplify", str(source), "--preset", "minimal", "-o", str(output)])
        assert result.exit_code == 1
        assert "Output exists" in result.output
        assert output.read_bytes() == b"old"

        result = runner.invoke(app, ["simplify", str(source), "--preset", "minimal", "-o", str(output), "-f"])
        assert result.exit_code == 0, result.output
        assert _triangles(output) < 10000

    def test_custom_flags(self, source, tmp_path):
        output = tmp_path / "custom.lodz"
        result = runner.invoke(
            app,
            ["simplify", str(source), "--ratio", "0.5", "--min-face-count", "0", "--no-lock-border", "-o", str(output)],
        )
        assert result.exit_code == 0, result.output
        assert _triangles(output) <= 5000

    def test_presets_write_one_file_per_level(self, source, tmp_path):
        out = tmp_path / "levels"
        result = runner.invoke(app, ["simplify", str(source), "--presets", "standard,minimal", "-d", str(out)])

        assert result.exit_code == 0, result.output
        assert sorted(p.name for p in out.iterdir()) == ["crate_minimal.lodz", "crate_standard.lodz"]

    def test_quality_specs(self, source, tmp_path):
        folder = tmp_path / "q"
        result = runner.invoke(
            app,
            [
                "simplify", str(source),
                "-q", f"custom:{folder}/:0.25:m=0",
                "-q", f"minimal:{folder}/tiny.glb",
            ],
        )

        assert result.exit_code == 0, result.output
        assert (folder / "crate_custom_25.lodz").is_file()
        assert (folder / "tiny.glb").is_file()

    def test_missing_level_flags(self, source):
        result = runner.invoke(app, ["simplify", str(source)])
        assert result.exit_code == 1
        assert "--preset" in result.output

    def test_bad_quality_string(self, source):
        result = runner.invoke(app, ["simplify", str(source), "-q", "custom:out/"])
        assert result.exit_code == 1
        assert "ratio" in result.output

    def test_missing_source(self, tmp_path):
        result = runner.invoke(app, ["simplify", str(tmp_path / "nope.glb"), "--preset", "standard"])
        assert result.exit_code == 1
        assert "File not found" in result.output

    def test_unreadable_source(self, tmp_path):
        broken = tmp_path / "broken.lodz"
        broken.write_bytes(b"garbage")
        result = runner.invoke(app, ["simplify", str(broken), "--preset", "standard"])
        assert result.exit_code == 1


class TestBatch:
    def test_presets_to_level_folders(self, write_source, tmp_path):
        folder = tmp_path / "sources"
        write_source("a")
        write_source("b")
        (folder / "c.lodz").write_bytes(b"garbage")

        result = runner.invoke(app, ["batch", str(folder), "--presets", "standard,minimal"])

        assert result.exit_code == 0, result.output
        assert "Succeeded: 2" in result.output
        assert "Failed: 1" in result.output
        base = folder / "simplified_multi_quality"
        assert sorted(p.name for p in (base / "standard").iterdir()) == ["a.lodz", "b.lodz"]
        assert sorted(p.name for p in (base / "minimal").iterdir()) == ["a.lodz", "b.lodz"]

    def test_single_level_output(self, write_source, tmp_path):
        write_source("a")
        out = tmp_path / "flat"
        result = runner.invoke(app, ["batch", str(tmp_path / "sources"), "--preset", "minimal", "-o", str(out)])
        assert result.exit_code == 0, result.output
        assert [p.name for p in out.iterdir()] == ["a.lodz"]

    def test_quality_spec_folders(self, write_source, tmp_path):
        write_source("a")
        low = tmp_path / "low"
        result = runner.invoke(app, ["batch", str(tmp_path / "sources"), "-q", f"minimal:{low}/"])
        assert result.exit_code == 0, result.output
        assert (low / "a.lodz").is_file()

    def test_missing_folder(self, tmp_path):
        result = runner.invoke(app, ["batch", str(tmp_path / "nope"), "--preset", "standard"])
        assert result.exit_code == 1


def test_multi_quality(source, tmp_path):
    out = tmp_path / "mq"
    result = runner.invoke(app, ["multi-quality", str(source), "-o", str(out)])

    assert result.exit_code == 0, result.output
    assert sorted(p.name for p in out.iterdir()) == ["crate_minimal.lodz", "crate_original.lodz", "crate_standard.lodz"]
    assert _triangles(out / "crate_original.lodz") == 10000


def test_inspect(source):
    result = runner.invoke(app, ["inspect", str(source)])
    assert result.exit_code == 0, result.output
    assert "10,000" in result.output
    assert "Estimated triangles per level" in result.output
