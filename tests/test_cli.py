"""
Tests for the headless command-line workflow.
"""

import argparse
import io
import zipfile

import pytest
from PIL import Image

from photo_press import config
from photo_press.cli import collect_inputs, main, parse_crop, run_headless, save_defaults
from photo_press.config import AppSettings
from photo_press.image_ops import CropRect


@pytest.fixture
def input_dir(tmp_path, image_factory):
    folder = tmp_path / "in"
    folder.mkdir()
    image_factory(60, 40, seed=1).save(folder / "b.png")
    image_factory(50, 50, seed=2).convert("RGB").save(folder / "a.jpg")
    (folder / "notes.txt").write_text("not an image")
    return folder


class TestParseCrop:
    """Tests for parse_crop."""

    def test_valid(self):
        assert parse_crop("10,20,300,200") == CropRect(10, 20, 300, 200)

    def test_floats(self):
        assert parse_crop("0.5,1,2.5,4") == CropRect(0.5, 1, 2.5, 4)

    @pytest.mark.parametrize("value", ["1,2,3", "a,b,c,d", "0,0,0,10", ""])
    def test_invalid(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_crop(value)


def test_collect_inputs_expands_directories(input_dir, tmp_path):
    extra = tmp_path / "extra.png"
    extra.write_bytes(b"")
    files = collect_inputs([input_dir, extra, tmp_path / "missing.png"])
    assert [f.name for f in files] == ["a.jpg", "b.png", "notes.txt", "extra.png"]


class TestRunHeadless:
    """End-to-end runs writing into a temporary directory."""

    def test_batch_writes_archive(self, input_dir, tmp_path):
        out = tmp_path / "out"
        code = run_headless([input_dir], out, output_format="png", width=20, settings=AppSettings())

        assert code == 0
        written = list(out.iterdir())
        assert len(written) == 1
        assert written[0].suffix == ".zip"
        with zipfile.ZipFile(written[0]) as archive:
            assert archive.namelist() == ["a.png", "b.png"]
            with Image.open(io.BytesIO(archive.read("b.png"))) as img:
                assert img.size == (20, 13)

    def test_single_pdf(self, input_dir, tmp_path):
        out = tmp_path / "out"
        code = run_headless([input_dir / "b.png"], out, output_format="pdf", settings=AppSettings())
        assert code == 0
        assert (out / "b.pdf").read_bytes().startswith(b"%PDF")

    def test_rotate_and_crop(self, input_dir, tmp_path):
        out = tmp_path / "out"
        code = run_headless(
            [input_dir / "b.png"], out,
            output_format="png", rotate=90, crop=CropRect(0, 0, 30, 45),
            settings=AppSettings(),
        )
        assert code == 0
        with Image.open(out / "b.png") as img:
            assert img.size == (30, 45)

    def test_rotate_without_crop_keeps_whole_frame(self, input_dir, tmp_path):
        out = tmp_path / "out"
        run_headless([input_dir / "b.png"], out, output_format="png", rotate=-90, settings=AppSettings())
        with Image.open(out / "b.png") as img:
            assert img.size == (40, 60)

    def test_both_sides_stretch(self, input_dir, tmp_path):
        out = tmp_path / "out"
        run_headless([input_dir / "b.png"], out, output_format="png", width=10, height=30, settings=AppSettings())
        with Image.open(out / "b.png") as img:
            assert img.size == (10, 30)

    def test_existing_file_is_not_overwritten(self, input_dir, tmp_path):
        out = tmp_path / "out"
        out.mkdir()
        (out / "b.jpg").write_bytes(b"keep me")
        run_headless([input_dir / "b.png"], out, settings=AppSettings())
        assert (out / "b.jpg").read_bytes() == b"keep me"
        assert (out / "b_1.jpg").exists()

    def test_no_valid_input(self, input_dir, tmp_path):
        out = tmp_path / "out"
        assert run_headless([input_dir / "notes.txt"], out, settings=AppSettings()) == 1
        assert not out.exists()


class TestSaveDefaults:
    """Persisting command-line options as defaults."""

    @pytest.fixture
    def config_path(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.json"
        monkeypatch.setattr(config, "get_config_path", lambda: path)
        return path

    def test_main_saves_and_uses_defaults(self, input_dir, tmp_path, config_path):
        out = tmp_path / "out"
        code = main([str(input_dir / "b.png"), "-o", str(out), "-f", "webp", "-q", "60", "--save-defaults"])

        assert code == 0
        assert (out / "b.webp").exists()
        saved = config.load_settings()
        assert saved.default_format == "webp"
        assert saved.default_quality == 60

    def test_later_runs_pick_up_saved_defaults(self, input_dir, tmp_path, config_path):
        config.save_settings(AppSettings(default_format="png"))
        out = tmp_path / "out"
        assert main([str(input_dir / "b.png"), "-o", str(out)]) == 0
        assert (out / "b.png").exists()

    def test_invalid_quality_keeps_previous_settings(self, config_path):
        settings = AppSettings()
        assert save_defaults(settings, None, 5, True) is settings
        assert not config_path.exists()

    def test_stretch_is_remembered(self, config_path):
        updated = save_defaults(AppSettings(), "jpg", None, keep_aspect=False)
        assert updated.keep_aspect_ratio is False
        assert updated.default_quality == 80
        assert config.load_settings() == updated
