"""
Tests for the blood-pressure OCR pipeline.

Run with: pytest tests/ -v
"""

import io
import json
import sys
import types
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).parent.parent))

import bp_ocr
from bp_ocr import (
    ExtractedReading,
    LanguageModel,
    OcrConfig,
    ReadingStatus,
    RecognitionResult,
    RecognitionUnavailableError,
    TesseractEngine,
    UnsupportedImageError,
    binarize,
    extract_reading,
    load_ocr_config,
    merge_readings,
    normalize_text,
    parse_reading,
    preprocess_image,
    read_blood_pressure,
    scaled_size,
)


class FakeEngine:
    """Returns canned text per language and records every call."""

    def __init__(self, bilingual="", latin="", error=None):
        self.texts = {LanguageModel.BILINGUAL: bilingual, LanguageModel.LATIN_ONLY: latin}
        self.error = error
        self.calls = []

    def recognize(self, raster, language):
        self.calls.append(language)
        if self.error is not None:
            raise self.error
        return RecognitionResult(text=self.texts[language], language=language.value)


def _png_bytes(width, height, color=(255, 255, 255)):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class _FakeTesseractError(RuntimeError):
    pass


class _FakeTesseractNotFoundError(OSError):
    pass


def _fake_pytesseract(data=None, error=None):
    """Stand-in for the pytesseract module that records image_to_data calls."""
    calls = []

    def image_to_data(image, lang=None, config=None, output_type=None):
        calls.append({"image": image, "lang": lang, "config": config, "output_type": output_type})
        if error is not None:
            raise error
        return data

    module = types.SimpleNamespace(
        pytesseract=types.SimpleNamespace(tesseract_cmd="tesseract"),
        Output=types.SimpleNamespace(DICT="dict"),
        TesseractError=_FakeTesseractError,
        TesseractNotFoundError=_FakeTesseractNotFoundError,
        image_to_data=image_to_data,
    )
    return module, calls


_ONE_LINE_DATA = {
    "page_num": [1, 1],
    "block_num": [1, 1],
    "par_num": [1, 1],
    "line_num": [1, 1],
    "conf": [90, 80],
    "text": ["128", "82"],
}


class TestScaledSize:
    """Tests for the output raster size."""

    def test_oversized_image_is_capped(self):
        assert scaled_size(4000, 2000) == (2000, 1000)

    def test_small_image_is_upscaled_twice(self):
        assert scaled_size(500, 500) == (1000, 1000)

    def test_upscale_limited_by_max_edge(self):
        assert scaled_size(1500, 100) == (2000, 133)

    def test_exact_max_edge_unchanged(self):
        assert scaled_size(2000, 1000) == (2000, 1000)

    def test_configurable_limits(self):
        config = OcrConfig(max_edge=1000, max_upscale=1.5)
        assert scaled_size(400, 200, config) == (600, 300)

    def test_empty_image_rejected(self):
        with pytest.raises(UnsupportedImageError):
            scaled_size(0, 0)


class TestBinarize:
    """Tests for grayscale, contrast and threshold."""

    def test_bright_pixel_goes_white(self):
        rgb = np.array([[[100, 200, 50]]], dtype=np.uint8)
        assert binarize(rgb)[0, 0] == 255

    def test_threshold_boundary(self):
        # (140 - 128) * 1.25 + 128 = 143 -> white; 130 -> 130.5 -> black
        gray = np.array([[140, 130]], dtype=np.uint8)
        assert binarize(gray).tolist() == [[255, 0]]

    def test_contrast_and_threshold_are_configurable(self):
        gray = np.array([[140]], dtype=np.uint8)
        assert binarize(gray, OcrConfig(threshold=150))[0, 0] == 0
        assert binarize(gray, OcrConfig(contrast=2.0, threshold=150))[0, 0] == 255

    def test_alpha_channel_ignored(self):
        rgba = np.zeros((2, 2, 4), dtype=np.uint8)
        rgba[..., :3] = 255
        assert binarize(rgba).tolist() == [[255, 255], [255, 255]]

    def test_binarized_raster_is_stable(self):
        rng = np.random.default_rng(7)
        rgb = rng.integers(0, 256, size=(40, 60, 3), dtype=np.uint8)
        once = binarize(rgb)
        assert set(np.unique(once)) <= {0, 255}
        assert np.array_equal(binarize(once), once)

    def test_input_not_modified(self):
        rgb = np.full((3, 3, 3), 90, dtype=np.uint8)
        copy = rgb.copy()
        binarize(rgb)
        assert np.array_equal(rgb, copy)


class TestPreprocessImage:
    """Tests for decoding and preprocessing whole images."""

    def test_array_input_upscaled(self):
        raster = preprocess_image(np.full((500, 500, 3), 255, dtype=np.uint8))
        assert raster.shape == (1000, 1000)
        assert raster.dtype == np.uint8
        assert np.all(raster == 255)

    def test_bytes_input_downscaled(self):
        raster = preprocess_image(_png_bytes(4000, 2000, color=(0, 0, 0)))
        assert raster.shape == (1000, 2000)
        assert np.all(raster == 0)

    def test_path_input(self, tmp_path):
        path = tmp_path / "meter.png"
        path.write_bytes(_png_bytes(300, 200))
        assert preprocess_image(path).shape == (400, 600)

    def test_corrupt_bytes_rejected(self):
        with pytest.raises(UnsupportedImageError):
            preprocess_image(b"definitely not an image")

    def test_missing_file_rejected(self, tmp_path):
        with pytest.raises(UnsupportedImageError):
            preprocess_image(tmp_path / "missing.jpg")

    def test_pixel_limit_exceeded_rejected(self, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
        with pytest.raises(UnsupportedImageError):
            preprocess_image(_png_bytes(100, 30))

    def test_exif_orientation_applied(self):
        exif = Image.Exif()
        exif[0x0112] = 6
        buffer = io.BytesIO()
        Image.new("RGB", (40, 20), (255, 255, 255)).save(buffer, format="JPEG", exif=exif.tobytes())
        # Rotated to 20x40, then upscaled twice.
        assert preprocess_image(buffer.getvalue()).shape == (80, 40)


class TestParseReading:
    """Tests for the labeled and paired number grammar."""

    def test_labeled_systolic_with_noise(self):
        reading = parse_reading("OMRON ## SYS mmHg 128 ~~ memory")
        assert reading.systolic == 128

    def test_pair(self):
        assert parse_reading("128/82") == ExtractedReading(systolic=128, diastolic=82)

    def test_reversed_pair(self):
        assert parse_reading("82 / 128") == ExtractedReading(systolic=128, diastolic=82)

    def test_label_beats_pair(self):
        reading = parse_reading("SYS 130 ... 120/80")
        assert reading.systolic == 130
        assert reading.diastolic == 80

    def test_full_labels(self):
        reading = parse_reading("Systolic: 135 mmHg\nDiastolic: 85 mmHg\nPulse 72 /min")
        assert reading == ExtractedReading(systolic=135, diastolic=85, pulse=72)

    def test_lowercase_and_fullwidth_space(self):
        reading = parse_reading("sys　121  dia\t79  pul 64")
        assert reading == ExtractedReading(systolic=121, diastolic=79, pulse=64)

    def test_chinese_labels(self):
        reading = parse_reading("收缩压 128 舒张压 82 心率 70")
        assert reading == ExtractedReading(systolic=128, diastolic=82, pulse=70)

    def test_hr_label(self):
        assert parse_reading("HR 66").pulse == 66

    def test_hr_inside_word_is_not_a_label(self):
        assert parse_reading("CHR 66").pulse is None

    def test_no_numbers(self):
        reading = parse_reading("SYS DIA PUL mmHg")
        assert reading == ExtractedReading()
        assert not reading.complete

    def test_long_digit_runs_ignored(self):
        assert parse_reading("SYS 12345 1234/5678") == ExtractedReading()

    def test_gap_limit(self):
        text = "SYS" + "-" * 11 + "120"
        assert parse_reading(text).systolic is None
        assert parse_reading(text, label_gap=11).systolic == 120

    def test_equal_pair_is_kept(self):
        assert parse_reading("100/100") == ExtractedReading(systolic=100, diastolic=100)

    def test_labeled_values_reordered(self):
        assert parse_reading("SYS 70 DIA 90") == ExtractedReading(systolic=90, diastolic=70)

    def test_pulse_has_no_positional_fallback(self):
        assert parse_reading("128/82 72").pulse is None

    def test_normalize_text(self):
        assert normalize_text("a　 b\n\nc") == "A B C"


class TestMergeReadings:
    def test_primary_wins_fallback_fills(self):
        merged = merge_readings(
            ExtractedReading(systolic=140),
            ExtractedReading(systolic=120, diastolic=80, pulse=66),
        )
        assert merged == ExtractedReading(systolic=140, diastolic=80, pulse=66)

    def test_empty_fallback(self):
        primary = ExtractedReading(systolic=140, pulse=70)
        assert merge_readings(primary, ExtractedReading()) == primary


class TestExtractReading:
    """Tests for the two-pass orchestration."""

    def setup_method(self):
        self.raster = np.zeros((10, 10), dtype=np.uint8)

    def test_first_pass_complete(self):
        engine = FakeEngine(bilingual="SYS 128 DIA 82 PUL 70", latin="999/999")
        outcome = extract_reading(self.raster, engine)
        assert engine.calls == [LanguageModel.BILINGUAL]
        assert outcome.status is ReadingStatus.FOUND
        assert outcome.reading == ExtractedReading(systolic=128, diastolic=82, pulse=70)
        assert len(outcome.passes) == 1

    def test_fallback_pass_supplies_values(self):
        engine = FakeEngine(bilingual="~~ ::", latin="128/82")
        outcome = extract_reading(self.raster, engine)
        assert engine.calls == [LanguageModel.BILINGUAL, LanguageModel.LATIN_ONLY]
        assert outcome.found
        assert outcome.reading == ExtractedReading(systolic=128, diastolic=82)

    def test_fallback_merges_fields(self):
        engine = FakeEngine(bilingual="SYS 140", latin="120/80 PUL 66")
        outcome = extract_reading(self.raster, engine)
        assert outcome.reading == ExtractedReading(systolic=140, diastolic=80, pulse=66)

    def test_no_reading_found(self):
        engine = FakeEngine(bilingual="", latin="hello")
        outcome = extract_reading(self.raster, engine)
        assert outcome.status is ReadingStatus.NO_READING_FOUND
        assert not outcome.found
        assert len(outcome.passes) == 2

    def test_engine_failure_propagates(self):
        engine = FakeEngine(error=RecognitionUnavailableError("no eng.traineddata"))
        with pytest.raises(RecognitionUnavailableError):
            extract_reading(self.raster, engine)
        assert engine.calls == [LanguageModel.BILINGUAL]

    def test_read_blood_pressure_end_to_end(self):
        engine = FakeEngine(bilingual="122/78 HR 61")
        outcome = read_blood_pressure(_png_bytes(500, 250), engine=engine)
        assert outcome.reading == ExtractedReading(systolic=122, diastolic=78, pulse=61)


class TestTesseractEngine:
    def test_config_string(self):
        engine = TesseractEngine(OcrConfig(psm=11, oem=1))
        config = engine.tesseract_config()
        assert "--psm 11" in config
        assert "--oem 1" in config
        assert "tessedit_char_whitelist" in config

    def test_missing_pytesseract(self, monkeypatch):
        monkeypatch.setattr(bp_ocr, "pytesseract", None)
        with pytest.raises(RecognitionUnavailableError):
            TesseractEngine().recognize(np.zeros((5, 5), dtype=np.uint8), LanguageModel.LATIN_ONLY)

    def test_bilingual_call_arguments(self, monkeypatch):
        fake, calls = _fake_pytesseract(data=_ONE_LINE_DATA)
        monkeypatch.setattr(bp_ocr, "pytesseract", fake)
        raster = np.zeros((5, 5), dtype=np.uint8)
        result = TesseractEngine().recognize(raster, LanguageModel.BILINGUAL)

        assert calls[0]["lang"] == "eng+chi_sim"
        assert calls[0]["image"] is raster
        assert "--psm 11" in calls[0]["config"]
        assert "tessedit_char_whitelist" in calls[0]["config"]
        assert calls[0]["output_type"] == "dict"
        assert result.text == "128 82"
        assert result.language == "eng+chi_sim"
        assert result.confidence == pytest.approx(0.85)

    def test_latin_only_call_arguments(self, monkeypatch):
        fake, calls = _fake_pytesseract(data=_ONE_LINE_DATA)
        monkeypatch.setattr(bp_ocr, "pytesseract", fake)
        TesseractEngine().recognize(np.zeros((5, 5), dtype=np.uint8), LanguageModel.LATIN_ONLY)
        assert calls[0]["lang"] == "eng"
        assert 'tessedit_char_whitelist="' in calls[0]["config"]

    def test_command_override_applied(self, monkeypatch):
        fake, _ = _fake_pytesseract(data=_ONE_LINE_DATA)
        monkeypatch.setattr(bp_ocr, "pytesseract", fake)
        TesseractEngine(OcrConfig(tesseract_cmd="/opt/tesseract")).recognize(
            np.zeros((5, 5), dtype=np.uint8), LanguageModel.LATIN_ONLY
        )
        assert fake.pytesseract.tesseract_cmd == "/opt/tesseract"

    def test_engine_error_mapped(self, monkeypatch):
        failure = _FakeTesseractError("Failed loading language 'chi_sim'")
        fake, _ = _fake_pytesseract(error=failure)
        monkeypatch.setattr(bp_ocr, "pytesseract", fake)
        with pytest.raises(RecognitionUnavailableError) as info:
            TesseractEngine().recognize(np.zeros((5, 5), dtype=np.uint8), LanguageModel.BILINGUAL)
        assert info.value.__cause__ is failure
        assert "eng+chi_sim" in str(info.value)

    def test_missing_binary_mapped(self, monkeypatch):
        fake, _ = _fake_pytesseract(error=_FakeTesseractNotFoundError())
        monkeypatch.setattr(bp_ocr, "pytesseract", fake)
        with pytest.raises(RecognitionUnavailableError, match="not found"):
            TesseractEngine().recognize(np.zeros((5, 5), dtype=np.uint8), LanguageModel.LATIN_ONLY)

    def test_language_selection(self):
        config = OcrConfig()
        assert config.language_for(LanguageModel.BILINGUAL) == "eng+chi_sim"
        assert config.language_for(LanguageModel.LATIN_ONLY) == "eng"

    def test_lines_from_data(self):
        data = {
            "page_num": [1, 1, 1, 1, 1],
            "block_num": [1, 1, 1, 2, 2],
            "par_num": [1, 1, 1, 1, 1],
            "line_num": [1, 1, 1, 1, 1],
            "conf": [-1, 90, 70, "80", -1],
            "text": ["", "SYS", "128", "82", " "],
        }
        text, confidence = bp_ocr._lines_from_data(data)
        assert text == "SYS 128\n82"
        assert confidence == pytest.approx(0.8)


class TestOcrConfig:
    def test_from_payload(self):
        config = OcrConfig.from_payload({"threshold": 150, "label_gap": 12, "unknown": 1})
        assert config.threshold == 150.0
        assert config.label_gap == 12

    def test_invalid_type(self):
        with pytest.raises(ValueError):
            OcrConfig.from_payload({"label_gap": "ten"})

    def test_invalid_range(self):
        with pytest.raises(ValueError):
            OcrConfig.from_payload({"max_edge": 0})

    def test_payload_round_trip(self):
        config = OcrConfig(contrast=1.5, tesseract_cmd="/usr/bin/tesseract")
        assert OcrConfig.from_payload(config.to_payload()) == config

    def test_load_missing_file(self, tmp_path):
        assert load_ocr_config(tmp_path / "none.json") == OcrConfig()

    def test_load_ocr_section(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"log_folder": "x", "ocr": {"psm": 6}}), encoding="utf-8")
        assert load_ocr_config(path).psm == 6


class TestCli:
    def test_found(self, monkeypatch, capsys):
        def fake_read(image, config=None):
            return extract_reading(np.zeros((2, 2), dtype=np.uint8), FakeEngine(bilingual="120/80"))

        monkeypatch.setattr(bp_ocr, "read_blood_pressure", fake_read)
        assert bp_ocr.main(["--image", "meter.jpg"]) == 0
        assert "systolic=120 diastolic=80 pulse=n/a" in capsys.readouterr().out

    def test_not_found(self, monkeypatch, capsys):
        def fake_read(image, config=None):
            return extract_reading(np.zeros((2, 2), dtype=np.uint8), FakeEngine())

        monkeypatch.setattr(bp_ocr, "read_blood_pressure", fake_read)
        assert bp_ocr.main(["--image", "meter.jpg"]) == 1
        assert "No blood-pressure reading found" in capsys.readouterr().out

    def test_unsupported_image(self, tmp_path):
        assert bp_ocr.main(["--image", str(tmp_path / "missing.jpg")]) == 2
