from __future__ import annotations

import argparse
import enum
import io
import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol, Tuple, Union

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

try:
    import pytesseract
except Exception:
    pytesseract = None  # Reported as RecognitionUnavailableError on first use.


logger = logging.getLogger(__name__)

LANG_BILINGUAL = "eng+chi_sim"
LANG_LATIN = "eng"
DEFAULT_WHITELIST = (
    "0123456789"
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "abcdefghijklmnopqrstuvwxyz"
    ":/. -"
)


class UnsupportedImageError(ValueError):
    """The image cannot be decoded or drawn."""


class RecognitionUnavailableError(RuntimeError):
    """The OCR engine itself could not be invoked."""


class LanguageModel(enum.Enum):
    BILINGUAL = "bilingual"
    LATIN_ONLY = "latin-only"


class ExtractionState(enum.Enum):
    START = "start"
    FALLBACK = "fallback"
    DONE = "done"


class ReadingStatus(enum.Enum):
    FOUND = "found"
    NO_READING_FOUND = "no_reading_found"


@dataclass(frozen=True)
class OcrConfig:
    max_edge: int = 2000
    max_upscale: float = 2.0
    contrast: float = 1.25
    threshold: float = 140.0
    label_gap: int = 10
    psm: int = 11
    oem: int = 1
    char_whitelist: str = DEFAULT_WHITELIST
    bilingual_lang: str = LANG_BILINGUAL
    latin_lang: str = LANG_LATIN
    tesseract_cmd: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OcrConfig":
        if not isinstance(payload, dict):
            raise ValueError("OCR config must be a JSON object")
        values: dict[str, Any] = {}
        for entry in fields(cls):
            if entry.name not in payload:
                continue
            raw = payload[entry.name]
            default = getattr(cls, entry.name)
            if raw is None and entry.name == "tesseract_cmd":
                values[entry.name] = None
            elif isinstance(default, bool) or isinstance(raw, bool):
                raise ValueError(f"Invalid value for {entry.name}: {raw!r}")
            elif isinstance(default, int) and not isinstance(default, bool):
                if not isinstance(raw, int):
                    raise ValueError(f"{entry.name} must be an integer, got {raw!r}")
                values[entry.name] = raw
            elif isinstance(default, float):
                if not isinstance(raw, (int, float)):
                    raise ValueError(f"{entry.name} must be a number, got {raw!r}")
                values[entry.name] = float(raw)
            else:
                if not isinstance(raw, str):
                    raise ValueError(f"{entry.name} must be a string, got {raw!r}")
                values[entry.name] = raw
        config = cls(**values)
        if config.max_edge <= 0 or config.max_upscale <= 0 or config.label_gap < 0:
            raise ValueError("max_edge, max_upscale must be positive and label_gap >= 0")
        return config

    def to_payload(self) -> dict[str, Any]:
        return {entry.name: getattr(self, entry.name) for entry in fields(self)}

    def language_for(self, model: LanguageModel) -> str:
        if model is LanguageModel.BILINGUAL:
            return self.bilingual_lang
        return self.latin_lang


def load_ocr_config(path: Union[str, Path]) -> OcrConfig:
    path = Path(path)
    if not path.exists():
        return OcrConfig()
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Config root must be a JSON object")
    return OcrConfig.from_payload(payload.get("ocr", {}))


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    language: str
    confidence: Optional[float] = None


@dataclass(frozen=True)
class ExtractedReading:
    systolic: Optional[int] = None
    diastolic: Optional[int] = None
    pulse: Optional[int] = None

    @property
    def complete(self) -> bool:
        return self.systolic is not None and self.diastolic is not None


@dataclass(frozen=True)
class ExtractionOutcome:
    reading: ExtractedReading
    status: ReadingStatus
    passes: Tuple[RecognitionResult, ...] = field(default_factory=tuple)

    @property
    def found(self) -> bool:
        return self.status is ReadingStatus.FOUND


def _round_half_up(value: float) -> int:
    return int(np.floor(value + 0.5))


def scaled_size(width: int, height: int, config: OcrConfig = OcrConfig()) -> Tuple[int, int]:
    longest = max(width, height)
    if longest <= 0:
        raise UnsupportedImageError(f"Image has no pixels ({width}x{height})")
    scale = min(config.max_edge / longest, config.max_upscale)
    return (
        max(1, _round_half_up(width * scale)),
        max(1, _round_half_up(height * scale)),
    )


def binarize(rgb: np.ndarray, config: OcrConfig = OcrConfig()) -> np.ndarray:
    """Grayscale, stretch contrast around mid-gray and threshold to 0/255.

    Accepts an HxWx3 (or HxWx4, alpha ignored) RGB array or an HxW gray
    array and returns a new HxW uint8 array; the input is never modified.
    """
    pixels = np.asarray(rgb, dtype=np.float64)
    if pixels.ndim == 2:
        gray = pixels
    elif pixels.ndim == 3 and pixels.shape[2] >= 3:
        gray = 0.299 * pixels[..., 0] + 0.587 * pixels[..., 1] + 0.114 * pixels[..., 2]
    else:
        raise UnsupportedImageError(f"Unsupported pixel layout {pixels.shape}")
    stretched = (gray - 128.0) * config.contrast + 128.0
    return np.where(stretched >= config.threshold, 255, 0).astype(np.uint8)


def _decode_image(source: Union[str, Path, bytes]) -> np.ndarray:
    try:
        if isinstance(source, (bytes, bytearray)):
            handle = Image.open(io.BytesIO(source))
        else:
            path = Path(source)
            if not path.is_file():
                raise UnsupportedImageError(f"Unable to read image at {path}")
            handle = Image.open(path)
        with handle as image:
            image = ImageOps.exif_transpose(image)
            return np.asarray(image.convert("RGB"))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as exc:
        raise UnsupportedImageError(f"Unable to decode image: {exc}") from exc


def preprocess_image(
    source: Union[str, Path, bytes, np.ndarray], config: OcrConfig = OcrConfig()
) -> np.ndarray:
    if isinstance(source, np.ndarray):
        rgb = source
    else:
        rgb = _decode_image(source)
    if rgb.ndim < 2 or rgb.size == 0:
        raise UnsupportedImageError("Image has no pixels")

    height, width = rgb.shape[:2]
    out_w, out_h = scaled_size(width, height, config)
    if (out_w, out_h) != (width, height):
        interpolation = cv2.INTER_LINEAR if out_w > width else cv2.INTER_AREA
        rgb = cv2.resize(rgb, (out_w, out_h), interpolation=interpolation)
    return binarize(rgb, config)


class RecognitionEngine(Protocol):
    def recognize(self, raster: np.ndarray, language: LanguageModel) -> RecognitionResult:
        ...


def _lines_from_data(data: dict[str, list[Any]]) -> Tuple[str, Optional[float]]:
    lines: dict[Tuple[int, int, int, int], list[str]] = {}
    confidences: list[float] = []
    for index, word in enumerate(data.get("text", [])):
        word = str(word).strip()
        if not word:
            continue
        key = (
            int(data["page_num"][index]),
            int(data["block_num"][index]),
            int(data["par_num"][index]),
            int(data["line_num"][index]),
        )
        lines.setdefault(key, []).append(word)
        conf = float(data["conf"][index])
        if conf >= 0:
            confidences.append(conf)

    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    confidence = None
    if confidences:
        confidence = max(0.0, min(1.0, sum(confidences) / len(confidences) / 100.0))
    return text, confidence


class TesseractEngine:
    def __init__(self, config: OcrConfig = OcrConfig()) -> None:
        self.config = config
        self.tesseract_cmd = config.tesseract_cmd or os.getenv("TESSERACT_CMD")

    def tesseract_config(self) -> str:
        return (
            f"--oem {self.config.oem} --psm {self.config.psm} "
            f'-c tessedit_char_whitelist="{self.config.char_whitelist}"'
        )

    def recognize(self, raster: np.ndarray, language: LanguageModel) -> RecognitionResult:
        if pytesseract is None:
            raise RecognitionUnavailableError("pytesseract not available")
        if self.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd

        lang = self.config.language_for(language)
        try:
            data = pytesseract.image_to_data(
                raster,
                lang=lang,
                config=self.tesseract_config(),
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractNotFoundError as exc:
            raise RecognitionUnavailableError("tesseract binary not found") from exc
        except (pytesseract.TesseractError, RuntimeError, OSError) as exc:
            raise RecognitionUnavailableError(f"Tesseract failed for lang={lang}: {exc}") from exc

        text, confidence = _lines_from_data(data)
        return RecognitionResult(text=text, language=lang, confidence=confidence)


_SYSTOLIC_LABEL = r"(?:(?<![A-Z])SYS(?:TOLIC)?|收缩压|高压|上压)"
_DIASTOLIC_LABEL = r"(?:(?<![A-Z])DIA(?:STOLIC)?|舒张压|低压|下压)"
_PULSE_LABEL = r"(?:(?<![A-Z])(?:PUL(?:SE)?|HR)|心率)"
_PAIR_RE = re.compile(r"(?<![0-9])([0-9]{2,3})\s*/\s*([0-9]{2,3})(?![0-9])")
_LABEL_CACHE: dict[Tuple[str, int], re.Pattern[str]] = {}


def _labeled_pattern(label: str, gap: int) -> re.Pattern[str]:
    key = (label, gap)
    pattern = _LABEL_CACHE.get(key)
    if pattern is None:
        pattern = re.compile(label + r"[^0-9]{0,%d}([0-9]{2,3})(?![0-9])" % gap)
        _LABEL_CACHE[key] = pattern
    return pattern


def normalize_text(text: str) -> str:
    text = text.replace("　", " ")
    return re.sub(r"\s+", " ", text).upper()


def _pick_labeled(normalized: str, label: str, gap: int) -> Optional[int]:
    match = _labeled_pattern(label, gap).search(normalized)
    if match:
        return int(match.group(1))
    return None


def _ordered(reading: ExtractedReading) -> ExtractedReading:
    if reading.complete and reading.systolic < reading.diastolic:
        return replace(reading, systolic=reading.diastolic, diastolic=reading.systolic)
    return reading


def parse_reading(text: str, label_gap: int = 10) -> ExtractedReading:
    normalized = normalize_text(text)

    sys_from_pair: Optional[int] = None
    dia_from_pair: Optional[int] = None
    pair = _PAIR_RE.search(normalized)
    if pair:
        first, second = int(pair.group(1)), int(pair.group(2))
        sys_from_pair = max(first, second)
        dia_from_pair = min(first, second)

    systolic = _pick_labeled(normalized, _SYSTOLIC_LABEL, label_gap)
    diastolic = _pick_labeled(normalized, _DIASTOLIC_LABEL, label_gap)
    pulse = _pick_labeled(normalized, _PULSE_LABEL, label_gap)

    return _ordered(
        ExtractedReading(
            systolic=systolic if systolic is not None else sys_from_pair,
            diastolic=diastolic if diastolic is not None else dia_from_pair,
            pulse=pulse,
        )
    )


def merge_readings(primary: ExtractedReading, fallback: ExtractedReading) -> ExtractedReading:
    def pick(first: Optional[int], second: Optional[int]) -> Optional[int]:
        return first if first is not None else second

    return _ordered(
        ExtractedReading(
            systolic=pick(primary.systolic, fallback.systolic),
            diastolic=pick(primary.diastolic, fallback.diastolic),
            pulse=pick(primary.pulse, fallback.pulse),
        )
    )


def extract_reading(
    raster: np.ndarray, engine: RecognitionEngine, config: OcrConfig = OcrConfig()
) -> ExtractionOutcome:
    state = ExtractionState.START
    reading = ExtractedReading()
    passes: list[RecognitionResult] = []

    while state is not ExtractionState.DONE:
        if state is ExtractionState.START:
            result = engine.recognize(raster, LanguageModel.BILINGUAL)
            passes.append(result)
            reading = parse_reading(result.text, config.label_gap)
            logger.debug("Bilingual pass: %d chars -> %s", len(result.text), reading)
            if reading.complete:
                state = ExtractionState.DONE
            else:
                logger.info("Bilingual pass incomplete, retrying with %s", config.latin_lang)
                state = ExtractionState.FALLBACK
        else:
            result = engine.recognize(raster, LanguageModel.LATIN_ONLY)
            passes.append(result)
            second = parse_reading(result.text, config.label_gap)
            logger.debug("Latin pass: %d chars -> %s", len(result.text), second)
            reading = merge_readings(reading, second)
            state = ExtractionState.DONE

    if reading.complete:
        status = ReadingStatus.FOUND
    else:
        logger.warning("No blood-pressure reading found after %d passes", len(passes))
        status = ReadingStatus.NO_READING_FOUND
    return ExtractionOutcome(reading=reading, status=status, passes=tuple(passes))


def read_blood_pressure(
    image: Union[str, Path, bytes, np.ndarray],
    engine: Optional[RecognitionEngine] = None,
    config: Optional[OcrConfig] = None,
) -> ExtractionOutcome:
    config = config or OcrConfig()
    raster = preprocess_image(image, config)
    if engine is None:
        engine = TesseractEngine(config)
    return extract_reading(raster, engine, config)


def _format_value(value: Optional[int]) -> str:
    return "n/a" if value is None else str(value)


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Read blood pressure from a meter photo.")
    parser.add_argument("--image", required=True, help="Path to image to read.")
    parser.add_argument("--config", type=Path, help="JSON config file with an 'ocr' section.")
    parser.add_argument("--verbose", action="store_true", help="Log each recognition pass.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_ocr_config(args.config) if args.config else OcrConfig()

    try:
        outcome = read_blood_pressure(args.image, config=config)
    except UnsupportedImageError as exc:
        print(f"error: {exc}")
        return 2
    except RecognitionUnavailableError as exc:
        print(f"error: recognition failed: {exc}")
        return 3

    reading = outcome.reading
    print(
        f"systolic={_format_value(reading.systolic)} "
        f"diastolic={_format_value(reading.diastolic)} "
        f"pulse={_format_value(reading.pulse)} (passes={len(outcome.passes)})"
    )
    if not outcome.found:
        print("No blood-pressure reading found; enter the values manually.")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
