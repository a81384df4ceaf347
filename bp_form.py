"""Form-side handling of OCR results and confirmed blood-pressure records."""

from __future__ import annotations

import csv
import datetime as dt
import enum
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Optional

from bp_ocr import (
    ExtractionOutcome,
    OcrConfig,
    RecognitionUnavailableError,
    UnsupportedImageError,
    read_blood_pressure,
)

logger = logging.getLogger(__name__)

SYSTOLIC_RANGE = (70, 300)
DIASTOLIC_RANGE = (40, 200)
HEART_RATE_RANGE = (30, 250)
MAX_NOTES_LENGTH = 500
LOG_HEADER = ["timestamp", "systolic", "diastolic", "heart_rate", "level", "notes"]


class NotificationLevel(enum.Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    level: NotificationLevel
    message: str


@dataclass(frozen=True)
class FormValues:
    systolic: str = ""
    diastolic: str = ""
    heart_rate: str = ""
    notes: str = ""


class BPLevel(enum.Enum):
    NORMAL = "Normal"
    ELEVATED = "Elevated"
    STAGE_1 = "High BP (S1)"
    STAGE_2 = "High BP (S2)"
    CRISIS = "Crisis"

    @property
    def label(self) -> str:
        return self.value


def prefill_form(values: FormValues, outcome: ExtractionOutcome) -> tuple[FormValues, Notification]:
    """Copy recognized values into the form, leaving untouched what OCR missed.

    A heart rate already typed by the user is only replaced when the photo
    carried a pulse reading.
    """
    if not outcome.found:
        return values, Notification(
            NotificationLevel.WARNING,
            "No blood-pressure reading recognized. Retake the photo or enter the values manually.",
        )

    reading = outcome.reading
    updated = replace(
        values,
        systolic=str(reading.systolic),
        diastolic=str(reading.diastolic),
    )
    if reading.pulse is not None:
        updated = replace(updated, heart_rate=str(reading.pulse))
    return updated, Notification(
        NotificationLevel.SUCCESS,
        "Reading recognized from the photo. Please check the values before saving.",
    )


def error_notification(exc: Exception) -> Notification:
    if isinstance(exc, UnsupportedImageError):
        message = f"The selected file could not be opened as an image: {exc}"
    elif isinstance(exc, RecognitionUnavailableError):
        message = f"Image recognition failed, please try again: {exc}"
    else:
        message = f"Image recognition failed: {exc}"
    return Notification(NotificationLevel.ERROR, message)


def recognize_into_form(
    values: FormValues,
    image: Path,
    config: Optional[OcrConfig] = None,
    reader: Callable[..., ExtractionOutcome] = read_blood_pressure,
) -> tuple[FormValues, Notification, Optional[ExtractionOutcome]]:
    """Run recognition for one selected image and pre-fill the form.

    Every failure ends in an error notification and leaves the values as
    they were; the outcome is ``None`` in that case.
    """
    try:
        outcome = reader(image, config=config)
    except Exception as exc:
        logger.exception("Recognition failed for %s", image)
        return values, error_notification(exc), None
    updated, notification = prefill_form(values, outcome)
    return updated, notification, outcome


def _parse_int(text: str) -> Optional[int]:
    text = text.strip()
    if not text:
        return None
    try:
        return int(text, 10)
    except ValueError:
        return None


def validate_record(
    systolic: Optional[int],
    diastolic: Optional[int],
    heart_rate: Optional[int],
    notes: str = "",
) -> list[str]:
    errors: list[str] = []
    if systolic is None:
        errors.append("Systolic pressure is required")
    elif not SYSTOLIC_RANGE[0] <= systolic <= SYSTOLIC_RANGE[1]:
        errors.append(f"Systolic pressure must be within {SYSTOLIC_RANGE[0]}-{SYSTOLIC_RANGE[1]} mmHg")

    if diastolic is None:
        errors.append("Diastolic pressure is required")
    elif not DIASTOLIC_RANGE[0] <= diastolic <= DIASTOLIC_RANGE[1]:
        errors.append(f"Diastolic pressure must be within {DIASTOLIC_RANGE[0]}-{DIASTOLIC_RANGE[1]} mmHg")

    if systolic is not None and diastolic is not None and systolic <= diastolic:
        errors.append("Systolic pressure must be greater than diastolic pressure")

    if heart_rate is None:
        errors.append("Heart rate is required")
    elif not HEART_RATE_RANGE[0] <= heart_rate <= HEART_RATE_RANGE[1]:
        errors.append(f"Heart rate must be within {HEART_RATE_RANGE[0]}-{HEART_RATE_RANGE[1]} bpm")

    if notes and len(notes) > MAX_NOTES_LENGTH:
        errors.append(f"Notes cannot exceed {MAX_NOTES_LENGTH} characters")
    return errors


def validate_form(values: FormValues) -> list[str]:
    return validate_record(
        _parse_int(values.systolic),
        _parse_int(values.diastolic),
        _parse_int(values.heart_rate),
        values.notes.strip(),
    )


def classify_bp_level(systolic: int, diastolic: int) -> BPLevel:
    # Crisis first, then the mildest matching category; the ranges overlap.
    if systolic > 180 or diastolic > 120:
        return BPLevel.CRISIS
    if systolic < 120 and diastolic < 80:
        return BPLevel.NORMAL
    if 120 <= systolic <= 129 and diastolic < 80:
        return BPLevel.ELEVATED
    if 130 <= systolic <= 139 or 80 <= diastolic <= 89:
        return BPLevel.STAGE_1
    return BPLevel.STAGE_2


@dataclass(frozen=True)
class HealthRecord:
    timestamp: dt.datetime
    systolic: int
    diastolic: int
    heart_rate: int
    notes: str = ""

    @property
    def level(self) -> BPLevel:
        return classify_bp_level(self.systolic, self.diastolic)


def record_from_form(values: FormValues, timestamp: Optional[dt.datetime] = None) -> HealthRecord:
    errors = validate_form(values)
    if errors:
        raise ValueError("; ".join(errors))
    return HealthRecord(
        timestamp=timestamp or dt.datetime.now(),
        systolic=int(values.systolic.strip()),
        diastolic=int(values.diastolic.strip()),
        heart_rate=int(values.heart_rate.strip()),
        notes=values.notes.strip(),
    )


class ReadingLog:
    def __init__(self, folder: Path) -> None:
        self.folder = Path(folder)
        self.path: Optional[Path] = None

    def start(self, timestamp: Optional[dt.datetime] = None) -> Path:
        self.folder.mkdir(parents=True, exist_ok=True)
        stamp = (timestamp or dt.datetime.now()).strftime("%Y%m%d_%H%M%S")
        self.path = self.folder / f"bp_readings_{stamp}.csv"
        with self.path.open("w", newline="", encoding="utf-8") as handle:
            csv.writer(handle).writerow(LOG_HEADER)
        return self.path

    def append(self, record: HealthRecord) -> None:
        if self.path is None:
            self.start()
        with self.path.open("a", newline="", encoding="utf-8") as handle:
            csv.writer(handle).writerow(
                [
                    record.timestamp.isoformat(),
                    record.systolic,
                    record.diastolic,
                    record.heart_rate,
                    record.level.label,
                    record.notes,
                ]
            )


class StatusLog:
    def __init__(self, folder: Path) -> None:
        self.folder = Path(folder)
        self.path: Optional[Path] = None

    def start(self, timestamp: Optional[dt.datetime] = None) -> Path:
        self.folder.mkdir(parents=True, exist_ok=True)
        stamp = (timestamp or dt.datetime.now()).strftime("%Y%m%d_%H%M%S")
        self.path = self.folder / f"entry_status_{stamp}.log"
        with self.path.open("w", encoding="utf-8"):
            pass
        return self.path

    def append(self, timestamp: dt.datetime, text: str) -> None:
        if self.path is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"{timestamp.isoformat()} {text}\n")
