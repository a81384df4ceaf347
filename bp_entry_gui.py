#!/usr/bin/env python3
"""PySide6 data-entry window for blood-pressure readings with photo recognition."""

from __future__ import annotations

import datetime as dt
import json
from pathlib import Path

import pyqtgraph as pg
from PySide6.QtGui import QCloseEvent
from PySide6.QtWidgets import (
    QApplication,
    QFileDialog,
    QFormLayout,
    QGridLayout,
    QGroupBox,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QMainWindow,
    QMessageBox,
    QPlainTextEdit,
    QPushButton,
    QVBoxLayout,
    QWidget,
)

from bp_form import (
    FormValues,
    Notification,
    NotificationLevel,
    ReadingLog,
    StatusLog,
    classify_bp_level,
    recognize_into_form,
    record_from_form,
    validate_form,
)
from bp_ocr import OcrConfig

DATA_DIR = Path("data")
DEFAULT_LOG_DIR = DATA_DIR / "logs"
DEFAULT_CONFIG_PATH = DATA_DIR / "bp_entry_config.json"
IMAGE_FILTER = "Images (*.png *.jpg *.jpeg *.bmp *.webp *.tif *.tiff);;All files (*.*)"


class DateAxisItem(pg.DateAxisItem):
    """Date axis with explicit absolute timestamp labels."""

    def tickStrings(self, values, scale, spacing):  # type: ignore[override]
        return [dt.datetime.fromtimestamp(value).strftime("%m-%d %H:%M") for value in values]


class BloodPressureEntryWindow(QMainWindow):
    def __init__(self) -> None:
        super().__init__()
        self.setWindowTitle("Blood Pressure Entry")
        self.resize(1100, 720)

        self.ocr_config = OcrConfig()
        self.config_path = DEFAULT_CONFIG_PATH
        self.last_image_dir = ""
        self.reading_log: ReadingLog | None = None
        self.status_log: StatusLog | None = None

        self.time_data: list[float] = []
        self.systolic_data: list[int] = []
        self.diastolic_data: list[int] = []
        self.heart_rate_data: list[int] = []

        self._build_ui()
        self._load_config_from_path(self.config_path, silent=True)
        self._start_status_log()

    def _build_ui(self) -> None:
        central = QWidget(self)
        main_layout = QHBoxLayout(central)
        left_layout = QVBoxLayout()
        right_layout = QVBoxLayout()
        main_layout.addLayout(left_layout, 1)
        main_layout.addLayout(right_layout, 2)

        self.entry_group = QGroupBox("New Reading")
        form = QFormLayout(self.entry_group)

        self.systolic_edit = QLineEdit()
        self.systolic_edit.setPlaceholderText("120")
        self.diastolic_edit = QLineEdit()
        self.diastolic_edit.setPlaceholderText("80")
        self.heart_rate_edit = QLineEdit()
        self.heart_rate_edit.setPlaceholderText("70")
        self.notes_edit = QPlainTextEdit()
        self.notes_edit.setPlaceholderText("Optional notes")
        self.notes_edit.setMaximumHeight(90)

        self.pick_image_btn = QPushButton("Photo / Upload")
        self.pick_image_btn.clicked.connect(self._pick_image)
        self.save_btn = QPushButton("Save Reading")
        self.save_btn.clicked.connect(self._save_reading)
        self.errors_label = QLabel("")
        self.errors_label.setStyleSheet("color: #b42318;")
        self.errors_label.setWordWrap(True)

        form.addRow("Systolic (mmHg)", self.systolic_edit)
        form.addRow("Diastolic (mmHg)", self.diastolic_edit)
        form.addRow("Heart rate (bpm)", self.heart_rate_edit)
        form.addRow("Notes", self.notes_edit)
        form.addRow(self.pick_image_btn)
        form.addRow(QLabel("Aim at the meter display; SYS/DIA/PUL are read automatically."))
        form.addRow(self.save_btn)
        form.addRow(self.errors_label)

        self.log_group = QGroupBox("Logging")
        log_layout = QGridLayout(self.log_group)
        self.log_folder_edit = QLineEdit(str(DEFAULT_LOG_DIR))
        self.log_folder_browse_btn = QPushButton("Browse")
        self.log_folder_browse_btn.clicked.connect(self._browse_log_folder)
        log_layout.addWidget(QLabel("Log folder:"), 0, 0)
        log_layout.addWidget(self.log_folder_edit, 0, 1)
        log_layout.addWidget(self.log_folder_browse_btn, 0, 2)

        self.readout_group = QGroupBox("Latest Reading")
        readout_layout = QVBoxLayout(self.readout_group)

        self.current_value_label = QLabel("--/--")
        self.current_value_label.setStyleSheet("color: #b42318; font-size: 36px; font-weight: 700;")
        self.level_label = QLabel("")
        self.status_label = QLabel("Idle")

        self.plot_widget = pg.PlotWidget(axisItems={"bottom": DateAxisItem()})
        self.plot_widget.setBackground("w")
        self.plot_widget.showGrid(x=True, y=True, alpha=0.3)
        self.plot_widget.addLegend()
        self.plot_widget.setLabel("bottom", "Time", color="k")
        self.plot_widget.setLabel("left", "mmHg / bpm", color="k")
        self.systolic_curve = self.plot_widget.plot(
            [], [], name="Systolic", pen=pg.mkPen(color=(180, 35, 24), width=2), symbol="o"
        )
        self.diastolic_curve = self.plot_widget.plot(
            [], [], name="Diastolic", pen=pg.mkPen(color=(15, 70, 200), width=2), symbol="o"
        )
        self.heart_rate_curve = self.plot_widget.plot(
            [], [], name="Heart rate", pen=pg.mkPen(color=(20, 140, 60), width=1), symbol="t"
        )

        self.status_log_group = QGroupBox("Status Log")
        status_layout = QVBoxLayout(self.status_log_group)
        self.status_text = QPlainTextEdit()
        self.status_text.setReadOnly(True)
        status_layout.addWidget(self.status_text)

        readout_layout.addWidget(self.current_value_label)
        readout_layout.addWidget(self.level_label)
        readout_layout.addWidget(self.status_label)
        readout_layout.addWidget(self.plot_widget, 1)
        readout_layout.addWidget(self.status_log_group)

        left_layout.addWidget(self.entry_group)
        left_layout.addWidget(self.log_group)
        left_layout.addStretch(1)
        right_layout.addWidget(self.readout_group)

        self.setCentralWidget(central)

    def _browse_log_folder(self) -> None:
        folder = QFileDialog.getExistingDirectory(
            self,
            "Select Log Folder",
            self.log_folder_edit.text().strip() or str(DEFAULT_LOG_DIR),
        )
        if folder:
            self.log_folder_edit.setText(folder)
            self.reading_log = None
            self._start_status_log()

    def _form_values(self) -> FormValues:
        return FormValues(
            systolic=self.systolic_edit.text(),
            diastolic=self.diastolic_edit.text(),
            heart_rate=self.heart_rate_edit.text(),
            notes=self.notes_edit.toPlainText(),
        )

    def _apply_form_values(self, values: FormValues) -> None:
        self.systolic_edit.setText(values.systolic)
        self.diastolic_edit.setText(values.diastolic)
        self.heart_rate_edit.setText(values.heart_rate)

    def _pick_image(self) -> None:
        selected, _ = QFileDialog.getOpenFileName(
            self, "Select Meter Photo", self.last_image_dir, IMAGE_FILTER
        )
        if not selected:
            return
        self.last_image_dir = str(Path(selected).parent)
        self._recognize_image(Path(selected))

    def _recognize_image(self, image_path: Path) -> None:
        # Disabled for the duration so selections are handled one at a time.
        self.pick_image_btn.setEnabled(False)
        self.pick_image_btn.setText("Recognizing...")
        self._update_status("Running OCR")
        self._log_status(f"Recognizing {image_path.name}...")
        QApplication.processEvents()
        try:
            values, notification, outcome = recognize_into_form(
                self._form_values(), image_path, config=self.ocr_config
            )
        finally:
            self.pick_image_btn.setEnabled(True)
            self.pick_image_btn.setText("Photo / Upload")

        if outcome is None:
            self._update_status("OCR error")
            self._log_status(f"OCR error: {notification.message}")
        else:
            reading = outcome.reading
            self._log_status(
                f"OCR result after {len(outcome.passes)} pass(es): "
                f"systolic={reading.systolic} diastolic={reading.diastolic} pulse={reading.pulse}"
            )
            self._apply_form_values(values)
            self._update_status("Reading recognized" if outcome.found else "No reading found")
        self._notify(notification)

    def _save_reading(self) -> None:
        values = self._form_values()
        errors = validate_form(values)
        self.errors_label.setText("\n".join(errors))
        if errors:
            self._update_status("Invalid reading")
            return

        record = record_from_form(values)
        log = self._ensure_reading_log()
        log.append(record)
        self._record_value(record.timestamp, record.systolic, record.diastolic, record.heart_rate)
        self._log_status(
            f"Saved {record.systolic}/{record.diastolic} mmHg, {record.heart_rate} bpm "
            f"({record.level.label}) to {log.path}"
        )
        self._apply_form_values(FormValues())
        self.notes_edit.setPlainText("")
        self._update_status("Reading saved")

    def _ensure_reading_log(self) -> ReadingLog:
        if self.reading_log is None:
            folder = Path(self.log_folder_edit.text().strip() or str(DEFAULT_LOG_DIR))
            self.reading_log = ReadingLog(folder)
            now = dt.datetime.now()
            self.reading_log.start(now)
        return self.reading_log

    def _record_value(self, timestamp: dt.datetime, systolic: int, diastolic: int, heart_rate: int) -> None:
        self.time_data.append(timestamp.timestamp())
        self.systolic_data.append(systolic)
        self.diastolic_data.append(diastolic)
        self.heart_rate_data.append(heart_rate)

        self.systolic_curve.setData(self.time_data, self.systolic_data)
        self.diastolic_curve.setData(self.time_data, self.diastolic_data)
        self.heart_rate_curve.setData(self.time_data, self.heart_rate_data)
        self.current_value_label.setText(f"{systolic}/{diastolic}")
        self.level_label.setText(classify_bp_level(systolic, diastolic).label)

    def _notify(self, notification: Notification) -> None:
        if notification.level is NotificationLevel.SUCCESS:
            QMessageBox.information(self, "Recognition", notification.message)
        elif notification.level is NotificationLevel.WARNING:
            QMessageBox.warning(self, "Recognition", notification.message)
        else:
            QMessageBox.critical(self, "Recognition error", notification.message)

    def _update_status(self, text: str) -> None:
        self.status_label.setText(text)

    def _start_status_log(self) -> None:
        folder = Path(self.log_folder_edit.text().strip() or str(DEFAULT_LOG_DIR))
        self.status_log = StatusLog(folder)
        try:
            path = self.status_log.start()
        except OSError as exc:
            self.status_log = None
            self._log_status(f"Status log disabled: {exc}")
            return
        self._log_status(f"Status log started at {path}")

    def _log_status(self, text: str) -> None:
        now = dt.datetime.now()
        self.status_text.appendPlainText(f"[{now:%H:%M:%S}] {text}")
        if self.status_log is not None:
            self.status_log.append(now, text)

    def _build_config_payload(self) -> dict[str, object]:
        return {
            "log_folder": self.log_folder_edit.text().strip(),
            "last_image_dir": self.last_image_dir,
            "ocr": self.ocr_config.to_payload(),
        }

    def _apply_config_payload(self, payload: dict[str, object]) -> None:
        self.log_folder_edit.setText(str(payload.get("log_folder", str(DEFAULT_LOG_DIR))))
        self.last_image_dir = str(payload.get("last_image_dir", ""))
        ocr_payload = payload.get("ocr", {})
        self.ocr_config = OcrConfig.from_payload(ocr_payload if isinstance(ocr_payload, dict) else {})

    def _load_config_from_path(self, path: Path, silent: bool) -> None:
        if not path.exists():
            if not silent:
                QMessageBox.critical(self, "Config error", f"Config file not found: {path}")
            return

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Config root must be a JSON object")
            self._apply_config_payload(payload)
            self.config_path = path
        except (OSError, ValueError) as exc:
            self._log_status(f"Failed to load config {path}: {exc}")
            if not silent:
                QMessageBox.critical(self, "Config error", f"Failed to load config:\n{exc}")

    def _save_default_config_on_exit(self) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(
                json.dumps(self._build_config_payload(), indent=2), encoding="utf-8"
            )
        except OSError as exc:
            # Exit path should not block app close.
            self._log_status(f"Failed to save config: {exc}")

    def closeEvent(self, event: QCloseEvent) -> None:  # noqa: N802 - Qt naming
        self._save_default_config_on_exit()
        event.accept()


def main() -> int:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    app = QApplication([])
    pg.setConfigOptions(antialias=True)
    window = BloodPressureEntryWindow()
    window.show()
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())
