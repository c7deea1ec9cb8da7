# =============================================================================
# Knowledge File Parser — Text Extraction by File Type
# =============================================================================
#
# Turns an uploaded knowledge file into plain text for chunking.
#
# SUPPORTED TYPES:
#   .txt, .md, .markdown → decoded as UTF-8
#   .json                → pretty-printed JSON
#   .csv                 → one "column: value, ..." line per row (pandas)
#   .xlsx, .xls          → same, per sheet, with a "Sheet: <name>" header
#   .pdf                 → Docling conversion exported as markdown
#
# Rows are rendered as "key: value" pairs so each line keeps its column
# names once it is chunked away from the header row.
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd
from docling.datamodel.base_models import InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {
    ".txt", ".md", ".markdown", ".json", ".csv", ".xlsx", ".xls", ".pdf",
}


class UnsupportedFileType(ValueError):
    """Raised for file extensions the knowledge base cannot ingest."""


@dataclass
class ExtractedText:
    text: str
    filename: str
    file_type: str  # extension without the dot


# ---------------------------------------------------------------------------
# Docling Converter — Lazy Singleton
# ---------------------------------------------------------------------------
# Initialization loads layout/OCR models, so one converter is reused for
# every PDF a worker processes.
# ---------------------------------------------------------------------------

_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        logger.info(
            "Initializing Docling DocumentConverter "
            "(first use, may take a few seconds)..."
        )
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(
                    pipeline_options=pipeline_options,
                ),
            }
        )
    return _converter


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_supported(filename: str) -> bool:
    return Path(filename).suffix.lower() in SUPPORTED_EXTENSIONS


def extract_text(file_path: str, original_name: str | None = None) -> ExtractedText:
    """
    Extract plain text from a knowledge file on disk.

    Args:
        file_path: Path to the saved upload.
        original_name: Name the user uploaded; decides the file type when
            the saved name carries a prefix.

    Raises:
        FileNotFoundError: If the file does not exist.
        UnsupportedFileType: If the extension is not supported.
        RuntimeError: If Docling fails to convert a PDF.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    name = original_name or path.name
    extension = Path(name).suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFileType(
            f"Unsupported file type '{extension or name}'. Supported formats: "
            f"{', '.join(sorted(e.lstrip('.') for e in SUPPORTED_EXTENSIONS))}"
        )

    if extension in (".txt", ".md", ".markdown"):
        text = path.read_text(encoding="utf-8", errors="replace")
    elif extension == ".json":
        text = json.dumps(
            json.loads(path.read_text(encoding="utf-8")), indent=2,
        )
    elif extension == ".csv":
        text = _frame_to_text(pd.read_csv(path))
    elif extension in (".xlsx", ".xls"):
        sheets = pd.read_excel(path, sheet_name=None)
        text = "\n\n".join(
            f"Sheet: {sheet_name}\n{_frame_to_text(frame)}"
            for sheet_name, frame in sheets.items()
        )
    else:
        text = _pdf_to_text(path)

    logger.info(
        "Extracted %d chars from '%s' (%s)", len(text), name, extension,
    )
    return ExtractedText(
        text=text.strip(), filename=name, file_type=extension.lstrip("."),
    )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _frame_to_text(frame: pd.DataFrame) -> str:
    """Render each row as 'column: value' pairs, skipping empty cells."""
    lines = []
    for record in frame.to_dict(orient="records"):
        pairs = [
            f"{key}: {value}"
            for key, value in record.items()
            if not pd.isna(value)
        ]
        if pairs:
            lines.append(", ".join(pairs))
    return "\n".join(lines)


def _pdf_to_text(path: Path) -> str:
    converter = _get_converter()
    try:
        result = converter.convert(str(path))
    except Exception as exc:
        raise RuntimeError(
            f"Docling failed to parse '{path.name}': {exc}"
        ) from exc
    return result.document.export_to_markdown()
