"""
Output sinks for the translation run: plain text files, a per-page CSV
backup, the JSON checkpoint used for resuming, and a Hebrew PDF of the
assembled translation.
"""

from __future__ import annotations

import csv
import io
import json
import os
import urllib.request
import zipfile
from pathlib import Path
from typing import Iterable, Sequence

from fpdf import FPDF
from tqdm import tqdm

from page_pipeline import PageResult, document_blocks

FONT_DIR = Path(__file__).parent / "fonts"
# Regular face first, then bold
FONT_FILES = ("DejaVuSans.ttf", "DejaVuSans-Bold.ttf")
DEJAVU_ZIP_URL = (
    "https://github.com/dejavu-fonts/dejavu-fonts/releases/download/"
    "version_2_37/dejavu-fonts-ttf-2.37.zip"
)

CSV_HEADER = ["עמוד", "תרגום", "סיכום", "כותרת המאמר", "סטטוס"]

DEFAULT_DOCUMENT_TITLE = "תרגום מסמך"


# ---------------------------------------------------------------------------
# Text files
# ---------------------------------------------------------------------------


def write_text(text: str, name: str, out_dir: str | Path) -> Path:
    """Write ``text`` as UTF-8 to ``out_dir/name`` byte for byte."""
    path = Path(out_dir) / name
    path.write_bytes(text.encode("utf-8"))
    return path


# ---------------------------------------------------------------------------
# CSV backup
# ---------------------------------------------------------------------------


def _csv_row(result: PageResult) -> list:
    return [
        result.page_number,
        result.translation,
        result.summary,
        result.article_title,
        result.status,
    ]


class CsvBackup:
    """Page sink appending one row per page. The BOM keeps Excel reading Hebrew correctly."""

    def __init__(self, path: str | Path, results: Iterable[PageResult] = ()):
        self.path = Path(path)
        with open(self.path, "w", encoding="utf-8-sig", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(CSV_HEADER)
            writer.writerows(_csv_row(r) for r in results)

    def __call__(self, result: PageResult):
        with open(self.path, "a", encoding="utf-8", newline="") as f:
            csv.writer(f).writerow(_csv_row(result))


# ---------------------------------------------------------------------------
# Checkpointing (resume support)
# ---------------------------------------------------------------------------


def save_checkpoint(
    results: Sequence[PageResult],
    source: str,
    page_count: int,
    path: str | Path,
):
    """Save progress so an interrupted run can continue later."""
    data = {
        "source": source,
        "page_count": page_count,
        "pages": [r.to_dict() for r in results],
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


def load_checkpoint(
    path: str | Path,
    source: str,
    page_count: int,
) -> list[PageResult] | None:
    """
    Load the page results of an earlier run over the same document.

    Returns None when there is no checkpoint, or when it belongs to another
    document or is unreadable.
    """
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        results = [PageResult.from_dict(p) for p in data["pages"]]
        matches = data["source"] == source and data["page_count"] == page_count
    except (json.JSONDecodeError, AttributeError, KeyError, TypeError) as e:
        print(f"[WARN] Ignoring unreadable checkpoint {path}: {e}")
        return None

    numbers = [r.page_number for r in results]
    if not matches or numbers != list(range(1, len(results) + 1)) or len(results) > page_count:
        print(f"Checkpoint {path} does not match this document; starting fresh.")
        return None
    return results


class Checkpoint:
    """Page sink rewriting the checkpoint after every page."""

    def __init__(
        self,
        path: str | Path,
        source: str,
        page_count: int,
        results: Iterable[PageResult] = (),
    ):
        self.path = Path(path)
        self.source = source
        self.page_count = page_count
        self.results: list[PageResult] = list(results)

    def __call__(self, result: PageResult):
        self.results.append(result)
        save_checkpoint(self.results, self.source, self.page_count, self.path)

    def remove(self):
        if self.path.exists():
            self.path.unlink()
            print("Checkpoint removed (translation complete).")


# ---------------------------------------------------------------------------
# Hebrew PDF
# ---------------------------------------------------------------------------


def ensure_fonts(font_dir: str | Path = FONT_DIR) -> tuple[Path, Path]:
    """
    Return the regular and bold DejaVu Sans files in ``font_dir``.

    Missing files are fetched once from the DejaVu release archive. Raises
    FileNotFoundError if the archive lacks either face.
    """
    font_dir = Path(font_dir)
    wanted = {name: font_dir / name for name in FONT_FILES}
    missing = [name for name, path in wanted.items() if not path.exists()]

    if missing:
        font_dir.mkdir(parents=True, exist_ok=True)
        print(f"Fetching {', '.join(missing)} for the Hebrew PDF ...")
        with urllib.request.urlopen(DEJAVU_ZIP_URL) as resp:
            payload = io.BytesIO(resp.read())
        with zipfile.ZipFile(payload) as archive:
            for member in archive.namelist():
                name = os.path.basename(member)
                if name in missing:
                    wanted[name].write_bytes(archive.read(member))
                    print(f"  -> {wanted[name]}")
        absent = [name for name, path in wanted.items() if not path.exists()]
        if absent:
            raise FileNotFoundError(f"{', '.join(absent)} not found in {DEJAVU_ZIP_URL}")

    return wanted[FONT_FILES[0]], wanted[FONT_FILES[1]]


class HebrewPDF(FPDF):
    """Right-aligned Hebrew document with chapter and section headings."""

    def __init__(self, font_regular: Path, font_bold: Path):
        super().__init__()
        self.set_auto_page_break(auto=True, margin=20)

        self.add_font("DejaVu", "", str(font_regular))
        self.add_font("DejaVu", "B", str(font_bold))
        # Shaping engine applies the bidi algorithm, so Hebrew reads right to left
        self.set_text_shaping(True)

    def title_page(self, title: str):
        self.add_page()
        self.set_font("DejaVu", "B", 22)
        self.set_text_color(30, 30, 30)
        self.ln(40)
        self.multi_cell(0, 12, title, align="C")

    def chapter_heading(self, title: str):
        """Chapters start on a new page."""
        self.add_page()
        self.set_font("DejaVu", "B", 16)
        self.set_text_color(0, 80, 160)
        self.multi_cell(0, 9, title, align="R")
        self.ln(6)

    def section_heading(self, title: str):
        if self.get_y() > self.h - 40:
            self.add_page()
        self.set_font("DejaVu", "B", 13)
        self.set_text_color(40, 40, 40)
        self.multi_cell(0, 8, title, align="R")
        self.ln(3)

    def page_text(self, text: str):
        self.set_font("DejaVu", "", 11)
        self.set_text_color(20, 20, 20)
        self.multi_cell(0, 6, text, align="R")
        self.ln(5)


def build_translation_pdf(
    results: Sequence[PageResult],
    output_path: str | Path,
    font_regular: Path,
    font_bold: Path,
) -> Path:
    """Render the OK pages of ``results`` with the same headings as the text output."""
    title = next(
        (r.article_title for r in results if r.ok and r.article_title),
        DEFAULT_DOCUMENT_TITLE,
    )

    blocks = document_blocks(results)
    pdf = HebrewPDF(font_regular, font_bold)
    pdf.title_page(title)
    if not blocks or blocks[0][0] != "chapter":
        pdf.add_page()

    for kind, content in tqdm(blocks, desc="Building PDF", unit="block"):
        if kind == "chapter":
            pdf.chapter_heading(content)
        elif kind == "section":
            pdf.section_heading(content)
        else:
            pdf.page_text(content)

    pdf.output(str(output_path))
    print(f"PDF saved to: {output_path}")
    return Path(output_path)
