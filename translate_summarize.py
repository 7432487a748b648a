#!/usr/bin/env python3
"""
PDF Hebrew Translation & Summary Tool
=====================================
Renders each page of a PDF to an image, has a vision model (OpenAI-compatible
API) translate it to Hebrew while detecting chapter and section headings, and
writes two text files:

  translation_<timestamp>.txt  full translation with chapter/section headings
  summary_<timestamp>.txt      long summary per chunk of pages, with titles

Usage:
    python translate_summarize.py article.pdf
    python translate_summarize.py article.pdf --output-dir out --csv --pdf
"""

from __future__ import annotations

import argparse
import base64
import os
import shutil
import sys
import tempfile
from datetime import datetime
from pathlib import Path

import fitz  # PyMuPDF
from dotenv import load_dotenv
from openai import OpenAI
from tqdm import tqdm

from page_pipeline import (
    MAX_CHUNK_CHARS,
    MAX_RETRIES,
    RULE,
    TEMPERATURE,
    TRANSLATION_MAX_TOKENS,
    ResponseError,
    assemble_document,
    assemble_summary,
    build_chunks,
    summarize_chunks,
    translate_pages,
)
from translation_outputs import (
    Checkpoint,
    CsvBackup,
    build_translation_pdf,
    ensure_fonts,
    load_checkpoint,
    write_text,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MODEL = "gpt-4o"

# Render scale: 2.0 = 200% of the page's natural size
RENDER_ZOOM = 2.0

# Looked up in the working directory, first one wins per variable
ENV_FILES = (".env.local", ".env")

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


# ---------------------------------------------------------------------------
# Page rendering
# ---------------------------------------------------------------------------


def render_pages(pdf_path: str | Path, out_dir: str | Path) -> list[Path]:
    """
    Render every page of the PDF to ``out_dir/page_<n>.png``.

    Returns the image paths in page order. Any failure propagates, so a
    caller never gets images for only part of the document.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    doc = fitz.open(pdf_path)
    try:
        print(f"  PDF has {len(doc)} pages")
        matrix = fitz.Matrix(RENDER_ZOOM, RENDER_ZOOM)
        paths: list[Path] = []
        for page in tqdm(doc, total=len(doc), desc="Rendering", unit="page"):
            pix = page.get_pixmap(matrix=matrix, alpha=False)
            path = out_dir / f"page_{page.number + 1}.png"
            pix.save(str(path))
            paths.append(path)
    finally:
        doc.close()
    return paths


def cleanup_pages(directory: str | Path):
    """Remove rendered page images. Failures are reported, never raised."""
    try:
        shutil.rmtree(directory)
        print(f"Cleaned up temporary files in {directory}")
    except OSError as e:
        print(f"[WARN] Could not remove {directory}: {e}")


# ---------------------------------------------------------------------------
# Vision model
# ---------------------------------------------------------------------------


def encode_image(path: str | Path) -> str:
    """Return the image as a base64 data URL."""
    path = Path(path)
    mime = MIME_TYPES.get(path.suffix.lower(), "image/jpeg")
    data = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{data}"


class OpenAIVisionModel:
    """Single prompt (+ optional page image) in, text out."""

    def __init__(self, client: OpenAI, model: str):
        self.client = client
        self.model = model

    def complete(
        self,
        prompt: str,
        image: str | Path | None = None,
        max_tokens: int = TRANSLATION_MAX_TOKENS,
        temperature: float = TEMPERATURE,
    ) -> str:
        if image is None:
            content = prompt
        else:
            content = [
                {"type": "text", "text": prompt},
                {
                    "type": "image_url",
                    "image_url": {"url": encode_image(image), "detail": "high"},
                },
            ]

        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": content}],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        text = resp.choices[0].message.content
        if not text:
            raise ResponseError("empty response from model")
        return text.strip()


# ---------------------------------------------------------------------------
# Configuration & CLI
# ---------------------------------------------------------------------------


def load_environment() -> list[Path]:
    """Load .env.local / .env from the working directory without overriding the environment."""
    loaded = []
    for name in ENV_FILES:
        path = Path.cwd() / name
        if path.exists():
            load_dotenv(path)
            loaded.append(path)
            print(f"  Loaded environment from {path}")
    return loaded


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Translate a PDF to Hebrew page by page and summarize it by chapter."
    )
    p.add_argument(
        "pdf",
        help="Path to the source PDF file.",
    )
    p.add_argument(
        "--output-dir", "-o",
        default=".",
        help="Directory for the output files (default: current directory).",
    )
    p.add_argument(
        "--model", "-m",
        default=DEFAULT_MODEL,
        help=f"Vision-capable model name (default: {DEFAULT_MODEL}).",
    )
    p.add_argument(
        "--api-url",
        default=None,
        help="Base URL of an OpenAI-compatible API (default: the OpenAI API).",
    )
    p.add_argument(
        "--api-key",
        default=None,
        help="API key (default: OPENAI_API_KEY from the environment or .env.local).",
    )
    p.add_argument(
        "--chunk-size",
        type=int,
        default=MAX_CHUNK_CHARS,
        help=f"Maximum characters per summarized chunk (default: {MAX_CHUNK_CHARS}).",
    )
    p.add_argument(
        "--max-retries",
        type=int,
        default=MAX_RETRIES,
        help=f"Retries per page after the first attempt (default: {MAX_RETRIES}).",
    )
    p.add_argument(
        "--csv",
        action="store_true",
        help="Also append every page result to a CSV backup.",
    )
    p.add_argument(
        "--pdf",
        dest="write_pdf",
        action="store_true",
        help="Also write the translation as a Hebrew PDF.",
    )
    p.add_argument(
        "--resume",
        default=None,
        help="Checkpoint file to resume from (default: <output-dir>/<pdf name>_checkpoint.json).",
    )
    return p.parse_args(argv)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None):
    args = parse_args(argv)

    pdf_path = Path(args.pdf).resolve()
    if not pdf_path.is_file():
        print(f"ERROR: PDF not found: {pdf_path}")
        sys.exit(1)

    print("=== Step 1/5: Loading configuration ===")
    load_environment()
    api_key = args.api_key or os.getenv("OPENAI_API_KEY")
    if not api_key:
        print("ERROR: OPENAI_API_KEY is not set (use .env.local, the environment or --api-key).")
        sys.exit(1)

    out_dir = Path(args.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
    checkpoint_path = Path(args.resume) if args.resume else (
        out_dir / f"{pdf_path.stem}_checkpoint.json"
    )

    client = OpenAI(api_key=api_key, base_url=args.api_url)
    model = OpenAIVisionModel(client, args.model)
    print(f"  PDF: {pdf_path.name}")
    print(f"  Model: {args.model}")

    work_dir = Path(tempfile.mkdtemp(prefix="pdf_pages_"))
    try:
        print(f"\n=== Step 2/5: Rendering pages ===")
        try:
            images = render_pages(pdf_path, work_dir)
        except Exception as e:
            print(f"ERROR: Could not render {pdf_path.name}: {e}")
            sys.exit(1)
        if not images:
            print("ERROR: The PDF has no pages.")
            sys.exit(1)

        completed = load_checkpoint(checkpoint_path, pdf_path.name, len(images)) or []
        if completed:
            print(f"Resumed from checkpoint: {len(completed)}/{len(images)} pages already done.")

        checkpoint = Checkpoint(checkpoint_path, pdf_path.name, len(images), completed)
        sinks = [checkpoint]
        if args.csv:
            csv_path = out_dir / f"translation_backup_{timestamp}.csv"
            try:
                sinks.append(CsvBackup(csv_path, completed))
                print(f"  CSV backup: {csv_path}")
            except OSError as e:
                print(f"[WARN] CSV backup disabled, could not create {csv_path}: {e}")

        print(f"\n=== Step 3/5: Translating {len(images)} pages ===")
        results = translate_pages(model, images, args.max_retries, sinks, completed)
    finally:
        cleanup_pages(work_dir)

    print(f"\n=== Step 4/5: Saving translation ===")
    translation_text = assemble_document(results)
    translation_name = f"translation_{timestamp}.txt"
    write_text(translation_text, translation_name, out_dir)
    print(f"  {translation_name} ({len(translation_text):,} chars)")

    if args.write_pdf:
        try:
            font_regular, font_bold = ensure_fonts()
            build_translation_pdf(
                results,
                out_dir / f"translation_{timestamp}.pdf",
                font_regular,
                font_bold,
            )
        except Exception as e:
            print(f"[WARN] Could not build the PDF: {e}")

    print(f"\n=== Step 5/5: Summarizing by chunks ===")
    chunks = build_chunks(results, args.chunk_size)
    print(f"  Created {len(chunks)} chunks:")
    for i, chunk in enumerate(chunks, 1):
        print(f"   {i}. {chunk.title}")
        print(
            f"      Pages: {chunk.first_page}-{chunk.last_page} "
            f"({len(chunk.text):,} chars)"
        )

    summaries = summarize_chunks(model, chunks)
    summary_text = assemble_summary(chunks, summaries)
    summary_name = f"summary_{timestamp}.txt"
    write_text(summary_text, summary_name, out_dir)
    print(f"  {summary_name} ({len(summary_text):,} chars)")

    checkpoint.remove()

    ok_count = sum(1 for r in results if r.ok)
    print(f"\n{RULE}")
    print(f"Pages processed: {len(results)}")
    print(f"Successful:      {ok_count}")
    print(f"Failed:          {len(results) - ok_count}")
    print(f"Chunks:          {len(chunks)}")
    print("Output files:")
    print(f"  1. {translation_name}")
    print(f"  2. {summary_name}")
    print(RULE)
    print("\nDone!")


if __name__ == "__main__":
    main()
