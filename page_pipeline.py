"""
Page Sequencing & Chunk Assembly
================================
Walks rendered PDF pages through a vision model one page at a time,
carrying translation continuity and chapter/section context forward,
then groups the translated pages into title-coherent chunks and asks the
model for a long Hebrew summary of each chunk.

The model is any object with a
``complete(prompt, image=None, max_tokens=..., temperature=...) -> str``
method (see ``translate_summarize.OpenAIVisionModel``).
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Callable, Iterable, Sequence, TypeVar

from tqdm import tqdm

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STATUS_OK = "OK"
STATUS_FAILED = "FAILED"

TEMPERATURE = 0.3
TRANSLATION_MAX_TOKENS = 4096
SUMMARY_MAX_TOKENS = 2000

# Retries after the first attempt, and the pause between attempts (seconds)
MAX_RETRIES = 3
RETRY_DELAY = 3.0

# Pause between successive pages / chunks (seconds)
RATE_LIMIT_DELAY = 1.0

# Trailing characters of the previous page handed to the next request
CONTEXT_CHARS = 200

# translation / summary shorter than this is a failed answer
MIN_FIELD_LEN = 10

MAX_CHUNK_CHARS = 10_000
CHUNK_SEPARATOR = "\n\n"

FALLBACK_TITLE = "תוכן כללי"
RULE = "=" * 80

RESPONSE_FIELDS = (
    "translation",
    "summary",
    "articleTitle",
    "chapterTitle",
    "sectionTitle",
)

# Lowercase substrings that mark a refusal or a degraded answer.
FAILURE_MARKERS = (
    "unable to",
    "cannot",
    "לא ניתן לתרגם",
    "לא ניתן היה",
    "שגיאה בעיבוד",
    "error",
    "failed",
)


# ---------------------------------------------------------------------------
# Records & errors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PageResult:
    """Outcome of one page. FAILED pages keep their slot but are never assembled."""

    page_number: int
    translation: str
    summary: str
    article_title: str
    chapter_title: str = ""
    section_title: str = ""
    status: str = STATUS_OK
    retry_count: int = 0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> PageResult:
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass(frozen=True)
class Chunk:
    """A contiguous run of OK pages sharing one chapter/section label."""

    title: str
    text: str
    pages: tuple[int, ...]

    @property
    def first_page(self) -> int:
        return self.pages[0]

    @property
    def last_page(self) -> int:
        return self.pages[-1]


class ResponseError(Exception):
    """The model answered, but not with something we can use."""


class RetriesExhausted(Exception):
    def __init__(self, attempts: int, last_error: Exception | None):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def exhausted_page_result(page_number: int, attempts: int) -> PageResult:
    return PageResult(
        page_number=page_number,
        translation=f"שגיאה בעיבוד דף {page_number} - {attempts} ניסיונות נכשלו",
        summary=f"FAILED - {attempts} attempts - manual review needed",
        article_title="שגיאה",
        status=STATUS_FAILED,
        retry_count=attempts - 1,
    )


def critical_page_result(page_number: int) -> PageResult:
    return PageResult(
        page_number=page_number,
        translation=f"שגיאה קריטית בעיבוד דף {page_number}",
        summary="FAILED - Critical error",
        article_title="שגיאה",
        status=STATUS_FAILED,
        retry_count=0,
    )


# ---------------------------------------------------------------------------
# Page request
# ---------------------------------------------------------------------------


def build_page_prompt(
    page_number: int,
    previous_context: str = "",
    chapter_context: str = "",
) -> str:
    """Instruction for one page: detect headings, translate, summarize, answer in JSON."""
    context = ""
    if chapter_context:
        context += (
            f"\n**הקשר מבני**: הדף נמצא תחת הפרק/הסעיף:\n\"{chapter_context}\"\n"
        )
    if previous_context:
        context += (
            f"\n**המשכיות**: הדף הקודם הסתיים כך:\n\"{previous_context}\"\n\n"
            "המשך את התרגום מנקודה זו בצורה חלקה וטבעית.\n"
        )

    if context:
        context = f"\nCONTEXT:{context}"
    continue_note = (
        " Continue smoothly from the text the previous page ended with."
        if previous_context else ""
    )

    return f"""\
You are reading page {page_number} of an academic document.
{context}
**FIRST, FIND THE PAGE STRUCTURE.**
Before translating, look for headings: text that is larger than the body,
centered, bold, ALL CAPS or Title Case, or numbered ("CHAPTER 2", "1. Introduction").

**TASKS:**
1. **Chapter title**: if a chapter heading appears on this page, translate it to Hebrew. Otherwise use an empty string.
2. **Section title**: independently, if a section or subsection heading appears on this page, translate it to Hebrew. Otherwise use an empty string.
3. **Translation**: translate ALL body text on the page to Hebrew, keeping its structure.{continue_note}
4. **Summary**: a 4-6 sentence Hebrew summary of this page.
5. **Article title**: a short Hebrew title for the article's topic.

Answer with ONE JSON object and nothing else:
{{
  "translation": "full Hebrew translation",
  "summary": "Hebrew summary",
  "articleTitle": "short Hebrew title",
  "chapterTitle": "Hebrew chapter title, or empty string",
  "sectionTitle": "Hebrew section title, or empty string"
}}"""


# ---------------------------------------------------------------------------
# Response parsing & validation
# ---------------------------------------------------------------------------

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_DECODER = json.JSONDecoder()


def extract_json_object(text: str) -> dict | None:
    """
    Return the first well-formed JSON object in a model response, or None.

    A fenced ```json block wins if it parses. Otherwise every ``{`` is tried
    in turn as the start of an object, so explanatory text around the
    payload is ignored.
    """
    if not text:
        return None

    for match in _FENCED_JSON.finditer(text):
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    start = text.find("{")
    while start != -1:
        try:
            data, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            pass
        else:
            if isinstance(data, dict):
                return data
        start = text.find("{", start + 1)
    return None


def is_valid_text(text: str) -> bool:
    """False for empty / very short text or text carrying a failure marker."""
    if not isinstance(text, str) or len(text.strip()) < MIN_FIELD_LEN:
        return False
    lowered = text.lower()
    return not any(marker in lowered for marker in FAILURE_MARKERS)


def _as_text(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ResponseError(f"{key} is {type(value).__name__}, expected a string")
    return value.strip()


def parse_page_response(content: str) -> dict[str, str]:
    """Parse and validate one page answer. Raises ResponseError if unusable."""
    data = extract_json_object(content)
    if data is None:
        raise ResponseError("no JSON object in model response")

    parsed = {key: _as_text(data, key) for key in RESPONSE_FIELDS}
    for key in ("translation", "summary"):
        if not is_valid_text(parsed[key]):
            raise ResponseError(f"{key} looks incomplete or failed")
    return parsed


# ---------------------------------------------------------------------------
# Retry ladder
# ---------------------------------------------------------------------------


def retry_call(
    request_fn: Callable[[], T],
    max_retries: int = MAX_RETRIES,
    delay: float = RETRY_DELAY,
    label: str = "request",
) -> tuple[T, int]:
    """
    Call ``request_fn`` until it returns without raising.

    Returns ``(value, retries_used)``. After ``max_retries + 1`` failed
    attempts raises RetriesExhausted carrying the last error.
    """
    last_error: Exception | None = None
    for attempt in range(max_retries + 1):
        if attempt:
            tqdm.write(f"  Retry attempt {attempt}/{max_retries} ({label}) ...")
        try:
            return request_fn(), attempt
        except Exception as e:
            last_error = e
            if attempt < max_retries:
                tqdm.write(
                    f"[WARN] {label}: attempt {attempt + 1} failed ({e}). "
                    f"Retrying in {delay:g}s ..."
                )
                time.sleep(delay)
    raise RetriesExhausted(max_retries + 1, last_error)


def translate_page(
    model,
    image: Path,
    page_number: int,
    previous_context: str = "",
    chapter_context: str = "",
    max_retries: int = MAX_RETRIES,
) -> PageResult:
    """Translate one page image; never raises for model-side failures."""
    prompt = build_page_prompt(page_number, previous_context, chapter_context)

    def request() -> dict[str, str]:
        content = model.complete(
            prompt,
            image,
            max_tokens=TRANSLATION_MAX_TOKENS,
            temperature=TEMPERATURE,
        )
        return parse_page_response(content)

    try:
        parsed, retries = retry_call(request, max_retries, label=f"page {page_number}")
    except RetriesExhausted as e:
        tqdm.write(f"[ERROR] Page {page_number}: {e}")
        return exhausted_page_result(page_number, e.attempts)

    if parsed["chapterTitle"]:
        tqdm.write(f"  Chapter found: {parsed['chapterTitle']}")
    if parsed["sectionTitle"]:
        tqdm.write(f"  Section found: {parsed['sectionTitle']}")

    return PageResult(
        page_number=page_number,
        translation=parsed["translation"],
        summary=parsed["summary"],
        article_title=parsed["articleTitle"],
        chapter_title=parsed["chapterTitle"],
        section_title=parsed["sectionTitle"],
        status=STATUS_OK,
        retry_count=retries,
    )


# ---------------------------------------------------------------------------
# Page sequencer
# ---------------------------------------------------------------------------


def previous_context(results: Sequence[PageResult], limit: int = CONTEXT_CHARS) -> str:
    """Tail of the immediately preceding page, only if that page is OK."""
    if not results or not results[-1].ok:
        return ""
    return results[-1].translation[-limit:]


def chapter_context(results: Sequence[PageResult]) -> str:
    """
    Nearest chapter seen so far, as "chapter" or "chapter > section".

    Only the section found on the same page as that chapter is attached;
    section-only pages after it are not considered.
    """
    for result in reversed(results):
        if result.chapter_title:
            if result.section_title:
                return f"{result.chapter_title} > {result.section_title}"
            return result.chapter_title
    return ""


def _feed_sinks(sinks: Sequence[Callable[[PageResult], None]], result: PageResult):
    for sink in sinks:
        try:
            sink(result)
        except Exception as e:
            name = getattr(sink, "__name__", type(sink).__name__)
            tqdm.write(f"[WARN] Output {name} failed for page {result.page_number}: {e}")


def translate_pages(
    model,
    images: Sequence[Path],
    max_retries: int = MAX_RETRIES,
    sinks: Iterable[Callable[[PageResult], None]] = (),
    completed: Sequence[PageResult] = (),
) -> list[PageResult]:
    """
    Translate every page image in order and return one PageResult per page.

    ``completed`` holds results already produced for the leading pages
    (from a checkpoint); work continues with the page after them. Each new
    result is handed to every sink; sink errors are reported and ignored.
    """
    results: list[PageResult] = list(completed)
    sinks = list(sinks)
    total = len(images)
    if len(results) > total:
        raise ValueError(f"{len(results)} completed pages but only {total} images")

    pbar = tqdm(total=total, initial=len(results), desc="Translating", unit="page")

    for i in range(len(results), total):
        page_number = i + 1
        tqdm.write(f"--- Page {page_number}/{total} ---")

        try:
            prev = previous_context(results)
            chapter = chapter_context(results)
            if prev:
                tqdm.write(f"  Using context ({len(prev)} chars)")
            if chapter:
                tqdm.write(f"  Chapter: {chapter}")
            result = translate_page(
                model, images[i], page_number, prev, chapter, max_retries
            )
        except Exception as e:
            tqdm.write(f"[ERROR] Critical error on page {page_number}: {e}")
            result = critical_page_result(page_number)

        results.append(result)
        _feed_sinks(sinks, result)
        tqdm.write(f"  Page {page_number} done ({result.status})")
        pbar.update(1)

        if i < total - 1:
            time.sleep(RATE_LIMIT_DELAY)

    pbar.close()
    return results


# ---------------------------------------------------------------------------
# Document assembly
# ---------------------------------------------------------------------------


def document_blocks(results: Iterable[PageResult]) -> list[tuple[str, str]]:
    """
    Flatten OK pages into ("chapter" | "section" | "text", content) blocks.

    A heading block is emitted only when the title changes; a new chapter
    forgets the last section so it is announced again under that chapter.
    """
    blocks: list[tuple[str, str]] = []
    last_chapter = ""
    last_section = ""

    for result in results:
        if not result.ok:
            continue
        if result.chapter_title and result.chapter_title != last_chapter:
            blocks.append(("chapter", result.chapter_title))
            last_chapter = result.chapter_title
            last_section = ""
        if result.section_title and result.section_title != last_section:
            blocks.append(("section", result.section_title))
            last_section = result.section_title
        blocks.append(("text", result.translation))

    return blocks


def assemble_document(results: Iterable[PageResult]) -> str:
    parts: list[str] = []
    for kind, content in document_blocks(results):
        if kind == "chapter":
            parts.append(f"\n\n{RULE}\n{content}\n{RULE}\n\n")
        elif kind == "section":
            parts.append(f"\n--- {content} ---\n\n")
        else:
            parts.append(content + "\n\n")
    return "".join(parts).strip()


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def chunk_title(chapter: str, section: str) -> str:
    if chapter:
        return f"{chapter} > {section}" if section else chapter
    return section or FALLBACK_TITLE


def build_chunks(
    results: Iterable[PageResult],
    max_chars: int = MAX_CHUNK_CHARS,
) -> list[Chunk]:
    """
    Group OK pages into chunks for summarization.

    A chunk closes when the chapter/section label changes or when the next
    page would push its text past ``max_chars``. A single page is never
    split, so a chunk holding one oversized page may exceed the limit.
    """
    chunks: list[Chunk] = []
    current_chapter = ""
    current_section = ""

    # Open chunk
    title = ""
    parts: list[str] = []
    pages: list[int] = []
    length = 0

    for result in results:
        if not result.ok:
            continue

        if result.chapter_title:
            current_chapter = result.chapter_title
            current_section = ""
        if result.section_title:
            current_section = result.section_title
        content_title = chunk_title(current_chapter, current_section)

        added = len(result.translation) + (len(CHUNK_SEPARATOR) if parts else 0)
        title_changed = bool(title) and title != content_title
        would_exceed = length + added > max_chars

        if (title_changed or would_exceed) and parts:
            chunks.append(Chunk(title, CHUNK_SEPARATOR.join(parts), tuple(pages)))
            title, parts, pages, length = content_title, [], [], 0
            added = len(result.translation)

        if not title:
            title = content_title

        parts.append(result.translation)
        pages.append(result.page_number)
        length += added

    if parts:
        chunks.append(Chunk(title, CHUNK_SEPARATOR.join(parts), tuple(pages)))

    return chunks


# ---------------------------------------------------------------------------
# Chunk summaries
# ---------------------------------------------------------------------------


def chunk_error_text(title: str) -> str:
    return f"שגיאה בסיכום {title}"


def build_chunk_prompt(chunk: Chunk, index: int, total: int) -> str:
    return f"""\
You are summarizing part {index + 1} of {total} of an academic article.

**Chapter/section:** {chunk.title}
**Pages:** {chunk.first_page} to {chunk.last_page}

**Text:**
{chunk.text}

**Task:**
Write a comprehensive Hebrew summary of 15-20 sentences that:
1. Covers ALL main points and key concepts of this part
2. Keeps specific details, methods, findings and arguments
3. Follows the logical flow of the text
4. Preserves important terminology and names

Reply with the Hebrew summary as plain text only (no JSON, no markdown)."""


def summarize_chunk(model, chunk: Chunk, index: int, total: int) -> str:
    """One model call; any failure yields the Hebrew error line for the chunk."""
    tqdm.write(f"Summarizing chunk {index + 1}/{total}: {chunk.title}")
    tqdm.write(
        f"  Pages: {chunk.first_page}-{chunk.last_page} ({len(chunk.text):,} chars)"
    )
    try:
        summary = model.complete(
            build_chunk_prompt(chunk, index, total),
            None,
            max_tokens=SUMMARY_MAX_TOKENS,
            temperature=TEMPERATURE,
        )
        summary = (summary or "").strip()
        if not summary:
            raise ResponseError("empty summary")
    except Exception as e:
        tqdm.write(f"[ERROR] Chunk {index + 1} summary failed: {e}")
        return chunk_error_text(chunk.title)

    tqdm.write(f"  Chunk {index + 1} summarized ({len(summary):,} chars)")
    return summary


def summarize_chunks(model, chunks: Sequence[Chunk]) -> list[str]:
    summaries: list[str] = []
    total = len(chunks)
    for i, chunk in enumerate(tqdm(chunks, desc="Summarizing", unit="chunk")):
        summaries.append(summarize_chunk(model, chunk, i, total))
        if i < total - 1:
            time.sleep(RATE_LIMIT_DELAY)
    return summaries


def assemble_summary(chunks: Sequence[Chunk], summaries: Sequence[str]) -> str:
    if len(chunks) != len(summaries):
        raise ValueError(f"{len(chunks)} chunks but {len(summaries)} summaries")

    parts: list[str] = []
    for chunk, summary in zip(chunks, summaries):
        parts.append(
            f"{RULE}\n"
            f"{chunk.title}\n"
            f"(עמודים {chunk.first_page}-{chunk.last_page})\n"
            f"{RULE}\n\n"
            f"{summary}\n\n"
        )
    return "".join(parts).strip()
