"""
Tests for JSON extraction and answer validation (page_pipeline.py)

Run: python -m pytest tests/test_response_parsing.py -q
"""

import json

import pytest

from page_pipeline import (
    RESPONSE_FIELDS,
    ResponseError,
    build_page_prompt,
    extract_json_object,
    is_valid_text,
    parse_page_response,
)


def _answer(**overrides) -> dict:
    data = {
        "translation": "זהו תרגום מלא של הדף הראשון",
        "summary": "הדף עוסק בנושא המרכזי של המאמר",
        "articleTitle": "מאמר לדוגמה",
        "chapterTitle": "",
        "sectionTitle": "",
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# extract_json_object
# ---------------------------------------------------------------------------


class TestExtractJsonObject:
    def test_plain_object(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_fenced_json_block(self):
        text = 'Here it is:\n```json\n{"a": "שלום"}\n```\nThanks.'
        assert extract_json_object(text) == {"a": "שלום"}

    def test_fenced_block_without_language(self):
        assert extract_json_object('```\n{"a": 2}\n```') == {"a": 2}

    def test_surrounding_prose(self):
        text = 'Sure! {"a": 3, "b": {"c": 4}} Hope this helps.'
        assert extract_json_object(text) == {"a": 3, "b": {"c": 4}}

    def test_skips_brace_that_is_not_json(self):
        text = 'Note {this is not json} and then {"a": 5}'
        assert extract_json_object(text) == {"a": 5}

    def test_braces_inside_strings(self):
        text = '{"translation": "a } inside { text"}'
        assert extract_json_object(text) == {"translation": "a } inside { text"}

    def test_no_object(self):
        assert extract_json_object("I cannot read this page.") is None

    def test_empty(self):
        assert extract_json_object("") is None

    def test_truncated_object(self):
        assert extract_json_object('{"translation": "cut off') is None


# ---------------------------------------------------------------------------
# is_valid_text
# ---------------------------------------------------------------------------


class TestIsValidText:
    def test_normal_hebrew_text(self):
        assert is_valid_text("זהו טקסט תקין לחלוטין")

    def test_empty(self):
        assert not is_valid_text("")

    def test_whitespace_only(self):
        assert not is_valid_text("          \n   ")

    def test_shorter_than_ten(self):
        assert not is_valid_text("קצר")

    def test_exactly_ten(self):
        assert is_valid_text("א" * 10)

    def test_not_a_string(self):
        assert not is_valid_text(None)

    @pytest.mark.parametrize("text", [
        "I'm unable to provide a translation of this page.",
        "Sorry, I CANNOT read the image clearly.",
        "An Error occurred while reading",
        "Translation failed for this page",
        "לא ניתן לתרגם את הדף הזה",
        "לא ניתן היה לקרוא את התמונה",
        "שגיאה בעיבוד הדף",
    ])
    def test_failure_markers(self, text):
        assert not is_valid_text(text)


# ---------------------------------------------------------------------------
# parse_page_response
# ---------------------------------------------------------------------------


class TestParsePageResponse:
    def test_all_fields_returned(self):
        parsed = parse_page_response(json.dumps(_answer(chapterTitle="פרק 1")))
        assert set(parsed) == set(RESPONSE_FIELDS)
        assert parsed["chapterTitle"] == "פרק 1"
        assert parsed["sectionTitle"] == ""

    def test_missing_and_null_titles_become_empty(self):
        data = _answer(chapterTitle=None)
        del data["sectionTitle"]
        parsed = parse_page_response(json.dumps(data))
        assert parsed["chapterTitle"] == ""
        assert parsed["sectionTitle"] == ""

    def test_titles_are_stripped(self):
        parsed = parse_page_response(json.dumps(_answer(sectionTitle="  מבוא \n")))
        assert parsed["sectionTitle"] == "מבוא"

    def test_fenced_answer(self):
        content = "```json\n" + json.dumps(_answer(), ensure_ascii=False) + "\n```"
        assert parse_page_response(content)["articleTitle"] == "מאמר לדוגמה"

    def test_no_json_raises(self):
        with pytest.raises(ResponseError):
            parse_page_response("Here is the translation: שלום עולם")

    def test_short_translation_raises(self):
        with pytest.raises(ResponseError, match="translation"):
            parse_page_response(json.dumps(_answer(translation="קצר")))

    def test_refusal_in_summary_raises(self):
        with pytest.raises(ResponseError, match="summary"):
            parse_page_response(json.dumps(_answer(summary="I am unable to summarize")))

    def test_list_translation_raises(self):
        answer = _answer(translation=["פסקה ראשונה ארוכה", "פסקה שנייה ארוכה"])
        with pytest.raises(ResponseError, match="translation is list"):
            parse_page_response(json.dumps(answer))

    def test_numeric_summary_raises(self):
        with pytest.raises(ResponseError, match="summary is int"):
            parse_page_response(json.dumps(_answer(summary=12345678901)))

    @pytest.mark.parametrize("key", ["articleTitle", "chapterTitle", "sectionTitle"])
    def test_non_string_title_raises(self, key):
        with pytest.raises(ResponseError, match=key):
            parse_page_response(json.dumps(_answer(**{key: {"title": "פרק 1"}})))


# ---------------------------------------------------------------------------
# build_page_prompt
# ---------------------------------------------------------------------------


class TestBuildPagePrompt:
    def test_mentions_page_and_fields(self):
        prompt = build_page_prompt(7)
        assert "page 7" in prompt
        for key in RESPONSE_FIELDS:
            assert f'"{key}"' in prompt

    def test_no_context_block_without_context(self):
        prompt = build_page_prompt(1)
        assert "CONTEXT:" not in prompt
        assert "Continue smoothly" not in prompt

    def test_previous_context_included(self):
        prompt = build_page_prompt(2, previous_context="סוף הדף הקודם")
        assert '"סוף הדף הקודם"' in prompt
        assert "Continue smoothly" in prompt

    def test_chapter_context_included(self):
        prompt = build_page_prompt(3, chapter_context="פרק 1 > מבוא")
        assert '"פרק 1 > מבוא"' in prompt
        assert "Continue smoothly" not in prompt
