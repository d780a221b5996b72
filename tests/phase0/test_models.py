"""Tests for the data model and the thoughts/answer composite."""

import base64

from canopy.models import (
    Attachment,
    ComposedContent,
    StreamEvent,
    compose_content,
    split_content,
)


class TestComposeContent:
    def test_with_thoughts(self):
        assert compose_content("abc", "xyz") == "Thoughts:abc\n---\nAnswer:xyz"

    def test_without_thoughts_is_answer_alone(self):
        assert compose_content(None, "xyz") == "xyz"
        assert compose_content("", "xyz") == "xyz"


class TestSplitContent:
    def test_plain_answer(self):
        assert split_content("just text") == ComposedContent(answer="just text")

    def test_composite(self):
        parts = split_content("Thoughts:abc\n---\nAnswer:xyz")
        assert parts.thoughts == "abc"
        assert parts.answer == "xyz"

    def test_thoughts_only_placeholder(self):
        parts = split_content("Thoughts:still thinking")
        assert parts.thoughts == "still thinking"
        assert parts.answer == ""

    def test_legacy_markdown_composite(self):
        legacy = "**Thoughts:**\nponder\n\n---\n\n**Answer:**\nresult"
        parts = split_content(legacy)
        assert parts.thoughts == "ponder"
        assert parts.answer == "result"

    def test_answer_may_contain_separator_text(self):
        content = compose_content("t", "a\n---\nAnswer:b")
        assert split_content(content).answer == "a\n---\nAnswer:b"


class TestAttachment:
    def test_documents(self):
        assert Attachment(name="a.pdf", mime_type="application/pdf", data="").is_document
        assert Attachment(name="a.txt", mime_type="text/plain", data="").is_document
        assert Attachment(name="a.py", mime_type="text/x-python", data="").is_document
        assert Attachment(name="a.json", mime_type="application/json", data="").is_document
        assert Attachment(name="a.js", mime_type="application/javascript", data="").is_document

    def test_images_and_audio_are_not_documents(self):
        assert not Attachment(name="a.png", mime_type="image/png", data="").is_document
        assert not Attachment(name="a.wav", mime_type="audio/wav", data="").is_document

    def test_raw_data_strips_data_url_prefix(self):
        att = Attachment(name="a.txt", mime_type="text/plain", data="data:text/plain;base64,aGk=")
        assert att.raw_data == "aGk="

    def test_decoded_text(self):
        data = base64.b64encode(b"hello world").decode()
        att = Attachment(name="a.txt", mime_type="text/plain", data=data)
        assert att.decoded_text() == "hello world"

    def test_decoded_text_falls_back_to_raw(self):
        att = Attachment(name="a.txt", mime_type="text/plain", data="not base64!")
        assert att.decoded_text() == "not base64!"


class TestStreamEvent:
    def test_audio_alias(self):
        event = StreamEvent.model_validate({"type": "complete", "audioData": "UklG"})
        assert event.audio_data == "UklG"

    def test_populate_by_name(self):
        assert StreamEvent(type="complete", audio_data="x").audio_data == "x"
