"""
Prompt Builder Tests
"""

from picturebook.models.jobs import PromptContext, StoryPageRef
from picturebook.services.image import guess_mime_type
from picturebook.services.prompts import (
    MAX_PROMPT_CHARS,
    build_illustration_prompt,
    build_story_messages,
    story_system_prompt,
)
from picturebook.services.storage import encode_tags


def context():
    return PromptContext(book_title="Max at the Beach", child_name="Max", art_style="pen")


def pages():
    return [
        StoryPageRef(page_id="p2", page_number=2, original_image_url=None),
        StoryPageRef(page_id="p1", page_number=1, original_image_url="https://images.test/1.jpg"),
    ]


class TestStoryMessages:
    def test_storyboard_sequence(self):
        content = build_story_messages(context(), pages())

        texts = [part.get("text") for part in content]
        assert "Child's Name: Max" in content[0]["text"]
        assert "Page Count: 2" in content[0]["text"]
        assert texts[1] == "# Storyboard Sequence"
        assert texts[2] == "--- Page 1 ---"
        assert content[3] == {
            "type": "image_url",
            "image_url": {"url": "https://images.test/1.jpg", "detail": "high"},
        }
        assert texts[4] == "--- Page 2 ---"
        assert texts[5] == "[No Image Provided for Page 2]"
        assert texts[6] == "--- End Storyboard ---"

    def test_plain_output_format(self):
        instructions = build_story_messages(context(), pages())[-1]["text"]
        assert "illustrationNotes" not in instructions
        assert "Max" in instructions

    def test_winkify_output_format(self):
        instructions = build_story_messages(context(), pages(), is_winkify_enabled=True)[-1]["text"]
        assert "illustrationNotes" in instructions
        assert "and illustrator" in instructions

    def test_system_prompt(self):
        assert "picture-book" in story_system_prompt()


class TestIllustrationPrompt:
    def test_story_page_renders_text(self):
        prompt = build_illustration_prompt("pen", "  Max runs!  ", "Title")
        assert '"Max runs!"' in prompt
        assert "Title" not in prompt

    def test_title_page_integrates_title(self):
        prompt = build_illustration_prompt("pen", None, "Max at the Beach", is_title_page=True)
        assert '"Max at the Beach"' in prompt

    def test_style_description_appended(self):
        prompt = build_illustration_prompt("bwPlusOne", "Hi", "T")
        assert "exactly one prominent object" in prompt

    def test_winkify_notes_only_when_enabled(self):
        with_notes = build_illustration_prompt(
            "pen", "Hi", "T", illustration_notes="sparkles", is_winkify_enabled=True
        )
        without = build_illustration_prompt("pen", "Hi", "T", illustration_notes="sparkles")
        assert "sparkles" in with_notes
        assert "sparkles" not in without

    def test_truncated_with_ellipsis(self):
        prompt = build_illustration_prompt("pen", "x" * 40000, "T")
        assert len(prompt) == MAX_PROMPT_CHARS
        assert prompt.endswith("…")


class TestHelpers:
    def test_guess_mime_type(self):
        assert guess_mime_type("https://x/a.png", "image/png; charset=binary") == "image/png"
        assert guess_mime_type("https://x/a.png", "application/octet-stream") == "image/png"
        assert guess_mime_type("https://x/a.JPG?v=1", None) == "image/jpeg"
        assert guess_mime_type("https://x/photo", None) == "image/jpeg"

    def test_encode_tags(self):
        assert encode_tags(["book:b1", "pageNum:2"]) == "book=b1&pageNum=2"
        assert encode_tags(None) == ""
