"""
Prompt Builder: story (vision) messages and illustration prompts
"""

from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader
import structlog

from picturebook.models.jobs import PromptContext, StoryPageRef
from picturebook.services.styles import get_style

logger = structlog.get_logger()

# Jinja2 environment for prompt templates
PROMPTS_DIR = Path(__file__).parent.parent / "prompts"
jinja_env = Environment(loader=FileSystemLoader(PROMPTS_DIR), keep_trailing_newline=False)

# gpt-image-1 prompt ceiling
MAX_PROMPT_CHARS = 30000
ELLIPSIS = "…"


def render_prompt(template_name: str, **kwargs) -> str:
    """Render a prompt template with given variables"""
    template = jinja_env.get_template(template_name)
    return template.render(**kwargs).strip()


def story_system_prompt() -> str:
    return render_prompt("story.system.jinja2")


def _text(text: str) -> dict:
    return {"type": "text", "text": text}


def build_story_messages(
    context: PromptContext,
    story_pages: list[StoryPageRef],
    is_winkify_enabled: bool = False,
) -> list[dict]:
    """
    Build the user message content for story generation

    The content is an ordered list of parts: configuration, then one marker
    per story page followed by its photo, then the writing instructions.
    Pages are presented in page_number order.

    Returns:
        Chat-completions content parts (text and image_url)
    """
    pages = sorted(story_pages, key=lambda page: page.page_number)
    content = [
        _text(
            render_prompt(
                "story.config.jinja2",
                child_name=context.child_name,
                book_title=context.book_title,
                art_style=context.art_style,
                is_double_spread=context.is_double_spread,
                page_count=len(pages),
            )
        ),
        _text("# Storyboard Sequence"),
    ]

    for page in pages:
        content.append(_text(f"--- Page {page.page_number} ---"))
        if page.original_image_url:
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": page.original_image_url, "detail": "high"},
                }
            )
        else:
            content.append(_text(f"[No Image Provided for Page {page.page_number}]"))

    content.append(_text("--- End Storyboard ---"))
    content.append(
        _text(
            render_prompt(
                "story.instructions.jinja2",
                child_name=context.child_name,
                book_title=context.book_title,
                is_winkify_enabled=is_winkify_enabled,
            )
        )
    )
    return content


def build_illustration_prompt(
    style_key: Optional[str],
    page_text: Optional[str],
    book_title: Optional[str],
    is_title_page: bool = False,
    illustration_notes: Optional[str] = None,
    is_winkify_enabled: bool = False,
) -> str:
    """
    Build the image-edit prompt for one page

    Image 1 is the content source (the page photo), image 2 the style
    reference. Title pages integrate the book title; story pages render the
    page text.
    """
    style = get_style(style_key)
    style_notes = f" Style notes: {style.description}" if style and style.description else ""

    parts = [
        "Task: redraw the content of the first input image (Content Source) in the "
        "artistic style of the second input image (Style Reference).",
        "Content Source (Image 1): take every content element from this image only: "
        "characters, faces, poses, objects and the background layout. Keep them and "
        "their composition as they are. Do not add, remove or noticeably change content.",
        "Style Reference (Image 2): use this image only as the reference for the look: "
        "palette, texture, line work, shading and rendering. All style comes from "
        f"Image 2.{style_notes}",
    ]

    if is_winkify_enabled and illustration_notes:
        parts.append(
            "Dynamic effects: amplify the action with light effects such as zoom lines, "
            "sparkles or motion blur covering under 20% of the scene, drawn in the style "
            "of Image 2. Effects must not change the characters, faces or poses from Image 1."
        )
        parts.append(f"Requested effect: {illustration_notes}.")

    if is_title_page:
        parts.append(
            f'Title: place the book title "{book_title or ""}" naturally in the scene. It must '
            "be clearly legible and must not cover key content from Image 1. Take its lettering, "
            "color and placement cues from the Style Reference."
        )
    else:
        parts.append(
            f'Text: render this text exactly once in the image: "{(page_text or "").strip()}". '
            "Match the font, size, color and placement of the text shown in the Style Reference. "
            "All of the text must be visible and not cut off."
        )

    prompt = " ".join(part for part in parts if part)
    if len(prompt) > MAX_PROMPT_CHARS:
        prompt = prompt[: MAX_PROMPT_CHARS - 1] + ELLIPSIS

    logger.debug("Illustration prompt built", style=style_key, length=len(prompt))
    return prompt
