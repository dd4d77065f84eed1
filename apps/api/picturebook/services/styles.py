"""
Style Library: art styles selectable for a book
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class StyleDefinition:
    label: str
    reference_image_url: str
    description: Optional[str] = None


STYLE_LIBRARY: dict[str, StyleDefinition] = {
    "anime": StyleDefinition(
        label="Anime",
        reference_image_url="https://res.cloudinary.com/storywink/image/upload/v1746284318/Anime_USETHIS_qmgm0i.png",
    ),
    "pen": StyleDefinition(
        label="Pen",
        reference_image_url="https://res.cloudinary.com/storywink/image/upload/v1746283996/pen_USETHIS_nqfnel.png",
    ),
    "watercolor": StyleDefinition(
        label="Watercolor",
        reference_image_url="https://res.cloudinary.com/storywink/image/upload/v1746284308/Watercolor_USETHIS3_n2giqf.png",
    ),
    "modern": StyleDefinition(
        label="Modern",
        reference_image_url="https://res.cloudinary.com/storywink/image/upload/v1746283996/modern_USETHIS_dukxgz.png",
    ),
    "pencil": StyleDefinition(
        label="Pencil",
        reference_image_url="https://res.cloudinary.com/storywink/image/upload/v1746283997/pencil_USEHTIS_htcslm.png",
    ),
    "bwPlusOne": StyleDefinition(
        label="B&W +1 Color",
        reference_image_url="https://res.cloudinary.com/storywink/image/upload/v1746283997/bw_1col_USETHIS_pvbovo.png",
        description=(
            "As per the reference image, black and white EXCEPT exactly one prominent "
            "object (not people) of the model's choosing"
        ),
    ),
}


def get_style(style_key: Optional[str]) -> Optional[StyleDefinition]:
    """Look up a style by key. Unknown or empty keys return None."""
    if not style_key:
        return None
    return STYLE_LIBRARY.get(style_key)


def is_valid_style(style_key: Optional[str]) -> bool:
    return get_style(style_key) is not None
