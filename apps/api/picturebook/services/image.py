"""
Image Service: source image download and image-edit API integration
"""

import asyncio
import base64
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx
import structlog

from picturebook.core.config import settings
from picturebook.core.errors import ImageError, SourceImageError

logger = structlog.get_logger()

OPENAI_IMAGE_EDIT_URL = "https://api.openai.com/v1/images/edits"

EXTENSION_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
}
DEFAULT_MIME_TYPE = "image/jpeg"


@dataclass
class FetchedImage:
    data: bytes
    mime_type: str

    @property
    def extension(self) -> str:
        return "png" if self.mime_type == "image/png" else "jpg"


def guess_mime_type(url: str, content_type: Optional[str]) -> str:
    """Mime type from the response header, else the URL extension, else JPEG."""
    if content_type:
        mime_type = content_type.split(";")[0].strip().lower()
        if mime_type.startswith("image/"):
            return mime_type

    path = urlparse(url).path
    extension = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return EXTENSION_MIME_TYPES.get(extension, DEFAULT_MIME_TYPE)


async def fetch_image(url: str, timeout: Optional[float] = None) -> FetchedImage:
    """
    Download an image

    Raises:
        SourceImageError: network failure or non-2xx response
    """
    try:
        async with httpx.AsyncClient(
            timeout=timeout or settings.fetch_timeout, follow_redirects=True
        ) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        raise SourceImageError(f"Failed to fetch image: {e}", url=url) from e

    if not response.is_success:
        raise SourceImageError(f"Failed to fetch image: HTTP {response.status_code}", url=url)

    return FetchedImage(
        data=response.content,
        mime_type=guess_mime_type(url, response.headers.get("content-type")),
    )


class ImageClient:
    """
    Image-edit client: content image + style reference + prompt -> one image

    Supports: OpenAI, Mock
    """

    def __init__(self, provider: Optional[str] = None):
        self.provider = provider or settings.image_provider

    async def edit(self, images: list[FetchedImage], prompt: str) -> Optional[str]:
        """
        Returns:
            Base64 PNG data, or None when the model returned no image
            (content-policy refusal)
        """
        if self.provider == "openai":
            return await self._edit_openai(images, prompt)
        elif self.provider == "mock":
            return await self._edit_mock(images, prompt)
        else:
            raise ValueError(f"Unknown image provider: {self.provider}")

    async def _edit_openai(self, images: list[FetchedImage], prompt: str) -> Optional[str]:
        """Call the OpenAI image edit endpoint"""
        if not settings.image_api_key:
            raise ImageError(
                "OpenAI API key is not configured. Set the IMAGE_API_KEY environment variable."
            )

        files = [
            ("image[]", (f"image{position}.{image.extension}", image.data, image.mime_type))
            for position, image in enumerate(images, start=1)
        ]
        try:
            async with httpx.AsyncClient(timeout=settings.image_timeout) as client:
                response = await client.post(
                    OPENAI_IMAGE_EDIT_URL,
                    headers={"Authorization": f"Bearer {settings.image_api_key}"},
                    data={
                        "model": settings.image_model,
                        "prompt": prompt,
                        "n": "1",
                        "size": settings.image_size,
                    },
                    files=files,
                )
        except httpx.HTTPError as e:
            raise ImageError(f"OpenAI image request failed: {e}") from e

        if response.status_code != 200:
            logger.error("OpenAI image API error", status=response.status_code, body=response.text)
            raise ImageError(f"OpenAI image API error: {response.status_code}")

        result = response.json()
        data = result.get("data") or []
        if not data:
            return None

        revised = data[0].get("revised_prompt")
        if revised and revised != prompt:
            logger.warning("OpenAI revised the illustration prompt", revised_prompt=revised)
        return data[0].get("b64_json")

    async def _edit_mock(self, images: list[FetchedImage], prompt: str) -> Optional[str]:
        """Mock image edit for testing: echoes the content image"""
        await asyncio.sleep(0.05)  # Simulate API delay
        if not images:
            return None
        return base64.b64encode(images[0].data).decode("ascii")
