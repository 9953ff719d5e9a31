"""OpenAI tag generation for drawing guides.

Tags are requested as a comma-separated list and split here; filtering
and deduplication belong to the tag aggregation pipeline.
"""

from typing import Any

import openai

from anirum_api.config import settings
from anirum_api.logging_config import get_logger

logger = get_logger(__name__)

IMAGE_TAG_PROMPT = (
    "You are an assistant for a drawing tutorial platform. Analyze an image "
    "from a tutorial and return 5 to 10 lowercase English tags that clearly "
    "describe what is being drawn or demonstrated. Tags should represent "
    "objects (e.g. 'hands', 'head'), concepts (e.g. 'perspective', 'volume'), "
    "or techniques (e.g. 'shading', 'construction'). Do not include vague or "
    "generic terms like 'art', 'drawing', 'illustration', or words about how "
    "the tutorial is presented, such as 'step-by-step', 'guide', or "
    "'diagram'. Reply with only a comma-separated list of useful tags."
)

TEXT_TAG_PROMPT = (
    "You are an assistant for a drawing tutorial platform. Analyze the title "
    "and description of a tutorial and return 5 to 10 lowercase English tags "
    "that clearly describe what is being taught or demonstrated.\n\n"
    "Tags should represent:\n"
    "- Objects (e.g. 'hands', 'head', 'eyes', 'face', 'body')\n"
    "- Concepts (e.g. 'perspective', 'volume', 'anatomy', 'proportions')\n"
    "- Techniques (e.g. 'shading', 'construction', 'sketching', 'blending')\n"
    "- Art styles (e.g. 'realistic', 'cartoon', 'anime', 'portrait')\n\n"
    "Do not include vague or generic terms like 'art', 'drawing', "
    "'illustration', 'tutorial', 'guide', 'learn', 'how-to'.\n\n"
    "Reply with only a comma-separated list of useful tags."
)


class TaggingError(Exception):
    """A tag source could not produce tags."""


def split_tag_list(content: str | None) -> list[str]:
    """Split a comma-separated model reply into raw tag strings."""
    if not content:
        return []
    return [part for part in content.split(",") if part.strip()]


class OpenAITagger:
    """Generates guide tags with OpenAI chat completions.

    Args:
        api_key: OpenAI API key (defaults to settings)
        image_model: Vision-capable model used for image tags
        text_model: Model used for title/description tags
    """

    def __init__(
        self,
        api_key: str | None = None,
        image_model: str | None = None,
        text_model: str | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.image_model = image_model or settings.openai_image_tag_model
        self.text_model = text_model or settings.openai_text_tag_model

    def _client(self) -> openai.AsyncOpenAI:
        if not self.api_key:
            raise TaggingError("OpenAI API key is not configured")
        return openai.AsyncOpenAI(api_key=self.api_key)

    async def _complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int,
        purpose: str,
    ) -> str:
        client = self._client()
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                max_completion_tokens=max_tokens,
            )
        except openai.AuthenticationError as e:
            logger.error("OpenAI API authentication failed during tagging", purpose=purpose)
            raise TaggingError("OpenAI authentication failed") from e
        except openai.RateLimitError as e:
            logger.warning("OpenAI API rate limited during tagging", purpose=purpose)
            raise TaggingError("OpenAI rate limit reached") from e
        except openai.APIConnectionError as e:
            logger.error(
                "OpenAI API connection error during tagging",
                purpose=purpose,
                error=str(e),
            )
            raise TaggingError("OpenAI API unreachable") from e
        except openai.OpenAIError as e:
            logger.error("OpenAI API error during tagging", purpose=purpose, error=str(e))
            raise TaggingError(str(e)) from e

        choice = response.choices[0] if response.choices else None
        content = (choice.message.content or "") if choice else ""
        if response.usage:
            logger.debug(
                "OpenAI tagging usage",
                purpose=purpose,
                input_tokens=response.usage.prompt_tokens,
                output_tokens=response.usage.completion_tokens or 0,
            )
        return content.strip()

    async def tags_from_image(self, image_url: str) -> list[str]:
        """Ask the vision model to describe what a tutorial image teaches."""
        content = await self._complete(
            self.image_model,
            [
                {"role": "system", "content": IMAGE_TAG_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Generate tags for this image:"},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                },
            ],
            max_tokens=200,
            purpose="image",
        )
        return split_tag_list(content)

    async def tags_from_text(self, title: str, body: str | None = None) -> list[str]:
        """Tags for a tutorial title and optional description."""
        if not (title or "").strip() and not (body or "").strip():
            return []

        prompt = f"Generate tags for this tutorial:\nTitle: {title}"
        if body:
            prompt += f"\nDescription: {body}"

        content = await self._complete(
            self.text_model,
            [
                {"role": "system", "content": TEXT_TAG_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=100,
            purpose="text",
        )
        return split_tag_list(content)
