from __future__ import annotations

import json
import logging

import requests

from xrecon.models import Post

from .base import Tagger, TaggingError

logger = logging.getLogger(__name__)

TAG_TAXONOMY = (
    "solana-validator",
    "solana-defi",
    "solana-ecosystem",
    "ethereum",
    "bitcoin",
    "venture-capital",
    "macro-analysis",
    "market-making",
    "onchain-lending",
    "defi-general",
    "mev",
    "infrastructure",
    "regulation",
    "stablecoins",
    "nft",
    "ai-crypto",
    "trading",
    "security",
    "other",
)

_TAG_SET = set(TAG_TAXONOMY)
_SUMMARY_CHARS = 280


class GrokTagger(Tagger):
    def __init__(
        self,
        api_key: str,
        *,
        model: str = "grok-3-mini",
        batch_size: int = 20,
        endpoint: str = "https://api.x.ai/v1/chat/completions",
        timeout_seconds: int = 60,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.batch_size = batch_size
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds

    def classify(self, posts: list[Post]) -> dict[str, list[str]]:
        results: dict[str, list[str]] = {}
        for index in range(0, len(posts), self.batch_size):
            chunk = posts[index : index + self.batch_size]
            try:
                results.update(self._classify_batch(chunk))
            except (TaggingError, requests.RequestException) as exc:
                logger.warning("Tagging batch of %d posts failed, skipping: %s", len(chunk), exc)
        return results

    def _classify_batch(self, posts: list[Post]) -> dict[str, list[str]]:
        response = requests.post(
            self.endpoint,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "messages": [{"role": "user", "content": build_prompt(posts)}],
                "response_format": {"type": "json_object"},
                "temperature": 0,
            },
            timeout=self.timeout_seconds,
        )
        if response.status_code >= 400:
            raise TaggingError(f"Tagging API returned {response.status_code}: {response.text}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise TaggingError("Tagging API response missing message content") from exc
        if not content:
            return {}

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise TaggingError("Tagging API returned invalid JSON") from exc
        if not isinstance(parsed, dict):
            raise TaggingError("Tagging API returned a non-object payload")

        tags_by_id: dict[str, list[str]] = {}
        for post_id, tags in parsed.items():
            if not isinstance(tags, list):
                continue
            valid = [tag for tag in tags if tag in _TAG_SET]
            if valid:
                tags_by_id[str(post_id)] = valid
        return tags_by_id


def build_prompt(posts: list[Post]) -> str:
    lines = []
    for post in posts:
        text = (post.note_tweet_text or post.text)[:_SUMMARY_CHARS]
        lines.append(f"- ID: {post.id} | @{post.author.handle}: {text}")

    return (
        "Classify each post into 1-3 tags from this taxonomy:\n"
        f"{', '.join(TAG_TAXONOMY)}\n\n"
        "Posts:\n"
        f"{chr(10).join(lines)}\n\n"
        "Return a JSON object mapping each post ID to an array of tags. Example:\n"
        '{"1234": ["solana-validator", "infrastructure"], "5678": ["trading"]}\n\n'
        "Only use tags from the taxonomy above. Return ONLY the JSON object, no other text."
    )
