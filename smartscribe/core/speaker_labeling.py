"""
Speaker labeling through an OpenAI-compatible chat completion API.

Labeling is an enhancement. Any provider failure, or a reply that does not
carry the original words in order, returns the raw transcript unchanged. A
reply that is accepted always starts with a speaker label.
"""

import logging
import re
from typing import List, Optional

import httpx

from smartscribe.core.transcription_client import DEFAULT_BASE_URL, DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"
DEFAULT_LABEL = "Speaker 1:"

SYSTEM_PROMPT = (
    "You are a helpful assistant that labels speakers in a transcript. "
    "Given a raw transcript, identify when different people are speaking and "
    "label them as 'Speaker 1:', 'Speaker 2:', etc. Return the transcript with "
    "these labels inserted. Do not change, summarize, omit or rewrite any of the "
    "original words; only add labels and line breaks between speakers. If there "
    "is only one speaker, label the whole transcript 'Speaker 1:'."
)

_LABEL_RE = re.compile(r"^\s*Speaker\s+\d+\s*:", re.IGNORECASE)
_ANY_LABEL_RE = re.compile(r"\bSpeaker\s+\d+\s*:", re.IGNORECASE)
_WORD_RE = re.compile(r"\w+(?:'\w+)*")


def transcript_words(text: str) -> List[str]:
    """Lower-cased words of ``text`` with speaker labels and punctuation removed."""
    return [word.lower() for word in _WORD_RE.findall(_ANY_LABEL_RE.sub(" ", text))]


def preserves_words(raw: str, labeled: str) -> bool:
    """True when ``labeled`` carries exactly the words of ``raw``, in order."""
    return transcript_words(raw) == transcript_words(labeled)


def ensure_label(text: str) -> str:
    """Prefix ``Speaker 1:`` unless the text already opens with a label."""
    stripped = text.strip()
    if _LABEL_RE.match(stripped):
        return stripped
    return f"{DEFAULT_LABEL} {stripped}" if stripped else DEFAULT_LABEL


class SpeakerLabeler:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport

    async def label_speakers(self, text: str) -> str:
        """Return ``text`` with speaker labels, or the raw text if labeling failed."""
        if not text or not text.strip():
            return text
        if not self.api_key:
            logger.warning("Labeling provider not configured, keeping raw transcript")
            return text

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f"Please label the speakers in this transcript:\n\n{text}",
                },
            ],
            "temperature": 0,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=payload,
                )
            if response.status_code != 200:
                logger.error(
                    f"Labeling API error: {response.status_code} - {response.text[:200]}"
                )
                return text
            labeled = response.json()["choices"][0]["message"]["content"]
        except Exception as e:
            logger.error(f"Speaker labeling failed, keeping raw transcript: {e}")
            return text

        if not isinstance(labeled, str) or not labeled.strip():
            return text
        if not preserves_words(text, labeled):
            logger.warning("Labeled transcript does not match the original words, keeping raw transcript")
            return text
        return ensure_label(labeled)


_labeler: Optional[SpeakerLabeler] = None


def get_speaker_labeler() -> SpeakerLabeler:
    global _labeler
    if _labeler is None:
        from smartscribe.config import get_config

        cfg = get_config()
        _labeler = SpeakerLabeler(
            api_key=cfg.get("providers", "api_key"),
            base_url=cfg.get("providers", "base_url", default=DEFAULT_BASE_URL),
            model=cfg.get("providers", "labeling_model", default=DEFAULT_MODEL),
            timeout=float(cfg.get("providers", "timeout_seconds", default=DEFAULT_TIMEOUT)),
        )
    return _labeler


def set_speaker_labeler(labeler: Optional[SpeakerLabeler]) -> None:
    global _labeler
    _labeler = labeler
