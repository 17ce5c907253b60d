from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..config import Settings, load_settings
from ..errors import ConfigurationError, MalformedResponseError, NetworkOrServerError
from ..models import UserProfile

logger = logging.getLogger(__name__)


class AIService:
    """Abstraction around the Gemini API used as a plain text generator.

    Unlike a best-effort helper, every failure is classified and raised so the
    caller can decide between retrying and falling back:

    * no API key or client: :class:`ConfigurationError`
    * HTTP / transport failure: :class:`NetworkOrServerError`
    * empty answer: :class:`MalformedResponseError`
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[Any] = None) -> None:
        settings = settings or load_settings()
        self._text_model_id = settings.text_model_id
        self._api_key: Optional[str] = settings.gemini_api_key
        self.client: Optional[Any] = client

        if self.client is None:
            self.client = self._configure_gemini(self._api_key)

        if self._api_key:
            logger.info(
                "Gemini API key detected (len=%d, prefix=%s****)",
                len(self._api_key),
                self._api_key[:4],
            )
        elif client is None:
            logger.info('Gemini API key not found in environment; using fallback analysis.')

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    def generate_text(self, system_prompt: str, user_prompt: str, require_json: bool = False) -> str:
        """Send one system + user prompt pair and return the raw answer text."""

        if self.client is None:
            raise ConfigurationError('Gemini is not configured (missing API key).')

        config_kwargs: Dict[str, Any] = {'system_instruction': system_prompt}
        if require_json:
            config_kwargs['response_mime_type'] = 'application/json'

        try:
            response = self.client.models.generate_content(
                model=self._text_model_id,
                contents=[user_prompt],
                config=types.GenerateContentConfig(**config_kwargs),
            )
        except genai_errors.APIError as exc:
            logger.warning('Gemini request failed with status %s: %s', exc.code, exc)
            raise NetworkOrServerError('Gemini request failed.', status_code=exc.code) from exc
        except Exception as exc:
            logger.warning('Gemini request failed: %s', exc)
            raise NetworkOrServerError(f'Gemini request failed: {exc}') from exc

        text = self._extract_text(response)
        if not text:
            raise MalformedResponseError('Gemini returned an empty response.')
        return text

    def request_roadmap(self, profile: UserProfile) -> Dict[str, Any]:
        """Ask the model for a roadmap outline and return the decoded JSON."""

        raw = self.generate_text(
            self._roadmap_system_prompt(),
            self._build_roadmap_prompt(profile),
            require_json=True,
        )
        return self.parse_json_object(raw)

    def parse_json_object(self, raw: str) -> Dict[str, Any]:
        """Decode a JSON object, tolerating Markdown fences and chatter around it."""

        cleaned = self._strip_code_fences(raw or '')
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            parsed = self._extract_json_fragment(cleaned)

        if not isinstance(parsed, dict):
            raise MalformedResponseError('Expected a JSON object from the model.')
        return parsed

    def _configure_gemini(self, api_key: Optional[str]) -> Optional[Any]:
        if not api_key:
            return None
        try:
            return genai.Client(api_key=api_key)
        except Exception as exc:  # pragma: no cover - external SDK
            logger.warning('Gemini integration disabled: %s', exc)
            return None

    @staticmethod
    def _extract_text(response: Any) -> str:
        if not response:
            return ''

        text = getattr(response, 'text', None)
        if text:
            return text.strip()

        candidates = getattr(response, 'candidates', None) or []
        for candidate in candidates:
            content = getattr(candidate, 'content', None)
            parts = getattr(content, 'parts', None) if content else None
            if not parts:
                continue
            assembled = ' '.join(getattr(part, 'text', '') for part in parts if getattr(part, 'text', ''))
            if assembled.strip():
                return assembled.strip()

        return ''

    def _roadmap_system_prompt(self) -> str:
        return (
            "You are a running coach for complete beginners. Build a gentle, realistic roadmap "
            "of 3 to 5 milestones towards the user's goal. Each milestone must state a concrete, "
            "measurable condition (a distance, a duration or a weekly frequency) in its description. "
            "Return only valid JSON (no Markdown formatting)."
        )

    def _build_roadmap_prompt(self, profile: UserProfile) -> str:
        today = datetime.now(timezone.utc).strftime('%B %d, %Y')
        age = f"{profile.age} years" if profile.age else 'unknown'
        available = (
            f"{profile.available_minutes_per_week} minutes per week"
            if profile.available_minutes_per_week
            else 'unknown'
        )
        current = f"{profile.current_frequency} runs per week" if profile.current_frequency else 'none'

        schema = (
            '{\n'
            '  "title": "roadmap title",\n'
            '  "milestones": [\n'
            '    {\n'
            '      "title": "milestone title",\n'
            '      "description": "concrete, measurable target",\n'
            '      "days_from_now": 7\n'
            '    }\n'
            '  ]\n'
            '}'
        )

        return (
            f"Today's date: {today}.\n"
            f"Goal: {profile.goal.label}.\n"
            f"Age: {age}.\n"
            f"Available time: {available}.\n"
            f"Current running frequency: {current}.\n"
            f"Ideal running frequency: {profile.ideal_frequency} runs per week.\n"
            "Respond with JSON following this schema:\n"
            f"{schema}"
        )

    def _extract_json_fragment(self, text: str) -> Optional[Dict[str, Any]]:
        start = text.find('{')
        end = text.rfind('}')
        if start == -1 or end == -1 or end <= start:
            return None
        fragment = text[start : end + 1]
        try:
            parsed = json.loads(fragment)
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            return None

    def _strip_code_fences(self, raw: str) -> str:
        cleaned = raw.strip()
        if cleaned.startswith('```') and cleaned.endswith('```'):
            lines = [line for line in cleaned.splitlines() if not line.strip().startswith('```')]
            return '\n'.join(lines).strip()
        return cleaned
