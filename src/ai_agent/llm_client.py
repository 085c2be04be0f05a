"""
LLM client for the Voice Scheduling Assistant
"""
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from openai import OpenAI, OpenAIError

from config.settings import Config

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """The language model could not be reached or refused the request"""


class LLMResponseError(LLMError):
    """The language model answered, but not with a usable JSON object"""


class LLMClient:
    """OpenAI-compatible chat client that turns transcripts into raw intent JSON"""

    def __init__(self, model_name: str = None, client: OpenAI = None):
        self.config = Config()
        self.model_config = self.config.get_model_config(model_name)
        self.model_name = self.model_config["model"]

        self.client = client or OpenAI(
            api_key=self.model_config["api_key"] or "NULL",
            base_url=self.model_config["base_url"],
            timeout=self.config.LLM_TIMEOUT,
            max_retries=self.config.LLM_MAX_RETRIES
        )

        self.max_tokens = self.model_config["max_tokens"]
        self.temperature = self.model_config["temperature"]
        self.top_p = self.model_config["top_p"]

        self._total_requests = 0

        logger.info(f"Initialized LLM client: {self.model_name} @ {self.model_config['base_url']}")

    def parse_transcript(self, transcript: str, now: datetime, timezone: str,
                         pending_fields: List[str] = None, strict: bool = False) -> Dict[str, Any]:
        """Ask the model for the raw intent JSON of one transcript.

        With ``pending_fields`` the transcript is treated as an answer to a
        follow-up question. ``strict`` appends the repair instructions used
        after an unusable first answer.
        """
        pending_instructions = ""
        if pending_fields:
            pending_instructions = self.config.CLARIFICATION_INSTRUCTIONS.format(fields=", ".join(pending_fields))

        prompt = self.config.EXTRACTION_PROMPT.format(
            pending_instructions=pending_instructions,
            current_time=now.strftime("%A %Y-%m-%d %H:%M"),
            timezone=timezone,
            transcript=transcript[:1000]
        )
        if strict:
            prompt += self.config.STRICT_EXTRACTION_SUFFIX

        response = self._make_completion_request(prompt, temperature=0.0 if strict else None)

        parsed = self._extract_json_from_response(response)
        if parsed is None:
            raise LLMResponseError(f"No JSON object in model response: {response[:200]!r}")

        logger.info(f"LLM parsed transcript: {parsed}")
        return parsed

    def _make_completion_request(self, prompt: str, temperature: float = None) -> str:
        """Single chat completion request"""
        temperature = temperature if temperature is not None else self.temperature
        self._total_requests += 1

        try:
            start_time = time.time()
            completion = self.client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {"role": "system", "content": "You convert spoken scheduling requests into JSON."},
                    {"role": "user", "content": prompt}
                ],
                max_tokens=self.max_tokens,
                temperature=temperature,
                top_p=self.top_p,
                response_format={"type": "json_object"}
            )
            logger.info(f"LLM response in {time.time() - start_time:.2f}s")
        except OpenAIError as e:
            logger.error(f"❌ LLM request failed: {e}")
            raise LLMError(str(e)) from e

        if not completion.choices:
            raise LLMResponseError("Model returned no choices")

        content = completion.choices[0].message.content
        if not content:
            raise LLMResponseError("Model returned an empty message")
        return content.strip()

    def _extract_json_from_response(self, response: str) -> Optional[Dict[str, Any]]:
        """Extract JSON from a model response with multiple strategies"""
        response = self._strip_code_fences(response)
        strategies = [
            # Strategy 1: the whole response is the object
            lambda r: json.loads(r),
            # Strategy 2: look for a complete JSON object
            lambda r: self._extract_json_by_braces(r),
            # Strategy 3: look for JSON after "JSON:" marker
            lambda r: self._extract_json_after_marker(r, "JSON:"),
            # Strategy 4: look for JSON in last lines
            lambda r: self._extract_json_from_end(r),
        ]

        for strategy in strategies:
            try:
                result = strategy(response)
                if isinstance(result, dict):
                    return result
            except (json.JSONDecodeError, ValueError) as e:
                logger.debug(f"JSON extraction strategy failed: {e}")
                continue

        return None

    @staticmethod
    def _strip_code_fences(response: str) -> str:
        text = response.strip()
        if text.startswith("```"):
            text = text.split("\n", 1)[1] if "\n" in text else ""
            if text.rstrip().endswith("```"):
                text = text.rstrip()[:-3]
        return text.strip()

    def _extract_json_by_braces(self, response: str) -> Optional[Dict[str, Any]]:
        """Extract JSON by finding balanced braces"""
        start = response.find('{')
        if start == -1:
            return None

        brace_count = 0
        in_string = False
        escaped = False
        for i, char in enumerate(response[start:], start):
            if in_string:
                if escaped:
                    escaped = False
                elif char == '\\':
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == '{':
                brace_count += 1
            elif char == '}':
                brace_count -= 1
                if brace_count == 0:
                    return json.loads(response[start:i + 1])
        return None

    def _extract_json_after_marker(self, response: str, marker: str) -> Optional[Dict[str, Any]]:
        """Extract JSON after a specific marker"""
        marker_pos = response.find(marker)
        if marker_pos != -1:
            json_part = response[marker_pos + len(marker):].strip()
            return self._extract_json_by_braces(json_part)
        return None

    def _extract_json_from_end(self, response: str) -> Optional[Dict[str, Any]]:
        """Extract JSON from the end of response"""
        lines = response.strip().split('\n')
        for line in reversed(lines):
            line = line.strip()
            if line.startswith('{') and line.endswith('}'):
                try:
                    return json.loads(line)
                except json.JSONDecodeError:
                    continue
        return None
