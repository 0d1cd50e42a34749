from __future__ import annotations

import http.client
import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Protocol

import jsonschema

from ..config import Config, get_gemini_api_key
from ..errors import AnalyzerConfigError, ErrorType
from ..models import AnalysisFailure, AnalysisOutcome, AnalysisSuccess, ErrorDetail
from ..utils import log_event

HARM_CATEGORIES = [
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
]

_SPEAKER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "speaker_name": {"type": ["string", "null"]},
        "speaker_viewpoint": {"type": ["array", "null"], "items": {"type": "string"}},
    },
    "required": ["speaker_name"],
}

ANALYSIS_RESULT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "summary_title": {"type": "string"},
        "overall_summary_sentence": {"type": "string"},
        "committee_name": {"type": ["array", "null"], "items": {"type": "string"}},
        "agenda_items": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "properties": {
                    "item_title": {"type": ["string", "null"]},
                    "core_issue": {"type": ["array", "null"], "items": {"type": "string"}},
                    "controversy": {"type": ["array", "null"], "items": {"type": "string"}},
                    "legislator_speakers": {"type": ["array", "null"], "items": _SPEAKER_SCHEMA},
                    "respondent_speakers": {"type": ["array", "null"], "items": _SPEAKER_SCHEMA},
                    "result_status_next": {
                        "type": ["array", "null"],
                        "items": {"type": "string"},
                    },
                },
                "required": ["item_title"],
            },
        },
    },
    "required": ["summary_title", "overall_summary_sentence", "committee_name", "agenda_items"],
}

_FENCED_JSON = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$")


class Analyzer(Protocol):
    def analyze(self, prompt: str) -> AnalysisOutcome: ...


class GeminiAnalyzer:
    """Calls the Gemini ``generateContent`` endpoint and maps every vendor failure
    to an ``AnalysisFailure``. Only programming errors escape ``analyze``.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str,
        temperature: float,
        max_output_tokens: int,
        timeout_seconds: float,
        safety_threshold: str,
        thinking_budget: int | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not api_key:
            raise AnalyzerConfigError("GEMINI_API_KEY is not set")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout_seconds = timeout_seconds
        self.safety_threshold = safety_threshold
        self.thinking_budget = thinking_budget
        self.logger = logger or logging.getLogger("lygazsum.llm")

    def analyze(self, prompt: str) -> AnalysisOutcome:
        log_event(
            self.logger,
            logging.INFO,
            "llm_request",
            model=self.model,
            prompt_chars=len(prompt),
        )
        try:
            response = self._post(self.build_payload(prompt))
        except urllib.error.HTTPError as exc:
            return self._failure(_http_error_detail(exc))
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                return self._failure(
                    ErrorDetail(f"Gemini API call timed out: {exc.reason}", ErrorType.TIMEOUT)
                )
            return self._failure(
                ErrorDetail(
                    f"Network error connecting to Gemini API: {exc.reason}",
                    ErrorType.NETWORK_ERROR,
                )
            )
        except TimeoutError as exc:
            return self._failure(
                ErrorDetail(f"Gemini API call timed out: {exc}", ErrorType.TIMEOUT)
            )
        except (ConnectionError, http.client.HTTPException) as exc:
            return self._failure(
                ErrorDetail(
                    f"Network error connecting to Gemini API: {exc}", ErrorType.NETWORK_ERROR
                )
            )
        except json.JSONDecodeError as exc:
            return self._failure(
                ErrorDetail(
                    f"Gemini API returned a non-JSON envelope: {exc}",
                    ErrorType.MALFORMED_RESPONSE,
                    raw_output=exc.doc[:2000],
                )
            )
        return self.interpret_response(response)

    def build_payload(self, prompt: str) -> dict[str, Any]:
        generation_config: dict[str, Any] = {
            "temperature": self.temperature,
            "maxOutputTokens": self.max_output_tokens,
            "responseMimeType": "application/json",
            "responseJsonSchema": ANALYSIS_RESULT_SCHEMA,
        }
        if self.thinking_budget is not None:
            generation_config["thinkingConfig"] = {"thinkingBudget": self.thinking_budget}
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
            "safetySettings": [
                {"category": category, "threshold": self.safety_threshold}
                for category in HARM_CATEGORIES
            ],
        }

    def interpret_response(self, response: dict[str, Any]) -> AnalysisOutcome:
        if not isinstance(response, dict):
            return self._failure(
                ErrorDetail(
                    "Gemini API returned a JSON envelope that is not an object.",
                    ErrorType.MALFORMED_RESPONSE,
                    raw_output=json.dumps(response, ensure_ascii=False)[:2000],
                )
            )
        usage = response.get("usageMetadata")
        if usage:
            log_event(
                self.logger,
                logging.INFO,
                "llm_usage",
                prompt_tokens=usage.get("promptTokenCount"),
                candidate_tokens=usage.get("candidatesTokenCount"),
                total_tokens=usage.get("totalTokenCount"),
            )
        raw_envelope = json.dumps(response, ensure_ascii=False)
        candidates = response.get("candidates") or []
        if not isinstance(candidates, list) or not all(isinstance(c, dict) for c in candidates):
            candidates = []
        if not candidates:
            block_reason = (response.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                return self._failure(
                    ErrorDetail(
                        f"Prompt blocked by safety settings ({block_reason}).",
                        ErrorType.SAFETY,
                        raw_output=raw_envelope,
                    )
                )
            return self._failure(
                ErrorDetail(
                    "Gemini API response structure incomplete or missing candidate content.",
                    ErrorType.MALFORMED_RESPONSE,
                    raw_output=raw_envelope,
                )
            )

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        log_event(self.logger, logging.INFO, "llm_finish", finish_reason=finish_reason or "N/A")
        parts = (candidate.get("content") or {}).get("parts") or []
        if finish_reason == "SAFETY":
            return self._failure(
                ErrorDetail(
                    "AI output terminated by safety settings (SAFETY). Ratings: "
                    + json.dumps(candidate.get("safetyRatings") or [], ensure_ascii=False),
                    ErrorType.SAFETY,
                    raw_output=_first_text(parts),
                )
            )
        if not parts:
            return self._failure(
                ErrorDetail(
                    "Gemini API response structure incomplete or missing candidate content.",
                    ErrorType.MALFORMED_RESPONSE,
                    raw_output=raw_envelope,
                )
            )
        text = _first_text(parts)
        if text is None:
            return self._failure(
                ErrorDetail(
                    "Gemini response part lacks valid text content for JSON parsing.",
                    ErrorType.EMPTY_RESPONSE,
                    raw_output=raw_envelope,
                )
            )
        if finish_reason == "MAX_TOKENS":
            return self._failure(
                ErrorDetail(
                    "AI output truncated (MAX_TOKENS). Candidate tokens: "
                    f"{(usage or {}).get('candidatesTokenCount', 'N/A')}",
                    ErrorType.MAX_TOKENS,
                    raw_output=text,
                )
            )
        if finish_reason == "OTHER":
            return self._failure(
                ErrorDetail(
                    "AI output terminated (OTHER reason). May indicate response schema incompatibility.",
                    ErrorType.SCHEMA_ERROR,
                    raw_output=text,
                )
            )
        if finish_reason not in (None, "STOP"):
            log_event(
                self.logger,
                logging.WARNING,
                "llm_unusual_finish",
                finish_reason=finish_reason,
            )

        try:
            parsed = json.loads(strip_code_fences(text))
        except json.JSONDecodeError as exc:
            return self._failure(
                ErrorDetail(
                    f"Failed to parse API response as JSON: {exc}",
                    ErrorType.JSON_PARSE_ERROR,
                    raw_output=text,
                )
            )
        try:
            jsonschema.validate(parsed, ANALYSIS_RESULT_SCHEMA)
        except jsonschema.ValidationError as exc:
            return self._failure(
                ErrorDetail(
                    f"Parsed JSON from AI failed schema validation: {exc.message}",
                    ErrorType.SCHEMA_ERROR,
                    raw_output=text,
                )
            )
        log_event(self.logger, logging.INFO, "llm_analysis_ok", model=self.model)
        return AnalysisSuccess(result=parsed)

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        model = urllib.parse.quote(self.model)
        query = urllib.parse.urlencode({"key": self.api_key})
        url = f"{self.base_url}/models/{model}:generateContent?{query}"
        request = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
            raw = response.read().decode("utf-8", errors="replace")
        return json.loads(raw)

    def _failure(self, detail: ErrorDetail) -> AnalysisFailure:
        log_event(
            self.logger,
            logging.WARNING,
            "llm_analysis_failed",
            model=self.model,
            error_type=detail.kind.value,
            error=detail.message[:500],
        )
        return AnalysisFailure(error=detail)


def build_analyzer(
    config: Config, *, api_key: str | None = None, logger: logging.Logger | None = None
) -> GeminiAnalyzer:
    llm = config.llm
    if llm.provider != "google":
        raise AnalyzerConfigError(f"unsupported llm provider: {llm.provider}")
    return GeminiAnalyzer(
        api_key=api_key or get_gemini_api_key() or "",
        model=llm.model,
        base_url=llm.base_url,
        temperature=llm.temperature,
        max_output_tokens=llm.max_output_tokens,
        timeout_seconds=llm.timeout_seconds,
        safety_threshold=llm.safety_threshold,
        thinking_budget=llm.thinking_budget,
        logger=logger,
    )


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCED_JSON.match(stripped)
    if match:
        return match.group(1).strip()
    if stripped.startswith("```json"):
        stripped = stripped[len("```json") :]
    elif stripped.startswith("```"):
        stripped = stripped[3:]
    if stripped.endswith("```"):
        stripped = stripped[:-3]
    return stripped.strip()


def _first_text(parts: list[Any]) -> str | None:
    if not parts or not isinstance(parts[0], dict):
        return None
    text = parts[0].get("text")
    return text if isinstance(text, str) else None


def _http_error_detail(exc: urllib.error.HTTPError) -> ErrorDetail:
    try:
        body = exc.read().decode("utf-8", errors="ignore")
    except (OSError, ValueError):
        body = "(Could not read error body)"
    message = f"Gemini API HTTP error {exc.code}: {exc.reason}. Details: {body[:500]}"
    if exc.code in (401, 403) or "API key not valid" in body:
        return ErrorDetail(f"Invalid Gemini API key: {message}", ErrorType.AUTH_ERROR)
    if exc.code == 429:
        return ErrorDetail(f"Gemini API quota/rate limit issue: {message}", ErrorType.QUOTA_EXCEEDED)
    return ErrorDetail(message, ErrorType.HTTP_ERROR)
