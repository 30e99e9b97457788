"""
LLM Service for elder-friendly visit summaries
"""
import json
import time
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

import httpx
from openai import APIError, AsyncOpenAI
from pydantic import ValidationError

from clinic_relay.config import Settings
from clinic_relay.core.exceptions import ConfigError, GenerationError, SchemaParseError
from clinic_relay.core.logging import audit_logger, get_logger
from clinic_relay.models.summary import SUMMARY_RESPONSE_SCHEMA, SummaryReport

logger = get_logger(__name__)


class LLMService:
    """Turns a visit transcript into a SummaryReport with schema-constrained generation."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        if not settings.generation_api_key:
            raise ConfigError("Server is missing GEMINI_API_KEY (GOOGLE_API_KEY is used as a fallback)")
        if not settings.gemini_model:
            raise ConfigError("Server is missing GEMINI_MODEL")

        # Gemini is reached through its OpenAI-compatible endpoint; retries stay off.
        self.client = AsyncOpenAI(
            api_key=settings.generation_api_key,
            base_url=settings.gemini_base_url,
            timeout=settings.llm_timeout,
            max_retries=0,
            http_client=http_client,
        )
        self.model = settings.gemini_model
        self.temperature = settings.llm_temperature
        self.max_tokens = settings.llm_max_tokens
        self.timezone = ZoneInfo(settings.summary_timezone)
        self.output_language = settings.summary_output_language
        self.default_elder_title = settings.default_elder_title

    def current_date(self, now: Optional[datetime] = None) -> str:
        """Anchor date (YYYY-MM-DD) in the configured timezone."""
        now = now or datetime.now(self.timezone)
        return now.astimezone(self.timezone).strftime("%Y-%m-%d")

    async def summarize(
        self,
        transcript: str,
        elder_title: Optional[str] = None,
        current_date: Optional[str] = None,
        request_id: str = "-",
    ) -> SummaryReport:
        """
        Summarize the transcript into the fixed report shape.

        Raises GenerationError when the service call fails and SchemaParseError
        when the returned text is not a well-formed report.
        """
        current_date = current_date or self.current_date()
        system_prompt = self._build_system_prompt(elder_title or self.default_elder_title, current_date)
        logger.info(f"Starting summary generation with model: {self.model}, anchor date: {current_date}")

        started = time.monotonic()
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": transcript},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "summary_report", "schema": SUMMARY_RESPONSE_SCHEMA},
                },
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except APIError as e:
            self._audit(request_id, started, getattr(e, "status_code", None))
            logger.error(f"Summary generation failed: {e}", exc_info=True)
            raise GenerationError(f"Summary generation failed: {e}") from e
        self._audit(request_id, started, 200)

        text = ""
        if completion.choices:
            text = completion.choices[0].message.content or ""
        return self.parse_report(text)

    def _audit(self, request_id: str, started: float, status_code: Optional[int]) -> None:
        audit_logger.log_upstream_call(
            request_id=request_id,
            service="gemini",
            operation="chat.completions",
            status_code=status_code,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            model=self.model,
        )

    @staticmethod
    def parse_report(text: str) -> SummaryReport:
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            logger.error(f"Summary output is not valid JSON: {e}")
            raise SchemaParseError(
                "The generation service did not return valid JSON; check GEMINI_MODEL and the response settings",
                raw_text=text,
            ) from e

        if not isinstance(data, dict):
            raise SchemaParseError("The generation service returned JSON that is not an object", raw_text=text)

        try:
            return SummaryReport.model_validate(data)
        except ValidationError as e:
            logger.error(f"Summary output does not match the report schema: {e}")
            raise SchemaParseError(
                "The generation service returned JSON that does not match the report schema",
                raw_text=text,
            ) from e

    def _build_system_prompt(self, elder_title: str, current_date: str) -> str:
        """Builds the instruction for the summary"""
        language = self.output_language

        prompt = f"""
# Role
You are a caring, professional and extremely patient personal health manager for the elderly.
Read the doctor-patient conversation transcript and organize it into JSON for an app display.

# Constraints
1. Language style: all output MUST be in {language}. Use very simple, plain and warm language,
   as if speaking to a 70-year-old. Avoid medical jargon in explanations.
2. Absolute honesty: extract information ONLY from the conversation. If the doctor did not mention
   an item, set it to null or leave the list empty. Do NOT invent medical advice, dates or tasks.
3. Date handling: today is {current_date}. Resolve relative follow-up dates ("next Tuesday",
   "in two weeks") against this date. If no follow-up date is mentioned, date_time and
   day_of_week MUST be null.

# Fields
1. diagnosis
   - condition: the condition named by the doctor, followed by a one-sentence plain explanation.
     If only symptoms were described, give the standard name that fits them.
   - reason: the cause the doctor mentioned, or null.
2. prohibitions: every "do not" (behaviours, drug interactions). Stress the severity
   ("Absolutely do not ...").
3. danger_signs: only situations that need the emergency room or an immediate return visit,
   not ordinary side effects.
4. diet_advice: good_to_eat and avoid_eating lists.
5. follow_up: date_time as "YYYY-MM-DD HH:MM", day_of_week, and pre-visit tasks
   (fasting, blood test, bring prescriptions).
6. audio_summary: a script read aloud to the listener. Start with "Hello {elder_title}, today the doctor said...".
   Within 100 words: the condition, the single most important instruction, and some encouragement.

Output only the JSON object with exactly these six top-level fields.
"""
        return prompt
