import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from deal_recorder.core.config import Settings
from deal_recorder.core.errors import EXTRACTION_DEGRADED
from deal_recorder.core.retry import call_with_timeout, with_retry

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You review recorded sales pipeline conversations between a rep and their manager.
Find every distinct deal discussed and answer with a single JSON object:
{"deals": [{
  "name": string,
  "account": string|null,
  "stage": string|null,
  "probability": number|null,
  "forecastCategory": string|null,
  "amount": string|null,
  "closeDate": string|null,
  "nextStep": string|null,
  "nextStepOwner": string|null,
  "nextStepDate": string|null,
  "decisionProcess": string|null,
  "competitors": string[],
  "stakeholders": string[],
  "risks": string[],
  "strengths": string[],
  "summary": string|null
}]}
Use null or an empty list for anything not said in the conversation; never guess.
Keep proper nouns exactly as spoken. Output JSON only."""


@dataclass
class ExtractionResult:
    deals: List[Dict[str, Any]] = field(default_factory=list)
    degraded: bool = False


def parse_deals(content: str) -> List[Dict[str, Any]]:
    """Pull the ``deals`` list out of a model reply; raises ValueError on bad shape."""
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("Top-level JSON is not an object")
    deals = data.get("deals", [])
    if not isinstance(deals, list):
        raise ValueError("'deals' is not a list")
    return [deal for deal in deals if isinstance(deal, dict)]


class DealExtractor:
    """
    Structured deal extraction over a transcript. Never fails the request:
    any problem (no key, timeout, bad JSON) degrades to an empty list.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client = None

    def extract(self, text: str) -> ExtractionResult:
        if not text or not text.strip():
            return ExtractionResult()
        if not self.settings.OPENAI_API_KEY:
            return self._degraded("OPENAI_API_KEY is not set")

        label = "extract"
        attempt = with_retry(
            attempts=1 + self.settings.COLLABORATOR_RETRIES,
            delay=self.settings.RETRY_DELAY_SEC,
            label=label,
            retry_on=(Exception,),
        )(call_with_timeout)
        try:
            content = attempt(self._complete, self.settings.TRANSCRIBE_TIMEOUT_SEC, label, text)
        except Exception as e:
            return self._degraded(f"model call failed: {e}")

        try:
            return ExtractionResult(deals=parse_deals(content))
        except ValueError as e:
            return self._degraded(f"model did not return usable JSON: {e}")

    def _complete(self, text: str) -> str:
        completion = self._openai_client().chat.completions.create(
            model=self.settings.TEXT_MODEL,
            temperature=0,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
        )
        return completion.choices[0].message.content or "{}"

    def _openai_client(self):
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(api_key=self.settings.OPENAI_API_KEY)
        return self._client

    @staticmethod
    def _degraded(reason: str) -> ExtractionResult:
        logger.warning("%s: %s", EXTRACTION_DEGRADED, reason)
        return ExtractionResult(deals=[], degraded=True)
