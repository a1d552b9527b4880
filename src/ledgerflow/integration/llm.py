import asyncio
import json
import os
from typing import Any

from openai import OpenAI
from pydantic import BaseModel, ValidationError

from ledgerflow.core import settings
from ledgerflow.errors import ServiceUnavailableError
from ledgerflow.logger import get_logger
from ledgerflow.models import Category, Transaction

logger = get_logger(__name__)

INSTRUCTIONS = "You are a careful personal finance assistant. Reply with JSON only."


class LlmSuggestion(BaseModel):
    transaction_id: int
    category_id: int
    confidence: float
    reasoning: str | None = None


class BankCategorySuggestion(BaseModel):
    bank_category: str
    action: str  # "MAP" or "CREATE_NEW"
    category_id: int | None = None
    suggested_name: str | None = None
    confidence: float = 0.0
    reasoning: str | None = None


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
        if cleaned.endswith("```"):
            cleaned = cleaned[:-3]
    return cleaned.strip()


def extract_output_text(response: object) -> str | None:
    output_text = getattr(response, "output_text", None)
    if output_text:
        return output_text

    parts: list[str] = []
    for item in getattr(response, "output", None) or []:
        for block in getattr(item, "content", None) or []:
            if getattr(block, "type", None) in {"output_text", "text"}:
                text = getattr(block, "text", None)
                if text:
                    parts.append(text)
    return "".join(parts) or None


def _category_lines(categories: list[Category]) -> str:
    return "\n".join(f"- id={c.id}: {c.name} ({c.type})" for c in categories)


class LlmProvider:
    """Hosted-LLM categorization through the OpenAI responses API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        client: OpenAI | None = None,
    ) -> None:
        self.model = model or os.getenv("OPENAI_MODEL") or settings.DEFAULT_OPENAI_MODEL
        self.client = client or OpenAI(
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            base_url=base_url or os.getenv("OPENAI_BASE_URL") or None,
        )

    def _complete(self, prompt: str) -> Any:
        try:
            response = self.client.responses.create(
                model=self.model,
                instructions=INSTRUCTIONS,
                input=prompt,
                temperature=0.0,
            )
        except Exception as e:
            logger.error(f"[LLM] Request failed: {e}")
            raise ServiceUnavailableError("LLM provider request failed") from e

        text = extract_output_text(response)
        if not text:
            raise ServiceUnavailableError("LLM provider returned an empty response")
        try:
            return json.loads(strip_code_fences(text))
        except json.JSONDecodeError as e:
            logger.error(f"[LLM] Unparseable response: {text[:200]}")
            raise ServiceUnavailableError("LLM provider returned invalid JSON") from e

    async def categorize_transactions(
        self,
        transactions: list[Transaction],
        categories: list[Category],
    ) -> list[LlmSuggestion]:
        if not transactions or not categories:
            return []

        lines = "\n".join(
            f"- id={t.id}: '{t.display_description}' amount={t.amount} date={t.transaction_date}"
            for t in transactions
        )
        prompt = f"""
        Categorize each transaction into one of the user's categories.

        Categories:
        {_category_lines(categories)}

        Transactions:
        {lines}

        Return a JSON array with one object per transaction you can categorize:
        [{{"transactionId": <id>, "categoryId": <id>, "confidence": <0..1>, "reasoning": "<short>"}}]
        Omit transactions that fit no category.
        """

        payload = await asyncio.to_thread(self._complete, prompt)
        if isinstance(payload, dict):
            payload = payload.get("results") or payload.get("categorizations") or []

        suggestions: list[LlmSuggestion] = []
        for entry in payload if isinstance(payload, list) else []:
            if not isinstance(entry, dict):
                continue
            try:
                suggestions.append(LlmSuggestion(
                    transaction_id=entry.get("transactionId"),
                    category_id=entry.get("categoryId"),
                    confidence=entry.get("confidence", 0.0),
                    reasoning=entry.get("reasoning"),
                ))
            except ValidationError:
                logger.debug(f"[LLM] Skipping malformed suggestion: {entry}")
        return suggestions

    async def map_bank_categories(
        self,
        bank_categories: list[str],
        categories: list[Category],
    ) -> list[BankCategorySuggestion]:
        if not bank_categories:
            return []

        names = "\n".join(f"- {name}" for name in bank_categories)
        prompt = f"""
        Map each bank-provided category to the closest user category.

        User categories:
        {_category_lines(categories)}

        Bank categories:
        {names}

        Return JSON: {{"mappings": [{{"bankCategory": "<name>", "action": "MAP" or "CREATE_NEW",
        "mappedCategoryId": <id or null>, "suggestedName": "<name or null>",
        "confidence": <0..1>, "reasoning": "<short>"}}]}}
        """

        payload = await asyncio.to_thread(self._complete, prompt)
        entries = payload.get("mappings", []) if isinstance(payload, dict) else payload

        suggestions: list[BankCategorySuggestion] = []
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict) or not entry.get("bankCategory"):
                continue
            try:
                suggestions.append(BankCategorySuggestion(
                    bank_category=entry["bankCategory"],
                    action=str(entry.get("action") or "MAP").upper(),
                    category_id=entry.get("mappedCategoryId"),
                    suggested_name=entry.get("suggestedName"),
                    confidence=entry.get("confidence") or 0.0,
                    reasoning=entry.get("reasoning"),
                ))
            except ValidationError:
                logger.debug(f"[LLM] Skipping malformed mapping: {entry}")
        return suggestions
