"""Document classification through an external language-model provider."""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import anthropic
import openai

from .config import Config
from .models import ClassificationResult, ConfidenceLevel, DocumentType, clamp_score

logger = logging.getLogger(__name__)


class AIClient(ABC):
    """Abstract base class for AI providers."""

    model: str = ""

    @abstractmethod
    def complete_json(self, system_prompt: str, user_prompt: str) -> str:
        """Run one structured-JSON completion and return the raw text."""
        pass


class OpenAIClient(AIClient):
    """OpenAI client implementation."""

    def __init__(self, config: Config):
        self.config = config
        self.model = config.classification.model
        self.client = openai.OpenAI(
            api_key=config.get_api_key(),
            timeout=config.classification.timeout_seconds,
            max_retries=config.classification.max_retries,
        )

    def _calculate_openai_cost(self, usage, model: str) -> float:
        """Calculate cost for OpenAI API call based on token usage."""
        # Pricing per 1M tokens
        pricing = {
            "gpt-4o-mini": {"input": 0.15, "output": 0.60},
            "gpt-4o": {"input": 2.50, "output": 10.00},
            "gpt-4-turbo-preview": {"input": 10.00, "output": 30.00},
        }

        model_key = model.lower()
        if model_key not in pricing:
            model_key = "gpt-4o-mini"

        input_cost = (usage.prompt_tokens / 1_000_000) * pricing[model_key]["input"]
        output_cost = (usage.completion_tokens / 1_000_000) * pricing[model_key]["output"]

        return input_cost + output_cost

    def complete_json(self, system_prompt: str, user_prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
            temperature=self.config.classification.temperature,
            max_tokens=500,
        )

        if getattr(response, "usage", None):
            cost = self._calculate_openai_cost(response.usage, self.model)
            logger.info(f"OpenAI API call - Input: {response.usage.prompt_tokens} tokens, "
                        f"Output: {response.usage.completion_tokens} tokens, Cost: ${cost:.4f}")

        return response.choices[0].message.content


class AnthropicClient(AIClient):
    """Anthropic client implementation."""

    def __init__(self, config: Config):
        self.config = config
        self.model = config.classification.model
        self.client = anthropic.Anthropic(
            api_key=config.get_api_key(),
            timeout=config.classification.timeout_seconds,
            max_retries=config.classification.max_retries,
        )

    def _calculate_anthropic_cost(self, usage, model: str) -> float:
        """Calculate cost for Anthropic API call based on token usage."""
        # Pricing per 1M tokens
        pricing = {
            "claude-3-5-sonnet-20241022": {"input": 3.00, "output": 15.00},
            "claude-3-haiku-20240307": {"input": 0.25, "output": 1.25},
        }

        model_key = model.lower()
        if model_key not in pricing:
            model_key = "claude-3-haiku-20240307"

        input_cost = (usage.input_tokens / 1_000_000) * pricing[model_key]["input"]
        output_cost = (usage.output_tokens / 1_000_000) * pricing[model_key]["output"]

        return input_cost + output_cost

    def complete_json(self, system_prompt: str, user_prompt: str) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=500,
            temperature=self.config.classification.temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )

        if getattr(response, "usage", None):
            cost = self._calculate_anthropic_cost(response.usage, self.model)
            logger.info(f"Anthropic API call - Input: {response.usage.input_tokens} tokens, "
                        f"Output: {response.usage.output_tokens} tokens, Cost: ${cost:.4f}")

        return response.content[0].text


def create_ai_client(config: Config) -> AIClient:
    """Factory function to create appropriate AI client."""
    provider = config.classification.provider.lower()
    if provider == "openai":
        return OpenAIClient(config)
    elif provider == "anthropic":
        return AnthropicClient(config)
    else:
        raise ValueError(f"Unsupported AI provider: {config.classification.provider}")


def get_classification_prompt() -> str:
    """Get the system prompt fixing the six-category taxonomy."""
    return """
You are a payment document classifier for an apartment maintenance payment system.
Analyze the provided OCR text extracted from a payment screenshot and classify it into ONE of these categories:

1. "UPI confirmation" - Screenshots from UPI apps (PhonePe, Google Pay, Paytm, BHIM, etc.)
2. "bank transfer confirmation" - Online banking screenshots (NEFT, RTGS, IMPS)
3. "cheque image" - Photos of physical cheques
4. "cash receipt" - Receipts for cash payments
5. "non-payment document" - Invoices, bills, random images, or unrelated documents
6. "unclear" - Blurry, incomplete, or unreadable text

Return your analysis as a JSON object with this exact structure:
{
    "document_type": "one of the 6 categories above",
    "confidence_score": 0-100,
    "confidence_level": "High (80-100) | Medium (50-79) | Low (0-49)",
    "payment_method": "UPI | NEFT | RTGS | IMPS | Cheque | Cash or null",
    "app_or_bank_name": "string or null",
    "key_identifiers": {"utr": "...", "transaction_id": "..."},
    "classification_reasoning": "brief explanation"
}

Be conservative with confidence scores. Only use High confidence when you are very certain.
"""


# Label spellings seen from providers, mapped onto the taxonomy.
DOCUMENT_TYPE_ALIASES = {
    "upi": DocumentType.UPI_CONFIRMATION,
    "upi confirmation": DocumentType.UPI_CONFIRMATION,
    "upi payment confirmation": DocumentType.UPI_CONFIRMATION,
    "valid upi payment receipt": DocumentType.UPI_CONFIRMATION,
    "bank transfer": DocumentType.BANK_TRANSFER_CONFIRMATION,
    "bank transfer confirmation": DocumentType.BANK_TRANSFER_CONFIRMATION,
    "valid bank transfer receipt": DocumentType.BANK_TRANSFER_CONFIRMATION,
    "cheque": DocumentType.CHEQUE_IMAGE,
    "cheque image": DocumentType.CHEQUE_IMAGE,
    "check image": DocumentType.CHEQUE_IMAGE,
    "cash receipt": DocumentType.CASH_RECEIPT,
    "non-payment": DocumentType.NON_PAYMENT_DOCUMENT,
    "non-payment document": DocumentType.NON_PAYMENT_DOCUMENT,
    "non payment document": DocumentType.NON_PAYMENT_DOCUMENT,
    "unclear": DocumentType.UNCLEAR,
    "unclear or insufficient data": DocumentType.UNCLEAR,
}


def normalize_document_type(label: Optional[str]) -> DocumentType:
    if not label:
        return DocumentType.UNCLEAR
    key = label.strip().strip('"').lower()
    if key in DOCUMENT_TYPE_ALIASES:
        return DOCUMENT_TYPE_ALIASES[key]
    logger.warning(f"Unknown document type label from classifier: {label!r}")
    return DocumentType.UNCLEAR


def parse_ai_response(response: str) -> dict:
    """Parse and validate AI response JSON."""
    if not response:
        raise ValueError("Empty response from AI")
    try:
        # Extract JSON from response (handles cases where AI adds extra text)
        response = response.strip()
        if '```json' in response:
            start = response.find('```json') + 7
            end = response.find('```', start)
            response = response[start:end].strip()
        elif '```' in response:
            start = response.find('```') + 3
            end = response.find('```', start)
            response = response[start:end].strip()

        # Find JSON object boundaries
        if not response.startswith('{'):
            start = response.find('{')
            if start != -1:
                response = response[start:]

        if not response.endswith('}'):
            end = response.rfind('}')
            if end != -1:
                response = response[:end + 1]

        parsed = json.loads(response)

    except json.JSONDecodeError as e:
        logger.debug(f"Raw response: {response[:500]}...")
        raise ValueError(f"Invalid JSON response from AI: {e}")

    if not isinstance(parsed, dict):
        raise ValueError("AI response is not a JSON object")
    return parsed


def build_classification(parsed: dict, model: Optional[str], elapsed_ms: int) -> ClassificationResult:
    """Map the provider's JSON object onto a ClassificationResult."""
    try:
        score = clamp_score(parsed.get("confidence_score") or 0)
    except (TypeError, ValueError):
        raise ValueError(f"Non-numeric confidence_score: {parsed.get('confidence_score')!r}")

    identifiers = parsed.get("key_identifiers") or {}
    if not isinstance(identifiers, dict):
        identifiers = {"raw": identifiers}

    # Level always follows the score; a provider-supplied level is advisory only.
    return ClassificationResult(
        document_type=normalize_document_type(parsed.get("document_type")),
        confidence_score=score,
        confidence_level=ConfidenceLevel.from_score(score),
        reasoning=parsed.get("classification_reasoning") or "Unable to determine",
        payment_method=parsed.get("payment_method") or None,
        app_or_bank_name=parsed.get("app_or_bank_name") or None,
        key_identifiers=identifiers,
        model_used=model,
        processing_time_ms=elapsed_ms,
    )


class ClassificationClient:
    """Result-returning adapter around an AIClient.

    ``classify`` never raises: network errors, malformed output and missing
    credentials all produce ``ClassificationResult.fallback``. No retries.
    """

    def __init__(self, config: Config, ai_client: Optional[AIClient] = None):
        self.config = config
        self._ai_client = ai_client

    def _client(self) -> AIClient:
        if self._ai_client is None:
            self._ai_client = create_ai_client(self.config)
        return self._ai_client

    def classify(self, ocr_text: str) -> ClassificationResult:
        if not ocr_text or not ocr_text.strip():
            return ClassificationResult.fallback("no OCR text to classify")

        start = time.monotonic()
        try:
            client = self._client()
        except OSError as e:
            logger.warning(f"Classification skipped, missing credentials: {e}")
            return ClassificationResult.fallback(f"missing credentials ({e})")
        except ValueError as e:
            logger.warning(f"Classification skipped: {e}")
            return ClassificationResult.fallback(str(e))

        try:
            raw = client.complete_json(
                get_classification_prompt(), f"OCR Text to classify:\n\n{ocr_text}"
            )
            parsed = parse_ai_response(raw)
            elapsed = int((time.monotonic() - start) * 1000)
            result = build_classification(parsed, client.model, elapsed)
        except ValueError as e:
            logger.warning(f"Malformed classification response: {e}")
            return ClassificationResult.fallback(f"malformed response ({e})")
        except (openai.OpenAIError, anthropic.AnthropicError) as e:
            logger.warning(f"Classification provider error: {e}")
            return ClassificationResult.fallback(f"provider error ({e.__class__.__name__}: {e})")
        except Exception as e:
            logger.error(f"Unexpected classification failure: {e}")
            return ClassificationResult.fallback(f"unexpected error ({e.__class__.__name__}: {e})")

        logger.info(f"Classified as {result.document_type.value} "
                    f"({result.confidence_score:.0f}, {result.confidence_level.value})")
        return result
