"""
AI price suggestion client.

Asks an OpenAI chat model for a realistic resale price per room night. The
answer is an untrusted default for the actual price: any change a user makes
to it must go through the override ledger.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from openai import OpenAI

from ..core.errors import PriceSuggestionError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a hotel revenue analyst. Estimate a realistic resale price in EUR "
    "per room night. Respond with JSON only, using the keys suggested_price, "
    "confidence_percentage, reasoning and based_on_similar_hotels."
)


@dataclass(frozen=True)
class PriceSuggestion:
    """Suggested resale price returned by the AI service."""
    suggested_price: Decimal
    confidence_percentage: Decimal
    reasoning: str
    based_on_similar_hotels: int


class PriceSuggestionClient:
    """OpenAI-backed price suggestion service.

    Failures are loud: a malformed answer raises instead of silently
    producing a price that would feed into an approval decision.
    """

    def __init__(self, model: str = "gpt-4o-mini", client: Optional[OpenAI] = None):
        """Initialize the suggestion client.

        Args:
            model: OpenAI model name (required)
            client: Optional preconfigured OpenAI client

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.client = client or OpenAI()

    def suggest_price(
        self,
        hotel_name: str,
        stars: int,
        room_count: int,
        average_price: Decimal,
    ) -> PriceSuggestion:
        """Ask the model for a resale price suggestion.

        Args:
            hotel_name: Name of the hotel
            stars: Star category
            room_count: Number of rooms
            average_price: Current market price per room night in EUR

        Returns:
            Parsed and validated PriceSuggestion

        Raises:
            ValueError: If hotel_name is empty
            PriceSuggestionError: If the response is missing or malformed
            OpenAI API errors: Propagated without modification
        """
        if not hotel_name or not hotel_name.strip():
            raise ValueError("hotel_name is required and cannot be empty")

        prompt = (
            f"Hotel: {hotel_name}\n"
            f"Stars: {stars}\n"
            f"Rooms: {room_count}\n"
            f"Current average market price: {average_price} EUR"
        )
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
        )

        if not response.choices:
            raise PriceSuggestionError("Price suggestion response has no choices")
        content = response.choices[0].message.content
        suggestion = parse_suggestion(content)
        logger.info(
            "Suggested price for %s: %s EUR (%s%% confidence)",
            hotel_name, suggestion.suggested_price, suggestion.confidence_percentage,
        )
        return suggestion


def parse_suggestion(content: Optional[str]) -> PriceSuggestion:
    """Parse the model's JSON answer into a PriceSuggestion.

    Tolerates a markdown code fence around the JSON.

    Raises:
        PriceSuggestionError: If the content is not valid suggestion JSON
    """
    if not content or not content.strip():
        raise PriceSuggestionError("Price suggestion response is empty")

    cleaned = content.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.startswith("json"):
            cleaned = cleaned[len("json"):]
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise PriceSuggestionError(f"Price suggestion is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PriceSuggestionError("Price suggestion must be a JSON object")

    try:
        price = Decimal(str(data["suggested_price"]))
        confidence = Decimal(str(data.get("confidence_percentage", 0)))
        similar = int(data.get("based_on_similar_hotels", 0))
    except KeyError:
        raise PriceSuggestionError("Price suggestion is missing suggested_price")
    except (InvalidOperation, TypeError, ValueError) as e:
        raise PriceSuggestionError(f"Price suggestion has invalid numbers: {e}") from e

    if not price.is_finite() or price <= 0:
        raise PriceSuggestionError(f"Suggested price must be positive, got {price}")
    if not confidence.is_finite() or not 0 <= confidence <= 100:
        raise PriceSuggestionError(f"Confidence must be between 0 and 100, got {confidence}")

    return PriceSuggestion(
        suggested_price=price.quantize(Decimal("0.01")),
        confidence_percentage=confidence,
        reasoning=str(data.get("reasoning", "")),
        based_on_similar_hotels=max(similar, 0),
    )
