"""
Unit tests for the AI price suggestion client.

Tests OpenAI request construction and response validation.
"""

import json
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from hotel_pricing.clients.price_suggestion import (
    PriceSuggestion,
    PriceSuggestionClient,
    parse_suggestion,
)
from hotel_pricing.core.errors import PriceSuggestionError


def make_response(content):
    """Create a mock chat completion response."""
    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message.content = content
    return response


VALID_ANSWER = json.dumps({
    "suggested_price": 62.456,
    "confidence_percentage": 80,
    "reasoning": "Comparable 4-star hotels in the area",
    "based_on_similar_hotels": 12,
})


class TestPriceSuggestionClient:
    """Test the OpenAI-backed client."""

    @patch('hotel_pricing.clients.price_suggestion.OpenAI')
    def test_init_success(self, mock_openai_class):
        """Test that a default OpenAI client is created."""
        mock_openai_class.return_value = Mock()
        client = PriceSuggestionClient()

        assert client.model == "gpt-4o-mini"
        mock_openai_class.assert_called_once()

    @pytest.mark.parametrize("model", ["", "   "])
    def test_init_requires_model(self, model):
        """Test that an empty model name is rejected."""
        with pytest.raises(ValueError, match="model is required"):
            PriceSuggestionClient(model=model, client=Mock())

    def test_suggest_price(self):
        """Test a successful suggestion request."""
        openai_client = Mock()
        openai_client.chat.completions.create.return_value = make_response(VALID_ANSWER)
        client = PriceSuggestionClient(model="gpt-4o", client=openai_client)

        suggestion = client.suggest_price("Hotel Adler", 4, 120, Decimal("55"))

        assert suggestion == PriceSuggestion(
            suggested_price=Decimal("62.46"),
            confidence_percentage=Decimal("80"),
            reasoning="Comparable 4-star hotels in the area",
            based_on_similar_hotels=12,
        )
        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "Hotel Adler" in kwargs["messages"][1]["content"]

    def test_suggest_price_requires_hotel_name(self):
        """Test that an empty hotel name is rejected before any request."""
        openai_client = Mock()
        client = PriceSuggestionClient(client=openai_client)

        with pytest.raises(ValueError):
            client.suggest_price("  ", 4, 120, Decimal("55"))
        openai_client.chat.completions.create.assert_not_called()

    def test_no_choices(self):
        """Test that a response without choices is an error."""
        openai_client = Mock()
        openai_client.chat.completions.create.return_value = Mock(choices=[])
        client = PriceSuggestionClient(client=openai_client)

        with pytest.raises(PriceSuggestionError):
            client.suggest_price("Hotel Adler", 4, 120, Decimal("55"))

    def test_api_errors_propagate(self):
        """Test that OpenAI errors are not swallowed."""
        openai_client = Mock()
        openai_client.chat.completions.create.side_effect = RuntimeError("API down")
        client = PriceSuggestionClient(client=openai_client)

        with pytest.raises(RuntimeError, match="API down"):
            client.suggest_price("Hotel Adler", 4, 120, Decimal("55"))


class TestParseSuggestion:
    """Test response validation."""

    def test_code_fence_is_tolerated(self):
        """Test JSON wrapped in a markdown fence."""
        suggestion = parse_suggestion(f"```json\n{VALID_ANSWER}\n```")
        assert suggestion.suggested_price == Decimal("62.46")

    def test_optional_fields_default(self):
        """Test that only the price is required."""
        suggestion = parse_suggestion('{"suggested_price": "59.9"}')

        assert suggestion.suggested_price == Decimal("59.90")
        assert suggestion.confidence_percentage == Decimal("0")
        assert suggestion.based_on_similar_hotels == 0

    @pytest.mark.parametrize("content", [
        None,
        "",
        "not json",
        "[1, 2]",
        '{"confidence_percentage": 50}',
        '{"suggested_price": "cheap"}',
        '{"suggested_price": 0}',
        '{"suggested_price": -5}',
        '{"suggested_price": 60, "confidence_percentage": 150}',
    ])
    def test_invalid_content(self, content):
        """Test that malformed answers raise PriceSuggestionError."""
        with pytest.raises(PriceSuggestionError):
            parse_suggestion(content)
