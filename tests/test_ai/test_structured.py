"""Тесты strict JSON-схемы и разбора structured output."""
import json

import pytest
from pydantic import ValidationError


class TestMakeStrictSchema:
    """Тесты make_strict_schema."""

    def test_all_properties_required(self) -> None:
        """required содержит все ключи, default убран."""
        from src.ai.schemas import SocialFiveEvent
        from src.ai.structured import make_strict_schema

        schema = make_strict_schema(SocialFiveEvent.model_json_schema())

        assert set(schema["required"]) == set(schema["properties"])
        assert schema["additionalProperties"] is False
        assert all("default" not in prop for prop in schema["properties"].values())

    def test_nested_defs_and_ref_siblings(self) -> None:
        from src.ai.structured import make_strict_schema

        schema = make_strict_schema({
            "type": "object",
            "properties": {
                "venue": {"$ref": "#/$defs/Venue", "description": "where"},
                "tags": {"type": "array", "items": {"type": "object", "properties": {"name": {"type": "string"}}}},
            },
            "$defs": {
                "Venue": {"type": "object", "properties": {"name": {"type": "string", "default": "TBD"}}},
            },
        })

        assert schema["properties"]["venue"] == {"$ref": "#/$defs/Venue"}
        assert schema["$defs"]["Venue"]["required"] == ["name"]
        assert "default" not in schema["$defs"]["Venue"]["properties"]["name"]
        assert schema["properties"]["tags"]["items"]["additionalProperties"] is False

    def test_does_not_mutate_input(self) -> None:
        from src.ai.structured import make_strict_schema

        original = {"type": "object", "properties": {"a": {"type": "string"}}}
        make_strict_schema(original)
        assert "required" not in original

    def test_response_format(self) -> None:
        from src.ai.schemas import SelectorProposal
        from src.ai.structured import json_schema_format

        fmt = json_schema_format("selector_healing", SelectorProposal)
        assert fmt["type"] == "json_schema"
        assert fmt["json_schema"]["strict"] is True
        assert fmt["json_schema"]["name"] == "selector_healing"


class TestCleanupJsonPayload:
    """Тесты cleanup_json_payload."""

    def test_code_fence(self) -> None:
        from src.ai.structured import cleanup_json_payload

        assert cleanup_json_payload('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_surrounding_text(self) -> None:
        from src.ai.structured import cleanup_json_payload

        assert cleanup_json_payload('Here you go: {"a": {"b": 2}} hope it helps') == '{"a": {"b": 2}}'

    @pytest.mark.parametrize("raw", ["", "   ", "no json here", "} backwards {"])
    def test_nothing_to_extract(self, raw: str) -> None:
        from src.ai.structured import cleanup_json_payload

        assert cleanup_json_payload(raw) is None


class TestParseStructured:
    """Тесты parse_structured."""

    def test_clean_json(self) -> None:
        from src.ai.schemas import SelectorProposal
        from src.ai.structured import parse_structured

        proposal = parse_structured(
            '{"event_card": ".e", "title": "h3", "date": "time", "time": null, "location": null,'
            ' "link": "a", "description": null, "image": null, "price": null,'
            ' "reasoning": "renamed class", "confidence": 0.8}',
            SelectorProposal,
        )
        assert proposal.event_card == ".e"

    def test_strips_null_bytes_and_fences(self) -> None:
        """\\u0000 из ответа модели не доходит до Postgres."""
        from src.ai.schemas import SocialFiveEvent
        from src.ai.structured import parse_structured
        from tests.conftest import EVENT_DATA

        payload = json.dumps(EVENT_DATA).replace('"Jazz Night"', '"Jazz\x00 Night"')
        event = parse_structured("```json\n" + payload + "\n```", SocialFiveEvent)
        assert event.title == "Jazz Night"

    def test_invalid_payload_raises(self) -> None:
        from src.ai.schemas import SocialFiveEvent
        from src.ai.structured import parse_structured

        with pytest.raises(ValidationError):
            parse_structured("not json at all", SocialFiveEvent)
