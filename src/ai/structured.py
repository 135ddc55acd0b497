"""Structured output OpenAI: strict JSON-схема и разбор ответа модели."""
import json
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def make_strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """
    Привести Pydantic JSON-схему к формату OpenAI strict mode.

    OpenAI strict: true требует:
    - required содержит ВСЕ ключи из properties
    - additionalProperties: false на каждом объекте
    - Рекурсивно для вложенных объектов и $defs
    """
    schema = schema.copy()

    if "$defs" in schema:
        schema["$defs"] = {
            name: make_strict_schema(defn)
            for name, defn in schema["$defs"].items()
        }

    if "properties" in schema:
        schema["required"] = list(schema["properties"].keys())
        schema["additionalProperties"] = False
        schema["properties"] = {
            name: make_strict_schema(prop)
            for name, prop in schema["properties"].items()
        }

    # $ref не допускает соседних ключей (description, default) в strict mode
    if "$ref" in schema:
        return {"$ref": schema["$ref"]}

    if "items" in schema and isinstance(schema["items"], dict):
        schema["items"] = make_strict_schema(schema["items"])

    if "anyOf" in schema:
        schema["anyOf"] = [make_strict_schema(s) for s in schema["anyOf"]]

    # strict mode не принимает default
    schema.pop("default", None)
    return schema


def json_schema_format(name: str, model: type[BaseModel]) -> dict[str, Any]:
    """response_format для chat.completions."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": name,
            "strict": True,
            "schema": make_strict_schema(model.model_json_schema()),
        },
    }


def cleanup_json_payload(raw_text: str) -> str | None:
    """Извлечь JSON-объект из ответа модели (включая markdown/code fences)."""
    text = raw_text.strip()
    if not text:
        return None

    if text.startswith("```"):
        stripped = text.strip("`").strip()
        if stripped.startswith("json"):
            stripped = stripped[4:].strip()
        text = stripped

    start_idx = text.find("{")
    end_idx = text.rfind("}")
    if start_idx == -1 or end_idx == -1 or end_idx < start_idx:
        return None
    return text[start_idx:end_idx + 1]


def parse_structured(content_text: str, model: type[ModelT]) -> ModelT:
    """Распарсить structured output с fallback для слегка шумных ответов."""
    # PostgreSQL не принимает \u0000 в text/jsonb полях
    content_text = content_text.replace("\x00", "")
    try:
        return model.model_validate_json(content_text)
    except ValidationError:
        cleaned = cleanup_json_payload(content_text)
        if cleaned is None:
            raise
        return model.model_validate(json.loads(cleaned))
