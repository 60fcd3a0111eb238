"""Generate example JSON instances from a JSON Schema.

Used to pre-fill forms (GraphQL variables, tool arguments) with realistic
values. The request is a single non-streaming completion in JSON mode.
"""

from __future__ import annotations

import json
import logging
import random
from typing import Any, Mapping

from jsonschema import SchemaError
from jsonschema.exceptions import best_match
from jsonschema.validators import validator_for

from .client import ChatClient

__all__ = ["generate_instance_from_json_schema", "parse_json_reply", "JSON_GENERATOR_PROMPT"]

LOGGER = logging.getLogger(__name__)

JSON_GENERATOR_PROMPT = " \n".join(
    [
        "You are a strict JSON generator.",
        "Given a JSON Schema, return ONLY a JSON instance that strictly conforms to it.",
        "Output must be valid JSON with no comments, no code fences, and no trailing text.",
        "Prefer realistic values. Keep arrays short (1-2 items).",
    ]
)


def parse_json_reply(text: str) -> Any:
    """Parse ``text`` as JSON, falling back to the outermost ``{...}`` slice.

    Raises:
        ValueError: No JSON object could be recovered.
    """

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end > start:
            try:
                return json.loads(text[start : end + 1])
            except json.JSONDecodeError as exc:
                raise ValueError("Model did not return valid JSON") from exc
        raise ValueError("Model did not return valid JSON") from None


async def generate_instance_from_json_schema(
    client: ChatClient,
    schema: str | Mapping[str, Any],
    *,
    temperature: float = 0.2,
    validate: bool = True,
) -> Any:
    """Ask the model for one JSON value that conforms to ``schema``.

    Raises:
        ConfigError: No API key configured.
        TransportError: The request failed.
        ValueError: The reply contained no parseable JSON.
    """

    client.ensure_configured()
    schema_text = schema if isinstance(schema, str) else json.dumps(schema, indent=2)
    user = "\n\n".join(
        [
            "Produce a single JSON object that validates against this JSON Schema. "
            "Avoid generic placeholder values; use realistic ones so results vary between runs.",
            f"Helpful seed: {random.random()}",
            "If fields are optional, you may omit them unless they provide clarity.",
            "JSON Schema:",
            "<json_schema>",
            schema_text,
            "</json_schema>",
        ]
    )
    messages = [
        {"role": "system", "content": JSON_GENERATOR_PROMPT},
        {"role": "user", "content": user},
    ]
    result = await client.complete(
        messages,
        temperature=temperature,
        response_format={"type": "json_object"},
    )
    instance = parse_json_reply(result.content or "")
    if validate:
        _report_schema_mismatch(schema, instance)
    return instance


def _report_schema_mismatch(schema: str | Mapping[str, Any], instance: Any) -> None:
    try:
        schema_obj = json.loads(schema) if isinstance(schema, str) else dict(schema)
    except json.JSONDecodeError:
        LOGGER.debug("Schema is not JSON; skipping validation of generated instance")
        return
    if not isinstance(schema_obj, dict):
        return
    try:
        validator_cls = validator_for(schema_obj)
        validator_cls.check_schema(schema_obj)
    except SchemaError as exc:
        LOGGER.debug("Schema is invalid; skipping validation: %s", exc.message)
        return
    error = best_match(validator_cls(schema_obj).iter_errors(instance))
    if error is not None:
        LOGGER.warning("Generated instance does not match the schema: %s", error.message)
