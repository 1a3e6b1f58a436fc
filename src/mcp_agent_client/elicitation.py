from __future__ import annotations

import re
import time
from collections.abc import Mapping
from typing import Any, Literal, TypeAlias
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field

from .protocol import make_response

#: User answer to an elicitation request. Unknown values are treated as
#: ``cancel``.
ElicitationAction: TypeAlias = Literal["accept", "decline", "cancel"]

#: ``form`` asks for structured input described by a JSON schema; ``url``
#: sends the user to an out-of-band page. Unknown values are treated as
#: ``form``.
ElicitationMode: TypeAlias = Literal["form", "url"]

FormFieldType: TypeAlias = Literal[
    "text",
    "number",
    "integer",
    "boolean",
    "single_select",
    "multi_select",
]

_EMAIL_PATTERN = re.compile(r"^[\w\-.]+@([\w-]+\.)+[\w-]{2,4}$")


def parse_action(value: Any) -> ElicitationAction:
    if value in ("accept", "decline", "cancel"):
        return value
    return "cancel"


def parse_mode(value: Any) -> ElicitationMode:
    if value == "url":
        return "url"
    return "form"


class ElicitationRequest(BaseModel):
    """An `elicitation/create` request received from a server.

    Attributes:
        id: JSON-RPC request id, kept as a string.
        mode: `form` or `url`.
        message: Human-readable prompt for the user.
        elicitation_id: Server-side id of a URL elicitation.
        url: Target page of a URL elicitation.
        requested_schema: JSON schema of a form elicitation.
    """

    id: str
    mode: ElicitationMode = "form"
    message: str = ""
    elicitation_id: str | None = None
    url: str | None = None
    requested_schema: dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ElicitationRequest:
        """Parse a full JSON-RPC request envelope."""
        params = payload.get("params")
        return cls.from_params(str(payload.get("id")), params if isinstance(params, Mapping) else {})

    @classmethod
    def from_params(cls, request_id: str, params: Mapping[str, Any]) -> ElicitationRequest:
        message = params.get("message")
        elicitation_id = params.get("elicitationId")
        url = params.get("url")
        schema = params.get("requestedSchema")
        return cls(
            id=request_id,
            mode=parse_mode(params.get("mode")),
            message=message if isinstance(message, str) else "",
            elicitation_id=elicitation_id if isinstance(elicitation_id, str) else None,
            url=url if isinstance(url, str) else None,
            requested_schema=dict(schema) if isinstance(schema, Mapping) else None,
        )

    @property
    def form(self) -> ElicitationForm:
        return ElicitationForm.from_schema(self.requested_schema or {})

    def to_result(
        self,
        action: ElicitationAction,
        content: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Build the `{action, content?}` result returned to the server."""
        result: dict[str, Any] = {"action": action}
        if content:
            result["content"] = dict(content)
        return result

    def to_response(
        self,
        action: ElicitationAction,
        content: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        return make_response(self.id, self.to_result(action, content))


def url_elicitations_from_error(data: Any) -> list[ElicitationRequest]:
    """Parse the `data.elicitations` list of a URL-elicitation-required error."""
    if not isinstance(data, Mapping):
        return []
    raw = data.get("elicitations")
    if not isinstance(raw, list):
        return []
    stamp = int(time.time() * 1000)
    return [
        ElicitationRequest.from_params(f"error-{stamp}-{index}", item)
        for index, item in enumerate(raw)
        if isinstance(item, Mapping)
    ]


class FormField(BaseModel):
    """One input field of a form elicitation, parsed from its JSON schema."""

    name: str
    type: FormFieldType
    schema_: dict[str, Any] = Field(default_factory=dict, alias="schema")
    title: str | None = None
    description: str | None = None
    required: bool = False
    default: Any = None
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    format: str | None = None
    minimum: float | None = None
    maximum: float | None = None
    enum_values: list[str] | None = None
    enum_titles: dict[str, str] | None = None
    min_items: int | None = None
    max_items: int | None = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def label(self) -> str:
        return self.title or self.name

    @classmethod
    def from_schema(
        cls,
        name: str,
        schema: Mapping[str, Any],
        *,
        required: bool = False,
    ) -> FormField:
        field_type = _field_type(schema)
        enum_values: list[str] | None = None
        enum_titles: dict[str, str] | None = None

        if isinstance(schema.get("enum"), list):
            enum_values = [_option(item) for item in schema["enum"]]
        elif isinstance(schema.get("oneOf"), list):
            enum_values, enum_titles = _const_options(schema["oneOf"])
        elif field_type == "multi_select":
            items = schema.get("items")
            if isinstance(items, Mapping):
                if isinstance(items.get("enum"), list):
                    enum_values = [_option(item) for item in items["enum"]]
                elif isinstance(items.get("anyOf"), list):
                    enum_values, enum_titles = _const_options(items["anyOf"])

        return cls(
            name=name,
            type=field_type,
            schema=dict(schema),
            title=_str_or_none(schema.get("title")),
            description=_str_or_none(schema.get("description")),
            required=required,
            default=schema.get("default"),
            min_length=_int_or_none(schema.get("minLength")),
            max_length=_int_or_none(schema.get("maxLength")),
            pattern=_str_or_none(schema.get("pattern")),
            format=_str_or_none(schema.get("format")),
            minimum=_number_or_none(schema.get("minimum")),
            maximum=_number_or_none(schema.get("maximum")),
            enum_values=enum_values,
            enum_titles=enum_titles,
            min_items=_int_or_none(schema.get("minItems")),
            max_items=_int_or_none(schema.get("maxItems")),
        )

    def validate_value(self, value: Any) -> str | None:
        """Return an error message for `value`, or None when it is acceptable."""
        if value is None or value == "":
            return "This field is required" if self.required else None

        if self.type == "text":
            return self._validate_text(value)
        if self.type in ("number", "integer"):
            return self._validate_number(value)
        if self.type == "boolean":
            return None if isinstance(value, bool) else "Must be true or false"
        if self.type == "single_select":
            if self.enum_values is not None and _option(value) not in self.enum_values:
                return f"Must be one of: {', '.join(self.enum_values)}"
            return None
        return self._validate_multi_select(value)

    def _validate_text(self, value: Any) -> str | None:
        if not isinstance(value, str):
            return "Must be a string"
        if self.min_length is not None and len(value) < self.min_length:
            return f"Minimum length is {self.min_length}"
        if self.max_length is not None and len(value) > self.max_length:
            return f"Maximum length is {self.max_length}"
        if self.pattern is not None and re.search(self.pattern, value) is None:
            return "Does not match required pattern"
        if self.format == "email" and _EMAIL_PATTERN.match(value) is None:
            return "Must be a valid email address"
        if self.format == "uri":
            try:
                parts = urlsplit(value)
            except ValueError:
                return "Must be a valid URI"
            if not parts.scheme:
                return "Must be a valid URI"
        return None

    def _validate_number(self, value: Any) -> str | None:
        number = _parse_number(value)
        if number is None:
            return f"Must be a {self.type}"
        if self.type == "integer" and number != int(number):
            return "Must be an integer"
        if self.minimum is not None and number < self.minimum:
            return f"Minimum value is {_format_number(self.minimum)}"
        if self.maximum is not None and number > self.maximum:
            return f"Maximum value is {_format_number(self.maximum)}"
        return None

    def _validate_multi_select(self, value: Any) -> str | None:
        if not isinstance(value, list):
            return "Must be a list"
        if self.min_items is not None and len(value) < self.min_items:
            return f"Must select at least {self.min_items} items"
        if self.max_items is not None and len(value) > self.max_items:
            return f"Must select at most {self.max_items} items"
        if self.enum_values is not None:
            for item in value:
                if _option(item) not in self.enum_values:
                    return f"Invalid option: {item}"
        return None


class ElicitationForm(BaseModel):
    """Form described by an elicitation's `requestedSchema`."""

    fields: list[FormField] = Field(default_factory=list)

    @classmethod
    def from_schema(cls, schema: Mapping[str, Any]) -> ElicitationForm:
        properties = schema.get("properties")
        required = schema.get("required")
        required_names = {str(item) for item in required} if isinstance(required, list) else set()
        fields: list[FormField] = []
        if isinstance(properties, Mapping):
            for name, field_schema in properties.items():
                if isinstance(field_schema, Mapping):
                    fields.append(
                        FormField.from_schema(
                            str(name),
                            field_schema,
                            required=name in required_names,
                        )
                    )
        return cls(fields=fields)

    def validate_all(self, values: Mapping[str, Any]) -> dict[str, str]:
        """Validate every field; returns `{field_name: error}` for failures."""
        errors: dict[str, str] = {}
        for field in self.fields:
            error = field.validate_value(values.get(field.name))
            if error is not None:
                errors[field.name] = error
        return errors

    def defaults(self) -> dict[str, Any]:
        return {field.name: field.default for field in self.fields if field.default is not None}


def _field_type(schema: Mapping[str, Any]) -> FormFieldType:
    schema_type = schema.get("type")
    if schema_type == "boolean":
        return "boolean"
    if schema_type == "number":
        return "number"
    if schema_type == "integer":
        return "integer"
    if schema_type == "array":
        return "multi_select"
    if "enum" in schema or "oneOf" in schema:
        return "single_select"
    return "text"


def _const_options(options: list[Any]) -> tuple[list[str], dict[str, str]]:
    values: list[str] = []
    titles: dict[str, str] = {}
    for option in options:
        if not isinstance(option, Mapping) or "const" not in option:
            continue
        value = _option(option["const"])
        values.append(value)
        title = option.get("title")
        if isinstance(title, str):
            titles[value] = title
    return values, titles


def _option(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None


def _format_number(value: float) -> str:
    return str(int(value)) if value == int(value) else str(value)


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, int) else None


def _number_or_none(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)
