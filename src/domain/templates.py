from __future__ import annotations

import re
from typing import Any


_PLACEHOLDER = re.compile(r"\{\{(\d+)\}\}")
_MEDIA_FORMATS = {"IMAGE": "image", "VIDEO": "video", "DOCUMENT": "document"}


def _placeholders(text: str | None) -> list[str]:
    if not text:
        return []
    return _PLACEHOLDER.findall(text)


def _text_parameters(text: str | None, variables: dict[str, str]) -> list[dict[str, str]]:
    # Unset variables are skipped; the provider rejects the send if the count is wrong.
    return [
        {"type": "text", "text": variables[index]}
        for index in _placeholders(text)
        if variables.get(index)
    ]


def _media_parameter(media_type: str, value: str) -> dict[str, Any]:
    reference = {"link": value} if value.startswith("http") else {"id": value}
    return {"type": media_type, media_type: reference}


def build_template_components(
    schema: list[dict[str, Any]] | None,
    variables: dict[str, str] | None = None,
    *,
    header_text: str | None = None,
    header_media: str | None = None,
    button_urls: list[str] | None = None,
) -> list[dict[str, Any]]:
    """Build the Cloud API `components` array for one recipient.

    `schema` is the component list stored with the approved template
    (HEADER / BODY / FOOTER / BUTTONS). `variables` maps placeholder numbers
    ("1", "2", ...) to values. Explicit header/button overrides replace the
    values derived from the schema.
    """
    values = {str(k): str(v) for k, v in (variables or {}).items() if v is not None}
    components: list[dict[str, Any]] = []
    header_done = False
    buttons_done = False

    for component in schema or []:
        kind = str(component.get("type") or "").upper()
        if kind == "HEADER":
            fmt = str(component.get("format") or "TEXT").upper()
            if fmt in _MEDIA_FORMATS:
                media_type = _MEDIA_FORMATS[fmt]
                media_value = header_media
                if not media_value:
                    indexes = _placeholders(component.get("text"))
                    media_value = values.get(indexes[0]) if indexes else None
                if media_value:
                    components.append({"type": "header", "parameters": [_media_parameter(media_type, media_value)]})
                    header_done = True
                continue
            if header_text:
                components.append({"type": "header", "parameters": [{"type": "text", "text": header_text}]})
                header_done = True
                continue
            parameters = _text_parameters(component.get("text"), values)
            if parameters:
                components.append({"type": "header", "parameters": parameters})
                header_done = True
        elif kind == "BODY":
            parameters = _text_parameters(component.get("text"), values)
            if parameters:
                components.append({"type": "body", "parameters": parameters})
        elif kind == "BUTTONS":
            for index, button in enumerate(component.get("buttons") or []):
                if str(button.get("type") or "").upper() != "URL":
                    continue
                if button_urls is not None:
                    override = button_urls[index] if index < len(button_urls) else None
                    parameters = [{"type": "text", "text": override}] if override else []
                else:
                    parameters = _text_parameters(button.get("url"), values)
                if parameters:
                    components.append(
                        {"type": "button", "sub_type": "url", "index": str(index), "parameters": parameters}
                    )
            buttons_done = button_urls is not None

    if not header_done and (header_media or header_text):
        if header_media:
            components.insert(0, {"type": "header", "parameters": [_media_parameter("image", header_media)]})
        else:
            components.insert(0, {"type": "header", "parameters": [{"type": "text", "text": header_text}]})
    if not buttons_done and button_urls:
        for index, url_param in enumerate(button_urls):
            if url_param:
                components.append(
                    {"type": "button", "sub_type": "url", "index": str(index), "parameters": [{"type": "text", "text": url_param}]}
                )
    return components
