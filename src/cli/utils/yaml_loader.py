"""YAML loading and minimal schema validation for CLI."""

from __future__ import annotations

from typing import Any, Dict, List

import yaml

VALID_STATUSES = {"draft", "running"}


class YamlValidationError(ValueError):
    """YAML schema validation error."""


def load_yaml(path: str) -> Dict[str, Any]:
    """Load YAML (or JSON) file and return data."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise YamlValidationError("YAMLのルートはオブジェクトである必要があります")
    return data


def parse_definition(text: str) -> Dict[str, Any]:
    """Parse an inline YAML/JSON experiment definition."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise YamlValidationError(f"定義を解析できません: {e}") from e
    if not isinstance(data, dict):
        raise YamlValidationError("定義はオブジェクトである必要があります")
    return data


def validate_experiment_definition(data: Dict[str, Any]) -> None:
    """Validate experiment definition data.

    配分の合計など意味的な検証はエンジン側（ExperimentRegistry）で行う。
    """
    _require_fields(data, ["id", "name", "primary_metric", "variants"])

    for key in ("id", "name", "primary_metric"):
        if not isinstance(data[key], str) or not data[key]:
            raise YamlValidationError(f"{key} は文字列で指定してください")

    variants = data["variants"]
    if not isinstance(variants, list) or not variants:
        raise YamlValidationError("variants は配列で指定してください")
    for variant in variants:
        if not isinstance(variant, dict):
            raise YamlValidationError("variants の要素はオブジェクトで指定してください")
        _require_fields(variant, ["id", "allocation"], prefix="variants")
        if not isinstance(variant["id"], str) or not variant["id"]:
            raise YamlValidationError("variant.id は文字列で指定してください")
        allocation = variant["allocation"]
        if isinstance(allocation, bool) or not isinstance(allocation, (int, float)):
            raise YamlValidationError("variant.allocation は数値で指定してください")

    secondary = data.get("secondary_metrics")
    if secondary is not None:
        if not isinstance(secondary, list) or not all(isinstance(m, str) and m for m in secondary):
            raise YamlValidationError("secondary_metrics は文字列配列で指定してください")

    status = data.get("status")
    if status is not None and status not in VALID_STATUSES:
        raise YamlValidationError("status は draft/running のいずれかです")

    sample_size = data.get("sample_size_required")
    if sample_size is not None and (isinstance(sample_size, bool) or not isinstance(sample_size, int) or sample_size <= 0):
        raise YamlValidationError("sample_size_required は正の整数で指定してください")


def _require_fields(data: Dict[str, Any], fields: List[str], prefix: str | None = None) -> None:
    missing = [field for field in fields if field not in data]
    if missing:
        label = f"{prefix}." if prefix else ""
        raise YamlValidationError(f"必須フィールドが不足しています: {', '.join(label + f for f in missing)}")
