"""YAML loading and schema validation for experiment definitions."""

from __future__ import annotations

from typing import Any, Dict, List

import yaml

from src.experimentation.models import TestType, WinnerMetric

VALID_TEST_TYPES = {t.value for t in TestType}
VALID_METRICS = {m.value for m in WinnerMetric}


class YamlValidationError(ValueError):
    """YAML schema validation error."""


def load_yaml(path: str) -> Dict[str, Any]:
    """Load YAML file and return data."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise YamlValidationError("YAMLのルートはオブジェクトである必要があります")
    return data


def validate_test_definition(data: Dict[str, Any]) -> None:
    """Validate experiment definition YAML data.

    配分合計や信頼水準の範囲などの業務ルールは LifecycleManager が検証する。
    ここでは型と列挙値のみを確認する。

    例:
        name: 見積もり提示方法テスト
        type: pricing_presentation
        primary_metric: approval_rate
        confidence_level: 0.95
        variants:
          - name: 一括表示
            traffic_allocation: 50
            is_control: true
          - name: 内訳表示
            traffic_allocation: 50
            content:
              layout: itemized
    """
    _require_fields(data, ["name", "variants"])

    if not isinstance(data["name"], str) or not data["name"]:
        raise YamlValidationError("name は文字列で指定してください")

    test_type = data.get("type")
    if test_type is not None and test_type not in VALID_TEST_TYPES:
        raise YamlValidationError(
            f"type は {'/'.join(sorted(VALID_TEST_TYPES))} のいずれかです"
        )

    primary_metric = data.get("primary_metric")
    if primary_metric is not None and primary_metric not in VALID_METRICS:
        raise YamlValidationError(
            f"primary_metric は {'/'.join(sorted(VALID_METRICS))} のいずれかです"
        )

    secondary = data.get("secondary_metrics")
    if secondary is not None:
        if not isinstance(secondary, list):
            raise YamlValidationError("secondary_metrics は配列で指定してください")
        for metric in secondary:
            if metric not in VALID_METRICS:
                raise YamlValidationError(f"secondary_metrics に不明な指標があります: {metric}")

    confidence = data.get("confidence_level")
    if confidence is not None and not _is_number(confidence):
        raise YamlValidationError("confidence_level は数値で指定してください")

    min_sample_size = data.get("min_sample_size")
    if min_sample_size is not None and (
        not isinstance(min_sample_size, int) or isinstance(min_sample_size, bool)
    ):
        raise YamlValidationError("min_sample_size は整数で指定してください")

    auto_select = data.get("auto_select_winner")
    if auto_select is not None and not isinstance(auto_select, bool):
        raise YamlValidationError("auto_select_winner は true/false で指定してください")

    variants = data["variants"]
    if not isinstance(variants, list) or not variants:
        raise YamlValidationError("variants は配列で指定してください")

    for variant in variants:
        if not isinstance(variant, dict):
            raise YamlValidationError("variants の要素はオブジェクトで指定してください")
        _require_fields(variant, ["name", "traffic_allocation"], prefix="variants")
        if not isinstance(variant["name"], str) or not variant["name"]:
            raise YamlValidationError("variant.name は文字列で指定してください")
        if not _is_number(variant["traffic_allocation"]):
            raise YamlValidationError("variant.traffic_allocation は数値で指定してください")
        content = variant.get("content")
        if content is not None and not isinstance(content, dict):
            raise YamlValidationError("variant.content はオブジェクトで指定してください")
        is_control = variant.get("is_control")
        if is_control is not None and not isinstance(is_control, bool):
            raise YamlValidationError("variant.is_control は true/false で指定してください")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_fields(data: Dict[str, Any], fields: List[str], prefix: str | None = None) -> None:
    missing = [field for field in fields if field not in data]
    if missing:
        label = f"{prefix}." if prefix else ""
        raise YamlValidationError(f"必須フィールドが不足しています: {', '.join(label + f for f in missing)}")
