import pytest

from src.cli.utils.yaml_loader import (
    YamlValidationError,
    load_yaml,
    validate_test_definition,
)


def valid_definition(**overrides):
    data = {
        "name": "見積もり提示方法テスト",
        "type": "pricing_presentation",
        "primary_metric": "approval_rate",
        "variants": [
            {"name": "一括表示", "traffic_allocation": 50, "is_control": True},
            {"name": "内訳表示", "traffic_allocation": 50.0, "content": {"layout": "itemized"}},
        ],
    }
    data.update(overrides)
    return data


def test_load_yaml(tmp_path):
    path = tmp_path / "test.yaml"
    path.write_text("name: テスト\nvariants: []\n", encoding="utf-8")

    assert load_yaml(str(path)) == {"name": "テスト", "variants": []}


def test_load_yaml_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    assert load_yaml(str(path)) == {}


def test_load_yaml_rejects_non_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(YamlValidationError):
        load_yaml(str(path))


def test_valid_definition():
    validate_test_definition(valid_definition())
    validate_test_definition(
        valid_definition(
            secondary_metrics=["revenue", "click_rate"],
            confidence_level=0.9,
            min_sample_size=200,
            auto_select_winner=False,
        )
    )


def test_missing_fields():
    with pytest.raises(YamlValidationError) as exc_info:
        validate_test_definition({"type": "custom"})

    assert "name" in str(exc_info.value)
    assert "variants" in str(exc_info.value)


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": ""},
        {"type": "unknown"},
        {"primary_metric": "bounce_rate"},
        {"secondary_metrics": "revenue"},
        {"secondary_metrics": ["revenue", "bounce_rate"]},
        {"confidence_level": "high"},
        {"min_sample_size": 100.5},
        {"min_sample_size": True},
        {"auto_select_winner": "yes"},
        {"variants": []},
        {"variants": ["A", "B"]},
        {"variants": [{"name": "A"}]},
        {"variants": [{"name": "A", "traffic_allocation": "50"}]},
        {"variants": [{"name": "A", "traffic_allocation": True}]},
        {"variants": [{"name": "A", "traffic_allocation": 50, "content": "x"}]},
        {"variants": [{"name": "A", "traffic_allocation": 50, "is_control": 1}]},
    ],
)
def test_invalid_definitions(overrides):
    with pytest.raises(YamlValidationError):
        validate_test_definition(valid_definition(**overrides))
