"""Tests for condition evaluation and template resolution."""

import pytest
from pydantic import ValidationError

from taskgraph.services.execution import (
    Condition,
    evaluate_condition,
    evaluate_conditions,
    get_nested_value,
    render_template,
    resolve_config,
)

CONTEXT = {
    "lead": {"score": 75, "name": "Ada", "tags": ["vip", "beta"]},
    "status": "active",
    "count": "10",
    "flags": {"beta": True},
    "items": [{"name": "first"}, {"name": "second"}],
    "empty": None,
}


class TestNestedValue:
    def test_dotted_path(self):
        assert get_nested_value(CONTEXT, "lead.name") == "Ada"

    def test_list_index(self):
        assert get_nested_value(CONTEXT, "items.1.name") == "second"

    def test_missing_returns_default(self):
        assert get_nested_value(CONTEXT, "lead.missing") is None
        assert get_nested_value(CONTEXT, "items.9.name", "x") == "x"
        assert get_nested_value(CONTEXT, "status.deeper", "x") == "x"


class TestEvaluateCondition:
    @pytest.mark.parametrize("operator,value,expected", [
        ("equals", "active", True),
        ("equals", "inactive", False),
        ("notEquals", "inactive", True),
    ])
    def test_string_equality(self, operator, value, expected):
        condition = {"field": "status", "operator": operator, "value": value}
        assert evaluate_condition(condition, CONTEXT) is expected

    def test_numeric_comparison_coerces_strings(self):
        assert evaluate_condition({"field": "count", "operator": "greaterThan", "value": 9},
                                  CONTEXT)
        assert evaluate_condition({"field": "count", "operator": "lessThan", "value": "11"},
                                  CONTEXT)
        # Numeric, not lexical: "10" > "9" lexically is False
        assert evaluate_condition({"field": "count", "operator": "greaterThan", "value": "9"},
                                  CONTEXT)

    def test_equals_numeric_across_types(self):
        assert evaluate_condition({"field": "lead.score", "operator": "equals", "value": "75"},
                                  CONTEXT)

    def test_contains_on_list_string_and_mapping(self):
        assert evaluate_condition({"field": "lead.tags", "operator": "contains",
                                   "value": "vip"}, CONTEXT)
        assert evaluate_condition({"field": "lead.name", "operator": "contains",
                                   "value": "d"}, CONTEXT)
        assert evaluate_condition({"field": "flags", "operator": "contains",
                                   "value": "beta"}, CONTEXT)
        assert not evaluate_condition({"field": "lead.tags", "operator": "contains",
                                       "value": "gold"}, CONTEXT)

    def test_booleans_compare_as_text(self):
        assert evaluate_condition({"field": "flags.beta", "operator": "equals",
                                   "value": True}, CONTEXT)
        assert evaluate_condition({"field": "flags.beta", "operator": "equals",
                                   "value": "true"}, CONTEXT)

    def test_missing_field_compares_as_empty(self):
        assert evaluate_condition({"field": "nope", "operator": "equals", "value": ""},
                                  CONTEXT)
        assert not evaluate_condition({"field": "nope", "operator": "equals", "value": "x"},
                                      CONTEXT)

    def test_no_condition_matches(self):
        assert evaluate_condition(None, CONTEXT) is True

    def test_model_input(self):
        condition = Condition(field="lead.score", operator="lessThan", value=100)
        assert evaluate_condition(condition, CONTEXT)

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            Condition(field="status", operator="matches", value="x")


class TestEvaluateConditions:
    def test_and_or_logic(self):
        conditions = [
            {"field": "status", "operator": "equals", "value": "active"},
            {"field": "lead.score", "operator": "greaterThan", "value": 90},
        ]
        assert evaluate_conditions(conditions, CONTEXT, "and") is False
        assert evaluate_conditions(conditions, CONTEXT, "or") is True

    def test_empty_list_matches(self):
        assert evaluate_conditions([], CONTEXT) is True


class TestTemplates:
    def test_render_substitutes_paths(self):
        assert render_template("Hi {{ lead.name }} ({{lead.score}})", CONTEXT) == "Hi Ada (75)"

    def test_missing_path_renders_empty(self):
        assert render_template("[{{missing.path}}]", CONTEXT) == "[]"
        assert render_template("[{{empty}}]", CONTEXT) == "[]"

    def test_defaults_fill_missing_paths(self):
        assert render_template("{{missing}}", CONTEXT, {"missing": "n/a"}) == "n/a"

    def test_structured_values_render_as_json(self):
        assert render_template("{{flags}}", CONTEXT) == '{"beta": true}'
        assert render_template("{{flags.beta}}", CONTEXT) == "true"

    def test_resolve_config_keeps_whole_value_types(self):
        config = {
            "score": "{{lead.score}}",
            "tags": "{{ lead.tags }}",
            "label": "Lead {{lead.name}}",
            "nested": [{"name": "{{items.0.name}}"}, 3],
            "missing": "{{nope}}",
        }

        resolved = resolve_config(config, CONTEXT)

        assert resolved == {
            "score": 75,
            "tags": ["vip", "beta"],
            "label": "Lead Ada",
            "nested": [{"name": "first"}, 3],
            "missing": "",
        }
        assert config["score"] == "{{lead.score}}"
