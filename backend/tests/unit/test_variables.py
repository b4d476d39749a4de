# backend/tests/unit/test_variables.py
from chatflow.workflows.variables import VariableContext, stringify


def test_interpolates_both_placeholder_styles():
    ctx = VariableContext({"name": "Ana", "qty": 3})
    assert ctx.interpolate("Hola {{name}}, pediste {qty}") == "Hola Ana, pediste 3"
    assert ctx.interpolate("Hola {{ name }}") == "Hola Ana"


def test_missing_variables_render_empty():
    ctx = VariableContext({})
    assert ctx.interpolate("Total: {{total_amount}}!") == "Total: !"
    assert ctx.interpolate(None) == ""


def test_dotted_paths_reach_into_dicts_and_lists():
    ctx = VariableContext({"stock_result": {"product_name": "Leche", "stock": 3}, "items": [{"name": "Pan"}]})
    assert ctx.interpolate("{{stock_result.product_name}} ({{stock_result.stock}})") == "Leche (3)"
    assert ctx.get("items.0.name") == "Pan"
    assert ctx.get("items.5.name", "none") == "none"


def test_writes_go_to_the_underlying_mapping():
    raw = {}
    ctx = VariableContext(raw)
    ctx.set("answer", "sí")
    ctx.set("answer", "no")
    assert raw == {"answer": "no"}
    assert ctx.pop("answer") == "no"
    assert ctx.pop("answer") is None


def test_stringify_formats_numbers_and_structures():
    assert stringify(None) == ""
    assert stringify(True) == "true"
    assert stringify(1500.0) == "1500"
    assert stringify(1200.5) == "1200.5"
    assert stringify(0.1) == "0.1"
    assert stringify({"a": 1}) == '{"a":1}'
    assert stringify(["ñ"]) == '["ñ"]'
