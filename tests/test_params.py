from __future__ import annotations

from autoflow.params import (
    as_optional_float,
    get_bool,
    get_float,
    get_int,
    get_str_list,
    get_uint,
    render_template,
    resolve_text_input,
    resolve_typed_value,
    stringify_value,
)
from autoflow.script_model import NodeKind
from fakes import make_node


def _node(**params):
    return make_node("n", NodeKind.DELAY, **params)


def test_integer_accessors_accept_integral_floats_only() -> None:
    node = _node(a=3.0, b=3.5, c=True, d=-2, e="7")
    assert get_int(node, "a", 0) == 3
    assert get_int(node, "b", 0) == 0
    assert get_int(node, "c", 0) == 0
    assert get_int(node, "d", 0) == -2
    assert get_uint(node, "d", 9) == 9
    assert get_int(node, "e", 1) == 1
    assert get_int(node, "missing", 5) == 5


def test_float_and_bool_accessors() -> None:
    node = _node(f=2, g=True, h="true")
    assert get_float(node, "f", 0.0) == 2.0
    assert get_float(node, "g", 1.5) == 1.5
    assert get_bool(node, "g", False) is True
    assert get_bool(node, "h", False) is False


def test_string_list_filters_non_strings() -> None:
    assert get_str_list(_node(m=["Ctrl", 1, "Shift"]), "m", ["Alt"]) == ["Ctrl", "Shift"]
    assert get_str_list(_node(m=[1, 2]), "m", ["Alt"]) == ["Alt"]
    assert get_str_list(_node(m="Ctrl"), "m", ["Alt"]) == ["Alt"]


def test_as_optional_float() -> None:
    assert as_optional_float("2.5") == 2.5
    assert as_optional_float(False) is None
    assert as_optional_float("two") is None
    assert as_optional_float([1]) is None


def test_stringify_value() -> None:
    assert stringify_value(None) == ""
    assert stringify_value(True) == "true"
    assert stringify_value(3.5) == "3.5"
    assert stringify_value({"a": [1, "é"]}) == '{"a":[1,"é"]}'


def test_typed_values() -> None:
    assert resolve_typed_value(_node(valueType="string", valueString="x"), "value") == "x"
    assert resolve_typed_value(_node(valueType="number", valueNumber=4), "value") == 4.0
    assert resolve_typed_value(_node(valueType="number", valueNumber=float("inf")), "value") is None
    assert resolve_typed_value(_node(valueType="boolean", valueBoolean="True"), "value") is True
    assert resolve_typed_value(_node(valueType="boolean", valueBoolean=False), "value") is False
    assert resolve_typed_value(_node(valueType="json", valueJson='{"k": 1}'), "value") == {"k": 1}
    assert resolve_typed_value(_node(valueType="json", valueJson="{oops"), "value") is None
    assert resolve_typed_value(_node(value=[1, 2]), "value") == [1, 2]


def test_render_template() -> None:
    variables = {"name": "Ada", "n": 2, "flag": False}
    assert render_template("Hi {{name}}, {{ n }} {{flag}}", variables) == "Hi Ada, 2 false"
    assert render_template("{{unknown}}!", variables) == "!"
    assert render_template("open {{name", variables) == "open {{name"
    assert render_template("{{}}x", variables) == "x"


def test_text_input_modes() -> None:
    variables = {"who": "Bob", "items": [1, 2]}
    assert resolve_text_input(_node(inputText="hi {{who}}"), variables) == "hi Bob"
    assert resolve_text_input(_node(inputText="ignored", text="from edge {{who}}"), variables) == "from edge Bob"
    assert resolve_text_input(_node(inputMode="VAR", inputVar="items"), variables) == "[1,2]"
    assert resolve_text_input(_node(inputMode="var", inputVar=" "), variables) == ""
