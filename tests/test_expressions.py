from converge import expressions
from converge.models.change import UNKNOWN
from converge.models.resource import Reference


def _resolver(values):
    def resolve(tok):
        return values.get(tok.text, expressions.KEEP)
    return resolve


class TestReferences:
    def test_nested_values(self):
        value = {
            "a": "${aws_lb.web.arn}",
            "b": ["x", "${aws_security_group.web.id}"],
            "c": {"d": "prefix-${aws_lb.web.dns_name}"},
        }
        assert expressions.references(value) == [
            Reference("aws_lb.web", "arn"),
            Reference("aws_security_group.web", "id"),
            Reference("aws_lb.web", "dns_name"),
        ]

    def test_variables_and_literals_are_not_references(self):
        assert expressions.references("${var.env}-web") == []
        assert expressions.references("aws_lb.web.arn") == []
        assert expressions.references("$${aws_lb.web.arn}") == []

    def test_function_call_arguments(self):
        refs = expressions.references('${join(",", aws_lb.web.subnets)}')
        assert refs == [Reference("aws_lb.web", "subnets")]

    def test_strip_interpolation(self):
        assert expressions.strip_interpolation("${aws_lb.web}") == "aws_lb.web"
        assert expressions.strip_interpolation("aws_lb.web") == "aws_lb.web"


class TestSubstitute:
    def test_whole_string_keeps_type(self):
        assert expressions.substitute("${var.port}", _resolver({"var.port": 8080})) == 8080

    def test_interpolated_string(self):
        resolve = _resolver({"var.env": "dev", "var.on": True})
        assert expressions.substitute("web-${var.env}-${var.on}", resolve) == "web-dev-true"

    def test_unknown_makes_whole_value_unknown(self):
        resolve = _resolver({"aws_lb.web.arn": UNKNOWN})
        assert expressions.substitute(["${aws_lb.web.arn}", "x"], resolve) is UNKNOWN

    def test_kept_traversal_left_in_place(self):
        assert expressions.substitute("${aws_lb.web.arn}", _resolver({})) == "${aws_lb.web.arn}"

    def test_non_strings_untouched(self):
        assert expressions.substitute({"n": 2, "b": False}, _resolver({})) == {"n": 2, "b": False}
