"""
Graph builder tests — dependency extraction, ordering, variables and build-time errors.
"""
import os

import pytest

from converge.engine import graph as graph_builder
from converge.errors import CycleError, ParseError, UnresolvedReferenceError
from converge.models.resource import Configuration
from converge.parsers import terraform
from converge.parsers.terraform import from_mapping
from converge.providers import aws

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


def _mapping(resources, variables=None, outputs=None):
    data = {"resource": resources}
    if variables:
        data["variable"] = variables
    if outputs:
        data["output"] = outputs
    return data


def _build(resources, variables=None, outputs=None, overrides=None):
    config = from_mapping(_mapping(resources, variables, outputs), "test.tf.json")
    return graph_builder.build(config, overrides, aws.schema_for)


class TestDependencies:
    def test_reference_creates_edge_and_order(self):
        # declared dependent-first; order still puts the dependency first
        g = _build({
            "aws_lb": {"b": {"name": "b", "security_groups": ["${aws_security_group.a.id}"]}},
            "aws_security_group": {"a": {"name": "a"}},
        })
        assert g.dependencies("aws_lb.b") == ["aws_security_group.a"]
        assert g.dependents("aws_security_group.a") == ["aws_lb.b"]
        assert list(g.order) == ["aws_security_group.a", "aws_lb.b"]

    def test_independent_resources_keep_declaration_order(self):
        g = _build({
            "aws_security_group": {"z": {"name": "z"}, "a": {"name": "a"}},
            "aws_lb_target_group": {"m": {"name": "m"}},
        })
        assert list(g.order) == [
            "aws_security_group.z",
            "aws_security_group.a",
            "aws_lb_target_group.m",
        ]

    def test_explicit_depends_on_edge(self):
        g = _build({
            "aws_lb_target_group": {"tg": {"name": "tg"}},
            "aws_autoscaling_group": {"asg": {"name": "asg", "depends_on": ["aws_lb_target_group.tg"]}},
        })
        edges = [(e.source, e.target, e.explicit) for e in g.edges]
        assert edges == [("aws_autoscaling_group.asg", "aws_lb_target_group.tg", True)]
        assert g.nodes["aws_autoscaling_group.asg"].depends_on == ("aws_lb_target_group.tg",)

    def test_depends_on_duplicating_a_reference_is_one_implicit_edge(self):
        config = from_mapping(
            {"resource": {
                "aws_lb_target_group": {"api": {"name": "api"}},
                "aws_autoscaling_group": {"api": {
                    "name": "api",
                    "target_group_arns": ["${aws_lb_target_group.api.arn}"],
                    "depends_on": ["aws_lb_target_group.api"],
                }},
            }},
            "test.tf.json",
        )
        g = graph_builder.build(config, None, aws.schema_for)
        assert len(g.edges) == 1
        assert g.edges[0].explicit is False

    def test_transitive_dependents(self):
        g = _build({
            "aws_security_group": {"web": {"name": "web"}},
            "aws_lb": {"web": {"name": "web", "security_groups": ["${aws_security_group.web.id}"]}},
            "aws_lb_listener": {"http": {"load_balancer_arn": "${aws_lb.web.arn}"}},
        })
        assert g.transitive_dependents("aws_security_group.web") == {"aws_lb.web", "aws_lb_listener.http"}

    def test_web_tier_fixture(self):
        config = terraform.parse_file(os.path.join(FIXTURES, "web_tier.tf"))
        g = graph_builder.build(config, None, aws.schema_for)
        order = list(g.order)
        assert order.index("aws_lb.web") < order.index("aws_lb_listener.http")
        assert order.index("aws_lb_target_group.web") < order.index("aws_lb_listener.http")
        assert order.index("aws_lb_listener.http") < order.index("aws_autoscaling_group.web")
        assert order.index("aws_launch_template.web") < order.index("aws_autoscaling_group.web")
        assert g.nodes["aws_launch_template.web"].lifecycle.create_before_destroy is True
        assert g.nodes["aws_security_group.web"].attributes["name"] == "web-dev"


class TestCycles:
    def test_cycle_fixture(self):
        config = terraform.parse_file(os.path.join(FIXTURES, "cycle.tf"))
        with pytest.raises(CycleError) as exc_info:
            graph_builder.build(config, None, aws.schema_for)
        assert exc_info.value.members == ["aws_security_group.a", "aws_security_group.b"]

    def test_three_node_cycle_names_members(self):
        with pytest.raises(CycleError) as exc_info:
            _build({"aws_security_group": {
                "a": {"name": "a", "description": "${aws_security_group.c.id}"},
                "b": {"name": "b", "description": "${aws_security_group.a.id}"},
                "c": {"name": "c", "description": "${aws_security_group.b.id}"},
                "d": {"name": "d"},
            }})
        assert "aws_security_group.d" not in exc_info.value.members
        assert len(exc_info.value.members) == 3

    def test_self_reference(self):
        with pytest.raises(CycleError):
            _build({"aws_security_group": {"a": {"name": "a", "description": "${aws_security_group.a.id}"}}})

    def test_depends_on_self(self):
        with pytest.raises(CycleError):
            _build({"aws_security_group": {"a": {"name": "a", "depends_on": ["aws_security_group.a"]}}})

    def test_explicit_cycle(self):
        with pytest.raises(CycleError):
            _build({"aws_security_group": {
                "a": {"name": "a", "depends_on": ["aws_security_group.b"]},
                "b": {"name": "b", "depends_on": ["aws_security_group.a"]},
            }})


class TestReferences:
    def test_undeclared_resource(self):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            _build({"aws_lb": {"b": {"name": "b", "security_groups": ["${aws_security_group.missing.id}"]}}})
        assert "aws_security_group.missing" in str(exc_info.value)

    def test_unknown_attribute(self):
        with pytest.raises(UnresolvedReferenceError):
            _build({
                "aws_security_group": {"a": {"name": "a"}},
                "aws_lb": {"b": {"name": "${aws_security_group.a.no_such_thing}"}},
            })

    def test_declared_attribute_is_resolvable(self):
        g = _build({
            "aws_security_group": {"a": {"name": "a", "vpc_id": "vpc-1"}},
            "aws_lb_target_group": {"b": {"name": "b", "vpc_id": "${aws_security_group.a.vpc_id}"}},
        })
        assert g.dependencies("aws_lb_target_group.b") == ["aws_security_group.a"]

    def test_missing_depends_on_target(self):
        with pytest.raises(UnresolvedReferenceError):
            _build({"aws_lb": {"b": {"name": "b", "depends_on": ["aws_security_group.gone"]}}})

    def test_local_values_are_rejected(self):
        with pytest.raises(UnresolvedReferenceError):
            _build({"aws_lb": {"b": {"name": "${local.name}"}}})

    def test_output_reference_checked(self):
        with pytest.raises(UnresolvedReferenceError):
            _build(
                {"aws_security_group": {"a": {"name": "a"}}},
                outputs={"x": {"value": "${aws_lb.nope.dns_name}"}},
            )

    def test_duplicate_address(self):
        config = Configuration()
        for _ in range(2):
            config.merge(from_mapping({"resource": {"aws_lb": {"b": {"name": "b"}}}}, "dup.tf.json"))
        with pytest.raises(ParseError):
            graph_builder.build(config, None, aws.schema_for)

    @pytest.mark.parametrize("block", ["variable", "output"])
    def test_duplicate_variable_or_output(self, block):
        values = {"variable": {"env": {"default": "dev"}}, "output": {"x": {"value": "1"}}}
        config = from_mapping({block: values[block]}, "a.tf.json")
        with pytest.raises(ParseError) as exc_info:
            config.merge(from_mapping({block: values[block]}, "b.tf.json"), "b.tf.json")
        assert exc_info.value.source == "b.tf.json"
        assert f"{block} " in str(exc_info.value)


class TestVariables:
    def test_default_substituted(self):
        g = _build(
            {"aws_lb_target_group": {"tg": {"name": "tg-${var.env}", "port": "${var.port}"}}},
            variables={"env": {"default": "dev"}, "port": {"default": 80}},
        )
        attrs = g.nodes["aws_lb_target_group.tg"].attributes
        assert attrs["name"] == "tg-dev"
        assert attrs["port"] == 80

    def test_override_wins_and_keeps_type(self):
        g = _build(
            {"aws_lb_target_group": {"tg": {"name": "tg", "port": "${var.port}"}}},
            variables={"port": {"default": 80}},
            overrides={"port": 8080},
        )
        assert g.nodes["aws_lb_target_group.tg"].attributes["port"] == 8080

    def test_required_variable_without_value(self):
        with pytest.raises(UnresolvedReferenceError):
            _build({"aws_lb": {"b": {"name": "${var.region}"}}}, variables={"region": {}})

    def test_required_variable_supplied(self):
        g = _build({"aws_lb": {"b": {"name": "${var.region}"}}}, variables={"region": {}},
                   overrides={"region": "eu"})
        assert g.nodes["aws_lb.b"].attributes["name"] == "eu"

    def test_undeclared_variable(self):
        with pytest.raises(UnresolvedReferenceError):
            _build({"aws_lb": {"b": {"name": "${var.nope}"}}})

    def test_undeclared_override(self):
        with pytest.raises(UnresolvedReferenceError):
            _build({"aws_lb": {"b": {"name": "b"}}}, overrides={"nope": 1})


class TestTopologicalOrder:
    def test_priority_breaks_ties(self):
        order = graph_builder.topological_order(
            ["c", "b", "a"], {"c": ["a"]}, priority=lambda x: x
        )
        assert order == ["a", "b", "c"]

    def test_internal_cycle_is_flagged(self):
        with pytest.raises(CycleError) as exc_info:
            graph_builder.topological_order(["x", "y"], {"x": ["y"], "y": ["x"]}, priority=str, internal=True)
        assert exc_info.value.internal is True
        assert "internal invariant violation" in str(exc_info.value)
