"""
Planner tests — operation ordering for creates, replaces and destroys.
"""
from converge.engine import graph as graph_builder
from converge.engine import planner
from converge.models.change import Action, ChangeSet
from converge.models.plan import Step
from converge.models.state import StateRecord
from converge.parsers.terraform import from_mapping
from converge.providers import aws


def _keys(plan):
    return [op.key for op in plan.operations]


def _sg_and_template(sg_name="b", cbd=True):
    sg = {"name": sg_name, "vpc_id": "vpc-1"}
    if cbd:
        sg["lifecycle"] = {"create_before_destroy": True}
    return {"resource": {
        "aws_security_group": {"b": sg},
        "aws_launch_template": {"c": {
            "name": "c",
            "image_id": "ami-1",
            "vpc_security_group_ids": ["${aws_security_group.b.id}"],
        }},
    }}


def _apply(make_plan, executor, mapping):
    result = executor.run(make_plan(mapping))
    assert result.ok
    return result


class TestCreateOrder:
    def test_dependency_created_first(self, make_plan):
        plan = make_plan({"resource": {
            "aws_lb": {"b": {"name": "b", "security_groups": ["${aws_security_group.a.id}"]}},
            "aws_security_group": {"a": {"name": "a"}},
        }})
        assert _keys(plan) == ["create:aws_security_group.a", "create:aws_lb.b"]
        assert plan.dependencies["create:aws_lb.b"] == frozenset({"create:aws_security_group.a"})
        assert plan.dependents("create:aws_security_group.a") == ["create:aws_lb.b"]

    def test_noop_has_no_operation(self, make_plan, executor):
        mapping = {"resource": {"aws_security_group": {"a": {"name": "a"}}}}
        _apply(make_plan, executor, mapping)
        plan = make_plan(mapping)
        assert plan.operations == []
        assert plan.summary()["no-op"] == 1

    def test_update_waits_for_created_dependency(self, make_plan, executor):
        _apply(make_plan, executor, {"resource": {"aws_lb": {"w": {"name": "w", "tags": {"v": "1"}}}}})
        plan = make_plan({"resource": {
            "aws_security_group": {"a": {"name": "a"}},
            "aws_lb": {"w": {"name": "w", "tags": {"v": "1"}, "security_groups": ["${aws_security_group.a.id}"]}},
        }})
        assert _keys(plan) == ["create:aws_security_group.a", "update:aws_lb.w"]


class TestReplaceOrder:
    def test_create_before_destroy(self, make_plan, executor):
        _apply(make_plan, executor, _sg_and_template())
        plan = make_plan(_sg_and_template(sg_name="b-v2"))
        assert _keys(plan) == [
            "create:aws_security_group.b",
            "update:aws_launch_template.c",
            "destroy:aws_security_group.b (deposed)",
        ]
        create = plan.operation("create:aws_security_group.b")
        assert create.action == Action.REPLACE
        assert plan.operation("destroy:aws_security_group.b (deposed)").deposed is True

    def test_destroy_before_create_by_default(self, make_plan, executor):
        _apply(make_plan, executor, _sg_and_template(cbd=False))
        plan = make_plan(_sg_and_template(sg_name="b-v2", cbd=False))
        assert _keys(plan) == [
            "destroy:aws_security_group.b",
            "create:aws_security_group.b",
            "update:aws_launch_template.c",
        ]
        assert plan.operation("destroy:aws_security_group.b").deposed is False

    def test_cbd_dependent_propagates_to_dependency(self, make_plan, executor):
        def mapping(suffix):
            return {"resource": {
                "aws_security_group": {"b": {"name": f"b{suffix}"}},
                "aws_launch_template": {"c": {
                    "name": "${aws_security_group.b.name}",
                    "lifecycle": {"create_before_destroy": True},
                }},
            }}

        _apply(make_plan, executor, mapping(""))
        plan = make_plan(mapping("-v2"))
        assert plan.change_for("aws_launch_template.c").action == Action.REPLACE
        keys = _keys(plan)
        assert "destroy:aws_security_group.b (deposed)" in keys
        assert keys.index("create:aws_launch_template.c") < keys.index("destroy:aws_security_group.b (deposed)")
        assert keys.index("destroy:aws_launch_template.c (deposed)") < keys.index(
            "destroy:aws_security_group.b (deposed)"
        )


class TestDestroyOrder:
    def test_dependents_destroyed_first(self, make_plan, executor):
        mapping = {"resource": {
            "aws_security_group": {"a": {"name": "a"}},
            "aws_lb": {"b": {"name": "b", "security_groups": ["${aws_security_group.a.id}"]}},
            "aws_lb_listener": {"c": {"load_balancer_arn": "${aws_lb.b.arn}"}},
        }}
        _apply(make_plan, executor, mapping)
        plan = make_plan(mapping, destroy=True)
        assert plan.destroy is True
        assert _keys(plan) == [
            "destroy:aws_lb_listener.c",
            "destroy:aws_lb.b",
            "destroy:aws_security_group.a",
        ]
        assert all(op.step == Step.DESTROY for op in plan.operations)

    def test_orphan_destroyed_before_its_dependency_changes(self, make_plan, executor):
        _apply(make_plan, executor, {"resource": {
            "aws_security_group": {"a": {"name": "a", "tags": {"v": "1"}}},
            "aws_lb": {"b": {"name": "b", "security_groups": ["${aws_security_group.a.id}"]}},
        }})
        plan = make_plan({"resource": {"aws_security_group": {"a": {"name": "a", "tags": {"v": "2"}}}}})
        assert _keys(plan) == ["destroy:aws_lb.b", "update:aws_security_group.a"]

    def test_dropped_reference_updated_before_orphan_destroyed(self, make_plan, executor):
        _apply(make_plan, executor, {"resource": {
            "aws_security_group": {"x": {"name": "x"}},
            "aws_lb": {"a": {"name": "a", "security_groups": ["${aws_security_group.x.id}"]}},
        }})
        plan = make_plan({"resource": {"aws_lb": {"a": {"name": "a", "security_groups": []}}}})
        assert _keys(plan) == ["update:aws_lb.a", "destroy:aws_security_group.x"]
        assert "update:aws_lb.a" in plan.dependencies["destroy:aws_security_group.x"]


class TestLeftoverDeposed:
    def _graph(self):
        config = from_mapping({"resource": {"aws_security_group": {"b": {
            "name": "b-v3",
            "lifecycle": {"create_before_destroy": True},
        }}}}, "test.tf.json")
        return graph_builder.build(config, None, aws.schema_for)

    def test_leftover_destroyed_first_and_replace_falls_back_to_destroy_first(self):
        graph = self._graph()
        state = {"aws_security_group.b": StateRecord(
            resource_type="aws_security_group",
            remote_id="sg-new",
            attributes={"name": "b-v2"},
            deposed_id="sg-old",
        )}
        changes = [ChangeSet(
            address="aws_security_group.b",
            resource_type="aws_security_group",
            action=Action.REPLACE,
            lifecycle=graph.nodes["aws_security_group.b"].lifecycle,
            deposed_id="sg-old",
        )]
        plan = planner.build_plan(graph, changes, state)
        assert _keys(plan) == [
            "destroy:aws_security_group.b (deposed)",
            "destroy:aws_security_group.b",
            "create:aws_security_group.b",
        ]


class TestDependencyEdges:
    def test_orphan_edges_come_from_state(self, make_plan, executor, store):
        _apply(make_plan, executor, {"resource": {
            "aws_security_group": {"a": {"name": "a"}},
            "aws_lb": {"b": {"name": "b", "security_groups": ["${aws_security_group.a.id}"]}},
        }})
        config = from_mapping({"resource": {"aws_security_group": {"a": {"name": "a"}}}}, "test.tf.json")
        graph = graph_builder.build(config, None, aws.schema_for)
        edges = planner.dependency_edges(graph, store.records())
        assert edges == [{"source": "aws_lb.b", "target": "aws_security_group.a", "explicit": False}]
