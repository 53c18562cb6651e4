import pytest

from converge.engine import diff as diff_engine
from converge.engine import graph as graph_builder
from converge.engine import planner
from converge.engine.executor import Executor
from converge.engine.state import MemoryStateStore
from converge.parsers.terraform import from_mapping
from converge.providers.sandbox import SandboxProvider


@pytest.fixture
def provider():
    return SandboxProvider()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def make_plan(provider, store):
    """Build a plan for a Terraform-JSON-shaped mapping against the fixture store."""
    def _make(mapping, destroy=False, refresh=False, variables=None):
        graph = graph_builder.build(from_mapping(mapping, "test.tf.json"), variables, provider.schema)
        recorded = store.records()
        state = diff_engine.refresh(recorded, provider) if refresh else recorded
        changes = diff_engine.diff(graph, state, provider.schema, destroy=destroy)
        return planner.build_plan(
            graph, changes, state, destroy=destroy, recorded=recorded,
            serial=store.serial, lineage=store.lineage,
        )
    return _make


@pytest.fixture
def executor(provider, store):
    return Executor(provider, store, parallelism=4, sleep=lambda seconds: None)
