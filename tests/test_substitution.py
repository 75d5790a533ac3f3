import contextlib

import pytest

import sample_registry
import sample_service
from quantalogic_patchbox import (
    BindingTable,
    EmptyModuleContext,
    NoScopeAvailable,
    NotOwnBinding,
    RestorationWarning,
    Scope,
    UnknownBinding,
    apply,
    probe,
    pytest_recognizer,
    register_recognizer,
    substitute,
    substituted,
    unregister_recognizer,
)

ORIGINAL_ACCESS = sample_service.access
ORIGINAL_FIRST = sample_service.first_stage


def local_helper():
    return "real"


def uses_local_helper():
    return local_helper()


def test_work_fails_without_substitution():
    with pytest.raises(sample_service.Unreachable, match="unreachable"):
        sample_service.work()


def test_substituted_block_then_original_error():
    with substituted(sample_service, {'access': lambda: 42}):
        assert sample_service.work() == 42
    with pytest.raises(sample_service.Unreachable):
        sample_service.work()
    assert sample_service.access is ORIGINAL_ACCESS


def test_explicit_scope():
    with Scope() as scope:
        substitute(sample_service, {'access': lambda: "ok"}, scope)
        assert sample_service.work() == "ok"
    assert sample_service.access is ORIGINAL_ACCESS


def test_exit_stack_scope():
    with contextlib.ExitStack() as stack:
        substitute(sample_service, {'access': lambda: "stacked"}, stack)
        assert sample_service.work() == "stacked"
    assert sample_service.access is ORIGINAL_ACCESS


def test_request_scope(request):
    substitute(sample_service, {'RETRIES': 9}, request)
    assert '"retries": 9' in sample_service.describe()


@pytest.fixture
def expect_restored():
    yield
    # runs after the finalizers registered by the test body
    assert sample_service.access is ORIGINAL_ACCESS
    assert sample_service.first_stage is ORIGINAL_FIRST


def test_scope_inferred_from_running_test(expect_restored):
    substitute(sample_service, {'access': lambda: "inferred"})
    assert sample_service.work() == "inferred"


@pytest.fixture
def patched_in_fixture(expect_restored):
    substitute(sample_service, {'access': lambda: "from fixture"})
    yield


def test_scope_inferred_in_fixture(patched_in_fixture):
    assert sample_service.work() == "from fixture"


def test_scope_inferred_through_helper(expect_restored):
    def install():
        substitute(sample_service, {'first_stage': lambda: "fake"})

    install()
    assert sample_service.pipeline() == ["fake", "second"]


def test_multiple_names_in_one_request():
    requests = [('second_stage', lambda: "2"), ('first_stage', lambda: "1")]
    with substituted(sample_service, requests):
        assert sample_service.pipeline() == ["1", "2"]
    assert sample_service.pipeline() == ["first", "second"]


def test_unknown_name_leaves_module_untouched():
    with Scope() as scope:
        with pytest.raises(UnknownBinding) as excinfo:
            substitute(sample_service, {'access': lambda: 1, 'missing': lambda: 2}, scope)
        assert excinfo.value.name == 'missing'
        assert sample_service.access is ORIGINAL_ACCESS
        assert not hasattr(sample_service, 'missing')


@pytest.mark.parametrize('name', ['join', 'json'])
def test_foreign_name_rejected(name):
    original = getattr(sample_service, name)
    with pytest.raises(NotOwnBinding, match="not owned"):
        substitute(sample_service, {'first_stage': lambda: 1, name: object()}, Scope())
    assert getattr(sample_service, name) is original
    assert sample_service.first_stage is ORIGINAL_FIRST


def test_method_substitution_rejected():
    with pytest.raises(NotOwnBinding, match="inject a strategy"):
        substitute(sample_service, {'Greeter.greet': lambda self: "hi"}, Scope())
    assert sample_service.Greeter().greet() == "hello"


def test_duplicate_names_rejected():
    with pytest.raises(ValueError, match="more than once"):
        substitute(sample_service, [('access', 1), ('access', 2)], Scope())


def test_empty_request_is_noop():
    substitute(sample_service, {})
    substitute(None, [])
    assert sample_service.access is ORIGINAL_ACCESS


def test_nested_same_name():
    v1 = lambda: "v1"
    v2 = lambda: "v2"
    with substituted(sample_service, {'access': v1}):
        with substituted(sample_service, {'access': v2}):
            assert sample_service.work() == "v2"
        assert sample_service.access is v1
    assert sample_service.access is ORIGINAL_ACCESS


def test_nested_disjoint_names():
    with substituted(sample_service, {'first_stage': lambda: "a"}):
        with substituted(sample_service, {'second_stage': lambda: "b"}):
            assert sample_service.pipeline() == ["a", "b"]
        assert sample_service.pipeline() == ["a", "second"]
    assert sample_service.pipeline() == ["first", "second"]


def test_block_error_propagates_and_restores():
    with pytest.raises(KeyError):
        with substituted(sample_service, {'access': lambda: {}["k"]}):
            sample_service.work()
    assert sample_service.access is ORIGINAL_ACCESS


def test_apply_returns_result():
    assert apply(sample_service, {'access': lambda: 5}, sample_service.work) == 5
    assert sample_service.access is ORIGINAL_ACCESS


def test_apply_propagates_failure_after_restoring():
    def boom():
        assert sample_service.work() == "patched"
        raise RuntimeError("block failed")

    with pytest.raises(RuntimeError, match="block failed"):
        apply(sample_service, {'access': lambda: "patched"}, boom)
    assert sample_service.access is ORIGINAL_ACCESS


def test_calling_module_is_default():
    with substituted(None, {'local_helper': lambda: "fake"}):
        assert uses_local_helper() == "fake"
    assert uses_local_helper() == "real"
    assert apply(None, {'local_helper': lambda: "applied"}, uses_local_helper) == "applied"


def test_module_by_name():
    with substituted('sample_service', {'access': lambda: "by name"}):
        assert sample_service.work() == "by name"
    assert sample_service.access is ORIGINAL_ACCESS


def test_no_module_context():
    namespace = {'__name__': 'ghost', 'substitute': substitute, 'Scope': Scope}
    with pytest.raises(EmptyModuleContext):
        exec("substitute(None, {'x': 1}, Scope())", namespace)


def test_no_scope_available(monkeypatch):
    monkeypatch.setattr(probe, '_recognizers', [])
    with pytest.raises(NoScopeAvailable, match="pass an explicit scope"):
        substitute(sample_service, {'access': lambda: 1})
    assert sample_service.access is ORIGINAL_ACCESS


def test_custom_recognizer():
    def block_recognizer(frame):
        scope = frame.f_locals.get('block_scope')
        return scope if isinstance(scope, Scope) else None

    def run_block():
        block_scope = Scope("block")
        with block_scope:
            substitute(sample_service, {'access': lambda: "custom"})
            return sample_service.work()

    assert register_recognizer(block_recognizer, first=True) is block_recognizer
    try:
        assert run_block() == "custom"
        assert sample_service.access is ORIGINAL_ACCESS
    finally:
        unregister_recognizer(block_recognizer)
    assert block_recognizer not in probe.recognizers()


def test_binding_table_substitution():
    with substituted(sample_registry.deps, {'access': lambda: 42, 'clock': lambda: 7}):
        assert sample_registry.work() == 42
        assert sample_registry.stamp('t') == 't@7'
    with pytest.raises(ConnectionError):
        sample_registry.work()
    assert sample_registry.stamp('t') == 't@0'


class FlakyTable(BindingTable):
    """Table whose writes to some names can be made to fail."""

    def __init__(self, name):
        super().__init__(name)
        self.broken = set()

    def __setitem__(self, name, value):
        if name in self.broken:
            raise PermissionError(f"{name} is read-only")
        super().__setitem__(name, value)


def make_flaky_table():
    table = FlakyTable('flaky')
    for name in ('a', 'b', 'c'):
        table.register(lambda name=name: name, name=name)
    return table


def test_restoration_failure_is_reported_not_raised():
    table = make_flaky_table()
    originals = {name: table[name] for name in table.names()}
    scope = Scope()
    substitute(table, {'a': 1, 'b': 2, 'c': 3}, scope)
    table.broken.add('b')
    with pytest.warns(RestorationWarning) as record:
        scope.close()
    assert table['a'] is originals['a']
    assert table['c'] is originals['c']
    assert table['b'] == 2
    warning = record[0].message
    assert [f.qualname for f in warning.failures] == ['flaky.b']
    assert isinstance(warning.failures[0].error, PermissionError)
    assert "flaky.b" in str(warning)


def test_failed_install_rolls_back():
    table = make_flaky_table()
    originals = {name: table[name] for name in table.names()}
    table.broken.add('c')
    scope = Scope()
    with pytest.raises(PermissionError):
        substitute(table, {'a': 1, 'b': 2, 'c': 3}, scope)
    assert {name: table[name] for name in table.names()} == originals
    scope.close()
    assert {name: table[name] for name in table.names()} == originals


def test_restoration_runs_once():
    scope = Scope()
    substitute(sample_service, {'access': lambda: 1}, scope)
    scope.close()
    scope.close()
    assert sample_service.access is ORIGINAL_ACCESS


class PytestNode:
    __module__ = '_pytest.nodes'


class PluginItem(PytestNode):
    __module__ = 'pytest_asyncio.plugin'
    nodeid = 'tests/test_plugin.py::test_case'

    def __init__(self):
        self.finalizers = []

    def addfinalizer(self, fin):
        self.finalizers.append(fin)


class StubFrame:
    def __init__(self, **f_locals):
        self.f_locals = f_locals


def test_pytest_recognizer_accepts_plugin_items():
    item = PluginItem()
    scope = pytest_recognizer(StubFrame(pyfuncitem=item))
    assert isinstance(scope, Scope)
    assert 'tests/test_plugin.py::test_case' in scope.label
    scope.on_exit(local_helper)
    assert item.finalizers == [local_helper]


def test_pytest_recognizer_ignores_foreign_objects():
    class Request:
        def addfinalizer(self, fin):
            pass

    assert pytest_recognizer(StubFrame(request=Request())) is None
    assert pytest_recognizer(StubFrame(other=PluginItem())) is None
