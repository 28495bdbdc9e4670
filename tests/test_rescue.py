"""Tests for workflow.rescue — rescue_from and always handlers."""

import pytest

from workflow import Workflow, before_transition
from workflow.conditions import Closure, Expr, MethodRef
from workflow.errors import WorkflowDefinitionError
from workflow.graph import SpecificationBuilder
from workflow.rescue import RescueHandler, call_target


class Guarded(Workflow):
    @classmethod
    def define_workflow(cls, w):
        w.state("new").event("go", to="done")
        w.state("done")
        w.rescue_from(LookupError, handler="on_lookup")
        w.rescue_from(KeyError, handler=lambda host, error: host.log.append("key"))
        w.always("cleanup")
        w.always(lambda host: host.log.append("always"))

    def __init__(self, fail_with=None, halt=False):
        super().__init__()
        self.log = []
        self.fail_with = fail_with
        self.should_halt = halt

    def on_lookup(self, error):
        self.log.append(f"lookup {type(error).__name__}")

    def cleanup(self):
        self.log.append("cleanup")

    @before_transition
    def maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with
        if self.should_halt:
            self.halt("stopped")


# ── rescue_from ────────────────────────────────────────────────────────────────

class TestRescueFrom:
    def test_first_matching_handler_wins(self):
        host = Guarded(fail_with=KeyError("k"))
        assert host.transition("go") is None
        assert host.log == ["lookup KeyError", "cleanup", "always"]

    def test_undeclared_event_can_be_rescued(self):
        host = Guarded()
        assert host.transition("missing") is None
        assert host.log == ["lookup NoSuchEventError", "cleanup", "always"]

    def test_unmatched_error_is_reraised(self):
        host = Guarded(fail_with=ValueError("v"))
        with pytest.raises(ValueError):
            host.transition("go")
        assert host.log == ["cleanup", "always"]

    def test_state_unchanged_after_rescue(self):
        host = Guarded(fail_with=KeyError("k"))
        host.transition("go")
        assert host.current_state.name == "new"

    def test_rejects_non_exception_kinds(self):
        with pytest.raises(WorkflowDefinitionError, match="exception classes"):
            RescueHandler.build("KeyError", "handler")

    def test_tuple_of_kinds(self):
        handler = RescueHandler.build((KeyError, ValueError), "handler")
        assert handler.matches(ValueError())
        assert not handler.matches(RuntimeError())

    def test_builder_takes_several_kinds(self):
        w = SpecificationBuilder()
        w.state("new")
        w.rescue_from(KeyError, ValueError, handler="on_bad_input")
        w.rescue_from((OSError, TypeError), handler="on_other")
        first, second = w.build().rescue_handlers
        assert first.error_kinds == (KeyError, ValueError)
        assert first.target == MethodRef("on_bad_input")
        assert second.error_kinds == (OSError, TypeError)

    def test_builder_needs_a_kind(self):
        w = SpecificationBuilder()
        with pytest.raises(WorkflowDefinitionError, match="exception classes"):
            w.rescue_from(handler="on_bad_input")


# ── always ─────────────────────────────────────────────────────────────────────

class TestAlways:
    def test_runs_after_commit(self):
        host = Guarded()
        assert host.transition("go") == "done"
        assert host.log == ["cleanup", "always"]

    def test_runs_after_halt(self):
        host = Guarded(halt=True)
        assert host.transition("go") is None
        assert host.log == ["cleanup", "always"]

    def test_errors_from_always_propagate(self):
        class Noisy(Workflow):
            @classmethod
            def define_workflow(cls, w):
                w.state("new").event("go", to="done")
                w.state("done")
                w.always("explode")

            def explode(self):
                raise RuntimeError("always failed")

        with pytest.raises(RuntimeError, match="always failed"):
            Noisy().transition("go")

    def test_expression_handler(self):
        class Expressive(Workflow):
            @classmethod
            def define_workflow(cls, w):
                w.state("new").event("go", to="done")
                w.state("done")
                w.always("self.log.append('expr')")

            def __init__(self):
                super().__init__()
                self.log = []

        host = Expressive()
        host.transition("go")
        assert host.log == ["expr"]


# ── call_target ────────────────────────────────────────────────────────────────

class TestCallTarget:
    class Host:
        value = "v"

        def handler(self, error):
            return ("handled", error)

        def no_args(self):
            return "no args"

    def test_method_ref_with_extra(self):
        assert call_target(MethodRef("handler"), self.Host(), "e") == ("handled", "e")

    def test_method_ref_drops_unwanted_extra(self):
        assert call_target(MethodRef("no_args"), self.Host(), "e") == "no args"

    def test_closure_receives_host_first(self):
        host = self.Host()
        assert call_target(Closure(lambda h, e: (h, e)), host, "e") == (host, "e")

    def test_closure_truncated(self):
        host = self.Host()
        assert call_target(Closure(lambda h: h), host, "e") is host

    def test_expression(self):
        assert call_target(Expr("value + '!'"), self.Host()) == "v!"
