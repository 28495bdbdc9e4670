"""Tests for workflow.binding — mapping transition data onto callback signatures."""

from workflow.binding import ParameterShape, bind_arguments, invoke
from workflow.types import TransitionContext


def _context(args=(), **attributes) -> TransitionContext:
    return TransitionContext(
        from_state="new",
        to_state="accepted",
        event="accept",
        event_args=tuple(args),
        attributes=attributes,
    )


def _bind(fn, context, leading=()):
    return bind_arguments(ParameterShape.for_callable(fn), context, leading)


# ── ParameterShape ─────────────────────────────────────────────────────────────

class TestParameterShape:
    def test_reads_every_kind(self):
        def fn(a, b=2, *rest, c, d=4, **extra):
            pass

        shape = ParameterShape.for_callable(fn)
        assert [s.name for s in shape.positional] == ["a", "b"]
        assert shape.positional[1].has_default and shape.positional[1].default == 2
        assert shape.rest is True
        assert [s.name for s in shape.keywords] == ["c", "d"]
        assert shape.keyrest is True

    def test_bound_method_skips_self(self):
        class Host:
            def callback(self, to):
                return to

        shape = ParameterShape.for_callable(Host().callback)
        assert [s.name for s in shape.positional] == ["to"]

    def test_shape_is_cached(self):
        def fn(to):
            pass

        assert ParameterShape.for_callable(fn) is ParameterShape.for_callable(fn)

    def test_empty(self):
        assert ParameterShape.for_callable(lambda: None).is_empty
        assert not ParameterShape.for_callable(lambda **kw: None).is_empty


# ── bind_arguments ─────────────────────────────────────────────────────────────

class TestBindArguments:
    def test_context_fields_by_name(self):
        def fn(to, from_, event):
            pass

        args, kwargs = _bind(fn, _context())
        assert args == ["accepted", "new", "accept"]
        assert kwargs == {}

    def test_positional_args_in_order(self):
        def fn(a, b):
            pass

        args, _ = _bind(fn, _context(args=(1, 2)))
        assert args == [1, 2]

    def test_attribute_claims_slot_by_name(self):
        def fn(a, b):
            pass

        args, _ = _bind(fn, _context(args=(1,), a="A"))
        assert args == ["A", 1]

    def test_context_field_mixed_with_attribute(self):
        def fn(to, custom):
            pass

        args, _ = _bind(fn, _context(custom="x"))
        assert args == ["accepted", "x"]

    def test_default_used_when_nothing_left(self):
        def fn(a, b="fallback"):
            pass

        args, _ = _bind(fn, _context(args=(1,)))
        assert args == [1, "fallback"]

    def test_missing_without_default_is_none(self):
        def fn(a, b):
            pass

        args, _ = _bind(fn, _context(args=(1,)))
        assert args == [1, None]

    def test_rest_takes_remaining_args(self):
        def fn(a, *rest):
            return a, rest

        assert invoke(fn, _context(args=(1, 2, 3))) == (1, (2, 3))

    def test_keyword_only_from_attributes(self):
        def fn(*, note, other=5):
            return note, other

        assert invoke(fn, _context(note="n")) == ("n", 5)

    def test_required_keyword_only_missing_is_none(self):
        def fn(*, note):
            return note

        assert invoke(fn, _context()) is None

    def test_keyrest_takes_unclaimed_attributes(self):
        def fn(to, reviewer, **extra):
            return to, reviewer, extra

        result = invoke(fn, _context(reviewer="r", a=1, b=2))
        assert result == ("accepted", "r", {"a": 1, "b": 2})

    def test_each_value_consumed_once(self):
        def fn(note, *rest, **extra):
            return note, rest, extra

        assert invoke(fn, _context(args=(1, 2), note="n")) == ("n", (1, 2), {})

    def test_keyrest_excludes_positional_names(self):
        def fn(to, **extra):
            return to, extra

        assert invoke(fn, _context(to="attr", x=1)) == ("accepted", {"x": 1})

    def test_keyrest_excludes_receiver_name(self):
        class Host:
            def callback(self, **extra):
                return extra

        method = Host().callback
        assert ParameterShape.for_callable(method).skipped == ("self",)
        assert invoke(method, _context(self="x", other=1)) == {"other": 1}

    def test_context_untouched(self):
        context = _context(args=(1, 2), note="n")

        def fn(a, note):
            pass

        first = _bind(fn, context)
        second = _bind(fn, context)
        assert first == second
        assert context.attributes == {"note": "n"}
        assert context.event_args == (1, 2)


# ── Leading values ─────────────────────────────────────────────────────────────

class TestLeading:
    def test_leading_fill_first_slots(self):
        def fn(host, to):
            pass

        args, _ = _bind(fn, _context(), leading=("host",))
        assert args == ["host", "accepted"]

    def test_leading_truncated_to_slots(self):
        def fn(host):
            pass

        args, _ = _bind(fn, _context(), leading=("host", "proceed"))
        assert args == ["host"]

    def test_leading_kept_with_rest(self):
        def fn(*values):
            pass

        args, _ = _bind(fn, _context(args=(1,)), leading=("host",))
        assert args == ["host", 1]

    def test_invoke_zero_params_ignores_everything(self):
        assert invoke(lambda: "ok", _context(args=(1,), note="n"), leading=("host",)) == "ok"
