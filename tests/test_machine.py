"""Tests for workflow.machine — the Workflow host base class."""

import logging

import pytest

from workflow import (
    NoMatchingTransitionError,
    NoSuchEventError,
    NoSuchStateError,
    TransitionHaltedError,
    TransitionOutcome,
    Workflow,
    before_transition,
)


# ── Helpers ────────────────────────────────────────────────────────────────────

class Article(Workflow):
    @classmethod
    def define_workflow(cls, w):
        w.state("new").event("accept", to="accepted")
        w.state("accepted").event("archive", to="archived")
        w.state("archived")


class Draft(Workflow):
    """A single guarded event; counts persistence writes."""

    ready = False

    @classmethod
    def define_workflow(cls, w):
        w.state("draft").event("publish", to="published", if_="ready")
        w.state("published")

    def __init__(self):
        super().__init__()
        self.writes = 0

    def persist_new_state(self, name):
        self.writes += 1
        return super().persist_new_state(name)


class Pinger(Workflow):
    HISTORY_SIZE = 2

    @classmethod
    def define_workflow(cls, w):
        w.state("idle").event("ping", to="idle")


class Gatekeeper(Article):
    """Halts ``accept`` unless a reviewer is given."""

    @before_transition(only="accept")
    def check_reviewer(self, reviewer=None):
        if reviewer is None:
            self.halt("accepting needs a reviewer")


# ── Committing ─────────────────────────────────────────────────────────────────

class TestCommit:
    def test_new_accepted_archived(self):
        article = Article()
        assert article.current_state.name == "new"
        assert article.transition("accept") == "accepted"
        assert article.current_state.name == "accepted"
        assert article.transition("archive") == "archived"
        assert article.current_state.name == "archived"
        with pytest.raises(NoSuchEventError, match=r"no event \[accept\] defined for the \[archived\] state"):
            article.transition("accept")

    def test_persisted_state_round_trips(self):
        article = Article()
        article.transition("accept")
        assert article.workflow_state == "accepted"
        assert article.load_current_state() == "accepted"

    def test_nothing_persisted_means_initial_state(self):
        article = Article()
        assert article.load_current_state() is None
        assert article.current_state.is_initial

    def test_unknown_stored_state_falls_back_to_initial(self, caplog):
        article = Article()
        article.workflow_state = "bogus"
        with caplog.at_level(logging.WARNING, logger="workflow.machine"):
            assert article.current_state.name == "new"
        assert "bogus" in caplog.text

    def test_commit_returns_persistence_result(self):
        class Saving(Article):
            def persist_new_state(self, name):
                super().persist_new_state(name)
                return {"saved": name}

        assert Saving().transition("accept") == {"saved": "accepted"}

    def test_commit_returns_state_name_when_hook_returns_none(self):
        class Silent(Article):
            def persist_new_state(self, name):
                self.workflow_state = name

        assert Silent().transition("accept") == "accepted"

    def test_persistence_error_propagates(self):
        class Failing(Article):
            def persist_new_state(self, name):
                raise IOError("disk full")

        article = Failing()
        with pytest.raises(IOError, match="disk full"):
            article.transition("accept")
        assert article.current_state.name == "new"
        assert article.get_history()[-1].failed

    def test_state_comparison_through_current_state(self):
        article = Article()
        article.transition("accept")
        assert article.current_state > "new"
        assert article.current_state < "archived"


# ── Event lookup ───────────────────────────────────────────────────────────────

class TestNoSuchEvent:
    def test_every_undeclared_pair_raises(self):
        spec = Article.workflow_spec()
        for state in spec.states:
            for event_name in spec.unique_event_names():
                if state.find_event(event_name) is not None:
                    continue
                article = Article()
                article.workflow_state = state.name
                with pytest.raises(NoSuchEventError):
                    article.transition(event_name)

    def test_is_a_lookup_error(self):
        with pytest.raises(LookupError):
            Article().transition("nonexistent")


# ── No matching transition ─────────────────────────────────────────────────────

class TestNoMatchingTransition:
    def test_halts_without_writing(self):
        draft = Draft()
        assert draft.transition("publish") is None
        assert draft.halted is True
        assert draft.halted_because.startswith("No matching transition")
        assert draft.writes == 0
        assert draft.current_state.name == "draft"

    def test_strict_raises(self):
        draft = Draft()
        with pytest.raises(NoMatchingTransitionError):
            draft.transition_strict("publish")
        assert draft.writes == 0
        assert draft.get_history()[-1].failed

    def test_guard_satisfied(self):
        draft = Draft()
        draft.ready = True
        assert draft.transition("publish") == "published"
        assert draft.writes == 1

    def test_first_match_wins(self):
        class Router(Workflow):
            @classmethod
            def define_workflow(cls, w):
                w.state("start").event("go").to("left").to("right")
                w.state("left")
                w.state("right")

        results = set()
        for _ in range(3):
            results.add(Router().transition("go"))
        assert results == {"left"}


# ── Halting ────────────────────────────────────────────────────────────────────

class TestHalt:
    def test_halted_transition_returns_none(self):
        article = Gatekeeper()
        assert article.transition("accept") is None
        assert article.halted_because == "accepting needs a reviewer"
        assert article.current_state.name == "new"

    def test_reviewer_lets_it_through(self):
        article = Gatekeeper()
        assert article.transition("accept", "alice") == "accepted"
        assert article.halted is False

    def test_halt_state_cleared_on_next_attempt(self):
        article = Gatekeeper()
        article.transition("accept")
        article.transition("accept", reviewer="bob")
        assert article.halted is False
        assert article.halted_because is None

    def test_strict_raises_with_reason(self):
        with pytest.raises(TransitionHaltedError) as exc_info:
            Gatekeeper().transition_strict("accept")
        assert exc_info.value.halted_because == "accepting needs a reviewer"

    def test_raise_on_halt(self):
        class Loud(Gatekeeper):
            RAISE_ON_HALT = True

        with pytest.raises(TransitionHaltedError, match="needs a reviewer"):
            Loud().transition("accept")

    def test_halt_strict_in_callback(self):
        class Strict(Article):
            @before_transition
            def refuse(self):
                self.halt_strict("never")

        article = Strict()
        with pytest.raises(TransitionHaltedError, match="never"):
            article.transition("accept")
        assert article.halted_because == "never"
        assert article.current_state.name == "new"

    def test_halt_is_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="workflow.machine"):
            Gatekeeper().transition("accept")
        assert "halted" in caplog.text

    def test_context_cleared_after_failure(self):
        class Exploding(Article):
            @before_transition
            def explode(self):
                raise RuntimeError("boom")

        article = Exploding()
        with pytest.raises(RuntimeError):
            article.transition("accept")
        assert article.transition_context is None


# ── Named arguments ────────────────────────────────────────────────────────────

class TestEventArgs:
    def test_positional_args_exposed_by_name(self):
        class Review(Workflow):
            @classmethod
            def define_workflow(cls, w):
                w.event_args("reviewer", "note")
                w.state("new").event("accept", to="accepted")
                w.state("accepted")

            @before_transition
            def capture(self):
                context = self.transition_context
                self.seen = (context.reviewer, context.note)

        review = Review()
        review.transition("accept", "alice")
        assert review.seen == ("alice", None)


# ── Queries ────────────────────────────────────────────────────────────────────

class TestQueries:
    def test_is_in_state(self):
        article = Article()
        assert article.is_in_state("new")
        article.transition("accept")
        assert article.is_in_state(Article.workflow_spec().find_state("accepted"))

    def test_can_fire(self):
        article = Article()
        assert article.can_fire("accept")
        assert not article.can_fire("archive")
        assert not Draft().can_fire("publish")

    def test_available_events(self):
        article = Article()
        assert article.available_events() == ["accept"]
        article.transition("accept")
        assert article.available_events() == ["archive"]

    def test_reset(self):
        article = Article()
        article.transition("accept")
        article.reset()
        assert article.current_state.name == "new"


# ── Specification ──────────────────────────────────────────────────────────────

class TestSpecification:
    def test_compiled_once_per_class(self):
        assert Article.workflow_spec() is Article.workflow_spec()

    def test_subclass_extends_graph(self):
        class Restorable(Article):
            @classmethod
            def define_workflow(cls, w):
                super().define_workflow(w)
                w.find_state("archived").event("restore", to="new")

        assert Restorable.workflow_spec().find_state("archived").event_names == ["restore"]
        assert Article.workflow_spec().find_state("archived").is_terminal

    def test_definition_errors_surface_on_first_use(self):
        class Broken(Workflow):
            @classmethod
            def define_workflow(cls, w):
                w.state("a").event("go", to="nowhere")

        with pytest.raises(NoSuchStateError):
            Broken().current_state

    def test_define_workflow_is_required(self):
        class Incomplete(Workflow):
            pass

        with pytest.raises(TypeError):
            Incomplete()


# ── History ────────────────────────────────────────────────────────────────────

class TestHistory:
    def test_records_outcomes(self):
        article = Gatekeeper()
        article.transition("accept")
        article.transition("accept", "alice")
        outcomes = [e.outcome for e in article.get_history()]
        assert outcomes == [TransitionOutcome.HALTED, TransitionOutcome.COMMITTED]

    def test_entry_fields(self):
        article = Article()
        article.transition("accept")
        entry = article.get_history()[0]
        assert entry.event == "accept"
        assert entry.from_state == "new"
        assert entry.to_state == "accepted"
        assert entry.duration >= 0

    def test_bounded(self):
        pinger = Pinger()
        for _ in range(3):
            pinger.transition("ping")
        assert len(pinger.get_history()) == 2

    def test_last_n(self):
        pinger = Pinger()
        pinger.transition("ping")
        pinger.transition("ping")
        assert len(pinger.get_history(last_n=1)) == 1

    def test_host_without_base_init(self):
        class Bare(Article):
            def __init__(self):
                self.log = []

        bare = Bare()
        assert bare.get_history() == []
        assert bare.transition("accept") == "accepted"
        assert len(bare.get_history()) == 1
