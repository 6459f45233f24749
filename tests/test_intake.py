"""Tests for the intake form engine."""

import threading

import pytest

from clientportal.core.intake import (
    BUDGETS,
    PROJECT_TYPES,
    TIMEFRAMES,
    TRANSITIONS,
    ChoiceOutcome,
    InputKind,
    IntakeEngine,
    IntakeStep,
    choice_token,
    decode_choice,
    generate_auth_code,
    render_step,
)
from clientportal.errors import ProviderError, ValidationError, ValidationFailure
from clientportal.infra.locks import KeyedLocks

from helpers import FakeRecordProvider, unavailable


def _engine(**kwargs):
    return IntakeEngine(auth_code_factory=lambda: "AUTH00001", **kwargs)


def _walk_to(engine, user_id, step):
    """Drive a fresh intake forward until it reaches step."""
    session = engine.start(user_id)
    script = [
        (IntakeStep.NAME, lambda: engine.submit_text(session, "Ada Lovelace")),
        (IntakeStep.EMAIL, lambda: engine.submit_text(session, "ada@example.com")),
        (IntakeStep.COMPANY, lambda: engine.submit_text(session, "/skip")),
        (IntakeStep.PHONE, lambda: engine.submit_text(session, "")),
        (IntakeStep.PROJECT_TYPE, lambda: (
            engine.submit_choice(session, "intake:type:web"),
            engine.submit_choice(session, "intake:continue"),
        )),
        (IntakeStep.PROJECT_GOAL, lambda: engine.submit_text(session, "Build a portal")),
        (IntakeStep.TIMEFRAME, lambda: engine.submit_choice(session, "intake:time:asap")),
        (IntakeStep.BUDGET, lambda: engine.submit_choice(session, "intake:budget:15k")),
        (IntakeStep.ADDITIONAL_INFO, lambda: engine.submit_text(session, "/skip")),
    ]
    for current, action in script:
        if session.step is step:
            break
        assert session.step is current
        action()
    assert session.step is step
    return session


class TestTextSteps:
    """Free-text steps validate and advance."""

    def test_start_begins_at_name(self):
        engine = _engine()
        session = engine.start("u1")
        assert session.step is IntakeStep.NAME
        assert engine.get("u1") is session

    def test_start_replaces_prior_session(self):
        engine = _engine()
        first = _walk_to(engine, "u1", IntakeStep.BUDGET)

        second = engine.start("u1")

        assert second is not first
        assert second.step is IntakeStep.NAME
        assert second.answers.name == ""
        assert len(engine) == 1

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_name_required(self, text):
        engine = _engine()
        session = engine.start("u1")

        with pytest.raises(ValidationError) as exc:
            engine.submit_text(session, text)

        assert exc.value.reason is ValidationFailure.EMPTY
        assert session.step is IntakeStep.NAME

    @pytest.mark.parametrize("email", ["not-an-email", "a@b", "a b@c.d", "@x.io"])
    def test_invalid_email_keeps_step(self, email):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.EMAIL)

        with pytest.raises(ValidationError) as exc:
            engine.submit_text(session, email)

        assert exc.value.reason is ValidationFailure.INVALID_FORMAT
        assert session.step is IntakeStep.EMAIL
        assert session.answers.email == ""

    def test_valid_email_advances(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.EMAIL)

        engine.submit_text(session, "  ada@example.com ")

        assert session.step is IntakeStep.COMPANY
        assert session.answers.email == "ada@example.com"

    def test_skip_stores_empty_optional_value(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.COMPANY)

        engine.submit_text(session, "/skip")

        assert session.step is IntakeStep.PHONE
        assert session.answers.company == ""

    def test_goal_required(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.PROJECT_GOAL)

        with pytest.raises(ValidationError) as exc:
            engine.submit_text(session, "/skip")

        assert exc.value.reason is ValidationFailure.EMPTY

    def test_text_on_choice_step_is_unexpected(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.TIMEFRAME)

        with pytest.raises(ValidationError) as exc:
            engine.submit_text(session, "next week")

        assert exc.value.reason is ValidationFailure.UNEXPECTED_INPUT
        assert session.step is IntakeStep.TIMEFRAME


class TestChoiceSteps:
    """Button tokens toggle, select and confirm."""

    def test_toggle_is_reentrant(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.PROJECT_TYPE)

        assert engine.submit_choice(session, "intake:type:web") is ChoiceOutcome.REFRESH
        assert engine.submit_choice(session, "intake:type:art") is ChoiceOutcome.REFRESH
        assert engine.submit_choice(session, "intake:type:web") is ChoiceOutcome.REFRESH

        assert session.step is IntakeStep.PROJECT_TYPE
        assert session.answers.project_types == {"Digital Art/Graphics"}

    def test_continue_requires_a_selection(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.PROJECT_TYPE)

        with pytest.raises(ValidationError) as exc:
            engine.submit_choice(session, "intake:continue")

        assert exc.value.reason is ValidationFailure.NONE_SELECTED
        assert session.step is IntakeStep.PROJECT_TYPE

    def test_continue_advances_with_selection(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.PROJECT_TYPE)
        engine.submit_choice(session, "intake:type:mixed")

        assert engine.submit_choice(session, "intake:continue") is ChoiceOutcome.ADVANCED
        assert session.step is IntakeStep.PROJECT_GOAL

    def test_timeframe_and_budget_store_labels(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.TIMEFRAME)

        assert engine.submit_choice(session, "intake:time:3months") is ChoiceOutcome.ADVANCED
        assert engine.submit_choice(session, "intake:budget:100k_plus") is ChoiceOutcome.ADVANCED

        assert session.answers.timeframe == "1-3 months"
        assert session.answers.budget == "Over $100,000"
        assert session.step is IntakeStep.ADDITIONAL_INFO

    @pytest.mark.parametrize("token", ["intake:type:cobol", "intake:bogus", "intake:time:", "menu:jobs"])
    def test_unknown_token(self, token):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.PROJECT_TYPE)

        with pytest.raises(ValidationError) as exc:
            engine.submit_choice(session, token)

        assert exc.value.reason is ValidationFailure.UNKNOWN_CHOICE

    def test_known_token_at_wrong_step(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.BUDGET)

        with pytest.raises(ValidationError) as exc:
            engine.submit_choice(session, "intake:time:asap")

        assert exc.value.reason is ValidationFailure.UNEXPECTED_INPUT
        assert session.answers.timeframe == "ASAP"
        assert session.step is IntakeStep.BUDGET

    def test_cancel_discards_session(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.CONFIRMATION)

        assert engine.submit_choice(session, "intake:cancel") is ChoiceOutcome.CANCEL

        assert session.step is IntakeStep.CANCELLED
        assert engine.get("u1") is None

    def test_submit_choice_marks_submitted(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.CONFIRMATION)

        assert engine.submit_choice(session, "intake:submit") is ChoiceOutcome.SUBMIT
        assert session.step is IntakeStep.SUBMITTED
        assert session.is_terminal

    def test_terminal_session_rejects_input(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.CONFIRMATION)
        engine.submit_choice(session, "intake:submit")

        with pytest.raises(ValidationError):
            engine.submit_choice(session, "intake:cancel")
        with pytest.raises(ValidationError):
            engine.submit_text(session, "hello")


class TestTokens:
    """Token encoding covers every catalogue entry."""

    def test_every_catalogue_entry_round_trips(self):
        for kind, catalogue in (
            (InputKind.TOGGLE_TYPE, PROJECT_TYPES),
            (InputKind.TIMEFRAME, TIMEFRAMES),
            (InputKind.BUDGET, BUDGETS),
        ):
            for key, label in catalogue.items():
                assert decode_choice(choice_token(kind, key)) == (kind, label)

    def test_tokens_fit_telegram_callback_limit(self):
        tokens = [choice_token(InputKind.BUDGET, k) for k in BUDGETS]
        assert all(len(t.encode()) <= 64 for t in tokens)

    def test_only_confirmation_reaches_terminal_steps(self):
        sources = {src for (src, _), dst in TRANSITIONS.items() if dst in (IntakeStep.SUBMITTED, IntakeStep.CANCELLED)}
        assert sources == {IntakeStep.CONFIRMATION}

    def test_auth_code_shape(self):
        code = generate_auth_code()
        assert len(code) == 9
        assert code.isalnum() and code.upper() == code


class TestRender:
    """render_step is a pure function of the session."""

    def test_name_prompt_expects_text(self):
        engine = _engine()
        rendered = render_step(engine.start("u1"))
        assert rendered.expects_text
        assert rendered.buttons == []
        assert "full name" in rendered.text

    def test_echoes_answers_and_hides_skipped_optionals(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.TIMEFRAME)

        text = render_step(session).text

        assert "Ada Lovelace" in text
        assert "ada@example.com" in text
        assert "Web/Mobile Development" in text
        assert "Build a portal" in text
        assert "Company" not in text
        assert "Phone" not in text

    def test_long_goal_is_previewed(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.PROJECT_GOAL)
        engine.submit_text(session, "x" * 80)

        text = render_step(session).text

        assert "x" * 50 + "..." in text
        assert "x" * 51 not in text

    def test_selected_types_are_marked(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.PROJECT_TYPE)
        engine.submit_choice(session, "intake:type:web3")

        labels = [row[0].label for row in render_step(session).buttons]

        assert "✔️ Web3 Development" in labels
        assert "Web/Mobile Development" in labels
        assert labels[-1] == "✅ Continue"

    def test_answers_are_html_escaped(self):
        engine = _engine()
        session = engine.start("u1")
        engine.submit_text(session, "<b>Eve</b>")

        text = render_step(session).text

        assert "&lt;b&gt;Eve&lt;/b&gt;" in text
        assert "<b>Eve</b>" not in text

    def test_confirmation_shows_full_summary(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.ADDITIONAL_INFO)
        engine.submit_text(session, "Needs i18n")

        rendered = render_step(session)

        assert session.step is IntakeStep.CONFIRMATION
        assert "Needs i18n" in rendered.text
        assert "$5,000 - $15,000" in rendered.text
        tokens = [b.token for b in rendered.buttons[0]]
        assert tokens == ["intake:submit", "intake:cancel"]


class TestSubmitAndRetention:
    """Submitting to the record store and abandonment."""

    def test_submit_creates_entity_and_drops_session(self):
        engine = _engine()
        provider = FakeRecordProvider()
        session = _walk_to(engine, "u1", IntakeStep.CONFIRMATION)
        engine.submit_choice(session, "intake:submit")

        ref = engine.submit(session, provider)

        assert ref.secret_token == "AUTH00001"
        assert provider.created[0]["name"] == "Ada Lovelace"
        assert provider.created[0]["project_types"] == ["Web/Mobile Development"]
        assert provider.created[0]["auth_code"] == "AUTH00001"
        assert engine.get("u1") is None

    def test_submit_failure_restores_confirmation(self):
        engine = _engine()
        provider = FakeRecordProvider()
        provider.fail_with = unavailable()
        session = _walk_to(engine, "u1", IntakeStep.CONFIRMATION)
        engine.submit_choice(session, "intake:submit")

        with pytest.raises(ProviderError):
            engine.submit(session, provider)

        assert session.step is IntakeStep.CONFIRMATION
        assert engine.get("u1") is session
        assert session.answers.name == "Ada Lovelace"

    def test_submit_requires_confirmation(self):
        engine = _engine()
        session = _walk_to(engine, "u1", IntakeStep.CONFIRMATION)

        with pytest.raises(ValidationError):
            engine.submit(session, FakeRecordProvider())

    def test_submit_keeps_newer_intake(self):
        engine = _engine()
        old = _walk_to(engine, "u1", IntakeStep.CONFIRMATION)
        engine.submit_choice(old, "intake:submit")
        newer = engine.start("u1")

        engine.submit(old, FakeRecordProvider())

        assert engine.get("u1") is newer

    def test_abandoned_intake_expires(self, clock):
        engine = _engine(ttl_seconds=600, clock=clock)
        session = engine.start("u1")
        clock.advance(300)
        engine.submit_text(session, "Ada")
        clock.advance(599)

        assert engine.get("u1") is session
        clock.advance(1)
        assert engine.get("u1") is None

    def test_purge_expired(self, clock):
        engine = _engine(ttl_seconds=600, clock=clock)
        engine.start("u1")
        clock.advance(601)
        engine.start("u2")

        assert engine.purge_expired() == 1
        assert engine.get("u2") is not None

    def test_discard_is_idempotent(self):
        engine = _engine()
        engine.start("u1")
        engine.discard("u1")
        engine.discard("u1")
        assert engine.get("u1") is None


class SlowProvider(FakeRecordProvider):
    """create_entity blocks until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def create_entity(self, fields):
        self.entered.set()
        assert self.release.wait(5)
        return super().create_entity(fields)


class BrokenProvider(FakeRecordProvider):
    def create_entity(self, fields):
        raise RuntimeError("boom")


class TestSubmitConcurrency:
    """The provider call runs outside the user's lock."""

    def _submit_in_background(self, engine, session, provider):
        results = []
        worker = threading.Thread(target=lambda: results.append(engine.submit(session, provider)))
        worker.start()
        assert provider.entered.wait(5)
        return worker, results

    def test_slow_submit_does_not_block_other_users(self):
        engine = _engine()
        # every user on one stripe
        engine._locks = KeyedLocks(stripes=1)
        provider = SlowProvider()
        session = _walk_to(engine, "alice", IntakeStep.CONFIRMATION)
        engine.submit_choice(session, "intake:submit")
        worker, results = self._submit_in_background(engine, session, provider)

        started = threading.Event()

        def start_other():
            engine.start("bob")
            started.set()

        other = threading.Thread(target=start_other)
        other.start()
        try:
            assert started.wait(2)
            assert engine.get("bob").step is IntakeStep.NAME
        finally:
            provider.release.set()
            worker.join(5)
            other.join(5)

        assert results[0].secret_token == "AUTH00001"
        assert engine.get("alice") is None

    def test_second_submit_while_in_flight_is_rejected(self):
        engine = _engine()
        provider = SlowProvider()
        session = _walk_to(engine, "u1", IntakeStep.CONFIRMATION)
        engine.submit_choice(session, "intake:submit")
        worker, _ = self._submit_in_background(engine, session, provider)

        try:
            with pytest.raises(ValidationError) as exc_info:
                engine.submit(session, provider)
        finally:
            provider.release.set()
            worker.join(5)

        assert exc_info.value.reason is ValidationFailure.UNEXPECTED_INPUT
        assert len(provider.created) == 1
        assert not session.submitting

    def test_unexpected_failure_restores_confirmation(self):
        engine = _engine()
        provider = BrokenProvider()
        session = _walk_to(engine, "u1", IntakeStep.CONFIRMATION)
        engine.submit_choice(session, "intake:submit")

        with pytest.raises(RuntimeError):
            engine.submit(session, provider)

        assert session.step is IntakeStep.CONFIRMATION
        assert not session.submitting
        assert engine.get("u1") is session
