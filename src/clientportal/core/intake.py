"""Client intake form - a multi-turn conversational state machine.

Steps run in a fixed order. PROJECT_TYPE is the only re-entrant step:
toggles keep the user there until an explicit continue. Transitions are
driven by the TRANSITIONS table keyed by (step, input kind); anything not in
the table is rejected without changing state.

Security: answers contain PII (name, email, phone). NEVER log them.
"""

from __future__ import annotations

import html
import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from clientportal.errors import ProviderError, ValidationError, ValidationFailure
from clientportal.infra.locks import KeyedLocks
from clientportal.infra.time import Clock, is_expired, utc_now
from clientportal.observability.logging import get_logger
from clientportal.observability.redaction import user_log_context
from clientportal.providers.base import Button, EntityRef, RecordProvider

logger = get_logger(__name__)


class IntakeStep(str, Enum):
    NAME = "name"
    EMAIL = "email"
    COMPANY = "company"
    PHONE = "phone"
    PROJECT_TYPE = "project_type"
    PROJECT_GOAL = "project_goal"
    TIMEFRAME = "timeframe"
    BUDGET = "budget"
    ADDITIONAL_INFO = "additional_info"
    CONFIRMATION = "confirmation"
    SUBMITTED = "submitted"
    CANCELLED = "cancelled"


class InputKind(str, Enum):
    TEXT = "text"
    TOGGLE_TYPE = "toggle_type"
    CONTINUE = "continue"
    TIMEFRAME = "timeframe"
    BUDGET = "budget"
    SUBMIT = "submit"
    CANCEL = "cancel"


class ChoiceOutcome(str, Enum):
    REFRESH = "refresh"  # same step, re-render
    ADVANCED = "advanced"
    SUBMIT = "submit"
    CANCEL = "cancel"


TRANSITIONS: dict[tuple[IntakeStep, InputKind], IntakeStep] = {
    (IntakeStep.NAME, InputKind.TEXT): IntakeStep.EMAIL,
    (IntakeStep.EMAIL, InputKind.TEXT): IntakeStep.COMPANY,
    (IntakeStep.COMPANY, InputKind.TEXT): IntakeStep.PHONE,
    (IntakeStep.PHONE, InputKind.TEXT): IntakeStep.PROJECT_TYPE,
    (IntakeStep.PROJECT_TYPE, InputKind.TOGGLE_TYPE): IntakeStep.PROJECT_TYPE,
    (IntakeStep.PROJECT_TYPE, InputKind.CONTINUE): IntakeStep.PROJECT_GOAL,
    (IntakeStep.PROJECT_GOAL, InputKind.TEXT): IntakeStep.TIMEFRAME,
    (IntakeStep.TIMEFRAME, InputKind.TIMEFRAME): IntakeStep.BUDGET,
    (IntakeStep.BUDGET, InputKind.BUDGET): IntakeStep.ADDITIONAL_INFO,
    (IntakeStep.ADDITIONAL_INFO, InputKind.TEXT): IntakeStep.CONFIRMATION,
    (IntakeStep.CONFIRMATION, InputKind.SUBMIT): IntakeStep.SUBMITTED,
    (IntakeStep.CONFIRMATION, InputKind.CANCEL): IntakeStep.CANCELLED,
}

TERMINAL_STEPS = frozenset({IntakeStep.SUBMITTED, IntakeStep.CANCELLED})

# Choice catalogues: token key -> label. Order is display order.
PROJECT_TYPES: dict[str, str] = {
    "web": "Web/Mobile Development",
    "web3": "Web3 Development",
    "animation": "2D/3D Animation",
    "art": "Digital Art/Graphics",
    "mixed": "Mixed Media",
}

TIMEFRAMES: dict[str, str] = {
    "asap": "ASAP",
    "1month": "Within 1 month",
    "3months": "1-3 months",
    "6months": "3-6 months",
    "6plus": "6+ months",
    "flexible": "Flexible",
}

BUDGETS: dict[str, str] = {
    "5k": "Under $5,000",
    "15k": "$5,000 - $15,000",
    "50k": "$15,000 - $50,000",
    "100k": "$50,000 - $100,000",
    "100k_plus": "Over $100,000",
}

TOKEN_PREFIX = "intake:"
SKIP_COMMAND = "/skip"

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_AUTH_CODE_ALPHABET = string.ascii_uppercase + string.digits
AUTH_CODE_LENGTH = 9

GOAL_PREVIEW_CHARS = 50


def generate_auth_code() -> str:
    """Random auth code handed to a newly created client."""
    return "".join(secrets.choice(_AUTH_CODE_ALPHABET) for _ in range(AUTH_CODE_LENGTH))


@dataclass
class IntakeAnswers:
    """Answers accepted so far. Optional fields stay "" until answered."""

    name: str = ""
    email: str = ""
    company: str = ""
    phone: str = ""
    project_types: set[str] = field(default_factory=set)
    project_goal: str = ""
    timeframe: str = ""
    budget: str = ""
    additional_info: str = ""

    def ordered_project_types(self) -> list[str]:
        """Selected labels in catalogue order."""
        return [label for label in PROJECT_TYPES.values() if label in self.project_types]

    def to_fields(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "company": self.company,
            "phone": self.phone,
            "project_types": self.ordered_project_types(),
            "project_goal": self.project_goal,
            "timeframe": self.timeframe,
            "budget": self.budget,
            "additional_info": self.additional_info,
        }


@dataclass
class IntakeSession:
    """One user's in-progress intake."""

    user_id: str
    step: IntakeStep = IntakeStep.NAME
    answers: IntakeAnswers = field(default_factory=IntakeAnswers)
    message_id: str | None = None
    # set while the answers are out at the record provider
    submitting: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS


@dataclass(frozen=True)
class RenderedStep:
    """Display payload for the current step."""

    text: str
    buttons: list[list[Button]] = field(default_factory=list)
    expects_text: bool = False


# ---------------------------------------------------------------------------
# Text validation
# ---------------------------------------------------------------------------

def _required(text: str) -> str:
    if not text:
        raise ValidationError(ValidationFailure.EMPTY)
    return text


def _email(text: str) -> str:
    if not _EMAIL_PATTERN.match(text):
        raise ValidationError(ValidationFailure.INVALID_FORMAT)
    return text


def _optional(text: str) -> str:
    return text


# step -> (answers attribute, validator)
_TEXT_FIELDS: dict[IntakeStep, tuple[str, Callable[[str], str]]] = {
    IntakeStep.NAME: ("name", _required),
    IntakeStep.EMAIL: ("email", _email),
    IntakeStep.COMPANY: ("company", _optional),
    IntakeStep.PHONE: ("phone", _optional),
    IntakeStep.PROJECT_GOAL: ("project_goal", _required),
    IntakeStep.ADDITIONAL_INFO: ("additional_info", _optional),
}


def _clean_text(text: str | None) -> str:
    cleaned = (text or "").strip()
    if cleaned.lower() == SKIP_COMMAND:
        return ""
    return cleaned


# ---------------------------------------------------------------------------
# Choice tokens
# ---------------------------------------------------------------------------

def choice_token(kind: InputKind, key: str | None = None) -> str:
    """Encode a button token, e.g. intake:type:web or intake:submit."""
    short = {
        InputKind.TOGGLE_TYPE: "type",
        InputKind.TIMEFRAME: "time",
        InputKind.BUDGET: "budget",
    }.get(kind, kind.value)
    return f"{TOKEN_PREFIX}{short}:{key}" if key else f"{TOKEN_PREFIX}{short}"


def is_intake_token(token: str) -> bool:
    return token.startswith(TOKEN_PREFIX)


def decode_choice(token: str) -> tuple[InputKind, str | None]:
    """Decode a button token into (input kind, label).

    Raises:
        ValidationError: UNKNOWN_CHOICE for tokens outside the catalogues.
    """
    if not is_intake_token(token):
        raise ValidationError(ValidationFailure.UNKNOWN_CHOICE)
    parts = token[len(TOKEN_PREFIX):].split(":", 1)
    head, key = parts[0], (parts[1] if len(parts) > 1 else None)

    if key is None:
        simple = {
            "continue": InputKind.CONTINUE,
            "submit": InputKind.SUBMIT,
            "cancel": InputKind.CANCEL,
        }
        if head in simple:
            return simple[head], None
        raise ValidationError(ValidationFailure.UNKNOWN_CHOICE)

    catalogues: dict[str, tuple[InputKind, dict[str, str]]] = {
        "type": (InputKind.TOGGLE_TYPE, PROJECT_TYPES),
        "time": (InputKind.TIMEFRAME, TIMEFRAMES),
        "budget": (InputKind.BUDGET, BUDGETS),
    }
    if head in catalogues:
        kind, catalogue = catalogues[head]
        if key in catalogue:
            return kind, catalogue[key]
    raise ValidationError(ValidationFailure.UNKNOWN_CHOICE)


def _next_step(step: IntakeStep, kind: InputKind) -> IntakeStep:
    try:
        return TRANSITIONS[(step, kind)]
    except KeyError:
        raise ValidationError(ValidationFailure.UNEXPECTED_INPUT) from None


# ---------------------------------------------------------------------------
# Rendering (pure)
# ---------------------------------------------------------------------------

_STEP_ORDER = [
    IntakeStep.NAME,
    IntakeStep.EMAIL,
    IntakeStep.COMPANY,
    IntakeStep.PHONE,
    IntakeStep.PROJECT_TYPE,
    IntakeStep.PROJECT_GOAL,
    IntakeStep.TIMEFRAME,
    IntakeStep.BUDGET,
    IntakeStep.ADDITIONAL_INFO,
    IntakeStep.CONFIRMATION,
]

_PROMPTS: dict[IntakeStep, str] = {
    IntakeStep.NAME: "📝 <b>Client Intake Form</b>\n\n<b>What's your full name?</b> *\n\n<i>Please type your name below.</i>",
    IntakeStep.EMAIL: "📧 <b>What's your email address?</b> *\n\n<i>Please type your email below.</i>",
    IntakeStep.COMPANY: "🏢 <b>Company name</b> (optional)\n\n<i>Type your company name or send /skip to skip.</i>",
    IntakeStep.PHONE: "📱 <b>Phone number</b> (optional)\n\n<i>Type your phone number or send /skip to skip.</i>",
    IntakeStep.PROJECT_TYPE: "🎯 <b>Project Type</b> * (select all that apply)\n\n<i>Choose your project type(s):</i>",
    IntakeStep.PROJECT_GOAL: "🎯 <b>What's your project goal?</b> *\n\n<i>Please describe what you want to achieve.</i>",
    IntakeStep.TIMEFRAME: "⏰ <b>Project Timeframe</b> *\n\n<i>When do you need this completed?</i>",
    IntakeStep.BUDGET: "💰 <b>Project Budget</b> *\n\n<i>What's your budget range?</i>",
    IntakeStep.ADDITIONAL_INFO: "📋 <b>Additional Information</b> (optional)\n\n<i>Any other details about your project? Type your message or send /skip to skip.</i>",
}


def _preview(text: str, limit: int = GOAL_PREVIEW_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _progress_lines(session: IntakeSession) -> list[str]:
    """One line per accepted answer for steps already completed."""
    answers = session.answers
    position = _STEP_ORDER.index(session.step)

    def done(step: IntakeStep) -> bool:
        return _STEP_ORDER.index(step) < position

    esc = html.escape
    lines: list[str] = []
    if done(IntakeStep.NAME):
        lines.append(f"✅ Name: {esc(answers.name)}")
    if done(IntakeStep.EMAIL):
        lines.append(f"✅ Email: {esc(answers.email)}")
    if done(IntakeStep.COMPANY) and answers.company:
        lines.append(f"✅ Company: {esc(answers.company)}")
    if done(IntakeStep.PHONE) and answers.phone:
        lines.append(f"✅ Phone: {esc(answers.phone)}")
    if done(IntakeStep.PROJECT_TYPE):
        lines.append(f"✅ Project Type(s): {esc(', '.join(answers.ordered_project_types()))}")
    if done(IntakeStep.PROJECT_GOAL):
        lines.append(f"✅ Project Goal: {esc(_preview(answers.project_goal))}")
    if done(IntakeStep.TIMEFRAME):
        lines.append(f"✅ Timeframe: {esc(answers.timeframe)}")
    if done(IntakeStep.BUDGET):
        lines.append(f"✅ Budget: {esc(answers.budget)}")
    return lines


def _confirmation_text(answers: IntakeAnswers) -> str:
    esc = html.escape
    lines = [
        "🎉 <b>Review Your Information</b>",
        "",
        f"👤 <b>Name:</b> {esc(answers.name)}",
        f"📧 <b>Email:</b> {esc(answers.email)}",
    ]
    if answers.company:
        lines.append(f"🏢 <b>Company:</b> {esc(answers.company)}")
    if answers.phone:
        lines.append(f"📱 <b>Phone:</b> {esc(answers.phone)}")
    lines.append(f"🎯 <b>Project Type(s):</b> {esc(', '.join(answers.ordered_project_types()))}")
    lines.append(f"📝 <b>Project Goal:</b> {esc(answers.project_goal)}")
    lines.append(f"⏰ <b>Timeframe:</b> {esc(answers.timeframe)}")
    lines.append(f"💰 <b>Budget:</b> {esc(answers.budget)}")
    if answers.additional_info:
        lines.append(f"📋 <b>Additional Info:</b> {esc(answers.additional_info)}")
    lines.extend(["", "<i>Is this information correct?</i>"])
    return "\n".join(lines)


def _buttons(session: IntakeSession) -> list[list[Button]]:
    step = session.step
    if step is IntakeStep.PROJECT_TYPE:
        selected = session.answers.project_types
        rows = [
            [Button(("✔️ " if label in selected else "") + label, choice_token(InputKind.TOGGLE_TYPE, key))]
            for key, label in PROJECT_TYPES.items()
        ]
        rows.append([Button("✅ Continue", choice_token(InputKind.CONTINUE))])
        return rows
    if step is IntakeStep.TIMEFRAME:
        return [[Button(label, choice_token(InputKind.TIMEFRAME, key))] for key, label in TIMEFRAMES.items()]
    if step is IntakeStep.BUDGET:
        return [[Button(label, choice_token(InputKind.BUDGET, key))] for key, label in BUDGETS.items()]
    if step is IntakeStep.CONFIRMATION:
        return [[
            Button("✅ Submit", choice_token(InputKind.SUBMIT)),
            Button("❌ Cancel", choice_token(InputKind.CANCEL)),
        ]]
    return []


def render_step(session: IntakeSession) -> RenderedStep:
    """Build the display payload for the session's current step.

    Echoes every accepted answer; unanswered optional fields are omitted.
    """
    if session.step is IntakeStep.SUBMITTED:
        return RenderedStep(text="⏳ Submitting your information...")
    if session.step is IntakeStep.CANCELLED:
        return RenderedStep(text="❌ Intake form cancelled.")
    if session.step is IntakeStep.CONFIRMATION:
        return RenderedStep(text=_confirmation_text(session.answers), buttons=_buttons(session))

    progress = _progress_lines(session)
    prompt = _PROMPTS[session.step]
    text = "\n".join(progress) + "\n\n" + prompt if progress else prompt
    return RenderedStep(
        text=text,
        buttons=_buttons(session),
        expects_text=session.step in _TEXT_FIELDS,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class IntakeEngine:
    """Owns every user's intake session.

    At most one intake per user. Mutations of a session run under that
    user's lock so a user's own turns are applied in order.

    Args:
        ttl_seconds: Idle time after which an intake counts as abandoned.
            None disables expiry.
        clock: Injectable clock (tests).
        auth_code_factory: Generates the auth code for newly created clients.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        clock: Clock = utc_now,
        auth_code_factory: Callable[[], str] = generate_auth_code,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._auth_code_factory = auth_code_factory
        self._sessions: dict[str, IntakeSession] = {}
        self._locks = KeyedLocks()

    def start(self, user_id: str) -> IntakeSession:
        """Begin a fresh intake at NAME, replacing any prior one."""
        now = self._clock()
        session = IntakeSession(user_id=user_id, created_at=now, updated_at=now)
        with self._locks.hold(user_id):
            replaced = user_id in self._sessions
            self._sessions[user_id] = session
        logger.info(
            "intake started",
            extra={"extra_fields": user_log_context(user_id, replaced=replaced)},
        )
        return session

    def get(self, user_id: str) -> IntakeSession | None:
        """Return the user's active intake, or None (abandoned ones are dropped)."""
        with self._locks.hold(user_id):
            session = self._sessions.get(user_id)
            if session is None:
                return None
            if is_expired(session.updated_at, self._ttl_seconds, self._clock()):
                del self._sessions[user_id]
                logger.info(
                    "intake abandoned",
                    extra={"extra_fields": user_log_context(user_id, step=session.step)},
                )
                return None
            return session

    def submit_text(self, session: IntakeSession, text: str | None) -> None:
        """Apply free-text input to the current step and advance.

        Raises:
            ValidationError: EMPTY, INVALID_FORMAT, or UNEXPECTED_INPUT when
                the current step does not take text. State is unchanged.
        """
        with self._locks.hold(session.user_id):
            if session.step not in _TEXT_FIELDS:
                raise ValidationError(ValidationFailure.UNEXPECTED_INPUT)
            attr, validate = _TEXT_FIELDS[session.step]
            value = validate(_clean_text(text))
            next_step = _next_step(session.step, InputKind.TEXT)
            setattr(session.answers, attr, value)
            self._advance(session, next_step)

    def submit_choice(self, session: IntakeSession, token: str) -> ChoiceOutcome:
        """Apply a button press.

        Returns:
            REFRESH for project-type toggles, ADVANCED when the step moved on,
            SUBMIT / CANCEL for the confirmation actions. A cancelled session
            is discarded immediately.

        Raises:
            ValidationError: UNKNOWN_CHOICE, UNEXPECTED_INPUT (right token at
                the wrong step), NONE_SELECTED (continue with no types).
        """
        kind, label = decode_choice(token)
        with self._locks.hold(session.user_id):
            next_step = _next_step(session.step, kind)
            answers = session.answers

            if kind is InputKind.TOGGLE_TYPE:
                # symmetric difference: select if absent, deselect if present
                answers.project_types ^= {label}
                session.updated_at = self._clock()
                return ChoiceOutcome.REFRESH

            if kind is InputKind.CONTINUE and not answers.project_types:
                raise ValidationError(ValidationFailure.NONE_SELECTED)
            if kind is InputKind.TIMEFRAME:
                answers.timeframe = label or ""
            elif kind is InputKind.BUDGET:
                answers.budget = label or ""

            self._advance(session, next_step)

            if kind is InputKind.SUBMIT:
                return ChoiceOutcome.SUBMIT
            if kind is InputKind.CANCEL:
                self._drop(session)
                logger.info(
                    "intake cancelled",
                    extra={"extra_fields": user_log_context(session.user_id)},
                )
                return ChoiceOutcome.CANCEL
            return ChoiceOutcome.ADVANCED

    def render(self, session: IntakeSession) -> RenderedStep:
        return render_step(session)

    def remember_message(self, session: IntakeSession, message_id: str | None) -> None:
        """Record the id of the last rendered message so it can be edited in place."""
        with self._locks.hold(session.user_id):
            session.message_id = message_id

    def submit(self, session: IntakeSession, provider: RecordProvider) -> EntityRef:
        """Hand the finished answers to the record provider.

        The session must have been confirmed (step SUBMITTED). The user's lock
        is released while the provider call is in flight; a second submit of
        the same session meanwhile is rejected. On failure the session goes
        back to CONFIRMATION and is kept so the user can retry without
        re-entering anything.

        Raises:
            ValidationError: UNEXPECTED_INPUT if the session was not confirmed
                or is already being submitted.
            ProviderError: If creating the entity failed (retryable).
        """
        with self._locks.hold(session.user_id):
            if session.step is not IntakeStep.SUBMITTED or session.submitting:
                raise ValidationError(ValidationFailure.UNEXPECTED_INPUT)
            session.submitting = True
            fields = session.answers.to_fields()
        fields["auth_code"] = self._auth_code_factory()

        ref: EntityRef | None = None
        try:
            ref = provider.create_entity(fields)
        except ProviderError as e:
            logger.warning(
                "intake submission failed",
                extra={"extra_fields": user_log_context(session.user_id, error_kind=e.kind)},
            )
            raise
        finally:
            with self._locks.hold(session.user_id):
                session.submitting = False
                if ref is None:
                    session.step = IntakeStep.CONFIRMATION
                    session.updated_at = self._clock()
                else:
                    self._drop(session)

        logger.info(
            "intake submitted",
            extra={"extra_fields": user_log_context(session.user_id, entity_id=ref.id)},
        )
        return ref

    def discard(self, user_id: str) -> None:
        """Drop the user's intake. No-op if absent."""
        with self._locks.hold(user_id):
            self._sessions.pop(user_id, None)

    def purge_expired(self) -> int:
        """Drop abandoned intakes. Returns the number removed."""
        if not self._ttl_seconds:
            return 0
        now = self._clock()
        removed = 0
        for user_id in list(self._sessions):
            with self._locks.hold(user_id):
                session = self._sessions.get(user_id)
                if session is not None and is_expired(session.updated_at, self._ttl_seconds, now):
                    del self._sessions[user_id]
                    removed += 1
        if removed:
            logger.info("abandoned intakes purged", extra={"extra_fields": {"count": removed}})
        return removed

    def _advance(self, session: IntakeSession, next_step: IntakeStep) -> None:
        session.step = next_step
        session.updated_at = self._clock()

    def _drop(self, session: IntakeSession) -> None:
        # a newer intake started by the same user must survive
        if self._sessions.get(session.user_id) is session:
            del self._sessions[session.user_id]

    def __len__(self) -> int:
        return len(self._sessions)
