"""Routes inbound Telegram messages and button presses onto portal operations.

Security: NEVER log chat ids, message text or auth codes.
"""

from __future__ import annotations

from typing import Callable

from clientportal.core.intake import (
    SKIP_COMMAND,
    ChoiceOutcome,
    IntakeEngine,
    IntakeSession,
    is_intake_token,
)
from clientportal.errors import (
    AuthError,
    AuthFailure,
    DeliveryError,
    NotAuthenticatedError,
    ProviderError,
    ValidationError,
    ValidationFailure,
)
from clientportal.observability.logging import get_logger
from clientportal.observability.redaction import user_log_context
from clientportal.portal import Portal
from clientportal.providers.base import (
    Button,
    ButtonRows,
    FileInfo,
    FileProvider,
    MessagingChannel,
    Record,
    RecordProvider,
    categorize_files,
)
from clientportal.telegram.updates import Inbound, InboundCallback, InboundMessage
from clientportal.templates import render, status_emoji

logger = get_logger(__name__)

FILE_TOKEN_PREFIX = "file:"
MAX_FILE_BUTTONS = 20
# Telegram callback_data limit
MAX_TOKEN_BYTES = 64
MAX_COMPLETED_LISTED = 5
# Bot API upload limit
MAX_DOCUMENT_BYTES = 50 * 1024 * 1024

CLOSED_STATUSES = frozenset({"completed", "cancelled", "closed"})

_FILE_CATEGORY_LABELS = {
    "invoices": ("💰", "Invoices"),
    "contracts": ("📝", "Contracts"),
    "images": ("🖼️", "Images"),
    "documents": ("📄", "Documents"),
    "other": ("📎", "Other"),
}

_FAILURE_TEMPLATES = {
    AuthFailure.NOT_FOUND: "auth_not_found",
    AuthFailure.PROVIDER_UNAVAILABLE: "auth_unavailable",
}

# callback answers are plain text, not HTML
_CALLBACK_NOTICES = {
    ValidationFailure.NONE_SELECTED: "Please select at least one project type.",
    ValidationFailure.UNEXPECTED_INPUT: "This step is already done.",
    ValidationFailure.UNKNOWN_CHOICE: "Unknown action.",
}


def is_closed(record: Record) -> bool:
    return (record.status or "").strip().lower() in CLOSED_STATUSES


def file_token(file_id: str, record_id: str | None = None) -> str:
    """Button token for a download; job files carry their job id."""
    if record_id:
        return f"{FILE_TOKEN_PREFIX}{record_id}:{file_id}"
    return f"{FILE_TOKEN_PREFIX}{file_id}"


def parse_file_token(token: str) -> tuple[str | None, str]:
    """Inverse of file_token: (record id or None, file id)."""
    record_id, _, file_id = token[len(FILE_TOKEN_PREFIX):].rpartition(":")
    return record_id or None, file_id


def _job_line(record: Record) -> str:
    return render(
        "job_line",
        {
            "emoji": status_emoji(record.status),
            "title": record.title,
            "job_id": record.id,
            "status": record.status or "Unknown",
        },
    )


class BotDispatcher:
    """Maps normalized inbound events onto core operations and replies.

    Args:
        portal: Session + subscription facade.
        intake: Intake form engine.
        records: Record provider for jobs, invoices and new clients.
        channel: Outbound messaging channel.
        files: Optional file provider; /files is unavailable without it.
    """

    def __init__(
        self,
        portal: Portal,
        intake: IntakeEngine,
        records: RecordProvider,
        channel: MessagingChannel,
        files: FileProvider | None = None,
    ) -> None:
        self._portal = portal
        self._intake = intake
        self._records = records
        self._channel = channel
        self._files = files
        self._commands: dict[str, Callable[[InboundMessage, str], None]] = {
            "/start": self._cmd_start,
            "/help": self._cmd_help,
            "/auth": self._cmd_auth,
            "/logout": self._cmd_logout,
            "/jobs": self._cmd_jobs,
            "/job": self._cmd_job,
            "/status": self._cmd_status,
            "/invoices": self._cmd_invoices,
            "/invoice": self._cmd_invoice,
            "/files": self._cmd_files,
            "/notifications": self._cmd_notifications,
            "/intake": self._cmd_intake,
            "/skip": self._cmd_skip,
            "/cancel": self._cmd_cancel,
        }

    @property
    def commands(self) -> frozenset[str]:
        return frozenset(self._commands)

    def handle(self, inbound: Inbound) -> None:
        """Process one inbound event. Never raises for user-facing failures."""
        if isinstance(inbound, InboundCallback):
            self._handle_callback(inbound)
        else:
            self._handle_message(inbound)

    # -- messages ----------------------------------------------------------

    def _handle_message(self, msg: InboundMessage) -> None:
        command = ""
        try:
            if msg.is_command:
                command, args = msg.command()
                handler = self._commands.get(command)
                if handler is None:
                    self._reply(msg.chat_id, render("unknown_text"))
                else:
                    handler(msg, args)
            else:
                self._intake_text(msg, msg.text)
        except NotAuthenticatedError:
            self._reply(msg.chat_id, render("auth_required"))
        except ProviderError as e:
            logger.warning(
                "records unavailable for command",
                extra={"extra_fields": user_log_context(msg.user_id, command=command, error_kind=e.kind)},
            )
            self._reply(msg.chat_id, render("provider_unavailable"))
        except DeliveryError as e:
            logger.warning(
                "reply delivery failed",
                extra={"extra_fields": user_log_context(msg.user_id, command=command, failure=e.kind)},
            )
        except Exception:
            logger.exception(
                "message handling crashed",
                extra={"extra_fields": user_log_context(msg.user_id, command=command)},
            )
            self._reply_quietly(msg.chat_id, render("generic_error"))

    def _cmd_start(self, msg: InboundMessage, args: str) -> None:
        self._reply(msg.chat_id, render("welcome"))

    def _cmd_help(self, msg: InboundMessage, args: str) -> None:
        self._reply(msg.chat_id, render("help"))

    def _cmd_auth(self, msg: InboundMessage, args: str) -> None:
        if not args:
            self._reply(msg.chat_id, render("auth_usage"))
            return
        try:
            session = self._portal.login(msg.user_id, args)
        except AuthError as e:
            self._reply(msg.chat_id, render(_FAILURE_TEMPLATES[e.reason]))
            return
        self._reply(msg.chat_id, render("auth_success", {"name": session.entity_name}))

    def _cmd_logout(self, msg: InboundMessage, args: str) -> None:
        self._portal.logout(msg.user_id)
        self._reply(msg.chat_id, render("logged_out"))

    def _own_records(self, msg: InboundMessage) -> list[Record]:
        session = self._portal.require_session(msg.user_id)
        return [r for r in self._records.list_records() if r.owner_id == session.entity_id]

    def _own_record(self, msg: InboundMessage, job_id: str) -> Record | None:
        wanted = job_id.lower()
        return next((j for j in self._own_records(msg) if j.id.lower() == wanted), None)

    def _cmd_jobs(self, msg: InboundMessage, args: str) -> None:
        jobs = self._own_records(msg)
        if not jobs:
            self._reply(msg.chat_id, render("jobs_empty"))
            return

        active = [j for j in jobs if not is_closed(j)]
        closed = [j for j in jobs if is_closed(j)]
        parts = [render("jobs_header", {"count": len(jobs)})]
        if active:
            parts.append(render("jobs_section", {"label": "🔄 Active Jobs", "count": len(active)}))
            parts.extend(_job_line(j) for j in active)
        if closed:
            parts.append(render("jobs_section", {"label": "✅ Completed Jobs", "count": len(closed)}))
            parts.extend(_job_line(j) for j in closed[:MAX_COMPLETED_LISTED])
            if len(closed) > MAX_COMPLETED_LISTED:
                parts.append(render("jobs_more", {"count": len(closed) - MAX_COMPLETED_LISTED}))
        parts.append(render("jobs_hint"))
        self._reply(msg.chat_id, "\n\n".join(parts))

    def _cmd_job(self, msg: InboundMessage, args: str) -> None:
        if not args:
            self._reply(msg.chat_id, render("job_usage"))
            return
        job_id = args.split()[0]
        job = self._own_record(msg, job_id)
        if job is None:
            self._reply(msg.chat_id, render("job_not_found", {"job_id": job_id}))
            return

        lines = [
            render(
                "job_detail",
                {
                    "title": job.title,
                    "job_id": job.id,
                    "emoji": status_emoji(job.status),
                    "status": job.status or "Unknown",
                },
            )
        ]
        if job.priority:
            lines.append(render("line_priority", {"priority": job.priority}))
        if job.deadline:
            lines.append(render("line_deadline", {"deadline": job.deadline}))
        if job.description:
            lines.append("\n" + render("line_description", {"description": job.description}))
        if job.notes:
            lines.append("\n" + render("line_notes", {"notes": job.notes}))
        self._reply(msg.chat_id, "\n".join(lines))

    def _cmd_status(self, msg: InboundMessage, args: str) -> None:
        jobs = self._own_records(msg)
        if not jobs:
            self._reply(msg.chat_id, render("jobs_empty"))
            return
        completed = sum(1 for j in jobs if is_closed(j))
        self._reply(
            msg.chat_id,
            render(
                "status_overview",
                {"active": len(jobs) - completed, "completed": completed, "total": len(jobs)},
            ),
        )

    def _cmd_invoices(self, msg: InboundMessage, args: str) -> None:
        session = self._portal.require_session(msg.user_id)
        invoices = [i for i in self._records.list_invoices() if i.owner_id == session.entity_id]
        if not invoices:
            self._reply(msg.chat_id, render("invoices_empty"))
            return

        # unpaid first
        invoices.sort(key=lambda i: (i.status or "").lower() in ("paid", "cancelled"))
        lines = [render("invoices_header", {"count": len(invoices)}), ""]
        for invoice in invoices:
            lines.append(
                render(
                    "invoice_line",
                    {
                        "number": invoice.number,
                        "amount": invoice.amount or "-",
                        "status": invoice.status or "Unknown",
                        "due": f" (due {invoice.due_date})" if invoice.due_date else "",
                    },
                )
            )
        self._reply(msg.chat_id, "\n".join(lines))

    def _cmd_invoice(self, msg: InboundMessage, args: str) -> None:
        if not args:
            self._reply(msg.chat_id, render("invoice_usage"))
            return
        session = self._portal.require_session(msg.user_id)
        wanted = args.split()[0].lstrip("#")
        invoice = next(
            (
                i
                for i in self._records.list_invoices()
                if i.owner_id == session.entity_id
                and wanted.lower() in (i.number.lower(), i.id.lower())
            ),
            None,
        )
        if invoice is None:
            self._reply(msg.chat_id, render("invoice_not_found", {"number": wanted}))
            return

        lines = [
            render(
                "invoice_detail",
                {
                    "number": invoice.number,
                    "amount": invoice.amount or "-",
                    "status": invoice.status or "Unknown",
                },
            )
        ]
        if invoice.due_date:
            lines.append(render("line_due_date", {"due": invoice.due_date}))
        self._reply(msg.chat_id, "\n".join(lines))

    def _cmd_files(self, msg: InboundMessage, args: str) -> None:
        """/files lists the entity folder; /files <job id> lists that job's folder."""
        session = self._portal.require_session(msg.user_id)
        if self._files is None:
            self._reply(msg.chat_id, render("provider_unavailable"))
            return

        record_id = None
        if args:
            job_id = args.split()[0]
            job = self._own_record(msg, job_id)
            if job is None:
                self._reply(msg.chat_id, render("job_not_found", {"job_id": job_id}))
                return
            record_id = job.id

        files = [f for f in self._files.list_files(session.entity_code, record_id) if not f.is_folder]
        if not files:
            if record_id:
                self._reply(msg.chat_id, render("files_job_empty", {"job_id": record_id}))
            else:
                self._reply(msg.chat_id, render("files_empty"))
            return

        if record_id:
            parts = [render("files_job_header", {"job_id": record_id, "count": len(files)})]
        else:
            parts = [render("files_header", {"count": len(files)})]
        buttons = []
        for category, group in categorize_files(files[:MAX_FILE_BUTTONS]).items():
            if not group:
                continue
            icon, label = _FILE_CATEGORY_LABELS[category]
            parts.append(render("files_category", {"icon": icon, "label": label, "count": len(group)}))
            buttons.extend(self._file_buttons(group, icon, record_id))
        self._reply(msg.chat_id, "\n".join(parts), buttons)

    @staticmethod
    def _file_buttons(files: list[FileInfo], icon: str, record_id: str | None) -> ButtonRows:
        rows = []
        for f in files:
            token = file_token(f.id, record_id)
            if len(token.encode("utf-8")) > MAX_TOKEN_BYTES:
                logger.warning("file token too long, button skipped")
                continue
            rows.append([Button(label=f"{icon} {f.name}", token=token)])
        return rows

    def _cmd_notifications(self, msg: InboundMessage, args: str) -> None:
        action = args.split()[0].lower() if args else ""
        if action == "on":
            self._portal.set_notifications(msg.user_id, True)
            self._reply(msg.chat_id, render("notifications_enabled"))
        elif action == "off":
            self._portal.set_notifications(msg.user_id, False)
            self._reply(msg.chat_id, render("notifications_disabled"))
        elif not action:
            status = self._portal.notification_status(msg.user_id)
            hint = (
                "Use /notifications off to disable."
                if status.subscribed
                else "Use /notifications on to enable."
            )
            self._reply(
                msg.chat_id,
                render(
                    "notifications_status",
                    {
                        "state": "✅ Enabled" if status.subscribed else "❌ Disabled",
                        "name": status.session.entity_name,
                        "hint": hint,
                    },
                ),
            )
        else:
            self._reply(msg.chat_id, render("notifications_invalid", {"action": action}))

    def _cmd_intake(self, msg: InboundMessage, args: str) -> None:
        session = self._intake.start(msg.user_id)
        self._show_intake(session, msg.chat_id, edit=False)

    def _cmd_skip(self, msg: InboundMessage, args: str) -> None:
        self._intake_text(msg, SKIP_COMMAND)

    def _cmd_cancel(self, msg: InboundMessage, args: str) -> None:
        if self._intake.get(msg.user_id) is None:
            self._reply(msg.chat_id, render("intake_none"))
            return
        self._intake.discard(msg.user_id)
        self._reply(msg.chat_id, render("intake_cancelled"))

    def _intake_text(self, msg: InboundMessage, text: str) -> None:
        session = self._intake.get(msg.user_id)
        if session is None:
            template = "intake_none" if text == SKIP_COMMAND else "unknown_text"
            self._reply(msg.chat_id, render(template))
            return
        try:
            self._intake.submit_text(session, text)
        except ValidationError as e:
            self._reply(msg.chat_id, render(f"validation_{e.reason.value}"))
            return
        # the user's answer pushed the form up, so render below it
        self._show_intake(session, msg.chat_id, edit=False)

    # -- callbacks ---------------------------------------------------------

    def _handle_callback(self, cb: InboundCallback) -> None:
        answered = False

        def answer(text: str | None = None, alert: bool = False) -> None:
            nonlocal answered
            answered = True
            self._channel.answer_interaction(cb.interaction_id, text, alert)

        try:
            if is_intake_token(cb.token):
                self._intake_choice(cb, answer)
            elif cb.token.startswith(FILE_TOKEN_PREFIX):
                self._file_download(cb, answer)
            else:
                answer(_CALLBACK_NOTICES[ValidationFailure.UNKNOWN_CHOICE])
        except NotAuthenticatedError:
            self._reply_quietly(cb.chat_id, render("auth_required"))
        except ProviderError as e:
            logger.warning(
                "records unavailable for callback",
                extra={"extra_fields": user_log_context(cb.user_id, error_kind=e.kind)},
            )
            self._reply_quietly(cb.chat_id, render("provider_unavailable"))
        except DeliveryError as e:
            logger.warning(
                "callback reply failed",
                extra={"extra_fields": user_log_context(cb.user_id, failure=e.kind)},
            )
        except Exception:
            logger.exception(
                "callback handling crashed",
                extra={"extra_fields": user_log_context(cb.user_id)},
            )
            self._reply_quietly(cb.chat_id, render("generic_error"))
        finally:
            if not answered:
                try:
                    self._channel.answer_interaction(cb.interaction_id)
                except DeliveryError:
                    logger.warning(
                        "callback answer failed",
                        extra={"extra_fields": user_log_context(cb.user_id)},
                    )

    def _intake_choice(self, cb: InboundCallback, answer: Callable[..., None]) -> None:
        session = self._intake.get(cb.user_id)
        if session is None:
            answer("There is no intake form in progress. Send /intake to start one.", True)
            return
        if cb.message_id and session.message_id is None:
            self._intake.remember_message(session, cb.message_id)

        try:
            outcome = self._intake.submit_choice(session, cb.token)
        except ValidationError as e:
            answer(_CALLBACK_NOTICES.get(e.reason), e.reason is ValidationFailure.NONE_SELECTED)
            return

        answer()
        if outcome is ChoiceOutcome.CANCEL:
            self._edit_or_send(session, cb.chat_id, render("intake_cancelled"))
            return
        if outcome is ChoiceOutcome.SUBMIT:
            self._submit_intake(session, cb.chat_id)
            return
        self._show_intake(session, cb.chat_id, edit=True)

    def _submit_intake(self, session: IntakeSession, chat_id: str) -> None:
        # the "submitting" notice is best-effort; the submission runs regardless
        try:
            self._show_intake(session, chat_id, edit=True)
        except DeliveryError as e:
            logger.warning(
                "intake submitting notice failed",
                extra={"extra_fields": user_log_context(session.user_id, failure=e.kind)},
            )
        try:
            ref = self._intake.submit(session, self._records)
        except ProviderError:
            self._reply(chat_id, render("intake_submit_failed"))
            self._show_intake(session, chat_id, edit=False)
            return
        self._edit_or_send(
            session, chat_id, render("intake_submitted", {"auth_code": ref.secret_token})
        )

    def _file_download(self, cb: InboundCallback, answer: Callable[..., None]) -> None:
        session = self._portal.require_session(cb.user_id)
        if self._files is None:
            answer()
            self._reply(cb.chat_id, render("provider_unavailable"))
            return

        record_id, file_id = parse_file_token(cb.token)
        # only files in the caller's own folder (or a job folder under it) can be fetched
        owned = {
            f.id: f
            for f in self._files.list_files(session.entity_code, record_id)
            if not f.is_folder
        }
        info = owned.get(file_id)
        answer()
        if info is None:
            self._reply(cb.chat_id, render("file_not_found"))
            return
        if info.size is not None and info.size > MAX_DOCUMENT_BYTES:
            self._reply(cb.chat_id, render("file_too_large", {"name": info.name}))
            return

        downloaded = self._files.download_file(file_id)
        self._channel.send_document(cb.chat_id, downloaded.data, downloaded.name)
        logger.info(
            "file sent",
            extra={"extra_fields": user_log_context(cb.user_id, size=len(downloaded.data))},
        )

    # -- presentation ------------------------------------------------------

    def _show_intake(self, session: IntakeSession, chat_id: str, edit: bool) -> None:
        rendered = self._intake.render(session)
        if edit:
            self._edit_or_send(session, chat_id, rendered.text, rendered.buttons)
            return
        message_id = self._reply(chat_id, rendered.text, rendered.buttons)
        self._intake.remember_message(session, message_id)

    def _edit_or_send(
        self,
        session: IntakeSession,
        chat_id: str,
        text: str,
        buttons: ButtonRows | None = None,
    ) -> None:
        """Edit the last rendered intake message; send a new one if that fails."""
        if session.message_id:
            try:
                self._channel.edit_message(chat_id, session.message_id, text, buttons)
                return
            except DeliveryError as e:
                if e.is_permanent:
                    raise
                logger.info(
                    "intake edit failed, sending new message",
                    extra={"extra_fields": user_log_context(session.user_id)},
                )
        message_id = self._reply(chat_id, text, buttons)
        self._intake.remember_message(session, message_id)

    def _reply(self, chat_id: str, text: str, buttons: ButtonRows | None = None) -> str | None:
        return self._channel.send_message(chat_id, text, buttons)

    def _reply_quietly(self, chat_id: str, text: str) -> None:
        try:
            self._channel.send_message(chat_id, text)
        except DeliveryError:
            logger.warning("fallback reply failed")
