"""Message templates for notifications and bot replies.

Templates are Telegram HTML. Parameters are escaped at render time, so
values from the record store or from users can never inject markup.
"""

import html
from typing import Any

TEMPLATES: dict[str, dict[str, Any]] = {
    # -- notifications ------------------------------------------------------
    "job_created": {
        "text": "🆕 <b>New Job Created</b>\n\n📋 <b>{title}</b> ({job_id})\n📊 Status: {status}",
        "allowed_params": ["title", "job_id", "status"],
    },
    "job_status_changed": {
        "text": (
            "{emoji} <b>Job Status Updated</b>\n\n"
            "📋 <b>{title}</b> ({job_id})\n"
            "📊 Status: {old_status} → <b>{new_status}</b>"
        ),
        "allowed_params": ["emoji", "title", "job_id", "old_status", "new_status"],
    },
    "job_removed": {
        "text": "🗑️ <b>Job Removed</b>\n\n📋 <b>{title}</b> ({job_id}) is no longer listed.",
        "allowed_params": ["title", "job_id"],
    },
    "line_deadline": {"text": "📅 Deadline: {deadline}", "allowed_params": ["deadline"]},
    "line_description": {"text": "📝 {description}", "allowed_params": ["description"]},
    "milestone_progress": {"text": "🚀 Work has begun on your project!", "allowed_params": []},
    "milestone_review": {"text": "👀 Your project is ready for review!", "allowed_params": []},
    "milestone_completed": {"text": "🎉 Your project has been completed!", "allowed_params": []},
    # -- authentication -----------------------------------------------------
    "welcome": {
        "text": (
            "🤖 <b>Welcome to the Client Portal!</b>\n\n"
            "Track your project progress, view job status, check invoices and "
            "get notified about updates.\n\n"
            "🔐 Authenticate with your unique auth code: <code>/auth ABC123XYZ</code>\n"
            "🆕 New client? Send /intake to tell us about your project.\n\n"
            "Use /help to see all commands."
        ),
        "allowed_params": [],
    },
    "help": {
        "text": (
            "📋 <b>Available Commands</b>\n\n"
            "🔐 /auth &lt;code&gt; - sign in with your auth code\n"
            "👋 /logout - sign out\n"
            "📊 /jobs - all your jobs\n"
            "🔎 /job &lt;id&gt; - details of one job\n"
            "📈 /status - quick status overview\n"
            "💰 /invoices - your invoices\n"
            "🧾 /invoice &lt;number&gt; - details of one invoice\n"
            "📎 /files [job id] - your project files, or one job's files\n"
            "🔔 /notifications [on|off] - notification settings\n"
            "🆕 /intake - new client intake form\n"
            "❓ /help - this message"
        ),
        "allowed_params": [],
    },
    "auth_usage": {
        "text": "🔑 Send your auth code like this: <code>/auth ABC123XYZ</code>",
        "allowed_params": [],
    },
    "auth_success": {
        "text": (
            "✅ Welcome {name}! You've been authenticated successfully.\n\n"
            "🔔 Notifications enabled! You'll receive updates when your job status changes."
        ),
        "allowed_params": ["name"],
    },
    "auth_not_found": {
        "text": (
            "❌ Authentication failed. Please use your unique auth code.\n\n"
            "🔑 You should have received your auth code from us."
        ),
        "allowed_params": [],
    },
    "auth_unavailable": {
        "text": "❌ Authentication failed. Please try again later.",
        "allowed_params": [],
    },
    "auth_required": {
        "text": (
            "🔐 You need to authenticate first. Send /auth followed by your unique auth code.\n\n"
            "Example: <code>/auth ABC123XYZ</code>"
        ),
        "allowed_params": [],
    },
    "logged_out": {
        "text": "👋 You have been logged out successfully.\n\nUse <code>/auth &lt;code&gt;</code> to sign in again.",
        "allowed_params": [],
    },
    # -- notification settings ----------------------------------------------
    "notifications_status": {
        "text": (
            "🔔 <b>Notification Settings</b>\n\n"
            "📊 <b>Current Status:</b> {state}\n"
            "👤 <b>Client:</b> {name}\n\n"
            "{hint}"
        ),
        "allowed_params": ["state", "name", "hint"],
    },
    "notifications_enabled": {
        "text": (
            "🔔 <b>Notifications Enabled</b>\n\n"
            "You'll now receive updates about new jobs, status changes and milestones."
        ),
        "allowed_params": [],
    },
    "notifications_disabled": {
        "text": "🔕 <b>Notifications Disabled</b>\n\nUse /notifications on to re-enable anytime.",
        "allowed_params": [],
    },
    "notifications_invalid": {
        "text": "❌ Invalid action \"{action}\". Use /notifications, /notifications on or /notifications off.",
        "allowed_params": ["action"],
    },
    # -- records --------------------------------------------------------------
    "jobs_header": {"text": "📋 <b>Your Jobs</b> ({count} total)", "allowed_params": ["count"]},
    "jobs_empty": {"text": "📋 No jobs found for your account.", "allowed_params": []},
    "jobs_section": {"text": "<b>{label} ({count}):</b>", "allowed_params": ["label", "count"]},
    "jobs_more": {"text": "... and {count} more", "allowed_params": ["count"]},
    "jobs_hint": {"text": "💡 Use <code>/job &lt;id&gt;</code> to see details of a job", "allowed_params": []},
    "job_line": {
        "text": "{emoji} <b>{title}</b> ({job_id})\n   Status: {status}",
        "allowed_params": ["emoji", "title", "job_id", "status"],
    },
    "job_usage": {"text": "🔎 Usage: <code>/job &lt;id&gt;</code>", "allowed_params": []},
    "job_not_found": {"text": "❌ Job {job_id} not found.", "allowed_params": ["job_id"]},
    "job_detail": {
        "text": "🛠️ <b>{title}</b>\n\n📋 ID: {job_id}\n📊 Status: {emoji} {status}",
        "allowed_params": ["title", "job_id", "emoji", "status"],
    },
    "line_priority": {"text": "⚡ Priority: {priority}", "allowed_params": ["priority"]},
    "line_notes": {"text": "💬 <b>Notes:</b>\n{notes}", "allowed_params": ["notes"]},
    "status_overview": {
        "text": "📈 <b>Status Overview</b>\n\n🔄 Active: {active}\n✅ Completed: {completed}\n📊 Total: {total}",
        "allowed_params": ["active", "completed", "total"],
    },
    "invoices_empty": {"text": "💰 No invoices found for your account.", "allowed_params": []},
    "invoices_header": {"text": "💰 <b>Your Invoices</b> ({count})", "allowed_params": ["count"]},
    "invoice_line": {
        "text": "🧾 <b>#{number}</b> {amount} - {status}{due}",
        "allowed_params": ["number", "amount", "status", "due"],
    },
    "invoice_usage": {"text": "🧾 Usage: <code>/invoice &lt;number&gt;</code>", "allowed_params": []},
    "invoice_not_found": {"text": "❌ Invoice {number} not found.", "allowed_params": ["number"]},
    "invoice_detail": {
        "text": "🧾 <b>Invoice #{number}</b>\n\n💰 <b>Amount:</b> {amount}\n📊 <b>Status:</b> {status}",
        "allowed_params": ["number", "amount", "status"],
    },
    "line_due_date": {"text": "📅 <b>Due Date:</b> {due}", "allowed_params": ["due"]},
    "files_empty": {"text": "📎 No files found in your folder.", "allowed_params": []},
    "files_header": {
        "text": "📎 <b>Your Files</b> ({count})\n\nTap a file to download it.",
        "allowed_params": ["count"],
    },
    "files_job_empty": {"text": "📎 No files found for job {job_id}.", "allowed_params": ["job_id"]},
    "files_job_header": {
        "text": "📎 <b>Files for Job {job_id}</b> ({count})\n\nTap a file to download it.",
        "allowed_params": ["job_id", "count"],
    },
    "files_category": {"text": "{icon} <b>{label}</b> ({count})", "allowed_params": ["icon", "label", "count"]},
    "file_not_found": {"text": "❌ That file is no longer available.", "allowed_params": []},
    "file_too_large": {
        "text": "⚠️ <b>{name}</b> is too large to send here. Please ask us for a link.",
        "allowed_params": ["name"],
    },
    # -- intake -----------------------------------------------------------
    "intake_submitted": {
        "text": (
            "🎉 <b>Thank you!</b> Your information has been submitted.\n\n"
            "🔑 Your auth code is <code>{auth_code}</code>. Keep it safe: use "
            "<code>/auth {auth_code}</code> to follow your projects."
        ),
        "allowed_params": ["auth_code"],
    },
    "intake_submit_failed": {
        "text": "⚠️ We couldn't save your information right now. Your answers are kept, please press Submit again in a moment.",
        "allowed_params": [],
    },
    "intake_cancelled": {"text": "❌ Intake form cancelled.", "allowed_params": []},
    "intake_none": {
        "text": "ℹ️ There is no intake form in progress. Send /intake to start one.",
        "allowed_params": [],
    },
    "validation_empty": {"text": "⚠️ This field is required, please type a value.", "allowed_params": []},
    "validation_invalid_format": {"text": "⚠️ Please enter a valid email address.", "allowed_params": []},
    "validation_none_selected": {"text": "⚠️ Please select at least one project type.", "allowed_params": []},
    "validation_unexpected_input": {"text": "⚠️ Please use the buttons above to answer this step.", "allowed_params": []},
    "validation_unknown_choice": {"text": "⚠️ Unknown action.", "allowed_params": []},
    # -- generic ----------------------------------------------------------
    "unknown_text": {
        "text": "❓ <b>I didn't understand that.</b>\n\nUse /help to see all available commands.",
        "allowed_params": [],
    },
    "provider_unavailable": {
        "text": "⚠️ Records are temporarily unavailable. Please try again later.",
        "allowed_params": [],
    },
    "generic_error": {"text": "❌ An error occurred. Please try again.", "allowed_params": []},
}

# (substring of lowered status, emoji) - first match wins
_STATUS_EMOJIS: list[tuple[str, str]] = [
    ("progress", "🔄"),
    ("active", "🔄"),
    ("review", "👀"),
    ("completed", "✅"),
    ("done", "✅"),
    ("hold", "⏸️"),
    ("paused", "⏸️"),
    ("cancelled", "❌"),
    ("blocked", "🚫"),
    ("pending", "⏳"),
]

DEFAULT_STATUS_EMOJI = "📋"


def status_emoji(status: str | None) -> str:
    """Emoji for a job status, matched by substring."""
    normalized = (status or "").lower()
    for needle, emoji in _STATUS_EMOJIS:
        if needle in normalized:
            return emoji
    return DEFAULT_STATUS_EMOJI


def render(template_key: str, params: dict[str, Any] | None = None) -> str:
    """Render template with params. Validates allowed_params.

    Args:
        template_key: Template identifier.
        params: Parameters to interpolate (must be in allowed_params).

    Returns:
        Rendered text string.

    Raises:
        ValueError: If template_key unknown or params contains disallowed keys.
    """
    if template_key not in TEMPLATES:
        raise ValueError(f"Unknown template: {template_key}")

    params = params or {}
    template = TEMPLATES[template_key]
    allowed = set(template["allowed_params"])
    provided = set(params.keys())

    extras = provided - allowed
    if extras:
        raise ValueError(f"Disallowed params for {template_key}: {extras}")

    missing = allowed - provided
    if missing:
        raise ValueError(f"Missing params for {template_key}: {missing}")

    escaped = {key: html.escape(str(value)) for key, value in params.items()}
    return template["text"].format(**escaped)
