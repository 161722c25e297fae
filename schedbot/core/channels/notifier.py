"""NotificationDispatcher — best-effort fan-out of run outcomes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from schedbot.core.channels.formatting import strip_markdown
from schedbot.core.cron.results import extract_result_text
from schedbot.core.cron.types import PLACEHOLDER, NotificationChannel, RunOutcome, Task

if TYPE_CHECKING:
    from schedbot.core.channels.email import EmailClient
    from schedbot.memory.store import TaskStore

NO_OUTPUT_TEXT = "The task completed but returned no output."
NO_RESULTS_TEXT = "(No results were returned.)"
UNKNOWN_ERROR_TEXT = "An unknown error occurred. Check the run history for details."


def should_send(channel: NotificationChannel, outcome: RunOutcome) -> bool:
    return (outcome.succeeded and channel.on_success) or (outcome.failed and channel.on_failure)


def render_body(
    channel: NotificationChannel,
    task_name: str,
    outcome: RunOutcome,
    clean_text: str | None,
) -> str:
    """Email body for one channel.

    Failures always get the failure notice. Successes use the custom body
    (placeholder replaced by the agent output) when it carries the
    placeholder, otherwise the output itself.
    """
    if outcome.failed:
        return (
            f'Your scheduled task "{task_name}" failed to complete.\n\n'
            f"{outcome.error or UNKNOWN_ERROR_TEXT}"
        )
    if channel.custom_body and PLACEHOLDER in channel.custom_body:
        return channel.custom_body.replace(PLACEHOLDER, clean_text or NO_RESULTS_TEXT)
    if channel.include_result is False:
        return channel.custom_body or f'Your scheduled task "{task_name}" completed successfully.'
    return clean_text or NO_OUTPUT_TEXT


class NotificationDispatcher:
    """Deliver run outcomes to the channels configured for a task.

    Never raises: lookup, rendering and delivery errors are logged and
    dropped so a notification problem cannot fail the run.
    """

    def __init__(self, store: TaskStore, email: EmailClient | None = None):
        self.store = store
        self.email = email

    async def notify(self, task: Task, outcome: RunOutcome) -> int:
        """Send notifications for ``outcome``. Returns the number delivered."""
        try:
            return await self._notify(task, outcome)
        except Exception as e:
            logger.error(f"Notification dispatch for task {task.id} failed: {e}")
            return 0

    async def _notify(self, task: Task, outcome: RunOutcome) -> int:
        prefs = self.store.get_notification_preference(task.id)
        if not prefs or not prefs.enabled or not prefs.channels:
            return 0

        raw_text = extract_result_text(outcome.result)
        clean_text = strip_markdown(raw_text) if raw_text else None

        sent = 0
        for channel in prefs.channels:
            if not should_send(channel, outcome):
                continue
            if not channel.is_email:
                logger.debug(f"Unsupported notification channel: {channel.channel}")
                continue
            if not self.email or not self.email.configured or not channel.to:
                logger.debug(f"Email not configured, skipping notification for {task.id}")
                continue

            subject = channel.custom_subject or task.name
            body = render_body(channel, task.name, outcome, clean_text)
            try:
                await self.email.send(channel.to, subject, body)
                sent += 1
                logger.info(f"Notification sent for task {task.id} → {channel.to}")
            except Exception as e:
                logger.warning(f"Notification to {channel.to} for task {task.id} failed: {e}")
        return sent
