"""
Email notification of job outcomes.

Notifications are sent when:
- A backup finishes (success, warning or error) and the policy allows it
- A restore finishes (success or error) and the policy allows it

The policy lives in the single ``email_settings`` row (id=1). Sending is
best effort: every failure is logged and swallowed so a broken mail server
never changes a job's outcome.
"""

import asyncio
import html
import logging
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import List, Optional

from bareprox.core.config import settings
from bareprox.core.encryption import get_cipher
from bareprox.core.timezone import app_now
from bareprox.models import AsyncSessionLocal, EmailSettings

logger = logging.getLogger(__name__)

SEVERITY_RANKS = {
    "critical": 4,
    "error": 3,
    "warning": 2,
}

OUTCOME_RANKS = {
    "Error": 3,
    "Warning": 2,
}


def severity_rank(value: Optional[str]) -> int:
    return SEVERITY_RANKS.get((value or "").strip().lower(), 1)


def should_notify(settings_row: Optional[EmailSettings], kind: str, final_status: str) -> bool:
    """
    Decide whether an outcome passes the notification policy.

    Args:
        settings_row: The email settings row, or None when not configured
        kind: "backup" or "restore"
        final_status: "Success", "Warning" or "Error"

    Returns:
        True when the toggle for this kind/outcome is on and the outcome is
        at least as severe as the configured minimum severity
    """
    if settings_row is None or not settings_row.enabled:
        return False

    if OUTCOME_RANKS.get(final_status, 1) < severity_rank(settings_row.min_severity):
        return False

    if kind == "backup":
        toggles = {
            "Success": settings_row.on_backup_success,
            "Warning": settings_row.on_warnings,
            "Error": settings_row.on_backup_failure,
        }
    elif kind == "restore":
        toggles = {
            "Success": settings_row.on_restore_success,
            "Warning": settings_row.on_warnings,
            "Error": settings_row.on_restore_failure,
        }
    else:
        return False

    return bool(toggles.get(final_status, False))


def parse_recipients(value: Optional[str]) -> List[str]:
    """Split a comma or semicolon separated address list."""
    return [addr.strip() for addr in re.split(r"[,;]", value or "") if addr.strip()]


class EmailNotifier:
    """Sends backup and restore outcome mails according to the stored policy."""

    def __init__(self, session_factory=None, cipher=None):
        self.session_factory = session_factory or AsyncSessionLocal
        self._cipher = cipher

    @property
    def cipher(self):
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    async def _load_settings(self) -> Optional[EmailSettings]:
        async with self.session_factory() as db:
            return await db.get(EmailSettings, 1)

    async def notify_backup(
        self,
        job_id: int,
        storage_name: str,
        label: str,
        final_status: str,
        notes: Optional[str] = None,
        snapshot_name: Optional[str] = None,
        total_vms: int = 0,
        skipped_vms: int = 0,
        warned_vms: int = 0,
        recipients: Optional[List[str]] = None,
    ) -> bool:
        """
        Send the outcome mail for a backup job.

        Args:
            job_id: Job the mail is about
            storage_name: Backed-up storage
            label: Backup label
            final_status: "Success", "Warning" or "Error"
            notes: Error message or warning summary
            snapshot_name: Storage snapshot created by the job, if any
            total_vms: VMs found on the storage
            skipped_vms: VMs skipped (excluded or powered off)
            warned_vms: VMs that completed with warnings
            recipients: Overrides the default recipients (per-schedule list)

        Returns:
            True if a mail was handed to the SMTP server
        """
        try:
            row = await self._load_settings()
            if not should_notify(row, "backup", final_status):
                return False

            to = recipients or row.recipients
            if not to:
                logger.warning(f"No email recipients configured - skipping backup notification for job {job_id}")
                return False

            subject = f"BareProx: Backup {final_status} — {storage_name} ({label}) [Job #{job_id}]"
            now = app_now()
            rows = [
                ("Total VMs", total_vms),
                ("Skipped", skipped_vms),
                ("VMs with warnings", warned_vms),
            ]
            html_body = self._build_html(
                title=f"BareProx Backup {final_status}",
                fields=[
                    ("Job", f"#{job_id}"),
                    ("Storage", storage_name),
                    ("Label", label),
                    ("Snapshot", snapshot_name or ""),
                    (f"When ({now.tzname()})", now.strftime("%Y-%m-%d %H:%M:%S")),
                ],
                table=rows,
                notes=notes,
            )
            text_body = (
                f"BareProx Backup {final_status}\n\n"
                f"Job: #{job_id}\n"
                f"Storage: {storage_name}\n"
                f"Label: {label}\n"
                f"Snapshot: {snapshot_name or ''}\n"
                f"When: {now:%Y-%m-%d %H:%M:%S %Z}\n"
                f"Total VMs: {total_vms}, skipped: {skipped_vms}, with warnings: {warned_vms}\n"
            )
            if notes:
                text_body += f"\nNotes:\n{notes}\n"

            await self._deliver(row, subject, html_body, text_body, to)
            logger.info(f"Backup notification for job {job_id} sent to {len(to)} recipient(s)")
            return True

        except Exception as e:
            logger.warning(f"Backup notification for job {job_id} failed: {e}", exc_info=True)
            return False

    async def notify_restore(
        self,
        job_id: int,
        vm_name: str,
        final_status: str,
        notes: Optional[str] = None,
        snapshot_name: Optional[str] = None,
        target_host: Optional[str] = None,
        new_vmid: Optional[int] = None,
    ) -> bool:
        """Send the outcome mail for a restore job. Returns True if sent."""
        try:
            row = await self._load_settings()
            if not should_notify(row, "restore", final_status):
                return False

            to = row.recipients
            if not to:
                logger.warning(f"No email recipients configured - skipping restore notification for job {job_id}")
                return False

            subject = f"BareProx: Restore {final_status} — {vm_name} [Job #{job_id}]"
            now = app_now()
            html_body = self._build_html(
                title=f"BareProx Restore {final_status}",
                fields=[
                    ("Job", f"#{job_id}"),
                    ("VM", vm_name),
                    ("Snapshot", snapshot_name or ""),
                    ("Target host", target_host or ""),
                    ("VMID", "" if new_vmid is None else str(new_vmid)),
                    (f"When ({now.tzname()})", now.strftime("%Y-%m-%d %H:%M:%S")),
                ],
                notes=notes,
            )
            text_body = (
                f"BareProx Restore {final_status}\n\n"
                f"Job: #{job_id}\n"
                f"VM: {vm_name}\n"
                f"Snapshot: {snapshot_name or ''}\n"
                f"Target host: {target_host or ''}\n"
                f"When: {now:%Y-%m-%d %H:%M:%S %Z}\n"
            )
            if notes:
                text_body += f"\nNotes:\n{notes}\n"

            await self._deliver(row, subject, html_body, text_body, to)
            logger.info(f"Restore notification for job {job_id} sent to {len(to)} recipient(s)")
            return True

        except Exception as e:
            logger.warning(f"Restore notification for job {job_id} failed: {e}", exc_info=True)
            return False

    def _build_html(self, title: str, fields, table=None, notes: Optional[str] = None) -> str:
        """Build the HTML body. Every value is escaped."""
        cell = 'style="padding:4px;border:1px solid #ccc"'
        lines = "<br/>\n".join(
            f"<b>{html.escape(name)}:</b> {html.escape(str(value))}" for name, value in fields
        )
        body = f"<h3>{html.escape(title)}</h3>\n<p>{lines}</p>\n"

        if table:
            table_rows = "\n".join(
                f"<tr><td {cell}><b>{html.escape(name)}</b></td><td {cell}>{html.escape(str(value))}</td></tr>"
                for name, value in table
            )
            body += f'<table style="border-collapse:collapse;min-width:360px">\n{table_rows}\n</table>\n'

        if notes:
            body += (
                '<p><b>Notes:</b><br/><pre style="white-space:pre-wrap">'
                f"{html.escape(notes)}</pre></p>\n"
            )

        return f"<html><body>\n{body}<p>— BareProx</p>\n</body></html>"

    async def _deliver(self, row: EmailSettings, subject: str, html_body: str, text_body: str, recipients: List[str]):
        host = (row.smtp_host or settings.SMTP_HOST or "").strip()
        if not host:
            raise RuntimeError("SMTP host is not configured")

        mode = (row.security_mode or "StartTls").strip().lower()
        port = row.smtp_port or (465 if mode == "ssltls" else 587 if mode == "starttls" else 25)
        username = row.username or None
        password = self.cipher.decrypt(row.password_enc) if username and row.password_enc else None
        sender = (row.from_address or "").strip() or settings.SMTP_FROM_EMAIL

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = formataddr((settings.SMTP_FROM_NAME, sender))
        msg['To'] = ', '.join(recipients)
        msg.attach(MIMEText(text_body, 'plain', 'utf-8'))
        msg.attach(MIMEText(html_body, 'html', 'utf-8'))

        def _send():
            """Blocking SMTP send operation."""
            if mode == "ssltls":
                server = smtplib.SMTP_SSL(host, port, timeout=30)
            else:
                server = smtplib.SMTP(host, port, timeout=30)
                if mode == "starttls":
                    server.starttls()

            try:
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
            finally:
                server.quit()

        # Run blocking SMTP operation in thread pool
        await asyncio.get_running_loop().run_in_executor(None, _send)
