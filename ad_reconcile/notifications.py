"""
Email notification utilities for AD Reconcile.

This module sends the end-of-run ledger report and fatal-error alerts by SMTP.
Notification failures are logged and never affect the run's exit code.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

from ad_reconcile.engine.models import Status

logger = logging.getLogger(__name__)

APP_NAME = "AD Reconcile"

# Failed/skipped results listed per reconciliation in the report body
MAX_REPORTED_RESULTS = 50


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]
    if not email_to:
        logger.error("No email recipients configured")
        return False

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port, timeout=30)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port, timeout=30)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a fatal run error.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    subject = f"{APP_NAME} Alert: {title}"

    body_lines = [
        f"{APP_NAME} Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        f"This is an automated message from {APP_NAME}."
    ])

    return send_email(subject, '\n'.join(body_lines), config)


def build_run_report(ledgers: List[Any], dry_run: bool = False) -> str:
    """
    Render the ledgers of a run as an email body.

    Each ledger contributes its status summary, actions applied, and the
    failed and skipped results (capped at MAX_REPORTED_RESULTS).
    """
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    body_lines = [
        f"{APP_NAME} Run Report{' (DRY RUN)' if dry_run else ''}",
        f"Timestamp: {timestamp}",
        ""
    ]

    for ledger in ledgers:
        summary = ledger.summary()
        applied = ledger.counts_by_action(status=Status.SUCCESS)
        body_lines.extend([
            f"{ledger.name}:",
            f"  Results: {len(ledger)} ({summary['success']} success, "
            f"{summary['failed']} failed, {summary['skipped']} skipped)",
            f"  Applied: " + (', '.join(f"{count} {action}" for action, count in sorted(applied.items())) or 'none'),
        ])

        notable = [result for result in ledger if result.status is not Status.SUCCESS
                   and not result.detail.startswith('unchanged')]
        for result in notable[:MAX_REPORTED_RESULTS]:
            body_lines.append(f"    {result.status.value.upper()} {result.action.value} "
                              f"{result.subject_key}: {result.detail}")
        if len(notable) > MAX_REPORTED_RESULTS:
            body_lines.append(f"    ... and {len(notable) - MAX_REPORTED_RESULTS} more")
        body_lines.append("")

    body_lines.append(f"This is an automated message from {APP_NAME}.")
    return '\n'.join(body_lines)


def send_run_report(ledgers: List[Any], config: Dict[str, Any], dry_run: bool = False) -> bool:
    """
    Send the end-of-run report.

    Sent when ``email_on_success`` is enabled, or when any item failed and
    ``email_on_failure`` is enabled.
    """
    has_failures = any(ledger.has_failures() for ledger in ledgers)
    if not (config.get('email_on_success', False) or (has_failures and config.get('email_on_failure', True))):
        logger.debug("Run report email not required")
        return False

    status = "Completed with failures" if has_failures else "Completed"
    subject = f"{APP_NAME}: {status}{' (dry run)' if dry_run else ''}"
    return send_email(subject, build_run_report(ledgers, dry_run), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    test_body = '\n'.join([
        f"This is a test email from {APP_NAME}.",
        "",
        "If you receive this message, your email notification configuration is working correctly.",
        "",
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"- From Address: {config.get('email_from', 'not configured')}",
        f"- Recipients: {', '.join(recipients)}",
    ])

    result = send_email(f"{APP_NAME}: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
