"""
Email notifications for AD/IAM Group Sync.

Administrators are mailed when a run fails or is aborted, and after a run
that left membership changes unapplied (or after every run, if success
reports are enabled). Sending never raises into the run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "AD/IAM Group Sync"

# Longer lists are truncated in report emails
MAX_LISTED_FAILURES = 20


def format_runtime(seconds: float) -> str:
    """Render a run duration for humans."""
    if seconds > 60:
        return f"{int(seconds // 60)}m {seconds % 60:.1f}s"
    return f"{seconds:.2f} seconds"


def _recipients(config: Dict[str, Any]) -> List[str]:
    email_to = config.get('email_to') or []
    if isinstance(email_to, str):
        return [email_to]
    return list(email_to)


def _open_smtp(config: Dict[str, Any]) -> smtplib.SMTP:
    server_name = config['smtp_server']
    port = config.get('smtp_port', 587)

    # Port 465 is implicit TLS; anything else may upgrade with STARTTLS
    if port == 465:
        return smtplib.SMTP_SSL(server_name, port)

    server = smtplib.SMTP(server_name, port)
    if config.get('smtp_tls', True):
        server.starttls()
    return server


def _compose(heading: str, lines: List[str]) -> str:
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    body = [heading, f"Timestamp: {timestamp}", ""]
    body.extend(lines)
    body.extend(["", "This is an automated message from AD/IAM Group Sync."])
    return '\n'.join(body)


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send a plain-text email using the notification settings.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if the email was handed to the SMTP server
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    recipients = _recipients(config)
    if not config.get('smtp_server'):
        logger.error("SMTP server not configured")
        return False
    if not recipients:
        logger.error("No email recipients configured")
        return False

    username = config.get('smtp_username')
    password = config.get('smtp_password')
    sender = config.get('email_from', username)

    msg = MIMEMultipart()
    msg['From'] = sender
    msg['To'] = ', '.join(recipients)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        server = _open_smtp(config)
        try:
            if username and password:
                server.login(username, password)
            server.sendmail(sender, recipients, msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email '{subject}': {e}")
        return False

    logger.info(f"Email sent to {len(recipients)} recipients: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Mail administrators about a run that failed or was aborted.

    Args:
        title: Failure kind, e.g. "Sync Aborted"
        error_message: What went wrong
        config: Notification configuration
        additional_info: Extra key/value context

    Returns:
        True if the notification was sent
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    lines = [f"Failure Type: {title}", f"Error Message: {error_message}"]
    if additional_info:
        lines.append("")
        lines.append("Additional Information:")
        lines.extend(f"  {key}: {value}" for key, value in additional_info.items())
    lines.extend(["", "The audit log holds the full record of this run."])

    body = _compose("AD/IAM Group Sync Failure Report", lines)
    return send_email(f"{SUBJECT_PREFIX} Alert: {title}", body, config)


def send_run_report(
    sync_stats: Dict[str, Any],
    failures: List[str],
    config: Dict[str, Any]
) -> bool:
    """
    Mail the summary of a completed run.

    A run with failed changes is reported when failure emails are enabled;
    a clean run only when success emails are enabled.

    Args:
        sync_stats: Run statistics from the orchestrator
        failures: Descriptions of changes that could not be applied
        config: Notification configuration

    Returns:
        True if the report was sent
    """
    if failures:
        if not config.get('email_on_failure', True):
            logger.debug("Failure email notifications disabled")
            return False
        subject = f"{SUBJECT_PREFIX}: Completed with {len(failures)} failed changes"
    else:
        if not config.get('email_on_success', False):
            logger.debug("Success email notifications disabled")
            return False
        subject = f"{SUBJECT_PREFIX}: Successful Completion"

    lines = [
        f"Source of truth: {sync_stats.get('controller', 'unknown')}",
        f"  Total runtime: {format_runtime(sync_stats.get('runtime_seconds', 0))}",
        f"  Users in both systems: {sync_stats.get('identities_total', 0)}",
        f"  Users processed: {sync_stats.get('identities_processed', 0)}",
        f"  Users skipped: {sync_stats.get('identities_skipped', 0)}",
        f"  Memberships added: {sync_stats.get('users_added', 0)}",
        f"  Memberships removed: {sync_stats.get('users_removed', 0)}",
        f"  Failed changes: {len(failures)}",
    ]

    if failures:
        lines.extend(["", "Failed Changes:"])
        lines.extend(f"  {i}. {failure}" for i, failure in enumerate(failures[:MAX_LISTED_FAILURES], 1))
        hidden = len(failures) - MAX_LISTED_FAILURES
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")

    return send_email(subject, _compose("AD/IAM Group Sync Summary Report", lines), config)


def send_test_email(config: Dict[str, Any]) -> bool:
    """
    Check the notification settings by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if the test email was sent
    """
    lines = [
        "If you receive this message, email notifications are configured correctly.",
        "",
        f"SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"From Address: {config.get('email_from', 'not configured')}",
        f"Recipients: {', '.join(_recipients(config))}",
    ]

    sent = send_email(f"{SUBJECT_PREFIX}: Configuration Test",
                      _compose("AD/IAM Group Sync Test Message", lines), config)
    if sent:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return sent
