"""
Email notification utilities for Uyuni LDAP Sync.

This module provides functionality to send email notifications for
aborted runs, failed account creations and run summaries.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

FOOTER = "This is an automated message from Uyuni LDAP Sync."


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

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        if smtp_username and smtp_password:
            server.login(smtp_username, smtp_password)

        server.sendmail(email_from, email_to, msg.as_string())
        server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for an aborted run.

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

    body_lines = [
        "Uyuni LDAP Sync Failure Report",
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
        FOOTER
    ])

    return send_email(f"Uyuni LDAP Sync Alert: {title}", '\n'.join(body_lines), config)


def send_failed_users_notification(failed_uids: List[str], config: Dict[str, Any]) -> bool:
    """
    Report accounts that could not be created in Uyuni.

    Args:
        failed_uids: UIDs whose creation failed
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not failed_uids or not config.get('email_on_failure', True):
        return False

    body_lines = [
        "Uyuni LDAP Sync could not create the following accounts:",
        ""
    ]
    body_lines.extend(f"  - {uid}" for uid in failed_uids)
    body_lines.extend([
        "",
        "The remaining users were synchronized. The accounts above will be",
        "retried on the next run.",
        "",
        FOOTER
    ])

    return send_email("Uyuni LDAP Sync Alert: Account Creation Failed", '\n'.join(body_lines), config)


def send_success_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a completed run.

    Args:
        sync_stats: Dictionary containing sync statistics
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Uyuni LDAP Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        f"  Total runtime: {format_runtime(sync_stats.get('runtime_seconds', 0))}",
        f"  Users added: {sync_stats.get('users_added', 0)}",
        f"  Users updated: {sync_stats.get('users_updated', 0)}",
        f"  Users removed: {sync_stats.get('users_removed', 0)}",
        f"  Failed creations: {len(sync_stats.get('failed_users', []))}",
        ""
    ]

    for uid in sync_stats.get('failed_users', []):
        body_lines.append(f"    - {uid}")

    body_lines.append(FOOTER)

    return send_email("Uyuni LDAP Sync: Completed", '\n'.join(body_lines), config)


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_test_notification(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    test_body = """This is a test email from Uyuni LDAP Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(config.get('email_to', []))
    )

    result = send_email("Uyuni LDAP Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
